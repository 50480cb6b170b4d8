"""Environment variable validation and management."""

import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)

_DISABLED_VALUES = {"off", "none", "disabled"}


class ConfigError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate the environment the message service runs in.

    Raises ConfigError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "POOL_MAX_SIZE": "Maximum number of pooled connections",
        "POOL_CHECKOUT_TIMEOUT": "Seconds a request waits for a connection",
        "POOL_HEALTH_CHECK_THRESHOLD": "Idle seconds before a reused connection is checked",
        "POOL_MAX_IDLE_LIFETIME": "Idle seconds before the sweep checks a connection",
        "POOL_SWEEP_INTERVAL": "Seconds between background sweeps",
        "POOL_DRAIN_TIMEOUT": "Seconds shutdown waits for outstanding leases",
    }

    int_vars = {"POOL_MAX_SIZE"}
    float_vars = {
        "POOL_CHECKOUT_TIMEOUT",
        "POOL_HEALTH_CHECK_THRESHOLD",
        "POOL_MAX_IDLE_LIFETIME",
        "POOL_SWEEP_INTERVAL",
        "POOL_DRAIN_TIMEOUT",
    }
    invalid = []
    for var in int_vars:
        try:
            get_env_int(var)
        except ConfigError as exc:
            invalid.append(str(exc))
    for var in float_vars:
        try:
            get_env_float(var, allow_disabled=var in {"POOL_HEALTH_CHECK_THRESHOLD", "POOL_SWEEP_INTERVAL"})
        except ConfigError as exc:
            invalid.append(str(exc))

    if invalid:
        raise ConfigError("; ".join(sorted(invalid)))

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Get integer value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigError(f"Invalid integer for {name}: {value}") from None


def get_env_float(
    name: str,
    default: Optional[float] = None,
    *,
    allow_disabled: bool = False,
) -> Optional[float]:
    """Get a duration in seconds from an environment variable.

    With ``allow_disabled`` the values ``off``/``none``/``disabled`` map to None.
    """
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    raw = value.strip()
    if allow_disabled and raw.lower() in _DISABLED_VALUES:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"Invalid number for {name}: {value}") from None
