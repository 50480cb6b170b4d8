"""Connection pool settings and their environment defaults."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from env_validation import ConfigError, get_env_float, get_env_int

__all__ = ["PoolConfig", "load_pool_config"]


class PoolConfig(BaseModel):
    """Sizing, timeout and health-check policy for a connection pool.

    All durations are in seconds.
    """

    max_size: int = Field(default=10, gt=0, description="Upper bound on live connections.")
    checkout_timeout: float = Field(
        default=5.0,
        ge=0,
        description="How long checkout waits for a connection when the pool is saturated.",
    )
    idle_health_check_threshold: Optional[float] = Field(
        default=30.0,
        ge=0,
        description="Idle time after which a connection is checked before reuse; None never checks.",
    )
    max_idle_lifetime: float = Field(
        default=300.0,
        ge=0,
        description="Idle time after which the supervisor sweep health-checks a connection.",
    )
    sweep_interval: Optional[float] = Field(
        default=60.0,
        gt=0,
        description="Seconds between supervisor sweeps; None disables the supervisor.",
    )
    drain_timeout: float = Field(
        default=30.0,
        ge=0,
        description="How long shutdown waits for outstanding leases to come back.",
    )


def load_pool_config(**overrides) -> PoolConfig:
    """Build a PoolConfig from POOL_* environment variables.

    Keyword overrides win over the environment. Raises ConfigError when a
    value is malformed or out of range.
    """
    defaults = PoolConfig()
    values = {
        "max_size": get_env_int("POOL_MAX_SIZE", defaults.max_size),
        "checkout_timeout": get_env_float("POOL_CHECKOUT_TIMEOUT", defaults.checkout_timeout),
        "idle_health_check_threshold": get_env_float(
            "POOL_HEALTH_CHECK_THRESHOLD",
            defaults.idle_health_check_threshold,
            allow_disabled=True,
        ),
        "max_idle_lifetime": get_env_float("POOL_MAX_IDLE_LIFETIME", defaults.max_idle_lifetime),
        "sweep_interval": get_env_float(
            "POOL_SWEEP_INTERVAL",
            defaults.sweep_interval,
            allow_disabled=True,
        ),
        "drain_timeout": get_env_float("POOL_DRAIN_TIMEOUT", defaults.drain_timeout),
    }
    values.update(overrides)
    try:
        return PoolConfig(**values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid connection pool settings: {exc}") from exc
