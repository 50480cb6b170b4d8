"""Exceptions raised by the connection pool."""

from typing import Optional


class PoolError(Exception):
    """Base class for connection pool failures."""


class FactoryOpenFailed(PoolError):
    """The connection factory could not open a new connection."""


class HealthCheckFailed(PoolError):
    """A connection failed its health check.

    Never surfaced by ``checkout``; factories may raise it from ``check`` and
    the pool treats it as an unhealthy result.
    """


class PoolTimeout(PoolError):
    """No connection became available before the checkout deadline."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        if timeout is None:
            message = "Timed out waiting for a pooled connection"
        else:
            message = f"Timed out after {timeout:.3f}s waiting for a pooled connection"
        super().__init__(message)


class PoolClosed(PoolError):
    """The pool has been shut down and no longer hands out connections."""

    def __init__(self, message: str = "Connection pool is closed"):
        super().__init__(message)
