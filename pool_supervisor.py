"""Background sweep that recycles stale idle connections."""
from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from db_pool import ConnectionPool

logger = logging.getLogger(__name__)


class PoolSupervisor:
    """Runs ``pool.sweep()`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, pool: "ConnectionPool", interval: float):
        if interval <= 0:
            raise ValueError("Sweep interval must be positive")
        self._pool = pool
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="db-pool-supervisor", daemon=True)
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()
        logger.debug("Pool supervisor started (interval %.1fs)", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        logger.debug("Pool supervisor stopped after %d sweeps", self.sweeps)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                discarded = self._pool.sweep()
            except Exception:
                logger.exception("Connection pool sweep failed")
                continue
            self.sweeps += 1
            if discarded:
                logger.info("Pool sweep discarded %d stale connections", discarded)
