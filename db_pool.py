"""Bounded, thread-safe connection pool with scoped leases.

Connections come from a :class:`ConnectionFactory`; the pool only opens,
health-checks and closes them. All bookkeeping lives behind one lock and no
factory call is made while holding it.
"""
from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Generator, Optional

from connection_factory import ConnectionFactory
from pool_config import PoolConfig
from pool_errors import FactoryOpenFailed, PoolClosed, PoolError, PoolTimeout
from pool_supervisor import PoolSupervisor

logger = logging.getLogger(__name__)

__all__ = [
    "ConnectionPool",
    "HealthState",
    "Lease",
    "PoolStats",
    "Slot",
    "SlotState",
    "new_pool",
]


class SlotState(str, Enum):
    IDLE = "idle"
    LEASED = "leased"
    CLOSED = "closed"


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    BROKEN = "broken"


@dataclass
class Slot:
    """One pooled connection and its bookkeeping."""

    id: int
    connection: Any
    state: SlotState = SlotState.LEASED
    health: HealthState = HealthState.UNKNOWN
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)

    def idle_for(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_used_at


@dataclass
class PoolStats:
    """Point-in-time snapshot of pool occupancy and counters.

    ``leased`` counts slots in the LEASED state. A slot held by a running
    sweep for its health check is in that state too, so it shows up as
    leased until the sweep returns it.
    """

    max_size: int
    total: int
    idle: int
    leased: int
    opening: int
    waiting: int
    closed: bool
    opened: int
    discarded: int
    timeouts: int


class _Waiter:
    # Grants are written under the pool lock before the event is set.
    __slots__ = ("event", "slot", "permit", "closed")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.slot: Optional[Slot] = None
        self.permit = False
        self.closed = False


class Lease:
    """Exclusive, scoped ownership of one pooled connection.

    Use it as a context manager. When the block exits, however it exits, the
    connection goes back to the pool, or is discarded if :meth:`mark_broken`
    was called. Releasing twice is a no-op.
    """

    def __init__(self, pool: "ConnectionPool", slot: Slot):
        self._pool = pool
        self._slot = slot
        self._broken = False
        self._released = False
        self._lock = threading.Lock()

    @property
    def connection(self) -> Any:
        if self._released:
            raise PoolError(f"Lease on connection {self._slot.id} was already released")
        return self._slot.connection

    @property
    def slot_id(self) -> int:
        return self._slot.id

    @property
    def broken(self) -> bool:
        return self._broken

    @property
    def released(self) -> bool:
        return self._released

    def mark_broken(self) -> None:
        """Discard the connection instead of pooling it on release."""
        self._broken = True

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._pool._release(self._slot, healthy=not self._broken)

    def __enter__(self) -> "Lease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        status = "released" if self._released else "active"
        return f"<Lease connection={self._slot.id} {status}{' broken' if self._broken else ''}>"


class ConnectionPool:
    """Thread-safe pool of at most ``config.max_size`` connections."""

    def __init__(self, factory: ConnectionFactory, config: Optional[PoolConfig] = None):
        self._factory = factory
        self._config = config or PoolConfig()
        self._lock = threading.Lock()
        self._drained = threading.Condition(self._lock)
        self._slots: Dict[int, Slot] = {}
        self._idle: Deque[Slot] = deque()
        self._waiters: Deque[_Waiter] = deque()
        self._opening = 0
        self._closed = False
        self._ids = itertools.count(1)
        self._supervisor: Optional[PoolSupervisor] = None
        self._opened = 0
        self._discarded = 0
        self._timeouts = 0

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    # ---------- checkout ----------

    def checkout(self, timeout: Optional[float] = None) -> Lease:
        """Lease one healthy connection.

        Reuses an idle connection, opens a new one while under ``max_size``,
        or waits in FIFO order for one to be released. Raises PoolTimeout when
        ``timeout`` (default ``config.checkout_timeout``) passes, PoolClosed
        after shutdown and FactoryOpenFailed when a new connection cannot be
        opened.
        """
        if timeout is None:
            timeout = self._config.checkout_timeout
        deadline = time.monotonic() + timeout
        waiter = None
        with self._lock:
            if self._closed:
                raise PoolClosed()
            slot = self._pop_idle_locked()
            if slot is None:
                # Nobody may jump ahead of callers already queued.
                if not self._waiters and self._size_locked() < self._config.max_size:
                    self._opening += 1
                else:
                    waiter = _Waiter()
                    self._waiters.append(waiter)

        if waiter is not None:
            slot = self._wait(waiter, deadline, timeout)

        if slot is None:
            slot = self._open_slot()
        elif self._needs_check(slot) and not self._check(slot):
            slot = self._replace(slot)
        return Lease(self, slot)

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Generator[Any, None, None]:
        """Check out a connection for the duration of a ``with`` block."""
        with self.checkout(timeout) as lease:
            yield lease.connection

    def _wait(self, waiter: _Waiter, deadline: float, timeout: float) -> Optional[Slot]:
        """Block until ``waiter`` is granted a slot (returned) or capacity (None)."""
        signalled = waiter.event.wait(max(0.0, deadline - time.monotonic()))
        to_close = None
        with self._lock:
            if not waiter.event.is_set():
                self._waiters.remove(waiter)
                self._timeouts += 1
                logger.debug("Checkout timed out after %.3fs (%d still waiting)", timeout, len(self._waiters))
                raise PoolTimeout(timeout)
            if waiter.closed:
                raise PoolClosed()
            if signalled and not self._closed:
                return waiter.slot
            # Granted after the deadline or after shutdown: pass the grant on.
            if self._closed:
                error: PoolError = PoolClosed()
            else:
                self._timeouts += 1
                error = PoolTimeout(timeout)
            to_close = self._forward_locked(waiter)
        if to_close is not None:
            self._close_connection(to_close)
        raise error

    def _forward_locked(self, waiter: _Waiter) -> Optional[Slot]:
        if waiter.slot is not None:
            return None if self._return_locked(waiter.slot) else waiter.slot
        self._opening -= 1
        self._capacity_freed_locked()
        return None

    # ---------- slot lifecycle ----------

    def _size_locked(self) -> int:
        return len(self._slots) + self._opening

    def _pop_idle_locked(self) -> Optional[Slot]:
        if not self._idle:
            return None
        slot = self._idle.pop()
        slot.state = SlotState.LEASED
        return slot

    def _return_locked(self, slot: Slot, *, oldest: bool = False) -> bool:
        """Hand a healthy slot to the first waiter, else park it as idle.

        Returns False when the pool is closed; the caller must then close the
        connection outside the lock.
        """
        if self._closed:
            self._remove_locked(slot)
            return False
        if self._waiters:
            waiter = self._waiters.popleft()
            slot.state = SlotState.LEASED
            waiter.slot = slot
            waiter.event.set()
            logger.debug("Handed connection %s to a waiting checkout", slot.id)
            return True
        slot.state = SlotState.IDLE
        if oldest:
            self._idle.appendleft(slot)
        else:
            self._idle.append(slot)
        return True

    def _remove_locked(self, slot: Slot) -> None:
        self._slots.pop(slot.id, None)
        slot.state = SlotState.CLOSED
        self._capacity_freed_locked()

    def _capacity_freed_locked(self) -> None:
        if self._closed:
            self._drained.notify_all()
            return
        if self._waiters and self._size_locked() < self._config.max_size:
            waiter = self._waiters.popleft()
            waiter.permit = True
            self._opening += 1
            waiter.event.set()

    def _open_slot(self) -> Slot:
        """Open a connection into capacity already reserved in ``_opening``."""
        try:
            connection = self._factory.open()
        except Exception as exc:
            with self._lock:
                self._opening -= 1
                self._capacity_freed_locked()
            logger.warning("Connection factory failed to open a connection: %s", exc)
            if isinstance(exc, FactoryOpenFailed):
                raise
            raise FactoryOpenFailed(f"Could not open a connection: {exc}") from exc

        with self._lock:
            self._opening -= 1
            closed = self._closed
            if closed:
                self._drained.notify_all()
            else:
                slot = Slot(id=next(self._ids), connection=connection)
                self._slots[slot.id] = slot
                self._opened += 1
                total = len(self._slots)
        if closed:
            self._close_raw(connection)
            raise PoolClosed()
        logger.debug("Opened connection %s (total: %d)", slot.id, total)
        return slot

    def _replace(self, slot: Slot) -> Slot:
        """Discard ``slot`` and open a replacement into its capacity."""
        with self._lock:
            self._slots.pop(slot.id, None)
            slot.state = SlotState.CLOSED
            self._discarded += 1
            closed = self._closed
            if closed:
                self._drained.notify_all()
            else:
                self._opening += 1
        logger.info("Discarding connection %s after failed health check", slot.id)
        self._close_connection(slot)
        if closed:
            raise PoolClosed()
        return self._open_slot()

    def _needs_check(self, slot: Slot) -> bool:
        threshold = self._config.idle_health_check_threshold
        if threshold is None:
            return False
        return slot.idle_for() >= threshold

    def _check(self, slot: Slot) -> bool:
        try:
            healthy = bool(self._factory.check(slot.connection))
        except Exception as exc:
            logger.warning("Health check raised for connection %s: %s", slot.id, exc)
            healthy = False
        slot.health = HealthState.HEALTHY if healthy else HealthState.BROKEN
        if not healthy:
            logger.warning("Connection %s failed its health check", slot.id)
        return healthy

    def _close_connection(self, slot: Slot) -> None:
        self._close_raw(slot.connection, slot.id)

    def _close_raw(self, connection: Any, slot_id: Optional[int] = None) -> None:
        try:
            self._factory.close(connection)
        except Exception as exc:
            logger.warning("Failed to close connection %s: %s", slot_id, exc)

    # ---------- release ----------

    def _release(self, slot: Slot, healthy: bool) -> None:
        """Take a slot back from its lease. Only :meth:`Lease.release` calls this."""
        with self._lock:
            slot.last_used_at = time.monotonic()
            if healthy:
                keep = self._return_locked(slot)
            else:
                slot.health = HealthState.BROKEN
                self._discarded += 1
                self._remove_locked(slot)
                keep = False
        if not keep:
            if not healthy:
                logger.info("Discarding connection %s marked broken", slot.id)
            self._close_connection(slot)

    # ---------- maintenance ----------

    def sweep(self) -> int:
        """Health-check connections idle for at least ``max_idle_lifetime``.

        Slots are taken out of the idle list one at a time, so a checkout is
        never held up for longer than a single check. Returns the number of
        connections discarded.
        """
        lifetime = self._config.max_idle_lifetime
        now = time.monotonic()
        with self._lock:
            if self._closed:
                return 0
            candidates = [slot.id for slot in self._idle if slot.idle_for(now) >= lifetime]

        discarded = 0
        for slot_id in candidates:
            with self._lock:
                slot = self._slots.get(slot_id)
                if self._closed or slot is None or slot.state is not SlotState.IDLE:
                    continue
                if slot.idle_for() < lifetime:
                    continue
                self._idle.remove(slot)
                slot.state = SlotState.LEASED

            if self._check(slot):
                with self._lock:
                    keep = self._return_locked(slot, oldest=True)
                if not keep:
                    self._close_connection(slot)
                continue

            with self._lock:
                self._discarded += 1
                self._remove_locked(slot)
            logger.info("Sweep discarded idle connection %s", slot.id)
            self._close_connection(slot)
            discarded += 1
        return discarded

    def start_supervisor(self) -> Optional[PoolSupervisor]:
        """Start the background sweep when ``config.sweep_interval`` is set."""
        interval = self._config.sweep_interval
        if interval is None:
            return None
        with self._lock:
            if self._closed:
                raise PoolClosed()
            if self._supervisor is not None:
                return self._supervisor
            supervisor = PoolSupervisor(self, interval)
            self._supervisor = supervisor
        supervisor.start()
        return supervisor

    def stats(self) -> PoolStats:
        with self._lock:
            idle = len(self._idle)
            leased = sum(1 for slot in self._slots.values() if slot.state is SlotState.LEASED)
            return PoolStats(
                max_size=self._config.max_size,
                total=len(self._slots),
                idle=idle,
                leased=leased,
                opening=self._opening,
                waiting=len(self._waiters),
                closed=self._closed,
                opened=self._opened,
                discarded=self._discarded,
                timeouts=self._timeouts,
            )

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Close the pool and wait for outstanding leases to come back.

        New checkouts fail with PoolClosed, waiters are woken with PoolClosed
        and idle connections are closed at once. Leased connections are
        closed as they are released. Returns True once every connection is
        closed, False if ``timeout`` (default ``config.drain_timeout``) passed
        first.
        """
        if timeout is None:
            timeout = self._config.drain_timeout
        with self._lock:
            first_call = not self._closed
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            for slot in idle:
                self._slots.pop(slot.id, None)
                slot.state = SlotState.CLOSED
            waiters = list(self._waiters)
            self._waiters.clear()
            for waiter in waiters:
                waiter.closed = True
                waiter.event.set()
            supervisor = self._supervisor
            self._supervisor = None
            outstanding = len(self._slots)

        if first_call:
            logger.info(
                "Shutting down connection pool (%d idle closed, %d leased, %d waiters woken)",
                len(idle),
                outstanding,
                len(waiters),
            )
        if supervisor is not None:
            supervisor.stop()
        for slot in idle:
            self._close_connection(slot)

        with self._lock:
            drained = self._drained.wait_for(lambda: not self._slots and not self._opening, timeout)
            remaining = len(self._slots)
        if drained:
            logger.info("Connection pool drained")
        else:
            logger.warning("Connection pool shutdown timed out with %d leases outstanding", remaining)
        return drained

    def __repr__(self) -> str:
        stats = self.stats()
        return (
            f"<ConnectionPool max_size={stats.max_size} idle={stats.idle} "
            f"leased={stats.leased} waiting={stats.waiting}{' closed' if stats.closed else ''}>"
        )


def new_pool(factory: ConnectionFactory, config: Optional[PoolConfig] = None) -> ConnectionPool:
    """Create a pool and start its supervisor when a sweep interval is configured."""
    pool = ConnectionPool(factory, config)
    pool.start_supervisor()
    logger.info(
        "Connection pool ready (max_size=%d, checkout_timeout=%.2fs)",
        pool.config.max_size,
        pool.config.checkout_timeout,
    )
    return pool
