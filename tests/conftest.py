import sys
import threading
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from connection_factory import ConnectionFactory, SQLiteConnectionFactory  # noqa: E402
from db_pool import ConnectionPool  # noqa: E402
from pool_config import PoolConfig  # noqa: E402


class FakeConnection:
    def __init__(self, ident: int):
        self.ident = ident
        self.closed = False

    def __repr__(self) -> str:
        return f"FakeConnection({self.ident})"


class FakeFactory(ConnectionFactory):
    """Scriptable factory that records every call the pool makes."""

    def __init__(self):
        self._lock = threading.Lock()
        self.opened = []
        self.closed = []
        self.checks = []
        self.unhealthy = set()
        self.open_error = None

    def open(self):
        with self._lock:
            if self.open_error is not None:
                raise self.open_error
            conn = FakeConnection(len(self.opened) + 1)
            self.opened.append(conn)
            return conn

    def check(self, connection):
        with self._lock:
            self.checks.append(connection.ident)
        return not connection.closed and connection.ident not in self.unhealthy

    def close(self, connection):
        connection.closed = True
        with self._lock:
            self.closed.append(connection.ident)


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.002)
    return predicate()


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def make_pool(factory):
    pools = []

    def _make(**settings):
        settings.setdefault("sweep_interval", None)
        settings.setdefault("idle_health_check_threshold", None)
        pool = ConnectionPool(factory, PoolConfig(**settings))
        pools.append(pool)
        return pool

    yield _make
    for pool in pools:
        pool.shutdown(timeout=0)


@pytest.fixture
def sqlite_pool(tmp_path):
    import db

    pool = ConnectionPool(
        SQLiteConnectionFactory(str(tmp_path / "test.db")),
        PoolConfig(max_size=4, checkout_timeout=1.0, sweep_interval=None),
    )
    db.init(pool)
    yield pool
    pool.shutdown(timeout=1.0)
