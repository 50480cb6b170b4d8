import asyncio
import json
import sqlite3
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
import db
from db_pool import ConnectionPool, new_pool
from env_validation import ConfigError
from pool_errors import FactoryOpenFailed
from schemas import NewMessage


async def _call_app(method: str, path: str, *, payload: Optional[dict] = None, query: Optional[dict] = None):
    body = b""
    headers = [(b"host", b"testserver")]
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    response_headers = {}
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
            response_headers = {
                key.decode("latin-1"): value.decode("latin-1") for key, value in message.get("headers", [])
            }
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data, response_headers


def _call(method, path, **kwargs):
    return asyncio.run(_call_app(method, path, **kwargs))


@pytest.fixture
def service_pool(sqlite_pool):
    app.app.state.pool = sqlite_pool
    yield sqlite_pool
    app.app.state.pool = None


def test_post_then_list_messages(service_pool):
    status, data, _ = _call("POST", "/", payload={"username": "alice", "message": "hi there"})
    assert status == 200
    assert isinstance(data["timestamp"], int)

    status, data, _ = _call("GET", "/")
    assert status == 200
    assert len(data) == 1
    assert data[0]["username"] == "alice"
    assert data[0]["message"] == "hi there"


def test_post_requires_message(service_pool):
    status, _, _ = _call("POST", "/", payload={"username": "alice"})
    assert status == 422
    assert db.query_messages(service_pool) == []


def test_list_respects_time_range(service_pool):
    for stamp in (10, 20, 30):
        db.write_message(service_pool, NewMessage(message=str(stamp)), timestamp=stamp)

    status, data, _ = _call("GET", "/", query={"after": 10, "before": 30})
    assert status == 200
    assert [item["timestamp"] for item in data] == [20]


def test_list_rejects_non_numeric_bounds(service_pool):
    status, _, _ = _call("GET", "/", query={"before": "yesterday"})
    assert status == 422


def test_saturated_pool_returns_retryable_503(tmp_path):
    from connection_factory import SQLiteConnectionFactory
    from db_pool import ConnectionPool
    from pool_config import PoolConfig

    pool = ConnectionPool(
        SQLiteConnectionFactory(str(tmp_path / "busy.db")),
        PoolConfig(max_size=1, checkout_timeout=0.05, sweep_interval=None),
    )
    db.init(pool)
    app.app.state.pool = pool
    held = pool.checkout()
    try:
        status, data, headers = _call("POST", "/", payload={"message": "blocked"})
        assert status == 503
        assert headers.get("retry-after") == "1"
        assert "busy" in data["detail"]
        assert pool.stats().timeouts == 1
    finally:
        held.release()
        app.app.state.pool = None
        pool.shutdown(timeout=1.0)


def test_closed_pool_returns_503_without_retry(service_pool):
    service_pool.shutdown(timeout=1.0)
    status, data, headers = _call("GET", "/")
    assert status == 503
    assert "retry-after" not in headers
    assert data["detail"] == "service is shutting down"


def test_missing_pool_returns_503():
    app.app.state.pool = None
    status, _, _ = _call("GET", "/")
    assert status == 503


def test_pool_health_reports_stats(service_pool):
    _call("POST", "/", payload={"message": "warm up"})
    status, data, _ = _call("GET", "/health/pool")
    assert status == 200
    assert data["max_size"] == 4
    assert data["leased"] == 0
    assert data["idle"] == data["total"] >= 1
    assert data["closed"] is False


def test_post_accepts_empty_username(service_pool):
    status, _, _ = _call("POST", "/", payload={"username": "", "message": "no name"})
    assert status == 200
    stored = db.query_messages(service_pool)
    assert [(item.username, item.message) for item in stored] == [("", "no name")]


_POOL_VARS = (
    "POOL_MAX_SIZE",
    "POOL_CHECKOUT_TIMEOUT",
    "POOL_HEALTH_CHECK_THRESHOLD",
    "POOL_MAX_IDLE_LIFETIME",
    "POOL_SWEEP_INTERVAL",
    "POOL_DRAIN_TIMEOUT",
)


@pytest.fixture
def lifespan_env(tmp_path, monkeypatch):
    for var in _POOL_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("DB_PATH", str(tmp_path / "lifespan.db"))
    monkeypatch.setenv("POOL_SWEEP_INTERVAL", "off")
    monkeypatch.setenv("POOL_DRAIN_TIMEOUT", "1")
    app.app.state.pool = None
    yield tmp_path / "lifespan.db"
    app.app.state.pool = None


def test_lifespan_builds_pool_and_shuts_it_down(lifespan_env):
    async def run():
        async with app._lifespan(app.app):
            pool = app.app.state.pool
            assert isinstance(pool, ConnectionPool)
            assert not pool.closed
            status, _, _ = await _call_app("POST", "/", payload={"username": "bob", "message": "hello"})
            assert status == 200
        return pool

    pool = asyncio.run(run())

    assert app.app.state.pool is None
    assert pool.closed
    assert pool.stats().total == 0
    con = sqlite3.connect(str(lifespan_env))
    try:
        rows = con.execute("SELECT username, message FROM messages").fetchall()
    finally:
        con.close()
    assert rows == [("bob", "hello")]


def test_lifespan_invalid_config_leaves_no_pool(lifespan_env, monkeypatch):
    monkeypatch.setenv("POOL_MAX_SIZE", "0")

    async def run():
        async with app._lifespan(app.app):
            pytest.fail("startup should have failed")

    with pytest.raises(ConfigError):
        asyncio.run(run())
    assert app.app.state.pool is None


def test_lifespan_closes_pool_when_schema_setup_fails(lifespan_env, monkeypatch):
    # a directory cannot be opened as a database file
    monkeypatch.setenv("DB_PATH", str(lifespan_env.parent))
    created = []

    def recording_new_pool(factory, config):
        pool = new_pool(factory, config)
        created.append(pool)
        return pool

    monkeypatch.setattr(app, "new_pool", recording_new_pool)

    async def run():
        async with app._lifespan(app.app):
            pytest.fail("startup should have failed")

    with pytest.raises(FactoryOpenFailed):
        asyncio.run(run())
    assert app.app.state.pool is None
    assert len(created) == 1
    assert created[0].closed


def test_lifespan_drain_keeps_event_loop_running(lifespan_env, monkeypatch):
    monkeypatch.setenv("POOL_DRAIN_TIMEOUT", "0.5")

    async def run():
        loop = asyncio.get_running_loop()
        finished = asyncio.Event()
        gaps = []

        async def tick():
            last = loop.time()
            while not finished.is_set():
                await asyncio.sleep(0.01)
                now = loop.time()
                gaps.append(now - last)
                last = now

        ticker = asyncio.create_task(tick())
        started = loop.time()
        async with app._lifespan(app.app):
            pool = app.app.state.pool
            held = pool.checkout()
        elapsed = loop.time() - started
        finished.set()
        await ticker
        return pool, held, gaps, elapsed

    pool, held, gaps, elapsed = asyncio.run(run())

    # shutdown waited out the drain timeout for the held lease
    assert elapsed >= 0.5
    assert len(gaps) >= 10
    assert max(gaps) < 0.2
    assert pool.closed
    held.release()
    assert pool.stats().total == 0
