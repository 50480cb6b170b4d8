# app.py — pooled message service
# - POST / stores a message, GET / lists them (optionally within a time range)
# - One connection pool per process, built in the lifespan and shut down with it

import asyncio
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request

import db
from connection_factory import SQLiteConnectionFactory
from db_pool import ConnectionPool, new_pool
from env_validation import get_env_bool, validate_environment
from pool_config import load_pool_config
from pool_errors import FactoryOpenFailed, PoolClosed, PoolError, PoolTimeout
from schemas import Message, NewMessage, PostResponse, PoolStatsResponse

logger = logging.getLogger(__name__)

_POOL_LOGGER = logging.getLogger("db_pool")
if not _POOL_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    _POOL_LOGGER.addHandler(_handler)
_POOL_LOGGER.setLevel(logging.DEBUG if get_env_bool("POOL_DEBUG_LOG") else logging.INFO)
_POOL_LOGGER.propagate = False

# Seconds a client is asked to back off when every connection is busy.
_RETRY_AFTER_SECONDS = "1"


@asynccontextmanager
async def _lifespan(application: FastAPI):
    pool = None
    try:
        validate_environment()
        config = load_pool_config()
        pool = new_pool(SQLiteConnectionFactory(os.environ["DB_PATH"]), config)
        db.init(pool)
        application.state.pool = pool
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        if pool is not None:
            await asyncio.to_thread(pool.shutdown, timeout=0)
        raise
    try:
        yield
    finally:
        application.state.pool = None
        await asyncio.to_thread(pool.shutdown)


app = FastAPI(title="Pooled message service", version="0.1.0", lifespan=_lifespan)


def get_pool(request: Request) -> ConnectionPool:
    pool = getattr(request.app.state, "pool", None)
    if pool is None:
        raise HTTPException(status_code=503, detail="database pool not initialized")
    return pool


def _pool_unavailable(exc: PoolError) -> HTTPException:
    if isinstance(exc, PoolTimeout):
        return HTTPException(
            status_code=503,
            detail="all database connections are busy, retry later",
            headers={"Retry-After": _RETRY_AFTER_SECONDS},
        )
    if isinstance(exc, PoolClosed):
        return HTTPException(status_code=503, detail="service is shutting down")
    if isinstance(exc, FactoryOpenFailed):
        logger.error("Database unavailable: %s", exc)
        return HTTPException(status_code=503, detail="database unavailable")
    return HTTPException(status_code=500, detail=str(exc))


@app.post("/", response_model=PostResponse)
def post_message(payload: NewMessage, pool: ConnectionPool = Depends(get_pool)):
    try:
        timestamp = db.write_message(pool, payload)
    except PoolError as exc:
        raise _pool_unavailable(exc) from exc
    except sqlite3.Error as exc:
        logger.error("Error writing to database: %s", exc)
        raise HTTPException(status_code=500, detail="service error") from exc
    return PostResponse(timestamp=timestamp)


@app.get("/", response_model=List[Message])
def list_messages(
    before: Optional[int] = None,
    after: Optional[int] = None,
    pool: ConnectionPool = Depends(get_pool),
):
    try:
        return db.query_messages(pool, before=before, after=after)
    except PoolError as exc:
        raise _pool_unavailable(exc) from exc
    except sqlite3.Error as exc:
        logger.error("Error querying DB: %s", exc)
        raise HTTPException(status_code=500, detail="service error") from exc


@app.get("/health/pool", response_model=PoolStatsResponse)
def pool_health(pool: ConnectionPool = Depends(get_pool)):
    return PoolStatsResponse(**asdict(pool.stats()))
