import logging
import sqlite3
import time
from typing import Iterable, List, Optional

from db_pool import ConnectionPool
from schemas import Message, NewMessage

logger = logging.getLogger(__name__)

# Errors that mean the connection itself is unusable, not just the statement.
_BROKEN_CONNECTION_ERRORS = (sqlite3.ProgrammingError, sqlite3.InterfaceError)


def _exec(pool: ConnectionPool, sql: str, params: Iterable = ()) -> Optional[int]:
    with pool.checkout() as lease:
        con = lease.connection
        try:
            cur = con.execute(sql, tuple(params))
            con.commit()
        except _BROKEN_CONNECTION_ERRORS:
            lease.mark_broken()
            raise
        except sqlite3.Error:
            con.rollback()
            raise
        return cur.lastrowid


def _query(pool: ConnectionPool, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
    with pool.checkout() as lease:
        try:
            return lease.connection.execute(sql, tuple(params)).fetchall()
        except _BROKEN_CONNECTION_ERRORS:
            lease.mark_broken()
            raise


def init(pool: ConnectionPool) -> None:
    """Create the messages table if it doesn't exist."""
    _exec(
        pool,
        """
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL,
            message TEXT NOT NULL,
            timestamp INTEGER NOT NULL
        )
        """,
    )
    _exec(pool, "CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp)")


def write_message(pool: ConnectionPool, new_message: NewMessage, *, timestamp: Optional[int] = None) -> int:
    """Store a message and return the timestamp it was recorded with."""
    stamp = int(time.time()) if timestamp is None else int(timestamp)
    _exec(
        pool,
        "INSERT INTO messages(username, message, timestamp) VALUES (?,?,?)",
        (new_message.username, new_message.message, stamp),
    )
    logger.debug("Stored message from %s at %d", new_message.username, stamp)
    return stamp


def query_messages(
    pool: ConnectionPool,
    before: Optional[int] = None,
    after: Optional[int] = None,
) -> List[Message]:
    """Return messages strictly between ``after`` and ``before``, oldest first."""
    clauses = []
    params: List[int] = []
    if before is not None:
        clauses.append("timestamp < ?")
        params.append(before)
    if after is not None:
        clauses.append("timestamp > ?")
        params.append(after)
    sql = "SELECT id, username, message, timestamp FROM messages"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY timestamp, id"
    return [Message(**dict(row)) for row in _query(pool, sql, params)]
