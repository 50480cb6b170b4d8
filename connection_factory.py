"""Connection factories used by the pool to open, check and close connections."""
import logging
import sqlite3
from typing import Any

logger = logging.getLogger(__name__)


class ConnectionFactory:
    """Capability set the pool needs from a backing store.

    The pool never looks inside a connection; everything it knows about one
    goes through these three calls.
    """

    def open(self) -> Any:
        raise NotImplementedError

    def check(self, connection: Any) -> bool:
        raise NotImplementedError

    def close(self, connection: Any) -> None:
        raise NotImplementedError


class SQLiteConnectionFactory(ConnectionFactory):
    """Opens SQLite connections that can be shared across worker threads."""

    def __init__(self, database: str, *, timeout: float = 5.0):
        self.database = database
        self.timeout = timeout

    def open(self) -> sqlite3.Connection:
        """Create a new SQLite connection with proper settings."""
        # Pooled connections move between request threads.
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        # Enable foreign key constraints
        conn.execute("PRAGMA foreign_keys = ON")
        logger.debug("Opened SQLite connection to %s", self.database)
        return conn

    def check(self, connection: sqlite3.Connection) -> bool:
        try:
            connection.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            logger.warning("SQLite health check failed: %s", exc)
            return False
        return True

    def close(self, connection: sqlite3.Connection) -> None:
        try:
            # Drop any transaction a failed request left open
            connection.rollback()
        except sqlite3.Error:
            logger.debug("Rollback before close failed", exc_info=True)
        connection.close()
