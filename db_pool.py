"""SQLite connection pool shared by request handlers and worker threads."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are handed between threads (FastAPI's threadpool, the
    embedding executor and ``asyncio.to_thread``), so they are opened with
    ``check_same_thread=False`` and only ever used by one borrower at a time.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout_ms: int = 5000):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout_ms = busy_timeout_ms
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database,
            timeout=self.busy_timeout_ms / 1000.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        if self.database != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Created new connection (total: %d)", self._created_connections)
            if connection is None:
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                self._discard(connection)

    def _discard(self, connection: sqlite3.Connection) -> None:
        try:
            connection.close()
        except sqlite3.Error:
            logger.debug("Closing broken connection failed", exc_info=True)
        with self._lock:
            self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection; used on shutdown and in tests."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            self._discard(connection)
