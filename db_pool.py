"""SQLite connection pool shared by the attempt store."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool."""

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 30.0):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with proper settings."""
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
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
                # Uncommitted work never leaks to the next borrower
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                try:
                    connection.close()
                except sqlite3.Error:
                    pass
                with self._lock:
                    self._created_connections -= 1

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run the enclosed statements as one ``BEGIN IMMEDIATE`` unit.

        The write lock is taken up front so a read-check-write sequence cannot
        interleave with another writer. Commits on normal exit and rolls back
        when the block raises.
        """
        with self.get_connection() as con:
            if con.in_transaction:
                con.rollback()
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.rollback()
                raise
            con.commit()

    def close_all(self) -> None:
        """Close every idle pooled connection."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            try:
                connection.close()
            except sqlite3.Error:
                pass
            with self._lock:
                self._created_connections -= 1
