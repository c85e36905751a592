"""
FeedMark Database Connection Management
=======================================

Pooled SQLite connections for the source repository. Connections are opened
lazily up to the pool size and handed out one per caller, so the blocking
pipeline and the worker threads used by async runs never share one.
"""

import sqlite3
import threading
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional
from queue import Queue, Empty, Full

logger = logging.getLogger(__name__)

SLOW_ACQUIRE_SECONDS = 1.0

PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA temp_store = MEMORY",
)


class DatabaseConnection:
    """Thread-safe SQLite connection pool."""

    def __init__(
        self,
        db_path: str = "data/feedmark.db",
        pool_size: int = 5,
        busy_timeout: float = 30.0,
    ):
        """Initialize the pool; no connection is opened yet.

        Args:
            db_path: SQLite database file
            pool_size: Connections kept for reuse
            busy_timeout: Seconds a writer waits for a locked database
        """
        self.db_path = Path(db_path)
        self.pool_size = pool_size
        self.busy_timeout = busy_timeout
        self._idle: Queue = Queue(maxsize=pool_size)
        self._open = 0
        self._open_lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        for pragma in PRAGMAS:
            conn.execute(pragma)

        with self._open_lock:
            self._open += 1
            count = self._open
        logger.debug(f"Opened SQLite connection {count} to {self.db_path}")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._idle.get_nowait()
        except Empty:
            pass

        with self._open_lock:
            may_open = self._open < self.pool_size
        if may_open:
            return self._connect()

        started = time.monotonic()
        try:
            conn = self._idle.get(timeout=self.busy_timeout)
        except Empty:
            logger.warning(f"All {self.pool_size} connections busy, opening an extra one")
            return self._connect()

        waited = time.monotonic() - started
        if waited > SLOW_ACQUIRE_SECONDS:
            logger.warning(f"Waited {waited:.2f}s for a database connection")
        return conn

    def _release(self, conn: sqlite3.Connection) -> None:
        try:
            self._idle.put_nowait(conn)
        except Full:
            conn.close()
            with self._open_lock:
                self._open -= 1

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection for the duration of the block.

        Usage:
            with db.get_connection() as conn:
                rows = conn.execute("SELECT * FROM sources").fetchall()
        """
        conn = self._acquire()
        try:
            yield conn
        except sqlite3.Error as e:
            logger.error(f"SQLite error on {self.db_path.name}: {e}")
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            self._release(conn)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run the block as one write transaction.

        The write lock is taken up front, so concurrent writers queue instead
        of failing on upgrade. Commits on success, rolls back otherwise.
        """
        with self.get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def execute_query(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        """Run a read query and fetch all rows."""
        with self.get_connection() as conn:
            return conn.execute(query, params).fetchall()

    def get_database_info(self) -> Dict[str, Any]:
        """Size and row counts for status output."""
        with self.get_connection() as conn:
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            sources = conn.execute("SELECT COUNT(*) FROM sources").fetchone()[0]

        return {
            "path": str(self.db_path),
            "database_size_mb": page_count * page_size / (1024 * 1024),
            "source_count": sources,
            "open_connections": self._open,
        }

    def close_all_connections(self) -> None:
        """Close idle connections; borrowed ones close when returned to a full pool."""
        closed = 0
        while True:
            try:
                conn = self._idle.get_nowait()
            except Empty:
                break
            conn.close()
            closed += 1

        with self._open_lock:
            self._open = max(0, self._open - closed)
        logger.debug(f"Closed {closed} SQLite connection(s) to {self.db_path}")


_db_manager: Optional[DatabaseConnection] = None
_db_manager_lock = threading.Lock()


def get_db_manager(db_path: str = "data/feedmark.db", pool_size: int = 5) -> DatabaseConnection:
    """Process-wide connection pool, created on first use."""
    global _db_manager

    with _db_manager_lock:
        if _db_manager is None:
            _db_manager = DatabaseConnection(db_path, pool_size=pool_size)
        return _db_manager
