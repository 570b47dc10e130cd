"""Shared SQLite plumbing for the durable stores."""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

import structlog

from autoentry.errors import PersistenceError

logger = structlog.get_logger(__name__)


class SQLiteStore:
    """Base for stores that open one connection per operation."""

    table: str = ""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        """Create tables and indexes."""
        raise NotImplementedError

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            if conn:
                conn.rollback()
            logger.error("Database error", db_path=str(self.db_path), table=self.table,
                         error=str(e))
            raise PersistenceError(f"Database error: {e}", target=self.table) from e
        finally:
            if conn:
                conn.close()
