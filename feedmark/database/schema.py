"""
FeedMark Database Schema
========================

SQLite schema for the source repository. Each source row carries its
metadata as a JSON object; the importer owns the ``rss`` entry of it.
"""

import sqlite3
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class DatabaseSchema:
    """Database schema manager for the FeedMark SQLite database."""

    def __init__(self, db_path: str = "data/feedmark.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def create_tables(self) -> None:
        """Create all database tables."""
        with sqlite3.connect(self.db_path) as conn:
            self._create_sources_table(conn)
            self._create_indexes(conn)
            conn.commit()
            logger.info("Database schema created successfully")

    def _create_sources_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sources (
                source_id TEXT PRIMARY KEY,
                title TEXT,
                feed_url TEXT NOT NULL DEFAULT '',
                metadata TEXT NOT NULL DEFAULT '{}',  -- JSON object of named sub-configurations
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP
            )
        """
        )

    def _create_indexes(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sources_feed_url ON sources(feed_url)"
        )

    def verify_schema(self) -> bool:
        """Check that the expected tables exist."""
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='sources'"
            ).fetchone()
            return row is not None
