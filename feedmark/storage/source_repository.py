"""
Source Repository
=================

Repository pattern implementation for syndication sources.
Provides the database abstraction the importer reads sources from and
writes updated pull state to.
"""

import sqlite3
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..database.connection import DatabaseConnection
from ..database.models import Source
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import DatabaseError, SourceRepositoryError, ErrorCode


SourcePredicate = Callable[[Source], bool]


def has_feed_url(source: Source) -> bool:
    """Predicate selecting sources with a non-empty feed URL."""
    return source.has_feed_url()


class SourceRepository:
    """Repository for managing sources in the database."""

    def __init__(self, db_connection: DatabaseConnection):
        """Initialize source repository.

        Args:
            db_connection: Database connection manager
        """
        self.db = db_connection
        self.logger = get_logger_for_component("source_repository")

    def get_all_sources(self, predicate: Optional[SourcePredicate] = None) -> List[Source]:
        """Get every source, optionally narrowed by ``predicate``.

        Args:
            predicate: Callable deciding which sources to return

        Returns:
            List of Source objects ordered by creation

        Raises:
            SourceRepositoryError: If the sources cannot be read
        """
        try:
            rows = self.db.execute_query(
                "SELECT * FROM sources ORDER BY created_at, source_id"
            )
        except sqlite3.Error as e:
            self.logger.error(f"Failed to enumerate sources: {e}")
            raise SourceRepositoryError(f"Failed to enumerate sources: {e}") from e

        sources = []
        for row in rows:
            try:
                sources.append(self._row_to_source(row))
            except ValueError as e:
                # Unreadable metadata JSON only takes that one source out
                self.logger.warning(f"Skipping unreadable source {row['source_id']}: {e}")

        if predicate is None:
            return sources
        return [source for source in sources if predicate(source)]

    def get_source(self, source_id: str) -> Optional[Source]:
        """Get source by ID.

        Args:
            source_id: Source ID

        Returns:
            Source object if found, None otherwise
        """
        try:
            with self.db.get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM sources WHERE source_id = ?", (source_id,)
                ).fetchone()

                return self._row_to_source(row) if row else None

        except sqlite3.Error as e:
            self.logger.error(f"Failed to get source {source_id}: {e}")
            raise DatabaseError(
                f"Failed to get source {source_id}: {e}", error_code=ErrorCode.DATABASE_ERROR
            ) from e

    def create_source(self, source: Source) -> str:
        """Create a new source in the database.

        Args:
            source: Source object to create

        Returns:
            Source ID

        Raises:
            DatabaseError: If database operation fails
        """
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO sources (source_id, title, feed_url, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """,
                    (
                        source.source_id,
                        source.title,
                        source.feed_url,
                        source.metadata_json(),
                        (source.created_at or datetime.now(timezone.utc)).isoformat(),
                    ),
                )

            self.logger.info(f"Created source {source.source_id}: {source.feed_url or '-'}")
            return source.source_id

        except sqlite3.IntegrityError as e:
            raise DatabaseError(
                f"Source {source.source_id} already exists",
                error_code=ErrorCode.DATABASE_CONSTRAINT,
                recoverable=False,
            ) from e
        except sqlite3.Error as e:
            self.logger.error(f"Failed to create source: {e}")
            raise DatabaseError(
                f"Failed to create source: {e}", error_code=ErrorCode.DATABASE_ERROR
            ) from e

    def update_source(self, source: Source) -> None:
        """Write back title, feed URL and metadata of ``source``.

        The update commits in its own transaction.

        Raises:
            DatabaseError: If the source does not exist or the write fails
        """
        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE sources
                    SET title = ?, feed_url = ?, metadata = ?, updated_at = ?
                    WHERE source_id = ?
                """,
                    (
                        source.title,
                        source.feed_url,
                        source.metadata_json(),
                        datetime.now(timezone.utc).isoformat(),
                        source.source_id,
                    ),
                )
                updated = cursor.rowcount

        except sqlite3.Error as e:
            self.logger.error(f"Failed to update source {source.source_id}: {e}")
            raise DatabaseError(
                f"Failed to update source {source.source_id}: {e}",
                error_code=ErrorCode.DATABASE_TRANSACTION,
            ) from e

        if updated == 0:
            raise DatabaseError(
                f"No source found with ID {source.source_id}",
                error_code=ErrorCode.DATABASE_ERROR,
                recoverable=False,
            )

        self.logger.debug(f"Updated source {source.source_id}")

    def delete_source(self, source_id: str) -> bool:
        """Delete a source.

        Returns:
            True if a row was deleted
        """
        try:
            with self.db.transaction() as conn:
                cursor = conn.execute("DELETE FROM sources WHERE source_id = ?", (source_id,))
                deleted = cursor.rowcount > 0
        except sqlite3.Error as e:
            self.logger.error(f"Failed to delete source {source_id}: {e}")
            raise DatabaseError(
                f"Failed to delete source {source_id}: {e}", error_code=ErrorCode.DATABASE_ERROR
            ) from e

        if deleted:
            self.logger.info(f"Deleted source {source_id}")
        else:
            self.logger.warning(f"No source found with ID {source_id}")
        return deleted

    def _row_to_source(self, row) -> Source:
        """Convert database row to Source object."""
        return Source(
            source_id=row["source_id"],
            title=row["title"],
            feed_url=row["feed_url"],
            metadata=row["metadata"],
            created_at=row["created_at"],
        )
