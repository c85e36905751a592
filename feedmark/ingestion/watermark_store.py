"""
Watermark Store
===============

Typed access to the ``rss`` block of a source's metadata. The block is
validated here, once, instead of being picked apart wherever it is used,
and writes of a source's watermark are serialized per source.
"""

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from ..database.models import RSS_METADATA_KEY, RssMetadata, Source, ensure_utc
from ..storage.source_repository import SourceRepository
from ..utils.exceptions import (
    DatabaseError,
    SourceMisconfiguredError,
    WatermarkPersistenceError,
)
from ..utils.logging import get_logger_for_component


class WatermarkStore:
    """Reads and persists per-source RSS pull state."""

    def __init__(self, repository: SourceRepository):
        """Initialize watermark store.

        Args:
            repository: Source repository used for persistence
        """
        self.repository = repository
        self.logger = get_logger_for_component("watermark_store")
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def read(self, source: Source) -> RssMetadata:
        """Validated RSS metadata of ``source``.

        Raises:
            SourceMisconfiguredError: If the block is absent or invalid
        """
        raw = source.metadata.get(RSS_METADATA_KEY) if source.metadata else None
        if raw is None:
            raise SourceMisconfiguredError(
                f"Source {source.source_id} has no rss metadata", source_id=source.source_id
            )
        if not isinstance(raw, dict):
            raise SourceMisconfiguredError(
                f"Source {source.source_id} rss metadata is not an object",
                source_id=source.source_id,
            )

        try:
            return RssMetadata.model_validate(raw)
        except PydanticValidationError as e:
            raise SourceMisconfiguredError(
                f"Source {source.source_id} rss metadata is invalid: {e.error_count()} error(s)",
                source_id=source.source_id,
                context={"errors": e.errors(include_url=False)},
            ) from e
        except (TypeError, ValueError) as e:
            raise SourceMisconfiguredError(
                f"Source {source.source_id} rss metadata is invalid: {e}",
                source_id=source.source_id,
            ) from e

    def advance(
        self,
        source: Source,
        metadata: RssMetadata,
        new_last_pull: datetime,
    ) -> Source:
        """Persist ``new_last_pull`` as the watermark of ``source``.

        The stored watermark never moves backwards: a value older than the
        current one is ignored.

        Returns:
            The updated source as written

        Raises:
            WatermarkPersistenceError: If the repository write fails
        """
        new_last_pull = ensure_utc(new_last_pull)
        previous = metadata.last_pull
        if previous is not None and new_last_pull < previous:
            self.logger.warning(
                f"Refusing to move watermark of {source.source_id} back from "
                f"{previous.isoformat()} to {new_last_pull.isoformat()}",
                extra={"source_id": source.source_id},
            )
            new_last_pull = previous

        updated_metadata = metadata.model_copy(update={"last_pull": new_last_pull})
        updated_source = source.with_rss_metadata(updated_metadata)

        with self._lock_for(source.source_id):
            try:
                self.repository.update_source(updated_source)
            except DatabaseError as e:
                raise WatermarkPersistenceError(
                    f"Failed to persist watermark of {source.source_id}: {e}",
                    source_id=source.source_id,
                ) from e

        self.logger.debug(
            f"Watermark of {source.source_id} set to {new_last_pull.isoformat()}",
            extra={"source_id": source.source_id},
        )
        return updated_source

    async def advance_async(
        self,
        source: Source,
        metadata: RssMetadata,
        new_last_pull: datetime,
    ) -> Source:
        """Run advance in a worker thread so storage I/O does not block the loop."""
        return await asyncio.to_thread(self.advance, source, metadata, new_last_pull)

    def _lock_for(self, source_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(source_id)
            if lock is None:
                lock = self._locks[source_id] = threading.Lock()
            return lock

    def current(self, source_id: str) -> Optional[RssMetadata]:
        """Re-read the stored metadata of a source, None if unusable."""
        source = self.repository.get_source(source_id)
        if source is None:
            return None
        try:
            return self.read(source)
        except SourceMisconfiguredError:
            return None
