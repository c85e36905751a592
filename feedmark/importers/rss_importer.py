"""
RSS Source Importer
===================

Host-facing entry points of the RSS importer. An importer instance carries
no configuration of its own: enablement, keywords and pull state all live
on the sources it reads.
"""

import threading
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Type

from pydantic import BaseModel, ConfigDict

from ..config.settings import FeedMarkSettings, get_settings
from ..database.connection import DatabaseConnection, get_db_manager
from ..database.models import CandidateDocument, ImportRunReport
from ..ingestion.feed_client import FeedClient
from ..ingestion.pipeline import IngestionPipeline
from ..storage.source_repository import SourceRepository
from ..utils.logging import get_logger_for_component


IMPORTER_ID = "0ade9c2e-165c-408e-93db-06483af6d07a"
IMPORTER_NAME = "RSS Source Importer"
IMPORTER_DESCRIPTION = "Import news feed from sources"


class RssImporterSettings(BaseModel):
    """Per-instance settings of the RSS importer (none)."""
    model_config = ConfigDict(extra="forbid")


class RssSourceImporter:
    """Pulls candidate documents from the RSS feeds of all sources."""

    id = IMPORTER_ID
    name = IMPORTER_NAME
    description = IMPORTER_DESCRIPTION

    def __init__(
        self,
        repository: Optional[SourceRepository] = None,
        settings: Optional[FeedMarkSettings] = None,
        feed_client: Optional[FeedClient] = None,
        db_connection: Optional[DatabaseConnection] = None,
    ):
        """Initialize importer.

        Args:
            repository: Source repository (default: one over the configured database)
            settings: Application settings (default: global settings)
            feed_client: Feed client override
            db_connection: Database connection used when no repository is given
        """
        self.settings = settings or get_settings()
        if repository is None:
            db = db_connection or get_db_manager(
                str(self.settings.database.path), self.settings.database.pool_size
            )
            repository = SourceRepository(db)

        self.repository = repository
        self.pipeline = IngestionPipeline(
            repository, feed_client=feed_client, settings=self.settings
        )
        self.logger = get_logger_for_component("rss_importer")

    def pull(
        self,
        last_pull: Optional[datetime] = None,
        limit: int = 0,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[CandidateDocument]:
        """Lazily yield new documents of every enabled source.

        Args:
            last_pull: Host's last pull time, only logged
            limit: Stop starting new sources after this many documents (0: no cap)
            cancel_event: Abandon remaining sources once set
        """
        self.logger.debug(f"{self.name} pull requested")
        return self.pipeline.run(last_pull_hint=last_pull, limit=limit, cancel_event=cancel_event)

    def pull_async(
        self,
        last_pull: Optional[datetime] = None,
        limit: int = 0,
    ) -> AsyncIterator[CandidateDocument]:
        """Async variant of pull with concurrent feed fetches."""
        self.logger.debug(f"{self.name} async pull requested")
        return self.pipeline.run_async(last_pull_hint=last_pull, limit=limit)

    @property
    def last_report(self) -> Optional[ImportRunReport]:
        return self.pipeline.last_report

    @staticmethod
    def get_settings_type() -> Type[RssImporterSettings]:
        return RssImporterSettings

    @staticmethod
    def get_settings_schema() -> Dict[str, Any]:
        return RssImporterSettings.model_json_schema()
