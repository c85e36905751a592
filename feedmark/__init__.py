"""
FeedMark - Incremental RSS Source Importer
==========================================

Fetches the feeds of configured sources, keeps the entries published since
each source's last pull, and emits them as candidate documents.

Main Components:
- Database: SQLite with connection pooling and schema management
- Configuration: environment variables and .env with Pydantic validation
- Ingestion: feed client, entry filter, watermark store, import pipeline
- Importers: host-facing RSS importer plugin
"""

__version__ = "1.0.0"
__author__ = "FeedMark Development Team"
__description__ = "Incremental RSS source importer"

# Core imports for easy access
from .config.settings import get_settings
from .database.connection import get_db_manager
from .database.schema import DatabaseSchema
from .utils.logging import configure_application_logging, get_logger_for_component
from .utils.exceptions import FeedMarkError

__all__ = [
    "get_settings",
    "get_db_manager",
    "DatabaseSchema",
    "configure_application_logging",
    "get_logger_for_component",
    "FeedMarkError",
]
