"""
FeedMark Importers
==================

Host-facing importer plugins.
"""

from .rss_importer import (
    IMPORTER_DESCRIPTION,
    IMPORTER_ID,
    IMPORTER_NAME,
    RssImporterSettings,
    RssSourceImporter,
)

__all__ = [
    "IMPORTER_DESCRIPTION",
    "IMPORTER_ID",
    "IMPORTER_NAME",
    "RssImporterSettings",
    "RssSourceImporter",
]
