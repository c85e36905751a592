"""
FeedMark Storage Layer
======================

Repository pattern implementations for data access abstraction.
"""

from .source_repository import SourceRepository, has_feed_url

__all__ = [
    "SourceRepository",
    "has_feed_url",
]
