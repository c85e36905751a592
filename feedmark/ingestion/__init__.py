"""
FeedMark Ingestion Module
=========================

Incremental feed ingestion components.

This module handles:
- Feed fetching and parsing with proxy and DTD policy
- Watermark and keyword filtering of entries
- Per-source watermark persistence
- The import pipeline tying them together
"""
