"""
PyTest Configuration and Fixtures
=================================

Shared fixtures and configuration for FeedMark tests.
"""

import pytest
import tempfile
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Union

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before any imports
os.environ["FEEDMARK_DEBUG"] = "true"
os.environ["FEEDMARK_LOGGING__CONSOLE_LOGGING"] = "false"
os.environ["FEEDMARK_LOGGING__FILE_PATH"] = ""


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def temp_db():
    """Create a temporary database with the FeedMark schema."""
    from feedmark.database.schema import DatabaseSchema

    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    DatabaseSchema(db_path).create_tables()

    yield db_path

    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except FileNotFoundError:
            pass


@pytest.fixture
def db_connection(temp_db):
    """Create a database connection manager for testing."""
    from feedmark.database.connection import DatabaseConnection

    connection = DatabaseConnection(temp_db, pool_size=2)
    yield connection

    connection.close_all_connections()


@pytest.fixture
def repository(db_connection):
    """Source repository over the temporary database."""
    from feedmark.storage.source_repository import SourceRepository

    return SourceRepository(db_connection)


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def test_settings(temp_db):
    """Settings pointing at the temporary database, without file logging."""
    from feedmark.config.settings import DatabaseSettings, FeedMarkSettings, LoggingSettings

    return FeedMarkSettings(
        database=DatabaseSettings(path=temp_db, pool_size=2),
        logging=LoggingSettings(file_path=None, console_logging=False),
    )


# ============================================================================
# Source Fixtures
# ============================================================================


def make_rss_source(
    source_id: str,
    feed_url: str,
    enabled: bool = True,
    keywords: List[str] = None,
    last_pull: datetime = None,
):
    """Build a source carrying an rss metadata block."""
    from feedmark.database.models import RssMetadata, Source

    rss = RssMetadata(enabled=enabled, keywords=keywords or [], last_pull=last_pull)
    return Source(source_id=source_id, title=source_id.title(), feed_url=feed_url).with_rss_metadata(rss)


@pytest.fixture
def rss_source_factory():
    """Factory fixture for sources with rss metadata."""
    return make_rss_source


@pytest.fixture
def sample_sources(repository):
    """Three enabled sources stored in the repository."""
    sources = [
        make_rss_source("alpha", "https://alpha.example.com/feed.xml"),
        make_rss_source("bravo", "https://bravo.example.com/rss"),
        make_rss_source("charlie", "https://charlie.example.com/atom.xml"),
    ]
    for source in sources:
        repository.create_source(source)
    return sources


# ============================================================================
# Feed Fixtures
# ============================================================================


def utc(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


@pytest.fixture
def entry_factory():
    """Factory for FeedEntry objects with sensible defaults."""
    from feedmark.database.models import FeedEntry

    def _make(title="Entry", summary="", link="https://example.com/item", published=None):
        return FeedEntry(title=title, summary=summary, link=link, published=published)

    return _make


class StubFeedClient:
    """Feed client double returning canned feeds or raising canned errors per URL."""

    def __init__(self, responses: Dict[str, Union[object, Exception]] = None):
        self.responses = dict(responses or {})
        self.fetched: List[str] = []

    def _respond(self, url):
        self.fetched.append(url)
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response

    def fetch(self, url, transport, cancel_event=None):
        return self._respond(url)

    async def fetch_async(self, url, transport, session):
        return self._respond(url)

    @asynccontextmanager
    async def open_async_session(self, transport):
        yield object()


@pytest.fixture
def stub_client():
    """Empty StubFeedClient; tests fill ``responses``."""
    return StubFeedClient()


def make_feed(url: str, entries: list):
    from feedmark.database.models import ParsedFeed

    return ParsedFeed(url=url, entries=list(entries), title="Test Feed")


# ============================================================================
# RSS Documents
# ============================================================================


RSS_TWO_ENTRIES = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Feed</title>
    <link>https://example.com/</link>
    <description>Example</description>
    <item>
      <title>First post</title>
      <link>https://example.com/first</link>
      <description>Alpha news of the day</description>
      <pubDate>Mon, 01 Jan 2024 00:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Third post</title>
      <link>https://example.com/third</link>
      <description>Beta news of the week</description>
      <pubDate>Wed, 03 Jan 2024 00:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""

RSS_WITH_DTD = b"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE rss PUBLIC "-//Netscape Communications//DTD RSS 0.91//EN"
  "http://my.netscape.com/publish/formats/rss-0.91.dtd">
<rss version="0.91">
  <channel>
    <title>Legacy Feed</title>
    <link>https://legacy.example.com/</link>
    <description>Legacy</description>
    <item>
      <title>Old school</title>
      <link>https://legacy.example.com/old</link>
      <description>Still here</description>
    </item>
  </channel>
</rss>
"""

RSS_EMPTY_CHANNEL = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Quiet Feed</title>
    <link>https://quiet.example.com/</link>
    <description>Nothing yet</description>
  </channel>
</rss>
"""


@pytest.fixture
def rss_two_entries():
    return RSS_TWO_ENTRIES


@pytest.fixture
def rss_with_dtd():
    return RSS_WITH_DTD


@pytest.fixture
def rss_empty_channel():
    return RSS_EMPTY_CHANNEL
