"""
RSS Feed Client
===============

One fetch-and-parse attempt per call, with the transport configuration
passed in explicitly:
- Proxy with a no-proxy bypass list
- DTD processing policy (prohibit, allow, ignore)
- Classified failures: transport errors versus parse errors
- Blocking (requests) and asyncio (aiohttp) variants

The client never retries; retry policy belongs to the caller.
"""

import asyncio
import calendar
import io
import re
import ssl
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import aiohttp
import certifi
import feedparser
import requests

from ..config.settings import DtdProcessing, TransportSettings
from ..database.models import FeedEntry, ParsedFeed
from ..utils.exceptions import (
    DtdProhibitedError,
    EmptyFeedError,
    FeedTransportError,
    FetchCancelledError,
    InvalidFeedUrlError,
    MalformedFeedError,
    ValidationError,
    ErrorCode,
)
from ..utils.logging import get_logger_for_component
from ..utils.validators import URLValidator


DOCTYPE_PATTERN = re.compile(
    rb"<!DOCTYPE\s[^\[>]*(\[.*?\])?\s*>", re.IGNORECASE | re.DOTALL
)

ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"

# feedparser flags these but still parses the document fully
BENIGN_BOZO_EXCEPTIONS = (
    feedparser.CharacterEncodingOverride,
    feedparser.NonXMLContentType,
)


class FeedClient:
    """Fetches a feed URL and turns the response into a ParsedFeed."""

    def __init__(self, session: Optional[requests.Session] = None, chunk_size: int = 64 * 1024):
        """Initialize feed client.

        Args:
            session: requests session to reuse (a private one is created otherwise)
            chunk_size: Body read size between cancellation checks
        """
        self.session = session or requests.Session()
        # Proxy settings come from TransportSettings only, never the environment
        self.session.trust_env = False
        self.chunk_size = chunk_size
        self.logger = get_logger_for_component("feed_client")

    def fetch(
        self,
        url: str,
        transport: TransportSettings,
        cancel_event: Optional[threading.Event] = None,
    ) -> ParsedFeed:
        """Fetch and parse a single feed.

        The response is fully read and closed before parsing starts.

        Args:
            url: Feed URL
            transport: Proxy, DTD policy and timeout to use
            cancel_event: Set by another thread to abandon the download

        Returns:
            ParsedFeed with entries in document order

        Raises:
            FeedTransportError: DNS, connection, timeout or HTTP failure, or cancellation
            FeedParseError: DTD prohibited, malformed XML, or no feed in the response
        """
        validated_url = self._validate_url(url)
        self._check_cancelled(cancel_event, validated_url)

        proxy = transport.proxy_for(validated_url)
        proxies = {"http": proxy, "https": proxy} if proxy else {}

        self.logger.debug(
            f"Fetching feed: {validated_url}" + (f" via proxy {proxy}" if proxy else "")
        )

        try:
            response = self.session.get(
                validated_url,
                timeout=transport.request_timeout,
                proxies=proxies,
                headers=self._headers(transport),
                stream=True,
            )
            try:
                response.raise_for_status()
                content = self._read_body(response, validated_url, cancel_event)
                headers = self._response_headers(response.headers)
            finally:
                response.close()

        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            reason = e.response.reason if e.response is not None else str(e)
            raise FeedTransportError(
                f"HTTP {status}: {reason}", feed_url=validated_url, status_code=status
            ) from e
        except requests.Timeout as e:
            raise FeedTransportError(
                f"Request timeout after {transport.request_timeout}s",
                feed_url=validated_url,
                error_code=ErrorCode.FEED_FETCH_TIMEOUT,
            ) from e
        except requests.RequestException as e:
            raise FeedTransportError(
                f"Failed to fetch feed: {e}", feed_url=validated_url
            ) from e

        return self.parse(content, validated_url, transport, headers)

    async def fetch_async(
        self,
        url: str,
        transport: TransportSettings,
        session: aiohttp.ClientSession,
    ) -> ParsedFeed:
        """Async version of fetch for concurrent processing.

        Cancelling the awaiting task aborts the request.

        Args:
            url: Feed URL
            transport: Proxy, DTD policy and timeout to use
            session: aiohttp session, see open_async_session

        Returns:
            ParsedFeed with entries in document order
        """
        validated_url = self._validate_url(url)
        proxy = transport.proxy_for(validated_url)

        self.logger.debug(f"Fetching feed (async): {validated_url}")

        try:
            timeout = aiohttp.ClientTimeout(total=transport.request_timeout)
            async with session.get(validated_url, proxy=proxy, timeout=timeout) as response:
                if response.status >= 400:
                    raise FeedTransportError(
                        f"HTTP {response.status}: {response.reason}",
                        feed_url=validated_url,
                        status_code=response.status,
                    )
                content = await response.read()
                headers = self._response_headers(response.headers)

        except asyncio.TimeoutError as e:
            raise FeedTransportError(
                f"Request timeout after {transport.request_timeout}s",
                feed_url=validated_url,
                error_code=ErrorCode.FEED_FETCH_TIMEOUT,
            ) from e
        except aiohttp.ClientError as e:
            raise FeedTransportError(
                f"Failed to fetch feed: {e}", feed_url=validated_url
            ) from e

        return self.parse(content, validated_url, transport, headers)

    @asynccontextmanager
    async def open_async_session(self, transport: TransportSettings) -> AsyncIterator[aiohttp.ClientSession]:
        """Get configured aiohttp session."""
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(
            ssl=ssl_context,
            limit=transport.parallel_fetches * 2,
            limit_per_host=2,
            enable_cleanup_closed=True,
        )

        async with aiohttp.ClientSession(
            connector=connector, headers=self._headers(transport)
        ) as session:
            yield session

    def parse(
        self,
        content: bytes,
        feed_url: str,
        transport: TransportSettings,
        headers: Optional[Dict[str, str]] = None,
    ) -> ParsedFeed:
        """Parse a fetched document according to the DTD policy.

        Raises:
            DtdProhibitedError: Document declares a DTD under the prohibit policy
            MalformedFeedError: Broken XML with no recoverable entries
            EmptyFeedError: Empty body or nothing feedparser recognises as a feed
        """
        if not content or not content.strip():
            raise EmptyFeedError("Feed response body is empty", feed_url=feed_url)

        content = self._apply_dtd_policy(content, feed_url, transport.dtd_processing)

        parsed = feedparser.parse(io.BytesIO(content), response_headers=headers or {})
        raw_entries = parsed.get("entries") or []

        bozo_warning = None
        if parsed.get("bozo"):
            bozo_exception = parsed.get("bozo_exception")
            if not isinstance(bozo_exception, BENIGN_BOZO_EXCEPTIONS):
                bozo_warning = str(bozo_exception or "Invalid XML structure")
                if not raw_entries:
                    raise MalformedFeedError(
                        f"Feed parse error: {bozo_warning}", feed_url=feed_url
                    )
                self.logger.info(
                    f"Feed has parse warnings but contains entries: {feed_url}"
                )

        if not raw_entries and not parsed.get("version"):
            raise EmptyFeedError(
                "Response did not contain a recognisable feed", feed_url=feed_url
            )

        entries = [self._to_entry(entry) for entry in raw_entries]
        feed_title = (parsed.get("feed") or {}).get("title")

        self.logger.debug(f"Parsed {len(entries)} entries from {feed_url}")

        return ParsedFeed(
            url=feed_url,
            entries=entries,
            title=feed_title,
            bozo_warning=bozo_warning,
        )

    def _apply_dtd_policy(
        self, content: bytes, feed_url: str, policy: DtdProcessing
    ) -> bytes:
        match = DOCTYPE_PATTERN.search(content)
        if match is None or policy == DtdProcessing.ALLOW:
            return content

        if policy == DtdProcessing.IGNORE:
            self.logger.debug(f"Ignoring DTD declaration in {feed_url}")
            return content[: match.start()] + content[match.end():]

        raise DtdProhibitedError(
            f"Feed declares a DTD and DTD processing policy is '{policy.value}'",
            feed_url=feed_url,
        )

    def _to_entry(self, entry: Any) -> FeedEntry:
        link = entry.get("link")
        if not link:
            link = next(
                (l.get("href") for l in entry.get("links", []) if l.get("href")), None
            )

        return FeedEntry(
            title=entry.get("title", ""),
            summary=entry.get("summary", ""),
            link=link or None,
            published=self._parse_date(entry),
        )

    def _parse_date(self, entry: Any) -> Optional[datetime]:
        """Parse publication date from entry, in UTC."""
        for field in ("published_parsed", "updated_parsed"):
            date_tuple = entry.get(field)
            if date_tuple:
                try:
                    # feedparser normalizes struct_time to UTC
                    return datetime.fromtimestamp(calendar.timegm(date_tuple), tz=timezone.utc)
                except (ValueError, OverflowError, TypeError):
                    continue
        return None

    def _validate_url(self, url: str) -> str:
        try:
            return URLValidator.validate_feed_url(url)
        except ValidationError as e:
            raise InvalidFeedUrlError(
                f"Invalid feed URL '{url}': {e.user_message}", feed_url=url
            ) from e

    def _read_body(
        self,
        response: requests.Response,
        feed_url: str,
        cancel_event: Optional[threading.Event],
    ) -> bytes:
        chunks: List[bytes] = []
        for chunk in response.iter_content(chunk_size=self.chunk_size):
            self._check_cancelled(cancel_event, feed_url)
            if chunk:
                chunks.append(chunk)
        return b"".join(chunks)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event], feed_url: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise FetchCancelledError("Fetch cancelled", feed_url=feed_url)

    @staticmethod
    def _headers(transport: TransportSettings) -> Dict[str, str]:
        return {
            "User-Agent": transport.user_agent,
            "Accept": ACCEPT_HEADER,
        }

    @staticmethod
    def _response_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
        """Response headers keyed in lowercase, the form feedparser looks up."""
        return {key.lower(): value for key, value in (headers or {}).items()}
