"""
FeedMark Input Validators
=========================

Feed URL checks for the CLI plus the proxy bypass helpers used by the feed
client.
"""

import re
from fnmatch import fnmatch
from typing import Iterable, List, Optional
from urllib.parse import urlparse, urlunparse

from .exceptions import ValidationError, ErrorCode

FEED_PATH_HINT = re.compile(
    r"(\.(rss|xml|atom)$)|(/(rss|feeds?|atom)/?$)"
)


class URLValidator:
    """Normalization of feed URLs entered by a user."""

    ALLOWED_SCHEMES = ("http", "https")

    @staticmethod
    def _invalid(message: str, code: ErrorCode = ErrorCode.VALIDATION_INVALID_FORMAT) -> ValidationError:
        return ValidationError(message, error_code=code, field_name="url")

    @classmethod
    def validate_feed_url(cls, url: str) -> str:
        """Return ``url`` trimmed, with lowercase scheme and host, without fragment.

        Raises:
            ValidationError: empty, non-http(s) or host-less URL
        """
        if not isinstance(url, str) or not url.strip():
            raise cls._invalid("URL is required", ErrorCode.VALIDATION_REQUIRED_FIELD)

        try:
            parts = urlparse(url.strip())
            host = parts.hostname
        except ValueError as e:
            raise cls._invalid(f"Invalid URL format: {e}") from e

        if parts.scheme.lower() not in cls.ALLOWED_SCHEMES:
            raise cls._invalid(f"URL scheme must be one of {', '.join(cls.ALLOWED_SCHEMES)}")
        if not host:
            raise cls._invalid("URL must include a hostname")

        normalized = parts._replace(
            scheme=parts.scheme.lower(),
            netloc=parts.netloc.lower(),
            path=parts.path or "/",
            fragment="",
        )
        return urlunparse(normalized)

    @staticmethod
    def is_likely_feed_url(url: str) -> bool:
        """Heuristic on the path: ends in .rss/.xml/.atom or /rss, /feed, /feeds, /atom."""
        path = urlparse(url.lower()).path
        return FEED_PATH_HINT.search(path) is not None


def parse_no_proxy(value: Optional[str]) -> List[str]:
    """Split a no-proxy list on commas and semicolons.

    Entries are trimmed and empty entries dropped.

    >>> parse_no_proxy(" intranet.local ;, *.corp ,")
    ['intranet.local', '*.corp']
    """
    if not value:
        return []
    return [part.strip() for part in re.split(r"[,;]", value) if part.strip()]


def host_bypasses_proxy(host: Optional[str], no_proxy: Iterable[str]) -> bool:
    """Check whether ``host`` matches an entry of the bypass list.

    An entry matches the exact host, any subdomain of it (``corp.example``
    covers ``www.corp.example``; a leading dot is tolerated), or, when it
    contains ``*`` or ``?``, the host as a glob pattern.
    """
    if not host:
        return False
    host = host.lower()

    for entry in no_proxy:
        entry = entry.lower()
        if entry == "*":
            return True
        if "*" in entry or "?" in entry:
            if fnmatch(host, entry):
                return True
            continue
        domain = entry.lstrip(".")
        if host == domain or host.endswith("." + domain):
            return True

    return False
