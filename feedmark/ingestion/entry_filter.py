"""
Entry Filter
============

Decides whether a feed entry becomes a candidate document. The decision
depends only on its inputs, so evaluating the same entry twice always gives
the same answer.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from ..database.models import FeedEntry, ensure_utc


class ExclusionReason(str, Enum):
    """Why an entry was not imported."""
    MISSING_LINK = "missing_link"
    NOT_NEWER = "not_newer"
    KEYWORD_MISMATCH = "keyword_mismatch"


@dataclass(frozen=True)
class FilterDecision:
    """Result of evaluating one entry."""
    included: bool
    reason: Optional[ExclusionReason] = None

    def __bool__(self) -> bool:
        return self.included


INCLUDED = FilterDecision(included=True)


class EntryFilter:
    """Watermark and keyword filter for feed entries."""

    def __init__(self, case_sensitive: bool = True):
        """Initialize entry filter.

        Args:
            case_sensitive: Whether keywords must match token case exactly
        """
        self.case_sensitive = case_sensitive

    def evaluate(
        self,
        entry: FeedEntry,
        last_pull: Optional[datetime],
        keywords: Optional[Sequence[str]] = None,
    ) -> FilterDecision:
        """Evaluate an entry against the source watermark and keywords.

        Args:
            entry: Feed entry
            last_pull: Source watermark, None if never pulled
            keywords: Source keywords, empty or None for no filtering

        Returns:
            FilterDecision with the exclusion reason when excluded
        """
        if not entry.link:
            return FilterDecision(False, ExclusionReason.MISSING_LINK)

        if not self.is_newer(entry, last_pull):
            return FilterDecision(False, ExclusionReason.NOT_NEWER)

        if keywords and not self.matches_keywords(entry, keywords):
            return FilterDecision(False, ExclusionReason.KEYWORD_MISMATCH)

        return INCLUDED

    def should_include(
        self,
        entry: FeedEntry,
        last_pull: Optional[datetime],
        keywords: Optional[Sequence[str]] = None,
    ) -> bool:
        return self.evaluate(entry, last_pull, keywords).included

    @staticmethod
    def is_newer(entry: FeedEntry, last_pull: Optional[datetime]) -> bool:
        """Strictly after the watermark; anything goes before the first pull."""
        if last_pull is None:
            return True
        if entry.published is None:
            return False
        return entry.published > ensure_utc(last_pull)

    def matches_keywords(self, entry: FeedEntry, keywords: Sequence[str]) -> bool:
        """True when a keyword equals a whitespace-separated token of title and summary.

        Title and summary are joined with a space, so the last word of the
        title and the first word of the summary stay separate tokens rather
        than fusing into one.
        """
        tokens = f"{entry.title} {entry.summary}".split()
        if self.case_sensitive:
            wanted = set(keywords)
            return any(token in wanted for token in tokens)

        wanted = {keyword.casefold() for keyword in keywords}
        return any(token.casefold() in wanted for token in tokens)
