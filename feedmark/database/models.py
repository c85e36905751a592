"""
FeedMark Data Models
====================

Pydantic data models for sources, their RSS pull state and the candidate
documents emitted by the importer, plus the transient feed structures and
run statistics.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any
from dataclasses import dataclass, field
from pydantic import AliasChoices, BaseModel, Field, field_validator
import json


RSS_METADATA_KEY = "rss"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RssMetadata(BaseModel):
    """Per-source pull state stored under ``Source.metadata["rss"]``."""
    enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices("enabled", "Enabled"),
        description="Whether entries of this source are imported",
    )
    keywords: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("keywords", "Keywords"),
        description="Entries must contain one of these tokens; empty means no filtering",
    )
    last_pull: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("last_pull", "lastPull", "LastPull"),
        description="Watermark: latest publish date already ingested",
    )

    @field_validator("keywords", mode="before")
    @classmethod
    def validate_keywords(cls, v):
        """Accept null and drop blank keywords, keeping order."""
        if v is None:
            return []
        if not isinstance(v, (list, tuple)):
            raise ValueError("keywords must be a list of strings")
        return [k.strip() for k in v if isinstance(k, str) and k.strip()]

    @field_validator("last_pull")
    @classmethod
    def validate_last_pull(cls, v):
        """Normalize to UTC; the year-1 sentinel means never pulled."""
        if v is None or v.year <= 1:
            return None
        return ensure_utc(v)

    def to_metadata(self) -> Dict[str, Any]:
        """Serialize for storage in the source metadata JSON."""
        return {
            "enabled": self.enabled,
            "keywords": list(self.keywords),
            "last_pull": self.last_pull.isoformat() if self.last_pull else None,
        }

    def __str__(self) -> str:
        state = self.last_pull.isoformat() if self.last_pull else "never"
        return f"RssMetadata(enabled={self.enabled}, last_pull={state})"


class Source(BaseModel):
    """Syndication source as kept by the source repository."""
    source_id: str = Field(..., min_length=1, description="Unique source identifier")
    title: Optional[str] = Field(default=None, max_length=255, description="Source display name")
    feed_url: str = Field(default="", description="RSS/Atom feed URL, empty when the source has none")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Named sub-configurations")
    created_at: Optional[datetime] = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("feed_url", mode="before")
    @classmethod
    def validate_feed_url(cls, v):
        return (v or "").strip()

    @field_validator("metadata", mode="before")
    @classmethod
    def validate_metadata(cls, v):
        """Accept the JSON text stored in the database."""
        if v is None:
            return {}
        if isinstance(v, str):
            return json.loads(v) if v.strip() else {}
        return v

    def has_feed_url(self) -> bool:
        return bool(self.feed_url)

    def metadata_json(self) -> str:
        """Get metadata as JSON string for database storage."""
        return json.dumps(self.metadata, default=str)

    def with_rss_metadata(self, rss: RssMetadata) -> "Source":
        """Copy of this source with its ``rss`` block replaced."""
        metadata = dict(self.metadata)
        metadata[RSS_METADATA_KEY] = rss.to_metadata()
        return self.model_copy(update={"metadata": metadata})

    @property
    def display_name(self) -> str:
        return self.title or self.source_id

    def __str__(self) -> str:
        return f"Source({self.display_name}:{self.feed_url or '-'})"


@dataclass
class FeedEntry:
    """One entry of a fetched feed, normalized."""

    title: str = ""
    summary: str = ""
    link: Optional[str] = None
    published: Optional[datetime] = None

    def __post_init__(self):
        self.title = self.title or ""
        self.summary = self.summary or ""
        self.published = ensure_utc(self.published)


@dataclass
class ParsedFeed:
    """Fully fetched and parsed feed; entries keep the document order."""

    url: str
    entries: List[FeedEntry] = field(default_factory=list)
    title: Optional[str] = None
    bozo_warning: Optional[str] = None

    def __len__(self) -> int:
        return len(self.entries)


class CandidateDocument(BaseModel):
    """Normalized record handed downstream for storage."""
    title: str = Field(default="", description="Entry title")
    description: str = Field(default="", description="Entry summary")
    document_date: Optional[datetime] = Field(default=None, description="Publish date in UTC")
    url: str = Field(..., min_length=1, description="Entry link")
    override_source: bool = Field(default=True, description="Attribute the document to source_id")
    source_id: str = Field(..., min_length=1, description="Originating source")

    @field_validator("document_date")
    @classmethod
    def validate_document_date(cls, v):
        return ensure_utc(v)

    def __str__(self) -> str:
        return f"CandidateDocument({self.title[:50]}:{self.url})"


class SourceState(str, Enum):
    """Terminal state of a source within one run."""
    SKIPPED = "skipped"
    FETCH_FAILED = "fetch_failed"
    WATERMARK_UPDATED = "watermark_updated"
    NOT_STARTED = "not_started"
    ABANDONED = "abandoned"


@dataclass
class SourceOutcome:
    """What happened to one source during a run."""
    source_id: str
    feed_url: str = ""
    state: SourceState = SourceState.NOT_STARTED
    entries_seen: int = 0
    documents_emitted: int = 0
    previous_last_pull: Optional[datetime] = None
    new_last_pull: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class ImportRunReport:
    """Per-run statistics for logging and monitoring."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    outcomes: List[SourceOutcome] = field(default_factory=list)
    cancelled: bool = False

    def _count(self, state: SourceState) -> int:
        return sum(1 for o in self.outcomes if o.state == state)

    @property
    def succeeded(self) -> int:
        return self._count(SourceState.WATERMARK_UPDATED)

    @property
    def skipped(self) -> int:
        return self._count(SourceState.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(SourceState.FETCH_FAILED)

    @property
    def not_started(self) -> int:
        return self._count(SourceState.NOT_STARTED)

    @property
    def documents_emitted(self) -> int:
        return sum(o.documents_emitted for o in self.outcomes)

    def outcome_for(self, source_id: str) -> Optional[SourceOutcome]:
        for outcome in self.outcomes:
            if outcome.source_id == source_id:
                return outcome
        return None

    def summary(self) -> str:
        return (
            f"{self.succeeded} succeeded, {self.skipped} skipped, "
            f"{self.failed} failed, {self.not_started} not started; "
            f"{self.documents_emitted} documents emitted"
        )
