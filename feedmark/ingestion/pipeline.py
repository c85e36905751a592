"""
Ingestion Pipeline
==================

Orchestrates one import pass over all sources:

    read sources -> fetch feed -> filter entries -> emit documents -> advance watermark

Each source is isolated: a failing fetch, a malformed feed or an unexpected
error is logged and the pass moves on to the next source. A source's
watermark is written only after its feed was fetched and parsed and all of
its documents were consumed; otherwise it is left untouched. Only failures
to enumerate sources or to persist a watermark end the pass.
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Iterable, Iterator, List, Optional, Tuple

from ..config.settings import FeedMarkSettings, get_settings
from ..database.models import (
    CandidateDocument,
    FeedEntry,
    ImportRunReport,
    ParsedFeed,
    RssMetadata,
    Source,
    SourceOutcome,
    SourceState,
    ensure_utc,
)
from ..storage.source_repository import SourceRepository, has_feed_url
from ..utils.exceptions import (
    DtdProhibitedError,
    EmptyFeedError,
    FeedError,
    FeedParseError,
    FeedTransportError,
    FetchCancelledError,
    SourceMisconfiguredError,
    SourceRepositoryError,
    WatermarkPersistenceError,
    handle_exception,
)
from ..utils.logging import PerformanceLogger, get_logger_for_component
from .entry_filter import EntryFilter
from .feed_client import FeedClient
from .watermark_store import WatermarkStore


Clock = Callable[[], datetime]

FATAL_ERRORS = (SourceRepositoryError, WatermarkPersistenceError)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_watermark(
    entries: Iterable[FeedEntry],
    previous: Optional[datetime],
    now: datetime,
) -> datetime:
    """New watermark for a successfully fetched feed.

    The latest publish date over all entries, whether they were imported or
    not. An empty feed, or one without any dated entry, moves the watermark to
    ``now``. The result is never older than ``previous``.
    """
    dates = [entry.published for entry in entries if entry.published is not None]
    candidate = max(dates) if dates else ensure_utc(now)

    previous = ensure_utc(previous)
    if previous is not None and candidate < previous:
        return previous
    return candidate


class IngestionPipeline:
    """Incremental RSS import over every source of a repository."""

    def __init__(
        self,
        repository: SourceRepository,
        feed_client: Optional[FeedClient] = None,
        watermark_store: Optional[WatermarkStore] = None,
        entry_filter: Optional[EntryFilter] = None,
        settings: Optional[FeedMarkSettings] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize ingestion pipeline.

        Args:
            repository: Source repository to read sources from
            feed_client: Feed client (default: new FeedClient)
            watermark_store: Watermark store (default: one over ``repository``)
            entry_filter: Entry filter (default: from filtering settings)
            settings: Application settings (default: global settings)
            clock: Returns the current UTC time
        """
        self.settings = settings or get_settings()
        self.transport = self.settings.transport
        self.repository = repository
        self.feed_client = feed_client or FeedClient()
        self.watermark_store = watermark_store or WatermarkStore(repository)
        self.entry_filter = entry_filter or EntryFilter(
            case_sensitive=self.settings.filtering.case_sensitive_keywords
        )
        self.clock = clock or utc_now
        self.logger = get_logger_for_component("pipeline")
        self.last_report: Optional[ImportRunReport] = None

    # ------------------------------------------------------------------
    # Blocking run
    # ------------------------------------------------------------------

    def run(
        self,
        last_pull_hint: Optional[datetime] = None,
        limit: int = 0,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[CandidateDocument]:
        """Import new entries of all sources, lazily.

        Args:
            last_pull_hint: Host's last pull time, informational only
            limit: Once this many documents were emitted no further source is
                started (0 means no cap)
            cancel_event: When set, remaining sources are abandoned and an
                in-flight download is aborted

        Yields:
            CandidateDocument per accepted entry, in feed order

        Raises:
            SourceRepositoryError: If sources cannot be enumerated
            WatermarkPersistenceError: If a watermark cannot be written
        """
        report = self._start_report(last_pull_hint, limit)
        emitted = 0
        current: Optional[SourceOutcome] = None

        try:
            sources = self._load_sources()
            for index, source in enumerate(sources):
                if self._should_stop(report, sources, index, emitted, limit, cancel_event):
                    break

                current = outcome = self._new_outcome(report, source)
                try:
                    for document in self._process_source(source, outcome, cancel_event):
                        emitted += 1
                        yield document
                except FATAL_ERRORS:
                    raise
                except Exception as e:
                    self._record_unexpected(source, outcome, e)
                current = None

        finally:
            if current is not None and current.state == SourceState.NOT_STARTED:
                current.state = SourceState.ABANDONED
            self._finish_report(report)

    def _process_source(
        self,
        source: Source,
        outcome: SourceOutcome,
        cancel_event: Optional[threading.Event],
    ) -> Iterator[CandidateDocument]:
        metadata = self._prepare(source, outcome)
        if metadata is None:
            return

        self.logger.info(
            f"Collecting RSS feed for '{source.display_name}' ({source.source_id})",
            extra={"source_id": source.source_id},
        )

        try:
            with PerformanceLogger(self.logger, "feed fetch", source_id=source.source_id):
                feed = self.feed_client.fetch(source.feed_url, self.transport, cancel_event)
        except FeedError as e:
            self._record_fetch_failure(source, outcome, e)
            return

        yield from self._emit(source, metadata, feed, outcome)
        self._advance(source, metadata, feed, outcome)

    # ------------------------------------------------------------------
    # Async run
    # ------------------------------------------------------------------

    async def run_async(
        self,
        last_pull_hint: Optional[datetime] = None,
        limit: int = 0,
    ) -> AsyncIterator[CandidateDocument]:
        """Async variant of run with concurrent fetches.

        Feeds are fetched ahead, up to ``transport.parallel_fetches`` at a
        time, while documents are still emitted and watermarks persisted one
        source after the other in source order. Cancelling the consuming task
        cancels outstanding fetches; their sources keep their watermark.
        """
        report = self._start_report(last_pull_hint, limit)
        emitted = 0
        current: Optional[SourceOutcome] = None
        tasks: List[asyncio.Task] = []

        try:
            sources = await asyncio.to_thread(self._load_sources)

            eligible: List[Tuple[Source, SourceOutcome, RssMetadata]] = []
            for source in sources:
                outcome = self._new_outcome(report, source)
                try:
                    metadata = self._prepare(source, outcome)
                except FATAL_ERRORS:
                    raise
                except Exception as e:
                    self._record_unexpected(source, outcome, e)
                    continue
                if metadata is not None:
                    eligible.append((source, outcome, metadata))

            async with self.feed_client.open_async_session(self.transport) as session:
                semaphore = asyncio.Semaphore(self.transport.parallel_fetches)

                async def fetch(source: Source) -> ParsedFeed:
                    async with semaphore:
                        return await self.feed_client.fetch_async(
                            source.feed_url, self.transport, session
                        )

                tasks = [
                    asyncio.create_task(fetch(source), name=f"fetch_{source.source_id}")
                    for source, _, _ in eligible
                ]

                for index, ((source, outcome, metadata), task) in enumerate(zip(eligible, tasks)):
                    if limit > 0 and emitted >= limit:
                        self.logger.info(
                            f"Document limit {limit} reached, "
                            f"{len(eligible) - index} source(s) left for the next run"
                        )
                        break

                    current = outcome
                    self.logger.info(
                        f"Collecting RSS feed for '{source.display_name}' ({source.source_id})",
                        extra={"source_id": source.source_id},
                    )
                    try:
                        try:
                            feed = await task
                        except FeedError as e:
                            self._record_fetch_failure(source, outcome, e)
                            current = None
                            continue

                        for document in self._emit(source, metadata, feed, outcome):
                            emitted += 1
                            yield document

                        await self._advance_async(source, metadata, feed, outcome)
                    except FATAL_ERRORS:
                        raise
                    except Exception as e:
                        self._record_unexpected(source, outcome, e)
                    current = None

        except asyncio.CancelledError:
            report.cancelled = True
            self.logger.warning("Import cancelled, outstanding fetches abandoned")
            raise

        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            if current is not None and current.state == SourceState.NOT_STARTED:
                current.state = SourceState.ABANDONED
            self._finish_report(report)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _load_sources(self) -> List[Source]:
        sources = self.repository.get_all_sources(has_feed_url)
        self.logger.info(f"Found {len(sources)} source(s) with a feed URL")
        return sources

    def _prepare(self, source: Source, outcome: SourceOutcome) -> Optional[RssMetadata]:
        """Validated metadata of an enabled source, None when it is skipped."""
        try:
            if not source.has_feed_url():
                raise SourceMisconfiguredError(
                    f"Source {source.source_id} has no feed URL", source_id=source.source_id
                )
            metadata = self.watermark_store.read(source)
            if not metadata.enabled:
                raise SourceMisconfiguredError(
                    f"Source {source.source_id} has no rss.enabled flag set to true",
                    source_id=source.source_id,
                )
        except SourceMisconfiguredError as e:
            self.logger.debug(f"Skipping source: {e}", extra={"source_id": source.source_id})
            outcome.state = SourceState.SKIPPED
            outcome.error = str(e)
            return None

        outcome.previous_last_pull = metadata.last_pull
        return metadata

    def _emit(
        self,
        source: Source,
        metadata: RssMetadata,
        feed: ParsedFeed,
        outcome: SourceOutcome,
    ) -> Iterator[CandidateDocument]:
        outcome.entries_seen = len(feed.entries)
        keywords = metadata.keywords

        for entry in feed.entries:
            decision = self.entry_filter.evaluate(entry, metadata.last_pull, keywords)
            if not decision.included:
                self.logger.debug(
                    f"Skipping '{entry.title}': {decision.reason.value}",
                    extra={"source_id": source.source_id},
                )
                continue

            self.logger.debug(f"Importing {entry.title}", extra={"source_id": source.source_id})
            outcome.documents_emitted += 1
            yield CandidateDocument(
                title=entry.title,
                description=entry.summary,
                document_date=entry.published,
                url=entry.link,
                override_source=True,
                source_id=source.source_id,
            )

    def _next_watermark(self, source: Source, metadata: RssMetadata, feed: ParsedFeed) -> datetime:
        now = self.clock()
        new_last_pull = compute_watermark(feed.entries, metadata.last_pull, now)

        skew = timedelta(hours=self.settings.filtering.future_skew_warning_hours)
        if new_last_pull > now + skew:
            self.logger.warning(
                f"Feed '{source.feed_url}' of source '{source.source_id}' has entries dated "
                f"{new_last_pull.isoformat()}, ahead of the clock; newer entries "
                f"will be skipped until then",
                extra={"source_id": source.source_id},
            )
        return new_last_pull

    def _advance(
        self,
        source: Source,
        metadata: RssMetadata,
        feed: ParsedFeed,
        outcome: SourceOutcome,
    ) -> None:
        new_last_pull = self._next_watermark(source, metadata, feed)
        self.watermark_store.advance(source, metadata, new_last_pull)
        self._record_success(source, outcome, new_last_pull)

    async def _advance_async(
        self,
        source: Source,
        metadata: RssMetadata,
        feed: ParsedFeed,
        outcome: SourceOutcome,
    ) -> None:
        new_last_pull = self._next_watermark(source, metadata, feed)
        await self.watermark_store.advance_async(source, metadata, new_last_pull)
        self._record_success(source, outcome, new_last_pull)

    def _record_success(self, source: Source, outcome: SourceOutcome, new_last_pull: datetime) -> None:
        outcome.state = SourceState.WATERMARK_UPDATED
        outcome.new_last_pull = new_last_pull
        previous = outcome.previous_last_pull.isoformat() if outcome.previous_last_pull else "never"
        self.logger.info(
            f"Imported {outcome.documents_emitted}/{outcome.entries_seen} entries from "
            f"'{source.feed_url}'; watermark {previous} -> {new_last_pull.isoformat()}",
            extra={"source_id": source.source_id},
        )

    def _record_fetch_failure(self, source: Source, outcome: SourceOutcome, error: FeedError) -> None:
        outcome.state = SourceState.FETCH_FAILED
        outcome.error = str(error)
        extra = {"source_id": source.source_id, **error.to_dict()}

        if isinstance(error, DtdProhibitedError):
            self.logger.warning(
                f"Could not process XML feed '{source.feed_url}' of source '{source.source_id}' "
                f"due to DTD processing policy ({self.transport.dtd_processing.value}). "
                f"Set FEEDMARK_TRANSPORT__DTD_PROCESSING to 'ignore' or 'allow' to accept it.",
                extra=extra,
            )
        elif isinstance(error, FetchCancelledError):
            self.logger.warning(
                f"Fetch of '{source.feed_url}' for source '{source.source_id}' was cancelled",
                extra=extra,
            )
        elif isinstance(error, FeedTransportError):
            self.logger.error(
                f"Could not fetch feed '{source.feed_url}' of source '{source.source_id}': {error}",
                extra=extra,
            )
        elif isinstance(error, EmptyFeedError):
            self.logger.error(
                f"Feed '{source.feed_url}' of source '{source.source_id}' was empty or null: {error}",
                extra=extra,
            )
        elif isinstance(error, FeedParseError):
            self.logger.error(
                f"Could not process XML feed '{source.feed_url}' of source '{source.source_id}': {error}",
                extra=extra,
            )
        else:
            self.logger.error(
                f"Feed '{source.feed_url}' of source '{source.source_id}' failed: {error}",
                extra=extra,
            )

    def _record_unexpected(self, source: Source, outcome: SourceOutcome, error: Exception) -> None:
        converted = handle_exception(
            error,
            self.logger,
            f"import of source {source.source_id}",
            {"source_id": source.source_id, "feed_url": source.feed_url},
        )
        self.logger.debug(f"Traceback for source {source.source_id}", exc_info=error)
        outcome.state = SourceState.FETCH_FAILED
        outcome.error = str(converted)

    def _should_stop(
        self,
        report: ImportRunReport,
        sources: List[Source],
        index: int,
        emitted: int,
        limit: int,
        cancel_event: Optional[threading.Event],
    ) -> bool:
        remaining = sources[index:]
        if cancel_event is not None and cancel_event.is_set():
            report.cancelled = True
            self.logger.warning(f"Import cancelled, {len(remaining)} source(s) not processed")
        elif limit > 0 and emitted >= limit:
            self.logger.info(
                f"Document limit {limit} reached, {len(remaining)} source(s) left for the next run"
            )
        else:
            return False

        for source in remaining:
            self._new_outcome(report, source)
        return True

    def _new_outcome(self, report: ImportRunReport, source: Source) -> SourceOutcome:
        outcome = SourceOutcome(source_id=source.source_id, feed_url=source.feed_url)
        report.outcomes.append(outcome)
        return outcome

    def _start_report(self, last_pull_hint: Optional[datetime], limit: int) -> ImportRunReport:
        hint = last_pull_hint.isoformat() if last_pull_hint else "(no date)"
        self.logger.debug(f"Pulling RSS sources from {hint} but max {limit or 'unlimited'} documents")
        report = ImportRunReport(started_at=self.clock())
        self.last_report = report
        return report

    def _finish_report(self, report: ImportRunReport) -> None:
        report.finished_at = self.clock()
        self.logger.info(f"RSS import finished: {report.summary()}")
        for outcome in report.outcomes:
            if outcome.state == SourceState.FETCH_FAILED:
                self.logger.info(f"  failed: {outcome.source_id} ({outcome.feed_url}): {outcome.error}")
