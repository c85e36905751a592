"""
Ingestion Pipeline Tests
========================

Watermark advancement, per-source isolation, laziness, limits and
cancellation of the blocking run.
"""

import random
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from feedmark.database.models import FeedEntry, ParsedFeed, SourceState
from feedmark.ingestion.pipeline import IngestionPipeline, compute_watermark
from feedmark.ingestion.watermark_store import WatermarkStore
from feedmark.utils.exceptions import (
    DtdProhibitedError,
    EmptyFeedError,
    FeedTransportError,
    MalformedFeedError,
    SourceRepositoryError,
    WatermarkPersistenceError,
)


NOW = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
ALPHA_URL = "https://alpha.example.com/feed.xml"
BRAVO_URL = "https://bravo.example.com/rss"
CHARLIE_URL = "https://charlie.example.com/atom.xml"


def day(n: int, hour: int = 0) -> datetime:
    return datetime(2024, 1, n, hour, tzinfo=timezone.utc)


def item(slug: str, published=None, title=None, summary=""):
    return FeedEntry(
        title=title or slug.title(),
        summary=summary,
        link=f"https://example.com/{slug}",
        published=published,
    )


def feed(url, *entries):
    return ParsedFeed(url=url, entries=list(entries))


def watermark(repository, source_id):
    return WatermarkStore(repository).current(source_id).last_pull


@pytest.fixture
def pipeline(repository, stub_client, test_settings):
    return IngestionPipeline(repository, feed_client=stub_client, settings=test_settings, clock=lambda: NOW)


@pytest.fixture
def three_feeds(stub_client, sample_sources):
    stub_client.responses.update({
        ALPHA_URL: feed(ALPHA_URL, item("a1", day(1)), item("a2", day(2))),
        BRAVO_URL: feed(BRAVO_URL, item("b1", day(3))),
        CHARLIE_URL: feed(CHARLIE_URL, item("c1", day(4)), item("c2", day(5))),
    })
    return stub_client


class TestComputeWatermark:

    def test_latest_of_all_entries(self):
        entries = [item("x", day(3)), item("y", day(5)), item("z", day(1))]
        assert compute_watermark(entries, None, NOW) == day(5)

    def test_empty_feed_is_now(self):
        assert compute_watermark([], None, NOW) == NOW
        assert compute_watermark([], day(1), NOW) == NOW

    def test_undated_entries_ignored(self):
        assert compute_watermark([item("x"), item("y", day(2))], None, NOW) == day(2)

    def test_only_undated_entries_is_now(self):
        assert compute_watermark([item("x"), item("y")], None, NOW) == NOW

    def test_never_older_than_previous(self):
        assert compute_watermark([item("x", day(1))], day(9), NOW) == day(9)

    def test_future_previous_survives_empty_feed(self):
        future = NOW + timedelta(days=30)
        assert compute_watermark([], future, NOW) == future

    def test_monotonic_under_shuffled_timestamps(self):
        rng = random.Random(20240101)
        previous = None
        for _ in range(50):
            entries = [item(f"e{i}", day(1) + timedelta(hours=rng.randint(0, 24 * 60))) for i in range(rng.randint(1, 8))]
            rng.shuffle(entries)

            new = compute_watermark(entries, previous, NOW)

            assert new == max([e.published for e in entries] + ([previous] if previous else []))
            assert previous is None or new >= previous
            previous = new


class TestRun:

    def test_imports_all_sources_in_order(self, pipeline, repository, three_feeds):
        documents = list(pipeline.run())

        assert [d.url for d in documents] == [
            "https://example.com/a1", "https://example.com/a2",
            "https://example.com/b1",
            "https://example.com/c1", "https://example.com/c2",
        ]
        assert documents[0].source_id == "alpha"
        assert documents[0].override_source is True
        assert documents[0].document_date == day(1)
        assert watermark(repository, "alpha") == day(2)
        assert watermark(repository, "bravo") == day(3)
        assert watermark(repository, "charlie") == day(5)

        report = pipeline.last_report
        assert report.succeeded == 3
        assert report.documents_emitted == 5
        assert report.finished_at == NOW

    def test_document_fields(self, pipeline, repository, stub_client, sample_sources):
        stub_client.responses.update({
            ALPHA_URL: feed(ALPHA_URL, item("story", day(1), title="Big story", summary="Details here")),
            BRAVO_URL: feed(BRAVO_URL),
            CHARLIE_URL: feed(CHARLIE_URL),
        })

        document = next(iter(pipeline.run()))

        assert document.title == "Big story"
        assert document.description == "Details here"
        assert document.url == "https://example.com/story"

    def test_second_run_emits_nothing(self, pipeline, repository, three_feeds):
        first = list(pipeline.run())
        marks = {s: watermark(repository, s) for s in ("alpha", "bravo", "charlie")}

        second = list(pipeline.run())

        assert len(first) == 5
        assert second == []
        assert {s: watermark(repository, s) for s in marks} == marks

    def test_only_newer_entries_on_later_run(self, pipeline, repository, stub_client, three_feeds):
        list(pipeline.run())
        stub_client.responses[ALPHA_URL] = feed(ALPHA_URL, item("a3", day(7)), item("a2", day(2)))

        documents = list(pipeline.run())

        assert [d.url for d in documents] == ["https://example.com/a3"]
        assert watermark(repository, "alpha") == day(7)

    def test_failing_source_is_isolated(self, pipeline, repository, three_feeds):
        three_feeds.responses[BRAVO_URL] = FeedTransportError("HTTP 503", feed_url=BRAVO_URL, status_code=503)

        documents = list(pipeline.run())

        assert {d.source_id for d in documents} == {"alpha", "charlie"}
        assert watermark(repository, "alpha") == day(2)
        assert watermark(repository, "bravo") is None
        assert watermark(repository, "charlie") == day(5)

        outcome = pipeline.last_report.outcome_for("bravo")
        assert outcome.state == SourceState.FETCH_FAILED
        assert "503" in outcome.error

    @pytest.mark.parametrize(
        "error",
        [
            DtdProhibitedError("DTD", feed_url=BRAVO_URL),
            MalformedFeedError("broken", feed_url=BRAVO_URL),
            EmptyFeedError("nothing", feed_url=BRAVO_URL),
            RuntimeError("boom"),
        ],
    )
    def test_any_source_failure_is_contained(self, pipeline, repository, three_feeds, error):
        three_feeds.responses[BRAVO_URL] = error

        documents = list(pipeline.run())

        assert len(documents) == 4
        assert watermark(repository, "bravo") is None
        assert pipeline.last_report.failed == 1
        assert pipeline.last_report.succeeded == 2

    def test_failure_keeps_existing_watermark(self, pipeline, repository, stub_client, rss_source_factory):
        repository.create_source(rss_source_factory("old", ALPHA_URL, last_pull=day(4)))
        stub_client.responses[ALPHA_URL] = FeedTransportError("down", feed_url=ALPHA_URL)

        list(pipeline.run())

        assert watermark(repository, "old") == day(4)

    def test_empty_feed_moves_watermark_to_now(self, pipeline, repository, stub_client, rss_source_factory):
        repository.create_source(rss_source_factory("quiet", ALPHA_URL, last_pull=day(1)))
        stub_client.responses[ALPHA_URL] = feed(ALPHA_URL)

        assert list(pipeline.run()) == []
        assert watermark(repository, "quiet") == NOW

    def test_watermark_covers_filtered_entries(self, pipeline, repository, stub_client, rss_source_factory):
        repository.create_source(rss_source_factory("kw", ALPHA_URL, keywords=["python"]))
        stub_client.responses[ALPHA_URL] = feed(
            ALPHA_URL,
            item("py", day(2), title="python tips"),
            item("js", day(6), title="javascript tips"),
        )

        documents = list(pipeline.run())

        assert [d.url for d in documents] == ["https://example.com/py"]
        assert watermark(repository, "kw") == day(6)

    def test_entries_without_link_not_emitted(self, pipeline, repository, stub_client, rss_source_factory):
        repository.create_source(rss_source_factory("links", ALPHA_URL))
        stub_client.responses[ALPHA_URL] = feed(
            ALPHA_URL,
            FeedEntry(title="No link", link=None, published=day(8)),
            item("ok", day(2)),
        )

        documents = list(pipeline.run())

        assert [d.url for d in documents] == ["https://example.com/ok"]
        assert watermark(repository, "links") == day(8)

    def test_out_of_order_feed(self, pipeline, repository, stub_client, rss_source_factory):
        repository.create_source(rss_source_factory("shuffled", ALPHA_URL, last_pull=day(2)))
        entries = [item(f"e{n}", day(n)) for n in range(1, 10)]
        random.Random(7).shuffle(entries)
        stub_client.responses[ALPHA_URL] = feed(ALPHA_URL, *entries)

        documents = list(pipeline.run())

        assert sorted(d.document_date for d in documents) == [day(n) for n in range(3, 10)]
        assert [d.url for d in documents] == [e.link for e in entries if e.published > day(2)]
        assert watermark(repository, "shuffled") == day(9)

    def test_future_dated_entry_advances_watermark(self, pipeline, repository, stub_client, rss_source_factory):
        future = NOW + timedelta(days=365)
        repository.create_source(rss_source_factory("ahead", ALPHA_URL))
        stub_client.responses[ALPHA_URL] = feed(ALPHA_URL, item("f", future))

        list(pipeline.run())

        assert watermark(repository, "ahead") == future


class TestSkippedSources:

    def test_disabled_source_not_fetched(self, pipeline, repository, stub_client, rss_source_factory):
        repository.create_source(rss_source_factory("off", ALPHA_URL, enabled=False))

        assert list(pipeline.run()) == []
        assert stub_client.fetched == []
        assert pipeline.last_report.outcome_for("off").state == SourceState.SKIPPED
        assert pipeline.last_report.failed == 0

    def test_source_without_rss_block_skipped(self, pipeline, repository, stub_client):
        from feedmark.database.models import Source

        repository.create_source(Source(source_id="plain", feed_url=ALPHA_URL, metadata={"other": {}}))

        assert list(pipeline.run()) == []
        assert stub_client.fetched == []
        assert pipeline.last_report.skipped == 1

    @pytest.mark.parametrize("keywords", [5, True, "python"])
    def test_malformed_rss_block_skipped_between_good_sources(
        self, pipeline, repository, three_feeds, sample_sources, keywords
    ):
        bravo = sample_sources[1]
        repository.update_source(
            bravo.model_copy(update={"metadata": {"rss": {"enabled": True, "keywords": keywords}}})
        )

        documents = list(pipeline.run())

        assert {d.source_id for d in documents} == {"alpha", "charlie"}
        assert BRAVO_URL not in three_feeds.fetched
        assert pipeline.last_report.outcome_for("bravo").state == SourceState.SKIPPED
        assert pipeline.last_report.failed == 0
        assert watermark(repository, "charlie") == day(5)

    def test_source_without_feed_url_ignored(self, pipeline, repository, stub_client):
        from feedmark.database.models import Source

        repository.create_source(Source(source_id="upload", metadata={"rss": {"enabled": True}}))

        assert list(pipeline.run()) == []
        assert stub_client.fetched == []
        assert pipeline.last_report.outcomes == []


class TestLaziness:

    def test_nothing_happens_before_iteration(self, pipeline, three_feeds):
        pipeline.run()
        assert three_feeds.fetched == []

    def test_abandoned_source_keeps_watermark(self, pipeline, repository, three_feeds):
        run = pipeline.run()

        first = next(run)
        run.close()

        assert first.source_id == "alpha"
        assert watermark(repository, "alpha") is None
        assert three_feeds.fetched == [ALPHA_URL]
        assert pipeline.last_report.outcome_for("alpha").state == SourceState.ABANDONED

    def test_watermark_written_after_last_document_consumed(self, pipeline, repository, three_feeds):
        run = pipeline.run()

        next(run)
        next(run)
        assert watermark(repository, "alpha") is None

        next(run)
        assert watermark(repository, "alpha") == day(2)
        run.close()


class TestLimitAndCancellation:

    def test_limit_finishes_current_source(self, pipeline, repository, three_feeds):
        documents = list(pipeline.run(limit=1))

        assert [d.source_id for d in documents] == ["alpha", "alpha"]
        assert watermark(repository, "alpha") == day(2)
        assert watermark(repository, "bravo") is None
        assert three_feeds.fetched == [ALPHA_URL]
        assert pipeline.last_report.not_started == 2

    def test_zero_limit_is_unlimited(self, pipeline, three_feeds):
        assert len(list(pipeline.run(limit=0))) == 5

    def test_last_pull_hint_does_not_filter(self, pipeline, three_feeds):
        assert len(list(pipeline.run(last_pull_hint=day(30)))) == 5

    def test_cancel_between_sources(self, pipeline, repository, three_feeds):
        cancel_event = threading.Event()
        documents = []

        for document in pipeline.run(cancel_event=cancel_event):
            documents.append(document)
            cancel_event.set()

        assert [d.source_id for d in documents] == ["alpha", "alpha"]
        assert watermark(repository, "alpha") == day(2)
        assert watermark(repository, "bravo") is None
        assert watermark(repository, "charlie") is None

        report = pipeline.last_report
        assert report.cancelled is True
        assert report.outcome_for("bravo").state == SourceState.NOT_STARTED
        assert report.outcome_for("charlie").state == SourceState.NOT_STARTED

    def test_cancelled_before_start(self, pipeline, three_feeds):
        cancel_event = threading.Event()
        cancel_event.set()

        assert list(pipeline.run(cancel_event=cancel_event)) == []
        assert three_feeds.fetched == []
        assert pipeline.last_report.not_started == 3


class TestFatalErrors:

    def test_enumeration_failure_is_fatal(self, stub_client, test_settings):
        repository = Mock()
        repository.get_all_sources.side_effect = SourceRepositoryError("no such table")
        pipeline = IngestionPipeline(repository, feed_client=stub_client, settings=test_settings)

        with pytest.raises(SourceRepositoryError):
            list(pipeline.run())

    def test_enumeration_failure_still_finishes_report(self, stub_client, test_settings):
        repository = Mock()
        repository.get_all_sources.side_effect = SourceRepositoryError("no such table")
        pipeline = IngestionPipeline(
            repository, feed_client=stub_client, settings=test_settings, clock=lambda: NOW
        )

        with pytest.raises(SourceRepositoryError):
            list(pipeline.run())

        assert pipeline.last_report.finished_at == NOW
        assert pipeline.last_report.outcomes == []

    def test_watermark_persistence_failure_is_fatal(self, repository, three_feeds, test_settings):
        store = WatermarkStore(repository)
        store.advance = Mock(side_effect=WatermarkPersistenceError("disk full", source_id="alpha"))
        pipeline = IngestionPipeline(
            repository, feed_client=three_feeds, watermark_store=store, settings=test_settings
        )

        run = pipeline.run()
        with pytest.raises(WatermarkPersistenceError):
            list(run)

        assert three_feeds.fetched == [ALPHA_URL]
