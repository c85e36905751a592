#!/usr/bin/env python3
"""
FeedMark - Incremental RSS Source Importer
==========================================

Main application entry point with CLI interface for managing sources and
running imports.

Usage:
    python main.py --help                              # Show all commands
    python main.py check-config                        # Validate configuration
    python main.py init-db                             # Initialize database
    python main.py add-source ID URL -k keyword        # Register an RSS source
    python main.py list-sources                        # Show sources and their watermarks
    python main.py enable-source ID                    # Turn RSS import on for a source
    python main.py disable-source ID                   # Turn RSS import off for a source
    python main.py pull --limit 50 --json              # Import new entries
"""

import sys
import asyncio
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.table import Table

from feedmark.config.settings import FeedMarkSettings, get_settings
from feedmark.database.connection import get_db_manager
from feedmark.database.models import CandidateDocument, RssMetadata, Source, SourceState
from feedmark.database.schema import DatabaseSchema
from feedmark.importers.rss_importer import RssSourceImporter
from feedmark.ingestion.watermark_store import WatermarkStore
from feedmark.storage.source_repository import SourceRepository
from feedmark.utils.exceptions import FeedMarkError, SourceMisconfiguredError, get_user_friendly_message
from feedmark.utils.logging import configure_application_logging
from feedmark.utils.validators import URLValidator

console = Console()

STATE_STYLES = {
    SourceState.WATERMARK_UPDATED: "green",
    SourceState.SKIPPED: "dim",
    SourceState.FETCH_FAILED: "red",
    SourceState.NOT_STARTED: "yellow",
    SourceState.ABANDONED: "yellow",
}


@click.group(invoke_without_command=True)
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, debug):
    """FeedMark - incremental RSS source importer."""
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _bootstrap(ctx) -> FeedMarkSettings:
    """Load settings and configure logging for a command."""
    settings = get_settings()
    configure_application_logging(
        log_level="DEBUG" if ctx.obj.get('debug') else settings.get_effective_log_level(),
        log_file=settings.logging.file_path,
        enable_console=settings.logging.console_logging,
        structured_logging=settings.logging.structured_logging,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )
    return settings


def _repository(settings: FeedMarkSettings) -> SourceRepository:
    db = get_db_manager(settings.database.path, settings.database.pool_size)
    return SourceRepository(db)


def _fail(message: str, code: int = 1) -> None:
    console.print(f"[bold red]❌ {message}[/bold red]")
    sys.exit(code)


@cli.command()
@click.pass_context
def check_config(ctx):
    """Validate configuration and environment variables."""
    console.print("[bold blue]🔧 Checking FeedMark Configuration[/bold blue]")

    try:
        settings = get_settings()
    except FeedMarkError as e:
        _fail(e.user_message)

    table = Table(title="Configuration Status")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Details")

    checks = [
        ("Database", _check_database_config),
        ("Logging", _check_logging_config),
        ("Transport", _check_transport_config),
        ("Filtering", _check_filtering_config),
    ]

    all_passed = True
    for name, check_func in checks:
        status, details = check_func(settings)
        table.add_row(name, "✅ Valid" if status else "❌ Invalid", details)
        all_passed = all_passed and status

    console.print(table)

    if all_passed:
        console.print("[bold green]✅ All configuration checks passed![/bold green]")
    else:
        _fail("Configuration validation failed")


@cli.command()
@click.pass_context
def init_db(ctx):
    """Initialize database with schema."""
    console.print("[bold blue]🗄️ Initializing FeedMark Database[/bold blue]")

    try:
        settings = _bootstrap(ctx)
        schema = DatabaseSchema(settings.database.path)
        schema.create_tables()
    except FeedMarkError as e:
        _fail(f"Database initialization error: {e.user_message}")

    if not schema.verify_schema():
        _fail("Database schema verification failed")

    info = get_db_manager(settings.database.path, settings.database.pool_size).get_database_info()
    console.print(f"[bold green]✅ Database initialized at {info['path']}[/bold green]")
    console.print(f"Sources: {info['source_count']}, size: {info['database_size_mb']:.2f} MB")


@cli.command()
@click.argument('source_id')
@click.argument('feed_url')
@click.option('--title', '-t', help='Display name of the source')
@click.option('--keyword', '-k', 'keywords', multiple=True, help='Only import entries containing this word (repeatable)')
@click.option('--disabled', is_flag=True, help='Register without enabling RSS import')
@click.pass_context
def add_source(ctx, source_id, feed_url, title, keywords, disabled):
    """Register a source with an RSS feed."""
    try:
        settings = _bootstrap(ctx)
        rss = RssMetadata(enabled=not disabled, keywords=list(keywords))
        feed_url = URLValidator.validate_feed_url(feed_url)
        source = Source(source_id=source_id, title=title, feed_url=feed_url)
        _repository(settings).create_source(source.with_rss_metadata(rss))
    except FeedMarkError as e:
        _fail(f"Could not add source: {e.user_message}")

    state = "disabled" if disabled else "enabled"
    console.print(f"[bold green]✅ Added source {source_id} ({state})[/bold green]")
    if not URLValidator.is_likely_feed_url(feed_url):
        console.print("[yellow]⚠️ URL does not look like a feed; check it with a pull[/yellow]")


@cli.command()
@click.pass_context
def list_sources(ctx):
    """Show sources with their RSS state."""
    try:
        settings = _bootstrap(ctx)
        repository = _repository(settings)
        sources = repository.get_all_sources()
    except FeedMarkError as e:
        _fail(f"Error listing sources: {e.user_message}")

    if not sources:
        console.print("[yellow]⚠️ No sources found in database[/yellow]")
        return

    store = WatermarkStore(repository)
    table = Table(title="Sources")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Feed URL", style="blue", max_width=50)
    table.add_column("RSS")
    table.add_column("Keywords")
    table.add_column("Last Pull", style="green")

    for source in sources:
        try:
            rss = store.read(source)
            enabled = "✅" if rss.enabled else "⏸️"
            keywords = ", ".join(rss.keywords) or "-"
            last_pull = rss.last_pull.strftime("%Y-%m-%d %H:%M:%S") if rss.last_pull else "never"
        except SourceMisconfiguredError:
            enabled, keywords, last_pull = "-", "-", "-"

        table.add_row(
            source.source_id, source.title or "", source.feed_url or "-",
            enabled, keywords, last_pull,
        )

    console.print(table)


def _set_enabled(ctx, source_id: str, enabled: bool) -> None:
    try:
        settings = _bootstrap(ctx)
        repository = _repository(settings)
        source = repository.get_source(source_id)
        if source is None:
            _fail(f"No source found with ID {source_id}")

        try:
            rss = WatermarkStore(repository).read(source)
        except SourceMisconfiguredError:
            rss = RssMetadata()

        repository.update_source(source.with_rss_metadata(rss.model_copy(update={"enabled": enabled})))
    except FeedMarkError as e:
        _fail(f"Could not update source: {e.user_message}")

    state = "enabled" if enabled else "disabled"
    console.print(f"[bold green]✅ RSS import {state} for {source_id}[/bold green]")


@cli.command()
@click.argument('source_id')
@click.pass_context
def enable_source(ctx, source_id):
    """Enable RSS import for a source."""
    _set_enabled(ctx, source_id, True)


@cli.command()
@click.argument('source_id')
@click.pass_context
def disable_source(ctx, source_id):
    """Disable RSS import for a source."""
    _set_enabled(ctx, source_id, False)


@cli.command()
@click.option('--limit', default=0, type=int, help='Stop starting new sources after this many documents (0: no cap)')
@click.option('--since', type=click.DateTime(), help='Last pull time of the caller (informational)')
@click.option('--json', 'as_json', is_flag=True, help='Print documents as JSON lines')
@click.option('--concurrent', is_flag=True, help='Fetch feeds concurrently')
@click.pass_context
def pull(ctx, limit, since, as_json, concurrent):
    """Import new entries from all enabled sources."""
    try:
        settings = _bootstrap(ctx)
        importer = RssSourceImporter(repository=_repository(settings), settings=settings)

        if concurrent:
            documents = asyncio.run(_collect_async(importer, since, limit, as_json))
        else:
            documents = []
            for document in importer.pull(last_pull=since, limit=limit):
                _handle_document(document, documents, as_json)

    except FeedMarkError as e:
        _fail(f"Import failed: {e.user_message}")

    report = importer.last_report
    if as_json:
        return

    if documents:
        _print_documents(documents)
    else:
        console.print("[yellow]No new entries[/yellow]")

    if report is not None:
        _print_report(report)
        if report.failed:
            sys.exit(2)


async def _collect_async(
    importer: RssSourceImporter,
    since: Optional[datetime],
    limit: int,
    as_json: bool,
) -> List[CandidateDocument]:
    documents: List[CandidateDocument] = []
    async for document in importer.pull_async(last_pull=since, limit=limit):
        _handle_document(document, documents, as_json)
    return documents


def _handle_document(document: CandidateDocument, documents: List[CandidateDocument], as_json: bool) -> None:
    if as_json:
        click.echo(document.model_dump_json())
    else:
        documents.append(document)


def _print_documents(documents: List[CandidateDocument]) -> None:
    table = Table(title=f"Imported Documents ({len(documents)})")
    table.add_column("Source", style="cyan")
    table.add_column("Date", style="green")
    table.add_column("Title")
    table.add_column("URL", style="blue", max_width=60)

    for document in documents:
        date = document.document_date.strftime("%Y-%m-%d %H:%M") if document.document_date else "-"
        table.add_row(document.source_id, date, document.title, document.url)

    console.print(table)


def _print_report(report) -> None:
    table = Table(title="Sources")
    table.add_column("Source", style="cyan")
    table.add_column("State")
    table.add_column("Entries", justify="right")
    table.add_column("Imported", justify="right")
    table.add_column("Watermark", style="green")
    table.add_column("Error", style="red", max_width=50)

    for outcome in report.outcomes:
        style = STATE_STYLES.get(outcome.state, "white")
        watermark = outcome.new_last_pull or outcome.previous_last_pull
        table.add_row(
            outcome.source_id,
            f"[{style}]{outcome.state.value}[/{style}]",
            str(outcome.entries_seen),
            str(outcome.documents_emitted),
            watermark.isoformat() if watermark else "never",
            outcome.error or "",
        )

    console.print(table)
    console.print(f"\n[bold blue]📊 Summary: {report.summary()}[/bold blue]")


# Helper functions for configuration checks
def _check_database_config(settings) -> tuple[bool, str]:
    """Check database configuration."""
    try:
        Path(settings.database.path).parent.mkdir(parents=True, exist_ok=True)
        return True, f"Path: {settings.database.path}, pool: {settings.database.pool_size}"
    except OSError as e:
        return False, str(e)


def _check_logging_config(settings) -> tuple[bool, str]:
    """Check logging configuration."""
    try:
        if settings.logging.file_path:
            Path(settings.logging.file_path).parent.mkdir(parents=True, exist_ok=True)
        return True, f"Level: {settings.get_effective_log_level()}, Console: {settings.logging.console_logging}"
    except OSError as e:
        return False, str(e)


def _check_transport_config(settings) -> tuple[bool, str]:
    transport = settings.transport
    proxy = transport.proxy or "direct"
    bypass = ", ".join(transport.no_proxy_hosts) or "-"
    return True, (
        f"Proxy: {proxy}, bypass: {bypass}, DTD: {transport.dtd_processing.value}, "
        f"timeout: {transport.request_timeout}s"
    )


def _check_filtering_config(settings) -> tuple[bool, str]:
    filtering = settings.filtering
    case = "case-sensitive" if filtering.case_sensitive_keywords else "case-insensitive"
    return True, f"Keywords: {case}, future skew warning: {filtering.future_skew_warning_hours}h"


def main():
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]👋 FeedMark interrupted by user[/yellow]")
        sys.exit(130)
    except FeedMarkError as e:
        console.print(f"\n[bold red]❌ {get_user_friendly_message(e)}[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
