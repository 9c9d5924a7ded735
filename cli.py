"""Maintenance entry point: ``catalog <command> [options]``."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from pydantic import BaseModel

import database
import enrichment
import ingestion
import maintenance
from config import Settings, get_settings
from errors import CatalogError, ConfigurationError

logger = logging.getLogger(__name__)


def _echo_summary(title: str, counts: dict) -> None:
    click.echo("=" * 50)
    click.echo(title)
    click.echo("=" * 50)
    for key, value in counts.items():
        if isinstance(value, list):
            value = len(value)
        click.echo(f"  - {key.replace('_', ' ')}: {value}")
    click.echo("=" * 50)


def _counts(report: BaseModel) -> dict:
    return report.model_dump(exclude={"state", "error", "started_at", "finished_at", "dry_run"})


def _run(coro, title: str, empty: dict):
    """Run a command coroutine. On failure print the zero-count summary, then exit 1."""
    try:
        return asyncio.run(coro)
    except CatalogError as exc:
        _echo_summary(f"{title} FAILED", empty)
        raise click.ClickException(str(exc)) from exc


def _db_path(settings: Settings) -> Path:
    return Path(settings.database_path)


async def _prepared(settings: Settings, coro):
    await database.init_db(_db_path(settings))
    return await coro


def _limit_option(func):
    return click.option(
        "--limit", type=int, default=0, show_default=True, help="Cap items processed (0 = no limit)"
    )(func)


def _batch_option(default: int):
    return click.option(
        "--batch-size",
        type=click.IntRange(min=1),
        default=default,
        show_default=True,
        help="Items per progress-logged batch",
    )


def _delay_option(default_ms: int):
    return click.option("--delay", type=int, default=default_ms, show_default=True, help="Pause in milliseconds")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Movie catalog ingestion and reconciliation."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)
    try:
        ctx.obj = get_settings()
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.option(
    "--max-pages", type=click.IntRange(min=1), default=None, help="Upper bound on catalog pages to fetch"
)
@click.pass_obj
def ingest(settings: Settings, max_pages: Optional[int]) -> None:
    """Ingest popular movies and their availability."""
    result = _run(
        _prepared(
            settings,
            ingestion.ingest_popular_movies(
                settings.ingest_max_pages if max_pages is None else max_pages,
                page_size=settings.ingest_page_size,
                page_delay=settings.page_delay_seconds,
                retries=settings.page_fetch_retries,
                country=settings.country,
                language=settings.language,
                db_path=_db_path(settings),
            ),
        ),
        "INGESTION",
        _counts(ingestion.IngestionResult(aborted=True)),
    )
    _echo_summary(
        "INGESTION COMPLETE" if not result.aborted else "INGESTION ABORTED",
        _counts(result),
    )
    if result.aborted or result.errors:
        raise SystemExit(1)


@cli.command("sync-platforms")
@click.pass_obj
def sync_platforms(settings: Settings) -> None:
    """Register every provider known upstream."""
    synced = _run(
        _prepared(settings, ingestion.sync_platforms(country=settings.country, db_path=_db_path(settings))),
        "PLATFORM SYNC",
        {"platforms": 0},
    )
    _echo_summary("PLATFORM SYNC COMPLETE", {"platforms": synced})


@cli.command()
@_limit_option
@_batch_option(10)
@_delay_option(1000)
@click.option("--force", is_flag=True, help="Re-enrich movies that already have credits")
@click.pass_obj
def enrich(settings: Settings, limit: int, batch_size: int, delay: int, force: bool) -> None:
    """Backfill credits and empty fields from TMDB."""
    stats = _run(
        _prepared(
            settings,
            enrichment.run_enrichment(
                settings.tmdb_api_key,
                limit=limit,
                batch_size=batch_size,
                delay=delay / 1000,
                force=force,
                db_path=_db_path(settings),
            ),
        ),
        "RE-ENRICHMENT",
        _counts(enrichment.EnrichmentStats()),
    )
    _echo_summary("RE-ENRICHMENT COMPLETED", stats.model_dump())
    if stats.errors:
        raise SystemExit(1)


@cli.command("refresh-availability")
@_limit_option
@_batch_option(50)
@_delay_option(200)
@click.pass_obj
def refresh_availability(settings: Settings, limit: int, batch_size: int, delay: int) -> None:
    """Re-fetch offers for movies with no platforms."""
    report = _run(
        _prepared(
            settings,
            maintenance.refresh_availability(
                limit=limit,
                batch_size=batch_size,
                delay=delay / 1000,
                country=settings.country,
                language=settings.language,
                db_path=_db_path(settings),
            ),
        ),
        "REFRESH",
        _counts(maintenance.BatchReport()),
    )
    _echo_summary("REFRESH COMPLETE", report.model_dump())
    if report.errors:
        raise SystemExit(1)


@cli.command("sync-summaries")
@_limit_option
@_batch_option(50)
@click.pass_obj
def sync_summaries(settings: Settings, limit: int, batch_size: int) -> None:
    """Rebuild every movie's platform summary from its availability."""
    report = _run(
        _prepared(
            settings,
            maintenance.rebuild_platform_summaries(limit, batch_size, _db_path(settings)),
        ),
        "PLATFORM SYNC",
        _counts(maintenance.BatchReport()),
    )
    _echo_summary("PLATFORM SYNC COMPLETED", report.model_dump())
    if report.errors:
        raise SystemExit(1)


@cli.command("relink-ids")
@_limit_option
@_delay_option(250)
@click.option(
    "--unmatched",
    type=click.Choice(["retain", "purge"]),
    default=None,
    help="What to do with movies the search cannot match (default from settings)",
)
@click.pass_obj
def relink_ids(settings: Settings, limit: int, delay: int, unmatched: Optional[str]) -> None:
    """Find catalog identifiers for movies with fallback ones."""
    report = _run(
        _prepared(
            settings,
            maintenance.relink_sentinel_movies(
                limit=limit,
                delay=delay / 1000,
                unmatched_policy=unmatched or settings.unmatched_policy,
                country=settings.country,
                language=settings.language,
                db_path=_db_path(settings),
            ),
        ),
        "FIX",
        _counts(maintenance.RelinkReport()),
    )
    _echo_summary("FIX COMPLETE", report.model_dump())
    if report.errors:
        raise SystemExit(1)


@cli.command("purge-invalid")
@click.option("--confirm", is_flag=True, help="Actually delete; otherwise only report")
@click.pass_obj
def purge_invalid(settings: Settings, confirm: bool) -> None:
    """Delete movies with fallback identifiers and their availability."""
    report = _run(
        _prepared(settings, maintenance.purge_invalid_movies(confirm, _db_path(settings))),
        "CLEANUP",
        _counts(maintenance.PurgeReport(dry_run=not confirm)),
    )
    for external_id in report.candidates[:5]:
        click.echo(f"  - {external_id}")
    _echo_summary("DRY RUN" if report.dry_run else "CLEANUP COMPLETE", report.model_dump())
    if report.dry_run and report.candidates:
        click.echo("To proceed, run again with --confirm")


@cli.command("fix-platform-ids")
@click.option("--confirm", is_flag=True, help="Actually update; otherwise only report")
@click.pass_obj
def fix_platform_ids(settings: Settings, confirm: bool) -> None:
    """Strip the fallback prefix from platform identifiers."""
    report = _run(
        _prepared(settings, maintenance.fix_platform_ids(confirm, _db_path(settings))),
        "PLATFORM ID FIX",
        _counts(maintenance.PlatformIdReport(dry_run=not confirm)),
    )
    for fix in report.fixed:
        click.echo(f"{'FIXED' if confirm else 'WOULD FIX'}: {fix.name}: {fix.old_id!r} -> {fix.new_id!r}")
    for fix in report.needs_merge:
        click.echo(f"SKIP: {fix.name} - {fix.new_id!r} already exists (merge with merge-platforms)")
    _echo_summary("DRY RUN" if report.dry_run else "PLATFORM IDS FIXED", report.model_dump(exclude={"dry_run"}))


@cli.command("merge-platforms")
@click.argument("duplicate")
@click.argument("survivor")
@click.option("--rename", default=None, help="New display name for the surviving platform")
@click.option("--confirm", is_flag=True, help="Actually merge; otherwise only report")
@click.pass_obj
def merge_platforms(settings: Settings, duplicate: str, survivor: str, rename: Optional[str], confirm: bool) -> None:
    """Fold platform DUPLICATE into SURVIVOR (both by external id)."""
    report = _run(
        _prepared(
            settings,
            maintenance.merge_platforms(duplicate, survivor, rename, confirm, _db_path(settings)),
        ),
        "MERGE",
        _counts(maintenance.MergeReport(dry_run=not confirm)),
    )
    _echo_summary("DRY RUN" if report.dry_run else "MERGE COMPLETE", report.model_dump(exclude={"dry_run"}))


if __name__ == "__main__":
    cli()
