"""CLI for the rental crawl system."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Union

import click

from .config import Settings, load_settings
from .coordinator import Coordinator
from .errors import ConfigurationError, RentCrawlError
from .events import EventBus
from .matching import MatchEngine
from .pool import BrowserSettings, PlaywrightSessionFactory, ResourcePool
from .queue import WorkQueue
from .sources import SourceRegistry
from .storage import MemoryStore, PostgresStore

LOGGER = logging.getLogger(__name__)

Store = Union[MemoryStore, PostgresStore]


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("RENTCRAWL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


def _settings(ctx: click.Context) -> Settings:
    try:
        return load_settings(ctx.obj.get("env_file"))
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


def _build_store(settings: Settings, memory: bool = False) -> Store:
    if memory:
        return MemoryStore()
    return PostgresStore(settings.database_url)


def _build_registry(settings: Settings, sources_file: Optional[Path]) -> SourceRegistry:
    registry = SourceRegistry()
    path = sources_file or settings.sources_file
    if path is not None:
        registry.load_config_file(path)
    if not registry.enabled_sources():
        LOGGER.warning("No enabled sources configured; the crawl will stay idle")
    return registry


def _run_async(coro):
    try:
        return asyncio.run(coro)
    except RentCrawlError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option(
    "--env-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Load settings from this .env file instead of ./.env",
)
@click.pass_context
def cli(ctx: click.Context, env_file: Optional[Path]) -> None:
    """Rental listing crawl CLI."""
    _configure_logging()
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


async def _serve(settings: Settings, sources_file: Optional[Path], memory: bool, run_initial: bool) -> None:
    store = _build_store(settings, memory)
    await store.connect()
    coordinator: Optional[Coordinator] = None
    try:
        registry = _build_registry(settings, sources_file)
        settings.queue.priority_weights.sources.update(registry.priority_weights())

        factory = PlaywrightSessionFactory(
            {
                source: BrowserSettings(**registry.get_config(source).browser)
                for source in registry.sources()
            },
            navigation_timeout=settings.pool.navigation_timeout,
        )
        events = EventBus()
        pool = ResourcePool(factory, settings.pool, events=events)
        queue = WorkQueue(store, store, settings.queue)
        engine = MatchEngine(store, store, settings.match)
        coordinator = Coordinator(
            registry,
            pool,
            queue,
            store,
            engine,
            events=events,
            config=settings.coordinator,
        )

        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, stop_requested.set)
            except NotImplementedError:
                pass

        await coordinator.start(run_initial=run_initial)
        LOGGER.info("Coordinator running; press Ctrl+C to stop")
        await stop_requested.wait()
        LOGGER.info("Received shutdown signal, stopping gracefully...")
    finally:
        if coordinator is not None:
            await coordinator.stop()
        await store.close()


@cli.command()
@click.option(
    "--sources-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML file with per-source settings (overrides RENTCRAWL_SOURCES_FILE)",
)
@click.option(
    "--memory",
    is_flag=True,
    help="Use the in-memory store instead of Postgres (nothing is persisted)",
)
@click.option(
    "--no-initial-run",
    is_flag=True,
    help="Wait for the first timer instead of running discovery and update immediately",
)
@click.pass_context
def run(ctx: click.Context, sources_file: Optional[Path], memory: bool, no_initial_run: bool) -> None:
    """Run the coordinator until SIGINT/SIGTERM."""
    settings = _settings(ctx)
    click.echo("🚀 Starting rental crawl coordinator")
    _run_async(_serve(settings, sources_file, memory, not no_initial_run))


async def _queue_stats(settings: Settings) -> None:
    store = _build_store(settings)
    await store.connect()
    try:
        stats = await WorkQueue(store, store, settings.queue).get_stats()
        matches = await MatchEngine(store, store, settings.match).get_match_stats("day")
        listings = await store.count_listings()
    finally:
        await store.close()

    click.echo("\n📊 Queue Statistics\n" + "=" * 40)
    click.echo(f"Total items: {stats.total}")
    for status in ("pending", "processing", "completed", "failed"):
        click.echo(f"  {status:15s}: {getattr(stats, status):6d}")
    for source, counts in sorted(stats.by_source.items()):
        click.echo(
            f"  {source:15s}: pending={counts['pending']} processing={counts['processing']} "
            f"avg={counts['avg_processing_seconds']:.1f}s"
        )
    click.echo(f"\nListings stored: {listings}")
    click.echo(
        f"Matches (24h): {matches.total_matches} "
        f"(excellent={matches.by_score['excellent']}, good={matches.by_score['good']}, "
        f"fair={matches.by_score['fair']}, avg={matches.average_score:.1f})"
    )
    click.echo()


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show queue, listing and match statistics."""
    _run_async(_queue_stats(_settings(ctx)))


async def _purge(settings: Settings, days: int) -> int:
    store = _build_store(settings)
    await store.connect()
    try:
        return await WorkQueue(store, store, settings.queue).cleanup(days)
    finally:
        await store.close()


@cli.command()
@click.option(
    "--days",
    default=7,
    type=click.IntRange(min=1),
    help="Remove items completed more than N days ago",
)
@click.confirmation_option(prompt="Are you sure you want to purge completed items?")
@click.pass_context
def purge(ctx: click.Context, days: int) -> None:
    """Remove old completed queue items."""
    count = _run_async(_purge(_settings(ctx), days))
    click.echo(f"✅ Purged {count} completed item(s)")


async def _requeue_failed(settings: Settings) -> int:
    store = _build_store(settings)
    await store.connect()
    try:
        return await WorkQueue(store, store, settings.queue).requeue_failed()
    finally:
        await store.close()


@cli.command("requeue-failed")
@click.pass_context
def requeue_failed(ctx: click.Context) -> None:
    """Reset failed items to pending with zero attempts."""
    count = _run_async(_requeue_failed(_settings(ctx)))
    click.echo(f"✅ Requeued {count} failed item(s)")


if __name__ == "__main__":
    cli()
