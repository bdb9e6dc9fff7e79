import argparse
import asyncio
import logging
import sys
import time
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from core.errors import ConfigError, StoreError
from core.events import FeedRefreshed
from ingestion.fetcher import Fetcher
from ingestion.registry import create_registry_from_config
from processing.extractor import Extractor
from services.config import Config, load_config
from services.logging import setup_logging
from services.scheduler import Scheduler
from services.store import Store
from tui.app import run_interface
from tui.controller import Controller


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="termfeed", description="Terminal feed reader")
    parser.add_argument("--config", help="path to config.yml")
    parser.add_argument(
        "--once",
        action="store_true",
        help="refresh every feed once, print a summary and exit",
    )
    parser.add_argument("--log-level", help="override LOG_LEVEL from the config")
    return parser.parse_args(argv)


async def run(config: Config, once: bool = False, console: Optional[Console] = None) -> int:
    start_time = time.perf_counter()
    logger = logging.getLogger(__name__)
    console = console or Console()

    logger.info("Starting termfeed")

    # ----------------------------
    # Open the store; nothing works without it
    # ----------------------------
    store = Store(config.DATABASE_PATH, refresh_existing=config.REFRESH_EXISTING_ITEMS)
    registry = create_registry_from_config(config)
    try:
        await store.init_tables()
        await store.upsert_feeds(registry)
    except StoreError as e:
        logger.critical(f"Store unavailable at {config.DATABASE_PATH}: {e}")
        console.print(f"[red]Cannot open database {config.DATABASE_PATH}: {e}[/red]")
        return 1

    # ----------------------------
    # Pipeline
    # ----------------------------
    events: asyncio.Queue = asyncio.Queue()
    scheduler = Scheduler(
        registry,
        store,
        Fetcher(timeout=config.FETCH_TIMEOUT_SECONDS, user_agent=config.USER_AGENT),
        Extractor(),
        events,
        max_concurrent=config.MAX_CONCURRENT_FETCHES,
        max_attempts=config.FETCH_MAX_ATTEMPTS,
        base_delay=config.RETRY_BASE_DELAY_SECONDS,
        max_delay=config.RETRY_MAX_DELAY_SECONDS,
        refresh_interval=config.REFRESH_INTERVAL_SECONDS,
        extract_on_ingest=config.EXTRACT_ON_INGEST,
    )

    if once:
        try:
            scheduler.trigger()
            await scheduler.wait_idle()
        finally:
            await scheduler.shutdown()

        table = Table(title="Refresh summary")
        table.add_column("Feed")
        table.add_column("New", justify="right")
        table.add_column("Result")
        failures = 0
        while not events.empty():
            event = events.get_nowait()
            if not isinstance(event, FeedRefreshed):
                continue
            source = registry.get(event.feed_url)
            name = source.display_name if source else event.feed_url
            if event.ok:
                table.add_row(name, str(event.new_items), "ok")
            else:
                failures += 1
                table.add_row(name, "-", f"[red]{event.error}[/red]")
        console.print(table)
        logger.info(f"One-shot refresh completed in {time.perf_counter() - start_time:.1f}s")
        return 0 if failures == 0 else 3

    # ----------------------------
    # Interface
    # ----------------------------
    controller = Controller(
        store,
        scheduler,
        registry,
        confirm_quit=config.CONFIRM_QUIT,
        mark_read_on_open=config.MARK_READ_ON_OPEN,
    )
    try:
        await run_interface(controller, scheduler, events, console=console)
    except RuntimeError as e:
        # no terminal to draw on; --once still works
        logger.critical(str(e))
        console.print(f"[red]{e}[/red] (use --once for a non-interactive refresh)")
        await scheduler.shutdown()
        return 1

    logger.info(f"Session ended after {time.perf_counter() - start_time:.0f}s")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    console = Console()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    setup_logging(args.log_level or config.LOG_LEVEL, config.LOG_PATH)

    try:
        return asyncio.run(run(config, once=args.once, console=console))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
