#!/usr/bin/env python3
"""
Feed Ingester command-line runner.

Loads the feed list from feeds.yaml, starts the ingestion engine and consumes
its item stream until interrupted (or until --duration elapses), then stops
the engine cleanly.

Modes:
- run: poll feeds continuously and log (or print as JSON lines) each new item
- status: print the effective configuration and exit
"""

import argparse
import asyncio
import json
import sys
from typing import Optional

from config import config, get_logger
from ingester import FeedIngester, ItemStream
from models import NewsItem, SchedulingMode, SchedulingOptions
from scheduler import PollIntervalPolicy

logger = get_logger("main")


def build_ingester(mode: Optional[SchedulingMode] = None) -> FeedIngester:
    """Create an ingester configured from the global config."""
    scheduling = SchedulingOptions(
        mode=mode or config.SCHEDULING_MODE,
        min_launch_spacing=config.MIN_LAUNCH_SPACING_SECONDS,
        smooth_max_initial_spread=config.SMOOTH_MAX_INITIAL_SPREAD_SECONDS,
    )
    return FeedIngester(
        poll_interval_policy=PollIntervalPolicy(config.DEFAULT_POLL_INTERVAL_SECONDS),
        scheduling=scheduling,
        max_concurrency=config.MAX_CONCURRENT_POLLS,
    )


def emit_item(item: NewsItem, as_json: bool) -> None:
    if as_json:
        print(json.dumps(item.to_dict(), ensure_ascii=False), flush=True)
    else:
        logger.info(f"📰 [{item.source}] {item.title} - {item.url}")


async def consume(stream: ItemStream, as_json: bool) -> int:
    count = 0
    async for item in stream:
        emit_item(item, as_json)
        count += 1
    return count


async def run_ingester(mode: Optional[SchedulingMode], duration: float, as_json: bool) -> int:
    """Run the engine until cancelled or ``duration`` seconds elapse (0 = forever)."""
    ingester = build_ingester(mode)
    ingester.register_many(config.FEED_SOURCES)
    if not ingester.sources:
        logger.error("❌ No feeds configured")
        logger.info(f"💡 Add feeds to {config.FEEDS_CONFIG_PATH}")
        return 0

    stream = ingester.start()
    consumer = asyncio.create_task(consume(stream, as_json))
    try:
        if duration > 0:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("👋 Ingester shutting down")
    finally:
        await ingester.stop()
    count = await consumer
    logger.info(f"✅ Emitted {count} items")
    return count


def print_status() -> None:
    """Print the effective configuration summary."""
    print("\n📊 Feed Ingester Configuration")
    for key, value in config.get_config_summary().items():
        print(f"   {key}: {value}")
    for source in config.FEED_SOURCES:
        state = "enabled" if source.enabled else "disabled"
        interval = source.poll_interval_seconds or config.DEFAULT_POLL_INTERVAL_SECONDS
        print(f"   - {source.feed_id}: {source.url} ({state}, every {interval}s)")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed Ingester')
    parser.add_argument('mode', nargs='?', default='run', choices=['run', 'status'],
                        help='Operation mode')
    parser.add_argument('--feeds', type=str,
                        help='Path to feeds.yaml (defaults to FEEDS_CONFIG_PATH)')
    parser.add_argument('--mode', dest='scheduling_mode', choices=[m.value for m in SchedulingMode],
                        help='Scheduling mode (defaults to SCHEDULING_MODE)')
    parser.add_argument('--duration', type=float, default=0,
                        help='Stop after this many seconds (0 runs until interrupted)')
    parser.add_argument('--jsonl', action='store_true',
                        help='Print each item as one JSON object per line')

    args = parser.parse_args()

    if args.feeds:
        config.reload_feed_sources(args.feeds)

    try:
        if args.mode == 'status':
            print_status()
            return
        mode = SchedulingMode(args.scheduling_mode) if args.scheduling_mode else None
        asyncio.run(run_ingester(mode, args.duration, args.jsonl))
    except KeyboardInterrupt:
        logger.info("👋 Ingester shutting down")
    except (OSError, RuntimeError, ValueError) as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
