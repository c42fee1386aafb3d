#!/usr/bin/env python3
"""
Continuous feed ingestion engine.

The ingester polls every registered feed on its own cadence and turns new
entries into a deduplicated stream of NewsItem values. It is built from:

- A single scheduler loop that picks the earliest-due feed, respects the
  concurrency cap and (in smooth mode) a minimum spacing between launches
- Worker tasks that fetch, parse and deduplicate one feed each, working on a
  snapshot of that feed's state and reporting back an outcome
- Completion handling that applies outcomes one at a time, emits items and
  computes the next due time with jitter and failure backoff

All engine state lives on the event loop thread and is only touched from
synchronous sections, so outcomes from concurrent workers never interleave.
"""

from asyncio import CancelledError, Event, Queue, Task, TimeoutError, gather, get_running_loop, wait_for
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from time import monotonic
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit
import traceback

from config import get_logger
from dedup import DedupTracker
from errors import FetchError, ParseError
from fetcher import FeedFetcher
from models import FeedEntry, FeedSource, NewsItem, SchedulingMode, SchedulingOptions
from parser import parse_feed
from scheduler import FeedState, PollIntervalPolicy, initial_offset_seconds, next_interval_seconds
from telemetry import init_telemetry, trace_span
from utils import format_duration, is_valid_link

logger = get_logger("ingester")
init_telemetry("feed-ingester")

DEFAULT_MAX_CONCURRENCY = 4
IDLE_TICK_SECONDS = 0.25
CAPACITY_TICK_SECONDS = 0.05
# Upper bound on due-time and launch-spacing waits so clock changes are picked up
MAX_DUE_WAIT_SECONDS = 1.0

FetchFn = Callable[[str], Awaitable[bytes]]
ParseFn = Callable[[bytes], List[FeedEntry]]

_END_OF_STREAM = object()


class EnginePhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class PollSnapshot:
    """Copy of the per-feed state a worker is allowed to change."""

    dedup: DedupTracker = field(default_factory=DedupTracker)
    poll_count: int = 0


@dataclass
class PollOutcome:
    items: List[NewsItem]
    snapshot: PollSnapshot
    success: bool


class ItemStream:
    """Async iterator over emitted items.

    Only the ingester pushes. Items pushed before close() are still delivered;
    once the end marker is reached every consumer's iteration stops.
    """

    def __init__(self) -> None:
        self._queue: Queue = Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, item: NewsItem) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(item)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END_OF_STREAM)

    def __aiter__(self) -> "ItemStream":
        return self

    async def __anext__(self) -> NewsItem:
        item = await self._queue.get()
        if item is _END_OF_STREAM:
            # Leave the marker for any other consumer
            self._queue.put_nowait(_END_OF_STREAM)
            raise StopAsyncIteration
        return item


def display_source_name(source: FeedSource) -> str:
    """Feed title, else the URL host, else the feed identifier."""
    if source.title:
        return source.title
    try:
        host = urlsplit(source.url).hostname
    except ValueError:
        host = None
    return host or source.feed_id


def collect_items(
    source: FeedSource,
    entries: Iterable[FeedEntry],
    dedup: DedupTracker,
    ingested_at: datetime,
) -> List[NewsItem]:
    """Turn parsed entries into new items, updating ``dedup`` in place."""
    items: List[NewsItem] = []
    source_name = display_source_name(source)
    for entry in entries:
        title = entry.title or ""
        if not title.strip() or not is_valid_link(entry.link):
            continue
        link = entry.link.strip()
        published_at = entry.published_at or ingested_at
        if published_at.tzinfo is None:
            # Naive timestamps are taken as UTC so they compare with ingestion times
            published_at = published_at.replace(tzinfo=timezone.utc)
        if not dedup.should_emit(link, title, published_at):
            continue
        items.append(NewsItem(
            feed_id=source.feed_id,
            source=source_name,
            title=title,
            body=entry.body,
            url=link,
            published_at=published_at,
            ingested_at=ingested_at,
        ))
    return items


@trace_span(
    "ingester.poll_feed",
    tracer_name="ingester",
    attr_from_args=lambda source, *args, **kwargs: {
        "feed.id": source.feed_id,
        "feed.url": source.url,
    },
)
async def poll_feed(source: FeedSource, snapshot: PollSnapshot, fetch: FetchFn, parse: ParseFn) -> PollOutcome:
    """Fetch, parse and deduplicate one feed.

    Works on a private copy of ``snapshot``; the engine only sees the result
    through the returned outcome. Failures never propagate: fetch, parse and
    item collection errors are logged and reported as an unsuccessful poll
    that leaves the dedup state as it was, and cancellation is reported the
    same way without being logged as an error.
    """
    snapshot = PollSnapshot(dedup=snapshot.dedup.copy(), poll_count=snapshot.poll_count + 1)
    logger.info(f"Polling feed {source.feed_id} (poll #{snapshot.poll_count}) from {source.url}")

    try:
        content = await fetch(source.url)
        # feedparser is not async, run in executor
        entries = await get_running_loop().run_in_executor(None, parse, content)
        dedup = snapshot.dedup.copy()
        items = collect_items(source, entries, dedup, datetime.now(timezone.utc))
    except CancelledError:
        logger.info(f"Poll of feed {source.feed_id} cancelled")
        return PollOutcome([], snapshot, False)
    except (FetchError, ParseError) as e:
        logger.error(f"Feed {source.feed_id} failed: {e}")
        return PollOutcome([], snapshot, False)
    except Exception as e:
        logger.error(f"Unexpected error polling feed {source.feed_id}: {e}")
        logger.error(traceback.format_exc())
        return PollOutcome([], snapshot, False)

    snapshot.dedup = dedup
    logger.info(f"Feed {source.feed_id}: {len(entries)} entries, {len(items)} new items")
    return PollOutcome(items, snapshot, True)


class FeedIngester:
    """Owns the feed registry, per-feed scheduling state and the output stream."""

    def __init__(
        self,
        poll_interval_policy: Optional[PollIntervalPolicy] = None,
        scheduling: Optional[SchedulingOptions] = None,
        fetch: Optional[FetchFn] = None,
        parse: Optional[ParseFn] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        """Initialize the ingester.

        Args:
            poll_interval_policy: Maps a feed to its poll interval (default 300s)
            scheduling: Bursty (default) or smooth scheduling options
            fetch: Async callable returning a feed's bytes; defaults to an owned FeedFetcher
            parse: Callable turning bytes into entries; defaults to parse_feed
            max_concurrency: Maximum number of feeds polled at once
            clock: Monotonic time source in seconds used for all scheduling decisions
        """
        self.poll_interval_policy = poll_interval_policy or PollIntervalPolicy()
        self.scheduling = scheduling or SchedulingOptions()
        self.max_concurrency = max(1, max_concurrency)
        self._fetcher: Optional[FeedFetcher] = None
        if fetch is None:
            self._fetcher = FeedFetcher()
            fetch = self._fetcher.fetch
        self._fetch = fetch
        self._parse = parse or parse_feed
        self._clock = clock

        self._phase = EnginePhase.IDLE
        self._generation = 0
        self._sources: Dict[str, FeedSource] = {}
        self._states: Dict[str, FeedState] = {}
        self._workers: Dict[str, Task] = {}
        self._in_flight_count = 0
        self._last_launch: Optional[float] = None
        self._stream: Optional[ItemStream] = None
        self._scheduler_task: Optional[Task] = None
        self._wake = Event()

    @property
    def phase(self) -> EnginePhase:
        return self._phase

    @property
    def sources(self) -> Dict[str, FeedSource]:
        return dict(self._sources)

    @property
    def in_flight_count(self) -> int:
        return self._in_flight_count

    def get_feed_state(self, feed_id: str) -> Optional[FeedState]:
        return self._states.get(feed_id)

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------
    def register(self, source: FeedSource) -> bool:
        """Add a feed. Returns False (and changes nothing) for a known identifier."""
        if source.feed_id in self._sources:
            logger.info(f"Duplicate feed registration ignored: {source.feed_id}")
            return False

        self._sources[source.feed_id] = source
        logger.info(f"Registered feed {source.feed_id} ({source.url}, enabled={source.enabled})")

        if self._phase == EnginePhase.RUNNING and source.enabled:
            self._seed(source, self._clock(), self._enabled_count())
            self._wake.set()
        return True

    def register_many(self, sources: Iterable[FeedSource]) -> int:
        """Register several feeds; returns how many were new."""
        return sum(1 for source in sources if self.register(source))

    def start(self) -> ItemStream:
        """Start polling and return the output stream.

        Idempotent while running. Must be called from within a running event loop.

        Raises:
            RuntimeError: if a stop() is still in progress. start() is synchronous
                and cannot wait for it; await stop() first, then start again.
        """
        if self._phase == EnginePhase.RUNNING and self._stream is not None:
            logger.info("FeedIngester already running")
            return self._stream
        if self._phase == EnginePhase.STOPPING:
            raise RuntimeError("FeedIngester is stopping; await stop() before starting again")

        loop = get_running_loop()
        self._phase = EnginePhase.RUNNING
        self._generation += 1
        self._stream = ItemStream()
        self._wake.clear()
        self._prime(self._clock())
        self._scheduler_task = loop.create_task(self._run_scheduler(), name="feed-ingester-scheduler")
        logger.info(
            f"FeedIngester started: {self._enabled_count()} enabled feeds, "
            f"mode={self.scheduling.mode.value}, max_concurrency={self.max_concurrency}"
        )
        return self._stream

    async def stop(self) -> None:
        """Cancel all work, clear scheduling state and close the stream."""
        if self._phase != EnginePhase.RUNNING:
            return

        self._phase = EnginePhase.STOPPING
        logger.info(f"Stopping FeedIngester ({self._in_flight_count} polls in flight)")
        tasks = list(self._workers.values())
        if self._scheduler_task is not None:
            tasks.append(self._scheduler_task)
        for task in tasks:
            task.cancel()
        await gather(*tasks, return_exceptions=True)

        self._scheduler_task = None
        self._workers.clear()
        self._states.clear()
        self._in_flight_count = 0
        self._last_launch = None
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._fetcher is not None:
            await self._fetcher.close()

        self._phase = EnginePhase.IDLE
        logger.info("FeedIngester stopped")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _enabled_count(self) -> int:
        return sum(1 for source in self._sources.values() if source.enabled)

    def _seed(self, source: FeedSource, now: float, enabled_count: int) -> None:
        state = self._states.setdefault(source.feed_id, FeedState())
        offset = initial_offset_seconds(
            source.feed_id,
            enabled_count,
            self.poll_interval_policy.interval_for(source),
            self.scheduling.mode,
            self.scheduling.smooth_max_initial_spread,
        )
        state.next_due = now + offset
        logger.debug(f"Feed {source.feed_id} first poll in {format_duration(offset)}")

    def _prime(self, now: float) -> None:
        """Give every enabled feed a due time and drop due times of disabled ones."""
        enabled_count = self._enabled_count()
        for feed_id, source in self._sources.items():
            state = self._states.get(feed_id)
            if not source.enabled:
                if state is not None:
                    state.next_due = None
                continue
            if state is None or state.next_due is None:
                self._seed(source, now, enabled_count)

    def _select(self) -> Optional[Tuple[FeedSource, FeedState]]:
        """Earliest-due enabled feed that is not currently being polled."""
        selected: Optional[Tuple[FeedSource, FeedState]] = None
        for feed_id, source in self._sources.items():
            if not source.enabled:
                continue
            state = self._states.get(feed_id)
            if state is None or state.in_flight or state.next_due is None:
                continue
            if selected is None or state.next_due < selected[1].next_due:
                selected = (source, state)
        return selected

    async def _wait(self, timeout: float) -> None:
        """Sleep up to ``timeout`` seconds, returning early when woken."""
        try:
            await wait_for(self._wake.wait(), timeout=max(timeout, 0.0))
        except TimeoutError:
            pass

    async def _run_scheduler(self) -> None:
        logger.info("Scheduler loop started")
        smooth = self.scheduling.mode == SchedulingMode.SMOOTH
        try:
            while self._phase == EnginePhase.RUNNING:
                self._wake.clear()
                now = self._clock()
                self._prime(now)

                selected = self._select()
                if selected is None:
                    await self._wait(IDLE_TICK_SECONDS)
                    continue

                source, state = selected
                if state.next_due > now:
                    await self._wait(min(state.next_due - now, MAX_DUE_WAIT_SECONDS))
                    continue

                if self._in_flight_count >= self.max_concurrency:
                    await self._wait(CAPACITY_TICK_SECONDS)
                    continue

                if smooth and self._last_launch is not None:
                    elapsed = now - self._last_launch
                    if elapsed < self.scheduling.min_launch_spacing:
                        await self._wait(min(self.scheduling.min_launch_spacing - elapsed, MAX_DUE_WAIT_SECONDS))
                        continue

                self._launch(source, state, now)
        except CancelledError:
            logger.info("Scheduler loop cancelled - shutting down")

    def _launch(self, source: FeedSource, state: FeedState, now: float) -> None:
        state.in_flight = True
        state.last_due_anchor = state.next_due
        self._last_launch = now
        self._in_flight_count += 1
        snapshot = PollSnapshot(dedup=state.dedup.copy(), poll_count=state.poll_count)
        task = get_running_loop().create_task(
            self._run_worker(source, snapshot, self._generation),
            name=f"poll:{source.feed_id}",
        )
        self._workers[source.feed_id] = task

    async def _run_worker(self, source: FeedSource, snapshot: PollSnapshot, generation: int) -> None:
        # Report an outcome even when poll_feed itself raises
        outcome = PollOutcome([], PollSnapshot(snapshot.dedup, snapshot.poll_count + 1), False)
        try:
            outcome = await poll_feed(source, snapshot, self._fetch, self._parse)
        except Exception as e:
            logger.error(f"Worker for feed {source.feed_id} crashed: {e}")
            logger.error(traceback.format_exc())
        finally:
            self._complete(source.feed_id, outcome, generation)

    def _complete(self, feed_id: str, outcome: PollOutcome, generation: int) -> None:
        """Apply a finished worker's outcome to the engine state."""
        if generation != self._generation:
            return
        self._workers.pop(feed_id, None)
        if self._phase != EnginePhase.RUNNING:
            logger.debug(f"Discarding outcome for {feed_id}: engine is {self._phase.value}")
            return
        state = self._states.get(feed_id)
        source = self._sources.get(feed_id)
        if state is None or source is None:
            return

        state.in_flight = False
        self._in_flight_count = max(0, self._in_flight_count - 1)
        state.dedup = outcome.snapshot.dedup
        state.poll_count = outcome.snapshot.poll_count
        if self._stream is not None:
            for item in outcome.items:
                self._stream.push(item)

        state.failures = 0 if outcome.success else state.failures + 1
        interval = next_interval_seconds(
            self.poll_interval_policy.interval_for(source),
            state.failures,
            feed_id,
        )
        now = self._clock()
        anchor = now
        if self.scheduling.mode == SchedulingMode.SMOOTH and state.last_due_anchor is not None:
            anchor = state.last_due_anchor
        state.next_due = max(anchor + interval, now)

        if outcome.success:
            logger.debug(f"Feed {feed_id} next poll in {format_duration(state.next_due - now)}")
        else:
            logger.warning(
                f"Feed {feed_id} failure count increased to {state.failures}. "
                f"Next attempt in {format_duration(state.next_due - now)}"
            )
        self._wake.set()
