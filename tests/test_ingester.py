import asyncio
import logging
from datetime import datetime, timezone

import pytest

import ingester as ingester_module

from errors import FetchError, ParseError
from ingester import (
    EnginePhase,
    FeedIngester,
    PollSnapshot,
    collect_items,
    display_source_name,
    poll_feed,
)
from dedup import DedupTracker
from models import FeedEntry, FeedSource, SchedulingMode, SchedulingOptions
from parser import parse_feed
from scheduler import next_interval_seconds


RSS_ONE_ITEM = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Example</title>
  <item>
    <title>Launch day</title>
    <link>https://example.com/launch?utm_source=rss</link>
    <description>We shipped.</description>
    <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate>
  </item>
</channel></rss>
"""

PUBLISHED = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _entries(*entries):
    return lambda content: list(entries)


async def _fetch_ok(url):
    return b"<rss/>"


# ----------------------------------------------------------------------
# poll_feed
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_poll_feed_emits_new_items_and_dedups():
    source = FeedSource("example", "https://example.com/feed.xml", title="Example")
    parse = _entries(
        FeedEntry("First", "https://example.com/1", "body", PUBLISHED),
        FeedEntry("First again", "https://example.com/1?utm_medium=x", None, PUBLISHED),
        FeedEntry("Second", "https://example.com/2", None, PUBLISHED),
    )
    snapshot = PollSnapshot()

    outcome = await poll_feed(source, snapshot, _fetch_ok, parse)

    assert outcome.success is True
    assert [item.title for item in outcome.items] == ["First", "Second"]
    assert outcome.items[0].url == "https://example.com/1"
    assert outcome.items[0].source == "Example"
    assert outcome.snapshot.poll_count == 1
    assert len(outcome.snapshot.dedup) == 2
    # The caller's snapshot is untouched
    assert len(snapshot.dedup) == 0
    assert snapshot.poll_count == 0

    again = await poll_feed(source, outcome.snapshot, _fetch_ok, parse)
    assert again.success is True
    assert again.items == []
    assert again.snapshot.poll_count == 2


@pytest.mark.asyncio
async def test_poll_feed_fetch_error_reports_failure():
    async def fetch(url):
        raise FetchError(url, "HTTP 500", status=500)

    source = FeedSource("broken", "https://example.com/broken.xml")
    outcome = await poll_feed(source, PollSnapshot(poll_count=3), fetch, _entries())

    assert outcome.success is False
    assert outcome.items == []
    assert outcome.snapshot.poll_count == 4


@pytest.mark.asyncio
async def test_poll_feed_parse_error_reports_failure():
    def parse(content):
        raise ParseError("garbage")

    source = FeedSource("garbled", "https://example.com/garbled.xml")
    outcome = await poll_feed(source, PollSnapshot(), _fetch_ok, parse)

    assert outcome.success is False
    assert outcome.snapshot.poll_count == 1


@pytest.mark.asyncio
async def test_poll_feed_cancellation_is_not_an_error(caplog):
    started = asyncio.Event()

    async def fetch(url):
        started.set()
        await asyncio.Event().wait()

    source = FeedSource("slow", "https://example.com/slow.xml")
    task = asyncio.create_task(poll_feed(source, PollSnapshot(), fetch, _entries()))
    await started.wait()

    with caplog.at_level(logging.INFO):
        task.cancel()
        outcome = await task

    assert outcome.success is False
    assert outcome.items == []
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


def test_collect_items_skips_invalid_entries_and_defaults_published():
    source = FeedSource("example", "https://example.com/feed.xml")
    ingested_at = datetime(2024, 5, 1, tzinfo=timezone.utc)
    entries = [
        FeedEntry("", "https://example.com/no-title"),
        FeedEntry("No link"),
        FeedEntry("Relative link", "/just/a/path"),
        FeedEntry("Keep me", "  https://example.com/keep  "),
    ]

    items = collect_items(source, entries, DedupTracker(), ingested_at)

    assert len(items) == 1
    assert items[0].url == "https://example.com/keep"
    assert items[0].published_at == ingested_at
    assert items[0].ingested_at == ingested_at
    assert items[0].body is None


def test_display_source_name_fallbacks():
    assert display_source_name(FeedSource("id", "https://news.example.org/rss", title="News")) == "News"
    assert display_source_name(FeedSource("id", "https://news.example.org/rss")) == "news.example.org"
    assert display_source_name(FeedSource("local-id", "not a url")) == "local-id"


# ----------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_single_feed_end_to_end():
    async def fetch(url):
        return RSS_ONE_ITEM

    ingester = FeedIngester(fetch=fetch, parse=parse_feed, clock=FakeClock())
    ingester.register(FeedSource("example", "https://example.com/feed.xml", title="Example"))
    stream = ingester.start()
    try:
        item = await asyncio.wait_for(stream.__anext__(), timeout=5)
    finally:
        await ingester.stop()

    assert item.feed_id == "example"
    assert item.source == "Example"
    assert item.title == "Launch day"
    assert item.body == "We shipped."
    # Emitted URL is the link as published, not its normalized form
    assert item.url == "https://example.com/launch?utm_source=rss"
    assert item.published_at == PUBLISHED


@pytest.mark.asyncio
async def test_stop_closes_stream_and_resets_state():
    ingester = FeedIngester(fetch=_fetch_ok, parse=_entries(), clock=FakeClock())
    ingester.register(FeedSource("example", "https://example.com/feed.xml"))
    stream = ingester.start()
    assert ingester.phase == EnginePhase.RUNNING

    await ingester.stop()

    assert ingester.phase == EnginePhase.IDLE
    assert stream.closed
    assert [item async for item in stream] == []
    assert ingester.get_feed_state("example") is None
    assert ingester.in_flight_count == 0
    # Stopping twice is harmless
    await ingester.stop()


@pytest.mark.asyncio
async def test_start_is_idempotent():
    ingester = FeedIngester(fetch=_fetch_ok, parse=_entries(), clock=FakeClock())
    first = ingester.start()
    second = ingester.start()
    try:
        assert first is second
    finally:
        await ingester.stop()


@pytest.mark.asyncio
async def test_duplicate_registration_is_ignored():
    calls = []

    async def fetch(url):
        calls.append(url)
        return b""

    ingester = FeedIngester(fetch=fetch, parse=_entries(), clock=FakeClock())
    assert ingester.register(FeedSource("dup", "https://example.com/a.xml")) is True
    assert ingester.register(FeedSource("dup", "https://example.com/b.xml")) is False
    assert list(ingester.sources) == ["dup"]

    ingester.start()
    try:
        await wait_until(lambda: ingester.get_feed_state("dup").poll_count == 1)
        await asyncio.sleep(0.1)
    finally:
        await ingester.stop()

    assert calls == ["https://example.com/a.xml"]


@pytest.mark.asyncio
async def test_disabled_feed_is_never_polled():
    calls = []

    async def fetch(url):
        calls.append(url)
        return b""

    ingester = FeedIngester(fetch=fetch, parse=_entries(), clock=FakeClock())
    ingester.register(FeedSource("off", "https://example.com/off.xml", enabled=False))
    ingester.register(FeedSource("on", "https://example.com/on.xml"))
    ingester.start()
    try:
        await wait_until(lambda: ingester.get_feed_state("on").poll_count == 1)
        await asyncio.sleep(0.1)
    finally:
        await ingester.stop()

    assert calls == ["https://example.com/on.xml"]


@pytest.mark.asyncio
async def test_concurrency_cap_is_respected():
    clock = FakeClock()
    gate = asyncio.Event()
    active = 0
    max_active = 0
    started = []

    async def fetch(url):
        nonlocal active, max_active
        started.append(url)
        active += 1
        max_active = max(max_active, active)
        try:
            await gate.wait()
        finally:
            active -= 1
        return b""

    ingester = FeedIngester(fetch=fetch, parse=_entries(), clock=clock, max_concurrency=4)
    ingester.register_many(
        FeedSource(f"feed-{i}", f"https://example.com/{i}.xml") for i in range(6)
    )
    ingester.start()
    try:
        clock.advance(100)
        await wait_until(lambda: active == 4)
        await asyncio.sleep(0.2)
        assert ingester.in_flight_count == 4
        assert len(started) == 4

        gate.set()
        await wait_until(lambda: len(started) == 6)
    finally:
        await ingester.stop()

    assert max_active == 4


@pytest.mark.asyncio
async def test_failure_backs_off_next_poll():
    async def fetch(url):
        raise FetchError(url, "HTTP 503", status=503)

    clock = FakeClock(1000.0)
    ingester = FeedIngester(fetch=fetch, parse=_entries(), clock=clock)
    ingester.register(FeedSource("flaky", "https://example.com/flaky.xml"))
    ingester.start()
    try:
        await wait_until(lambda: ingester.get_feed_state("flaky").failures == 1)
        state = ingester.get_feed_state("flaky")
        assert state.poll_count == 1
        assert state.in_flight is False
        assert state.next_due == clock.now + next_interval_seconds(300, 1, "flaky")
    finally:
        await ingester.stop()


@pytest.mark.asyncio
async def test_success_resets_failures():
    attempts = []

    async def fetch(url):
        attempts.append(url)
        if len(attempts) == 1:
            raise FetchError(url, "HTTP 500", status=500)
        return b""

    clock = FakeClock()
    ingester = FeedIngester(fetch=fetch, parse=_entries(), clock=clock)
    ingester.register(FeedSource("recovering", "https://example.com/r.xml"))
    ingester.start()
    try:
        await wait_until(lambda: ingester.get_feed_state("recovering").failures == 1)
        clock.advance(10_000)
        await wait_until(lambda: ingester.get_feed_state("recovering").poll_count == 2)
        assert ingester.get_feed_state("recovering").failures == 0
    finally:
        await ingester.stop()


@pytest.mark.asyncio
async def test_smooth_mode_anchors_on_due_time():
    clock = FakeClock()

    async def fetch(url):
        clock.advance(50)
        return b""

    ingester = FeedIngester(
        fetch=fetch,
        parse=_entries(),
        clock=clock,
        scheduling=SchedulingOptions(mode=SchedulingMode.SMOOTH),
    )
    ingester.register(FeedSource("grid", "https://example.com/grid.xml"))
    ingester.start()
    try:
        await wait_until(lambda: ingester.get_feed_state("grid").poll_count == 1)
        state = ingester.get_feed_state("grid")
        assert state.last_due_anchor == 0
        assert state.next_due == 0 + next_interval_seconds(300, 0, "grid")
    finally:
        await ingester.stop()


@pytest.mark.asyncio
async def test_bursty_mode_anchors_on_completion_time():
    clock = FakeClock()

    async def fetch(url):
        clock.advance(50)
        return b""

    ingester = FeedIngester(fetch=fetch, parse=_entries(), clock=clock)
    ingester.register(FeedSource("burst", "https://example.com/burst.xml"))
    ingester.start()
    try:
        await wait_until(lambda: ingester.get_feed_state("burst").poll_count == 1)
        state = ingester.get_feed_state("burst")
        assert clock.now == 50
        assert state.next_due == 50 + next_interval_seconds(300, 0, "burst")
    finally:
        await ingester.stop()


@pytest.mark.asyncio
async def test_register_while_running_schedules_feed():
    calls = []

    async def fetch(url):
        calls.append(url)
        return b""

    clock = FakeClock()
    ingester = FeedIngester(fetch=fetch, parse=_entries(), clock=clock)
    ingester.start()
    try:
        assert ingester.register(FeedSource("late", "https://example.com/late.xml")) is True
        await wait_until(lambda: calls == ["https://example.com/late.xml"])
    finally:
        await ingester.stop()


@pytest.mark.asyncio
async def test_outcome_after_stop_is_discarded():
    release = asyncio.Event()
    fetching = asyncio.Event()

    async def fetch(url):
        fetching.set()
        await release.wait()
        return RSS_ONE_ITEM

    ingester = FeedIngester(fetch=fetch, parse=parse_feed, clock=FakeClock())
    ingester.register(FeedSource("example", "https://example.com/feed.xml"))
    stream = ingester.start()
    await asyncio.wait_for(fetching.wait(), timeout=5)

    await ingester.stop()

    assert [item async for item in stream] == []
    assert ingester.get_feed_state("example") is None


@pytest.mark.asyncio
async def test_poll_feed_collection_error_reports_failure():
    source = FeedSource("odd", "https://example.com/odd.xml")
    parse = _entries(
        FeedEntry("Good", "https://example.com/good", None, PUBLISHED),
        FeedEntry(123, "https://example.com/bad"),
    )

    outcome = await poll_feed(source, PollSnapshot(), _fetch_ok, parse)

    assert outcome.success is False
    assert outcome.items == []
    assert outcome.snapshot.poll_count == 1
    # Partial collection must not mark anything as seen
    assert len(outcome.snapshot.dedup) == 0


def test_collect_items_keeps_parsed_title():
    source = FeedSource("example", "https://example.com/feed.xml")
    entries = [
        FeedEntry("  Spaced title ", "https://example.com/spaced", None, PUBLISHED),
        FeedEntry("   ", "https://example.com/blank", None, PUBLISHED),
    ]

    items = collect_items(source, entries, DedupTracker(), PUBLISHED)

    assert [item.title for item in items] == ["  Spaced title "]


def test_collect_items_treats_naive_timestamps_as_utc():
    source = FeedSource("example", "https://example.com/feed.xml")
    dedup = DedupTracker()
    naive = FeedEntry("A", "https://example.com/a", None, datetime(2024, 1, 1))

    first = collect_items(source, [naive], dedup, PUBLISHED)
    later = collect_items(source, [FeedEntry("A", "https://example.com/a")], dedup,
                          datetime(2024, 6, 1, tzinfo=timezone.utc))

    assert first[0].published_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert len(later) == 1


@pytest.mark.asyncio
async def test_mixed_naive_and_undated_entries_keep_feed_polling():
    calls = []

    def parse(content):
        calls.append(content)
        if len(calls) == 1:
            return [FeedEntry("A", "https://example.com/a", None, datetime(2024, 1, 1))]
        return [FeedEntry("A", "https://example.com/a")]

    clock = FakeClock()
    ingester = FeedIngester(fetch=_fetch_ok, parse=parse, clock=clock)
    ingester.register(FeedSource("mixed", "https://example.com/mixed.xml"))
    ingester.start()
    try:
        await wait_until(lambda: ingester.get_feed_state("mixed").poll_count == 1)
        for expected in (2, 3):
            clock.advance(10_000)
            await wait_until(lambda: ingester.get_feed_state("mixed").poll_count == expected)
        state = ingester.get_feed_state("mixed")
        assert state.failures == 0
        assert state.in_flight is False
        assert ingester.in_flight_count == 0
    finally:
        await ingester.stop()


@pytest.mark.asyncio
async def test_worker_crash_releases_slot_and_backs_off(monkeypatch):
    async def crash(source, snapshot, fetch, parse):
        raise RuntimeError("boom")

    monkeypatch.setattr(ingester_module, "poll_feed", crash)
    clock = FakeClock()
    ingester = FeedIngester(fetch=_fetch_ok, parse=_entries(), clock=clock)
    ingester.register(FeedSource("crashy", "https://example.com/crashy.xml"))
    ingester.start()
    try:
        await wait_until(lambda: ingester.get_feed_state("crashy").failures == 1)
        state = ingester.get_feed_state("crashy")
        assert state.in_flight is False
        assert state.poll_count == 1
        assert ingester.in_flight_count == 0
        assert state.next_due == clock.now + next_interval_seconds(300, 1, "crashy")
    finally:
        await ingester.stop()


@pytest.mark.asyncio
async def test_smooth_mode_spaces_launches():
    clock = FakeClock()
    started = []

    async def fetch(url):
        started.append(url)
        return b""

    scheduling = SchedulingOptions(
        mode=SchedulingMode.SMOOTH,
        min_launch_spacing=5.0,
        smooth_max_initial_spread=1,
    )
    ingester = FeedIngester(fetch=fetch, parse=_entries(), clock=clock, scheduling=scheduling)
    ingester.register_many(
        FeedSource(f"feed-{i}", f"https://example.com/{i}.xml") for i in range(3)
    )
    ingester.start()
    try:
        await wait_until(lambda: len(started) == 1)
        await asyncio.sleep(0.3)
        assert len(started) == 1

        clock.advance(4)
        await asyncio.sleep(1.3)
        assert len(started) == 1

        clock.advance(1)
        await wait_until(lambda: len(started) == 2)
        await asyncio.sleep(0.3)
        assert len(started) == 2

        clock.advance(5)
        await wait_until(lambda: len(started) == 3)
    finally:
        await ingester.stop()


@pytest.mark.asyncio
async def test_restart_begins_from_clean_schedule():
    clock = FakeClock()
    parse = _entries(FeedEntry("Launch day", "https://example.com/launch", None, PUBLISHED))
    ingester = FeedIngester(fetch=_fetch_ok, parse=parse, clock=clock)
    ingester.register(FeedSource("example", "https://example.com/feed.xml"))

    first_stream = ingester.start()
    first_item = await asyncio.wait_for(first_stream.__anext__(), timeout=5)
    first_state = ingester.get_feed_state("example")
    await wait_until(lambda: first_state.poll_count == 1 and not first_state.in_flight)
    first_due = first_state.next_due
    await ingester.stop()
    assert ingester.get_feed_state("example") is None

    clock.advance(50)
    second_stream = ingester.start()
    try:
        assert second_stream is not first_stream
        # Dedup history is gone, so the same entry is emitted again
        second_item = await asyncio.wait_for(second_stream.__anext__(), timeout=5)
        second_state = ingester.get_feed_state("example")
        await wait_until(lambda: second_state.poll_count == 1 and not second_state.in_flight)
        assert second_state is not first_state
        assert second_state.failures == 0
        assert second_state.next_due != first_due
        assert second_state.next_due == 50 + next_interval_seconds(300, 0, "example")
    finally:
        await ingester.stop()

    assert first_item.title == second_item.title == "Launch day"


@pytest.mark.asyncio
async def test_start_while_stopping_raises():
    ingester = FeedIngester(fetch=_fetch_ok, parse=_entries(), clock=FakeClock())
    ingester.start()

    stopping = asyncio.create_task(ingester.stop())
    await asyncio.sleep(0)
    assert ingester.phase == EnginePhase.STOPPING
    with pytest.raises(RuntimeError):
        ingester.start()

    await stopping
    assert ingester.phase == EnginePhase.IDLE
    stream = ingester.start()
    try:
        assert not stream.closed
    finally:
        await ingester.stop()
