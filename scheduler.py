#!/usr/bin/env python3
"""
Scheduling math and per-feed scheduling state.

All timing decisions derive from a stable FNV-1a hash of the feed identifier
instead of a random number generator, so the spread of initial polls and the
jitter applied to intervals are reproducible across processes:

- Initial offsets spread enabled feeds apart when the engine starts
- Jitter nudges each feed's interval by a small fixed amount
- Backoff multiplies the interval after consecutive failures, capped at 8x
- Intervals never drop below one second and are capped at one hour
"""

from dataclasses import dataclass, field
from typing import Optional

from dedup import DedupTracker
from models import FeedSource, SchedulingMode

FNV_OFFSET_BASIS = 14695981039346656037
FNV_PRIME = 1099511628211
UINT64_MASK = (1 << 64) - 1

DEFAULT_POLL_INTERVAL_SECONDS = 300
MAX_INTERVAL_SECONDS = 3600
MAX_BACKOFF_FACTOR = 8
BURSTY_OFFSET_WINDOW = 31


def stable_hash(feed_id: str) -> int:
    """64-bit FNV-1a hash of the identifier's UTF-8 bytes."""
    value = FNV_OFFSET_BASIS
    for byte in feed_id.encode("utf-8"):
        value ^= byte
        value = (value * FNV_PRIME) & UINT64_MASK
    return value


def jitter_seconds(feed_id: str, base: int) -> int:
    """Deterministic signed jitter in [-range, range], range = clamp(base // 20, 1, 10)."""
    if base <= 1:
        return 0
    jitter_range = max(1, min(10, base // 20))
    return stable_hash(feed_id) % (2 * jitter_range + 1) - jitter_range


def backoff_factor(failures: int) -> int:
    """1, 2, 4, 8, 8, ... for 0, 1, 2, 3, 4+ consecutive failures."""
    return min(MAX_BACKOFF_FACTOR, 2 ** min(max(failures, 0), 3))


def next_interval_seconds(base: int, failures: int, feed_id: str) -> int:
    """Interval until the next poll, with jitter and failure backoff applied."""
    base_with_jitter = max(1, base + jitter_seconds(feed_id, base))
    cap = max(base_with_jitter, MAX_INTERVAL_SECONDS)
    return min(base_with_jitter * backoff_factor(failures), cap)


def initial_offset_seconds(
    feed_id: str,
    enabled_count: int,
    base: int,
    mode: SchedulingMode = SchedulingMode.BURSTY,
    smooth_max_initial_spread: int = 300,
) -> int:
    """Delay before a feed's first poll after it becomes eligible.

    A lone feed starts immediately. Bursty mode spreads feeds over 31 seconds;
    smooth mode spreads them over their own interval, capped by
    ``smooth_max_initial_spread``.
    """
    if enabled_count <= 1:
        return 0
    if mode == SchedulingMode.SMOOTH:
        window = max(1, min(base, smooth_max_initial_spread))
        return stable_hash(feed_id) % window
    return stable_hash(feed_id) % BURSTY_OFFSET_WINDOW


class PollIntervalPolicy:
    """Maps a feed to its effective poll interval in seconds (floor 1)."""

    def __init__(self, default_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS) -> None:
        self.default_interval_seconds = default_interval_seconds

    def interval_for(self, source: FeedSource) -> int:
        candidate = source.poll_interval_seconds
        if candidate is None:
            candidate = self.default_interval_seconds
        return max(int(candidate), 1)


@dataclass
class FeedState:
    """Mutable scheduling state for one feed, owned by the ingester."""

    next_due: Optional[float] = None
    last_due_anchor: Optional[float] = None
    in_flight: bool = False
    failures: int = 0
    poll_count: int = 0
    dedup: DedupTracker = field(default_factory=DedupTracker)
