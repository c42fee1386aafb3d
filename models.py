#!/usr/bin/env python3
"""
Data models for the feed ingester.

Sources are supplied by callers (or loaded from feeds.yaml), entries are the
transient output of the parser, and news items are the immutable values the
engine emits on its output stream.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


@dataclass(frozen=True)
class FeedSource:
    """A registered, independently-polled feed.

    ``tags``, ``priority`` and ``notes`` are carried for callers and never
    consulted by the engine.
    """

    feed_id: str
    url: str
    title: Optional[str] = None
    enabled: bool = True
    poll_interval_seconds: Optional[int] = None
    tags: Optional[List[str]] = None
    priority: Optional[int] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class FeedEntry:
    """One structural entry produced by the parser."""

    title: str
    link: Optional[str] = None
    body: Optional[str] = None
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class NewsItem:
    feed_id: str
    source: str
    title: str
    body: Optional[str]
    url: str
    published_at: datetime
    ingested_at: datetime
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-ready representation."""
        return {
            "id": self.id,
            "feed_id": self.feed_id,
            "source": self.source,
            "title": self.title,
            "body": self.body,
            "url": self.url,
            "published_at": self.published_at.isoformat(),
            "ingested_at": self.ingested_at.isoformat(),
        }


class SchedulingMode(str, Enum):
    # bursty anchors the next poll on completion time; smooth keeps a fixed grid
    BURSTY = "bursty"
    SMOOTH = "smooth"


@dataclass(frozen=True)
class SchedulingOptions:
    mode: SchedulingMode = SchedulingMode.BURSTY
    min_launch_spacing: float = 1.0
    smooth_max_initial_spread: int = 300


__all__ = ["FeedSource", "FeedEntry", "NewsItem", "SchedulingMode", "SchedulingOptions"]
