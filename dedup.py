#!/usr/bin/env python3
"""Per-feed deduplication of candidate news items."""

from datetime import datetime
from typing import Dict, Optional

from utils import normalize_url


def dedup_key(url: Optional[str], title: str) -> str:
    """Return the identity key for a candidate: normalized URL, else normalized title."""
    if url:
        return normalize_url(url)
    return title.strip().lower()


class DedupTracker:
    """Tracks the latest published timestamp accepted for each identity key.

    A key is emitted the first time it is seen and again only when it comes
    back with a strictly newer timestamp. Entries are never removed.
    """

    def __init__(self, latest_by_key: Optional[Dict[str, datetime]] = None) -> None:
        self._latest_by_key: Dict[str, datetime] = dict(latest_by_key or {})

    def should_emit(self, url: Optional[str], title: str, published_at: datetime) -> bool:
        key = dedup_key(url, title)
        existing = self._latest_by_key.get(key)
        if existing is not None and published_at <= existing:
            return False
        self._latest_by_key[key] = published_at
        return True

    def copy(self) -> "DedupTracker":
        """Return an independent snapshot for a worker."""
        return DedupTracker(self._latest_by_key)

    def __len__(self) -> int:
        return len(self._latest_by_key)

    def __contains__(self, key: str) -> bool:
        return key in self._latest_by_key
