#!/usr/bin/env python3
"""
Utility functions for the feed ingester.

This module contains shared helpers used by the dedup tracker, the worker
dispatcher and log formatting: URL canonicalization for identity comparison,
link validation and human-readable durations.
"""

from typing import Optional
from urllib.parse import SplitResult, unquote_plus, urlsplit, urlunsplit

# Query parameters that only carry campaign/referral tracking
TRACKING_PARAMS = frozenset({
    "gclid",
    "gbraid",
    "wbraid",
    "fbclid",
    "mc_cid",
    "mc_eid",
    "igshid",
    "msclkid",
    "yclid",
    "vero_id",
    "ref",
    "ref_src",
})

DEFAULT_PORTS = {"http": 80, "https": 443}


def _is_tracking_param(name: str) -> bool:
    lowered = unquote_plus(name).lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def _normalize_query(query: str) -> str:
    """Drop tracking parameters and sort the rest by raw name, then raw value."""
    kept = []
    for part in query.split("&"):
        if not part:
            continue
        name, _, value = part.partition("=")
        if _is_tracking_param(name):
            continue
        kept.append((name, value, part))
    kept.sort(key=lambda item: (item[0], item[1]))
    return "&".join(part for _, _, part in kept)


def _normalize_netloc(parts: SplitResult) -> str:
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    userinfo, at, _ = parts.netloc.rpartition("@")
    port = parts.port
    netloc = f"{userinfo}@{host}" if at else host
    if port is not None and DEFAULT_PORTS.get(parts.scheme) != port:
        netloc = f"{netloc}:{port}"
    return netloc


def normalize_url(url: str) -> str:
    """Canonicalize a URL for identity comparison.

    Lowercases scheme and host, drops the fragment and default ports, strips
    tracking parameters (``utm_*`` and a fixed set such as ``gclid``) and sorts
    the remaining query parameters. The result is only used as a dedup key,
    never in place of the original link.

    Returns the input unchanged when it cannot be split into components.
    """
    try:
        parts = urlsplit(url)
        netloc = _normalize_netloc(parts) if parts.netloc else ""
    except ValueError:
        return url
    query = _normalize_query(parts.query)
    return urlunsplit((parts.scheme.lower(), netloc, parts.path, query, ""))


def is_valid_link(link: Optional[str]) -> bool:
    """Return True when a link splits into a URL with a scheme and a host."""
    if not link or not isinstance(link, str):
        return False
    try:
        parts = urlsplit(link.strip())
    except ValueError:
        return False
    return bool(parts.scheme and parts.netloc)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)
