#!/usr/bin/env python3
"""
Feed document parser.

Turns raw RSS or Atom bytes into ordered FeedEntry values using feedparser.
feedparser is lenient with broken markup; a document is only rejected when
nothing recognisable can be recovered from it.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, List, Optional

import feedparser

from config import get_logger
from errors import ParseError
from models import FeedEntry

logger = get_logger("parser")

FEEDPARSER_OPTIONS = {
    'sanitize_html': True,
    'resolve_relative_uris': True,
}

# Tried after feedparser and email.utils; the second entry is the lenient
# RFC-822 variant without seconds
CUSTOM_DATE_FORMATS = [
    "%a, %d %b %Y %H:%M:%S %z",
    "%a, %d %b %Y %H:%M %z",
    "%d %b %Y %H:%M:%S %z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
]


def parse_feed(content: bytes) -> List[FeedEntry]:
    """Parse a feed document into entries, in document order.

    Raises:
        ParseError: if the document cannot be parsed as a feed at all.
    """
    feed = feedparser.parse(content, **FEEDPARSER_OPTIONS)
    version = feed.get('version') or ''
    entries = feed.get('entries') or []

    if feed.get('bozo') and not version and not entries:
        raise ParseError(f"Unparseable feed document: {feed.get('bozo_exception')}")
    if feed.get('bozo'):
        logger.debug(f"Feed parsed with warnings ({version or 'unknown'}): {feed.get('bozo_exception')}")

    prefer_updated = version.startswith('atom')
    return [_to_entry(entry, prefer_updated) for entry in entries]


def _to_entry(entry: Any, prefer_updated: bool) -> FeedEntry:
    title = (entry.get('title') or '').strip()
    link = (entry.get('link') or '').strip() or None
    return FeedEntry(
        title=title,
        link=link,
        body=extract_body(entry),
        published_at=extract_published(entry, prefer_updated),
    )


def extract_body(entry: Any) -> Optional[str]:
    """Return the first non-empty of content, summary or description."""
    for content_item in entry.get('content') or []:
        value = (content_item.get('value') or '').strip()
        if value:
            return value
    for field in ('summary', 'description'):
        value = (entry.get(field) or '').strip()
        if value:
            return value
    return None


def extract_published(entry: Any, prefer_updated: bool = False) -> Optional[datetime]:
    """Resolve the entry's publication time in UTC.

    RSS documents prefer ``published`` (pubDate); Atom documents prefer
    ``updated``. feedparser's parsed struct is used when available, otherwise
    the raw string goes through the fallback parsers.
    """
    fields = ('updated', 'published') if prefer_updated else ('published', 'updated')
    for field in fields:
        parsed = entry.get(f"{field}_parsed")
        if parsed:
            try:
                return datetime.fromtimestamp(timegm(parsed), tz=timezone.utc)
            except (OverflowError, ValueError, OSError, TypeError):
                pass
        raw = entry.get(field)
        if raw:
            dt = parse_date_string(raw)
            if dt is not None:
                return dt
    return None


def parse_date_string(date_str: str) -> Optional[datetime]:
    parsers = (
        _parse_with_feedparser,
        _parse_with_email_utils,
        _parse_with_custom_formats,
    )
    value = date_str.strip()
    for parse in parsers:
        dt = parse(value)
        if dt is not None:
            return dt
    return None


def _parse_with_feedparser(date_str: str) -> Optional[datetime]:
    try:
        time_struct = feedparser._parse_date(date_str)
        if time_struct:
            return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
    except (ValueError, TypeError, AttributeError, OverflowError, OSError):
        return None
    return None


def _parse_with_email_utils(date_str: str) -> Optional[datetime]:
    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, OverflowError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_with_custom_formats(date_str: str) -> Optional[datetime]:
    for fmt in CUSTOM_DATE_FORMATS:
        try:
            dt = datetime.strptime(date_str, fmt)
        except (ValueError, TypeError):
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return None
