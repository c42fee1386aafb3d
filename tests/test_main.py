import json
from datetime import datetime, timezone

import pytest

import main
from config import config
from models import NewsItem, SchedulingMode


def test_build_ingester_uses_config(monkeypatch):
    monkeypatch.setattr(config, "MAX_CONCURRENT_POLLS", 2)
    monkeypatch.setattr(config, "DEFAULT_POLL_INTERVAL_SECONDS", 120)

    ingester = main.build_ingester(SchedulingMode.SMOOTH)

    assert ingester.max_concurrency == 2
    assert ingester.scheduling.mode == SchedulingMode.SMOOTH
    assert ingester.poll_interval_policy.default_interval_seconds == 120


def test_emit_item_jsonl(capsys):
    when = datetime(2024, 1, 1, tzinfo=timezone.utc)
    item = NewsItem("example", "Example", "Hello", None, "https://example.com/1", when, when)

    main.emit_item(item, as_json=True)

    line = capsys.readouterr().out.strip()
    data = json.loads(line)
    assert data["title"] == "Hello"
    assert data["url"] == "https://example.com/1"
    assert data["published_at"] == "2024-01-01T00:00:00+00:00"
    assert data["id"] == item.id


@pytest.mark.asyncio
async def test_run_without_feeds_returns_immediately(monkeypatch):
    monkeypatch.setattr(config, "FEED_SOURCES", [])
    assert await main.run_ingester(None, 0.1, as_json=False) == 0
