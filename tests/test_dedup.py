from datetime import datetime, timedelta, timezone

from dedup import DedupTracker, dedup_key

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_first_sighting_is_emitted():
    tracker = DedupTracker()
    assert tracker.should_emit("https://example.com/a", "A", BASE)
    assert len(tracker) == 1


def test_non_increasing_timestamps_are_suppressed():
    tracker = DedupTracker()
    stamps = [BASE, BASE, BASE - timedelta(minutes=5), BASE - timedelta(days=1)]
    results = [tracker.should_emit("https://example.com/a", "A", ts) for ts in stamps]
    assert results == [True, False, False, False]


def test_strictly_increasing_timestamps_are_all_emitted():
    tracker = DedupTracker()
    stamps = [BASE + timedelta(minutes=i) for i in range(4)]
    assert all(tracker.should_emit("https://example.com/a", "A", ts) for ts in stamps)


def test_tracking_variants_share_a_key():
    tracker = DedupTracker()
    assert tracker.should_emit("https://Example.com/a?utm_source=rss", "A", BASE)
    assert not tracker.should_emit("https://example.com/a#comments", "A (again)", BASE)


def test_different_urls_never_collide():
    tracker = DedupTracker()
    assert tracker.should_emit("https://example.com/a", "Same title", BASE)
    assert tracker.should_emit("https://example.com/b", "Same title", BASE)


def test_title_key_used_without_url():
    assert dedup_key(None, "  Breaking News ") == "breaking news"
    tracker = DedupTracker()
    assert tracker.should_emit(None, "Breaking News", BASE)
    assert not tracker.should_emit(None, "  breaking news", BASE)
    assert tracker.should_emit(None, "Breaking News!", BASE)


def test_copy_is_independent():
    tracker = DedupTracker()
    tracker.should_emit("https://example.com/a", "A", BASE)
    snapshot = tracker.copy()
    snapshot.should_emit("https://example.com/b", "B", BASE)
    assert len(tracker) == 1
    assert len(snapshot) == 2
