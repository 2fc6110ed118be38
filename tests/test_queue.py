"""Unit tests for the priority queue and its per-user manager."""

import sqlite3
import pytest
from datetime import datetime, timedelta
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from smartnotify.config import NS_QUEUE, storage_key
from smartnotify.data.database import SCHEMA_SQL
from smartnotify.data.kv_store import KeyValueStore
from smartnotify.data.models import (
    NotificationPriority,
    NotificationRequest,
    NotificationSettings,
    NotificationType,
    QueuedEntry,
)
from smartnotify.ml.predictor import OptimalTimePredictor
from smartnotify.services.notification_queue import (
    NotificationPriorityQueue,
    NotificationQueueManager,
)

NOW = datetime(2025, 3, 12, 14, 30)


@pytest.fixture
def store():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    return KeyValueStore(conn)


@pytest.fixture
def predictor(store):
    return OptimalTimePredictor("alice", store)


@pytest.fixture
def manager(predictor, store):
    return NotificationQueueManager("alice", predictor, store)


def _request(nid: str, priority=NotificationPriority.MEDIUM, expires_at=None) -> NotificationRequest:
    return NotificationRequest(nid, "alice", NotificationType.STUDY_REMINDER, priority,
                               f"Title {nid}", "", created_at=NOW, expires_at=expires_at)


def _entry(nid: str, priority=NotificationPriority.MEDIUM, scheduled_for=NOW,
           expires_at=None) -> QueuedEntry:
    return QueuedEntry(request=_request(nid, priority, expires_at), scheduled_for=scheduled_for,
                       priority=priority, created_at=NOW, expires_at=expires_at)


class FailingPredictor:
    def predict(self, *args, **kwargs):
        raise RuntimeError("model exploded")


class TestPriorityQueue:
    def test_dequeue_by_priority_then_fifo(self):
        q = NotificationPriorityQueue()
        q.enqueue(_entry("low", NotificationPriority.LOW))
        q.enqueue(_entry("med1"))
        q.enqueue(_entry("crit", NotificationPriority.CRITICAL))
        q.enqueue(_entry("med2"))
        assert [q.dequeue().id for _ in range(4)] == ["crit", "med1", "med2", "low"]
        assert q.dequeue() is None

    def test_duplicate_id_rejected(self):
        q = NotificationPriorityQueue()
        assert q.enqueue(_entry("a"))
        assert not q.enqueue(_entry("a", NotificationPriority.HIGH))
        assert len(q) == 1

    def test_full_queue_evicts_oldest_lower_priority(self):
        q = NotificationPriorityQueue(max_size=3)
        for nid in ("l1", "l2", "m1"):
            q.enqueue(_entry(nid, NotificationPriority.LOW if nid.startswith("l") else
                             NotificationPriority.MEDIUM))
        assert q.enqueue(_entry("h1", NotificationPriority.HIGH))
        assert "l1" not in q
        assert "l2" in q
        assert q.size() == 3

    def test_full_queue_rejects_equal_or_lower_priority(self):
        q = NotificationPriorityQueue(max_size=2)
        q.enqueue(_entry("h1", NotificationPriority.HIGH))
        q.enqueue(_entry("h2", NotificationPriority.HIGH))
        assert not q.enqueue(_entry("h3", NotificationPriority.HIGH))
        assert not q.enqueue(_entry("l1", NotificationPriority.LOW))
        assert [e.id for e in q.entries()] == ["h1", "h2"]

    def test_remove_and_index_agree(self):
        q = NotificationPriorityQueue()
        q.enqueue(_entry("a"))
        q.enqueue(_entry("b"))
        assert q.remove("a")
        assert not q.remove("a")
        assert q.get("a") is None
        assert [e.id for e in q.entries()] == ["b"]

    def test_update_priority_moves_to_tail(self):
        q = NotificationPriorityQueue()
        q.enqueue(_entry("h1", NotificationPriority.HIGH))
        q.enqueue(_entry("m1"))
        assert q.update_priority("m1", NotificationPriority.HIGH)
        assert [e.id for e in q.entries()] == ["h1", "m1"]
        assert q.get("m1").priority == NotificationPriority.HIGH
        assert not q.update_priority("missing", NotificationPriority.LOW)

    def test_ready_and_expired(self):
        q = NotificationPriorityQueue()
        q.enqueue(_entry("now", scheduled_for=NOW))
        q.enqueue(_entry("later", scheduled_for=NOW + timedelta(hours=1)))
        q.enqueue(_entry("stale", scheduled_for=NOW, expires_at=NOW - timedelta(minutes=1)))
        assert {e.id for e in q.get_ready(NOW)} == {"now", "stale"}
        assert [e.id for e in q.expired(NOW)] == ["stale"]

    def test_stats_counts_per_bucket(self):
        q = NotificationPriorityQueue()
        q.enqueue(_entry("c", NotificationPriority.CRITICAL))
        q.enqueue(_entry("l", NotificationPriority.LOW, scheduled_for=NOW + timedelta(hours=3)))
        stats = q.stats(NOW)
        assert stats == {"total": 2, "critical": 1, "high": 0, "medium": 0, "low": 1, "ready": 1}

    def test_snapshot_rebuilds_index(self):
        q = NotificationPriorityQueue()
        q.enqueue(_entry("a", NotificationPriority.HIGH))
        q.enqueue(_entry("b", NotificationPriority.LOW))
        restored = NotificationPriorityQueue.from_dict(q.to_dict())
        assert "a" in restored and "b" in restored
        assert restored.peek().id == "a"

    def test_from_empty_snapshot(self):
        assert NotificationPriorityQueue.from_dict(None).size() == 0
        assert NotificationPriorityQueue.from_dict({}).size() == 0


class TestQueueManager:
    def test_no_history_schedules_now(self, manager):
        entry = manager.enqueue_with_optimal_time(_request("a"), now=NOW)
        assert entry.scheduled_for == NOW
        assert entry.predicted_optimal_hour == NOW.hour

    def test_schedules_at_best_observed_hour(self, manager, predictor):
        for _ in range(3):
            predictor.record_outcome(16, True, 60, NOW)
            predictor.record_outcome(10, False, None, NOW)
        entry = manager.enqueue_with_optimal_time(_request("a"), now=NOW)
        assert entry.predicted_optimal_hour == 16
        assert entry.scheduled_for == datetime(2025, 3, 12, 16, 0)

    def test_delay_is_capped(self, manager, predictor):
        for _ in range(3):
            predictor.record_outcome(9, True, 60, NOW)
        entry = manager.enqueue_with_optimal_time(_request("a"), max_delay_hours=2, now=NOW)
        # 9:00 tomorrow is further than two hours away
        assert entry.scheduled_for == NOW + timedelta(hours=2)

    def test_zero_max_delay_means_now(self, manager, predictor):
        for _ in range(3):
            predictor.record_outcome(16, True, 60, NOW)
        entry = manager.enqueue_with_optimal_time(_request("a"), max_delay_hours=0, now=NOW)
        assert entry.scheduled_for == NOW
        assert entry.max_delay_hours == 0

    def test_predicted_time_in_quiet_hours_moves_to_window_end(self, manager, predictor):
        for _ in range(3):
            predictor.record_outcome(9, True, 60, NOW)
        evening = NOW.replace(hour=19, minute=0)
        settings = NotificationSettings(user_id="alice")
        # 9:00 tomorrow is capped at 01:00, inside 22:00-07:00
        assert manager.enqueue_with_optimal_time(_request("plain"), now=evening).scheduled_for \
            == datetime(2025, 3, 13, 1, 0)
        entry = manager.enqueue_with_optimal_time(_request("quiet"), now=evening, settings=settings)
        assert entry.scheduled_for == datetime(2025, 3, 13, 7, 0)

    def test_critical_ignores_quiet_hours(self, manager):
        late = NOW.replace(hour=23)
        entry = manager.enqueue_with_optimal_time(
            _request("c", NotificationPriority.CRITICAL), now=late,
            settings=NotificationSettings(user_id="alice"))
        assert entry.scheduled_for == late

    def test_pending_on_counts_non_critical_for_the_day(self, manager):
        manager.enqueue_at(_entry("a"))
        manager.enqueue_at(_entry("b", scheduled_for=NOW + timedelta(hours=3)))
        manager.enqueue_at(_entry("c", NotificationPriority.CRITICAL))
        manager.enqueue_at(_entry("d", scheduled_for=NOW + timedelta(days=1)))
        assert manager.pending_on(NOW.date()) == 2

    def test_reschedule(self, manager):
        manager.enqueue_at(_entry("a"))
        later = NOW + timedelta(hours=5)
        assert manager.reschedule("a", later)
        assert not manager.reschedule("missing", later)
        assert manager.batch_ready(now=NOW) == []
        assert manager.queue.get("a").scheduled_for == later

    def test_critical_and_non_delayable_go_now(self, manager, predictor):
        for _ in range(3):
            predictor.record_outcome(20, True, 60, NOW)
        crit = manager.enqueue_with_optimal_time(
            _request("c", NotificationPriority.CRITICAL), now=NOW)
        fixed = manager.enqueue_with_optimal_time(_request("f"), can_delay=False, now=NOW)
        assert crit.scheduled_for == NOW
        assert fixed.scheduled_for == NOW

    def test_prediction_failure_sends_now(self, store):
        manager = NotificationQueueManager("alice", FailingPredictor(), store)
        entry = manager.enqueue_with_optimal_time(_request("a"), now=NOW)
        assert entry is not None
        assert entry.scheduled_for == NOW

    def test_duplicate_returns_none(self, manager):
        assert manager.enqueue_with_optimal_time(_request("a"), now=NOW) is not None
        assert manager.enqueue_with_optimal_time(_request("a"), now=NOW) is None

    def test_batch_mark_and_cancel(self, manager):
        for nid in ("a", "b", "c"):
            manager.enqueue_at(_entry(nid))
        batch = manager.batch_ready(limit=2, now=NOW)
        assert [e.id for e in batch] == ["a", "b"]
        assert manager.mark_as_sent("a", NOW)
        assert not manager.mark_as_sent("a", NOW)
        assert manager.cancel("b")
        assert manager.next_ready(NOW).id == "c"

    def test_purge_expired(self, manager):
        manager.enqueue_at(_entry("old", expires_at=NOW - timedelta(hours=1)))
        manager.enqueue_at(_entry("fresh", expires_at=NOW + timedelta(hours=1)))
        assert manager.purge_expired(NOW) == 1
        assert [e.id for e in manager.queue.entries()] == ["fresh"]

    def test_persists_and_reloads(self, manager, predictor, store):
        manager.enqueue_at(_entry("a", NotificationPriority.HIGH))
        manager.enqueue_at(_entry("b", NotificationPriority.LOW))
        assert store.get_json(storage_key(NS_QUEUE, "alice")) is not None

        reloaded = NotificationQueueManager("alice", predictor, store)
        reloaded.load()
        assert [e.id for e in reloaded.queue.entries()] == ["a", "b"]

    def test_corrupt_snapshot_starts_empty(self, predictor, store):
        store.set_json(storage_key(NS_QUEUE, "alice"), {"queues": {"high": [{"bogus": 1}]}})
        manager = NotificationQueueManager("alice", predictor, store)
        manager.load()
        assert manager.queue.size() == 0

    def test_stats_include_config(self, manager):
        stats = manager.stats(NOW)
        assert stats["total"] == 0
        assert stats["config"]["max_queue_size"] == 100
        assert stats["config"]["batch_size"] == 5
