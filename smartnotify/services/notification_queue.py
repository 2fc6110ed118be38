"""
Notification Queue — priority buckets of requests waiting for their send time.

NotificationPriorityQueue is the pure data structure. NotificationQueueManager
owns one per user, asks the predictor when to send, and snapshots the queue
to the key-value store after every change.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import deque
from datetime import date, datetime
from typing import Deque, Dict, List, Optional

from ..config import (
    BATCH_SIZE,
    DEFAULT_MAX_DELAY_HOURS,
    MAX_QUEUE_SIZE,
    NS_QUEUE,
    storage_key,
)
from ..data.kv_store import KeyValueStore
from ..data.models import (
    PRIORITY_ORDER,
    ActivityState,
    NotificationPriority,
    NotificationRequest,
    NotificationSettings,
    Prediction,
    QueuedEntry,
)
from ..ml.predictor import OptimalTimePredictor, schedule_for
from .rate_limiter import is_quiet_hours, quiet_hours_end_after

logger = logging.getLogger(__name__)


class NotificationPriorityQueue:
    """
    Four FIFO buckets (critical, high, medium, low) plus an id index.

    Every id lives in exactly one bucket and the index always agrees with
    bucket membership.
    """

    def __init__(self, max_size: int = MAX_QUEUE_SIZE) -> None:
        self.max_size = max_size
        self._buckets: Dict[NotificationPriority, Deque[QueuedEntry]] = {
            p: deque() for p in PRIORITY_ORDER
        }
        self._index: Dict[str, QueuedEntry] = {}

    # ── Mutation ────────────────────────────────────────────────────────────

    def enqueue(self, entry: QueuedEntry) -> bool:
        if entry.id in self._index:
            logger.info("Notification %s already queued; ignoring.", entry.id)
            return False

        if len(self._index) >= self.max_size and not self._evict_for(entry.priority):
            logger.warning("Queue full (%d); rejected %s (%s)",
                           self.max_size, entry.id, entry.priority.value)
            return False

        self._buckets[entry.priority].append(entry)
        self._index[entry.id] = entry
        logger.debug("Queued %s (%s)", entry.request.type.value, entry.priority.value)
        return True

    def dequeue(self) -> Optional[QueuedEntry]:
        for priority in PRIORITY_ORDER:
            bucket = self._buckets[priority]
            if bucket:
                entry = bucket.popleft()
                del self._index[entry.id]
                return entry
        return None

    def remove(self, entry_id: str) -> bool:
        entry = self._index.pop(entry_id, None)
        if entry is None:
            return False
        self._buckets[entry.priority].remove(entry)
        return True

    def update_priority(self, entry_id: str, new_priority: NotificationPriority) -> bool:
        """Move an entry to the tail of another bucket."""
        entry = self._index.get(entry_id)
        if entry is None:
            return False
        self._buckets[entry.priority].remove(entry)
        entry.priority = new_priority
        self._buckets[new_priority].append(entry)
        return True

    def clear(self) -> None:
        for bucket in self._buckets.values():
            bucket.clear()
        self._index.clear()

    # ── Queries ─────────────────────────────────────────────────────────────

    def peek(self) -> Optional[QueuedEntry]:
        for priority in PRIORITY_ORDER:
            bucket = self._buckets[priority]
            if bucket:
                return bucket[0]
        return None

    def get(self, entry_id: str) -> Optional[QueuedEntry]:
        return self._index.get(entry_id)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._index

    def __len__(self) -> int:
        return len(self._index)

    def size(self) -> int:
        return len(self._index)

    def entries(self) -> List[QueuedEntry]:
        """All entries in dequeue order."""
        return [e for p in PRIORITY_ORDER for e in self._buckets[p]]

    def get_ready(self, now: Optional[datetime] = None) -> List[QueuedEntry]:
        now = now or datetime.now()
        return [e for e in self.entries() if e.scheduled_for <= now and not e.sent]

    def expired(self, now: Optional[datetime] = None) -> List[QueuedEntry]:
        now = now or datetime.now()
        return [e for e in self.entries()
                if e.expires_at is not None and e.expires_at < now and not e.sent]

    def stats(self, now: Optional[datetime] = None) -> dict:
        counts = {p.value: len(self._buckets[p]) for p in PRIORITY_ORDER}
        return {
            "total": self.size(),
            **counts,
            "ready": len(self.get_ready(now)),
        }

    # ── Persistence ─────────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "queues": {
                p.value: [e.to_dict() for e in self._buckets[p]] for p in PRIORITY_ORDER
            }
        }

    @classmethod
    def from_dict(cls, data: Optional[dict], max_size: int = MAX_QUEUE_SIZE) -> "NotificationPriorityQueue":
        """Rebuild buckets from a snapshot; the index is derived from buckets only."""
        queue = cls(max_size=max_size)
        if not data or "queues" not in data:
            return queue
        for priority in PRIORITY_ORDER:
            for raw in data["queues"].get(priority.value, []):
                entry = QueuedEntry.from_dict(raw)
                entry.priority = priority
                if entry.id in queue._index:
                    continue
                queue._buckets[priority].append(entry)
                queue._index[entry.id] = entry
        return queue

    # ── Internal ────────────────────────────────────────────────────────────

    def _evict_for(self, incoming: NotificationPriority) -> bool:
        """Drop the oldest entry of the lowest bucket if it ranks below `incoming`."""
        incoming_rank = PRIORITY_ORDER.index(incoming)
        for priority in reversed(PRIORITY_ORDER):
            bucket = self._buckets[priority]
            if not bucket:
                continue
            if PRIORITY_ORDER.index(priority) <= incoming_rank:
                return False
            victim = bucket.popleft()
            del self._index[victim.id]
            logger.warning("Queue full; evicted %s (%s) for a %s entry",
                           victim.id, priority.value, incoming.value)
            return True
        return False


class NotificationQueueManager:
    """Per-user queue with predictor-driven scheduling and snapshot persistence."""

    def __init__(
        self,
        user_id: str,
        predictor: OptimalTimePredictor,
        store: Optional[KeyValueStore] = None,
        max_size: int = MAX_QUEUE_SIZE,
    ) -> None:
        self.user_id = user_id
        self.predictor = predictor
        self.store = store
        self.queue = NotificationPriorityQueue(max_size=max_size)

    # ── Public API ──────────────────────────────────────────────────────────

    def load(self) -> None:
        if self.store is None:
            return
        raw = self.store.get_json(storage_key(NS_QUEUE, self.user_id))
        try:
            self.queue = NotificationPriorityQueue.from_dict(raw, max_size=self.queue.max_size)
        except (KeyError, ValueError, TypeError):
            logger.warning("Stored queue for %s unreadable; starting empty.", self.user_id)
            self.queue = NotificationPriorityQueue(max_size=self.queue.max_size)
        logger.info("Queue for %s loaded with %d entries", self.user_id, self.queue.size())

    def enqueue_with_optimal_time(
        self,
        request: NotificationRequest,
        can_delay: bool = True,
        max_delay_hours: Optional[float] = None,
        now: Optional[datetime] = None,
        state: ActivityState = ActivityState.IDLE,
        recent_activity_minutes: float = 0.0,
        settings: Optional[NotificationSettings] = None,
    ) -> Optional[QueuedEntry]:
        """
        Queue a request at its predicted best time. Returns None if rejected.

        With `settings`, a non-critical send time that lands in quiet hours
        is pushed to the end of the quiet window.
        """
        now = now or datetime.now()
        max_delay = DEFAULT_MAX_DELAY_HOURS if max_delay_hours is None else max_delay_hours
        prediction = Prediction(optimal_hour=now.hour, success_rate=0.5)
        scheduled_for = now

        if request.priority != NotificationPriority.CRITICAL and can_delay:
            try:
                prediction = self.predictor.predict(
                    request.type, request.priority, now, state, recent_activity_minutes
                )
                scheduled_for = schedule_for(prediction, now, max_delay)
                logger.info("Predicted hour %d (%.1f%%) for %s; scheduled %s",
                            prediction.optimal_hour, prediction.success_rate * 100,
                            request.id, scheduled_for.isoformat(timespec="minutes"))
            except Exception:
                logger.exception("Prediction failed for %s; sending immediately.", request.id)
                prediction = Prediction(optimal_hour=now.hour, success_rate=0.5)
                scheduled_for = now

        if settings is not None and request.priority != NotificationPriority.CRITICAL:
            scheduled_for = self._outside_quiet_hours(settings, scheduled_for)

        entry = QueuedEntry(
            request=request,
            scheduled_for=scheduled_for,
            priority=request.priority,
            predicted_optimal_hour=prediction.optimal_hour,
            predicted_success_rate=prediction.success_rate,
            alternative_hours=list(prediction.alternative_hours),
            created_at=now,
            expires_at=request.expires_at,
            can_delay=can_delay,
            max_delay_hours=max_delay,
            using_model=prediction.using_model,
        )
        return self.enqueue_at(entry)

    def enqueue_at(self, entry: QueuedEntry) -> Optional[QueuedEntry]:
        """Queue an entry whose send time is already decided."""
        if not self.queue.enqueue(entry):
            return None
        self._save()
        return entry

    def next_ready(self, now: Optional[datetime] = None) -> Optional[QueuedEntry]:
        ready = self.queue.get_ready(now)
        return ready[0] if ready else None

    def batch_ready(self, limit: int = BATCH_SIZE, now: Optional[datetime] = None) -> List[QueuedEntry]:
        return self.queue.get_ready(now)[:limit]

    def mark_as_sent(self, entry_id: str, now: Optional[datetime] = None) -> bool:
        entry = self.queue.get(entry_id)
        if entry is None:
            return False
        entry.sent = True
        entry.sent_at = now or datetime.now()
        self.queue.remove(entry_id)
        self._save()
        return True

    def reschedule(self, entry_id: str, scheduled_for: datetime) -> bool:
        entry = self.queue.get(entry_id)
        if entry is None:
            return False
        entry.scheduled_for = scheduled_for
        self._save()
        return True

    def pending_on(self, day: date) -> int:
        """Unsent non-critical entries scheduled for `day`."""
        return sum(
            1 for e in self.queue.entries()
            if not e.sent
            and e.priority != NotificationPriority.CRITICAL
            and e.scheduled_for.date() == day
        )

    def cancel(self, entry_id: str) -> bool:
        removed = self.queue.remove(entry_id)
        if removed:
            self._save()
            logger.info("Cancelled queued notification %s", entry_id)
        return removed

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        expired = self.queue.expired(now)
        for entry in expired:
            self.queue.remove(entry.id)
            logger.info("Dropped expired notification %s (%s)", entry.id, entry.request.type.value)
        if expired:
            self._save()
        return len(expired)

    def clear(self) -> None:
        self.queue.clear()
        self._save()

    def stats(self, now: Optional[datetime] = None) -> dict:
        return {
            **self.queue.stats(now),
            "config": {
                "max_queue_size": self.queue.max_size,
                "default_max_delay_hours": DEFAULT_MAX_DELAY_HOURS,
                "batch_size": BATCH_SIZE,
            },
        }

    # ── Internal ────────────────────────────────────────────────────────────

    def _outside_quiet_hours(self, settings: NotificationSettings, when: datetime) -> datetime:
        try:
            if is_quiet_hours(settings, when):
                return quiet_hours_end_after(settings, when)
        except ValueError:
            logger.warning("Invalid quiet hours %s-%s for %s; ignoring them.",
                           settings.quiet_hours_start, settings.quiet_hours_end, self.user_id)
        return when

    def _save(self) -> None:
        if self.store is None:
            return
        try:
            self.store.set_json(storage_key(NS_QUEUE, self.user_id), self.queue.to_dict())
        except sqlite3.Error:
            logger.exception("Failed to persist queue for %s", self.user_id)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Holds notifications that should go out later, ordered by priority, and
#   decides when each one should be sent using the predictor.
#
# Key design decisions:
#   - Bucket queue instead of a heap: only four priorities exist, so
#     dequeue is "first non-empty deque", and FIFO order inside a priority
#     comes for free.
#   - An id index gives O(1) get/contains; remove() still scans one bucket.
#   - When full, the queue only makes room by evicting a strictly lower
#     priority entry. A LOW request can never push out a HIGH one.
#   - from_dict rebuilds the index from the buckets, so a snapshot cannot
#     contain an index that disagrees with bucket membership.
#
# Data flow:
#   orchestrator.submit() -> enqueue_with_optimal_time() -> predictor ->
#   schedule_for() -> bucket -> snapshot; drain tick -> batch_ready() ->
#   dispatch -> mark_as_sent()
#
# Interviewer-friendly talking points:
#   1. The prediction call is wrapped so any failure means "send now"; a
#      reminder that is early is better than one that never arrives.
#   2. Expired entries are dropped on the drain tick rather than on read,
#      so queries stay side-effect free.
#   3. The manager persists after each mutation; the in-memory queue stays
#      the source of truth if a write fails.
