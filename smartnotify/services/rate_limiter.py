"""
Rate Limiter — per-task cooldown, daily cap, global spacing, quiet hours.

A throttled notification is an ordinary outcome, so check() returns a
RateLimitDecision instead of raising.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, time, timedelta
from typing import Dict, Optional, Tuple

from ..config import NS_RATE_LIMITS, TASK_COOLDOWN_HOURS, storage_key
from ..data.kv_store import KeyValueStore
from ..data.models import (
    NotificationPriority,
    NotificationRequest,
    NotificationSettings,
    RateLimitDecision,
    RateLimitRecord,
)

logger = logging.getLogger(__name__)


# ── Quiet hours ─────────────────────────────────────────────────────────────

def parse_hhmm(value: str) -> Tuple[int, int]:
    """'22:30' -> (22, 30). Raises ValueError on anything else."""
    hours, minutes = value.split(":")
    h, m = int(hours), int(minutes)
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"Invalid HH:MM value: {value!r}")
    return h, m


def is_quiet_hours(settings: NotificationSettings, now: datetime) -> bool:
    """True when `now` falls in [start, end), wrapping past midnight."""
    if not settings.quiet_hours_enabled:
        return False
    start_h, start_m = parse_hhmm(settings.quiet_hours_start)
    end_h, end_m = parse_hhmm(settings.quiet_hours_end)
    current = now.hour * 60 + now.minute
    start = start_h * 60 + start_m
    end = end_h * 60 + end_m

    if start > end:  # overnight, e.g. 22:00-07:00
        return current >= start or current < end
    return start <= current < end


def quiet_hours_end_after(settings: NotificationSettings, now: datetime) -> datetime:
    """Next occurrence of the quiet-hours end time at or after `now`."""
    end_h, end_m = parse_hhmm(settings.quiet_hours_end)
    target = datetime.combine(now.date(), time(end_h, end_m))
    if target < now:
        target += timedelta(days=1)
    return target


# ── Limiter ─────────────────────────────────────────────────────────────────

class RateLimiter:
    """
    Per-user throttle over three records:
        <type>_<task_id>   last send for that task (2 h cooldown)
        daily_<user_id>    count for the current calendar date
        global_<user_id>   last send of anything (spacing)
    """

    def __init__(self, user_id: str, store: Optional[KeyValueStore] = None) -> None:
        self.user_id = user_id
        self.store = store
        self._records: Dict[str, RateLimitRecord] = {}

    @property
    def daily_key(self) -> str:
        return f"daily_{self.user_id}"

    @property
    def global_key(self) -> str:
        return f"global_{self.user_id}"

    @staticmethod
    def task_key(request: NotificationRequest) -> Optional[str]:
        if not request.task_id:
            return None
        return f"{request.type.value}_{request.task_id}"

    # ── Public API ──────────────────────────────────────────────────────────

    def load(self) -> None:
        if self.store is None:
            return
        raw = self.store.get_json(storage_key(NS_RATE_LIMITS, self.user_id)) or []
        try:
            records = [RateLimitRecord.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError):
            logger.warning("Rate-limit records for %s unreadable; starting fresh.", self.user_id)
            records = []
        self._records = {r.key: r for r in records}
        logger.debug("Loaded %d rate-limit records for %s", len(self._records), self.user_id)

    def check(
        self,
        request: NotificationRequest,
        settings: NotificationSettings,
        now: Optional[datetime] = None,
        pending: int = 0,
    ) -> RateLimitDecision:
        now = now or datetime.now()
        now_ms = now.timestamp() * 1000

        if request.priority == NotificationPriority.CRITICAL:
            return RateLimitDecision(True, "critical bypass")

        task_key = self.task_key(request)
        if task_key:
            task_rec = self._records.get(task_key)
            cooldown_ms = TASK_COOLDOWN_HOURS * 60 * 60 * 1000
            if task_rec and now_ms - task_rec.last_sent_ms < cooldown_ms:
                return RateLimitDecision(False, "task notification sent too recently")

        # sends already promised to the queue for today count against the cap
        if self.daily_count(now) + pending >= settings.max_notifications_per_day:
            return RateLimitDecision(False, "daily notification limit reached")

        if not request.is_new_task_deadline_alert:
            global_rec = self._records.get(self.global_key)
            spacing_ms = settings.min_minutes_between_notifications * 60 * 1000
            if global_rec and now_ms - global_rec.last_sent_ms < spacing_ms:
                return RateLimitDecision(False, "minimum time between notifications not met")

        return RateLimitDecision(True)

    def record_sent(self, request: NotificationRequest, now: Optional[datetime] = None) -> None:
        now = now or datetime.now()
        now_ms = now.timestamp() * 1000
        today = now.date().isoformat()

        updates: Dict[str, RateLimitRecord] = {
            self.daily_key: RateLimitRecord(
                key=self.daily_key,
                last_sent_ms=now_ms,
                daily_count=self.daily_count(now) + 1,
                daily_date=today,
            ),
            self.global_key: RateLimitRecord(key=self.global_key, last_sent_ms=now_ms,
                                             daily_date=today),
        }
        task_key = self.task_key(request)
        if task_key:
            updates[task_key] = RateLimitRecord(key=task_key, last_sent_ms=now_ms,
                                                daily_date=today)

        self._records.update(updates)
        self._persist()

    def daily_count(self, now: Optional[datetime] = None) -> int:
        """Sends counted for the calendar date of `now` (0 once the date rolls)."""
        now = now or datetime.now()
        rec = self._records.get(self.daily_key)
        if rec is None or rec.daily_date != now.date().isoformat():
            return 0
        return rec.daily_count

    def get_record(self, key: str) -> Optional[RateLimitRecord]:
        return self._records.get(key)

    def reset(self) -> None:
        self._records.clear()
        self._persist()

    # ── Internal ────────────────────────────────────────────────────────────

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.set_json(
                storage_key(NS_RATE_LIMITS, self.user_id),
                [r.to_dict() for r in self._records.values()],
            )
        except sqlite3.Error:
            logger.exception("Failed to persist rate limits for %s", self.user_id)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Decides whether a notification may go out right now, and records a send
#   so the next decision sees it.
#
# Rules, in order:
#   1. CRITICAL always passes.
#   2. The same (type, task) pair waits 2 hours between sends.
#   3. At most N per calendar day; the count resets when the date changes.
#   4. Global spacing between any two sends, except for a freshly created
#      HIGH/MEDIUM deadline alert, which skips only this rule.
#   Quiet hours are a separate question (is_quiet_hours) because they defer
#   rather than drop.
#
# Interviewer-friendly talking points:
#   1. record_sent builds all three new records and applies them in one
#      dict.update, so a reader never sees a half-updated set.
#   2. Storage writes are best effort: a failed save is logged and the
#      in-memory records still protect the current process.
#   3. The daily window is the local calendar date rather than a rolling
#      24 hours, which is what users expect from "10 per day".
