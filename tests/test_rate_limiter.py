"""Unit tests for quiet hours and the per-user rate limiter."""

import sqlite3
import pytest
from datetime import datetime, timedelta
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from smartnotify.data.database import SCHEMA_SQL
from smartnotify.data.kv_store import KeyValueStore
from smartnotify.data.models import (
    NotificationPriority,
    NotificationRequest,
    NotificationSettings,
    NotificationType,
)
from smartnotify.services.rate_limiter import (
    RateLimiter,
    is_quiet_hours,
    parse_hhmm,
    quiet_hours_end_after,
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
def limiter(store):
    return RateLimiter("alice", store)


@pytest.fixture
def settings():
    return NotificationSettings(user_id="alice")


def _request(nid="n1", priority=NotificationPriority.MEDIUM,
             type=NotificationType.STUDY_REMINDER, task_id=None, is_new_task=False):
    return NotificationRequest(nid, "alice", type, priority, "Title", "",
                               created_at=NOW, task_id=task_id, is_new_task=is_new_task)


class TestQuietHours:
    def test_parse(self):
        assert parse_hhmm("07:05") == (7, 5)
        with pytest.raises(ValueError):
            parse_hhmm("25:00")
        with pytest.raises(ValueError):
            parse_hhmm("noon")

    @pytest.mark.parametrize("hour,minute,expected", [
        (22, 0, True),
        (23, 59, True),
        (3, 0, True),
        (6, 59, True),
        (7, 0, False),
        (21, 59, False),
        (14, 30, False),
    ])
    def test_overnight_window(self, settings, hour, minute, expected):
        now = NOW.replace(hour=hour, minute=minute)
        assert is_quiet_hours(settings, now) is expected

    def test_same_day_window(self, settings):
        settings.quiet_hours_start = "12:00"
        settings.quiet_hours_end = "13:00"
        assert is_quiet_hours(settings, NOW.replace(hour=12, minute=30))
        assert not is_quiet_hours(settings, NOW.replace(hour=13, minute=0))

    def test_disabled(self, settings):
        settings.quiet_hours_enabled = False
        assert not is_quiet_hours(settings, NOW.replace(hour=23))

    def test_end_after_late_evening_is_tomorrow(self, settings):
        now = NOW.replace(hour=23, minute=10)
        assert quiet_hours_end_after(settings, now) == datetime(2025, 3, 13, 7, 0)

    def test_end_after_early_morning_is_today(self, settings):
        now = NOW.replace(hour=2, minute=0)
        assert quiet_hours_end_after(settings, now) == datetime(2025, 3, 12, 7, 0)


class TestRateLimiter:
    def test_first_send_allowed(self, limiter, settings):
        assert limiter.check(_request(), settings, NOW).allowed

    def test_spacing_enforced(self, limiter, settings):
        limiter.record_sent(_request("a"), NOW)
        decision = limiter.check(_request("b"), settings, NOW + timedelta(minutes=10))
        assert not decision.allowed
        assert "minimum time" in decision.reason
        assert limiter.check(_request("b"), settings, NOW + timedelta(minutes=30)).allowed

    def test_critical_bypasses_everything(self, limiter, settings):
        settings.max_notifications_per_day = 1
        limiter.record_sent(_request("a", task_id="t1"), NOW)
        crit = _request("b", priority=NotificationPriority.CRITICAL, task_id="t1")
        decision = limiter.check(crit, settings, NOW + timedelta(seconds=1))
        assert decision.allowed
        assert decision.reason == "critical bypass"

    def test_task_cooldown(self, limiter, settings):
        first = _request("a", type=NotificationType.DEADLINE_ALERT, task_id="t1")
        limiter.record_sent(first, NOW)
        again = _request("b", type=NotificationType.DEADLINE_ALERT, task_id="t1")
        decision = limiter.check(again, settings, NOW + timedelta(hours=1))
        assert decision.reason == "task notification sent too recently"
        assert limiter.check(again, settings, NOW + timedelta(hours=2)).allowed

    def test_daily_cap(self, limiter, settings):
        settings.max_notifications_per_day = 2
        settings.min_minutes_between_notifications = 0
        limiter.record_sent(_request("a"), NOW)
        limiter.record_sent(_request("b"), NOW + timedelta(minutes=1))
        decision = limiter.check(_request("c"), settings, NOW + timedelta(minutes=2))
        assert decision.reason == "daily notification limit reached"

    def test_queued_sends_count_toward_cap(self, limiter, settings):
        settings.max_notifications_per_day = 3
        limiter.record_sent(_request("a"), NOW)
        later = NOW + timedelta(hours=1)
        assert limiter.check(_request("b"), settings, later, pending=1).allowed
        decision = limiter.check(_request("b"), settings, later, pending=2)
        assert decision.reason == "daily notification limit reached"

    def test_daily_count_resets_at_midnight(self, limiter, settings):
        late = NOW.replace(hour=23, minute=50)
        limiter.record_sent(_request("a"), late)
        assert limiter.daily_count(late) == 1
        assert limiter.daily_count(late + timedelta(minutes=20)) == 0

    def test_new_task_deadline_skips_spacing(self, limiter, settings):
        limiter.record_sent(_request("a"), NOW)
        new_task = _request("b", priority=NotificationPriority.HIGH,
                            type=NotificationType.DEADLINE_ALERT, task_id="t2",
                            is_new_task=True)
        assert limiter.check(new_task, settings, NOW + timedelta(minutes=1)).allowed

    def test_record_sent_updates_all_keys(self, limiter):
        limiter.record_sent(_request("a", task_id="t1"), NOW)
        assert limiter.get_record(limiter.daily_key).daily_count == 1
        assert limiter.get_record(limiter.global_key) is not None
        assert limiter.get_record("study_reminder_t1") is not None

    def test_records_survive_reload(self, limiter, store, settings):
        limiter.record_sent(_request("a"), NOW)
        fresh = RateLimiter("alice", store)
        fresh.load()
        assert fresh.daily_count(NOW) == 1
        assert not fresh.check(_request("b"), settings, NOW + timedelta(minutes=5)).allowed

    def test_reset(self, limiter):
        limiter.record_sent(_request("a"), NOW)
        limiter.reset()
        assert limiter.daily_count(NOW) == 0
