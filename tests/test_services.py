"""Unit tests for the service layer: orchestrator, context, timers, dispatch and CLI."""

import json
import sqlite3
import pytest
from datetime import datetime, timedelta
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from PySide6.QtCore import QCoreApplication

from smartnotify import cli
from smartnotify.config import NS_SETTINGS, storage_key
from smartnotify.data.database import SCHEMA_SQL
from smartnotify.data.kv_store import KeyValueStore
from smartnotify.data.models import (
    ActivityState,
    NotificationAnalytics,
    NotificationPriority,
    NotificationRequest,
    NotificationSettings,
    NotificationType,
    QueuedEntry,
    SubmitStatus,
    TaskStatus,
)
from smartnotify.services.context import NotificationContext
from smartnotify.services.dispatch import (
    DispatchMessage,
    LoggingDispatcher,
    StaticSettingsProvider,
    StoredSettingsProvider,
)
from smartnotify.services.scheduler import PeriodicTask

NOW = datetime(2025, 3, 12, 14, 30)  # Wednesday afternoon, outside quiet hours


class FakeDispatcher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def dispatch(self, message):
        if self.fail:
            raise ConnectionError("push service unavailable")
        self.sent.append(message)
        return f"delivery-{len(self.sent)}"


class ReentrantDispatcher:
    """Tries to drain the queue again from inside a dispatch."""

    def __init__(self):
        self.orchestrator = None
        self.inner_results = []

    def dispatch(self, message):
        self.inner_results.append(self.orchestrator.process_queue(NOW))
        return "delivery-1"


@pytest.fixture(scope="module")
def qapp():
    return QCoreApplication.instance() or QCoreApplication([])


@pytest.fixture
def conn():
    c = sqlite3.connect(":memory:")
    c.row_factory = sqlite3.Row
    c.execute("PRAGMA foreign_keys=ON")
    c.executescript(SCHEMA_SQL)
    c.commit()
    return c


@pytest.fixture
def settings():
    return NotificationSettings(user_id="alice")


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def ctx(qapp, conn, dispatcher, settings):
    c = NotificationContext("alice", conn, dispatcher, StaticSettingsProvider(settings), now=NOW)
    c.initialize()
    yield c
    c.close()


def _request(type=NotificationType.STUDY_REMINDER, priority=NotificationPriority.MEDIUM,
             title="Time to study", **hints) -> NotificationRequest:
    return NotificationRequest.create("alice", type, priority, title, "Body", created_at=NOW, **hints)


def _queued(nid: str, scheduled_for=NOW, expires_at=None,
            priority=NotificationPriority.MEDIUM) -> QueuedEntry:
    request = NotificationRequest(nid, "alice", NotificationType.STUDY_REMINDER,
                                  priority, f"Queued {nid}", "",
                                  created_at=NOW, expires_at=expires_at)
    return QueuedEntry(request=request, scheduled_for=scheduled_for,
                       priority=priority, created_at=NOW,
                       expires_at=expires_at)


# ── Orchestrator: submit ────────────────────────────────────────────────────

class TestSubmit:
    def test_invalid_request_rejected(self, ctx, dispatcher):
        result = ctx.orchestrator.submit(_request(title="  "), now=NOW)
        assert result.status == SubmitStatus.REJECTED
        assert not result.accepted
        assert dispatcher.sent == []

    def test_other_users_request_rejected(self, ctx):
        foreign = NotificationRequest.create("bob", NotificationType.ACHIEVEMENT,
                                             NotificationPriority.LOW, "Hi", "")
        assert ctx.orchestrator.submit(foreign, now=NOW).status == SubmitStatus.REJECTED

    def test_disabled_globally(self, ctx, settings):
        settings.enabled = False
        critical = _request(priority=NotificationPriority.CRITICAL)
        assert ctx.orchestrator.submit(critical, now=NOW).status == SubmitStatus.DISABLED

    def test_disabled_type(self, ctx):
        result = ctx.orchestrator.submit(_request(type=NotificationType.BREAK_REMINDER), now=NOW)
        assert result.status == SubmitStatus.DISABLED
        assert result.reason == "break_reminder disabled"

    def test_critical_sent_immediately(self, ctx, dispatcher):
        req = _request(type=NotificationType.DEADLINE_ALERT, priority=NotificationPriority.CRITICAL)
        result = ctx.orchestrator.submit(req, now=NOW)
        assert result.status == SubmitStatus.SENT
        assert result.delivery_id == "delivery-1"
        assert dispatcher.sent[0].style.channel_id == "critical"

        analytics = ctx.repo.get_analytics(req.id)
        assert analytics.hour_of_day == 14
        assert analytics.day_of_week == 2
        assert analytics.delivery_id == "delivery-1"
        assert analytics.user_active_state == ActivityState.ACTIVE
        assert ctx.rate_limiter.daily_count(NOW) == 1

    def test_non_delayable_sent_immediately(self, ctx, dispatcher):
        result = ctx.orchestrator.submit(_request(), can_delay=False, now=NOW)
        assert result.status == SubmitStatus.SENT
        assert len(dispatcher.sent) == 1

    def test_force_immediate(self, ctx):
        result = ctx.orchestrator.submit(_request(), force_immediate=True, now=NOW)
        assert result.status == SubmitStatus.SENT

    def test_delayable_is_queued_at_predicted_hour(self, ctx, dispatcher):
        for _ in range(3):
            ctx.predictor.record_outcome(17, True, 30, NOW)
        result = ctx.orchestrator.submit(_request(), now=NOW)
        assert result.status == SubmitStatus.QUEUED
        assert result.scheduled_for == datetime(2025, 3, 12, 17, 0)
        assert result.prediction.optimal_hour == 17
        assert dispatcher.sent == []
        assert ctx.queue_manager.queue.size() == 1
        # queued sends do not count until they go out
        assert ctx.rate_limiter.daily_count(NOW) == 0

    def test_spacing_throttles_second_send(self, ctx):
        ctx.orchestrator.submit(_request(), can_delay=False, now=NOW)
        second = ctx.orchestrator.submit(_request(title="Again"), can_delay=False,
                                         now=NOW + timedelta(minutes=5))
        assert second.status == SubmitStatus.THROTTLED
        assert second.reason == "minimum time between notifications not met"

    def test_quiet_hours_defer_to_morning(self, ctx, dispatcher):
        late = NOW.replace(hour=23, minute=15)
        result = ctx.orchestrator.submit(_request(), now=late)
        assert result.status == SubmitStatus.DEFERRED
        assert result.scheduled_for == datetime(2025, 3, 13, 7, 0)

        assert ctx.orchestrator.process_queue(datetime(2025, 3, 13, 6, 59)).sent == 0
        assert ctx.orchestrator.process_queue(datetime(2025, 3, 13, 7, 0)).sent == 1
        assert len(dispatcher.sent) == 1

    def test_critical_ignores_quiet_hours(self, ctx):
        late = NOW.replace(hour=23, minute=15)
        result = ctx.orchestrator.submit(_request(priority=NotificationPriority.CRITICAL), now=late)
        assert result.status == SubmitStatus.SENT

    def test_invalid_quiet_hours_are_ignored(self, ctx, settings):
        settings.quiet_hours_start = "late"
        result = ctx.orchestrator.submit(_request(), can_delay=False, now=NOW.replace(hour=23))
        assert result.status == SubmitStatus.SENT

    def test_predicted_time_in_quiet_hours_waits_for_morning(self, ctx, dispatcher):
        for _ in range(3):
            ctx.predictor.record_outcome(9, True, 30, NOW)
        evening = NOW.replace(hour=19, minute=0)
        # 9:00 tomorrow is capped at 01:00, which is inside 22:00-07:00
        result = ctx.orchestrator.submit(_request(), now=evening)
        assert result.status == SubmitStatus.QUEUED
        assert result.scheduled_for == datetime(2025, 3, 13, 7, 0)

        assert ctx.orchestrator.process_queue(datetime(2025, 3, 13, 1, 0)).sent == 0
        assert ctx.orchestrator.process_queue(datetime(2025, 3, 13, 7, 0)).sent == 1
        assert len(dispatcher.sent) == 1

    def test_daily_cap_counts_queued_notifications(self, ctx, dispatcher, settings):
        settings.max_notifications_per_day = 3
        settings.quiet_hours_enabled = False
        morning = NOW.replace(hour=10, minute=0)

        results = [ctx.orchestrator.submit(_request(title=f"Study {i}"), now=morning)
                   for i in range(4)]
        assert [r.status for r in results] == [SubmitStatus.QUEUED] * 3 + [SubmitStatus.THROTTLED]
        assert results[3].reason == "daily notification limit reached"

        first = ctx.orchestrator.process_queue(morning)
        assert (first.sent, first.held, first.remaining) == (1, 2, 2)
        # queued sends still keep 30 minutes apart
        assert ctx.orchestrator.process_queue(morning + timedelta(minutes=10)).sent == 0
        assert ctx.orchestrator.process_queue(morning + timedelta(minutes=30)).sent == 1
        assert ctx.orchestrator.process_queue(morning + timedelta(minutes=60)).sent == 1
        assert ctx.rate_limiter.daily_count(morning) == 3
        assert len(dispatcher.sent) == 3

        again = ctx.orchestrator.submit(_request(title="One more"), now=morning + timedelta(hours=2))
        assert again.status == SubmitStatus.THROTTLED

    def test_dispatch_failure_is_queued_for_retry(self, ctx, dispatcher):
        dispatcher.fail = True
        req = _request(priority=NotificationPriority.CRITICAL)
        result = ctx.orchestrator.submit(req, now=NOW)
        assert result.status == SubmitStatus.QUEUED
        assert "retry" in result.reason
        assert ctx.repo.get_analytics(req.id) is None

        dispatcher.fail = False
        drained = ctx.orchestrator.process_queue(NOW + timedelta(minutes=1))
        assert drained.sent == 1
        assert ctx.repo.get_analytics(req.id) is not None


# ── Orchestrator: queue drain ───────────────────────────────────────────────

class TestProcessQueue:
    def test_sends_at_most_one_batch(self, ctx, dispatcher):
        # critical entries skip the spacing check, so a whole batch can go out
        for i in range(7):
            ctx.queue_manager.enqueue_at(_queued(f"q{i}", priority=NotificationPriority.CRITICAL))
        first = ctx.orchestrator.process_queue(NOW)
        assert (first.sent, first.remaining) == (5, 2)
        second = ctx.orchestrator.process_queue(NOW)
        assert (second.sent, second.remaining) == (2, 0)
        assert [m.notification_id for m in dispatcher.sent] == [f"q{i}" for i in range(7)]

    def test_quiet_hours_hold_queued_entries(self, ctx, dispatcher):
        ctx.queue_manager.enqueue_at(_queued("late", scheduled_for=NOW.replace(hour=22, minute=30)))
        result = ctx.orchestrator.process_queue(NOW.replace(hour=23))
        assert (result.sent, result.held, result.remaining) == (0, 1, 1)
        assert ctx.queue_manager.queue.get("late").scheduled_for == datetime(2025, 3, 13, 7, 0)

        assert ctx.orchestrator.process_queue(datetime(2025, 3, 13, 7, 0)).sent == 1
        assert [m.notification_id for m in dispatcher.sent] == ["late"]

    def test_critical_entries_ignore_quiet_hours(self, ctx):
        ctx.queue_manager.enqueue_at(_queued("crit", scheduled_for=NOW.replace(hour=22, minute=30),
                                             priority=NotificationPriority.CRITICAL))
        assert ctx.orchestrator.process_queue(NOW.replace(hour=23)).sent == 1

    def test_failures_stay_queued(self, ctx, dispatcher):
        dispatcher.fail = True
        ctx.queue_manager.enqueue_at(_queued("a"))
        ctx.queue_manager.enqueue_at(_queued("b"))
        result = ctx.orchestrator.process_queue(NOW)
        assert (result.sent, result.failed, result.remaining) == (0, 2, 2)

    def test_expired_entries_are_dropped(self, ctx, dispatcher):
        ctx.queue_manager.enqueue_at(_queued("old", expires_at=NOW - timedelta(minutes=1)))
        ctx.queue_manager.enqueue_at(_queued("later", scheduled_for=NOW + timedelta(hours=2)))
        result = ctx.orchestrator.process_queue(NOW)
        assert (result.sent, result.expired, result.remaining) == (0, 1, 1)
        assert dispatcher.sent == []

    def test_reentrant_drain_is_skipped(self, qapp, conn, settings):
        dispatcher = ReentrantDispatcher()
        ctx = NotificationContext("alice", conn, dispatcher, StaticSettingsProvider(settings), now=NOW)
        dispatcher.orchestrator = ctx.orchestrator
        ctx.initialize()
        ctx.queue_manager.enqueue_at(_queued("a"))

        result = ctx.orchestrator.process_queue(NOW)
        assert result.sent == 1
        assert dispatcher.inner_results[0].skipped

    def test_cancel(self, ctx):
        ctx.queue_manager.enqueue_at(_queued("a"))
        assert ctx.orchestrator.cancel("a")
        assert not ctx.orchestrator.cancel("a")
        assert ctx.orchestrator.process_queue(NOW).sent == 0


# ── Orchestrator: feedback, stats and checks ────────────────────────────────

class TestFeedback:
    def test_record_response_feeds_predictor(self, ctx):
        req = _request()
        ctx.orchestrator.submit(req, can_delay=False, now=NOW)
        point = ctx.orchestrator.record_response(req.id, opened=True,
                                                 now=NOW + timedelta(minutes=10))
        assert point.responded_within_hour
        assert ctx.repo.get_analytics(req.id).response_time_seconds == 600
        assert ctx.predictor.matrix.get(14).total_responded == 1

    def test_repeat_response_is_ignored(self, ctx):
        req = _request()
        ctx.orchestrator.submit(req, can_delay=False, now=NOW)
        later = NOW + timedelta(minutes=10)
        assert ctx.orchestrator.record_response(req.id, now=later) is not None
        assert ctx.orchestrator.record_response(req.id, opened=False, now=later) is None

        assert ctx.predictor.matrix.get(14).total_sent == 1
        assert len(ctx.collector.samples()) == 1
        assert ctx.repo.get_analytics(req.id).response_recorded_at == later

    def test_unknown_notification(self, ctx):
        assert ctx.orchestrator.record_response("nope", now=NOW) is None

    def test_stats(self, ctx):
        ctx.queue_manager.enqueue_at(_queued("a"))
        assert ctx.orchestrator.get_queue_stats(NOW)["total"] == 1
        stats = ctx.orchestrator.get_model_stats()
        assert not stats["has_model"]
        assert stats["collection"]["total_samples"] == 0

    def test_maintenance_trains_when_enough_samples(self, ctx):
        for i in range(30):
            sent_at = NOW - timedelta(hours=i)
            record = NotificationAnalytics(
                notification_id=f"n{i}", user_id="alice",
                type=NotificationType.STUDY_REMINDER, priority=NotificationPriority.MEDIUM,
                sent_at=sent_at, hour_of_day=sent_at.hour, day_of_week=sent_at.weekday(),
            )
            ctx.collector.record_interaction(record, opened=(i % 3 == 0),
                                             latency_seconds=120, now=sent_at)
        assert ctx.predictor.model is None
        assert ctx.orchestrator.run_maintenance(NOW)
        assert ctx.predictor.model.sample_count == 30
        assert not ctx.orchestrator.run_maintenance(NOW + timedelta(hours=1))


class TestBehaviouralChecks:
    def _seed_burnout(self, repo):
        for k in range(18):
            repo.add_study_session("alice", NOW - timedelta(hours=1 + 4 * k), 130, 1)
        for k in range(6):
            repo.add_study_session("alice", NOW - timedelta(days=4, hours=k), 60, 5)
        for i in range(5):
            repo.add_task("alice", f"Overdue {i}", due_date=NOW - timedelta(days=1),
                          created_at=NOW - timedelta(days=2))

    def test_burnout_warning_sent(self, ctx, dispatcher):
        self._seed_burnout(ctx.repo)
        result = ctx.orchestrator.run_burnout_check(NOW)
        assert result.status == SubmitStatus.SENT
        message = dispatcher.sent[0]
        assert message.title == "CRITICAL: Burnout Risk Detected!"
        assert message.body.startswith("Study effectiveness dropped 50% (from 2.0 to 1.0). ")
        assert message.body.endswith("URGENT: Take a 24-48 hour break from studying")
        assert message.data["risk_level"] == "critical"
        assert message.data["risk_score"] == 100

    def test_no_burnout_warning_when_healthy(self, ctx, dispatcher):
        assert ctx.orchestrator.run_burnout_check(NOW) is None
        assert dispatcher.sent == []

    def _seed_peak(self, repo, status=TaskStatus.TODO):
        for d in range(1, 21):
            repo.add_study_session("alice", (NOW - timedelta(days=d)).replace(hour=9, minute=15), 90, 5)
        for d in range(1, 6):
            repo.add_study_session("alice", (NOW - timedelta(days=d)).replace(hour=19), 30, 2)
        repo.add_task("alice", "Essay", status=status, created_at=NOW - timedelta(days=1))

    def test_peak_time_reminder_sent(self, ctx, dispatcher):
        self._seed_peak(ctx.repo)
        result = ctx.orchestrator.run_peak_time_check(NOW.replace(hour=9, minute=20))
        assert result.status == SubmitStatus.SENT
        message = dispatcher.sent[0]
        assert message.title == "Your Peak Time is Now!"
        assert message.data["peak_hour"] == 9
        assert message.data["top_tasks"] == ["Essay"]

    def test_no_peak_reminder_outside_peak(self, ctx):
        self._seed_peak(ctx.repo)
        assert ctx.orchestrator.run_peak_time_check(NOW.replace(hour=12)) is None

    def test_no_peak_reminder_without_pending_work(self, ctx):
        self._seed_peak(ctx.repo, status=TaskStatus.COMPLETED)
        assert ctx.orchestrator.run_peak_time_check(NOW.replace(hour=9, minute=20)) is None


# ── Context ─────────────────────────────────────────────────────────────────

class TestNotificationContext:
    def test_requires_user(self, qapp, conn):
        with pytest.raises(ValueError):
            NotificationContext("", conn)

    def test_start_requires_initialize(self, qapp, conn):
        ctx = NotificationContext("alice", conn)
        with pytest.raises(RuntimeError, match="initialize"):
            ctx.start()

    def test_start_stop_idempotent(self, ctx):
        assert ctx.start()
        assert ctx.is_running
        assert not ctx.start()
        assert ctx.stop()
        assert not ctx.stop()
        assert not ctx.is_running

    def test_state_survives_restart(self, ctx, qapp, conn, settings):
        ctx.orchestrator.submit(_request(), now=NOW)
        ctx.orchestrator.submit(_request(priority=NotificationPriority.CRITICAL), now=NOW)

        again = NotificationContext("alice", conn, FakeDispatcher(),
                                    StaticSettingsProvider(settings), now=NOW)
        again.initialize()
        assert again.queue_manager.queue.size() == 1
        assert again.rate_limiter.daily_count(NOW) == 1

    def test_users_are_isolated(self, ctx, qapp, conn):
        ctx.orchestrator.submit(_request(), now=NOW)
        bob = NotificationContext("bob", conn, FakeDispatcher(), now=NOW)
        bob.initialize()
        assert bob.queue_manager.queue.size() == 0


# ── Timers ──────────────────────────────────────────────────────────────────

class TestPeriodicTask:
    def test_start_stop(self, qapp):
        task = PeriodicTask("test", 60, lambda: None)
        assert not task.is_running
        assert task.start()
        assert not task.start()
        assert task.is_running
        assert task.stop()
        assert not task.stop()

    def test_run_once_calls_callback(self, qapp):
        calls = []
        task = PeriodicTask("test", 60, lambda: calls.append(1))
        assert task.run_once()
        assert calls == [1]

    def test_failing_tick_is_contained(self, qapp):
        def boom():
            raise RuntimeError("tick failed")
        task = PeriodicTask("test", 60, boom)
        assert task.run_once()
        assert not task.in_flight

    def test_reentrant_tick_is_skipped(self, qapp):
        inner = []
        task = PeriodicTask("test", 60, lambda: inner.append(task.run_once()))
        assert task.run_once()
        assert inner == [False]


# ── Dispatch & settings ─────────────────────────────────────────────────────

class TestDispatch:
    def test_message_style_by_priority(self, settings):
        low = DispatchMessage.from_request(_request(priority=NotificationPriority.LOW), settings)
        assert low.style.channel_id == "low"
        assert not low.vibrate
        crit = DispatchMessage.from_request(
            _request(priority=NotificationPriority.CRITICAL, task_id="t1"), settings)
        assert crit.vibrate
        assert crit.data["task_id"] == "t1"
        assert crit.data["type"] == "study_reminder"

    def test_logging_dispatcher(self, settings):
        dispatcher = LoggingDispatcher()
        delivery = dispatcher.dispatch(DispatchMessage.from_request(_request(), settings))
        assert delivery
        assert len(dispatcher.sent) == 1

    def test_stored_settings(self, conn):
        store = KeyValueStore(conn)
        provider = StoredSettingsProvider(store)
        assert provider.get_settings("alice").max_notifications_per_day == 10

        provider.save_settings(NotificationSettings(user_id="alice", max_notifications_per_day=3))
        assert provider.get_settings("alice").max_notifications_per_day == 3
        assert provider.get_settings("bob").max_notifications_per_day == 10

    def test_unreadable_settings_fall_back(self, conn):
        store = KeyValueStore(conn)
        store.set_json(storage_key(NS_SETTINGS, "alice"), [1, 2, 3])
        settings = StoredSettingsProvider(store).get_settings("alice")
        assert settings.user_id == "alice"
        assert settings.enabled


# ── CLI ─────────────────────────────────────────────────────────────────────

class TestCli:
    def _args(self, tmp_path, *rest):
        return ["--db", str(tmp_path / "cli.db"), "--user", "alice", *rest]

    def test_submit_critical(self, qapp, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        code = cli.main(self._args(tmp_path, "submit", "--type", "deadline_alert",
                                   "--priority", "critical", "--title", "Due tonight"))
        assert code == 0
        assert capsys.readouterr().out.startswith("sent: ")

    def test_settings_roundtrip(self, qapp, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        assert cli.main(self._args(tmp_path, "settings", "--set", "max_notifications_per_day=3",
                                   "--set", "achievements=off")) == 0
        capsys.readouterr()
        assert cli.main(self._args(tmp_path, "settings")) == 0
        shown = json.loads(capsys.readouterr().out)
        assert shown["max_notifications_per_day"] == 3
        assert shown["achievements"] is False

    def test_unknown_setting(self, qapp, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert cli.main(self._args(tmp_path, "settings", "--set", "volume=11")) == 1

    def test_respond_unknown(self, qapp, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert cli.main(self._args(tmp_path, "respond", "missing-id")) == 1

    def test_drain_and_stats(self, qapp, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        assert cli.main(self._args(tmp_path, "drain")) == 0
        assert "sent=0" in capsys.readouterr().out
        assert cli.main(self._args(tmp_path, "stats")) == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["queue"]["total"] == 0
