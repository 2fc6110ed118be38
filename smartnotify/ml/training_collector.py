"""
Training Data Collector — turns notification responses into labelled samples.

Also owns the user's activity state (active / idle / studying / away), which
is recorded as a feature with every send.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional

from ..config import (
    ACTION_BONUS,
    ACTIVE_THRESHOLD_MIN,
    AUTO_TRAIN_THRESHOLD,
    IDLE_THRESHOLD_MIN,
    MAX_TRAINING_SAMPLES,
    NS_TRAINING_COUNTER,
    NS_TRAINING_DATA,
    RESPONSE_WINDOW_SECONDS,
    storage_key,
)
from ..data.kv_store import KeyValueStore
from ..data.models import ActivityState, NotificationAnalytics, TrainingDataPoint
from ..data.repository import Repository
from .predictor import OptimalTimePredictor

logger = logging.getLogger(__name__)

# (upper bound in seconds, score), checked in order
ENGAGEMENT_STEPS = [
    (60, 1.0),
    (300, 0.9),
    (900, 0.7),
    (1800, 0.5),
    (3600, 0.3),
    (7200, 0.1),
]
SLOW_RESPONSE_SCORE = 0.05


def engagement_score(latency_seconds: Optional[float], action_taken: bool = False,
                     opened: bool = True) -> float:
    """Faster response -> higher score in [0, 1]; an explicit action boosts it."""
    if not opened or latency_seconds is None:
        return 0.0
    score = SLOW_RESPONSE_SCORE
    for limit, step_score in ENGAGEMENT_STEPS:
        if latency_seconds <= limit:
            score = step_score
            break
    if action_taken:
        score = min(1.0, score * ACTION_BONUS)
    return score


class UserActivityTracker:
    """Activity state derived from time since the last interaction."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.last_activity: datetime = now or datetime.now()
        self.study_session_active = False
        self._state = ActivityState.ACTIVE

    def record_activity(self, now: Optional[datetime] = None) -> None:
        self.last_activity = now or datetime.now()
        self.reconcile(self.last_activity)

    def set_study_session(self, active: bool, now: Optional[datetime] = None) -> None:
        self.study_session_active = active
        self.reconcile(now)

    def minutes_since_activity(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now()
        elapsed = (now - self.last_activity).total_seconds() / 60.0
        return max(0, int(elapsed))

    def state(self, now: Optional[datetime] = None) -> ActivityState:
        """Evaluated on read; no timer is needed to keep it current."""
        if self.study_session_active:
            return ActivityState.STUDYING
        now = now or datetime.now()
        minutes = (now - self.last_activity).total_seconds() / 60.0
        if minutes < ACTIVE_THRESHOLD_MIN:
            return ActivityState.ACTIVE
        if minutes < IDLE_THRESHOLD_MIN:
            return ActivityState.IDLE
        return ActivityState.AWAY

    def reconcile(self, now: Optional[datetime] = None) -> ActivityState:
        """Periodic tick: refresh the cached state and log transitions."""
        new_state = self.state(now)
        if new_state != self._state:
            logger.debug("Activity state %s -> %s", self._state.value, new_state.value)
            self._state = new_state
        return new_state

    @property
    def last_state(self) -> ActivityState:
        return self._state


class TrainingDataCollector:
    """
    Per-user sample buffer feeding the optimal-time predictor.

    Keeps the newest 500 samples; every 50 new samples it asks the
    predictor whether a retrain is due.
    """

    def __init__(
        self,
        user_id: str,
        predictor: OptimalTimePredictor,
        store: Optional[KeyValueStore] = None,
        repo: Optional[Repository] = None,
        tracker: Optional[UserActivityTracker] = None,
    ) -> None:
        self.user_id = user_id
        self.predictor = predictor
        self.store = store
        self.repo = repo
        self.tracker = tracker or UserActivityTracker()
        self._samples: Deque[TrainingDataPoint] = deque(maxlen=MAX_TRAINING_SAMPLES)
        self.samples_since_check = 0

    # ── Public API ──────────────────────────────────────────────────────────

    def load(self) -> None:
        if self.store is None:
            return
        raw = self.store.get_json(storage_key(NS_TRAINING_DATA, self.user_id)) or []
        try:
            points = [TrainingDataPoint.from_dict(item) for item in raw]
        except (KeyError, ValueError, TypeError):
            logger.warning("Training data for %s unreadable; starting fresh.", self.user_id)
            points = []
        self._samples = deque(points, maxlen=MAX_TRAINING_SAMPLES)
        self.samples_since_check = int(
            self.store.get_json(storage_key(NS_TRAINING_COUNTER, self.user_id)) or 0
        )
        logger.info("Loaded %d training samples for %s", len(self._samples), self.user_id)

    def samples(self) -> List[TrainingDataPoint]:
        return list(self._samples)

    def contextual_features(self, now: Optional[datetime] = None) -> Dict[str, object]:
        """Snapshot of the user's context, recorded alongside each send."""
        now = now or datetime.now()
        features: Dict[str, object] = {
            "user_active_state": self.tracker.state(now),
            "recent_activity_minutes": self.tracker.minutes_since_activity(now),
            "current_session_active": self.tracker.study_session_active,
            "tasks_overdue": 0,
            "study_streak": 0,
        }
        if self.repo is not None:
            try:
                features["tasks_overdue"] = self.repo.count_overdue(self.user_id, now)
                features["study_streak"] = self.repo.study_streak(self.user_id, now.date())
            except sqlite3.Error:
                logger.exception("Could not read history context for %s", self.user_id)
        return features

    def record_interaction(
        self,
        analytics: NotificationAnalytics,
        opened: bool,
        action_taken: bool = False,
        latency_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> TrainingDataPoint:
        """Label one sent notification with the user's response."""
        now = now or datetime.now()
        responded = opened and latency_seconds is not None and latency_seconds <= RESPONSE_WINDOW_SECONDS
        score = engagement_score(latency_seconds, action_taken, opened)

        analytics.opened = opened
        analytics.opened_at = now if opened else None
        analytics.action_taken = action_taken
        analytics.response_time_seconds = latency_seconds
        analytics.responded_within_hour = responded
        analytics.engagement_score = score
        analytics.response_recorded_at = now
        if self.repo is not None:
            try:
                self.repo.update_analytics_response(analytics)
            except sqlite3.Error:
                logger.exception("Failed to store response for %s", analytics.notification_id)

        point = TrainingDataPoint(
            hour_of_day=analytics.hour_of_day,
            day_of_week=analytics.day_of_week,
            notification_type=analytics.type,
            priority=analytics.priority,
            user_active_state=analytics.user_active_state,
            recent_activity_minutes=analytics.recent_activity_minutes,
            current_session_active=analytics.current_session_active,
            tasks_overdue=analytics.tasks_overdue,
            study_streak=analytics.study_streak,
            responded_within_hour=responded,
            timestamp=analytics.sent_at,
            engagement_score=score,
        )
        self._samples.append(point)
        self._save_samples()

        self.predictor.record_outcome(analytics.hour_of_day, responded, latency_seconds, now,
                                     opened=opened)

        self.samples_since_check += 1
        if self.samples_since_check >= AUTO_TRAIN_THRESHOLD:
            self.samples_since_check = 0
            logger.info("%d new samples for %s; checking retrain cadence",
                        AUTO_TRAIN_THRESHOLD, self.user_id)
            self.predictor.check_and_retrain(self.samples(), now)
        self._save_counter()

        logger.debug("Recorded response for %s: responded=%s engagement=%.2f",
                     analytics.notification_id, responded, score)
        return point

    def get_stats(self) -> dict:
        analytics: List[NotificationAnalytics] = []
        if self.repo is not None:
            analytics = self.repo.list_analytics(self.user_id)
        if not analytics:
            return {
                "total_samples": 0,
                "training_samples": len(self._samples),
                "response_rate": 0.0,
                "avg_response_time": 0.0,
                "avg_engagement_score": 0.0,
                "hourly_distribution": {},
            }

        opened = [a for a in analytics if a.opened]
        hourly: Dict[int, int] = {}
        for a in analytics:
            hourly[a.hour_of_day] = hourly.get(a.hour_of_day, 0) + 1

        def avg(lst: list) -> float:
            return sum(lst) / len(lst) if lst else 0.0

        return {
            "total_samples": len(analytics),
            "training_samples": len(self._samples),
            "response_rate": len(opened) / len(analytics),
            "avg_response_time": avg([a.response_time_seconds or 0.0 for a in opened]),
            "avg_engagement_score": avg([a.engagement_score for a in opened]),
            "hourly_distribution": dict(sorted(hourly.items())),
        }

    # ── Internal ────────────────────────────────────────────────────────────

    def _save_samples(self) -> None:
        if self.store is None:
            return
        try:
            self.store.set_json(storage_key(NS_TRAINING_DATA, self.user_id),
                                [p.to_dict() for p in self._samples])
        except sqlite3.Error:
            logger.exception("Failed to persist training data for %s", self.user_id)

    def _save_counter(self) -> None:
        if self.store is None:
            return
        try:
            self.store.set_json(storage_key(NS_TRAINING_COUNTER, self.user_id),
                                self.samples_since_check)
        except sqlite3.Error:
            logger.exception("Failed to persist training counter for %s", self.user_id)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Closes the learning loop. When the user opens (or ignores) a
#   notification, this builds one labelled TrainingDataPoint and hands the
#   outcome to the predictor.
#
# Key design decisions:
#   - Activity state is computed on read from "minutes since last activity",
#     so there is no background thread to keep in sync. reconcile() exists
#     only so the maintenance tick can log transitions.
#   - The label is "responded within an hour"; the engagement score is a
#     softer signal kept for analytics.
#   - deque(maxlen=500) is the ring buffer: appending the 501st sample drops
#     the oldest automatically.
#
# Data flow:
#   orchestrator.record_response() -> record_interaction() -> analytics row
#   updated -> sample buffered -> predictor.record_outcome() -> every 50
#   samples predictor.check_and_retrain()
#
# Interviewer-friendly talking points:
#   1. The 50-sample counter is only a trigger; the predictor still applies
#      its own 7-day cadence, so the two rules cannot fight.
#   2. A step function for engagement is easy to explain to users and
#      monotonic by construction.
#   3. All data stays local: samples, counters and models live in SQLite.
