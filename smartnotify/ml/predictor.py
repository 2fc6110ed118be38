"""
Optimal-Time Predictor — which hour is this user most likely to respond in?

Design philosophy:
  - Works from the very first notification: an hourly success matrix gives
    a heuristic answer as soon as any hour has 3 samples.
  - Once 30 labelled samples exist, a small logistic regression (numpy,
    full-batch gradient descent) scores all 24 hours for the request at hand.
  - Never blocks sending: a corrupt or missing model falls back to the
    matrix, and the matrix falls back to "now".
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..config import (
    CONVERGENCE_THRESHOLD,
    DEFAULT_MAX_DELAY_HOURS,
    LEARNING_RATE,
    MAX_ITERATIONS,
    MIN_SAMPLES_FOR_TRAINING,
    MIN_SAMPLES_PER_HOUR,
    MODEL_VERSION,
    NEUTRAL_SUCCESS_RATE,
    NS_HOURLY_MATRIX,
    NS_MODEL,
    RETRAIN_INTERVAL_DAYS,
    RETRAIN_MIN_NEW_SAMPLES,
    storage_key,
)
from ..data.kv_store import KeyValueStore
from ..data.models import (
    ActivityState,
    HourlySuccessRate,
    HourScore,
    NotificationPriority,
    NotificationType,
    Prediction,
    TrainingDataPoint,
)
from ..data.repository import Repository

logger = logging.getLogger(__name__)

MODEL_NAME = "optimal_time"

HOURS = 24
DAYS = 7
TYPE_INDEX: Dict[NotificationType, int] = {t: i for i, t in enumerate(NotificationType)}
STATE_INDEX: Dict[ActivityState, int] = {s: i for i, s in enumerate(ActivityState)}

# Column layout of the design matrix: one-hot blocks, then normalised activity
_DAY_OFFSET = HOURS
_TYPE_OFFSET = _DAY_OFFSET + DAYS
_STATE_OFFSET = _TYPE_OFFSET + len(TYPE_INDEX)
_ACTIVITY_COL = _STATE_OFFSET + len(STATE_INDEX)
N_FEATURES = _ACTIVITY_COL + 1


# ── Hourly success matrix ───────────────────────────────────────────────────

class HourlySuccessMatrix:
    """24 running counters of sent/responded per hour of day."""

    def __init__(self) -> None:
        self._hours: List[HourlySuccessRate] = [HourlySuccessRate(hour=h) for h in range(HOURS)]

    def update(self, hour: int, responded: bool, latency_seconds: Optional[float] = None,
               now: Optional[datetime] = None, opened: Optional[bool] = None) -> HourlySuccessRate:
        """`opened` defaults to `responded`; a late open counts as opened only."""
        stats = self.get(hour)
        stats.total_sent += 1
        if responded or opened:
            stats.total_opened += 1
        if responded:
            stats.total_responded += 1
            if latency_seconds is not None:
                n = stats.total_responded
                stats.avg_response_time_seconds = (
                    (n - 1) * stats.avg_response_time_seconds + latency_seconds
                ) / n
        stats.success_rate = stats.total_responded / stats.total_sent
        stats.last_updated = now or datetime.now()
        return stats

    def get(self, hour: int) -> HourlySuccessRate:
        if not 0 <= hour < HOURS:
            raise ValueError(f"Hour out of range: {hour}")
        return self._hours[hour]

    def success_rate(self, hour: int) -> float:
        return self.get(hour).success_rate

    def best_hours(self, limit: int = 3, min_samples: int = MIN_SAMPLES_PER_HOUR) -> List[int]:
        """Hours with enough samples, best success rate first (earlier hour on ties)."""
        qualifying = [s for s in self._hours if s.total_sent >= min_samples]
        qualifying.sort(key=lambda s: (-s.success_rate, s.hour))
        return [s.hour for s in qualifying[:limit]]

    def all(self) -> List[HourlySuccessRate]:
        return list(self._hours)

    def total_sent(self) -> int:
        return sum(s.total_sent for s in self._hours)

    def to_list(self) -> List[dict]:
        return [s.to_dict() for s in self._hours]

    @classmethod
    def from_list(cls, data: Sequence[dict]) -> "HourlySuccessMatrix":
        matrix = cls()
        for item in data:
            stats = HourlySuccessRate.from_dict(item)
            if 0 <= stats.hour < HOURS:
                matrix._hours[stats.hour] = stats
        return matrix


# ── Logistic regression ─────────────────────────────────────────────────────

def _sigmoid(z: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(z, -500, 500)))


class LogisticRegressionModel:
    """
    p(respond within an hour) = sigmoid(b + w_hour[h] + w_day[d] + w_type[t]
                                        + w_state[s] + w_act * norm(activity))

    Normalisation stats are fitted on the training batch and stored with the
    weights, so serving never recomputes them.
    """

    def __init__(self) -> None:
        self.weights = np.zeros(N_FEATURES)
        self.intercept = 0.0
        self.activity_mean = 0.0
        self.activity_std = 0.0
        self.trained_at: Optional[datetime] = None
        self.sample_count = 0
        self.accuracy = 0.0
        self.loss: Optional[float] = None
        self.iterations = 0
        self.version = MODEL_VERSION

    # -- features ------------------------------------------------------------

    def _normalize(self, minutes: np.ndarray) -> np.ndarray:
        if self.activity_std == 0:
            return np.zeros_like(minutes, dtype=float)
        return (minutes - self.activity_mean) / self.activity_std

    def _design_matrix(
        self,
        hours: np.ndarray,
        days: np.ndarray,
        types: np.ndarray,
        states: np.ndarray,
        activity: np.ndarray,
    ) -> np.ndarray:
        if hours.size and (hours.min() < 0 or hours.max() >= HOURS):
            raise ValueError("hour_of_day must be in 0..23")
        if days.size and (days.min() < 0 or days.max() >= DAYS):
            raise ValueError("day_of_week must be in 0..6")
        n = hours.shape[0]
        rows = np.arange(n)
        X = np.zeros((n, N_FEATURES))
        X[rows, hours] = 1.0
        X[rows, _DAY_OFFSET + days] = 1.0
        X[rows, _TYPE_OFFSET + types] = 1.0
        X[rows, _STATE_OFFSET + states] = 1.0
        X[:, _ACTIVITY_COL] = self._normalize(activity.astype(float))
        return X

    def _samples_to_matrix(self, samples: Sequence[TrainingDataPoint]) -> np.ndarray:
        return self._design_matrix(
            np.array([s.hour_of_day for s in samples], dtype=int),
            np.array([s.day_of_week for s in samples], dtype=int),
            np.array([TYPE_INDEX[s.notification_type] for s in samples], dtype=int),
            np.array([STATE_INDEX[s.user_active_state] for s in samples], dtype=int),
            np.array([s.recent_activity_minutes for s in samples], dtype=float),
        )

    # -- training ------------------------------------------------------------

    def train(self, samples: Sequence[TrainingDataPoint], now: Optional[datetime] = None) -> dict:
        """Fit on the whole batch. Returns training metrics."""
        if not samples:
            raise ValueError("Cannot train on an empty sample set.")

        activity = np.array([s.recent_activity_minutes for s in samples], dtype=float)
        self.activity_mean = float(activity.mean())
        self.activity_std = float(activity.std())

        X = self._samples_to_matrix(samples)
        y = np.array([1.0 if s.responded_within_hour else 0.0 for s in samples])
        n = len(y)

        w = np.zeros(N_FEATURES)
        b = 0.0
        prev_loss = np.inf
        loss = np.inf
        eps = 1e-12
        iterations = 0

        for iterations in range(1, MAX_ITERATIONS + 1):
            p = _sigmoid(X @ w + b)
            loss = float(-np.mean(y * np.log(p + eps) + (1 - y) * np.log(1 - p + eps)))
            error = p - y
            w -= LEARNING_RATE * (X.T @ error) / n
            b -= LEARNING_RATE * float(error.mean())
            if abs(prev_loss - loss) < CONVERGENCE_THRESHOLD:
                break
            prev_loss = loss

        self.weights = w
        self.intercept = b
        self.loss = loss
        self.iterations = iterations
        self.sample_count = n
        self.trained_at = now or datetime.now()

        predicted = _sigmoid(X @ self.weights + self.intercept) >= 0.5
        self.accuracy = float(np.mean(predicted == (y == 1.0)))

        return {
            "sample_count": n,
            "accuracy": self.accuracy,
            "loss": self.loss,
            "iterations": self.iterations,
        }

    # -- serving -------------------------------------------------------------

    def predict(self, sample: TrainingDataPoint) -> float:
        X = self._samples_to_matrix([sample])
        return float(_sigmoid(X @ self.weights + self.intercept)[0])

    def score_hours(
        self,
        day_of_week: int,
        notification_type: NotificationType,
        state: ActivityState,
        recent_activity_minutes: float,
    ) -> np.ndarray:
        """Probability for each of the 24 hours, everything else held fixed."""
        X = self._design_matrix(
            np.arange(HOURS),
            np.full(HOURS, day_of_week, dtype=int),
            np.full(HOURS, TYPE_INDEX[notification_type], dtype=int),
            np.full(HOURS, STATE_INDEX[state], dtype=int),
            np.full(HOURS, recent_activity_minutes, dtype=float),
        )
        return _sigmoid(X @ self.weights + self.intercept)

    # -- persistence ---------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "weights": {
                "hour_of_day": self.weights[:_DAY_OFFSET].tolist(),
                "day_of_week": self.weights[_DAY_OFFSET:_TYPE_OFFSET].tolist(),
                "notification_type": {
                    t.value: float(self.weights[_TYPE_OFFSET + i]) for t, i in TYPE_INDEX.items()
                },
                "user_active_state": {
                    s.value: float(self.weights[_STATE_OFFSET + i]) for s, i in STATE_INDEX.items()
                },
                "recent_activity": float(self.weights[_ACTIVITY_COL]),
                "intercept": self.intercept,
            },
            "feature_stats": {
                "recent_activity_mean": self.activity_mean,
                "recent_activity_std": self.activity_std,
            },
            "trained_at": self.trained_at.isoformat() if self.trained_at else None,
            "sample_count": self.sample_count,
            "accuracy": self.accuracy,
            "loss": self.loss,
            "iterations": self.iterations,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LogisticRegressionModel":
        """Raises KeyError/ValueError/TypeError on a malformed snapshot."""
        model = cls()
        weights = data["weights"]
        hour_w = [float(v) for v in weights["hour_of_day"]]
        day_w = [float(v) for v in weights["day_of_week"]]
        if len(hour_w) != HOURS or len(day_w) != DAYS:
            raise ValueError("Stored model has the wrong number of hour/day weights.")
        w = np.zeros(N_FEATURES)
        w[:_DAY_OFFSET] = hour_w
        w[_DAY_OFFSET:_TYPE_OFFSET] = day_w
        for t, i in TYPE_INDEX.items():
            w[_TYPE_OFFSET + i] = float(weights["notification_type"][t.value])
        for s, i in STATE_INDEX.items():
            w[_STATE_OFFSET + i] = float(weights["user_active_state"][s.value])
        w[_ACTIVITY_COL] = float(weights["recent_activity"])
        if not np.all(np.isfinite(w)):
            raise ValueError("Stored model contains non-finite weights.")

        model.weights = w
        model.intercept = float(weights["intercept"])
        stats = data["feature_stats"]
        model.activity_mean = float(stats["recent_activity_mean"])
        model.activity_std = float(stats["recent_activity_std"])
        model.trained_at = datetime.fromisoformat(data["trained_at"]) if data.get("trained_at") else None
        model.sample_count = int(data.get("sample_count", 0))
        model.accuracy = float(data.get("accuracy", 0.0))
        model.loss = data.get("loss")
        model.iterations = int(data.get("iterations", 0))
        model.version = data.get("version", MODEL_VERSION)
        return model


# ── Scheduling ──────────────────────────────────────────────────────────────

def schedule_for(prediction: Prediction, now: datetime,
                 max_delay_hours: float = DEFAULT_MAX_DELAY_HOURS) -> datetime:
    """Turn a predicted hour into an absolute send time, capped at now + max delay."""
    hour = prediction.optimal_hour
    if hour == now.hour:
        scheduled = now
    elif hour > now.hour:
        scheduled = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    else:
        tomorrow = now + timedelta(days=1)
        scheduled = tomorrow.replace(hour=hour, minute=0, second=0, microsecond=0)

    latest = now + timedelta(hours=max_delay_hours)
    return min(scheduled, latest)


# ── Predictor service ───────────────────────────────────────────────────────

class OptimalTimePredictor:
    """
    Per-user predictor.

    Strategy:
      1. Trained model with >= 30 samples -> score all 24 hours, take argmax
      2. Else any hour with >= 3 outcomes -> best hour from the matrix
      3. Else -> current hour at a neutral 0.5
    """

    def __init__(self, user_id: str, store: Optional[KeyValueStore] = None,
                 repo: Optional[Repository] = None) -> None:
        self.user_id = user_id
        self.store = store
        self.repo = repo
        self.matrix = HourlySuccessMatrix()
        self.model: Optional[LogisticRegressionModel] = None
        self.outcomes_since_training = 0

    # ── Public API ──────────────────────────────────────────────────────────

    def load(self) -> None:
        if self.store is None:
            return
        raw_model = self.store.get_json(storage_key(NS_MODEL, self.user_id))
        if raw_model is not None:
            try:
                self.model = LogisticRegressionModel.from_dict(raw_model)
                logger.info("Loaded model for %s (accuracy %.1f%%, %d samples)",
                            self.user_id, self.model.accuracy * 100, self.model.sample_count)
            except (KeyError, ValueError, TypeError):
                logger.warning("Stored model for %s is corrupt; using heuristics.", self.user_id)
                self.model = None

        raw_matrix = self.store.get_json(storage_key(NS_HOURLY_MATRIX, self.user_id))
        if raw_matrix is not None:
            try:
                self.matrix = HourlySuccessMatrix.from_list(raw_matrix.get("hours", []))
                self.outcomes_since_training = int(raw_matrix.get("outcomes_since_training", 0))
            except (AttributeError, KeyError, ValueError, TypeError):
                logger.warning("Stored hourly matrix for %s is corrupt; starting fresh.", self.user_id)
                self.matrix = HourlySuccessMatrix()
                self.outcomes_since_training = 0

    @property
    def using_model(self) -> bool:
        return self.model is not None and self.model.sample_count >= MIN_SAMPLES_FOR_TRAINING

    def predict(
        self,
        notification_type: NotificationType,
        priority: NotificationPriority,
        now: Optional[datetime] = None,
        state: ActivityState = ActivityState.IDLE,
        recent_activity_minutes: float = 0.0,
    ) -> Prediction:
        """Best send hour for this request. Never raises."""
        now = now or datetime.now()
        if self.using_model:
            try:
                return self._predict_with_model(notification_type, now, state,
                                                recent_activity_minutes)
            except (KeyError, ValueError, TypeError, IndexError, FloatingPointError):
                logger.exception("Model prediction failed for %s; discarding model.", self.user_id)
                self.model = None
        return self._predict_with_matrix(now)

    def record_outcome(self, hour: int, responded: bool,
                       latency_seconds: Optional[float] = None,
                       now: Optional[datetime] = None,
                       opened: Optional[bool] = None) -> None:
        self.matrix.update(hour, responded, latency_seconds, now, opened)
        self.outcomes_since_training += 1
        self._save_matrix()

    def should_retrain(self, sample_count: int, now: Optional[datetime] = None) -> bool:
        if sample_count < MIN_SAMPLES_FOR_TRAINING:
            return False
        if self.model is None or self.model.trained_at is None:
            return True
        now = now or datetime.now()
        elapsed = now - self.model.trained_at
        return (
            elapsed >= timedelta(days=RETRAIN_INTERVAL_DAYS)
            and self.outcomes_since_training >= RETRAIN_MIN_NEW_SAMPLES
        )

    def check_and_retrain(self, samples: Sequence[TrainingDataPoint],
                          now: Optional[datetime] = None) -> bool:
        """Retrain if the cadence allows. Returns True when a new model was trained."""
        if not self.should_retrain(len(samples), now):
            logger.debug("Retrain skipped for %s (%d samples)", self.user_id, len(samples))
            return False
        self.train(samples, now)
        return True

    def train(self, samples: Sequence[TrainingDataPoint], now: Optional[datetime] = None) -> dict:
        """Train a fresh model and swap it in whole."""
        model = LogisticRegressionModel()
        metrics = model.train(samples, now)
        self.model = model
        self.outcomes_since_training = 0
        logger.info("Trained optimal-time model for %s: %d samples, accuracy %.1f%%, %d iterations",
                    self.user_id, metrics["sample_count"], metrics["accuracy"] * 100,
                    metrics["iterations"])
        self._save_model(metrics)
        self._save_matrix()
        return metrics

    def get_model_stats(self) -> dict:
        return {
            "has_model": self.model is not None,
            "using_model": self.using_model,
            "model_accuracy": self.model.accuracy if self.model else None,
            "model_samples": self.model.sample_count if self.model else 0,
            "trained_at": self.model.trained_at if self.model else None,
            "outcomes_since_training": self.outcomes_since_training,
            "total_outcomes": self.matrix.total_sent(),
            "best_hours": self.matrix.best_hours(),
            "hourly_stats": [
                {
                    "hour": s.hour,
                    "sent": s.total_sent,
                    "responded": s.total_responded,
                    "rate": s.success_rate,
                }
                for s in self.matrix.all()
            ],
        }

    # ── Internal ────────────────────────────────────────────────────────────

    def _predict_with_model(self, notification_type: NotificationType, now: datetime,
                            state: ActivityState, recent_activity_minutes: float) -> Prediction:
        assert self.model is not None
        scores = self.model.score_hours(now.weekday(), notification_type, state,
                                        recent_activity_minutes)
        # stable sort keeps the earlier hour first on ties
        order = np.argsort(-scores, kind="stable")
        best = int(order[0])
        return Prediction(
            optimal_hour=best,
            success_rate=float(scores[best]),
            alternative_hours=[HourScore(int(h), float(scores[h])) for h in order[1:4]],
            using_model=True,
        )

    def _predict_with_matrix(self, now: datetime) -> Prediction:
        best = self.matrix.best_hours(limit=4)
        if not best:
            return Prediction(optimal_hour=now.hour, success_rate=NEUTRAL_SUCCESS_RATE)
        return Prediction(
            optimal_hour=best[0],
            success_rate=self.matrix.success_rate(best[0]),
            alternative_hours=[HourScore(h, self.matrix.success_rate(h)) for h in best[1:]],
        )

    def _save_model(self, metrics: dict) -> None:
        if self.store is None or self.model is None:
            return
        key = storage_key(NS_MODEL, self.user_id)
        try:
            self.store.set_json(key, self.model.to_dict())
            if self.repo is not None:
                self.repo.save_model_version(MODEL_NAME, key, metrics)
        except sqlite3.Error:
            logger.exception("Failed to persist model for %s", self.user_id)

    def _save_matrix(self) -> None:
        if self.store is None:
            return
        try:
            self.store.set_json(
                storage_key(NS_HOURLY_MATRIX, self.user_id),
                {"hours": self.matrix.to_list(),
                 "outcomes_since_training": self.outcomes_since_training},
            )
        except sqlite3.Error:
            logger.exception("Failed to persist hourly matrix for %s", self.user_id)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Learns when each user actually reads notifications and answers "what
#   hour should this one go out?"
#
# Key design decisions:
#   - Tiered fallback: model -> hourly matrix -> current hour. New users
#     have no data, and a broken model must never stop a reminder.
#   - One-hot features for hour/day/type/state: hours are categories, not a
#     number line. 9am and 10am are not "close" just because 9 < 10.
#   - Weights start at zero and the whole model is replaced on retrain, so a
#     half-trained model is never visible.
#   - Normalisation stats are saved with the weights. Recomputing them at
#     serve time would silently shift every prediction.
#
# Data flow:
#   send -> response -> record_outcome() updates the matrix -> collector
#   buffers a TrainingDataPoint -> check_and_retrain() -> train() ->
#   model snapshot + model_versions row
#
# Interviewer-friendly talking points:
#   1. Why logistic regression? A few hundred samples per user; anything
#      bigger would overfit, and this trains in milliseconds on-device.
#   2. Scoring all 24 hours is a single 24x45 matrix product.
#   3. Retraining needs both time (7 days) and new evidence (10 outcomes),
#      so an idle user's model is not retrained on the same data weekly.
