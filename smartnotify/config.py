"""
Engine-wide constants.

Per-user preferences (quiet hours, caps, enabled types) come from the
settings provider; everything here is fixed behaviour of the engine itself.
"""

from __future__ import annotations

from pathlib import Path

# Default DB lives next to the repo root, like the rest of the local state
DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent / "smartnotify.db"

# ── Queue ───────────────────────────────────────────────────────────────────
MAX_QUEUE_SIZE = 100
DEFAULT_MAX_DELAY_HOURS = 6
BATCH_SIZE = 5

# ── Rate limiting ───────────────────────────────────────────────────────────
TASK_COOLDOWN_HOURS = 2

# ── Optimal-time predictor ──────────────────────────────────────────────────
MIN_SAMPLES_FOR_TRAINING = 30
MIN_SAMPLES_PER_HOUR = 3
RETRAIN_INTERVAL_DAYS = 7
RETRAIN_MIN_NEW_SAMPLES = 10
LEARNING_RATE = 0.5
MAX_ITERATIONS = 500
CONVERGENCE_THRESHOLD = 1e-6
MODEL_VERSION = "1.0.0"
NEUTRAL_SUCCESS_RATE = 0.5

# ── Training data collector ─────────────────────────────────────────────────
MAX_TRAINING_SAMPLES = 500
AUTO_TRAIN_THRESHOLD = 50
RESPONSE_WINDOW_SECONDS = 3600
ACTIVE_THRESHOLD_MIN = 2
IDLE_THRESHOLD_MIN = 10
ACTION_BONUS = 1.4

# ── Burnout detector ────────────────────────────────────────────────────────
BURNOUT_CACHE_HOURS = 24
LONG_SESSION_MIN = 120

# ── Peak-time analyzer ──────────────────────────────────────────────────────
PEAK_WINDOW_DAYS = 30
PEAK_MIN_SESSIONS = 5
PEAK_CACHE_DAYS = 7
IDEAL_SESSION_MIN = 90
PEAK_HOUR_COUNT = 3

# ── Timers (seconds) ────────────────────────────────────────────────────────
QUEUE_DRAIN_INTERVAL_SEC = 60
MAINTENANCE_INTERVAL_SEC = 60 * 60

# ── Analytics log ───────────────────────────────────────────────────────────
MAX_ANALYTICS_ROWS = 500

# ── Key-value namespaces (stored as "<namespace>_<user_id>") ────────────────
NS_QUEUE = "notification_queue"
NS_RATE_LIMITS = "rate_limits"
NS_MODEL = "optimal_time_model"
NS_HOURLY_MATRIX = "hourly_success_matrix"
NS_TRAINING_DATA = "training_data"
NS_TRAINING_COUNTER = "training_counter"
NS_BURNOUT = "burnout_analysis"
NS_PEAK_TIME = "peak_time_analysis"
NS_SETTINGS = "notification_settings"

USER_NAMESPACES = (
    NS_QUEUE, NS_RATE_LIMITS, NS_MODEL, NS_HOURLY_MATRIX, NS_TRAINING_DATA,
    NS_TRAINING_COUNTER, NS_BURNOUT, NS_PEAK_TIME, NS_SETTINGS,
)


def storage_key(namespace: str, user_id: str) -> str:
    return f"{namespace}_{user_id}"
