"""
SQLite database initialization and connection management.

Single responsibility: own the connection and create tables. Queries live in
Repository (relational history and logs) and KeyValueStore (JSON snapshots).
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from ..config import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
-- Key-value snapshots (queue, rate limits, model, caches) ------------------
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT    PRIMARY KEY,
    value       TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Study sessions (read side of the history source) --------------------------
CREATE TABLE IF NOT EXISTS study_sessions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         TEXT    NOT NULL,
    course_id       TEXT,
    task_id         TEXT,
    start_time      TEXT    NOT NULL,
    duration_min    REAL    NOT NULL DEFAULT 0,
    effectiveness   INTEGER CHECK (effectiveness IS NULL OR effectiveness BETWEEN 1 AND 5)
);

-- Tasks -----------------------------------------------------------------------
CREATE TABLE IF NOT EXISTS tasks (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT    NOT NULL,
    title       TEXT    NOT NULL,
    status      TEXT    NOT NULL DEFAULT 'todo',
    priority    TEXT    NOT NULL DEFAULT 'medium',
    due_date    TEXT,
    created_at  TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Sent-notification analytics -----------------------------------------------
CREATE TABLE IF NOT EXISTS notification_analytics (
    notification_id         TEXT    PRIMARY KEY,
    user_id                 TEXT    NOT NULL,
    type                    TEXT    NOT NULL,
    priority                TEXT    NOT NULL,
    sent_at                 TEXT    NOT NULL,
    hour_of_day             INTEGER NOT NULL,
    day_of_week             INTEGER NOT NULL,
    user_active_state       TEXT    NOT NULL,
    recent_activity_minutes REAL    DEFAULT 0,
    current_session_active  INTEGER DEFAULT 0,
    tasks_overdue           INTEGER DEFAULT 0,
    study_streak            INTEGER DEFAULT 0,
    delivery_id             TEXT,
    opened                  INTEGER DEFAULT 0,
    opened_at               TEXT,
    action_taken            INTEGER DEFAULT 0,
    response_time_seconds   REAL,
    responded_within_hour   INTEGER DEFAULT 0,
    engagement_score        REAL    DEFAULT 0,
    response_recorded_at    TEXT
);

-- Model versions -------------------------------------------------------------
CREATE TABLE IF NOT EXISTS model_versions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    model_name      TEXT    NOT NULL,
    version         INTEGER NOT NULL DEFAULT 1,
    trained_at      TEXT    NOT NULL DEFAULT (datetime('now')),
    artifact_key    TEXT    NOT NULL,
    metrics_json    TEXT
);

-- Indexes for common queries -------------------------------------------------
CREATE INDEX IF NOT EXISTS idx_sessions_user_start ON study_sessions(user_id, start_time);
CREATE INDEX IF NOT EXISTS idx_tasks_user          ON tasks(user_id);
CREATE INDEX IF NOT EXISTS idx_analytics_user_sent ON notification_analytics(user_id, sent_at);
"""


class Database:
    """Thin wrapper around a SQLite connection."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self.conn: Optional[sqlite3.Connection] = None

    # -- lifecycle -----------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """Open (or return existing) connection and ensure schema exists."""
        if self.conn is not None:
            return self.conn
        logger.info("Connecting to SQLite at %s", self.db_path)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self.conn

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed.")

    # -- internal ------------------------------------------------------------

    def _create_tables(self) -> None:
        assert self.conn is not None
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()
        logger.debug("Database schema ensured.")


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Opens the SQLite file and makes sure every table the engine needs exists.
#
# Key pieces:
#   - kv_store: one JSON blob per "<namespace>_<user_id>" key. The queue,
#     rate-limit records, model weights and analysis caches all live here.
#   - study_sessions / tasks: the history the burnout and peak-time
#     analyzers read. The engine never writes them outside of seeding.
#   - notification_analytics: one row per sent notification, later updated
#     with open/latency feedback.
#   - model_versions: a log of every training run with its metrics.
#
# Data flow:
#   CLI start -> Database.connect() -> tables ensured -> Repository and
#   KeyValueStore share the connection
#
# Interviewer-friendly talking points:
#   1. CREATE IF NOT EXISTS keeps startup idempotent without a migration tool.
#   2. Snapshots go to a key-value table rather than normalised tables
#      because they are always read and written whole.
#   3. The CHECK on effectiveness keeps out-of-range ratings out of the
#      analyzers' averages at the storage edge.
