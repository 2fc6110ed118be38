"""
Repository — the single place where relational SQL lives.

Covers the study history the analyzers read, the sent-notification
analytics log, and model version bookkeeping. JSON snapshots go through
KeyValueStore instead.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date, datetime, timedelta
from typing import List, Optional

from ..config import MAX_ANALYTICS_ROWS, USER_NAMESPACES, storage_key
from .models import (
    ActivityState,
    ModelVersion,
    NotificationAnalytics,
    NotificationPriority,
    NotificationType,
    StudySession,
    StudyTask,
    TaskStatus,
)

logger = logging.getLogger(__name__)

# helper: parse ISO datetime strings from SQLite
_parse_dt = lambda s: datetime.fromisoformat(s) if s else None


class Repository:
    """Data-access layer wrapping a sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # ── Study sessions ──────────────────────────────────────────────────────

    def add_study_session(
        self,
        user_id: str,
        start_time: datetime,
        duration_min: float,
        effectiveness: Optional[int] = None,
        course_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> StudySession:
        cur = self.conn.execute(
            "INSERT INTO study_sessions (user_id, course_id, task_id, start_time, "
            "duration_min, effectiveness) VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, course_id, task_id, start_time.isoformat(),
             duration_min, effectiveness),
        )
        self.conn.commit()
        return StudySession(id=cur.lastrowid, user_id=user_id, start_time=start_time,
                            duration_min=duration_min, effectiveness=effectiveness,
                            course_id=course_id, task_id=task_id)

    def list_study_sessions(
        self,
        user_id: str,
        start_after: Optional[datetime] = None,
        start_before: Optional[datetime] = None,
        limit: int = 5000,
    ) -> List[StudySession]:
        query = "SELECT * FROM study_sessions"
        conditions: List[str] = ["user_id = ?"]
        params: list = [user_id]

        if start_after:
            conditions.append("start_time >= ?")
            params.append(start_after.isoformat())
        if start_before:
            conditions.append("start_time <= ?")
            params.append(start_before.isoformat())

        query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY start_time DESC LIMIT ?"
        params.append(limit)

        rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_session(r) for r in rows]

    def study_streak(self, user_id: str, today: Optional[date] = None) -> int:
        """Consecutive days with at least one session, ending at today."""
        rows = self.conn.execute(
            "SELECT DISTINCT substr(start_time, 1, 10) AS day FROM study_sessions "
            "WHERE user_id = ? ORDER BY day DESC",
            (user_id,),
        ).fetchall()
        expected = today or date.today()
        streak = 0
        for r in rows:
            day = date.fromisoformat(r["day"])
            if day == expected:
                streak += 1
                expected -= timedelta(days=1)
            elif day < expected:
                break
        return streak

    # ── Tasks ───────────────────────────────────────────────────────────────

    def add_task(
        self,
        user_id: str,
        title: str,
        status: TaskStatus = TaskStatus.TODO,
        due_date: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        priority: str = "medium",
    ) -> StudyTask:
        created = created_at or datetime.now()
        cur = self.conn.execute(
            "INSERT INTO tasks (user_id, title, status, priority, due_date, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, title, status.value, priority,
             due_date.isoformat() if due_date else None, created.isoformat()),
        )
        self.conn.commit()
        return StudyTask(id=cur.lastrowid, user_id=user_id, title=title, status=status,
                         due_date=due_date, created_at=created, priority=priority)

    def list_tasks(self, user_id: str) -> List[StudyTask]:
        rows = self.conn.execute(
            "SELECT * FROM tasks WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def count_overdue(self, user_id: str, now: Optional[datetime] = None) -> int:
        now = now or datetime.now()
        row = self.conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE user_id = ? AND status != ? "
            "AND due_date IS NOT NULL AND due_date < ?",
            (user_id, TaskStatus.COMPLETED.value, now.isoformat()),
        ).fetchone()
        return row[0]

    # ── Notification analytics ──────────────────────────────────────────────

    def add_analytics(self, record: NotificationAnalytics) -> None:
        self.conn.execute(
            """INSERT OR REPLACE INTO notification_analytics (
                notification_id, user_id, type, priority, sent_at, hour_of_day,
                day_of_week, user_active_state, recent_activity_minutes,
                current_session_active, tasks_overdue, study_streak, delivery_id,
                opened, opened_at, action_taken, response_time_seconds,
                responded_within_hour, engagement_score, response_recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.notification_id, record.user_id, record.type.value,
                record.priority.value, record.sent_at.isoformat(),
                record.hour_of_day, record.day_of_week,
                record.user_active_state.value, record.recent_activity_minutes,
                int(record.current_session_active), record.tasks_overdue,
                record.study_streak, record.delivery_id, int(record.opened),
                record.opened_at.isoformat() if record.opened_at else None,
                int(record.action_taken), record.response_time_seconds,
                int(record.responded_within_hour), record.engagement_score,
                record.response_recorded_at.isoformat() if record.response_recorded_at else None,
            ),
        )
        self.conn.commit()

    def get_analytics(self, notification_id: str) -> Optional[NotificationAnalytics]:
        row = self.conn.execute(
            "SELECT * FROM notification_analytics WHERE notification_id = ?",
            (notification_id,),
        ).fetchone()
        return self._row_to_analytics(row) if row else None

    def list_analytics(self, user_id: str, limit: int = MAX_ANALYTICS_ROWS) -> List[NotificationAnalytics]:
        rows = self.conn.execute(
            "SELECT * FROM notification_analytics WHERE user_id = ? "
            "ORDER BY sent_at DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [self._row_to_analytics(r) for r in rows]

    def update_analytics_response(self, record: NotificationAnalytics) -> None:
        self.conn.execute(
            """UPDATE notification_analytics SET
                opened = ?, opened_at = ?, action_taken = ?,
                response_time_seconds = ?, responded_within_hour = ?,
                engagement_score = ?, response_recorded_at = ?
            WHERE notification_id = ?""",
            (
                int(record.opened),
                record.opened_at.isoformat() if record.opened_at else None,
                int(record.action_taken),
                record.response_time_seconds,
                int(record.responded_within_hour),
                record.engagement_score,
                record.response_recorded_at.isoformat() if record.response_recorded_at else None,
                record.notification_id,
            ),
        )
        self.conn.commit()

    def prune_analytics(self, user_id: str, keep: int = MAX_ANALYTICS_ROWS) -> int:
        """Keep only the newest `keep` rows for a user. Returns count deleted."""
        cur = self.conn.execute(
            "DELETE FROM notification_analytics WHERE user_id = ? AND notification_id NOT IN ("
            "SELECT notification_id FROM notification_analytics WHERE user_id = ? "
            "ORDER BY sent_at DESC LIMIT ?)",
            (user_id, user_id, keep),
        )
        self.conn.commit()
        if cur.rowcount:
            logger.info("Pruned %d analytics rows for %s", cur.rowcount, user_id)
        return cur.rowcount

    # ── Model Versions ──────────────────────────────────────────────────────

    def save_model_version(self, model_name: str, artifact_key: str,
                           metrics: Optional[dict] = None) -> ModelVersion:
        row = self.conn.execute(
            "SELECT MAX(version) FROM model_versions WHERE model_name = ?",
            (model_name,),
        ).fetchone()
        next_ver = (row[0] or 0) + 1
        cur = self.conn.execute(
            "INSERT INTO model_versions (model_name, version, artifact_key, metrics_json) "
            "VALUES (?, ?, ?, ?)",
            (model_name, next_ver, artifact_key,
             json.dumps(metrics) if metrics else None),
        )
        self.conn.commit()
        return ModelVersion(id=cur.lastrowid, model_name=model_name,
                            version=next_ver, artifact_key=artifact_key,
                            metrics_json=json.dumps(metrics) if metrics else None)

    def get_latest_model(self, model_name: str) -> Optional[ModelVersion]:
        row = self.conn.execute(
            "SELECT * FROM model_versions WHERE model_name = ? ORDER BY version DESC LIMIT 1",
            (model_name,),
        ).fetchone()
        if not row:
            return None
        return ModelVersion(
            id=row["id"], model_name=row["model_name"],
            version=row["version"],
            trained_at=_parse_dt(row["trained_at"]),
            artifact_key=row["artifact_key"],
            metrics_json=row["metrics_json"],
        )

    # ── Maintenance ─────────────────────────────────────────────────────────

    def reset_user_data(self, user_id: str) -> None:
        """Delete every row and snapshot belonging to one user."""
        for table in ["study_sessions", "tasks", "notification_analytics"]:
            self.conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
        for namespace in USER_NAMESPACES:
            self.conn.execute("DELETE FROM kv_store WHERE key = ?",
                              (storage_key(namespace, user_id),))
        self.conn.commit()
        logger.warning("All data for %s has been reset.", user_id)

    # ── Row mappers ─────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> StudySession:
        return StudySession(
            id=row["id"], user_id=row["user_id"],
            start_time=_parse_dt(row["start_time"]),
            duration_min=row["duration_min"] or 0.0,
            effectiveness=row["effectiveness"],
            course_id=row["course_id"], task_id=row["task_id"],
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> StudyTask:
        return StudyTask(
            id=row["id"], user_id=row["user_id"], title=row["title"],
            status=TaskStatus(row["status"]),
            due_date=_parse_dt(row["due_date"]),
            created_at=_parse_dt(row["created_at"]),
            priority=row["priority"],
        )

    @staticmethod
    def _row_to_analytics(row: sqlite3.Row) -> NotificationAnalytics:
        return NotificationAnalytics(
            notification_id=row["notification_id"], user_id=row["user_id"],
            type=NotificationType(row["type"]),
            priority=NotificationPriority(row["priority"]),
            sent_at=_parse_dt(row["sent_at"]),
            hour_of_day=row["hour_of_day"], day_of_week=row["day_of_week"],
            user_active_state=ActivityState(row["user_active_state"]),
            recent_activity_minutes=row["recent_activity_minutes"] or 0.0,
            current_session_active=bool(row["current_session_active"]),
            tasks_overdue=row["tasks_overdue"] or 0,
            study_streak=row["study_streak"] or 0,
            delivery_id=row["delivery_id"],
            opened=bool(row["opened"]),
            opened_at=_parse_dt(row["opened_at"]),
            action_taken=bool(row["action_taken"]),
            response_time_seconds=row["response_time_seconds"],
            responded_within_hour=bool(row["responded_within_hour"]),
            engagement_score=row["engagement_score"] or 0.0,
            response_recorded_at=_parse_dt(row["response_recorded_at"]),
        )


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The only place relational SQL lives. The analyzers ask it for sessions
#   and tasks, the orchestrator logs each send here, and the predictor
#   records every training run.
#
# Key methods:
#   - list_study_sessions()/list_tasks(): the history source the burnout and
#     peak-time analyzers depend on.
#   - count_overdue()/study_streak(): contextual features captured at send.
#   - add_analytics()/update_analytics_response(): the sent -> opened loop.
#   - save_model_version(): auditable history of every retrain.
#
# Data flow:
#   Service layer -> Repository.method() -> SQL -> sqlite3.Row -> dataclass
#
# Interviewer-friendly talking points:
#   1. Every query filters by user_id; no method can read across users.
#   2. The streak is computed from DISTINCT day strings so several sessions
#      on one day count once.
#   3. Analytics are pruned to a fixed window so the table cannot grow
#      without bound on a long-lived install.
