"""
Data models for smartnotify.

Plain dataclasses and string enums shared by every layer. Entities that are
snapshotted into the key-value store carry their own to_dict()/from_dict()
so the JSON shape lives next to the fields it describes.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ── Enums ───────────────────────────────────────────────────────────────────

class NotificationPriority(str, Enum):
    CRITICAL = "critical"   # sent immediately, bypasses limits and quiet hours
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Highest first; the queue scans buckets in this order
PRIORITY_ORDER: List[NotificationPriority] = [
    NotificationPriority.CRITICAL,
    NotificationPriority.HIGH,
    NotificationPriority.MEDIUM,
    NotificationPriority.LOW,
]


class NotificationType(str, Enum):
    DEADLINE_ALERT = "deadline_alert"
    OVERLOAD_WARNING = "overload_warning"
    PRODUCTIVITY_TIP = "productivity_tip"
    ACHIEVEMENT = "achievement"
    BURNOUT_WARNING = "burnout_warning"
    PEAK_TIME_REMINDER = "peak_time_reminder"
    STUDY_REMINDER = "study_reminder"
    BREAK_REMINDER = "break_reminder"
    WEEKLY_SUMMARY = "weekly_summary"


class ActivityState(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    STUDYING = "studying"
    AWAY = "away"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class Severity(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


class RiskLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class IndicatorType(str, Enum):
    EFFECTIVENESS_DROP = "effectiveness_drop"
    EXCESSIVE_HOURS = "excessive_hours"
    DECLINING_COMPLETION = "declining_completion"
    NO_BREAKS = "no_breaks"
    OVERDUE_TASKS = "overdue_tasks"


class SubmitStatus(str, Enum):
    SENT = "sent"
    QUEUED = "queued"
    DEFERRED = "deferred"
    THROTTLED = "throttled"
    DISABLED = "disabled"
    REJECTED = "rejected"


# ── Notifications ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class NotificationRequest:
    """An outgoing alert for one user. Never mutated after creation."""
    id: str
    user_id: str
    type: NotificationType
    priority: NotificationPriority
    title: str
    body: str
    created_at: datetime = field(default_factory=datetime.now)
    task_id: Optional[str] = None
    is_new_task: bool = False
    expires_at: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        user_id: str,
        type: NotificationType,
        priority: NotificationPriority,
        title: str,
        body: str,
        **hints: Any,
    ) -> "NotificationRequest":
        notification_id = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        return cls(id=notification_id, user_id=user_id, type=type,
                   priority=priority, title=title, body=body, **hints)

    def validate(self) -> None:
        """Raise ValueError if the request cannot be processed."""
        if not self.id:
            raise ValueError("Notification id is required.")
        if not self.user_id:
            raise ValueError("Notification is missing a user scope.")
        if not isinstance(self.type, NotificationType):
            raise ValueError(f"Unknown notification type: {self.type!r}")
        if not isinstance(self.priority, NotificationPriority):
            raise ValueError(f"Unknown priority: {self.priority!r}")
        if not self.title or not self.title.strip():
            raise ValueError("Notification title is required.")

    @property
    def is_new_task_deadline_alert(self) -> bool:
        return (
            self.is_new_task
            and self.type == NotificationType.DEADLINE_ALERT
            and self.priority in (NotificationPriority.HIGH, NotificationPriority.MEDIUM)
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "priority": self.priority.value,
            "title": self.title,
            "body": self.body,
            "created_at": _iso(self.created_at),
            "task_id": self.task_id,
            "is_new_task": self.is_new_task,
            "expires_at": _iso(self.expires_at),
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationRequest":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            type=NotificationType(data["type"]),
            priority=NotificationPriority(data["priority"]),
            title=data["title"],
            body=data.get("body", ""),
            created_at=_parse_dt(data.get("created_at")) or datetime.now(),
            task_id=data.get("task_id"),
            is_new_task=bool(data.get("is_new_task", False)),
            expires_at=_parse_dt(data.get("expires_at")),
            data=dict(data.get("data") or {}),
        )


@dataclass
class HourScore:
    hour: int
    success_rate: float


@dataclass
class Prediction:
    """Answer to "which hour is this user most likely to respond in"."""
    optimal_hour: int
    success_rate: float
    alternative_hours: List[HourScore] = field(default_factory=list)
    using_model: bool = False


@dataclass
class QueuedEntry:
    """A request waiting in the priority queue for its send time."""
    request: NotificationRequest
    scheduled_for: datetime
    priority: NotificationPriority
    predicted_optimal_hour: int = 0
    predicted_success_rate: float = 0.5
    alternative_hours: List[HourScore] = field(default_factory=list)
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    sent: bool = False
    sent_at: Optional[datetime] = None
    can_delay: bool = True
    max_delay_hours: float = 6
    using_model: bool = False

    @property
    def id(self) -> str:
        return self.request.id

    def to_dict(self) -> dict:
        return {
            "request": self.request.to_dict(),
            "scheduled_for": _iso(self.scheduled_for),
            "priority": self.priority.value,
            "predicted_optimal_hour": self.predicted_optimal_hour,
            "predicted_success_rate": self.predicted_success_rate,
            "alternative_hours": [asdict(h) for h in self.alternative_hours],
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "sent": self.sent,
            "sent_at": _iso(self.sent_at),
            "can_delay": self.can_delay,
            "max_delay_hours": self.max_delay_hours,
            "using_model": self.using_model,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedEntry":
        return cls(
            request=NotificationRequest.from_dict(data["request"]),
            scheduled_for=datetime.fromisoformat(data["scheduled_for"]),
            priority=NotificationPriority(data["priority"]),
            predicted_optimal_hour=int(data.get("predicted_optimal_hour", 0)),
            predicted_success_rate=float(data.get("predicted_success_rate", 0.5)),
            alternative_hours=[HourScore(**h) for h in data.get("alternative_hours", [])],
            created_at=_parse_dt(data.get("created_at")),
            expires_at=_parse_dt(data.get("expires_at")),
            sent=bool(data.get("sent", False)),
            sent_at=_parse_dt(data.get("sent_at")),
            can_delay=bool(data.get("can_delay", True)),
            max_delay_hours=float(data.get("max_delay_hours", 6)),
            using_model=bool(data.get("using_model", False)),
        )


@dataclass
class SubmitResult:
    status: SubmitStatus
    notification_id: str
    reason: str = ""
    delivery_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    prediction: Optional[Prediction] = None

    @property
    def accepted(self) -> bool:
        return self.status in (SubmitStatus.SENT, SubmitStatus.QUEUED, SubmitStatus.DEFERRED)


@dataclass
class DrainResult:
    sent: int = 0
    failed: int = 0
    expired: int = 0
    held: int = 0  # ready but throttled or in quiet hours; left queued
    remaining: int = 0
    skipped: bool = False


# ── Rate limiting ───────────────────────────────────────────────────────────

@dataclass
class RateLimitRecord:
    key: str
    last_sent_ms: float = 0.0
    daily_count: int = 0
    daily_date: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RateLimitRecord":
        return cls(
            key=data["key"],
            last_sent_ms=float(data.get("last_sent_ms", 0.0)),
            daily_count=int(data.get("daily_count", 0)),
            daily_date=data.get("daily_date", ""),
        )


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: str = ""


# ── Settings ────────────────────────────────────────────────────────────────

@dataclass
class NotificationSettings:
    """User preferences. Read on every decision, never written by the engine."""
    user_id: str = ""
    enabled: bool = True

    deadline_alerts: bool = True
    overload_warnings: bool = True
    productivity_tips: bool = True
    achievements: bool = True
    burnout_warnings: bool = True
    peak_time_reminders: bool = True
    study_reminders: bool = True
    break_reminders: bool = False
    weekly_summary: bool = True

    quiet_hours_enabled: bool = True
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "07:00"

    max_notifications_per_day: int = 10
    min_minutes_between_notifications: int = 30

    sound_enabled: bool = True
    vibration_enabled: bool = True

    def is_type_enabled(self, notification_type: NotificationType) -> bool:
        return bool(getattr(self, TYPE_SETTING_FIELDS[notification_type]))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


TYPE_SETTING_FIELDS: Dict[NotificationType, str] = {
    NotificationType.DEADLINE_ALERT: "deadline_alerts",
    NotificationType.OVERLOAD_WARNING: "overload_warnings",
    NotificationType.PRODUCTIVITY_TIP: "productivity_tips",
    NotificationType.ACHIEVEMENT: "achievements",
    NotificationType.BURNOUT_WARNING: "burnout_warnings",
    NotificationType.PEAK_TIME_REMINDER: "peak_time_reminders",
    NotificationType.STUDY_REMINDER: "study_reminders",
    NotificationType.BREAK_REMINDER: "break_reminders",
    NotificationType.WEEKLY_SUMMARY: "weekly_summary",
}


def _check_type_settings_mapping() -> None:
    missing = [t.value for t in NotificationType if t not in TYPE_SETTING_FIELDS]
    if missing:
        raise RuntimeError(f"No settings flag mapped for notification types: {missing}")
    setting_names = {f.name for f in fields(NotificationSettings)}
    unknown = [name for name in TYPE_SETTING_FIELDS.values() if name not in setting_names]
    if unknown:
        raise RuntimeError(f"Mapped settings flags do not exist: {unknown}")


_check_type_settings_mapping()


# ── Learning ────────────────────────────────────────────────────────────────

@dataclass
class HourlySuccessRate:
    hour: int
    total_sent: int = 0
    total_opened: int = 0
    total_responded: int = 0
    success_rate: float = 0.0
    avg_response_time_seconds: float = 0.0
    last_updated: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_updated"] = _iso(self.last_updated)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "HourlySuccessRate":
        return cls(
            hour=int(data["hour"]),
            total_sent=int(data.get("total_sent", 0)),
            total_opened=int(data.get("total_opened", 0)),
            total_responded=int(data.get("total_responded", 0)),
            success_rate=float(data.get("success_rate", 0.0)),
            avg_response_time_seconds=float(data.get("avg_response_time_seconds", 0.0)),
            last_updated=_parse_dt(data.get("last_updated")),
        )


@dataclass
class TrainingDataPoint:
    """One labelled interaction: features at send time + whether it worked."""
    hour_of_day: int
    day_of_week: int  # datetime.weekday(): Monday=0 .. Sunday=6
    notification_type: NotificationType
    priority: NotificationPriority
    user_active_state: ActivityState = ActivityState.IDLE
    recent_activity_minutes: float = 0.0
    current_session_active: bool = False
    tasks_overdue: int = 0
    study_streak: int = 0
    responded_within_hour: bool = False
    timestamp: Optional[datetime] = None
    engagement_score: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["notification_type"] = self.notification_type.value
        data["priority"] = self.priority.value
        data["user_active_state"] = self.user_active_state.value
        data["timestamp"] = _iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TrainingDataPoint":
        return cls(
            hour_of_day=int(data["hour_of_day"]),
            day_of_week=int(data["day_of_week"]),
            notification_type=NotificationType(data["notification_type"]),
            priority=NotificationPriority(data["priority"]),
            user_active_state=ActivityState(data.get("user_active_state", "idle")),
            recent_activity_minutes=float(data.get("recent_activity_minutes", 0.0)),
            current_session_active=bool(data.get("current_session_active", False)),
            tasks_overdue=int(data.get("tasks_overdue", 0)),
            study_streak=int(data.get("study_streak", 0)),
            responded_within_hour=bool(data.get("responded_within_hour", False)),
            timestamp=_parse_dt(data.get("timestamp")),
            engagement_score=float(data.get("engagement_score", 0.0)),
        )


@dataclass
class NotificationAnalytics:
    """What we knew when a notification went out, plus how the user reacted."""
    notification_id: str
    user_id: str
    type: NotificationType
    priority: NotificationPriority
    sent_at: datetime
    hour_of_day: int
    day_of_week: int
    user_active_state: ActivityState = ActivityState.IDLE
    recent_activity_minutes: float = 0.0
    current_session_active: bool = False
    tasks_overdue: int = 0
    study_streak: int = 0
    delivery_id: Optional[str] = None
    opened: bool = False
    opened_at: Optional[datetime] = None
    action_taken: bool = False
    response_time_seconds: Optional[float] = None
    responded_within_hour: bool = False
    engagement_score: float = 0.0
    response_recorded_at: Optional[datetime] = None


@dataclass
class ModelVersion:
    """Metadata about a trained model snapshot."""
    id: Optional[int] = None
    model_name: str = ""
    version: int = 1
    trained_at: Optional[datetime] = None
    artifact_key: str = ""
    metrics_json: Optional[str] = None  # JSON string with training metrics


# ── Study history (read side) ───────────────────────────────────────────────

@dataclass
class StudySession:
    """One completed study session from the user's history."""
    id: Optional[int] = None
    user_id: str = ""
    start_time: Optional[datetime] = None
    duration_min: float = 0.0
    effectiveness: Optional[int] = None  # self-rated 1-5
    course_id: Optional[str] = None
    task_id: Optional[str] = None


@dataclass
class StudyTask:
    id: Optional[int] = None
    user_id: str = ""
    title: str = ""
    status: TaskStatus = TaskStatus.TODO
    due_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    priority: str = "medium"

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED


# ── Behavioural analyses ────────────────────────────────────────────────────

@dataclass
class StudyTrend:
    period: str
    total_hours: float = 0.0
    avg_effectiveness: float = 0.0
    session_count: int = 0


@dataclass
class BurnoutIndicator:
    type: IndicatorType
    severity: Severity
    description: str
    value: float
    threshold: float

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "value": self.value,
            "threshold": self.threshold,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BurnoutIndicator":
        return cls(
            type=IndicatorType(data["type"]),
            severity=Severity(data["severity"]),
            description=data["description"],
            value=float(data["value"]),
            threshold=float(data["threshold"]),
        )


@dataclass
class BurnoutAnalysis:
    user_id: str
    risk_level: RiskLevel
    risk_score: int
    indicators: List[BurnoutIndicator] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    last_analyzed: Optional[datetime] = None
    needs_intervention: bool = False

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "risk_level": self.risk_level.value,
            "risk_score": self.risk_score,
            "indicators": [i.to_dict() for i in self.indicators],
            "recommendations": list(self.recommendations),
            "last_analyzed": _iso(self.last_analyzed),
            "needs_intervention": self.needs_intervention,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BurnoutAnalysis":
        return cls(
            user_id=data["user_id"],
            risk_level=RiskLevel(data["risk_level"]),
            risk_score=int(data["risk_score"]),
            indicators=[BurnoutIndicator.from_dict(i) for i in data.get("indicators", [])],
            recommendations=list(data.get("recommendations", [])),
            last_analyzed=_parse_dt(data.get("last_analyzed")),
            needs_intervention=bool(data.get("needs_intervention", False)),
        )


@dataclass
class HourlyProductivity:
    hour: int
    session_count: int = 0
    avg_effectiveness: float = 0.0
    avg_duration: float = 0.0
    productivity_score: float = 0.0


@dataclass
class PeakTimeAnalysis:
    user_id: str
    peak_hours: List[int] = field(default_factory=list)
    hourly_productivity: List[HourlyProductivity] = field(default_factory=list)
    total_sessions: int = 0
    average_effectiveness: float = 0.0
    confidence: str = "low"  # 'low' | 'medium' | 'high'
    last_analyzed: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "peak_hours": list(self.peak_hours),
            "hourly_productivity": [asdict(h) for h in self.hourly_productivity],
            "total_sessions": self.total_sessions,
            "average_effectiveness": self.average_effectiveness,
            "confidence": self.confidence,
            "last_analyzed": _iso(self.last_analyzed),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PeakTimeAnalysis":
        return cls(
            user_id=data["user_id"],
            peak_hours=[int(h) for h in data.get("peak_hours", [])],
            hourly_productivity=[HourlyProductivity(**h) for h in data.get("hourly_productivity", [])],
            total_sessions=int(data.get("total_sessions", 0)),
            average_effectiveness=float(data.get("average_effectiveness", 0.0)),
            confidence=data.get("confidence", "low"),
            last_analyzed=_parse_dt(data.get("last_analyzed")),
        )


@dataclass
class PeakTimeRecommendation:
    should_send_reminder: bool
    next_peak_hour: Optional[int]
    reason: str
    confidence: str


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Defines the "shape" of everything the engine passes around: requests,
#   queue entries, rate-limit records, training samples, analyses.
#
# Key classes and why they exist:
#   - NotificationRequest is frozen: once a request is queued nobody can
#     rewrite its title or type. Priority changes live on QueuedEntry.
#   - TYPE_SETTING_FIELDS maps every NotificationType to its settings flag,
#     and the import-time check fails loudly if a new type is added without
#     a flag. Python has no compile step, so import time is the next best.
#   - Snapshot types carry to_dict()/from_dict() because the key-value
#     store holds JSON; datetimes go out as ISO strings and come back as
#     datetime objects.
#
# Interviewer-friendly talking points:
#   1. str-valued Enums serialise to JSON with .value and still compare
#      safely against raw strings coming from storage.
#   2. Weekdays follow datetime.weekday() (Monday=0) everywhere, so training
#      data and serving never disagree about what "day 0" means.
