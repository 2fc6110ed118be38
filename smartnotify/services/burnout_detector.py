"""
Burnout Detector — scores burnout risk from recent study and task history.

Five indicators are checked over short trailing windows; their weighted sum
becomes a 0-100 risk score and a risk level. Results are cached for 24 hours.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Sequence

import numpy as np

from ..config import BURNOUT_CACHE_HOURS, LONG_SESSION_MIN, NS_BURNOUT, storage_key
from ..data.kv_store import KeyValueStore
from ..data.models import (
    BurnoutAnalysis,
    BurnoutIndicator,
    IndicatorType,
    RiskLevel,
    Severity,
    StudySession,
    StudyTask,
    StudyTrend,
    TaskStatus,
)

logger = logging.getLogger(__name__)


class StudyHistorySource(Protocol):
    """Read-only access to a user's study sessions and tasks."""

    def list_study_sessions(self, user_id: str, start_after: Optional[datetime] = None,
                            start_before: Optional[datetime] = None) -> List[StudySession]: ...

    def list_tasks(self, user_id: str) -> List[StudyTask]: ...


INDICATOR_WEIGHTS: Dict[IndicatorType, int] = {
    IndicatorType.EFFECTIVENESS_DROP: 30,
    IndicatorType.EXCESSIVE_HOURS: 25,
    IndicatorType.DECLINING_COMPLETION: 20,
    IndicatorType.NO_BREAKS: 15,
    IndicatorType.OVERDUE_TASKS: 10,
}

SEVERITY_MULTIPLIERS: Dict[Severity, float] = {
    Severity.LOW: 0.5,
    Severity.MODERATE: 1.0,
    Severity.HIGH: 1.5,
}

SEVERITY_RANK: Dict[Severity, int] = {Severity.HIGH: 0, Severity.MODERATE: 1, Severity.LOW: 2}

URGENT_RECOMMENDATIONS = [
    "URGENT: Take a 24-48 hour break from studying",
    "Focus on rest, sleep, and self-care",
]

INDICATOR_RECOMMENDATIONS: Dict[IndicatorType, List[str]] = {
    IndicatorType.EFFECTIVENESS_DROP: [
        "Your study quality is declining - prioritize rest over quantity",
        "Ensure 7-8 hours of sleep per night",
    ],
    IndicatorType.EXCESSIVE_HOURS: [
        "Reduce daily study hours to max 8-10 hours",
        "Focus on quality over quantity - take strategic breaks",
    ],
    IndicatorType.DECLINING_COMPLETION: [
        "Break large tasks into smaller, achievable chunks",
        "Celebrate small wins to maintain motivation",
    ],
    IndicatorType.NO_BREAKS: [
        "Take 15-min breaks every hour",
        "Use the Pomodoro technique (25 min work, 5 min break)",
    ],
    IndicatorType.OVERDUE_TASKS: [
        "Request deadline extensions from professors",
        "Seek help from tutors or study groups",
    ],
}

GENERAL_RECOMMENDATIONS = [
    "Practice stress-reduction techniques (meditation, exercise)",
    "Talk to someone - counselor, friend, or family",
]

STATUS_TEXT: Dict[RiskLevel, str] = {
    RiskLevel.NONE: "Healthy Balance",
    RiskLevel.LOW: "Slight Concern",
    RiskLevel.MODERATE: "Warning Signs",
    RiskLevel.HIGH: "High Risk",
    RiskLevel.CRITICAL: "CRITICAL - Immediate Action Needed",
}


# ── Pure scoring helpers ────────────────────────────────────────────────────

def calculate_risk_score(indicators: Sequence[BurnoutIndicator]) -> int:
    total = sum(INDICATOR_WEIGHTS[i.type] * SEVERITY_MULTIPLIERS[i.severity] for i in indicators)
    # half-up rounding, not banker's rounding
    return min(100, int(math.floor(total + 0.5)))


def risk_level_for(score: int) -> RiskLevel:
    if score >= 80:
        return RiskLevel.CRITICAL
    if score >= 60:
        return RiskLevel.HIGH
    if score >= 40:
        return RiskLevel.MODERATE
    if score >= 20:
        return RiskLevel.LOW
    return RiskLevel.NONE


def generate_recommendations(indicators: Sequence[BurnoutIndicator], level: RiskLevel) -> List[str]:
    recommendations: List[str] = []
    if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        recommendations.extend(URGENT_RECOMMENDATIONS)
    for indicator in sorted(indicators, key=lambda i: SEVERITY_RANK[i.severity]):
        recommendations.extend(INDICATOR_RECOMMENDATIONS[indicator.type])
    if level != RiskLevel.NONE:
        recommendations.extend(GENERAL_RECOMMENDATIONS)
    # dict preserves insertion order
    return list(dict.fromkeys(recommendations))


class BurnoutDetector:
    """Per-user burnout analysis over the trailing week of history."""

    def __init__(self, user_id: str, history: StudyHistorySource,
                 store: Optional[KeyValueStore] = None) -> None:
        self.user_id = user_id
        self.history = history
        self.store = store

    # ── Public API ──────────────────────────────────────────────────────────

    def analyze(self, now: Optional[datetime] = None) -> BurnoutAnalysis:
        """Run a fresh analysis and cache it."""
        now = now or datetime.now()
        sessions = self.history.list_study_sessions(
            self.user_id, start_after=now - timedelta(days=7), start_before=now
        )
        tasks = self.history.list_tasks(self.user_id)
        trends = self.study_trends(sessions, now)

        indicators: List[BurnoutIndicator] = []
        for check in (
            self._check_effectiveness(trends),
            self._check_excessive_hours(trends),
            self._check_completion(tasks, trends, now),
            self._check_breaks(sessions, now),
            self._check_overdue(tasks, now),
        ):
            if check is not None:
                indicators.append(check)

        score = calculate_risk_score(indicators)
        level = risk_level_for(score)
        analysis = BurnoutAnalysis(
            user_id=self.user_id,
            risk_level=level,
            risk_score=score,
            indicators=indicators,
            recommendations=generate_recommendations(indicators, level),
            last_analyzed=now,
            needs_intervention=level in (RiskLevel.HIGH, RiskLevel.CRITICAL),
        )
        logger.info("Burnout analysis for %s: %s (%d/100, %d indicators)",
                    self.user_id, level.value, score, len(indicators))
        self._save(analysis)
        return analysis

    def get_analysis(self, force: bool = False, now: Optional[datetime] = None) -> BurnoutAnalysis:
        if not force:
            cached = self.cached_analysis(now)
            if cached is not None:
                return cached
        return self.analyze(now)

    def cached_analysis(self, now: Optional[datetime] = None) -> Optional[BurnoutAnalysis]:
        """The stored analysis if it is at most 24 hours old."""
        if self.store is None:
            return None
        raw = self.store.get_json(storage_key(NS_BURNOUT, self.user_id))
        if raw is None:
            return None
        try:
            analysis = BurnoutAnalysis.from_dict(raw)
        except (KeyError, ValueError, TypeError):
            logger.warning("Cached burnout analysis for %s unreadable; ignoring.", self.user_id)
            return None
        now = now or datetime.now()
        if analysis.last_analyzed is None:
            return None
        if now - analysis.last_analyzed > timedelta(hours=BURNOUT_CACHE_HOURS):
            return None
        return analysis

    def clear_cache(self) -> None:
        if self.store is not None:
            self.store.delete(storage_key(NS_BURNOUT, self.user_id))

    @staticmethod
    def summary(analysis: BurnoutAnalysis) -> str:
        return f"{STATUS_TEXT[analysis.risk_level]} ({analysis.risk_score}/100)"

    @staticmethod
    def should_send_alert(analysis: BurnoutAnalysis) -> bool:
        return analysis.needs_intervention and len(analysis.indicators) > 0

    @staticmethod
    def study_trends(sessions: Sequence[StudySession], now: datetime) -> Dict[str, StudyTrend]:
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        cutoffs = {
            "today": midnight,
            "last_3_days": now - timedelta(days=3),
            "last_7_days": now - timedelta(days=7),
        }
        trends: Dict[str, StudyTrend] = {}
        for period, cutoff in cutoffs.items():
            window = [s for s in sessions if s.start_time is not None and s.start_time >= cutoff]
            minutes = np.array([s.duration_min for s in window], dtype=float)
            rated = np.array([s.effectiveness for s in window if s.effectiveness], dtype=float)
            trends[period] = StudyTrend(
                period=period,
                total_hours=float(minutes.sum() / 60.0),
                avg_effectiveness=float(rated.mean()) if rated.size else 0.0,
                session_count=len(window),
            )
        return trends

    # ── Indicator checks ────────────────────────────────────────────────────

    @staticmethod
    def _check_effectiveness(trends: Dict[str, StudyTrend]) -> Optional[BurnoutIndicator]:
        recent = trends["last_3_days"].avg_effectiveness
        baseline = trends["last_7_days"].avg_effectiveness
        if baseline == 0 or recent == 0:
            return None
        drop = (baseline - recent) / baseline * 100
        description = (f"Study effectiveness dropped {drop:.0f}% "
                       f"(from {baseline:.1f} to {recent:.1f})")
        if drop >= 30:
            return BurnoutIndicator(IndicatorType.EFFECTIVENESS_DROP, Severity.HIGH,
                                    description, drop, 30)
        if drop >= 20:
            return BurnoutIndicator(IndicatorType.EFFECTIVENESS_DROP, Severity.MODERATE,
                                    description, drop, 20)
        return None

    @staticmethod
    def _check_excessive_hours(trends: Dict[str, StudyTrend]) -> Optional[BurnoutIndicator]:
        per_day = trends["last_3_days"].total_hours / 3
        if per_day > 12:
            return BurnoutIndicator(
                IndicatorType.EXCESSIVE_HOURS, Severity.HIGH,
                f"Studying {per_day:.1f} hours/day (above sustainable 12h limit)", per_day, 12)
        if per_day > 10:
            return BurnoutIndicator(
                IndicatorType.EXCESSIVE_HOURS, Severity.MODERATE,
                f"Studying {per_day:.1f} hours/day (approaching burnout threshold)", per_day, 10)
        return None

    @staticmethod
    def _check_completion(tasks: Sequence[StudyTask], trends: Dict[str, StudyTrend],
                          now: datetime) -> Optional[BurnoutIndicator]:
        since = now - timedelta(days=7)
        recent = [t for t in tasks if t.created_at is not None and t.created_at >= since]
        completed = sum(1 for t in recent if t.is_completed)
        rate = completed / len(recent) * 100 if recent else 100.0
        week_hours = trends["last_7_days"].total_hours

        if week_hours > 20 and rate < 40:
            return BurnoutIndicator(
                IndicatorType.DECLINING_COMPLETION, Severity.HIGH,
                f"Low task completion ({rate:.0f}%) despite {week_hours:.0f}h of study", rate, 40)
        if week_hours > 15 and rate < 50:
            return BurnoutIndicator(
                IndicatorType.DECLINING_COMPLETION, Severity.MODERATE,
                f"Task completion rate at {rate:.0f}% despite consistent study", rate, 50)
        return None

    @staticmethod
    def _check_breaks(sessions: Sequence[StudySession], now: datetime) -> Optional[BurnoutIndicator]:
        since = now - timedelta(days=3)
        long_sessions = [s for s in sessions
                         if s.start_time is not None and s.start_time >= since
                         and s.duration_min >= LONG_SESSION_MIN]
        if len(long_sessions) >= 3:
            return BurnoutIndicator(
                IndicatorType.NO_BREAKS, Severity.MODERATE,
                f"{len(long_sessions)} sessions over 2 hours without adequate breaks",
                len(long_sessions), 3)
        return None

    @staticmethod
    def _check_overdue(tasks: Sequence[StudyTask], now: datetime) -> Optional[BurnoutIndicator]:
        overdue = [t for t in tasks
                   if not t.is_completed and t.due_date is not None and t.due_date < now]
        if len(overdue) >= 5:
            return BurnoutIndicator(
                IndicatorType.OVERDUE_TASKS, Severity.HIGH,
                f"{len(overdue)} overdue tasks accumulating (stress indicator)", len(overdue), 5)
        if len(overdue) >= 3:
            return BurnoutIndicator(
                IndicatorType.OVERDUE_TASKS, Severity.MODERATE,
                f"{len(overdue)} overdue tasks pending", len(overdue), 3)
        return None

    # ── Internal ────────────────────────────────────────────────────────────

    def _save(self, analysis: BurnoutAnalysis) -> None:
        if self.store is None:
            return
        try:
            self.store.set_json(storage_key(NS_BURNOUT, self.user_id), analysis.to_dict())
        except sqlite3.Error:
            logger.exception("Failed to cache burnout analysis for %s", self.user_id)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Looks at the last week of study sessions and tasks and answers "is this
#   student heading for burnout?" with a score, a level and advice.
#
# Key design decisions:
#   - Five independent indicators, each a small pure function, so each rule
#     can be tested on its own with hand-built history.
#   - Weighted sum with severity multipliers: a high-severity effectiveness
#     drop (30 x 1.5 = 45) alone lands in "moderate", two strong signals
#     reach "high".
#   - Completion with no recent tasks counts as 100%, so a user who simply
#     has not created tasks is never flagged for "declining completion".
#
# Data flow:
#   orchestrator.run_burnout_check() -> get_analysis() -> cache hit or
#   analyze() -> history source -> indicators -> score -> cached snapshot
#
# Interviewer-friendly talking points:
#   1. Rounding is half-up on purpose; Python's round() would turn 22.5
#      into 22, not 23.
#   2. Recommendations are de-duplicated with dict.fromkeys, which keeps
#      the first occurrence and its order.
#   3. The 24h cache keeps the analyzer off the hot path of every submit.
