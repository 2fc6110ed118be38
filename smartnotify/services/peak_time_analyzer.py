"""
Peak-Time Analyzer — finds the hours of day a user studies best.

Scores each hour from effectiveness, frequency and session length over the
last 30 days and keeps the top three. Results are cached for 7 days.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

import numpy as np

from ..config import (
    IDEAL_SESSION_MIN,
    NS_PEAK_TIME,
    PEAK_CACHE_DAYS,
    PEAK_HOUR_COUNT,
    PEAK_MIN_SESSIONS,
    PEAK_WINDOW_DAYS,
    storage_key,
)
from ..data.kv_store import KeyValueStore
from ..data.models import HourlyProductivity, PeakTimeAnalysis, PeakTimeRecommendation
from .burnout_detector import StudyHistorySource

logger = logging.getLogger(__name__)

# Productivity score weights (sum to 1)
EFFECTIVENESS_WEIGHT = 0.6
FREQUENCY_WEIGHT = 0.25
DURATION_WEIGHT = 0.15

DEFAULT_EFFECTIVENESS = 3.0  # used when nothing in the window is rated


def format_hour(hour: int) -> str:
    """13 -> '1PM', 0 -> '12AM'."""
    if hour < 12:
        return f"{12 if hour == 0 else hour}AM"
    return f"{12 if hour == 12 else hour - 12}PM"


class PeakTimeAnalyzer:
    """Per-user peak productivity hours."""

    def __init__(self, user_id: str, history: StudyHistorySource,
                 store: Optional[KeyValueStore] = None) -> None:
        self.user_id = user_id
        self.history = history
        self.store = store

    # ── Public API ──────────────────────────────────────────────────────────

    def analyze(self, now: Optional[datetime] = None) -> PeakTimeAnalysis:
        now = now or datetime.now()
        sessions = [
            s for s in self.history.list_study_sessions(
                self.user_id, start_after=now - timedelta(days=PEAK_WINDOW_DAYS), start_before=now
            )
            if s.start_time is not None
        ]

        if len(sessions) < PEAK_MIN_SESSIONS:
            logger.info("Only %d sessions for %s; peak times need %d",
                        len(sessions), self.user_id, PEAK_MIN_SESSIONS)
            analysis = PeakTimeAnalysis(user_id=self.user_id, total_sessions=len(sessions),
                                        last_analyzed=now)
            self._save(analysis)
            return analysis

        hours = np.array([s.start_time.hour for s in sessions], dtype=int)
        durations = np.array([s.duration_min for s in sessions], dtype=float)
        rated_mask = np.array([bool(s.effectiveness) for s in sessions])
        ratings = np.array([s.effectiveness or 0 for s in sessions], dtype=float)

        counts = np.bincount(hours, minlength=24)
        duration_sums = np.bincount(hours, weights=durations, minlength=24)
        rated_counts = np.bincount(hours[rated_mask], minlength=24)
        rating_sums = np.bincount(hours[rated_mask], weights=ratings[rated_mask], minlength=24)

        rated_total = int(rated_mask.sum())
        overall_eff = float(ratings[rated_mask].mean()) if rated_total else DEFAULT_EFFECTIVENESS

        hourly: List[HourlyProductivity] = []
        for hour in range(24):
            count = int(counts[hour])
            if count == 0:
                hourly.append(HourlyProductivity(hour=hour))
                continue
            avg_eff = (float(rating_sums[hour] / rated_counts[hour])
                       if rated_counts[hour] else overall_eff)
            avg_dur = float(duration_sums[hour] / count)

            effectiveness_score = avg_eff / 5 * 100
            frequency_score = min(100.0, count / len(sessions) * 100 * 4)
            duration_score = min(100.0, avg_dur / IDEAL_SESSION_MIN * 100)
            score = (effectiveness_score * EFFECTIVENESS_WEIGHT
                     + frequency_score * FREQUENCY_WEIGHT
                     + duration_score * DURATION_WEIGHT)
            hourly.append(HourlyProductivity(hour=hour, session_count=count,
                                             avg_effectiveness=avg_eff, avg_duration=avg_dur,
                                             productivity_score=score))

        ranked = sorted((h for h in hourly if h.session_count > 0),
                        key=lambda h: (-h.productivity_score, h.hour))
        peak_hours = [h.hour for h in ranked[:PEAK_HOUR_COUNT]]

        if len(sessions) >= 20 and rated_total >= 15:
            confidence = "high"
        elif len(sessions) >= 10 and rated_total >= 8:
            confidence = "medium"
        else:
            confidence = "low"

        analysis = PeakTimeAnalysis(
            user_id=self.user_id,
            peak_hours=peak_hours,
            hourly_productivity=hourly,
            total_sessions=len(sessions),
            average_effectiveness=overall_eff,
            confidence=confidence,
            last_analyzed=now,
        )
        logger.info("Peak hours for %s: %s (%s confidence, %d sessions)",
                    self.user_id, peak_hours, confidence, len(sessions))
        self._save(analysis)
        return analysis

    def get_analysis(self, force: bool = False, now: Optional[datetime] = None) -> PeakTimeAnalysis:
        if not force:
            cached = self.cached_analysis(now)
            if cached is not None:
                return cached
        return self.analyze(now)

    def cached_analysis(self, now: Optional[datetime] = None) -> Optional[PeakTimeAnalysis]:
        if self.store is None:
            return None
        raw = self.store.get_json(storage_key(NS_PEAK_TIME, self.user_id))
        if raw is None:
            return None
        try:
            analysis = PeakTimeAnalysis.from_dict(raw)
        except (KeyError, ValueError, TypeError):
            logger.warning("Cached peak-time analysis for %s unreadable; ignoring.", self.user_id)
            return None
        now = now or datetime.now()
        if analysis.last_analyzed is None:
            return None
        if now - analysis.last_analyzed > timedelta(days=PEAK_CACHE_DAYS):
            return None
        return analysis

    def recommend(self, has_pending_work: bool, now: Optional[datetime] = None) -> PeakTimeRecommendation:
        now = now or datetime.now()
        analysis = self.get_analysis(now=now)

        if analysis.confidence == "low" or not analysis.peak_hours:
            return PeakTimeRecommendation(False, None,
                                          "Insufficient data to determine peak times", "low")
        if not has_pending_work:
            return PeakTimeRecommendation(False, None, "No pending tasks to work on",
                                          analysis.confidence)

        current = now.hour
        if current in analysis.peak_hours:
            return PeakTimeRecommendation(
                True, current, f"Currently in your peak productivity hour ({current}:00)",
                analysis.confidence)

        upcoming = sorted(h for h in analysis.peak_hours if h > current)
        # nothing later today: wrap to the first peak hour tomorrow
        next_hour = upcoming[0] if upcoming else min(analysis.peak_hours)
        return PeakTimeRecommendation(False, next_hour, f"Next peak hour: {next_hour}:00",
                                      analysis.confidence)

    @staticmethod
    def summary(analysis: PeakTimeAnalysis) -> str:
        if not analysis.peak_hours:
            return "Keep studying to discover your peak productivity hours!"
        labels = ", ".join(format_hour(h) for h in analysis.peak_hours)
        return f"Your peak hours: {labels} (based on {analysis.total_sessions} sessions)"

    def clear_cache(self) -> None:
        if self.store is not None:
            self.store.delete(storage_key(NS_PEAK_TIME, self.user_id))

    # ── Internal ────────────────────────────────────────────────────────────

    def _save(self, analysis: PeakTimeAnalysis) -> None:
        if self.store is None:
            return
        try:
            self.store.set_json(storage_key(NS_PEAK_TIME, self.user_id), analysis.to_dict())
        except sqlite3.Error:
            logger.exception("Failed to cache peak-time analysis for %s", self.user_id)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Finds the three hours of day where the user studies most effectively,
#   and says whether right now is a good moment for a "start studying" nudge.
#
# Key design decisions:
#   - Score = 60% self-rated effectiveness + 25% how often they study at
#     that hour + 15% session length relative to a 90-minute ideal.
#   - Unrated sessions still count towards frequency and duration; their
#     effectiveness is assumed to be the user's overall average.
#   - Confidence depends on both session count and how many were rated, so
#     a pile of unrated sessions never produces a "high" confidence answer.
#
# Data flow:
#   orchestrator.run_peak_time_check() -> recommend() -> cached analysis or
#   analyze() -> np.bincount per hour -> top 3 -> recommendation
#
# Interviewer-friendly talking points:
#   1. np.bincount with weights does the whole per-hour aggregation in a
#      handful of vectorised calls.
#   2. The recommendation wraps around midnight: at 23:00 the next peak
#      hour may be tomorrow's 9:00.
#   3. Low confidence means "say nothing". A wrong nudge costs more trust
#      than a missing one.
