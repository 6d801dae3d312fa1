"""Time-windowed call analytics, trend series and generated insights.

Snapshots are computed on demand from call records and never stored. Every
ratio here is guarded so an empty window yields zeros instead of errors.
"""

import logging
import math
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .models import QUALITY_BUCKETS, RESOLUTION_TYPES, CallRecord, CallStatus, as_utc, utc_now

logger = logging.getLogger(__name__)


PERIODS: dict[str, timedelta] = {
    "1d": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}

UNKNOWN_CALLER = "unknown"


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (and toward +inf for negatives)."""
    return math.floor(value + 0.5)


def percentage_change(current: float, previous: float) -> int:
    """Period-over-period change in percent.

    Growth from nothing reports 100; no activity in either period reports 0.
    """
    if previous == 0:
        return 100 if current > 0 else 0
    return round_half_up((current - previous) / previous * 100)


def percentage(part: int, whole: int) -> int:
    """Rounded percentage, 0 for an empty whole."""
    if whole == 0:
        return 0
    return round_half_up(part / whole * 100)


def average_sentiment(scores: list[float]) -> float:
    """Mean sentiment score, 0 when there are no scores."""
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 2)


def peak_index(values: list[int], size: int) -> int:
    """Most frequent value in [0, size); ties go to the lowest index."""
    counts = [0] * size
    for value in values:
        if 0 <= value < size:
            counts[value] += 1
    return counts.index(max(counts))


@dataclass(frozen=True)
class TimeRange:
    """A closed analytics window [start, end].

    Attributes:
        start: Window start (inclusive)
        end: Window end (inclusive)
        period: "1d", "7d", "30d", "90d" or "custom"
    """

    start: datetime
    end: datetime
    period: str = "custom"

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("TimeRange end must not be before start")

    @property
    def length(self) -> timedelta:
        return self.end - self.start

    @property
    def previous(self) -> "TimeRange":
        """The equal-length window immediately before this one."""
        return TimeRange(self.start - self.length, self.start, self.period)

    @classmethod
    def last(cls, period: str, now: datetime | None = None) -> "TimeRange":
        """Window of the given period ending now.

        Raises:
            ValueError: If the period is not one of PERIODS
        """
        if period not in PERIODS:
            raise ValueError(f"Unknown period {period!r}; expected one of {sorted(PERIODS)}")
        end = as_utc(now) if now is not None else utc_now()
        return cls(start=end - PERIODS[period], end=end, period=period)


@dataclass
class WindowStats:
    """Headline numbers for one window."""

    total_calls: int = 0
    completed_calls: int = 0
    failed_calls: int = 0
    success_rate: int = 0
    average_duration: int = 0
    leads_captured: int = 0
    lead_conversion_rate: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "completed_calls": self.completed_calls,
            "failed_calls": self.failed_calls,
            "success_rate": self.success_rate,
            "average_duration": self.average_duration,
            "leads_captured": self.leads_captured,
            "lead_conversion_rate": self.lead_conversion_rate,
        }


@dataclass
class PeriodChange:
    """Percent change of the current window against the previous one."""

    calls: int = 0
    leads: int = 0
    duration: int = 0
    success_rate: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "calls": self.calls,
            "leads": self.leads,
            "duration": self.duration,
            "success_rate": self.success_rate,
        }


@dataclass
class TrendBucket:
    """One point of the trend series."""

    label: str
    start: datetime
    calls: int = 0
    lead_conversion_rate: int = 0
    average_duration: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "start": self.start.isoformat(),
            "calls": self.calls,
            "lead_conversion_rate": self.lead_conversion_rate,
            "average_duration": self.average_duration,
        }


@dataclass
class Insight:
    """A generated observation about the snapshot."""

    key: str
    type: str  # positive, warning, info
    title: str
    description: str
    impact: str  # high, medium, low
    actionable: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "impact": self.impact,
            "actionable": self.actionable,
        }


@dataclass
class AnalyticsSnapshot:
    """Aggregated analytics for a window, compared with the previous one."""

    time_range: TimeRange
    current: WindowStats
    previous: WindowStats
    changes: PeriodChange
    unique_callers: int = 0
    repeat_caller_rate: int = 0
    average_sentiment: float = 0.0
    quality_distribution: dict[str, int] = field(default_factory=dict)
    resolution_types: dict[str, int] = field(default_factory=dict)
    peak_hour: int = 0
    peak_day: int = 0
    trend: list[TrendBucket] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "time_range": {
                "start": self.time_range.start.isoformat(),
                "end": self.time_range.end.isoformat(),
                "period": self.time_range.period,
            },
            "current": self.current.to_dict(),
            "previous": self.previous.to_dict(),
            "changes": self.changes.to_dict(),
            "unique_callers": self.unique_callers,
            "repeat_caller_rate": self.repeat_caller_rate,
            "average_sentiment": self.average_sentiment,
            "quality_distribution": dict(self.quality_distribution),
            "resolution_types": dict(self.resolution_types),
            "peak_hour": self.peak_hour,
            "peak_day": self.peak_day,
            "trend": [bucket.to_dict() for bucket in self.trend],
            "insights": [insight.to_dict() for insight in self.insights],
        }


@dataclass(frozen=True)
class InsightRule:
    """Fixed rule: fires when ``applies`` holds for a snapshot."""

    key: str
    type: str
    impact: str
    actionable: bool
    title: str
    applies: Callable[[AnalyticsSnapshot], bool]
    describe: Callable[[AnalyticsSnapshot], str]

    def evaluate(self, snapshot: AnalyticsSnapshot) -> Insight | None:
        if not self.applies(snapshot):
            return None
        return Insight(
            key=self.key,
            type=self.type,
            title=self.title,
            description=self.describe(snapshot),
            impact=self.impact,
            actionable=self.actionable,
        )


INSIGHT_RULES: tuple[InsightRule, ...] = (
    InsightRule(
        key="volume_surge",
        type="positive",
        impact="medium",
        actionable=False,
        title="Call volume surge",
        applies=lambda s: s.changes.calls > 20,
        describe=lambda s: f"Call volume is up {s.changes.calls}% on the previous period.",
    ),
    InsightRule(
        key="low_success_rate",
        type="warning",
        impact="high",
        actionable=True,
        title="Low call success rate",
        applies=lambda s: s.current.total_calls > 0 and s.current.success_rate < 70,
        describe=lambda s: (
            f"Only {s.current.success_rate}% of calls completed successfully. "
            f"Review failed calls and the assistant's configuration."
        ),
    ),
    InsightRule(
        key="strong_lead_conversion",
        type="positive",
        impact="high",
        actionable=False,
        title="Strong lead conversion",
        applies=lambda s: s.current.lead_conversion_rate > 15,
        describe=lambda s: f"{s.current.lead_conversion_rate}% of calls produced a lead.",
    ),
    InsightRule(
        key="negative_sentiment",
        type="warning",
        impact="high",
        actionable=True,
        title="Callers are unhappy",
        applies=lambda s: s.average_sentiment < -0.3,
        describe=lambda s: (
            f"Average caller sentiment is {s.average_sentiment:.2f}. "
            f"Check recent transcripts for recurring complaints."
        ),
    ),
    InsightRule(
        key="repeat_callers",
        type="info",
        impact="medium",
        actionable=True,
        title="Many repeat callers",
        applies=lambda s: s.repeat_caller_rate > 30,
        describe=lambda s: (
            f"{s.repeat_caller_rate}% of callers called more than once; "
            f"they may not be getting what they need the first time."
        ),
    ),
)


def _trend_layout(time_range: TimeRange) -> tuple[int, Callable[[int, datetime], str]]:
    """Bucket count and label format for a window's trend series."""
    if time_range.period == "1d":
        return 24, lambda i, start: start.strftime("%H:00")
    if time_range.period == "7d":
        return 7, lambda i, start: start.strftime("%a")
    return 4, lambda i, start: f"Week {i + 1}"


class MetricsAggregator:
    """Builds AnalyticsSnapshots from call records."""

    def __init__(self, rules: tuple[InsightRule, ...] = INSIGHT_RULES) -> None:
        self._rules = rules

    def aggregate(self, records: list[CallRecord], time_range: TimeRange) -> AnalyticsSnapshot:
        """Compute analytics for a window and compare with the preceding one.

        Args:
            records: Call records covering at least both windows
            time_range: Current window

        Returns:
            Freshly computed AnalyticsSnapshot
        """
        previous_range = time_range.previous
        current: list[CallRecord] = []
        previous: list[CallRecord] = []
        for record in records:
            created = as_utc(record.created_at)
            if time_range.start <= created <= time_range.end:
                current.append(record)
            elif previous_range.start <= created < time_range.start:
                previous.append(record)

        current_stats = self._window_stats(current)
        previous_stats = self._window_stats(previous)
        finalized = [r for r in current if r.derived is not None]

        callers = Counter(r.caller_number for r in current if r.caller_number != UNKNOWN_CALLER)
        repeat_callers = sum(1 for count in callers.values() if count > 1)

        quality = {bucket: 0 for bucket in QUALITY_BUCKETS}
        resolutions = {resolution: 0 for resolution in RESOLUTION_TYPES}
        for record in finalized:
            quality[record.derived.quality_bucket] = quality.get(record.derived.quality_bucket, 0) + 1
            resolutions[record.derived.resolution_type] = (
                resolutions.get(record.derived.resolution_type, 0) + 1
            )

        snapshot = AnalyticsSnapshot(
            time_range=time_range,
            current=current_stats,
            previous=previous_stats,
            changes=PeriodChange(
                calls=percentage_change(current_stats.total_calls, previous_stats.total_calls),
                leads=percentage_change(current_stats.leads_captured, previous_stats.leads_captured),
                duration=percentage_change(
                    current_stats.average_duration, previous_stats.average_duration
                ),
                success_rate=percentage_change(
                    current_stats.success_rate, previous_stats.success_rate
                ),
            ),
            unique_callers=len(callers),
            repeat_caller_rate=percentage(repeat_callers, len(callers)),
            average_sentiment=average_sentiment([r.derived.sentiment_score for r in finalized]),
            quality_distribution=quality,
            resolution_types=resolutions,
            peak_hour=peak_index([r.time_of_day for r in current], 24),
            peak_day=peak_index([r.day_of_week for r in current], 7),
            trend=self._trend(current, time_range),
        )
        snapshot.insights = self.generate_insights(snapshot)

        logger.debug(
            f"Aggregated {len(current)} current / {len(previous)} previous calls, "
            f"{len(snapshot.insights)} insights"
        )
        return snapshot

    def generate_insights(self, snapshot: AnalyticsSnapshot) -> list[Insight]:
        """Evaluate every rule; all that apply fire."""
        insights = []
        for rule in self._rules:
            insight = rule.evaluate(snapshot)
            if insight is not None:
                insights.append(insight)
        return insights

    @staticmethod
    def _window_stats(records: list[CallRecord]) -> WindowStats:
        total = len(records)
        completed = sum(1 for r in records if r.status == CallStatus.COMPLETED)
        failed = sum(1 for r in records if r.status == CallStatus.FAILED)
        leads = sum(1 for r in records if r.lead_captured)
        duration = sum(r.duration_seconds for r in records)
        return WindowStats(
            total_calls=total,
            completed_calls=completed,
            failed_calls=failed,
            success_rate=percentage(completed, total),
            average_duration=round_half_up(duration / total) if total else 0,
            leads_captured=leads,
            lead_conversion_rate=percentage(leads, total),
        )

    @staticmethod
    def _trend(records: list[CallRecord], time_range: TimeRange) -> list[TrendBucket]:
        count, label = _trend_layout(time_range)
        width = time_range.length / count
        buckets = []
        for i in range(count):
            start = time_range.start + width * i
            buckets.append(TrendBucket(label=label(i, start), start=start))

        grouped: list[list[CallRecord]] = [[] for _ in range(count)]
        width_seconds = width.total_seconds()
        for record in records:
            offset = (as_utc(record.created_at) - time_range.start).total_seconds()
            index = int(offset // width_seconds) if width_seconds > 0 else 0
            grouped[min(max(index, 0), count - 1)].append(record)

        for bucket, members in zip(buckets, grouped):
            total = len(members)
            bucket.calls = total
            bucket.lead_conversion_rate = percentage(sum(1 for r in members if r.lead_captured), total)
            bucket.average_duration = (
                round_half_up(sum(r.duration_seconds for r in members) / total) if total else 0
            )

        return buckets
