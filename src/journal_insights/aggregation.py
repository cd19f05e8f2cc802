"""Aggregation of entry analytics into summaries, time series, and current state.

All statistics are computed over daily values: entries of the same calendar
day are averaged first, so a day with many entries weighs the same as a day
with one.
"""

from __future__ import annotations

import calendar
import logging
import math
import statistics
from datetime import MINYEAR, date, datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from .config import AggregationConfig
from .errors import InsightsError, ProviderError
from .models import (
    ConfidenceInterval,
    CurrentState,
    DetectedEvent,
    EntryAnalytics,
    Metric,
    MonthSummary,
    MoodState,
    SourceSpan,
    SuggestedTodo,
    TimeSeriesDataPoint,
    Trend,
    YearSummary,
    utc_now,
)
from .providers import NarrativeProvider
from .store import InsightsStore

logger = logging.getLogger(__name__)

KEY_TOPIC_LIMIT = 8
MAX_CURRENT_STATE_DAYS = 90
STATE_LIST_LIMIT = 5


# -----------------------------------------------------------------------------
# Pure helpers
# -----------------------------------------------------------------------------


def metric_value(analytics: EntryAnalytics, metric: Metric) -> float:
    """Value of a 0-100 metric for one entry."""
    e = analytics.emotions
    if metric is Metric.HAPPINESS:
        value = analytics.happiness_score
    elif metric is Metric.STRESS:
        value = 100.0 * (0.5 * e.anxiety + 0.3 * e.anger + 0.2 * e.sadness)
    elif metric is Metric.ENERGY:
        value = 100.0 * (0.6 * analytics.arousal + 0.4 * e.joy)
    else:
        raise ValueError(f"Unknown metric: {metric}")
    return max(0.0, min(100.0, value))


def daily_values(analytics: Iterable[EntryAnalytics], metric: Metric) -> dict[date, float]:
    """Mean metric value per calendar day, in date order."""
    by_day: dict[date, list[float]] = {}
    for a in analytics:
        by_day.setdefault(a.date, []).append(metric_value(a, metric))
    return {day: sum(v) / len(v) for day, v in sorted(by_day.items())}


def mean_with_interval(values: list[float]) -> tuple[float, ConfidenceInterval]:
    """Mean and its confidence interval, mean +/- t * s / sqrt(n).

    t is 2.0 for up to 30 values and 1.96 above. Fewer than two values give
    a zero-width interval; no values give (0, [0, 0]).
    """
    n = len(values)
    if n == 0:
        return 0.0, ConfidenceInterval(0.0, 0.0)
    mean = sum(values) / n
    if n < 2:
        return mean, ConfidenceInterval.point(mean)
    t = 1.96 if n > 30 else 2.0
    margin = t * statistics.stdev(values) / math.sqrt(n)
    return mean, ConfidenceInterval(mean - margin, mean + margin)


def _salience_key(event: DetectedEvent) -> tuple[bool, float]:
    # None sorts after every real salience
    return (event.salience is None, -(event.salience or 0.0))


def _recency_key(event: DetectedEvent) -> int:
    return -(event.date.toordinal() if event.date else 0)


def _unique_by_title(events: Iterable[DetectedEvent], limit: int) -> list[DetectedEvent]:
    seen: set[str] = set()
    result = []
    for event in events:
        key = event.title.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(event)
        if len(result) >= limit:
            break
    return result


def rank_drivers(events: Iterable[DetectedEvent], positive: bool, limit: int) -> list[str]:
    """Titles of the strongest positive (or negative) events.

    Ranked by sentiment strength, then salience (missing last), then recency.
    """
    if positive:
        pool = [e for e in events if e.sentiment > 0]
        pool.sort(key=lambda e: (-e.sentiment, _salience_key(e), _recency_key(e), e.title))
    else:
        pool = [e for e in events if e.sentiment < 0]
        pool.sort(key=lambda e: (e.sentiment, _salience_key(e), _recency_key(e), e.title))
    return [e.title for e in _unique_by_title(pool, limit)]


def rank_top_events(events: Iterable[DetectedEvent], limit: int) -> list[DetectedEvent]:
    """Most significant events by |sentiment|, salience, then recency."""
    pool = sorted(
        events,
        key=lambda e: (-abs(e.sentiment), _salience_key(e), _recency_key(e), e.title),
    )
    return _unique_by_title(pool, limit)


def rank_topics(events: Iterable[DetectedEvent], limit: int) -> list[str]:
    """Theme labels by frequency, then recency.

    An event's label is its category, or its lower-cased title without one.
    """
    counts: dict[str, int] = {}
    latest: dict[str, int] = {}
    for event in events:
        label = event.category or event.title.lower()
        counts[label] = counts.get(label, 0) + 1
        day = event.date.toordinal() if event.date else 0
        latest[label] = max(latest.get(label, 0), day)
    ranked = sorted(counts, key=lambda label: (-counts[label], -latest[label], label))
    return ranked[:limit]


def provenance(analytics: Iterable[EntryAnalytics]) -> list[SourceSpan]:
    """One full-text span per contributing entry, followed by event spans."""
    spans: list[SourceSpan] = []
    seen: set[SourceSpan] = set()
    analytics = list(analytics)
    for a in analytics:
        span = a.full_span
        if span is not None and span not in seen:
            seen.add(span)
            spans.append(span)
    for a in analytics:
        for event in a.events:
            for span in event.spans:
                if span not in seen:
                    seen.add(span)
                    spans.append(span)
    return spans


def _all_events(analytics: Iterable[EntryAnalytics]) -> list[DetectedEvent]:
    return [event for a in analytics for event in a.events]


def _month_range(year: int, month: int) -> tuple[date, date]:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last)


def _previous_month(year: int, month: int) -> tuple[int, int]:
    return (year - 1, 12) if month == 1 else (year, month - 1)


def _mean(values: Iterable[float]) -> Optional[float]:
    values = list(values)
    return sum(values) / len(values) if values else None


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------


class AggregationEngine:
    """Builds, stores, and serves period summaries and the current state."""

    def __init__(
        self,
        store: InsightsStore,
        config: Optional[AggregationConfig] = None,
        narrator: Optional[NarrativeProvider] = None,
        clock: Callable[[], datetime] = utc_now,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.config = config or AggregationConfig()
        self.narrator = narrator
        self._clock = clock
        self._today = today

    # -- shared ----------------------------------------------------------------

    def _period_average(self, date_from: date, date_to: date) -> Optional[float]:
        analytics = self.store.list_analytics(date_from, date_to)
        if not analytics:
            return None
        return _mean(daily_values(analytics, Metric.HAPPINESS).values())

    def _trend(self, current: Optional[float], previous: Optional[float]) -> Trend:
        if current is None or previous is None:
            return Trend.STABLE
        return Trend.classify(current, previous, self.config.trend_threshold)

    def _narrate(self, kind: str, context: dict[str, Any], fallback: str) -> str:
        if self.narrator is None:
            return fallback
        narrate = self.narrator.narrate_month if kind == "month" else self.narrator.narrate_year
        try:
            text = narrate(context)
        except ProviderError as e:
            logger.warning("Narrative for %s %s failed, using plain summary: %s",
                           kind, context.get("period"), e)
            return fallback
        return text or fallback

    @staticmethod
    def _context(summary: MonthSummary | YearSummary) -> dict[str, Any]:
        return {
            "period": summary.period,
            "entry_count": summary.entry_count,
            "days_with_data": summary.days_with_data,
            "happiness_avg": round(summary.happiness_avg, 1),
            "happiness_confidence_interval": summary.happiness_confidence_interval.to_dict(),
            "happiness_trend": summary.happiness_trend.description,
            "key_topics": summary.key_topics,
            "drivers_positive": summary.drivers_positive,
            "drivers_negative": summary.drivers_negative,
            "top_events": [e.title for e in summary.top_events],
        }

    @staticmethod
    def _plain_text(label: str, summary: MonthSummary | YearSummary, compared_to: str) -> str:
        if summary.entry_count == 0:
            return f"No analyzed journal entries for {label}."
        ci = summary.happiness_confidence_interval
        parts = [
            f"{summary.entry_count} entries over {summary.days_with_data} days in {label}.",
            f"Average happiness {summary.happiness_avg:.1f} "
            f"(95% CI {ci.lower:.1f}-{ci.upper:.1f}), "
            f"{summary.happiness_trend.description} compared to {compared_to}.",
        ]
        if summary.key_topics:
            parts.append(f"Main topics: {', '.join(summary.key_topics[:3])}.")
        if summary.drivers_positive:
            parts.append(f"Lifted by: {', '.join(summary.drivers_positive[:3])}.")
        if summary.drivers_negative:
            parts.append(f"Weighed down by: {', '.join(summary.drivers_negative[:3])}.")
        return " ".join(parts)

    # -- month -----------------------------------------------------------------

    def build_month_summary(self, year: int, month: int, narrate: bool = False) -> MonthSummary:
        """Compute a month summary from stored analytics without persisting it."""
        if not 1 <= month <= 12:
            raise ValueError(f"Month must be 1-12, got {month}")
        start, end = _month_range(year, month)
        analytics = self.store.list_analytics(start, end)
        daily = daily_values(analytics, Metric.HAPPINESS)
        avg, ci = mean_with_interval(list(daily.values()))
        events = _all_events(analytics)

        prev_year, prev_month = _previous_month(year, month)
        previous = None
        if prev_year >= MINYEAR:
            previous = self._period_average(*_month_range(prev_year, prev_month))
        trend = self._trend(avg if daily else None, previous)

        summary = MonthSummary(
            year=year,
            month=month,
            summary_text="",
            key_topics=rank_topics(events, KEY_TOPIC_LIMIT),
            happiness_avg=avg,
            happiness_confidence_interval=ci,
            drivers_positive=rank_drivers(events, True, self.config.top_drivers),
            drivers_negative=rank_drivers(events, False, self.config.top_drivers),
            top_events=rank_top_events(events, self.config.top_events_month),
            source_spans=provenance(analytics),
            generated_at=self._clock(),
            entry_count=len(analytics),
            days_with_data=len(daily),
            happiness_trend=trend,
        )
        label = f"{calendar.month_name[month]} {year}"
        summary.summary_text = self._plain_text(label, summary, "the previous month")
        if narrate and analytics:
            summary.summary_text = self._narrate("month", self._context(summary), summary.summary_text)
        return summary

    def regenerate_month_summary(self, year: int, month: int) -> MonthSummary:
        """Rebuild a month summary in full and overwrite the stored one."""
        summary = self.build_month_summary(year, month, narrate=True)
        self.store.save_month_summary(summary)
        logger.info("Regenerated month summary %s", summary.period)
        return summary

    def get_month_summary(self, year: int, month: int) -> MonthSummary:
        """Stored summary if fresh, else a freshly built (unsaved) one."""
        stored = self.store.get_month_summary(year, month)
        if stored is not None:
            return stored
        return self.build_month_summary(year, month)

    # -- year ------------------------------------------------------------------

    def build_year_summary(self, year: int, narrate: bool = False) -> YearSummary:
        """Compute a year summary from stored analytics without persisting it."""
        analytics = self.store.list_analytics(date(year, 1, 1), date(year, 12, 31))
        daily = daily_values(analytics, Metric.HAPPINESS)
        avg, ci = mean_with_interval(list(daily.values()))
        events = _all_events(analytics)

        previous = None
        if year - 1 >= MINYEAR:
            previous = self._period_average(date(year - 1, 1, 1), date(year - 1, 12, 31))
        trend = self._trend(avg if daily else None, previous)

        summary = YearSummary(
            year=year,
            summary_text="",
            key_topics=rank_topics(events, KEY_TOPIC_LIMIT),
            happiness_avg=avg,
            happiness_confidence_interval=ci,
            drivers_positive=rank_drivers(events, True, self.config.top_drivers),
            drivers_negative=rank_drivers(events, False, self.config.top_drivers),
            top_events=rank_top_events(events, self.config.top_events_year),
            source_spans=provenance(analytics),
            generated_at=self._clock(),
            entry_count=len(analytics),
            days_with_data=len(daily),
            happiness_trend=trend,
            months_covered=sorted({a.date.month for a in analytics}),
        )
        summary.summary_text = self._plain_text(str(year), summary, "the previous year")
        if narrate and analytics:
            summary.summary_text = self._narrate("year", self._context(summary), summary.summary_text)
        return summary

    def regenerate_year_summary(self, year: int) -> YearSummary:
        """Rebuild a year summary in full and overwrite the stored one."""
        summary = self.build_year_summary(year, narrate=True)
        self.store.save_year_summary(summary)
        logger.info("Regenerated year summary %s", summary.period)
        return summary

    def get_year_summary(self, year: int) -> YearSummary:
        """Stored summary if fresh, else a freshly built (unsaved) one."""
        stored = self.store.get_year_summary(year)
        if stored is not None:
            return stored
        return self.build_year_summary(year)

    def regenerate_stale(self) -> dict[str, list[str]]:
        """Rebuild every missing or stale summary of a period with analytics."""
        months = [
            self.regenerate_month_summary(year, month).period
            for year, month in self.store.months_needing_summary()
        ]
        years = [
            self.regenerate_year_summary(year).period
            for year in self.store.years_needing_summary()
        ]
        return {"months": months, "years": years}

    # -- time series -----------------------------------------------------------

    def time_series(self, metric: Metric, date_from: date, date_to: date) -> list[TimeSeriesDataPoint]:
        """One point per day with analytics in [date_from, date_to]."""
        if date_from > date_to:
            raise ValueError("date_from must not be after date_to")
        by_day: dict[date, list[EntryAnalytics]] = {}
        for a in self.store.list_analytics(date_from, date_to):
            by_day.setdefault(a.date, []).append(a)
        return [
            TimeSeriesDataPoint(
                date=day,
                metric=metric,
                value=sum(metric_value(a, metric) for a in records) / len(records),
                confidence=sum(a.confidence for a in records) / len(records),
            )
            for day, records in sorted(by_day.items())
        ]

    # -- current state ---------------------------------------------------------

    def _window_mean(self, analytics: list[EntryAnalytics], metric: Metric) -> Optional[float]:
        return _mean(daily_values(analytics, metric).values())

    def _mood(self, analytics: list[EntryAnalytics], today: date) -> MoodState:
        window = self.config.trend_window_days
        recent_start = today - timedelta(days=window - 1)
        previous_start = recent_start - timedelta(days=window)
        recent = [a for a in analytics if recent_start <= a.date <= today]
        previous = [a for a in analytics if previous_start <= a.date < recent_start]

        values = {}
        trends = {}
        for metric in Metric:
            current = self._window_mean(recent, metric)
            before = self._window_mean(previous, metric)
            values[metric] = 50.0 if current is None else current
            trends[metric] = self._trend(current, before)
        return MoodState(
            happiness=values[Metric.HAPPINESS],
            stress=values[Metric.STRESS],
            energy=values[Metric.ENERGY],
            happiness_trend=trends[Metric.HAPPINESS],
            stress_trend=trends[Metric.STRESS],
            energy_trend=trends[Metric.ENERGY],
        )

    def _suggest_todos(self, context: dict[str, Any]) -> list[SuggestedTodo]:
        if self.narrator is None:
            return []
        try:
            raw_todos = self.narrator.suggest_todos(context)
        except InsightsError as e:
            logger.warning("Todo suggestions failed: %s", e)
            return []
        todos = []
        for raw in raw_todos:
            try:
                todos.append(SuggestedTodo(
                    title=str(raw["title"]),
                    first_step=str(raw["first_step"]),
                    why_it_matters=str(raw["why_it_matters"]),
                    theme=str(raw["theme"]),
                    estimated_minutes=max(1, int(raw["estimated_minutes"])),
                ))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed todo suggestion %r: %s", raw, e)
        return todos

    def current_state(self, days_analyzed: Optional[int] = None) -> CurrentState:
        """Snapshot of the last ``days_analyzed`` days ending today."""
        days = days_analyzed if days_analyzed is not None else self.config.default_days
        if not 1 <= days <= MAX_CURRENT_STATE_DAYS:
            raise ValueError(f"days_analyzed must be 1-{MAX_CURRENT_STATE_DAYS}, got {days}")
        today = self._today()
        analytics = self.store.list_analytics(today - timedelta(days=days - 1), today)
        if not analytics:
            return CurrentState(
                themes=[],
                mood=MoodState.neutral(),
                stressors=[],
                protective_factors=[],
                suggested_todos=[],
                analyzed_at=self._clock(),
                days_analyzed=days,
            )

        events = _all_events(analytics)
        mood = self._mood(analytics, today)
        themes = rank_topics(events, self.config.theme_count)
        stressors = rank_drivers(events, False, STATE_LIST_LIMIT)
        protective = rank_drivers(events, True, STATE_LIST_LIMIT)
        todos = self._suggest_todos({
            "days_analyzed": days,
            "mood": mood.to_dict(),
            "themes": themes,
            "stressors": stressors,
            "protective_factors": protective,
        })
        return CurrentState(
            themes=themes,
            mood=mood,
            stressors=stressors,
            protective_factors=protective,
            suggested_todos=todos,
            analyzed_at=self._clock(),
            days_analyzed=days,
            entry_count=len(analytics),
        )
