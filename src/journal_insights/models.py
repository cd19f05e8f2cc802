"""Data models for entries, chunks, analytics, and summaries."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

# Namespace for ids that must be stable across re-analysis of the same entry
ANALYTICS_NAMESPACE = uuid.UUID("6f1c2a7e-3d4b-4e55-9a0f-0b8e2d7c9a11")


class Metric(Enum):
    """Time-series metric on a 0-100 scale."""
    HAPPINESS = "happiness"
    STRESS = "stress"
    ENERGY = "energy"


class Trend(Enum):
    """Direction of change between two comparable periods."""
    UP = "up"
    DOWN = "down"
    STABLE = "stable"

    @classmethod
    def classify(cls, current: float, previous: float, threshold: float = 5.0) -> "Trend":
        """Classify the change from previous to current.

        The comparison is strict: a change of exactly +/-threshold is stable.
        """
        change = current - previous
        if change > threshold:
            return cls.UP
        if change < -threshold:
            return cls.DOWN
        return cls.STABLE

    @property
    def description(self) -> str:
        return {"up": "improving", "down": "declining", "stable": "stable"}[self.value]


class RunState(Enum):
    """State of an embedding pipeline run."""
    IDLE = "idle"
    SCANNING = "scanning"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED)


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format datetime as ISO 8601 with timezone."""
    return dt.isoformat(timespec='milliseconds')


def parse_timestamp(s: str) -> datetime:
    """Parse ISO 8601 timestamp string."""
    return datetime.fromisoformat(s)


def parse_date(s: str) -> date:
    """Parse a YYYY-MM-DD date (a full ISO timestamp is accepted too)."""
    if len(s) > 10:
        return datetime.fromisoformat(s).date()
    return date.fromisoformat(s)


def content_fingerprint(text: str) -> str:
    """Fingerprint used to detect that an entry's text changed."""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"{len(text)}:{digest}"


def new_id() -> str:
    return uuid.uuid4().hex


def stable_id(*parts: str) -> str:
    """Deterministic id derived from the given parts."""
    return uuid.uuid5(ANALYTICS_NAMESPACE, "\x1f".join(parts)).hex


def _date_or_none(value: Optional[str]) -> Optional[date]:
    return parse_date(value) if value else None


@dataclass(frozen=True)
class SourceSpan:
    """Half-open character range into one entry's text."""
    entry_id: str
    start_char: int
    end_char: int

    def __post_init__(self) -> None:
        if not (0 <= self.start_char < self.end_char):
            raise ValueError(
                f"Invalid span [{self.start_char}, {self.end_char}) for entry {self.entry_id}"
            )

    def fits(self, text: str) -> bool:
        """True if the span lies within the given text."""
        return self.end_char <= len(text)

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "start_char": self.start_char,
            "end_char": self.end_char,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SourceSpan":
        return cls(data["entry_id"], int(data["start_char"]), int(data["end_char"]))


@dataclass(frozen=True)
class Entry:
    """Snapshot of a raw journal entry as read from the entry store."""
    id: str
    text: str
    date: date

    @property
    def fingerprint(self) -> str:
        return content_fingerprint(self.text)


@dataclass
class JournalChunk:
    """A bounded, span-tracked segment of an entry; the unit of semantic search."""
    id: str
    entry_id: str
    text: str
    span: SourceSpan
    date: date
    token_count: int
    embedding: Optional[list[float]] = None

    def to_dict(self, include_embedding: bool = False) -> dict:
        data = {
            "id": self.id,
            "entry_id": self.entry_id,
            "text": self.text,
            "span": self.span.to_dict(),
            "date": self.date.isoformat(),
            "token_count": self.token_count,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data


@dataclass(frozen=True)
class EmotionScores:
    """Emotion intensities, each in [0, 1]."""
    joy: float
    sadness: float
    anger: float
    anxiety: float
    gratitude: float

    @classmethod
    def neutral(cls) -> "EmotionScores":
        return cls(joy=0.5, sadness=0.5, anger=0.5, anxiety=0.5, gratitude=0.5)

    def to_dict(self) -> dict:
        return {
            "joy": self.joy,
            "sadness": self.sadness,
            "anger": self.anger,
            "anxiety": self.anxiety,
            "gratitude": self.gratitude,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EmotionScores":
        return cls(
            joy=float(data["joy"]),
            sadness=float(data["sadness"]),
            anger=float(data["anger"]),
            anxiety=float(data["anxiety"]),
            gratitude=float(data["gratitude"]),
        )


@dataclass
class DetectedEvent:
    """An event extracted from one entry."""
    id: str
    title: str
    description: str
    sentiment: float                     # -1 (negative) to 1 (positive)
    date: Optional[date] = None
    salience: Optional[float] = None     # 0-1 importance, when the provider reports it
    category: Optional[str] = None       # theme label (health, work, ...)
    spans: list[SourceSpan] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "sentiment": self.sentiment,
            "date": self.date.isoformat() if self.date else None,
            "salience": self.salience,
            "category": self.category,
            "spans": [s.to_dict() for s in self.spans],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DetectedEvent":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description") or "",
            sentiment=float(data["sentiment"]),
            date=_date_or_none(data.get("date")),
            salience=data.get("salience"),
            category=data.get("category"),
            spans=[SourceSpan.from_dict(s) for s in data.get("spans", [])],
        )


@dataclass
class EntryAnalytics:
    """Current analytics record for one entry (keyed by entry_id)."""
    id: str
    entry_id: str
    date: date
    happiness_score: float   # 0-100
    valence: float           # -1 to 1
    arousal: float           # 0 to 1
    emotions: EmotionScores
    events: list[DetectedEvent]
    confidence: float        # 0 to 1
    analyzed_at: datetime
    text_length: int = 0
    content_fingerprint: Optional[str] = None

    @property
    def full_span(self) -> Optional[SourceSpan]:
        """Span covering the whole analysed text."""
        if self.text_length <= 0:
            return None
        return SourceSpan(self.entry_id, 0, self.text_length)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "date": self.date.isoformat(),
            "happiness_score": self.happiness_score,
            "valence": self.valence,
            "arousal": self.arousal,
            "emotions": self.emotions.to_dict(),
            "events": [e.to_dict() for e in self.events],
            "confidence": self.confidence,
            "analyzed_at": format_timestamp(self.analyzed_at),
            "text_length": self.text_length,
            "content_fingerprint": self.content_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EntryAnalytics":
        return cls(
            id=data["id"],
            entry_id=data["entry_id"],
            date=parse_date(data["date"]),
            happiness_score=float(data["happiness_score"]),
            valence=float(data["valence"]),
            arousal=float(data["arousal"]),
            emotions=EmotionScores.from_dict(data["emotions"]),
            events=[DetectedEvent.from_dict(e) for e in data.get("events", [])],
            confidence=float(data["confidence"]),
            analyzed_at=parse_timestamp(data["analyzed_at"]),
            text_length=int(data.get("text_length", 0)),
            content_fingerprint=data.get("content_fingerprint"),
        )


@dataclass(frozen=True)
class ConfidenceInterval:
    """Symmetric interval around a mean; serialized with named bounds."""
    lower: float
    upper: float

    @classmethod
    def point(cls, value: float) -> "ConfidenceInterval":
        return cls(value, value)

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def to_dict(self) -> dict:
        return {"lower": self.lower, "upper": self.upper}

    @classmethod
    def from_dict(cls, data: dict) -> "ConfidenceInterval":
        return cls(lower=float(data["lower"]), upper=float(data["upper"]))


@dataclass
class MonthSummary:
    """Aggregated analytics for one calendar month."""
    year: int
    month: int
    summary_text: str
    key_topics: list[str]
    happiness_avg: float
    happiness_confidence_interval: ConfidenceInterval
    drivers_positive: list[str]
    drivers_negative: list[str]
    top_events: list[DetectedEvent]
    source_spans: list[SourceSpan]
    generated_at: datetime
    entry_count: int = 0
    days_with_data: int = 0
    happiness_trend: Trend = Trend.STABLE

    @property
    def period(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "month": self.month,
            "summary_text": self.summary_text,
            "key_topics": self.key_topics,
            "happiness_avg": self.happiness_avg,
            "happiness_confidence_interval": self.happiness_confidence_interval.to_dict(),
            "drivers_positive": self.drivers_positive,
            "drivers_negative": self.drivers_negative,
            "top_events": [e.to_dict() for e in self.top_events],
            "source_spans": [s.to_dict() for s in self.source_spans],
            "generated_at": format_timestamp(self.generated_at),
            "entry_count": self.entry_count,
            "days_with_data": self.days_with_data,
            "happiness_trend": self.happiness_trend.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MonthSummary":
        return cls(
            year=int(data["year"]),
            month=int(data["month"]),
            **_summary_fields(data),
        )


def _summary_fields(data: dict) -> dict:
    """Fields shared by month and year summaries, decoded from to_dict output."""
    return {
        "summary_text": data["summary_text"],
        "key_topics": list(data.get("key_topics", [])),
        "happiness_avg": float(data["happiness_avg"]),
        "happiness_confidence_interval": ConfidenceInterval.from_dict(
            data["happiness_confidence_interval"]
        ),
        "drivers_positive": list(data.get("drivers_positive", [])),
        "drivers_negative": list(data.get("drivers_negative", [])),
        "top_events": [DetectedEvent.from_dict(e) for e in data.get("top_events", [])],
        "source_spans": [SourceSpan.from_dict(s) for s in data.get("source_spans", [])],
        "generated_at": parse_timestamp(data["generated_at"]),
        "entry_count": int(data.get("entry_count", 0)),
        "days_with_data": int(data.get("days_with_data", 0)),
        "happiness_trend": Trend(data.get("happiness_trend", "stable")),
    }


@dataclass
class YearSummary:
    """Aggregated analytics for one calendar year."""
    year: int
    summary_text: str
    key_topics: list[str]
    happiness_avg: float
    happiness_confidence_interval: ConfidenceInterval
    drivers_positive: list[str]
    drivers_negative: list[str]
    top_events: list[DetectedEvent]
    source_spans: list[SourceSpan]
    generated_at: datetime
    entry_count: int = 0
    days_with_data: int = 0
    happiness_trend: Trend = Trend.STABLE
    months_covered: list[int] = field(default_factory=list)

    @property
    def period(self) -> str:
        return f"{self.year:04d}"

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "summary_text": self.summary_text,
            "key_topics": self.key_topics,
            "happiness_avg": self.happiness_avg,
            "happiness_confidence_interval": self.happiness_confidence_interval.to_dict(),
            "drivers_positive": self.drivers_positive,
            "drivers_negative": self.drivers_negative,
            "top_events": [e.to_dict() for e in self.top_events],
            "source_spans": [s.to_dict() for s in self.source_spans],
            "generated_at": format_timestamp(self.generated_at),
            "entry_count": self.entry_count,
            "days_with_data": self.days_with_data,
            "happiness_trend": self.happiness_trend.value,
            "months_covered": self.months_covered,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "YearSummary":
        return cls(
            year=int(data["year"]),
            months_covered=[int(m) for m in data.get("months_covered", [])],
            **_summary_fields(data),
        )


@dataclass(frozen=True)
class TimeSeriesDataPoint:
    """One day's value of a metric; a query result, never persisted."""
    date: date
    metric: Metric
    value: float
    confidence: float

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "metric": self.metric.value,
            "value": self.value,
            "confidence": self.confidence,
        }


def _level(value: float) -> str:
    if value > 70:
        return "high"
    if value > 40:
        return "moderate"
    return "low"


@dataclass(frozen=True)
class MoodState:
    """Current mood metrics (0-100) with their trends."""
    happiness: float
    stress: float
    energy: float
    happiness_trend: Trend = Trend.STABLE
    stress_trend: Trend = Trend.STABLE
    energy_trend: Trend = Trend.STABLE

    @classmethod
    def neutral(cls) -> "MoodState":
        return cls(happiness=50.0, stress=50.0, energy=50.0)

    def summary(self) -> str:
        return ", ".join([
            f"Happiness is {_level(self.happiness)} and {self.happiness_trend.description}",
            f"stress is {_level(self.stress)} and {self.stress_trend.description}",
            f"energy is {_level(self.energy)} and {self.energy_trend.description}",
        ])

    def to_dict(self) -> dict:
        return {
            "happiness": {"value": self.happiness, "trend": self.happiness_trend.value},
            "stress": {"value": self.stress, "trend": self.stress_trend.value},
            "energy": {"value": self.energy, "trend": self.energy_trend.value},
            "summary": self.summary(),
        }


@dataclass(frozen=True)
class SuggestedTodo:
    """An action item suggested from the current state."""
    title: str
    first_step: str
    why_it_matters: str
    theme: str
    estimated_minutes: int

    def time_estimate(self) -> str:
        if self.estimated_minutes < 60:
            return f"{self.estimated_minutes} min"
        hours, mins = divmod(self.estimated_minutes, 60)
        if mins == 0:
            return f"{hours} hr"
        return f"{hours} hr {mins} min"

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "first_step": self.first_step,
            "why_it_matters": self.why_it_matters,
            "theme": self.theme,
            "estimated_minutes": self.estimated_minutes,
            "time_estimate": self.time_estimate(),
        }


@dataclass
class CurrentState:
    """Snapshot of the most recent days; recomputed on demand."""
    themes: list[str]
    mood: MoodState
    stressors: list[str]
    protective_factors: list[str]
    suggested_todos: list[SuggestedTodo]
    analyzed_at: datetime
    days_analyzed: int
    entry_count: int = 0

    def todos_by_theme(self) -> dict[str, list[SuggestedTodo]]:
        grouped: dict[str, list[SuggestedTodo]] = {}
        for todo in self.suggested_todos:
            grouped.setdefault(todo.theme, []).append(todo)
        return grouped

    def summary(self) -> str:
        parts = [self.mood.summary()]
        if self.themes:
            parts.append(f"Main themes: {', '.join(self.themes[:3])}")
        if self.stressors:
            n = len(self.stressors)
            parts.append(f"{n} active stressor{'' if n == 1 else 's'}")
        if self.protective_factors:
            n = len(self.protective_factors)
            parts.append(f"{n} protective factor{'' if n == 1 else 's'}")
        return ". ".join(parts)

    def to_dict(self) -> dict:
        return {
            "themes": self.themes,
            "mood": self.mood.to_dict(),
            "stressors": self.stressors,
            "protective_factors": self.protective_factors,
            "suggested_todos": [t.to_dict() for t in self.suggested_todos],
            "analyzed_at": format_timestamp(self.analyzed_at),
            "days_analyzed": self.days_analyzed,
            "entry_count": self.entry_count,
        }


@dataclass(frozen=True)
class PipelineProgress:
    """Progress counters of an embedding run; they count attempted units."""
    processed_entries: int = 0
    total_entries: int = 0
    processed_chunks: int = 0
    total_chunks: int = 0
    embedded_chunks: int = 0
    failed_chunks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed_entries": self.processed_entries,
            "total_entries": self.total_entries,
            "processed_chunks": self.processed_chunks,
            "total_chunks": self.total_chunks,
            "embedded_chunks": self.embedded_chunks,
            "failed_chunks": self.failed_chunks,
        }
