"""Per-entry analysis: provider extraction, validation and normalisation."""

from __future__ import annotations

import logging
import math
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .config import ExtractionConfig
from .entries import TextEntryStore
from .errors import (
    InsightsError,
    MalformedResponseError,
    StorageError,
    UnauthorizedError,
    ValidationError,
)
from .models import (
    DetectedEvent,
    EmotionScores,
    Entry,
    EntryAnalytics,
    SourceSpan,
    stable_id,
    utc_now,
)
from .providers import TextExtractionProvider
from .retry import RetryPolicy, call_with_retry
from .store import InsightsStore

logger = logging.getLogger(__name__)

SENTIMENT_LABELS = {"positive": 0.5, "negative": -0.5, "neutral": 0.0}

EMOTION_KEYS = ("joy", "sadness", "anger", "anxiety", "gratitude")


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def happiness_from_components(
    valence: float,
    emotions: EmotionScores,
    positive_event_density: float = 0.0,
) -> float:
    """Happiness index used when the provider does not report one."""
    happiness = (
        50.0
        + 30.0 * valence
        + 10.0 * emotions.gratitude
        + 8.0 * positive_event_density
        - 12.0 * emotions.anxiety
        - 10.0 * emotions.sadness
        - 8.0 * emotions.anger
    )
    return clamp(happiness, 0.0, 100.0)


def _number(data: dict[str, Any], key: str, where: str = "response") -> float:
    """Read a required finite number."""
    if key not in data or data[key] is None:
        raise MalformedResponseError(f"Missing field {key!r} in {where}")
    return _as_number(data[key], key, where)


def _as_number(value: Any, key: str, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedResponseError(f"Field {key!r} in {where} is not a number: {value!r}")
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError(f"Field {key!r} in {where} is not finite")
    return value


def _optional_str(value: Any, key: str, where: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedResponseError(f"Field {key!r} in {where} is not a string")
    return value.strip() or None


def _sentiment(value: Any, where: str) -> float:
    if isinstance(value, str):
        label = value.strip().lower()
        if label not in SENTIMENT_LABELS:
            raise MalformedResponseError(f"Unknown sentiment label {value!r} in {where}")
        return SENTIMENT_LABELS[label]
    if value is None:
        raise MalformedResponseError(f"Missing field 'sentiment' in {where}")
    return clamp(_as_number(value, "sentiment", where), -1.0, 1.0)


def _evidence_span(entry: Entry, evidence: Optional[str]) -> Optional[SourceSpan]:
    """Locate a quoted passage in the entry text (exact, then case-insensitive)."""
    if not evidence:
        return None
    idx = entry.text.find(evidence)
    if idx != -1:
        return SourceSpan(entry.id, idx, idx + len(evidence))
    # offsets must index the original text, so no lower() copies
    match = re.search(re.escape(evidence), entry.text, re.IGNORECASE)
    if match is None or match.start() == match.end():
        return None
    return SourceSpan(entry.id, match.start(), match.end())


def _parse_event(entry: Entry, raw: Any, index: int) -> DetectedEvent:
    where = f"event {index}"
    if not isinstance(raw, dict):
        raise MalformedResponseError(f"{where} is not an object")
    title = _optional_str(raw.get("title"), "title", where)
    if not title:
        raise MalformedResponseError(f"Missing field 'title' in {where}")

    salience = raw.get("salience")
    if salience is not None:
        salience = clamp(_as_number(salience, "salience", where), 0.0, 1.0)

    category = _optional_str(raw.get("category"), "category", where)
    span = _evidence_span(entry, _optional_str(raw.get("evidence"), "evidence", where))

    return DetectedEvent(
        id=stable_id(entry.id, "event", title.lower()),
        title=title,
        description=_optional_str(raw.get("description"), "description", where) or "",
        sentiment=_sentiment(raw.get("sentiment"), where),
        date=entry.date,
        salience=salience,
        category=category.lower() if category else None,
        spans=[span] if span else [],
    )


def merge_events(events: Iterable[DetectedEvent]) -> list[DetectedEvent]:
    """Merge events sharing a title (case-insensitive), keeping first-seen order.

    Sentiment is averaged, salience takes the maximum, spans are combined.
    """
    groups: dict[str, list[DetectedEvent]] = {}
    for event in events:
        groups.setdefault(event.title.lower(), []).append(event)

    merged = []
    for group in groups.values():
        first = group[0]
        if len(group) == 1:
            merged.append(first)
            continue
        saliences = [e.salience for e in group if e.salience is not None]
        spans: list[SourceSpan] = []
        for e in group:
            for span in e.spans:
                if span not in spans:
                    spans.append(span)
        merged.append(DetectedEvent(
            id=first.id,
            title=first.title,
            description=next((e.description for e in group if e.description), ""),
            sentiment=sum(e.sentiment for e in group) / len(group),
            date=first.date,
            salience=max(saliences) if saliences else None,
            category=next((e.category for e in group if e.category), None),
            spans=spans,
        ))
    return merged


def build_analytics(entry: Entry, raw: Any, analyzed_at: datetime) -> EntryAnalytics:
    """Validate a raw extraction payload and turn it into EntryAnalytics.

    Out-of-range scores are clamped. Confidence is the exception: a value
    outside [0, 1] means the provider output cannot be trusted.

    Raises:
        MalformedResponseError: a field is missing or has the wrong type
        ValidationError: non-finite number or confidence out of range
    """
    if not isinstance(raw, dict):
        raise MalformedResponseError("Extraction payload is not an object")

    confidence = _number(raw, "confidence")
    if not (0.0 <= confidence <= 1.0):
        raise ValidationError(f"Confidence {confidence} outside [0, 1]")

    valence = clamp(_number(raw, "valence"), -1.0, 1.0)
    arousal = clamp(_number(raw, "arousal"), 0.0, 1.0)
    emotions = EmotionScores(**{key: clamp(_number(raw, key), 0.0, 1.0) for key in EMOTION_KEYS})

    raw_events = raw.get("events")
    if raw_events is None:
        raise MalformedResponseError("Missing field 'events' in response")
    if not isinstance(raw_events, list):
        raise MalformedResponseError("Field 'events' is not a list")
    events = merge_events(_parse_event(entry, e, i) for i, e in enumerate(raw_events))

    if raw.get("happiness") is None:
        positive = sum(1 for e in events if e.sentiment > 0)
        density = positive / len(events) if events else 0.0
        happiness = happiness_from_components(valence, emotions, density)
    else:
        happiness = clamp(_number(raw, "happiness"), 0.0, 100.0)

    return EntryAnalytics(
        id=stable_id(entry.id, "analytics"),
        entry_id=entry.id,
        date=entry.date,
        happiness_score=happiness,
        valence=valence,
        arousal=arousal,
        emotions=emotions,
        events=events,
        confidence=confidence,
        analyzed_at=analyzed_at,
        text_length=len(entry.text),
        content_fingerprint=entry.fingerprint,
    )


@dataclass
class BatchReport:
    """Outcome of a batch analysis; one bucket per entry."""
    analyzed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)     # entry_id -> error
    skipped: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.analyzed) + len(self.failed) + len(self.skipped)

    def to_dict(self) -> dict[str, Any]:
        return {
            "analyzed": self.analyzed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class PerEntryAnalyzer:
    """Turns entries into stored EntryAnalytics records."""

    def __init__(
        self,
        store: InsightsStore,
        entries: TextEntryStore,
        provider: TextExtractionProvider,
        config: Optional[ExtractionConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.entries = entries
        self.provider = provider
        self.config = config or ExtractionConfig()
        self.retry_policy = RetryPolicy.from_config(self.config)
        self._sleep = sleep
        self._clock = clock
        self._batch_lock = threading.Lock()
        self._cancel_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._batch_lock.locked()

    def analyze(self, entry: Entry) -> EntryAnalytics:
        """Analyse one entry and overwrite its stored analytics."""
        if not entry.text.strip():
            raise ValidationError(f"Entry {entry.id} has no text to analyse")
        raw = call_with_retry(
            lambda: self.provider.extract(entry.text),
            self.retry_policy,
            sleep=self._sleep,
        )
        analytics = build_analytics(entry, raw, self._clock())
        self.store.save_analytics(analytics)
        return analytics

    def cancel(self) -> None:
        """Stop the running batch before its next entry."""
        self._cancel_event.set()

    def analyze_many(self, entries: Iterable[Entry]) -> BatchReport:
        """Analyse entries one by one, isolating failures per entry.

        Only one batch runs at a time; a call made while another batch is in
        flight analyses nothing and reports every entry as skipped.
        Unauthorized and storage errors end the batch; the entries not yet
        reached are reported as skipped.
        """
        entries = list(entries)
        report = BatchReport()
        if not self._batch_lock.acquire(blocking=False):
            logger.warning("Analysis already running; skipping %d entries", len(entries))
            report.skipped = [e.id for e in entries]
            return report

        self._cancel_event.clear()
        try:
            for index, entry in enumerate(entries):
                if self._cancel_event.is_set():
                    logger.info("Analysis cancelled; %d entries left", len(entries) - index)
                    report.skipped.extend(rest.id for rest in entries[index:])
                    break
                if not entry.text.strip():
                    report.skipped.append(entry.id)
                    continue
                try:
                    self.analyze(entry)
                except (UnauthorizedError, StorageError) as e:
                    logger.error("Analysis stopped at entry %s: %s", entry.id, e)
                    report.failed[entry.id] = str(e)
                    report.skipped.extend(rest.id for rest in entries[index + 1:])
                    break
                except InsightsError as e:
                    logger.warning("Analysis of entry %s failed: %s", entry.id, e)
                    report.failed[entry.id] = str(e)
                else:
                    report.analyzed.append(entry.id)
        finally:
            self._batch_lock.release()

        logger.info(
            "Analysis batch: %d analyzed, %d failed, %d skipped",
            len(report.analyzed), len(report.failed), len(report.skipped),
        )
        return report

    def pending_entries(self) -> list[Entry]:
        """Entries with no analytics or analytics of different text."""
        stored = self.store.get_analytics_fingerprints()
        return [e for e in self.entries.list_entries() if stored.get(e.id) != e.fingerprint]

    def analyze_pending(self) -> BatchReport:
        """Remove analytics of deleted entries, then analyse new or changed ones."""
        present = {e.id for e in self.entries.list_entries()}
        for entry_id in sorted(set(self.store.get_analytics_fingerprints()) - present):
            self.store.delete_entry(entry_id)
        return self.analyze_many(self.pending_entries())
