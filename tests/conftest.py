"""Shared pytest fixtures for journal-insights tests."""

import tempfile
from collections import Counter
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from journal_insights.config import InsightsConfig
from journal_insights.entries import InMemoryEntryStore
from journal_insights.errors import InvalidInputError
from journal_insights.models import (
    DetectedEvent,
    EmotionScores,
    Entry,
    EntryAnalytics,
    SourceSpan,
    content_fingerprint,
    stable_id,
)
from journal_insights.providers import (
    EmbeddingProvider,
    HashingEmbeddingProvider,
    NarrativeProvider,
    TextExtractionProvider,
)
from journal_insights.store import InsightsStore


FIXED_NOW = datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)


class CountingEmbeddingProvider(EmbeddingProvider):
    """Hashing embeddings with call accounting and scripted failures.

    ``errors`` is a queue of exceptions raised by the next calls, one per
    call. A call whose batch contains a text listed in ``reject`` raises
    InvalidInputError. ``before_call`` runs before every call.
    """

    def __init__(self, dimensions: int = 32, max_batch_size: int = 64):
        self._inner = HashingEmbeddingProvider(dimensions=dimensions, max_batch_size=max_batch_size)
        self.calls: list[list[str]] = []
        self.embedded = Counter()
        self.errors: list[Exception] = []
        self.reject: set[str] = set()
        self.before_call: Optional[Callable[[list[str]], None]] = None

    @property
    def name(self) -> str:
        return "counting"

    @property
    def max_batch_size(self) -> int:
        return self._inner.max_batch_size

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.before_call is not None:
            self.before_call(texts)
        if self.errors:
            raise self.errors.pop(0)
        if any(t in self.reject for t in texts):
            raise InvalidInputError("rejected text in batch")
        self.embedded.update(texts)
        return self._inner.embed(texts)


class FakeNarrator(NarrativeProvider):
    """Narrator returning canned text, or raising a scripted error."""

    def __init__(self, text="Narrated.", todos=None, error=None):
        self.text = text
        self.todos = todos or []
        self.error = error
        self.contexts = []

    def _answer(self, context, value):
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return value

    def narrate_month(self, context):
        return self._answer(context, self.text)

    def narrate_year(self, context):
        return self._answer(context, self.text)

    def suggest_todos(self, context):
        return self._answer(context, self.todos)


def extraction_payload(**overrides: Any) -> dict[str, Any]:
    payload = {
        "happiness": 70,
        "valence": 0.4,
        "arousal": 0.5,
        "joy": 0.6,
        "sadness": 0.1,
        "anger": 0.05,
        "anxiety": 0.2,
        "gratitude": 0.3,
        "confidence": 0.8,
        "events": [],
    }
    payload.update(overrides)
    return payload


class ScriptedExtractionProvider(TextExtractionProvider):
    """Returns a payload per text (or the default one) and counts calls."""

    def __init__(self, default: Optional[dict[str, Any]] = None):
        self.default = default if default is not None else extraction_payload()
        self.by_text: dict[str, Any] = {}
        self.errors: list[Exception] = []
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return "scripted"

    def extract(self, text: str) -> dict[str, Any]:
        self.calls.append(text)
        if self.errors:
            raise self.errors.pop(0)
        result = self.by_text.get(text, self.default)
        if isinstance(result, Exception):
            raise result
        return result


def make_entry(entry_id: str, text: str, day: date = date(2026, 3, 1)) -> Entry:
    return Entry(id=entry_id, text=text, date=day)


def make_event(
    title: str,
    sentiment: float,
    day: Optional[date] = None,
    salience: Optional[float] = None,
    category: Optional[str] = None,
    entry_id: str = "e",
    spans: Optional[list[SourceSpan]] = None,
) -> DetectedEvent:
    return DetectedEvent(
        id=stable_id(entry_id, "event", title.lower()),
        title=title,
        description="",
        sentiment=sentiment,
        date=day,
        salience=salience,
        category=category,
        spans=spans or [],
    )


def make_analytics(
    entry_id: str,
    day: date,
    happiness: float = 50.0,
    events: Optional[list[DetectedEvent]] = None,
    emotions: Optional[EmotionScores] = None,
    arousal: float = 0.5,
    confidence: float = 0.8,
    text: str = "journal text",
) -> EntryAnalytics:
    return EntryAnalytics(
        id=stable_id(entry_id, "analytics"),
        entry_id=entry_id,
        date=day,
        happiness_score=happiness,
        valence=0.0,
        arousal=arousal,
        emotions=emotions or EmotionScores.neutral(),
        events=events or [],
        confidence=confidence,
        analyzed_at=FIXED_NOW,
        text_length=len(text),
        content_fingerprint=content_fingerprint(text),
    )


@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_project):
    """Create a test configuration using the offline providers."""
    cfg = InsightsConfig(
        project_name="test-project",
        project_root=temp_project,
    )
    cfg.embedding.provider = "hashing"
    cfg.extraction.provider = "lexicon"
    cfg.embedding.backoff_base = 0.0
    cfg.extraction.backoff_base = 0.0
    return cfg


@pytest.fixture
def store(config):
    """Create a store with proper cleanup."""
    s = InsightsStore(config.get_database_path())
    yield s
    s.close()


@pytest.fixture
def entries():
    return InMemoryEntryStore()


@pytest.fixture
def embedder():
    return CountingEmbeddingProvider()


@pytest.fixture
def extractor():
    return ScriptedExtractionProvider()


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []
