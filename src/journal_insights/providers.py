"""External model providers: embeddings, per-entry extraction, narratives.

The OpenAI-compatible clients talk plain REST through httpx. The hashing and
lexicon providers are deterministic, offline stand-ins with the same
interfaces; they back the test-suite and keyless local runs.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from .errors import (
    InvalidInputError,
    MalformedResponseError,
    ProviderError,
    RateLimitedError,
    TransientProviderError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Turns texts into fixed-length vectors."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def max_batch_size(self) -> int:
        """Largest number of texts accepted by one embed() call."""
        ...

    @abstractmethod
    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts; the result is index-aligned with the input.

        Raises:
            RateLimitedError, TransientProviderError: retryable failures
            InvalidInputError: the payload was rejected
            UnauthorizedError: credentials missing or rejected
            MalformedResponseError: response did not match the request
        """
        ...


class TextExtractionProvider(ABC):
    """Extracts emotion scores and events from one entry's text."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def extract(self, text: str) -> dict[str, Any]:
        """Return the raw extraction payload.

        Expected keys: happiness (optional), valence, arousal, joy, sadness,
        anger, anxiety, gratitude, confidence, and events, a list of objects
        with title, description, sentiment (number or label) and optionally
        evidence, salience and category. Values are validated by the caller.
        """
        ...


class NarrativeProvider(ABC):
    """Writes narrative text and suggestions from aggregated context."""

    @abstractmethod
    def narrate_month(self, context: dict[str, Any]) -> str:
        ...

    @abstractmethod
    def narrate_year(self, context: dict[str, Any]) -> str:
        ...

    @abstractmethod
    def suggest_todos(self, context: dict[str, Any]) -> list[dict[str, Any]]:
        """Suggested actions as dicts with title, first_step, why_it_matters,
        theme and estimated_minutes."""
        ...


# -----------------------------------------------------------------------------
# OpenAI-compatible REST clients
# -----------------------------------------------------------------------------


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return str(data["error"].get("message", data["error"]))
    return str(data)[:200]


class OpenAIClient:
    """Minimal JSON-over-HTTP client mapping failures onto provider errors."""

    def __init__(
        self,
        api_key: Optional[str],
        api_base: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise UnauthorizedError("No API key configured")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self._client.post(f"{self.api_base}{path}", headers=headers, json=body)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Timeout calling {path}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Connection error calling {path}: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimitedError(
                f"Rate limited: {_error_message(response)}", retry_after=_retry_after(response)
            )
        if status in (401, 403):
            raise UnauthorizedError(f"HTTP {status}: {_error_message(response)}")
        if status in (400, 422):
            raise InvalidInputError(f"HTTP {status}: {_error_message(response)}")
        if status >= 500:
            raise TransientProviderError(f"HTTP {status}: {_error_message(response)}")
        if status >= 400:
            raise ProviderError(f"HTTP {status}: {_error_message(response)}")

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Response from {path} is not JSON") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Response from {path} is not a JSON object")
        return data

    def chat_content(self, body: dict[str, Any]) -> str:
        """POST a chat completion and return the first choice's message text."""
        data = self.post("/chat/completions", body)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError("Chat completion has no message content") from e
        if not isinstance(content, str):
            raise MalformedResponseError("Chat completion content is not text")
        return content


def _parse_json_object(content: str) -> dict[str, Any]:
    try:
        data = json.loads(content)
    except ValueError as e:
        raise MalformedResponseError("Model output is not valid JSON") from e
    if not isinstance(data, dict):
        raise MalformedResponseError("Model output is not a JSON object")
    return data


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings through the /embeddings endpoint."""

    MAX_BATCH = 2048

    def __init__(
        self,
        client: OpenAIClient,
        model: str = "text-embedding-3-large",
        dimensions: Optional[int] = None,
    ):
        self.client = client
        self.model = model
        self.dimensions = dimensions

    @property
    def name(self) -> str:
        return f"openai:{self.model}"

    @property
    def max_batch_size(self) -> int:
        return self.MAX_BATCH

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        body: dict[str, Any] = {"model": self.model, "input": texts}
        if self.dimensions is not None:
            body["dimensions"] = self.dimensions
        data = self.client.post("/embeddings", body)

        items = data.get("data")
        if not isinstance(items, list) or len(items) != len(texts):
            raise MalformedResponseError(
                f"Expected {len(texts)} embeddings, got "
                f"{len(items) if isinstance(items, list) else 'none'}"
            )
        try:
            ordered = sorted(items, key=lambda item: item["index"])
            vectors = [[float(x) for x in item["embedding"]] for item in ordered]
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError("Embedding item is missing index or vector") from e
        if any(not v for v in vectors):
            raise MalformedResponseError("Empty embedding vector")
        return vectors


EXTRACTION_SYSTEM_PROMPT = """\
You are an emotional intelligence analyst reading one personal journal entry.

Return JSON with:
- happiness: overall well-being 0-100
- valence: emotional positivity from -1 to 1
- arousal: activation from 0 (calm) to 1 (excited)
- joy, sadness, anger, anxiety, gratitude: intensities from 0 to 1
- events: significant concrete events, each with title (3-8 words),
  description, sentiment ("positive", "negative" or "neutral"),
  salience (0-1), category (one word such as work, health, family) and
  evidence (a short exact quote from the entry)
- confidence: 0-1, lower when the text is vague or very short
"""

_EVENT_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "sentiment": {"type": "string", "enum": ["positive", "negative", "neutral"]},
        "salience": {"type": "number"},
        "category": {"type": "string"},
        "evidence": {"type": "string"},
    },
    "required": ["title", "description", "sentiment", "salience", "category", "evidence"],
    "additionalProperties": False,
}

EXTRACTION_SCHEMA = {
    "name": "entry_analytics",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            **{
                key: {"type": "number"}
                for key in (
                    "happiness", "valence", "arousal", "joy", "sadness",
                    "anger", "anxiety", "gratitude", "confidence",
                )
            },
            "events": {"type": "array", "items": _EVENT_SCHEMA},
        },
        "required": [
            "happiness", "valence", "arousal", "joy", "sadness", "anger",
            "anxiety", "gratitude", "events", "confidence",
        ],
        "additionalProperties": False,
    },
}


class OpenAIExtractionProvider(TextExtractionProvider):
    """Structured-output chat completion returning the extraction payload."""

    def __init__(self, client: OpenAIClient, model: str = "gpt-4o-mini"):
        self.client = client
        self.model = model

    @property
    def name(self) -> str:
        return f"openai:{self.model}"

    def extract(self, text: str) -> dict[str, Any]:
        content = self.client.chat_content({
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                {"role": "user", "content": f"Analyze this journal entry text:\n\n{text}"},
            ],
            "response_format": {"type": "json_schema", "json_schema": EXTRACTION_SCHEMA},
        })
        return _parse_json_object(content)


NARRATIVE_SYSTEM_PROMPT = """\
You write short, warm, factual reflections on a person's journal analytics.
Only use the facts in the provided JSON context. Address the writer as "you".
"""


class OpenAINarrativeProvider(NarrativeProvider):
    """Narratives and suggested actions from a chat model."""

    def __init__(self, client: OpenAIClient, model: str = "gpt-4o"):
        self.client = client
        self.model = model

    def _complete(self, instruction: str, context: dict[str, Any], as_json: bool = False) -> str:
        body: dict[str, Any] = {
            "model": self.model,
            "temperature": 0.3,
            "messages": [
                {"role": "system", "content": NARRATIVE_SYSTEM_PROMPT},
                {"role": "user", "content": f"{instruction}\n\n{json.dumps(context, default=str)}"},
            ],
        }
        if as_json:
            body["response_format"] = {"type": "json_object"}
        return self.client.chat_content(body)

    def narrate_month(self, context: dict[str, Any]) -> str:
        return self._complete("Summarize this month in 3-5 sentences.", context).strip()

    def narrate_year(self, context: dict[str, Any]) -> str:
        return self._complete("Summarize this year in one paragraph.", context).strip()

    def suggest_todos(self, context: dict[str, Any]) -> list[dict[str, Any]]:
        content = self._complete(
            'Suggest up to 5 small, concrete actions. Reply as {"todos": [{"title", '
            '"first_step", "why_it_matters", "theme", "estimated_minutes"}]}.',
            context,
            as_json=True,
        )
        todos = _parse_json_object(content).get("todos")
        if not isinstance(todos, list):
            raise MalformedResponseError("Narrative response has no todos list")
        return todos


# -----------------------------------------------------------------------------
# Deterministic offline providers
# -----------------------------------------------------------------------------

_TOKEN = re.compile(r"[a-z0-9']+")


def tokenize(text: str) -> list[str]:
    return _TOKEN.findall(text.lower())


class HashingEmbeddingProvider(EmbeddingProvider):
    """Bag-of-words feature hashing into a unit vector.

    Texts sharing words get a positive cosine similarity, which is enough for
    keyless local search and for tests.
    """

    def __init__(self, dimensions: int = 256, max_batch_size: int = 64):
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self.dimensions = dimensions
        self._max_batch_size = max_batch_size

    @property
    def name(self) -> str:
        return f"hashing:{self.dimensions}"

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    def _embed_one(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in tokenize(text):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = math.sqrt(sum(x * x for x in vector))
        if norm == 0:
            return vector
        return [x / norm for x in vector]

    def embed(self, texts: list[str]) -> list[list[float]]:
        if len(texts) > self.max_batch_size:
            raise InvalidInputError(
                f"Batch of {len(texts)} exceeds max_batch_size {self.max_batch_size}"
            )
        return [self._embed_one(t) for t in texts]


LEXICON: dict[str, frozenset[str]] = {
    "joy": frozenset({
        "happy", "joy", "great", "wonderful", "fun", "excited", "love", "loved",
        "amazing", "laughed", "good", "enjoyed", "delighted", "proud",
    }),
    "sadness": frozenset({
        "sad", "lonely", "cried", "miss", "missed", "down", "tired", "lost",
        "grief", "empty", "disappointed", "hurt",
    }),
    "anger": frozenset({
        "angry", "furious", "annoyed", "frustrated", "mad", "irritated", "hate",
        "unfair", "argued", "argument",
    }),
    "anxiety": frozenset({
        "anxious", "worried", "worry", "nervous", "stressed", "stress", "panic",
        "afraid", "scared", "deadline", "overwhelmed", "uneasy",
    }),
    "gratitude": frozenset({
        "grateful", "thankful", "thanks", "appreciate", "appreciated", "blessed",
        "lucky", "gratitude",
    }),
}

CALM_WORDS = frozenset({"calm", "quiet", "rested", "slept", "relaxed", "peaceful", "slow"})

CATEGORIES: dict[str, frozenset[str]] = {
    "work": frozenset({"work", "job", "boss", "meeting", "project", "deadline", "office", "client"}),
    "health": frozenset({"run", "gym", "doctor", "sick", "sleep", "slept", "walk", "workout", "yoga"}),
    "family": frozenset({"mom", "dad", "mother", "father", "sister", "brother", "family", "kids"}),
    "friends": frozenset({"friend", "friends", "party", "dinner", "coffee"}),
    "relationship": frozenset({"partner", "date", "wife", "husband", "girlfriend", "boyfriend"}),
}

_SENTENCE = re.compile(r"[^.!?\n]+[.!?]?")


class LexiconExtractionProvider(TextExtractionProvider):
    """Word-list extraction. Omits ``happiness`` so it is derived from the
    emotion scores."""

    @property
    def name(self) -> str:
        return "lexicon"

    def _emotions(self, tokens: list[str]) -> dict[str, float]:
        scores = {}
        for emotion, words in LEXICON.items():
            hits = sum(1 for t in tokens if t in words)
            scores[emotion] = min(1.0, hits / 3.0)
        return scores

    def _events(self, text: str) -> list[dict[str, Any]]:
        events = []
        for match in _SENTENCE.finditer(text):
            sentence = match.group(0).strip()
            tokens = tokenize(sentence)
            if len(tokens) < 3:
                continue
            positive = sum(1 for t in tokens if t in LEXICON["joy"] or t in LEXICON["gratitude"])
            negative = sum(
                1 for t in tokens
                if t in LEXICON["sadness"] or t in LEXICON["anger"] or t in LEXICON["anxiety"]
            )
            if positive == negative == 0:
                continue
            if positive > negative:
                sentiment = "positive"
            elif negative > positive:
                sentiment = "negative"
            else:
                sentiment = "neutral"
            category = next(
                (name for name, words in CATEGORIES.items() if any(t in words for t in tokens)),
                None,
            )
            events.append({
                "title": " ".join(sentence.rstrip(".!?").split()[:8]),
                "description": sentence,
                "sentiment": sentiment,
                "salience": min(1.0, (positive + negative) / 3.0),
                "category": category,
                "evidence": sentence,
            })
        return events

    def extract(self, text: str) -> dict[str, Any]:
        tokens = tokenize(text)
        emotions = self._emotions(tokens)
        positive = emotions["joy"] + emotions["gratitude"]
        negative = emotions["sadness"] + emotions["anger"] + emotions["anxiety"]
        total = positive + negative
        valence = (positive - negative) / total if total else 0.0
        calm = sum(1 for t in tokens if t in CALM_WORDS)
        arousal = min(1.0, max(0.0, 0.5 + 0.15 * (emotions["joy"] * 3 + emotions["anger"] * 3
                                                    + emotions["anxiety"] * 3 - calm)))
        hits = sum(1 for t in tokens if any(t in words for words in LEXICON.values()))
        return {
            "valence": valence,
            "arousal": arousal,
            **emotions,
            "events": self._events(text),
            "confidence": min(1.0, 0.3 + 0.1 * hits) if tokens else 0.0,
        }
