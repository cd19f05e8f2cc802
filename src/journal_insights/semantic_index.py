"""Exact cosine-similarity search over embedded chunks."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional, Sequence

from .errors import MalformedResponseError
from .models import JournalChunk
from .providers import EmbeddingProvider
from .retry import RetryPolicy, call_with_retry
from .store import InsightsStore


@dataclass(frozen=True)
class SearchHit:
    chunk: JournalChunk
    score: float

    def to_dict(self) -> dict:
        return {"chunk": self.chunk.to_dict(), "score": self.score}


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between a and b; 0.0 if either has zero magnitude."""
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


class SemanticIndex:
    """Ranks stored chunks against a query vector.

    Only chunks whose vector has the query's dimension take part, so vectors
    from a previous embedding model never mix with the current ones.
    """

    def __init__(
        self,
        store: InsightsStore,
        provider: Optional[EmbeddingProvider] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    def search(
        self,
        query_embedding: Sequence[float],
        k: int,
        date_range: Optional[tuple[Optional[date], Optional[date]]] = None,
        min_score: Optional[float] = None,
    ) -> list[SearchHit]:
        """Top-k chunks by cosine similarity.

        Ties are broken by more recent date, then by chunk id. date_range is
        inclusive on both ends; either end may be None.
        """
        if k <= 0 or not query_embedding:
            return []
        date_from, date_to = date_range if date_range is not None else (None, None)
        candidates = self.store.embedded_chunks(
            dimensions=len(query_embedding), date_from=date_from, date_to=date_to
        )

        hits = []
        for chunk in candidates:
            score = cosine_similarity(query_embedding, chunk.embedding)
            if min_score is not None and score < min_score:
                continue
            hits.append(SearchHit(chunk, score))

        # id ascending is the last key, so sort by it first (sorts are stable)
        hits.sort(key=lambda h: h.chunk.id)
        hits.sort(key=lambda h: (h.score, h.chunk.date), reverse=True)
        return hits[:k]

    def search_text(
        self,
        query: str,
        k: int,
        date_range: Optional[tuple[Optional[date], Optional[date]]] = None,
        min_score: Optional[float] = None,
    ) -> list[SearchHit]:
        """Embed the query with the index's provider, then search."""
        if self.provider is None:
            raise RuntimeError("SemanticIndex has no embedding provider")
        if k <= 0:
            return []
        vectors = call_with_retry(
            lambda: self.provider.embed([query]), self.retry_policy, sleep=self.sleep
        )
        if len(vectors) != 1:
            raise MalformedResponseError(f"Expected 1 query vector, got {len(vectors)}")
        return self.search(vectors[0], k, date_range=date_range, min_score=min_score)
