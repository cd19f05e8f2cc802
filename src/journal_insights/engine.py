"""Composition root wiring storage, providers and the analytics components."""

from __future__ import annotations

import logging
import time
from datetime import date
from typing import Any, Callable, Optional

from .aggregation import AggregationEngine
from .analyzer import BatchReport, PerEntryAnalyzer
from .chunker import EntryChunker
from .config import InsightsConfig
from .entries import DirectoryEntryStore, TextEntryStore
from .pipeline import EmbeddingPipeline, PipelineRun, ProgressCallback
from .providers import (
    EmbeddingProvider,
    HashingEmbeddingProvider,
    LexiconExtractionProvider,
    NarrativeProvider,
    OpenAIClient,
    OpenAIEmbeddingProvider,
    OpenAIExtractionProvider,
    OpenAINarrativeProvider,
    TextExtractionProvider,
)
from .retry import RetryPolicy
from .semantic_index import SemanticIndex
from .store import InsightsStore
from .tools import ToolDispatcher

logger = logging.getLogger(__name__)


def _openai_client(config: InsightsConfig) -> OpenAIClient:
    return OpenAIClient(
        api_key=config.openai.api_key(),
        api_base=config.openai.api_base,
        timeout=config.openai.timeout,
    )


def build_embedding_provider(
    config: InsightsConfig, client: Optional[OpenAIClient] = None
) -> EmbeddingProvider:
    kind = config.embedding.provider
    if kind == "openai":
        return OpenAIEmbeddingProvider(
            client or _openai_client(config), model=config.embedding.model,
            dimensions=config.embedding.dimensions,
        )
    if kind == "hashing":
        return HashingEmbeddingProvider(
            dimensions=config.embedding.dimensions or 256,
            max_batch_size=config.embedding.batch_size,
        )
    raise ValueError(f"Unknown embedding provider: {kind}")


def build_extraction_provider(
    config: InsightsConfig, client: Optional[OpenAIClient] = None
) -> TextExtractionProvider:
    kind = config.extraction.provider
    if kind == "openai":
        return OpenAIExtractionProvider(
            client or _openai_client(config), model=config.extraction.model
        )
    if kind == "lexicon":
        return LexiconExtractionProvider()
    raise ValueError(f"Unknown extraction provider: {kind}")


def build_narrative_provider(
    config: InsightsConfig, client: Optional[OpenAIClient] = None
) -> Optional[NarrativeProvider]:
    if not config.extraction.narrate or config.extraction.provider != "openai":
        return None
    return OpenAINarrativeProvider(
        client or _openai_client(config), model=config.extraction.narrative_model
    )


def _builds_openai(
    config: InsightsConfig,
    embedder: Optional[EmbeddingProvider],
    extractor: Optional[TextExtractionProvider],
    narrator: Optional[NarrativeProvider],
) -> bool:
    extraction_openai = config.extraction.provider == "openai"
    return (
        (embedder is None and config.embedding.provider == "openai")
        or (extractor is None and extraction_openai)
        or (narrator is None and extraction_openai and config.extraction.narrate)
    )


class InsightsEngine:
    """Owns one store and the components built on it.

    Every collaborator can be injected; anything left out is built from the
    config.
    """

    def __init__(
        self,
        config: InsightsConfig,
        store: Optional[InsightsStore] = None,
        entries: Optional[TextEntryStore] = None,
        embedder: Optional[EmbeddingProvider] = None,
        extractor: Optional[TextExtractionProvider] = None,
        narrator: Optional[NarrativeProvider] = None,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] = date.today,
    ):
        self.config = config
        self.store = store or InsightsStore(
            config.get_database_path(), lock_timeout=config.storage.lock_timeout
        )
        self.entries = entries or DirectoryEntryStore(config.get_entries_path())

        # one HTTP client shared by every OpenAI provider built here
        self.openai: Optional[OpenAIClient] = None
        if _builds_openai(config, embedder, extractor, narrator):
            self.openai = _openai_client(config)
        self.embedder = embedder or build_embedding_provider(config, self.openai)
        self.extractor = extractor or build_extraction_provider(config, self.openai)
        self.narrator = (
            narrator if narrator is not None else build_narrative_provider(config, self.openai)
        )

        self.chunker = EntryChunker(config.chunking)
        self.pipeline = EmbeddingPipeline(
            self.store, self.entries, self.embedder,
            chunker=self.chunker, config=config.embedding, sleep=sleep,
        )
        self.analyzer = PerEntryAnalyzer(
            self.store, self.entries, self.extractor, config=config.extraction, sleep=sleep,
        )
        self.index = SemanticIndex(
            self.store, self.embedder, RetryPolicy.from_config(config.embedding), sleep=sleep,
        )
        self.aggregation = AggregationEngine(
            self.store, config.aggregation, narrator=self.narrator, today=today,
        )
        self.dispatcher = ToolDispatcher(self.index, self.aggregation)

    def embed(self, background: bool = False, on_progress: Optional[ProgressCallback] = None) -> PipelineRun:
        """Chunk and embed everything pending."""
        if background:
            return self.pipeline.start(on_progress)
        return self.pipeline.run(on_progress)

    def analyze(self) -> BatchReport:
        """Analyse new and changed entries."""
        return self.analyzer.analyze_pending()

    def refresh(self) -> dict[str, Any]:
        """Embed, analyse, then rebuild stale summaries."""
        run = self.embed()
        report = self.analyze()
        regenerated = self.aggregation.regenerate_stale()
        return {
            "embedding": run.to_dict(),
            "analysis": report.to_dict(),
            "summaries": regenerated,
        }

    def stats(self) -> dict[str, Any]:
        stats = self.pipeline.stats()
        stats["analyzed_entries"] = self.store.get_stats()["analyzed_entries"]
        stats["project"] = self.config.project_name
        return stats

    def close(self) -> None:
        self.pipeline.cancel()
        self.pipeline.wait(timeout=5.0)
        self.store.close()
        if self.openai is not None:
            self.openai.close()
