"""Tests for semantic search."""

from datetime import date

import pytest

from journal_insights.chunker import EntryChunker
from journal_insights.errors import MalformedResponseError, TransientProviderError
from journal_insights.retry import RetryPolicy
from journal_insights.semantic_index import SemanticIndex, cosine_similarity

from conftest import CountingEmbeddingProvider, make_entry


def add_chunk(store, entry_id, day, vector, text=None):
    """Store a single embedded chunk and return its id."""
    entry = make_entry(entry_id, text or f"Entry {entry_id}.", day)
    chunks = EntryChunker().chunk(entry)
    store.replace_entry_chunks(entry_id, entry.fingerprint, chunks)
    store.set_embeddings({chunks[0].id: vector})
    return chunks[0].id


class TestCosineSimilarity:
    """Tests for the similarity function."""

    def test_identical_and_orthogonal(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 3.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        """Zero magnitude gives 0.0 instead of dividing by zero."""
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


class TestSearch:
    """Tests for vector search."""

    def test_ranks_by_similarity(self, store):
        """Hits come back best first with their scores."""
        add_chunk(store, "far", date(2026, 3, 1), [0.0, 1.0])
        add_chunk(store, "near", date(2026, 3, 1), [1.0, 1.0])
        add_chunk(store, "exact", date(2026, 3, 1), [1.0, 0.0])

        hits = SemanticIndex(store).search([1.0, 0.0], k=10)

        assert [h.chunk.entry_id for h in hits] == ["exact", "near", "far"]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[1].score == pytest.approx(0.7071, abs=1e-4)

    def test_k_limits_results(self, store):
        for i in range(5):
            add_chunk(store, f"e{i}", date(2026, 3, 1 + i), [1.0, float(i)])

        assert len(SemanticIndex(store).search([1.0, 0.0], k=2)) == 2

    def test_non_positive_k(self, store):
        """k of zero or less returns nothing."""
        add_chunk(store, "e1", date(2026, 3, 1), [1.0, 0.0])
        index = SemanticIndex(store)

        assert index.search([1.0, 0.0], k=0) == []
        assert index.search([1.0, 0.0], k=-3) == []

    def test_empty_store(self, store):
        assert SemanticIndex(store).search([1.0, 0.0], k=5) == []

    def test_ties_prefer_recent_then_id(self, store):
        """Equal scores order by newer date, then chunk id."""
        older = add_chunk(store, "older", date(2026, 1, 1), [2.0, 0.0])
        a = add_chunk(store, "a", date(2026, 2, 1), [1.0, 0.0])
        b = add_chunk(store, "b", date(2026, 2, 1), [3.0, 0.0])

        hits = SemanticIndex(store).search([1.0, 0.0], k=10)

        assert [h.chunk.id for h in hits] == sorted([a, b]) + [older]

    def test_skips_other_dimensions(self, store):
        """Vectors of a different length never take part."""
        add_chunk(store, "two", date(2026, 3, 1), [1.0, 0.0])
        add_chunk(store, "three", date(2026, 3, 1), [1.0, 0.0, 0.0])

        hits = SemanticIndex(store).search([1.0, 0.0, 0.0], k=10)

        assert [h.chunk.entry_id for h in hits] == ["three"]

    def test_date_range_inclusive(self, store):
        add_chunk(store, "jan", date(2026, 1, 31), [1.0, 0.0])
        add_chunk(store, "feb", date(2026, 2, 1), [1.0, 0.0])
        add_chunk(store, "mar", date(2026, 3, 1), [1.0, 0.0])
        index = SemanticIndex(store)

        hits = index.search([1.0, 0.0], k=10, date_range=(date(2026, 2, 1), date(2026, 3, 1)))
        assert {h.chunk.entry_id for h in hits} == {"feb", "mar"}

        hits = index.search([1.0, 0.0], k=10, date_range=(None, date(2026, 1, 31)))
        assert [h.chunk.entry_id for h in hits] == ["jan"]

    def test_min_score(self, store):
        add_chunk(store, "good", date(2026, 3, 1), [1.0, 0.1])
        add_chunk(store, "bad", date(2026, 3, 1), [0.0, 1.0])

        hits = SemanticIndex(store).search([1.0, 0.0], k=10, min_score=0.5)

        assert [h.chunk.entry_id for h in hits] == ["good"]

    def test_hit_to_dict_omits_vector(self, store):
        add_chunk(store, "e1", date(2026, 3, 1), [1.0, 0.0])
        data = SemanticIndex(store).search([1.0, 0.0], k=1)[0].to_dict()

        assert data["score"] == pytest.approx(1.0)
        assert data["chunk"]["entry_id"] == "e1"
        assert "embedding" not in data["chunk"]


class TestSearchText:
    """Tests for text queries."""

    def test_query_matches_its_own_text(self, store):
        """A query equal to a chunk's text ranks that chunk first."""
        provider = CountingEmbeddingProvider()
        texts = {
            "run": "Went for a long run by the river.",
            "work": "Long meeting about the quarterly budget.",
        }
        for entry_id, text in texts.items():
            add_chunk(store, entry_id, date(2026, 3, 1), provider.embed([text])[0], text=text)

        index = SemanticIndex(store, provider, RetryPolicy(backoff_base=0.0))
        hits = index.search_text("Went for a long run by the river.", k=1)

        assert [h.chunk.entry_id for h in hits] == ["run"]
        assert hits[0].score == pytest.approx(1.0)

    def test_requires_provider(self, store):
        with pytest.raises(RuntimeError):
            SemanticIndex(store).search_text("anything", k=3)

    def test_rejects_wrong_vector_count(self, store):
        """A provider returning no query vector is malformed."""
        class EmptyProvider(CountingEmbeddingProvider):
            def embed(self, texts):
                return []

        index = SemanticIndex(store, EmptyProvider())

        with pytest.raises(MalformedResponseError):
            index.search_text("query", k=3)

    def test_non_positive_k_skips_embedding(self, store):
        provider = CountingEmbeddingProvider()

        assert SemanticIndex(store, provider).search_text("query", k=0) == []
        assert provider.calls == []

    def test_query_retry_uses_injected_sleep(self, store, sleeps):
        """Transient query failures back off through the given sleep."""
        provider = CountingEmbeddingProvider()
        provider.errors = [TransientProviderError("blip"), TransientProviderError("blip")]
        add_chunk(store, "run", date(2026, 3, 1), provider._inner.embed(["river"])[0], text="river")

        index = SemanticIndex(store, provider, RetryPolicy(backoff_base=1.0), sleep=sleeps.append)
        hits = index.search_text("river", k=1)

        assert [h.chunk.entry_id for h in hits] == ["run"]
        assert sleeps == [1.0, 2.0]
        assert len(provider.calls) == 3
