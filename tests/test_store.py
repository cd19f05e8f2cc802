"""Tests for the SQLite store."""

import threading
from datetime import date

import portalocker
import pytest

from journal_insights.chunker import EntryChunker
from journal_insights.errors import StorageError
from journal_insights.locking import WriterLock
from journal_insights.models import ConfidenceInterval, MonthSummary, Trend, YearSummary
from journal_insights.store import InsightsStore

from conftest import FIXED_NOW, make_analytics, make_entry, make_event


def month_summary(year=2026, month=3, avg=60.0):
    return MonthSummary(
        year=year,
        month=month,
        summary_text="A month.",
        key_topics=["work"],
        happiness_avg=avg,
        happiness_confidence_interval=ConfidenceInterval(avg - 5, avg + 5),
        drivers_positive=["Good run"],
        drivers_negative=[],
        top_events=[make_event("Good run", 0.5, date(year, month, 2))],
        source_spans=[],
        generated_at=FIXED_NOW,
        entry_count=3,
        days_with_data=2,
        happiness_trend=Trend.UP,
    )


class TestSchema:
    """Tests for schema creation."""

    def test_creates_database(self, config):
        """Opening a store creates the database and its directory."""
        s = InsightsStore(config.get_database_path())
        try:
            assert config.get_database_path().exists()
            assert s.get_stats()["total_chunks"] == 0
        finally:
            s.close()

    def test_reopen_keeps_data(self, config):
        """Data survives closing and reopening the store."""
        s = InsightsStore(config.get_database_path())
        s.save_analytics(make_analytics("e1", date(2026, 3, 1)))
        s.close()

        s = InsightsStore(config.get_database_path())
        try:
            assert s.get_analytics("e1") is not None
        finally:
            s.close()


class TestChunks:
    """Tests for chunk persistence."""

    def test_replace_and_list(self, store):
        """Stored chunks round-trip with spans and dates."""
        entry = make_entry("e1", "Morning walk. " * 10, date(2026, 3, 5))
        chunks = EntryChunker().chunk(entry)
        store.replace_entry_chunks("e1", entry.fingerprint, chunks)

        loaded = store.list_chunks("e1")
        assert [c.id for c in loaded] == [c.id for c in chunks]
        assert loaded[0].span == chunks[0].span
        assert loaded[0].date == date(2026, 3, 5)
        assert store.get_chunk_fingerprints() == {"e1": entry.fingerprint}

    def test_replace_removes_old_chunks(self, store):
        """Replacing an entry's chunks drops the previous set."""
        old = EntryChunker().chunk(make_entry("e1", "Old text."))
        store.replace_entry_chunks("e1", "fp-old", old)
        new = EntryChunker().chunk(make_entry("e1", "New text."))
        store.replace_entry_chunks("e1", "fp-new", new)

        assert [c.id for c in store.list_chunks("e1")] == [new[0].id]
        assert store.get_chunk_fingerprints()["e1"] == "fp-new"

    def test_set_embeddings_moves_chunks_out_of_pending(self, store):
        """Embedded chunks no longer appear as pending."""
        chunks = EntryChunker().chunk(make_entry("e1", "Some text."))
        store.replace_entry_chunks("e1", "fp", chunks)
        assert len(store.pending_chunks()) == 1

        updated = store.set_embeddings({chunks[0].id: [0.1, 0.2, 0.3]})

        assert updated == 1
        assert store.pending_chunks() == []
        embedded = store.embedded_chunks()
        assert embedded[0].embedding == [0.1, 0.2, 0.3]

    def test_set_embeddings_skips_deleted_chunk(self, store):
        """A vector for a chunk that no longer exists is ignored."""
        assert store.set_embeddings({"missing": [1.0]}) == 0

    def test_embedded_chunks_filters(self, store):
        """Dimension and date filters apply."""
        a = EntryChunker().chunk(make_entry("a", "Text a.", date(2026, 1, 1)))
        b = EntryChunker().chunk(make_entry("b", "Text b.", date(2026, 2, 1)))
        store.replace_entry_chunks("a", "fa", a)
        store.replace_entry_chunks("b", "fb", b)
        store.set_embeddings({a[0].id: [1.0, 0.0], b[0].id: [1.0, 0.0, 0.0]})

        assert [c.entry_id for c in store.embedded_chunks(dimensions=2)] == ["a"]
        assert [c.entry_id for c in store.embedded_chunks(date_from=date(2026, 1, 15))] == ["b"]
        assert [c.entry_id for c in store.embedded_chunks(date_to=date(2026, 1, 1))] == ["a"]


class TestAnalytics:
    """Tests for analytics persistence."""

    def test_save_overwrites_by_entry(self, store):
        """One row per entry; saving again replaces it."""
        store.save_analytics(make_analytics("e1", date(2026, 3, 1), happiness=40))
        store.save_analytics(make_analytics("e1", date(2026, 3, 1), happiness=60))

        records = store.list_analytics()
        assert len(records) == 1
        assert records[0].happiness_score == 60

    def test_round_trip_preserves_events(self, store):
        """Events, emotions and spans survive persistence."""
        event = make_event("Lunch with Sam", 0.5, date(2026, 3, 1), salience=0.7, category="friends")
        original = make_analytics("e1", date(2026, 3, 1), events=[event])
        store.save_analytics(original)

        loaded = store.get_analytics("e1")
        assert loaded.to_dict() == original.to_dict()

    def test_list_by_date_range(self, store):
        """Date range is inclusive on both ends."""
        for i, day in enumerate([date(2026, 3, 1), date(2026, 3, 15), date(2026, 3, 31)]):
            store.save_analytics(make_analytics(f"e{i}", day))

        records = store.list_analytics(date(2026, 3, 1), date(2026, 3, 15))
        assert [r.entry_id for r in records] == ["e0", "e1"]


class TestCascadeAndStaleness:
    """Tests for entry deletion and summary staleness."""

    def test_delete_entry_cascades(self, store):
        """Deleting an entry removes its chunks, fingerprint and analytics."""
        chunks = EntryChunker().chunk(make_entry("e1", "Text."))
        store.replace_entry_chunks("e1", "fp", chunks)
        store.save_analytics(make_analytics("e1", date(2026, 3, 1)))

        assert store.delete_entry("e1") is True
        assert store.list_chunks("e1") == []
        assert store.get_analytics("e1") is None
        assert store.known_entry_ids() == set()
        assert store.delete_entry("e1") is False

    def test_analytics_change_marks_summaries_stale(self, store):
        """Month and year summaries go stale, not missing."""
        store.save_month_summary(month_summary())
        assert store.get_month_summary(2026, 3) is not None

        store.save_analytics(make_analytics("e1", date(2026, 3, 10)))

        assert store.get_month_summary(2026, 3) is None
        stats = store.get_stats()
        assert stats["month_summaries"] == 1
        assert stats["stale_summaries"] == 1

    def test_delete_marks_summaries_stale(self, store):
        """Deleting a contributing entry stales its period."""
        store.save_analytics(make_analytics("e1", date(2026, 3, 10)))
        store.save_month_summary(month_summary())

        store.delete_entry("e1")

        assert store.get_month_summary(2026, 3) is None

    def test_months_needing_summary(self, store):
        """Periods with analytics and no fresh summary are listed."""
        store.save_analytics(make_analytics("e1", date(2026, 2, 10)))
        store.save_analytics(make_analytics("e2", date(2026, 3, 10)))
        store.save_month_summary(month_summary(2026, 3))

        assert store.months_needing_summary() == [(2026, 2)]
        assert store.years_needing_summary() == [2026]

    def test_year_summary_round_trip(self, store):
        """Year summaries round-trip through to_dict."""
        summary = YearSummary(
            year=2026,
            summary_text="A year.",
            key_topics=[],
            happiness_avg=55.0,
            happiness_confidence_interval=ConfidenceInterval(50.0, 60.0),
            drivers_positive=[],
            drivers_negative=[],
            top_events=[],
            source_spans=[],
            generated_at=FIXED_NOW,
            months_covered=[1, 3],
        )
        store.save_year_summary(summary)

        assert store.get_year_summary(2026).to_dict() == summary.to_dict()


class TestConcurrency:
    """Tests for concurrent access."""

    def test_concurrent_writers_serialize(self, store):
        """Writes from many threads all land."""
        errors = []

        def writer(n):
            try:
                for i in range(5):
                    store.save_analytics(make_analytics(f"t{n}-{i}", date(2026, 3, 1 + i)))
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store.list_analytics()) == 20

    def test_sqlite_errors_become_storage_errors(self, store):
        """Low-level database failures surface as StorageError."""
        with pytest.raises(StorageError):
            store._query("SELECT * FROM no_such_table")

    def test_writer_lock_timeout_is_storage_error(self, store):
        """A writer lock held by another process surfaces as StorageError."""
        lock_path = store.db_path.with_suffix(store.db_path.suffix + ".lock")
        blocker = WriterLock(store.db_path, timeout=0.1)

        with portalocker.Lock(lock_path, timeout=1):
            with pytest.raises(StorageError, match="writer lock"):
                with blocker.hold():
                    pass
