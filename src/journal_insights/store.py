"""SQLite persistence for chunks, entry analytics, and period summaries.

The entry store remains the source of truth for journal text; everything in
this database is derived from it and can be rebuilt.

Database location: <data_dir>/insights.db
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Any, Generator, Iterable, Optional

from .errors import StorageError
from .locking import WriterLock
from .models import (
    EntryAnalytics,
    JournalChunk,
    MonthSummary,
    SourceSpan,
    YearSummary,
    format_timestamp,
    parse_date,
    utc_now,
)

logger = logging.getLogger(__name__)


def _affected_periods(day: date) -> tuple[list[tuple[int, int]], list[int]]:
    """Months and years whose summaries depend on analytics dated ``day``.

    The following month and year are included because their trend compares
    against this period.
    """
    if day.month == 12:
        next_month = (day.year + 1, 1)
    else:
        next_month = (day.year, day.month + 1)
    return [(day.year, day.month), next_month], [day.year, day.year + 1]


class InsightsStore:
    """SQLite store for derived journal data.

    Writes are serialized by a WriterLock (in-process RLock plus a portalocker
    file lock). Reads use one connection per thread; WAL mode keeps readers
    from blocking each other or the writer.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path, lock_timeout: float = 10.0):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file
            lock_timeout: Seconds to wait for the writer lock
        """
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._writer = WriterLock(db_path, timeout=lock_timeout)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._ensure_schema()

    # -- connection management -------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create this thread's database connection."""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            try:
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
            except sqlite3.Error as e:
                raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _write(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a write transaction under the writer lock."""
        with self._writer.hold():
            conn = self._get_connection()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                raise StorageError(f"Write failed: {e}") from e

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._get_connection().execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Query failed: {e}") from e

    def _ensure_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._write() as conn:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            )
            if cursor.fetchone() is None:
                self._init_schema(conn)
                return
            row = conn.execute("SELECT version FROM schema_version").fetchone()
            if row is None or row[0] < self.SCHEMA_VERSION:
                self._migrate_schema(conn, row[0] if row else 0)

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        """Initialize the database schema."""
        conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,))

        conn.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                id TEXT PRIMARY KEY,
                entry_id TEXT NOT NULL,
                text TEXT NOT NULL,
                start_char INTEGER NOT NULL,
                end_char INTEGER NOT NULL,
                date TEXT NOT NULL,             -- YYYY-MM-DD of the owning entry
                token_count INTEGER NOT NULL,
                embedding TEXT,                 -- JSON array, NULL until embedded
                dimensions INTEGER
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_entry ON chunks(entry_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_date ON chunks(date)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS entry_fingerprints (
                entry_id TEXT PRIMARY KEY,
                fingerprint TEXT NOT NULL,      -- fingerprint the chunks were cut from
                chunked_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS entry_analytics (
                entry_id TEXT PRIMARY KEY,
                id TEXT NOT NULL,
                date TEXT NOT NULL,
                content_fingerprint TEXT,
                analyzed_at TEXT NOT NULL,
                payload TEXT NOT NULL           -- JSON of EntryAnalytics.to_dict()
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_analytics_date ON entry_analytics(date)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS month_summaries (
                year INTEGER NOT NULL,
                month INTEGER NOT NULL,
                stale INTEGER NOT NULL DEFAULT 0,
                generated_at TEXT NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (year, month)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS year_summaries (
                year INTEGER PRIMARY KEY,
                stale INTEGER NOT NULL DEFAULT 0,
                generated_at TEXT NOT NULL,
                payload TEXT NOT NULL
            )
        """)

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int) -> None:
        """Migrate schema from an older version."""
        # Only version 1 exists so far
        if from_version < 1:
            conn.execute("DELETE FROM schema_version")
            self._init_schema(conn)

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            except sqlite3.Error as e:
                logger.debug("WAL checkpoint on close failed: %s", e)
            conn.close()
        self._local = threading.local()

    # -- chunks ----------------------------------------------------------------

    def replace_entry_chunks(
        self,
        entry_id: str,
        fingerprint: str,
        chunks: list[JournalChunk],
    ) -> None:
        """Delete an entry's chunks and store a fresh set cut from ``fingerprint``.

        Chunks are never patched in place: a changed entry gets a new set.
        """
        with self._write() as conn:
            conn.execute("DELETE FROM chunks WHERE entry_id = ?", (entry_id,))
            conn.executemany(
                """
                INSERT INTO chunks (
                    id, entry_id, text, start_char, end_char, date, token_count,
                    embedding, dimensions
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        c.id,
                        c.entry_id,
                        c.text,
                        c.span.start_char,
                        c.span.end_char,
                        c.date.isoformat(),
                        c.token_count,
                        json.dumps(c.embedding) if c.embedding is not None else None,
                        len(c.embedding) if c.embedding is not None else None,
                    )
                    for c in chunks
                ],
            )
            conn.execute(
                """
                INSERT OR REPLACE INTO entry_fingerprints (entry_id, fingerprint, chunked_at)
                VALUES (?, ?, ?)
                """,
                (entry_id, fingerprint, format_timestamp(utc_now())),
            )

    def get_chunk_fingerprints(self) -> dict[str, str]:
        """Map of entry_id -> fingerprint the stored chunks were cut from."""
        rows = self._query("SELECT entry_id, fingerprint FROM entry_fingerprints")
        return {row["entry_id"]: row["fingerprint"] for row in rows}

    def set_embeddings(self, vectors: dict[str, list[float]]) -> int:
        """Persist embedding vectors for a batch of chunks.

        Returns:
            Number of chunks updated (chunks deleted meanwhile are skipped)
        """
        if not vectors:
            return 0
        with self._write() as conn:
            updated = 0
            for chunk_id, vector in vectors.items():
                cursor = conn.execute(
                    "UPDATE chunks SET embedding = ?, dimensions = ? WHERE id = ?",
                    (json.dumps(vector), len(vector), chunk_id),
                )
                updated += cursor.rowcount
            return updated

    def list_chunks(self, entry_id: Optional[str] = None) -> list[JournalChunk]:
        """List chunks, optionally for one entry, in text order."""
        if entry_id is None:
            rows = self._query("SELECT * FROM chunks ORDER BY date, entry_id, start_char")
        else:
            rows = self._query(
                "SELECT * FROM chunks WHERE entry_id = ? ORDER BY start_char", (entry_id,)
            )
        return [self._row_to_chunk(row) for row in rows]

    def pending_chunks(self) -> list[JournalChunk]:
        """Chunks still lacking an embedding, oldest first."""
        rows = self._query(
            "SELECT * FROM chunks WHERE embedding IS NULL ORDER BY date, entry_id, start_char"
        )
        return [self._row_to_chunk(row) for row in rows]

    def embedded_chunks(
        self,
        dimensions: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[JournalChunk]:
        """Chunks carrying a vector, optionally filtered by dimension and date."""
        sql = "SELECT * FROM chunks WHERE embedding IS NOT NULL"
        params: list[Any] = []
        if dimensions is not None:
            sql += " AND dimensions = ?"
            params.append(dimensions)
        if date_from is not None:
            sql += " AND date >= ?"
            params.append(date_from.isoformat())
        if date_to is not None:
            sql += " AND date <= ?"
            params.append(date_to.isoformat())
        return [self._row_to_chunk(row) for row in self._query(sql, params)]

    def _row_to_chunk(self, row: sqlite3.Row) -> JournalChunk:
        return JournalChunk(
            id=row["id"],
            entry_id=row["entry_id"],
            text=row["text"],
            span=SourceSpan(row["entry_id"], row["start_char"], row["end_char"]),
            date=parse_date(row["date"]),
            token_count=row["token_count"],
            embedding=json.loads(row["embedding"]) if row["embedding"] is not None else None,
        )

    # -- analytics -------------------------------------------------------------

    def save_analytics(self, analytics: EntryAnalytics) -> None:
        """Store the current analytics of an entry, replacing any previous record.

        Summaries of the periods touched by the old and new dates are marked stale.
        """
        with self._write() as conn:
            previous = conn.execute(
                "SELECT date FROM entry_analytics WHERE entry_id = ?", (analytics.entry_id,)
            ).fetchone()
            conn.execute(
                """
                INSERT OR REPLACE INTO entry_analytics (
                    entry_id, id, date, content_fingerprint, analyzed_at, payload
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    analytics.entry_id,
                    analytics.id,
                    analytics.date.isoformat(),
                    analytics.content_fingerprint,
                    format_timestamp(analytics.analyzed_at),
                    json.dumps(analytics.to_dict()),
                ),
            )
            self._mark_stale(conn, analytics.date)
            if previous is not None and previous["date"] != analytics.date.isoformat():
                self._mark_stale(conn, parse_date(previous["date"]))

    def get_analytics(self, entry_id: str) -> Optional[EntryAnalytics]:
        rows = self._query("SELECT payload FROM entry_analytics WHERE entry_id = ?", (entry_id,))
        if not rows:
            return None
        return EntryAnalytics.from_dict(json.loads(rows[0]["payload"]))

    def list_analytics(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[EntryAnalytics]:
        """Analytics records in an inclusive date range, ordered by date."""
        sql = "SELECT payload FROM entry_analytics WHERE 1=1"
        params: list[Any] = []
        if date_from is not None:
            sql += " AND date >= ?"
            params.append(date_from.isoformat())
        if date_to is not None:
            sql += " AND date <= ?"
            params.append(date_to.isoformat())
        sql += " ORDER BY date, entry_id"
        return [EntryAnalytics.from_dict(json.loads(row["payload"])) for row in self._query(sql, params)]

    def get_analytics_fingerprints(self) -> dict[str, Optional[str]]:
        """Map of entry_id -> fingerprint of the text the analytics came from."""
        rows = self._query("SELECT entry_id, content_fingerprint FROM entry_analytics")
        return {row["entry_id"]: row["content_fingerprint"] for row in rows}

    # -- entries ---------------------------------------------------------------

    def known_entry_ids(self) -> set[str]:
        """Every entry id that owns derived data."""
        rows = self._query(
            """
            SELECT entry_id FROM entry_fingerprints
            UNION SELECT entry_id FROM chunks
            UNION SELECT entry_id FROM entry_analytics
            """
        )
        return {row["entry_id"] for row in rows}

    def delete_entry(self, entry_id: str) -> bool:
        """Delete everything derived from an entry.

        Chunks and analytics go with the entry; summaries of affected periods
        are marked stale rather than deleted.

        Returns:
            True if anything was deleted
        """
        with self._write() as conn:
            analytics = conn.execute(
                "SELECT date FROM entry_analytics WHERE entry_id = ?", (entry_id,)
            ).fetchone()
            deleted = conn.execute("DELETE FROM chunks WHERE entry_id = ?", (entry_id,)).rowcount
            deleted += conn.execute(
                "DELETE FROM entry_fingerprints WHERE entry_id = ?", (entry_id,)
            ).rowcount
            deleted += conn.execute(
                "DELETE FROM entry_analytics WHERE entry_id = ?", (entry_id,)
            ).rowcount
            if analytics is not None:
                self._mark_stale(conn, parse_date(analytics["date"]))
        return deleted > 0

    # -- summaries -------------------------------------------------------------

    def _mark_stale(self, conn: sqlite3.Connection, day: date) -> None:
        months, years = _affected_periods(day)
        conn.executemany(
            "UPDATE month_summaries SET stale = 1 WHERE year = ? AND month = ?", months
        )
        conn.executemany(
            "UPDATE year_summaries SET stale = 1 WHERE year = ?", [(y,) for y in years]
        )

    def save_month_summary(self, summary: MonthSummary) -> None:
        with self._write() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO month_summaries (year, month, stale, generated_at, payload)
                VALUES (?, ?, 0, ?, ?)
                """,
                (
                    summary.year,
                    summary.month,
                    format_timestamp(summary.generated_at),
                    json.dumps(summary.to_dict()),
                ),
            )

    def get_month_summary(self, year: int, month: int) -> Optional[MonthSummary]:
        """Stored month summary, or None if missing or stale."""
        rows = self._query(
            "SELECT stale, payload FROM month_summaries WHERE year = ? AND month = ?",
            (year, month),
        )
        if not rows or rows[0]["stale"]:
            return None
        return MonthSummary.from_dict(json.loads(rows[0]["payload"]))

    def save_year_summary(self, summary: YearSummary) -> None:
        with self._write() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO year_summaries (year, stale, generated_at, payload)
                VALUES (?, 0, ?, ?)
                """,
                (summary.year, format_timestamp(summary.generated_at), json.dumps(summary.to_dict())),
            )

    def get_year_summary(self, year: int) -> Optional[YearSummary]:
        """Stored year summary, or None if missing or stale."""
        rows = self._query("SELECT stale, payload FROM year_summaries WHERE year = ?", (year,))
        if not rows or rows[0]["stale"]:
            return None
        return YearSummary.from_dict(json.loads(rows[0]["payload"]))

    def months_needing_summary(self) -> list[tuple[int, int]]:
        """Months having analytics whose summary is missing or stale."""
        rows = self._query(
            """
            SELECT p.y AS year, p.m AS month
            FROM (
                SELECT DISTINCT CAST(substr(date, 1, 4) AS INTEGER) AS y,
                                CAST(substr(date, 6, 2) AS INTEGER) AS m
                FROM entry_analytics
            ) p
            LEFT JOIN month_summaries s ON s.year = p.y AND s.month = p.m
            WHERE s.year IS NULL OR s.stale = 1
            ORDER BY p.y, p.m
            """
        )
        return [(row["year"], row["month"]) for row in rows]

    def years_needing_summary(self) -> list[int]:
        """Years having analytics whose summary is missing or stale."""
        rows = self._query(
            """
            SELECT p.y AS year
            FROM (
                SELECT DISTINCT CAST(substr(date, 1, 4) AS INTEGER) AS y FROM entry_analytics
            ) p
            LEFT JOIN year_summaries s ON s.year = p.y
            WHERE s.year IS NULL OR s.stale = 1
            ORDER BY p.y
            """
        )
        return [row["year"] for row in rows]

    # -- stats -----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        def scalar(sql: str) -> int:
            return self._query(sql)[0][0]

        return {
            "entries_with_chunks": scalar("SELECT COUNT(DISTINCT entry_id) FROM chunks"),
            "total_chunks": scalar("SELECT COUNT(*) FROM chunks"),
            "embedded_chunks": scalar("SELECT COUNT(*) FROM chunks WHERE embedding IS NOT NULL"),
            "analyzed_entries": scalar("SELECT COUNT(*) FROM entry_analytics"),
            "month_summaries": scalar("SELECT COUNT(*) FROM month_summaries"),
            "year_summaries": scalar("SELECT COUNT(*) FROM year_summaries"),
            "stale_summaries": scalar(
                "SELECT (SELECT COUNT(*) FROM month_summaries WHERE stale = 1)"
                " + (SELECT COUNT(*) FROM year_summaries WHERE stale = 1)"
            ),
            "database": str(self.db_path),
        }
