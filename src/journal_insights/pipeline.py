"""Embedding pipeline: chunk entries and fill in their vectors.

A run moves idle -> scanning -> embedding -> completed | cancelled | failed.
Work is persisted batch by batch, so a cancelled or crashed run resumes by
picking up the chunks that still lack a vector.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from .chunker import EntryChunker
from .config import EmbeddingConfig
from .entries import TextEntryStore
from .errors import (
    CancellationError,
    MalformedResponseError,
    ProviderError,
    StorageError,
    UnauthorizedError,
)
from .models import JournalChunk, PipelineProgress, RunState, format_timestamp, new_id, utc_now
from .providers import EmbeddingProvider
from .retry import RetryPolicy, call_with_retry
from .store import InsightsStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PipelineProgress], None]


class PipelineRun:
    """Handle on one embedding run."""

    def __init__(self) -> None:
        self.id = new_id()
        self.started_at = utc_now()
        self.finished_at = None
        self.error: Optional[BaseException] = None
        self.failed_chunk_ids: list[str] = []
        self._state = RunState.IDLE
        self._progress = PipelineProgress()
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._done_event = threading.Event()

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> PipelineProgress:
        with self._lock:
            return self._progress

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal and not self._done_event.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request a cooperative stop; takes effect at the next batch boundary."""
        self._cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the run finishes. Returns False on timeout."""
        return self._done_event.wait(timeout)

    def _set_state(self, state: RunState) -> None:
        with self._lock:
            self._state = state
        logger.info("Embedding run %s: %s", self.id[:8], state.value)

    def _set_progress(self, progress: PipelineProgress) -> None:
        with self._lock:
            self._progress = progress

    def _finish(self, state: RunState, error: Optional[BaseException] = None) -> None:
        self.error = error
        self.finished_at = utc_now()
        self._set_state(state)
        self._done_event.set()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "progress": self.progress.to_dict(),
            "error": str(self.error) if self.error else None,
            "error_type": getattr(self.error, "error_type", None) if self.error else None,
            "failed_chunk_ids": list(self.failed_chunk_ids),
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at) if self.finished_at else None,
        }


class EmbeddingPipeline:
    """Single-flight, cancellable, resumable embedding run over the entry store."""

    def __init__(
        self,
        store: InsightsStore,
        entries: TextEntryStore,
        provider: EmbeddingProvider,
        chunker: Optional[EntryChunker] = None,
        config: Optional[EmbeddingConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.entries = entries
        self.provider = provider
        self.chunker = chunker or EntryChunker()
        self.config = config or EmbeddingConfig()
        self.retry_policy = RetryPolicy.from_config(self.config)
        self._sleep = sleep
        self._guard = threading.Lock()
        self._current: Optional[PipelineRun] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> RunState:
        run = self._current
        return run.state if run is not None else RunState.IDLE

    @property
    def current_run(self) -> Optional[PipelineRun]:
        return self._current

    @property
    def batch_size(self) -> int:
        return max(1, min(self.config.batch_size, self.provider.max_batch_size))

    def _claim(self) -> tuple[PipelineRun, bool]:
        """Return (run, is_new); an active run is returned as-is."""
        with self._guard:
            if self._current is not None and self._current.is_active:
                return self._current, False
            run = PipelineRun()
            run._set_state(RunState.SCANNING)
            self._current = run
            return run, True

    def start(self, on_progress: Optional[ProgressCallback] = None) -> PipelineRun:
        """Start a run in a background thread, or return the active one."""
        run, is_new = self._claim()
        if is_new:
            self._thread = threading.Thread(
                target=self._run_in_thread, args=(run, on_progress),
                name=f"embedding-{run.id[:8]}", daemon=True,
            )
            self._thread.start()
        return run

    def run(self, on_progress: Optional[ProgressCallback] = None) -> PipelineRun:
        """Run synchronously in the calling thread, or return the active run."""
        run, is_new = self._claim()
        if is_new:
            self._execute(run, on_progress)
        return run

    def cancel(self) -> bool:
        """Cancel the active run, if any."""
        run = self._current
        if run is None or not run.is_active:
            return False
        run.cancel()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        run = self._current
        if run is None:
            return True
        return run.wait(timeout)

    def _run_in_thread(self, run: PipelineRun, on_progress: Optional[ProgressCallback]) -> None:
        try:
            self._execute(run, on_progress)
        except Exception:
            logger.exception("Embedding run %s crashed", run.id[:8])

    def _execute(self, run: PipelineRun, on_progress: Optional[ProgressCallback]) -> None:
        try:
            pending = self._scan(run)
            run._set_state(RunState.EMBEDDING)
            self._embed(run, pending, on_progress)
        except CancellationError:
            run._finish(RunState.CANCELLED)
        except (UnauthorizedError, StorageError) as e:
            logger.error("Embedding run %s failed: %s", run.id[:8], e)
            run._finish(RunState.FAILED, e)
        except BaseException as e:
            run._finish(RunState.FAILED, e)
            raise
        else:
            if run.failed_chunk_ids:
                logger.warning(
                    "Embedding run %s completed with %d failed chunks",
                    run.id[:8], len(run.failed_chunk_ids),
                )
            run._finish(RunState.COMPLETED)

    # -- scanning --------------------------------------------------------------

    def cleanup_orphans(self) -> int:
        """Delete derived data of entries no longer in the entry store."""
        present = {entry.id for entry in self.entries.list_entries()}
        return self._remove_orphans(present)

    def _remove_orphans(self, present: set[str]) -> int:
        removed = 0
        for entry_id in sorted(self.store.known_entry_ids() - present):
            if self.store.delete_entry(entry_id):
                logger.info("Removed derived data of deleted entry %s", entry_id)
                removed += 1
        return removed

    def _scan(self, run: PipelineRun) -> list[JournalChunk]:
        entries = self.entries.list_entries()
        self._remove_orphans({entry.id for entry in entries})

        fingerprints = self.store.get_chunk_fingerprints()
        rechunked = 0
        for entry in entries:
            if run.cancel_requested:
                raise CancellationError("Cancelled while scanning")
            fingerprint = entry.fingerprint
            if fingerprints.get(entry.id) != fingerprint:
                self.store.replace_entry_chunks(entry.id, fingerprint, self.chunker.chunk(entry))
                rechunked += 1
        if rechunked:
            logger.info("Re-chunked %d new or changed entries", rechunked)

        pending = self.store.pending_chunks()
        run._set_progress(PipelineProgress(
            total_entries=len({c.entry_id for c in pending}),
            total_chunks=len(pending),
        ))
        return pending

    # -- embedding -------------------------------------------------------------

    def _embed_texts(self, run: PipelineRun, texts: list[str]) -> list[list[float]]:
        vectors = call_with_retry(
            lambda: self.provider.embed(texts),
            self.retry_policy,
            sleep=self._sleep,
            should_stop=lambda: run.cancel_requested,
        )
        if len(vectors) != len(texts):
            raise MalformedResponseError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        if any(not v for v in vectors):
            raise MalformedResponseError("Provider returned an empty vector")
        return vectors

    def _embed_batch(
        self,
        run: PipelineRun,
        batch: list[JournalChunk],
        advance: Callable[[list[JournalChunk], int, int], None],
    ) -> None:
        """Embed one batch, calling advance(chunks, stored, failed) as chunks finish."""
        try:
            vectors = self._embed_texts(run, [c.text for c in batch])
        except (UnauthorizedError, CancellationError):
            raise
        except ProviderError as e:
            logger.warning(
                "Batch of %d chunks failed (%s); retrying chunks individually",
                len(batch), e,
            )
        else:
            advance(batch, self.store.set_embeddings({c.id: v for c, v in zip(batch, vectors)}), 0)
            return

        for chunk in batch:
            if run.cancel_requested:
                raise CancellationError("Cancelled during per-chunk fallback")
            try:
                vector = self._embed_texts(run, [chunk.text])[0]
            except (UnauthorizedError, CancellationError):
                raise
            except ProviderError as e:
                logger.warning("Chunk %s of entry %s failed: %s", chunk.id, chunk.entry_id, e)
                run.failed_chunk_ids.append(chunk.id)
                advance([chunk], 0, 1)
                continue
            advance([chunk], self.store.set_embeddings({chunk.id: vector}), 0)

    def _embed(
        self,
        run: PipelineRun,
        pending: list[JournalChunk],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        remaining: dict[str, int] = {}
        for chunk in pending:
            remaining[chunk.entry_id] = remaining.get(chunk.entry_id, 0) + 1

        def advance(chunks: list[JournalChunk], stored: int, failed: int) -> None:
            finished_entries = 0
            for chunk in chunks:
                remaining[chunk.entry_id] -= 1
                if remaining[chunk.entry_id] == 0:
                    finished_entries += 1
            previous = run.progress
            progress = PipelineProgress(
                processed_entries=previous.processed_entries + finished_entries,
                total_entries=previous.total_entries,
                processed_chunks=previous.processed_chunks + len(chunks),
                total_chunks=previous.total_chunks,
                embedded_chunks=previous.embedded_chunks + stored,
                failed_chunks=previous.failed_chunks + failed,
            )
            run._set_progress(progress)
            if on_progress is not None:
                on_progress(progress)

        size = self.batch_size
        for offset in range(0, len(pending), size):
            if run.cancel_requested:
                raise CancellationError("Cancelled between batches")
            self._embed_batch(run, pending[offset:offset + size], advance)

    # -- stats -----------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Coverage of chunking and embedding over the entry store."""
        store_stats = self.store.get_stats()
        run = self._current
        return {
            "total_entries": len(self.entries.list_entries()),
            "entries_with_chunks": store_stats["entries_with_chunks"],
            "total_chunks": store_stats["total_chunks"],
            "embedded_chunks": store_stats["embedded_chunks"],
            "pending_chunks": store_stats["total_chunks"] - store_stats["embedded_chunks"],
            "provider": self.provider.name,
            "state": self.state.value,
            "last_run": run.to_dict() if run is not None else None,
        }
