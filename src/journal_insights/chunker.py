"""Split entries into bounded, overlapping, span-tracked chunks."""

from __future__ import annotations

import re
from typing import Optional

from .config import ChunkingConfig
from .models import Entry, JournalChunk, SourceSpan, new_id

_SENTENCE_END = re.compile(r"[.!?]\s")


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    return len(text) // chars_per_token


class EntryChunker:
    """Cuts entry text into windows of at most ``max_chars`` characters.

    Each window ends at the best boundary found in its second half, trying in
    order: paragraph break, sentence end, line break, whitespace. Without any
    boundary the window is cut hard. Consecutive chunks share at most
    ``overlap_chars`` characters.
    """

    def __init__(self, policy: Optional[ChunkingConfig] = None):
        self.policy = policy or ChunkingConfig()
        if not (0.0 <= self.policy.overlap_fraction < 0.5):
            raise ValueError("overlap_fraction must be in [0, 0.5)")
        if self.policy.max_chars < 1:
            raise ValueError("max_chars must be >= 1")

    def _find_break(self, text: str, lo: int, hi: int) -> int:
        """End offset for a window whose boundary must fall in [lo, hi)."""
        idx = text.rfind("\n\n", lo, hi)
        if idx != -1:
            return idx + 2

        last = None
        for match in _SENTENCE_END.finditer(text, lo, hi):
            last = match
        if last is not None:
            return last.end()

        idx = text.rfind("\n", lo, hi)
        if idx != -1:
            return idx + 1

        for i in range(hi - 1, lo - 1, -1):
            if text[i].isspace():
                return i + 1

        return hi

    def _next_start(self, text: str, start: int, end: int) -> int:
        """Where the next window starts, snapped forward to a word start."""
        overlap = self.policy.overlap_chars
        if overlap <= 0:
            return end
        candidate = max(end - overlap, start + 1)
        for i in range(candidate, end):
            if text[i].isspace():
                j = i
                while j < end and text[j].isspace():
                    j += 1
                return j
        return candidate

    def spans(self, text: str) -> list[tuple[int, int]]:
        """Character ranges of the chunks of ``text``."""
        if not text.strip():
            return []
        max_chars = self.policy.max_chars
        length = len(text)
        result: list[tuple[int, int]] = []
        start = 0
        while True:
            if length - start <= max_chars:
                result.append((start, length))
                return result
            end = self._find_break(text, start + max_chars // 2, start + max_chars)
            result.append((start, end))
            start = self._next_start(text, start, end)

    def chunk(self, entry: Entry) -> list[JournalChunk]:
        """Chunk one entry. Chunks carry no embedding yet."""
        chunks = []
        for start, end in self.spans(entry.text):
            piece = entry.text[start:end]
            chunks.append(JournalChunk(
                id=new_id(),
                entry_id=entry.id,
                text=piece,
                span=SourceSpan(entry.id, start, end),
                date=entry.date,
                token_count=estimate_tokens(piece, self.policy.chars_per_token),
            ))
        return chunks
