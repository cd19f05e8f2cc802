"""Read-only access to raw journal entries.

The engine never writes entries; it only reads snapshots of them.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional

from .models import Entry

logger = logging.getLogger(__name__)

# "My entry [2026-01-17-21-05-33].md" or "2026-01-17 morning pages.txt"
BRACKETED_STAMP = re.compile(r"\[(\d{4})-(\d{2})-(\d{2})-(\d{2})-(\d{2})-(\d{2})\]")
LEADING_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")

ENTRY_SUFFIXES = (".md", ".txt")


class TextEntryStore(ABC):
    """Source of journal entries."""

    @abstractmethod
    def list_entries(self) -> list[Entry]:
        """All entries currently in the store."""

    @abstractmethod
    def get_entry(self, entry_id: str) -> Optional[Entry]:
        """One entry by id, or None if it no longer exists."""


class InMemoryEntryStore(TextEntryStore):
    """Dict-backed entry store, used by tests and embedding callers."""

    def __init__(self, entries: Iterable[Entry] = ()):
        self._entries: dict[str, Entry] = {e.id: e for e in entries}

    def put(self, entry: Entry) -> None:
        self._entries[entry.id] = entry

    def remove(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    def list_entries(self) -> list[Entry]:
        return sorted(self._entries.values(), key=lambda e: (e.date, e.id))

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        return self._entries.get(entry_id)


def date_from_filename(name: str) -> Optional[date]:
    """Extract an entry date from a file name, if it carries one."""
    match = BRACKETED_STAMP.search(name) or LEADING_DATE.match(name)
    if match is None:
        return None
    year, month, day = (int(g) for g in match.groups()[:3])
    try:
        return date(year, month, day)
    except ValueError:
        return None


class DirectoryEntryStore(TextEntryStore):
    """Entries stored as *.md / *.txt files in one directory.

    Entry id is the file stem. The date comes from the file name, falling
    back to the file's modification time.
    """

    def __init__(self, root: Path, encoding: str = "utf-8"):
        self.root = root
        self.encoding = encoding

    def _paths(self) -> list[Path]:
        if not self.root.exists():
            return []
        return sorted(
            p for p in self.root.iterdir()
            if p.is_file() and p.suffix.lower() in ENTRY_SUFFIXES
        )

    def _load(self, path: Path) -> Entry:
        text = path.read_text(encoding=self.encoding)
        entry_date = date_from_filename(path.name)
        if entry_date is None:
            entry_date = datetime.fromtimestamp(path.stat().st_mtime).date()
        return Entry(id=path.stem, text=text, date=entry_date)

    def _try_load(self, path: Path) -> Optional[Entry]:
        try:
            return self._load(path)
        except (UnicodeDecodeError, OSError) as e:
            logger.warning("Skipping unreadable entry %s: %s", path, e)
            return None

    def list_entries(self) -> list[Entry]:
        entries = []
        seen: set[str] = set()
        for path in self._paths():
            if path.stem in seen:
                logger.warning("Skipping %s: duplicate entry id %r", path, path.stem)
                continue
            entry = self._try_load(path)
            if entry is None:
                continue
            seen.add(path.stem)
            entries.append(entry)
        return sorted(entries, key=lambda e: (e.date, e.id))

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        for suffix in ENTRY_SUFFIXES:
            path = self.root / f"{entry_id}{suffix}"
            if path.is_file():
                entry = self._try_load(path)
                if entry is not None:
                    return entry
        return None
