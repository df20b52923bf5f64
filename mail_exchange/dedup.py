"""File backed record of message identifiers that were already processed."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Set

from .errors import PersistenceError
from .logger import get_logger


class DedupStore:
    """Append-only set of processed message ids, one id per line on disk.

    The whole file is read once by :meth:`load`. Every call to
    :meth:`mark_processed` appends and flushes the id before it is added to
    the in-memory set, so a successful return means the id is durable.
    Entries are never removed.
    """

    def __init__(self, path: str | os.PathLike[str], logger=None):
        """Track processed ids in the file at ``path`` (created on demand)."""
        self.path = Path(path)
        self.logger = logger or get_logger()
        self._ids: Set[str] = set()

    def load(self) -> int:
        """Read the dedup file into memory and return the number of ids."""
        self._ids.clear()
        if self.path.exists():
            with self.path.open("r", encoding="utf-8") as fh:
                for line in fh:
                    message_id = line.strip()
                    if message_id:
                        self._ids.add(message_id)
        self.logger.debug("Loaded %d processed message ids from %s", len(self._ids), self.path)
        return len(self._ids)

    def is_processed(self, message_id: str) -> bool:
        """Return ``True`` when ``message_id`` was already handled."""
        return message_id in self._ids

    def mark_processed(self, message_id: str) -> None:
        """Persist ``message_id`` and remember it.

        Raises :class:`PersistenceError` when the append fails; the id is then
        not considered processed.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(f"{message_id}\n")
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            raise PersistenceError(message_id, str(exc)) from exc
        self._ids.add(message_id)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)
