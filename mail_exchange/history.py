"""Bounded in-memory log of forwarded messages."""

from __future__ import annotations

import itertools
from collections import deque
from typing import Deque, List

from .models import ForwardTask

DEFAULT_HISTORY_SIZE = 100


class TaskHistory:
    """Most-recent-first record of :class:`ForwardTask` entries.

    ``appendleft`` on a bounded deque is a single structural operation, so a
    reader taking :meth:`snapshot` never sees a half-applied insert.
    """

    def __init__(self, maxlen: int = DEFAULT_HISTORY_SIZE):
        self.maxlen = max(1, int(maxlen))
        self._tasks: Deque[ForwardTask] = deque(maxlen=self.maxlen)
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        """Return the next sequence id (process lifetime only)."""
        return next(self._ids)

    def append(self, task: ForwardTask) -> None:
        """Insert ``task`` at the head, evicting the oldest entry when full."""
        self._tasks.appendleft(task)

    def snapshot(self) -> List[ForwardTask]:
        """Return a copy of the current entries, newest first."""
        return list(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)
