"""Sender allow-list evaluation."""

from __future__ import annotations

from typing import Iterable, Tuple


class AccessFilter:
    """Decide whether mail from a given sender may be forwarded.

    An empty allow-list lets every sender through. Otherwise an address is
    allowed when it contains one of the entries, compared case-insensitively,
    so ``"@example.com"`` admits the whole domain.
    """

    def __init__(self, allowed_senders: Iterable[str] = ()):
        self._entries: Tuple[str, ...] = tuple(
            entry.strip().lower() for entry in allowed_senders if entry and entry.strip()
        )

    @property
    def entries(self) -> Tuple[str, ...]:
        return self._entries

    def is_allowed(self, sender_address: str) -> bool:
        """Return whether mail from ``sender_address`` may be forwarded.

        Args:
            sender_address: Bare address of the sender, possibly empty.

        Returns:
            ``True`` when the allow-list is empty or one entry occurs in the
            lowercased address.
        """
        if not self._entries:
            return True
        address = (sender_address or "").lower()
        return any(entry in address for entry in self._entries)
