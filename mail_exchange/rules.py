"""Subject based selection of forwarding rules."""

from __future__ import annotations

from typing import Optional, Sequence

from .models import ForwardRule


class RuleMatcher:
    """Return the first configured rule whose tag appears in a subject."""

    def __init__(self, rules: Sequence[ForwardRule]):
        """Keep ``rules`` in configuration order; earlier rules win ties."""
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[ForwardRule, ...]:
        return self._rules

    def match(self, subject: str) -> Optional[ForwardRule]:
        """Return the first rule whose tag occurs in ``subject``, ignoring case.

        Args:
            subject: Subject line of the inbound message.

        Returns:
            The matching :class:`ForwardRule`, or ``None`` when no tag occurs.
        """
        lowered = (subject or "").lower()
        for rule in self._rules:
            if rule.tag.lower() in lowered:
                return rule
        return None
