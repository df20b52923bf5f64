"""Delivery report sent back to whoever mailed the original message."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from . import templates
from .logger import get_logger
from .models import InboundMessage, OutcomeReport, RecipientResult


def utc_now_iso() -> str:
    """Return the current UTC timestamp as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class OutcomeReporter:
    """Render an :class:`OutcomeReport` and mail it to the original sender.

    Notification is best effort: a missing sender address means nothing is
    sent, and a failed send is logged without affecting the delivery that
    already happened.
    """

    def __init__(self, transport, envelope_from: str, *, metrics=None, logger=None):
        self.transport = transport
        self.envelope_from = envelope_from
        self.metrics = metrics
        self.logger = logger or get_logger()

    @staticmethod
    def build_report(message: InboundMessage, results: List[RecipientResult], duration_ms: int) -> OutcomeReport:
        return OutcomeReport(
            subject=message.subject,
            results=list(results),
            duration_ms=int(duration_ms),
            timestamp=utc_now_iso(),
        )

    async def report(
        self, message: InboundMessage, results: List[RecipientResult], duration_ms: int
    ) -> Optional[OutcomeReport]:
        """Notify the sender; return the report when a notification was sent."""
        reply_to = message.sender_address
        if not reply_to:
            self.logger.debug("No sender address for %r, skipping notification", message.subject)
            return None

        report = self.build_report(message, results, duration_ms)
        try:
            await self.transport.send(
                self.envelope_from,
                reply_to,
                templates.render_subject(report),
                templates.render_text(report),
                html=templates.render_html(report),
            )
        except Exception:
            self.logger.exception("Failed to send forwarding report to %s", reply_to)
            if self.metrics is not None:
                self.metrics.inc_notification("failed")
            return None
        if self.metrics is not None:
            self.metrics.inc_notification("sent")
        self.logger.debug("Forwarding report sent to %s", reply_to)
        return report
