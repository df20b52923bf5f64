"""Concurrent fan-out of a message to every recipient of a rule."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional

from .errors import ExhaustedRetriesError
from .logger import get_logger
from .models import ForwardRule, InboundMessage, RecipientResult

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 1.0  # seconds; attempt n waits n * base


def calculate_retry_delay(attempt: int, base_delay: float = DEFAULT_RETRY_BASE_DELAY) -> float:
    """Return the pause after failed attempt ``attempt`` (1-indexed): linear backoff."""
    return base_delay * attempt


class DeliveryEngine:
    """Send a message to all recipients of a rule, each with its own retries.

    Recipients are handled by independent asyncio tasks joined with
    :func:`asyncio.gather`; a backoff sleep only suspends the recipient that
    failed, and a permanent failure for one recipient never touches the
    others. Once started, a delivery runs every attempt to completion.
    """

    def __init__(
        self,
        transport,
        envelope_from: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        subject_prefix: Optional[str] = None,
        metrics=None,
        logger=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.envelope_from = envelope_from
        self.max_attempts = max(1, int(max_attempts))
        self.retry_base_delay = max(0.0, float(retry_base_delay))
        self.subject_prefix = subject_prefix or None
        self.metrics = metrics
        self.logger = logger or get_logger()
        self._sleep = sleep

    def outgoing_subject(self, subject: str) -> str:
        if self.subject_prefix:
            return f"{self.subject_prefix} {subject}"
        return subject

    async def deliver(self, message: InboundMessage, rule: ForwardRule) -> List[RecipientResult]:
        """Forward ``message`` to every recipient of ``rule`` and wait for all of them.

        Results come back in the rule's recipient order, one per recipient.
        """
        self.logger.info(
            "Forwarding from=%s tag=%s to=%d recipients",
            message.sender_address or "-",
            rule.tag,
            len(rule.recipients),
        )
        return list(
            await asyncio.gather(*(self.send_with_retry(message, recipient) for recipient in rule.recipients))
        )

    async def send_with_retry(self, message: InboundMessage, recipient: str) -> RecipientResult:
        """Try ``recipient`` up to ``max_attempts`` times with linear backoff."""
        subject = self.outgoing_subject(message.subject)
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.transport.send(
                    self.envelope_from,
                    recipient,
                    subject,
                    message.text,
                    html=message.html,
                    attachments=message.attachments,
                )
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                self.logger.warning(
                    "  -> %s: RETRY %d/%d - %s", recipient, attempt, self.max_attempts, last_error
                )
                if attempt < self.max_attempts:
                    if self.metrics is not None:
                        self.metrics.inc_retry()
                    await self._sleep(calculate_retry_delay(attempt, self.retry_base_delay))
                continue
            if attempt > 1:
                self.logger.info("  -> %s: OK (attempt %d)", recipient, attempt)
            else:
                self.logger.info("  -> %s: OK", recipient)
            if self.metrics is not None:
                self.metrics.inc_recipient("sent")
            return RecipientResult(email=recipient, success=True, attempts=attempt)

        exhausted = ExhaustedRetriesError(recipient, self.max_attempts, last_error)
        self.logger.error("  -> %s", exhausted)
        if self.metrics is not None:
            self.metrics.inc_recipient("failed")
        return RecipientResult(email=recipient, success=False, attempts=self.max_attempts, error=last_error)
