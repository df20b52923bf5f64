"""Core orchestration logic for the mail forwarding pipeline."""

from __future__ import annotations

import asyncio
import time
from typing import List, Optional, Sequence

from .access import AccessFilter
from .config_loader import Settings
from .dedup import DedupStore
from .delivery import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_BASE_DELAY, DeliveryEngine
from .history import TaskHistory
from .logger import get_logger
from .models import (
    STATUS_FAILED,
    STATUS_SUCCESS,
    ForwardRule,
    ForwardTask,
    InboundMessage,
    RecipientResult,
)
from .prometheus import MailMetrics
from .reporting import OutcomeReporter, utc_now_iso
from .rules import RuleMatcher
from .smtp_pool import SMTPPool
from .transport import MailTransport

POOL_CLEANUP_INTERVAL = 150


def summarise_results(results: Sequence[RecipientResult]) -> tuple[str, Optional[str]]:
    """Return the aggregate status and error summary for a set of results.

    Args:
        results: One result per recipient.

    Returns:
        ``("success", None)`` when every send succeeded, otherwise
        ``("failed", "<failed>/<total> failed")``.
    """
    failed = sum(1 for r in results if not r.success)
    if failed:
        return STATUS_FAILED, f"{failed}/{len(results)} failed"
    return STATUS_SUCCESS, None


class MailExchangeCore:
    """Run each inbound message through dedup, access, routing, delivery and reporting.

    All pipeline state (processed ids, task history, metrics) lives on the
    instance. Messages are processed one at a time; only the recipients of a
    single message are delivered concurrently.
    """

    def __init__(
        self,
        *,
        dedup_path: str,
        rules: Sequence[ForwardRule],
        transport,
        envelope_from: str,
        allowed_senders: Sequence[str] = (),
        forward_prefix: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        history_size: int = 100,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        """Wire the pipeline collaborators around ``transport``."""
        self.logger = logger or get_logger()
        self.metrics = metrics or MailMetrics()
        self.transport = transport
        self.dedup = DedupStore(dedup_path, logger=self.logger)
        self.access = AccessFilter(allowed_senders)
        self.matcher = RuleMatcher(rules)
        self.delivery = DeliveryEngine(
            transport,
            envelope_from,
            max_attempts=max_attempts,
            retry_base_delay=retry_base_delay,
            subject_prefix=forward_prefix,
            metrics=self.metrics,
            logger=self.logger,
        )
        self.reporter = OutcomeReporter(transport, envelope_from, metrics=self.metrics, logger=self.logger)
        self.history = TaskHistory(history_size)
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._task_cleanup: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, *, metrics: MailMetrics | None = None, logger=None) -> "MailExchangeCore":
        """Build a core that forwards through the SMTP account in ``settings``."""
        pool = SMTPPool(
            settings.smtp.host,
            settings.smtp.port,
            settings.smtp.user,
            settings.smtp.password,
            use_tls=settings.smtp.use_tls,
        )
        return cls(
            dedup_path=str(settings.dedup_path),
            rules=settings.rules,
            transport=MailTransport(pool),
            envelope_from=settings.smtp.sender,
            allowed_senders=settings.allowed_senders,
            forward_prefix=settings.forward_prefix,
            max_attempts=settings.retry_count,
            retry_base_delay=settings.retry_base_delay,
            metrics=metrics,
            logger=logger,
        )

    @property
    def rules(self) -> tuple[ForwardRule, ...]:
        return self.matcher.rules

    def tasks(self) -> List[ForwardTask]:
        """Return the task history, newest first."""
        return self.history.snapshot()

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Load the processed-id record from disk."""
        count = self.dedup.load()
        self.metrics.set_dedup_size(count)
        self.logger.info("Loaded %d rules, %d forwarded IDs", len(self.rules), count)

    async def start(self) -> None:
        """Load state and start the SMTP pool maintenance loop."""
        await self.init()
        self._stop.clear()
        pool = getattr(self.transport, "pool", None)
        if pool is not None:
            self._task_cleanup = asyncio.create_task(self._cleanup_loop(pool), name="smtp-cleanup-loop")

    async def stop(self) -> None:
        """Stop background tasks and close pooled connections."""
        self._stop.set()
        if self._task_cleanup:
            self._task_cleanup.cancel()
            await asyncio.gather(self._task_cleanup, return_exceptions=True)
            self._task_cleanup = None
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()

    async def _cleanup_loop(self, pool: SMTPPool) -> None:
        """Background coroutine that keeps pooled SMTP connections healthy."""
        while not self._stop.is_set():
            await asyncio.sleep(POOL_CLEANUP_INTERVAL)
            try:
                await pool.cleanup()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("SMTP pool cleanup failed: %s", exc)

    # ------------------------------------------------------------------ pipeline
    async def process_message(self, message: InboundMessage) -> Optional[ForwardTask]:
        """Run ``message`` through the pipeline.

        Args:
            message: The parsed inbound message.

        Returns:
            The :class:`ForwardTask` recorded for a forwarded message, or
            ``None`` when the message was skipped, dropped or matched no rule.

        Raises:
            PersistenceError: The message id could not be recorded on disk.
        """
        async with self._lock:
            return await self._process(message)

    async def _process(self, message: InboundMessage) -> Optional[ForwardTask]:
        started = time.monotonic()
        subject = message.subject
        attach_count = len(message.attachments)
        size_kb = round(len(message.text or "") / 1024)
        self.logger.info(
            'New mail: "%s" from=%s size=%dKB attachments=%d',
            subject,
            message.sender_address or "-",
            size_kb,
            attach_count,
        )

        if self.dedup.is_processed(message.message_id):
            self.logger.info("Already forwarded (skip): %s", subject)
            self.metrics.inc_message("skipped")
            return None

        if not self.access.is_allowed(message.sender_address):
            self.logger.warning("Sender not allowed: %s - %s", message.sender_address or "-", subject)
            self._mark_processed(message)
            self.metrics.inc_message("dropped")
            return None

        rule = self.matcher.match(subject)
        if rule is None:
            self.logger.info("No matching rule for: %s", subject)
            self._mark_processed(message)
            self.metrics.inc_message("unmatched")
            return None

        task_id = self.history.next_id()
        timestamp = utc_now_iso()
        results = await self.delivery.deliver(message, rule)
        duration_ms = int((time.monotonic() - started) * 1000)
        status, error = summarise_results(results)
        success_count = len(results) - sum(1 for r in results if not r.success)
        if error:
            self.logger.error(
                "Forward completed: %s - %d/%d success, %s (%dms)",
                subject,
                success_count,
                len(results),
                error,
                duration_ms,
            )
        else:
            self.logger.info(
                "Forward completed: %s - %d/%d success (%dms)", subject, success_count, len(results), duration_ms
            )

        task = ForwardTask(
            id=task_id,
            timestamp=timestamp,
            subject=subject,
            sender=message.sender,
            matched_tag=rule.tag,
            recipients=rule.recipients,
            status=status,
            error=error,
        )
        self._mark_processed(message)
        await self.reporter.report(message, results, duration_ms)
        self.history.append(task)
        self.metrics.inc_message("forwarded")
        self.metrics.set_history_size(len(self.history))
        return task

    def _mark_processed(self, message: InboundMessage) -> None:
        self.dedup.mark_processed(message.message_id)
        self.metrics.set_dedup_size(len(self.dedup))
        self.logger.info("Marked as processed: %s", message.subject)
