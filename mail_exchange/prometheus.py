"""Prometheus metrics exposed by the forwarding pipeline."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class MailMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.messages = Counter(
            "mx_messages_total", "Inbound messages by pipeline outcome", ["outcome"], registry=self.registry
        )
        self.recipient_sends = Counter(
            "mx_recipient_sends_total", "Per-recipient delivery outcomes", ["status"], registry=self.registry
        )
        self.retries = Counter("mx_send_retries_total", "Send attempts that were retried", registry=self.registry)
        self.notifications = Counter(
            "mx_notifications_total", "Sender notifications by status", ["status"], registry=self.registry
        )
        self.history_size = Gauge("mx_history_size", "Entries in the task history", registry=self.registry)
        self.dedup_size = Gauge("mx_dedup_size", "Processed message ids on record", registry=self.registry)

    def inc_message(self, outcome: str):
        """Count one inbound message (``skipped``, ``dropped``, ``unmatched`` or ``forwarded``)."""
        self.messages.labels(outcome=outcome).inc()

    def inc_recipient(self, status: str):
        """Count one recipient delivery as ``sent`` or ``failed``."""
        self.recipient_sends.labels(status=status).inc()

    def inc_retry(self):
        """Count a failed send attempt that will be retried."""
        self.retries.inc()

    def inc_notification(self, status: str):
        """Count one sender notification as ``sent`` or ``failed``."""
        self.notifications.labels(status=status).inc()

    def set_history_size(self, value: int):
        """Update the gauge tracking task history entries."""
        self.history_size.set(value)

    def set_dedup_size(self, value: int):
        """Update the gauge tracking recorded message ids."""
        self.dedup_size.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
