"""Value objects flowing through the forwarding pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

NO_SUBJECT = "(no subject)"
UNKNOWN_SENDER = "unknown"

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class Attachment:
    """File attached to an inbound message, forwarded as-is."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class InboundMessage:
    """A parsed message handed over by the mailbox source."""

    message_id: str
    subject: str = NO_SUBJECT
    sender: str = UNKNOWN_SENDER
    sender_address: str = ""
    text: str = ""
    html: Optional[str] = None
    attachments: Tuple[Attachment, ...] = ()


@dataclass(frozen=True)
class ForwardRule:
    """Route messages whose subject contains ``tag`` to ``recipients``."""

    tag: str
    recipients: Tuple[str, ...]

    def as_dict(self) -> Dict[str, Any]:
        return {"tag": self.tag, "recipients": list(self.recipients)}


@dataclass(frozen=True)
class RecipientResult:
    """Final delivery outcome for one recipient, after retries."""

    email: str
    success: bool
    attempts: int
    error: Optional[str] = None


@dataclass(frozen=True)
class ForwardTask:
    """History entry describing one matched and forwarded message."""

    id: int
    timestamp: str
    subject: str
    sender: str
    matched_tag: str
    recipients: Tuple[str, ...]
    status: str = STATUS_SUCCESS
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["recipients"] = list(self.recipients)
        return data


@dataclass(frozen=True)
class OutcomeReport:
    """Summary sent back to the original sender once delivery completes."""

    subject: str
    results: List[RecipientResult] = field(default_factory=list)
    duration_ms: int = 0
    timestamp: str = ""

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def fail_count(self) -> int:
        return len(self.results) - self.success_count

    @property
    def all_success(self) -> bool:
        return self.fail_count == 0


__all__ = [
    "Attachment",
    "ForwardRule",
    "ForwardTask",
    "InboundMessage",
    "NO_SUBJECT",
    "OutcomeReport",
    "RecipientResult",
    "STATUS_FAILED",
    "STATUS_SUCCESS",
    "UNKNOWN_SENDER",
]
