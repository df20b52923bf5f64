"""SMTP transport used both for forwarding and for sender notifications."""

from __future__ import annotations

import asyncio
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Optional, Sequence

import aiosmtplib

from .errors import TransportError
from .models import Attachment
from .smtp_pool import SMTPPool

SEND_TIMEOUT = 30.0


def _smtp_code(exc: Exception) -> Optional[int]:
    """Extract the SMTP reply code carried by an aiosmtplib exception."""
    if isinstance(exc, aiosmtplib.SMTPException):
        code = getattr(exc, "code", None) or getattr(exc, "smtp_code", None)
        if isinstance(code, int):
            return code
    return None


def build_message(
    envelope_from: str,
    to: str,
    subject: str,
    text: str,
    html: Optional[str] = None,
    attachments: Sequence[Attachment] = (),
) -> EmailMessage:
    """Assemble an :class:`EmailMessage` with optional HTML and attachments."""
    msg = EmailMessage()
    msg["From"] = envelope_from
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text or "")
    if html:
        msg.add_alternative(html, subtype="html")
    for att in attachments:
        maintype, _, subtype = (att.content_type or "application/octet-stream").partition("/")
        if (maintype, subtype) == ("message", "rfc822"):
            # Nested messages are attached as message objects, not encoded bytes
            inner = BytesParser(policy=policy.default).parsebytes(att.content)
            msg.add_attachment(inner, filename=att.filename)
            continue
        msg.add_attachment(
            att.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=att.filename,
        )
    return msg


class MailTransport:
    """Send messages through a pooled SMTP account."""

    def __init__(self, pool: SMTPPool, timeout: float = SEND_TIMEOUT):
        self.pool = pool
        self.timeout = timeout

    async def send(
        self,
        envelope_from: str,
        to: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
    ) -> None:
        """Deliver one message to ``to``; raise :class:`TransportError` on failure."""
        msg = build_message(envelope_from, to, subject, text, html, attachments)
        try:
            async with self.pool.connection() as smtp:
                async with asyncio.timeout(self.timeout):
                    await smtp.send_message(msg, sender=envelope_from, recipients=[to])
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            code = _smtp_code(exc)
            detail = str(exc) or exc.__class__.__name__
            raise TransportError(f"{detail} (SMTP {code})" if code else detail, smtp_code=code) from exc

    async def close(self) -> None:
        await self.pool.close()
