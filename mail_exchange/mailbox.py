"""IMAP mailbox source: polls a folder for unseen mail and feeds the pipeline."""

from __future__ import annotations

import asyncio
import random
import ssl
import time
from email import policy
from email.errors import HeaderParseError
from email.message import EmailMessage, Message
from email.parser import BytesParser
from typing import Any, Awaitable, Callable, List, Optional

import aioimaplib

from .config_loader import ImapSettings
from .errors import PersistenceError
from .logger import get_logger
from .models import NO_SUBJECT, UNKNOWN_SENDER, Attachment, InboundMessage

DEFAULT_RECONNECT_DELAY = 5.0

MessageHandler = Callable[[InboundMessage], Awaitable[Any]]


def fallback_message_id() -> str:
    """Synthesize an id for mail without a Message-ID header.

    Built from the clock and a random value, so deduplication of such mail is
    only probabilistic.
    """
    return f"{int(time.time() * 1000)}-{random.random()}"


def _header(msg: EmailMessage, name: str):
    """Return the parsed header ``name``, or ``None`` when it cannot be parsed."""
    try:
        return msg.get(name)
    except (IndexError, ValueError, HeaderParseError):
        get_logger().warning("Malformed %s header ignored", name)
        return None


def _raw_header(msg: EmailMessage, name: str) -> str:
    for key, value in msg.raw_items():
        if key.lower() == name.lower():
            return str(value)
    return ""


def _body_text(msg: EmailMessage, subtype: str) -> Optional[str]:
    part = msg.get_body(preferencelist=(subtype,))
    if part is None:
        return None
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _attachment_bytes(part: EmailMessage) -> Optional[bytes]:
    content = part.get_payload(decode=True)
    if content is None and part.get_content_maintype() == "message":
        # message/* parts hold a nested message rather than an encoded payload
        inner = part.get_content()
        content = inner.as_bytes() if isinstance(inner, Message) else bytes(inner)
    return content


def parse_message(raw: bytes) -> InboundMessage:
    """Translate an RFC 822 payload into an :class:`InboundMessage`.

    A header that cannot be parsed does not reject the message: the subject
    and sender fall back to the raw header text, and a missing or broken
    Message-ID is replaced by :func:`fallback_message_id`.

    Args:
        raw: The message exactly as fetched from the mailbox.

    Returns:
        The parsed message, with attachments in their original order.
    """
    msg = BytesParser(policy=policy.default).parsebytes(raw)

    subject_header = _header(msg, "Subject")
    subject_text = str(subject_header) if subject_header is not None else _raw_header(msg, "Subject")
    subject = " ".join(subject_text.split()) or NO_SUBJECT

    from_header = _header(msg, "From")
    if from_header is not None:
        sender = str(from_header).strip()
        addresses = getattr(from_header, "addresses", ())
        sender_address = addresses[0].addr_spec if addresses else ""
    else:
        sender = _raw_header(msg, "From").strip()
        sender_address = ""

    message_id = "".join(str(_header(msg, "Message-ID") or "").split()) or fallback_message_id()

    attachments: List[Attachment] = []
    for part in msg.iter_attachments():
        content = _attachment_bytes(part)
        if content is None:
            get_logger().warning("Skipping unreadable attachment %r", part.get_filename())
            continue
        attachments.append(
            Attachment(
                filename=part.get_filename() or "attachment.bin",
                content=content,
                content_type=part.get_content_type(),
            )
        )

    return InboundMessage(
        message_id=message_id,
        subject=subject,
        sender=sender or UNKNOWN_SENDER,
        sender_address=sender_address,
        text=_body_text(msg, "plain") or "",
        html=_body_text(msg, "html"),
        attachments=tuple(attachments),
    )


class IMAPClient:
    """Async IMAP client wrapper using aioimaplib."""

    def __init__(self, logger=None):
        self._client: "aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None" = None
        self._logger = logger or get_logger()

    async def connect(self, host: str, port: int, user: str, password: str, use_ssl: bool = True) -> None:
        """Connect and authenticate to the IMAP server."""
        if use_ssl:
            self._client = aioimaplib.IMAP4_SSL(host=host, port=port, ssl_context=ssl.create_default_context())
        else:
            self._client = aioimaplib.IMAP4(host=host, port=port)

        await self._client.wait_hello_from_server()
        response = await self._client.login(user, password)
        if response.result != "OK":
            raise ConnectionError(f"IMAP login failed: {response.lines}")
        self._logger.info("IMAP connected")

    async def select_folder(self, folder: str = "INBOX") -> None:
        if not self._client:
            raise RuntimeError("Not connected")
        response = await self._client.select(folder)
        if response.result != "OK":
            raise RuntimeError(f"Failed to open {folder}: {response.lines}")

    async def search_unseen(self) -> List[str]:
        """Return the UIDs of unseen messages in the selected folder."""
        if not self._client:
            raise RuntimeError("Not connected")
        response = await self._client.uid_search("UNSEEN")
        if response.result != "OK":
            raise RuntimeError(f"IMAP search failed: {response.lines}")
        uids: List[str] = []
        for line in response.lines:
            if isinstance(line, (bytes, bytearray)):
                line = bytes(line).decode("utf-8", errors="replace")
            uids.extend(token for token in str(line).split() if token.isdigit())
        return uids

    async def fetch(self, uid: str) -> Optional[bytes]:
        """Return the raw message for ``uid`` without setting ``\\Seen``."""
        if not self._client:
            raise RuntimeError("Not connected")
        response = await self._client.uid("fetch", uid, "(BODY.PEEK[])")
        if response.result != "OK":
            self._logger.warning("IMAP fetch failed for UID %s: %s", uid, response.lines)
            return None
        # The literal message body is the only bytearray in the response
        for item in response.lines:
            if isinstance(item, bytearray) and item:
                return bytes(item)
        return None

    async def mark_seen(self, uid: str) -> bool:
        if not self._client:
            raise RuntimeError("Not connected")
        response = await self._client.uid("store", uid, "+FLAGS", "(\\Seen)")
        return response.result == "OK"

    async def close(self) -> None:
        """Close the IMAP connection."""
        if self._client:
            try:
                await self._client.logout()
            except Exception:
                pass
            self._client = None


class ImapMailbox:
    """Background task that polls IMAP and hands each unseen message to ``handler``.

    A message is flagged ``\\Seen`` only after ``handler`` returns; when it
    raises, the message stays unseen and is offered again on the next poll.
    Connection errors are logged and the loop reconnects after
    ``reconnect_delay`` seconds.
    """

    def __init__(
        self,
        settings: ImapSettings,
        handler: MessageHandler,
        logger=None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        client_factory: Callable[..., IMAPClient] = IMAPClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._settings = settings
        self._handler = handler
        self._logger = logger or get_logger()
        self._reconnect_delay = reconnect_delay
        self._client_factory = client_factory
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the polling task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="imap-poll-loop")
        self._logger.info("Listening for new emails...")

    async def stop(self) -> None:
        """Stop the polling task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
                delay = self._settings.poll_interval
            except Exception as exc:
                self._logger.error("IMAP error: %s", exc)
                self._logger.warning("IMAP disconnected, reconnecting in %ss...", self._reconnect_delay)
                delay = self._reconnect_delay
            await self._sleep(delay)

    async def poll_once(self) -> int:
        """Process every unseen message once; return how many were handled."""
        client = self._client_factory(logger=self._logger)
        try:
            await client.connect(
                host=self._settings.host,
                port=self._settings.port,
                user=self._settings.user,
                password=self._settings.password,
                use_ssl=self._settings.use_ssl,
            )
            await client.select_folder(self._settings.folder)
            uids = await client.search_unseen()
            handled = 0
            for uid in uids:
                if await self._handle_uid(client, uid):
                    handled += 1
            return handled
        finally:
            await client.close()

    async def _handle_uid(self, client: IMAPClient, uid: str) -> bool:
        raw = await client.fetch(uid)
        if raw is None:
            return False
        try:
            message = parse_message(raw)
        except Exception:
            self._logger.exception("Unable to parse UID %s, skipping", uid)
            return False
        try:
            await self._handler(message)
        except PersistenceError as exc:
            self._logger.error("%s; leaving UID %s unseen for retry", exc, uid)
            return False
        except Exception:
            self._logger.exception("Failed to process %r (UID %s)", message.subject, uid)
            return False
        if not await client.mark_seen(uid):
            self._logger.warning("Failed to mark as seen: %s", message.subject)
        return True
