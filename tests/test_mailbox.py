import types
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Dict, List

import pytest

from mail_exchange.config_loader import ImapSettings
from mail_exchange.errors import PersistenceError
import mail_exchange.mailbox as mailbox_module
from mail_exchange.mailbox import IMAPClient, ImapMailbox, fallback_message_id, parse_message


def raw_message(message_id="<abc@y.com>", subject="Order photos [PHOTO]", sender="Client <client@y.com>",
                html=None, attachment=None) -> bytes:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = "inbox@x.com"
    if subject is not None:
        msg["Subject"] = subject
    if message_id is not None:
        msg["Message-ID"] = message_id
    msg.set_content("plain text body")
    if html:
        msg.add_alternative(html, subtype="html")
    if attachment:
        filename, content, ctype = attachment
        maintype, subtype = ctype.split("/")
        msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


def test_parse_message_extracts_fields():
    message = parse_message(
        raw_message(html="<p>html body</p>", attachment=("photo.jpg", b"\xff\xd8\xff", "image/jpeg"))
    )

    assert message.message_id == "<abc@y.com>"
    assert message.subject == "Order photos [PHOTO]"
    assert message.sender_address == "client@y.com"
    assert "client@y.com" in message.sender
    assert message.text.strip() == "plain text body"
    assert message.html.strip() == "<p>html body</p>"
    assert len(message.attachments) == 1
    att = message.attachments[0]
    assert (att.filename, att.content, att.content_type) == ("photo.jpg", b"\xff\xd8\xff", "image/jpeg")


def test_parse_message_defaults():
    raw = b"To: inbox@x.com\r\n\r\nhello\r\n"
    message = parse_message(raw)

    assert message.subject == "(no subject)"
    assert message.sender == "unknown"
    assert message.sender_address == ""
    assert message.html is None
    assert message.message_id
    assert message.text.strip() == "hello"


def test_parse_message_keeps_attached_messages():
    inner = EmailMessage()
    inner["From"] = "customer@y.com"
    inner["Subject"] = "Original order"
    inner.set_content("inner body")

    outer = EmailMessage()
    outer["From"] = "Client <client@y.com>"
    outer["Subject"] = "Fwd: order [PHOTO]"
    outer["Message-ID"] = "<fwd@y.com>"
    outer.set_content("see attached")
    outer.add_attachment(inner, filename="orig.eml")
    outer.add_attachment(b"%PDF-1.4", maintype="application", subtype="pdf", filename="a.pdf")

    message = parse_message(outer.as_bytes())

    assert [(a.filename, a.content_type) for a in message.attachments] == [
        ("orig.eml", "message/rfc822"),
        ("a.pdf", "application/pdf"),
    ]
    nested = BytesParser(policy=policy.default).parsebytes(message.attachments[0].content)
    assert nested["Subject"] == "Original order"
    assert nested.get_content().strip() == "inner body"
    assert message.attachments[1].content == b"%PDF-1.4"


def test_parse_message_tolerates_malformed_headers():
    raw = b'From: "\r\nMessage-ID: <\r\nSubject: Order photos [PHOTO]\r\n\r\nbody\r\n'

    message = parse_message(raw)

    assert message.subject == "Order photos [PHOTO]"
    assert message.sender_address == ""
    assert message.message_id
    assert message.text.strip() == "body"


def test_fallback_message_id_is_unique_enough():
    first, second = fallback_message_id(), fallback_message_id()
    assert first != second
    assert first.split("-", 1)[0].isdigit()


class FakeIMAPClient:
    def __init__(self, messages: Dict[str, bytes], log: List[str], fail_connect=False):
        self.messages = messages
        self.log = log
        self.fail_connect = fail_connect
        self.seen: List[str] = []

    async def connect(self, host, port, user, password, use_ssl=True):
        if self.fail_connect:
            raise ConnectionError("unreachable")
        self.log.append("connect")

    async def select_folder(self, folder="INBOX"):
        self.log.append(f"select {folder}")

    async def search_unseen(self):
        return list(self.messages)

    async def fetch(self, uid):
        return self.messages.get(uid)

    async def mark_seen(self, uid):
        self.seen.append(uid)
        return True

    async def close(self):
        self.log.append("close")


SETTINGS = ImapSettings(host="imap.local", user="inbox@x.com", password="pw", poll_interval=0.01)


@pytest.mark.asyncio
async def test_poll_once_processes_and_marks_seen():
    log: List[str] = []
    client = FakeIMAPClient({"1": raw_message("<1@y>"), "2": raw_message("<2@y>")}, log)
    handled = []

    async def handler(message):
        handled.append(message.message_id)

    box = ImapMailbox(SETTINGS, handler, client_factory=lambda logger=None: client)
    assert await box.poll_once() == 2

    assert handled == ["<1@y>", "<2@y>"]
    assert client.seen == ["1", "2"]
    assert log == ["connect", "select INBOX", "close"]


@pytest.mark.asyncio
async def test_handler_failure_leaves_message_unseen():
    client = FakeIMAPClient({"1": raw_message("<1@y>"), "2": raw_message("<2@y>")}, [])

    async def handler(message):
        if message.message_id == "<1@y>":
            raise PersistenceError(message.message_id, "disk full")

    box = ImapMailbox(SETTINGS, handler, client_factory=lambda logger=None: client)
    assert await box.poll_once() == 1
    assert client.seen == ["2"]


@pytest.mark.asyncio
async def test_unexpected_handler_error_does_not_stop_the_batch():
    client = FakeIMAPClient({"1": raw_message("<1@y>"), "2": raw_message("<2@y>")}, [])

    async def handler(message):
        if message.message_id == "<1@y>":
            raise RuntimeError("boom")

    box = ImapMailbox(SETTINGS, handler, client_factory=lambda logger=None: client)
    assert await box.poll_once() == 1
    assert client.seen == ["2"]


@pytest.mark.asyncio
async def test_malformed_message_does_not_block_later_mail():
    malformed = b'From: "\r\nMessage-ID: <\r\nSubject: broken\r\n\r\nbody\r\n'
    client = FakeIMAPClient({"1": malformed, "2": raw_message("<2@y>")}, [])
    handled = []

    async def handler(message):
        handled.append(message.subject)

    box = ImapMailbox(SETTINGS, handler, client_factory=lambda logger=None: client)
    assert await box.poll_once() == 2

    assert handled == ["broken", "Order photos [PHOTO]"]
    assert client.seen == ["1", "2"]


@pytest.mark.asyncio
async def test_unparseable_message_is_skipped(monkeypatch):
    real_parse = mailbox_module.parse_message

    def parse(raw):
        if raw == b"garbage":
            raise IndexError("list index out of range")
        return real_parse(raw)

    monkeypatch.setattr(mailbox_module, "parse_message", parse)
    client = FakeIMAPClient({"1": b"garbage", "2": raw_message("<2@y>")}, [])
    handled = []

    async def handler(message):
        handled.append(message.message_id)

    box = ImapMailbox(SETTINGS, handler, client_factory=lambda logger=None: client)
    assert await box.poll_once() == 1

    assert handled == ["<2@y>"]
    assert client.seen == ["2"]


@pytest.mark.asyncio
async def test_poll_loop_reconnects_after_errors():
    attempts: List[int] = []
    box_ref: Dict[str, ImapMailbox] = {}

    def factory(logger=None):
        attempts.append(1)
        if len(attempts) >= 3:
            box_ref["box"]._running = False
        return FakeIMAPClient({}, [], fail_connect=len(attempts) == 1)

    async def fast_sleep(delay):
        return None

    async def handler(message):
        return None

    box = ImapMailbox(SETTINGS, handler, client_factory=factory, reconnect_delay=0, sleep=fast_sleep)
    box_ref["box"] = box
    box._running = True
    await box._poll_loop()

    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_imap_client_search_and_fetch():
    responses = {
        "search": types.SimpleNamespace(result="OK", lines=[b"3 7", b"SEARCH completed"]),
        "fetch": types.SimpleNamespace(
            result="OK", lines=[b"1 FETCH (UID 7 BODY[] {12}", bytearray(b"raw-message!"), b")", b"done"]
        ),
        "store": types.SimpleNamespace(result="OK", lines=[]),
    }

    class FakeConnection:
        async def uid_search(self, *criteria):
            return responses["search"]

        async def uid(self, command, *args):
            return responses[command]

    client = IMAPClient()
    client._client = FakeConnection()

    assert await client.search_unseen() == ["3", "7"]
    assert await client.fetch("7") == b"raw-message!"
    assert await client.mark_seen("7") is True


@pytest.mark.asyncio
async def test_imap_client_requires_connection():
    with pytest.raises(RuntimeError):
        await IMAPClient().search_unseen()
