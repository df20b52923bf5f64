import types
from typing import Any, Dict, List

import pytest

from mail_exchange.core import MailExchangeCore, summarise_results
from mail_exchange.errors import PersistenceError, TransportError
from mail_exchange.models import ForwardRule, InboundMessage, RecipientResult


class DummyTransport:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.failing: set[str] = set()
        self.closed = False

    async def send(self, envelope_from, to, subject, text, html=None, attachments=()):
        if to in self.failing:
            raise TransportError(f"550 rejected {to}")
        self.sent.append({"from": envelope_from, "to": to, "subject": subject, "text": text})

    async def close(self):
        self.closed = True

    def forwarded_to(self) -> List[str]:
        return [m["to"] for m in self.sent if not m["subject"].startswith("[Mail Exchange]")]

    def notifications(self) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["subject"].startswith("[Mail Exchange]")]


async def no_sleep(_delay):
    return None


PHOTO = ForwardRule(tag="[PHOTO]", recipients=("a@x.com", "b@x.com"))
INVOICE = ForwardRule(tag="[INVOICE]", recipients=("billing@x.com",))


def make_message(message_id="<m1@y.com>", subject="Order photos [PHOTO]", sender_address="client@y.com"):
    return InboundMessage(
        message_id=message_id,
        subject=subject,
        sender=f"Client <{sender_address}>" if sender_address else "unknown",
        sender_address=sender_address,
        text="body",
    )


async def make_core(tmp_path, allowed_senders=(), rules=(PHOTO, INVOICE)) -> MailExchangeCore:
    core = MailExchangeCore(
        dedup_path=str(tmp_path / ".forwarded-ids"),
        rules=rules,
        transport=DummyTransport(),
        envelope_from="relay@x.com",
        allowed_senders=allowed_senders,
    )
    core.delivery._sleep = no_sleep
    core.logger = types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )
    await core.init()
    return core


def test_summarise_results():
    ok = RecipientResult("a@x.com", True, 1)
    bad = RecipientResult("b@x.com", False, 3, "err")
    assert summarise_results([ok, ok]) == ("success", None)
    assert summarise_results([ok, bad]) == ("failed", "1/2 failed")
    assert summarise_results([bad, bad, ok]) == ("failed", "2/3 failed")


@pytest.mark.asyncio
async def test_forward_to_all_recipients_success(tmp_path):
    core = await make_core(tmp_path)
    task = await core.process_message(make_message())

    assert task is not None
    assert task.id == 1
    assert task.status == "success"
    assert task.error is None
    assert task.matched_tag == "[PHOTO]"
    assert task.recipients == ("a@x.com", "b@x.com")
    assert task.sender == "Client <client@y.com>"
    assert sorted(core.transport.forwarded_to()) == ["a@x.com", "b@x.com"]

    notes = core.transport.notifications()
    assert len(notes) == 1
    assert notes[0]["to"] == "client@y.com"
    assert "2 delivered / 0 failed / 2 total" in notes[0]["text"]

    assert core.tasks() == [task]
    assert core.dedup.is_processed("<m1@y.com>")


@pytest.mark.asyncio
async def test_partial_failure_marks_task_failed(tmp_path):
    core = await make_core(tmp_path)
    core.transport.failing.add("b@x.com")

    task = await core.process_message(make_message())

    assert task.status == "failed"
    assert task.error == "1/2 failed"
    forwarded = core.transport.forwarded_to()
    assert forwarded.count("a@x.com") == 1
    assert "b@x.com" not in forwarded
    notes = core.transport.notifications()
    assert notes[0]["subject"].startswith("[Mail Exchange] Partially failed")
    assert core.dedup.is_processed("<m1@y.com>")


@pytest.mark.asyncio
async def test_already_processed_message_has_no_side_effects(tmp_path):
    (tmp_path / ".forwarded-ids").write_text("<m1@y.com>\n", encoding="utf-8")
    core = await make_core(tmp_path)

    assert await core.process_message(make_message()) is None
    assert core.transport.sent == []
    assert core.tasks() == []
    assert (tmp_path / ".forwarded-ids").read_text(encoding="utf-8") == "<m1@y.com>\n"


@pytest.mark.asyncio
async def test_second_delivery_of_same_message_is_skipped(tmp_path):
    core = await make_core(tmp_path)
    await core.process_message(make_message())
    sent_before = len(core.transport.sent)

    assert await core.process_message(make_message()) is None
    assert len(core.transport.sent) == sent_before
    assert len(core.tasks()) == 1


@pytest.mark.asyncio
async def test_disallowed_sender_is_dropped_and_marked(tmp_path):
    core = await make_core(tmp_path, allowed_senders=["@trusted.com"])

    assert await core.process_message(make_message()) is None
    assert core.transport.sent == []
    assert core.tasks() == []
    assert core.dedup.is_processed("<m1@y.com>")


@pytest.mark.asyncio
async def test_allowed_sender_is_forwarded(tmp_path):
    core = await make_core(tmp_path, allowed_senders=["@Y.com"])
    assert await core.process_message(make_message()) is not None


@pytest.mark.asyncio
async def test_unmatched_subject_is_marked_without_notification(tmp_path):
    core = await make_core(tmp_path)

    assert await core.process_message(make_message(subject="Just saying hi")) is None
    assert core.transport.sent == []
    assert core.tasks() == []
    assert core.dedup.is_processed("<m1@y.com>")


@pytest.mark.asyncio
async def test_no_notification_without_sender_address(tmp_path):
    core = await make_core(tmp_path)
    task = await core.process_message(make_message(sender_address=""))

    assert task.status == "success"
    assert task.sender == "unknown"
    assert core.transport.notifications() == []
    assert len(core.tasks()) == 1


@pytest.mark.asyncio
async def test_notification_failure_keeps_task(tmp_path):
    core = await make_core(tmp_path)
    core.transport.failing.add("client@y.com")

    task = await core.process_message(make_message())
    assert task.status == "success"
    assert core.tasks() == [task]
    assert core.dedup.is_processed("<m1@y.com>")


@pytest.mark.asyncio
async def test_persistence_error_after_delivery_propagates(tmp_path):
    core = await make_core(tmp_path)

    def broken(message_id):
        raise PersistenceError(message_id, "disk full")

    core.dedup.mark_processed = broken

    with pytest.raises(PersistenceError):
        await core.process_message(make_message())
    assert sorted(core.transport.forwarded_to()) == ["a@x.com", "b@x.com"]
    assert core.transport.notifications() == []
    assert core.tasks() == []


@pytest.mark.asyncio
async def test_marker_is_written_after_delivery(tmp_path):
    core = await make_core(tmp_path)
    order: List[str] = []
    original_deliver = core.delivery.deliver
    original_mark = core.dedup.mark_processed

    async def deliver(message, rule):
        order.append("deliver")
        return await original_deliver(message, rule)

    def mark(message_id):
        order.append("mark")
        original_mark(message_id)

    core.delivery.deliver = deliver
    core.dedup.mark_processed = mark

    await core.process_message(make_message())
    assert order == ["deliver", "mark"]


@pytest.mark.asyncio
async def test_history_is_newest_first_and_bounded(tmp_path):
    core = await make_core(tmp_path, rules=(ForwardRule(tag="[T]", recipients=("a@x.com",)),))
    for n in range(101):
        await core.process_message(make_message(message_id=f"<{n}@y>", subject=f"msg {n} [T]", sender_address=""))

    tasks = core.tasks()
    assert len(tasks) == 100
    assert tasks[0].subject == "msg 100 [T]"
    assert all(t.subject != "msg 0 [T]" for t in tasks)


@pytest.mark.asyncio
async def test_dedup_survives_restart(tmp_path):
    core = await make_core(tmp_path)
    await core.process_message(make_message())

    restarted = await make_core(tmp_path)
    assert await restarted.process_message(make_message()) is None
    assert restarted.transport.sent == []


@pytest.mark.asyncio
async def test_stop_closes_transport(tmp_path):
    core = await make_core(tmp_path)
    await core.start()
    await core.stop()
    assert core.transport.closed is True
