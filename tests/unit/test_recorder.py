import pytest
from datetime import datetime, timezone

from schemas import ConversationMeta, WhatsAppMessage
from services.recorder import (
    MessageRecorder,
    get_counterparty,
    serialize_message,
    compute_sent_at,
    INBOUND,
    OUTBOUND,
)
from conftest import make_message


def conversation(store):
    store.conversations.append({"id": "c1", "number_id": "n1", "customer_wa_id": "x",
                                "bot_version_id": None, "status": "open", "last_message_at": None})
    return ConversationMeta(conversation_id="c1", customer_wa_id="x")


def test_counterparty_inbound_prefers_sender_then_author():
    assert get_counterparty(WhatsAppMessage(**{"from": "a@c.us", "author": "b@c.us"}), INBOUND) == "a@c.us"
    assert get_counterparty(WhatsAppMessage(author="b@c.us"), INBOUND) == "b@c.us"
    assert get_counterparty(WhatsAppMessage(), INBOUND) is None


def test_counterparty_outbound_prefers_recipient():
    assert get_counterparty(WhatsAppMessage(**{"from": "me@c.us", "to": "c@c.us"}), OUTBOUND) == "c@c.us"
    assert get_counterparty(WhatsAppMessage(**{"from": "me@c.us"}), OUTBOUND) == "me@c.us"
    assert get_counterparty(WhatsAppMessage(**{"to": ""}), OUTBOUND) is None


def test_serialize_uses_wire_field_names():
    payload = serialize_message(make_message(body="hi", id="m1", hasMedia=True))

    assert payload["id"] == "m1"
    assert payload["from"] == "9665551234@c.us"
    assert payload["fromMe"] is False
    assert payload["hasMedia"] is True
    assert set(payload) == {"id", "from", "to", "author", "body", "type", "timestamp",
                            "fromMe", "hasMedia", "ack", "deviceType", "hasQuotedMsg"}


def test_sent_at_from_epoch_seconds_or_now():
    assert compute_sent_at(WhatsAppMessage(timestamp=1700000000)) == datetime(
        2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc
    )
    before = datetime.now(timezone.utc)
    assert compute_sent_at(WhatsAppMessage()) >= before


@pytest.mark.asyncio
async def test_record_inbound_message(store):
    recorder = MessageRecorder(store)
    meta = conversation(store)

    message_id = await recorder.record("n1", meta, make_message(), INBOUND)

    row = store.messages[0]
    assert row["id"] == message_id
    assert row["direction"] == "inbound"
    assert row["delivery_status"] == "delivered"
    assert row["message_type"] == "chat"
    assert store.conversations[0]["last_message_at"] == row["sent_at"]


@pytest.mark.asyncio
async def test_record_outbound_is_pending_and_defaults_type(store):
    recorder = MessageRecorder(store)
    meta = conversation(store)

    await recorder.record("n1", meta, make_message(from_me=True, type=None), OUTBOUND)

    assert store.messages[0]["delivery_status"] == "pending"
    assert store.messages[0]["message_type"] == "text"


@pytest.mark.asyncio
async def test_insert_failure_returns_none_and_skips_touch(store):
    store.fail.add("insert_message")
    recorder = MessageRecorder(store)

    assert await recorder.record("n1", conversation(store), make_message(), INBOUND) is None
    assert "touch_conversation" not in store.calls


@pytest.mark.asyncio
async def test_touch_failure_keeps_message(store):
    store.fail.add("touch_conversation")
    recorder = MessageRecorder(store)

    message_id = await recorder.record("n1", conversation(store), make_message(), INBOUND)

    assert message_id is not None
    assert len(store.messages) == 1
