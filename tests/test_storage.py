# tests/test_storage.py
from __future__ import annotations

from decimal import Decimal

from chatcore.orchestration.messages import order_messages
from chatcore.storage.models import Conversation, Message
from chatcore.storage.repo import SpendRecord


def test_messages_round_trip_and_order(store) -> None:
    store.save_convo("c1", user="u1", endpoint="openAI", model="gpt-4")
    store.save_message({
        "message_id": "m1",
        "conversation_id": "c1",
        "parent_message_id": None,
        "role": "user",
        "is_created_by_user": True,
        "text": "hi",
        "attachments": [{"type": "image/png", "url": "data:image/png;base64,AAAA", "width": 10, "height": 10}],
    })
    store.save_message({"message_id": "m2", "conversation_id": "c1", "parent_message_id": "m1", "role": "assistant", "text": "hello"})

    msgs = store.get_messages("c1")
    assert [m.id for m in order_messages(msgs, "m2")] == ["m1", "m2"]
    first = next(m for m in msgs if m.id == "m1")
    assert first.attachments[0].is_image
    assert first.attachments[0].width == 10


def test_save_message_upserts_and_creates_conversation(store) -> None:
    store.save_message({"message_id": "m1", "conversation_id": "new", "text": "draft", "unknown_field": 1})
    store.save_message({"message_id": "m1", "conversation_id": "new", "text": "final"})
    assert store.get_convo("new")["conversation_id"] == "new"
    msgs = store.get_messages("new")
    assert len(msgs) == 1
    assert msgs[0].text == "final"


def test_update_message_sets_summary(store) -> None:
    store.save_message({"message_id": "m1", "conversation_id": "c1", "text": "hi"})
    store.update_message("m1", {"summary": "short", "summary_token_count": 4, "bogus": True})
    store.update_message("missing", {"summary": "ignored"})
    msg = store.get_messages("c1")[0]
    assert (msg.summary, msg.summary_token_count) == ("short", 4)


def test_spend_tokens_writes_one_row_per_token_type(store) -> None:
    store.spend_tokens(SpendRecord(1000, 500, "gpt-4", "c1", "u1", "message"))
    store.spend_tokens(SpendRecord(0, 20, "gpt-4", "c1", "u1", "incomplete"))
    rows = store.get_transactions("c1")
    by_kind = {(r.context, r.token_type): r for r in rows}
    assert set(by_kind) == {("message", "prompt"), ("message", "completion"), ("incomplete", "completion")}
    assert by_kind[("message", "prompt")].raw_amount == 1000
    assert by_kind[("message", "prompt")].token_value == Decimal("0.030000")
    assert by_kind[("message", "completion")].token_value == Decimal("0.030000")


def test_conversation_delete_cascades(store) -> None:
    store.save_message({"message_id": "m1", "conversation_id": "c9", "text": "hi"})
    with store.session_scope() as s:
        s.delete(s.get(Conversation, "c9"))
    with store.session_scope() as s:
        assert s.query(Message).filter(Message.conversation_id == "c9").count() == 0


def test_save_convo_keeps_existing_fields(store) -> None:
    store.save_convo("c1", user="u1", model="gpt-4")
    convo = store.save_convo("c1", title="Cats")
    assert convo == {"conversation_id": "c1", "user": "u1", "title": "Cats", "endpoint": None, "model": "gpt-4"}
