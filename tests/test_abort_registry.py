from __future__ import annotations

from typing import Any, Dict, List

import pytest

from chatcore.orchestration.abort_registry import AbortData, AbortEntry, AbortRegistry, abort_key
from chatcore.orchestration.completion import RunState, StreamState
from chatcore.orchestration.pipeline import ChatRequest, run_chat
from chatcore.orchestration.request_context import EndpointOptions
from chatcore.providers.base import StreamEvent


class RecordingStore:
    def __init__(self) -> None:
        self.saved: List[Dict[str, Any]] = []
        self.spent: List[Any] = []
        self.updates: List[Any] = []

    def save_message(self, record):
        self.saved.append(record)

    def update_message(self, message_id, fields):
        self.updates.append((message_id, fields))

    def spend_tokens(self, record):
        self.spent.append(record)

    def get_convo(self, conversation_id):
        return {"conversation_id": conversation_id, "title": "Chat about cats"}

    def save_convo(self, conversation_id, **fields):
        return {"conversation_id": conversation_id, **fields}

    def get_messages(self, conversation_id):
        return []


def _entry(text: str = "partial reply") -> AbortEntry:
    run = RunState(key="c1")
    return AbortEntry(
        run=run,
        endpoint_option=EndpointOptions(model="gpt-4"),
        get_abort_data=lambda: AbortData(
            conversation_id="c1",
            user="u1",
            user_message={"message_id": "m1", "text": "hi"},
            response_message_id="r1",
            text=text,
            model="gpt-4",
            prompt_tokens=12,
        ),
    )


def test_abort_key_prefers_conversation() -> None:
    assert abort_key("c1", "u1") == "c1"
    assert abort_key(None, "u1") == "u1"
    with pytest.raises(ValueError):
        abort_key(None, None)


def test_unknown_key_returns_none() -> None:
    registry = AbortRegistry()
    assert registry.abort_message("missing") is None


def test_abort_cancels_run_and_builds_incomplete_message() -> None:
    registry = AbortRegistry()
    entry = _entry()
    registry.register("c1", entry)
    store = RecordingStore()

    final = registry.abort_message("c1", store=store)

    assert "c1" not in registry
    assert entry.run.cancel_token.cancelled
    assert entry.aborted
    assert final is entry.final
    assert final["final"] is True
    assert final["title"] == "Chat about cats"
    assert final["requestMessage"]["message_id"] == "m1"
    response = final["responseMessage"]
    assert response["text"] == "partial reply"
    assert response["finish_reason"] == "incomplete"
    assert response["parent_message_id"] == "m1"
    assert response["message_id"] == "r1"
    assert response["unfinished"] is False
    # stored as the reply will be sent on later turns: per-message overhead plus role
    assert response["token_count"] == 3 + len("assistant") + len("partial reply")
    assert final["spend"]["context"] == "incomplete"
    assert final["spend"]["prompt_tokens"] == 12
    assert store.saved == [response]
    assert store.spent[0].completion_tokens == len("partial reply")

    # a second abort finds nothing
    assert registry.abort_message("c1", store=store) is None


def test_abort_without_store_still_answers() -> None:
    registry = AbortRegistry()
    registry.register("c1", _entry("x"))
    final = registry.abort_message("c1")
    assert final["conversation"] == {"conversation_id": "c1"}
    assert final["title"] == "New Chat"


def test_remove_only_drops_matching_entry() -> None:
    registry = AbortRegistry()
    old, new = _entry(), _entry()
    registry.register("c1", old)
    registry.register("c1", new)
    assert registry.remove("c1", old) is None
    assert registry.get("c1") is new
    assert registry.remove("c1", new) is new
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_abort_during_run_returns_incomplete_final(make_provider, make_chain) -> None:
    registry = AbortRegistry()
    store = RecordingStore()
    request = ChatRequest(
        leaf_id="m1",
        messages=make_chain("tell me a story"),
        options=EndpointOptions(model="gpt-4"),
        conversation_id="c1",
        user="u1",
    )
    seen = []

    def sink(token: str) -> None:
        seen.append(token)
        if token == "Once":
            registry.abort_message(request.abort_key, store=store)

    provider = make_provider([
        StreamEvent("delta", text="Once"),
        StreamEvent("delta", text=" upon"),
        StreamEvent("final", message={"role": "assistant", "content": "Once upon", "finish_reason": "stop"}),
    ])
    result = await run_chat(request, provider=provider, registry=registry, store=store, on_progress=sink)

    assert seen == ["Once"]
    assert result.state is StreamState.ABORTED
    assert result.finish_reason == "incomplete"
    assert result.reply_text == "Once"
    assert result.aborted["responseMessage"]["text"] == "Once"
    assert len(registry) == 0
    # the abort path owns the writes
    assert [r["text"] for r in store.saved] == ["Once"]
    assert [s.context for s in store.spent] == ["incomplete"]


@pytest.mark.asyncio
async def test_abort_between_chunks_agrees_with_stored_message(make_provider, make_chain) -> None:
    registry = AbortRegistry()
    store = RecordingStore()
    request = ChatRequest(
        leaf_id="m1",
        messages=make_chain("count to three"),
        options=EndpointOptions(model="gpt-4"),
        conversation_id="c1",
        user="u1",
    )
    seen = []
    provider = make_provider([
        StreamEvent("delta", text="Hel"),
        lambda: registry.abort_message("c1", store=store),
        StreamEvent("delta", text="lo"),
        StreamEvent("final", message={"role": "assistant", "content": "Hello", "finish_reason": "stop"}),
    ])
    result = await run_chat(request, provider=provider, registry=registry, store=store, on_progress=seen.append)

    assert seen == ["Hel"]
    assert result.reply_text == "Hel"
    assert result.state is StreamState.ABORTED
    assert [r["text"] for r in store.saved] == ["Hel"]
    assert result.aborted["responseMessage"]["text"] == "Hel"
