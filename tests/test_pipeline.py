from __future__ import annotations

import pytest

from chatcore.core.errors import ContextOverflow, ProviderHardError
from chatcore.orchestration.abort_registry import AbortRegistry
from chatcore.orchestration.completion import StreamState
from chatcore.orchestration.messages import Message
from chatcore.orchestration.pipeline import ChatRequest, message_record, run_chat
from chatcore.orchestration.request_context import EndpointOptions
from chatcore.providers.base import CompletionResult, StreamEvent
from chatcore.utils.tokens import REPLY_PRIMING_TOKENS, count_message_tokens


def _persist(store, msgs, conversation_id="c1"):
    for m in msgs:
        store.save_message(message_record(m, conversation_id, "u1"))


@pytest.mark.asyncio
async def test_run_chat_streams_and_records(store, make_provider, make_chain, stream_events) -> None:
    msgs = make_chain("hi", "hello", "how are you")
    _persist(store, msgs)
    provider = make_provider(
        stream_events("Fine", ", thanks"),
        completions=[CompletionResult(text="Small Talk", usage={"input_tokens": 20, "output_tokens": 2})],
    )
    registry = AbortRegistry()
    tokens = []
    request = ChatRequest(
        leaf_id="m3",
        messages=store.get_messages("c1"),
        options=EndpointOptions(model="gpt-4", prompt_prefix="Be kind"),
        conversation_id="c1",
        user="u1",
        generate_title=True,
    )

    result = await run_chat(request, provider=provider, registry=registry, store=store, on_progress=tokens.append)

    assert result.reply_text == "Fine, thanks"
    assert result.state is StreamState.COMPLETED
    assert tokens == ["Fine", ", thanks"]
    assert result.title == "Small Talk"
    assert len(registry) == 0

    sent = provider.requests[0].body["messages"]
    assert [m["role"] for m in sent] == ["user", "assistant", "system", "user"]
    assert sent[2]["content"] == "Instructions:\nBe kind"

    assert [s.context for s in result.spend] == ["message", "title"]
    assert result.completion_tokens == len("Fine, thanks")
    assert result.prompt_tokens == result.spend[0].prompt_tokens

    saved = {m.id: m for m in store.get_messages("c1")}
    reply = saved[request.response_message_id]
    assert reply.text == "Fine, thanks"
    assert reply.parent_id == "m3"
    assert saved["m3"].token_count == result.token_count_map["m3"]
    assert store.get_convo("c1")["title"] == "Small Talk"
    contexts = sorted({t.context for t in store.get_transactions("c1")})
    assert contexts == ["message", "title"]


@pytest.mark.asyncio
async def test_provider_usage_wins_over_local_counts(make_provider, make_chain) -> None:
    events = [
        StreamEvent("delta", text="ok"),
        StreamEvent(
            "final",
            message={"role": "assistant", "content": "ok", "finish_reason": "stop"},
            usage={"input_tokens": 77, "output_tokens": 5, "total_tokens": 82},
        ),
    ]
    request = ChatRequest(leaf_id="m1", messages=make_chain("hi"), options=EndpointOptions(model="gpt-4"), user="u1")
    result = await run_chat(request, provider=make_provider(events))
    assert (result.prompt_tokens, result.completion_tokens) == (77, 5)


@pytest.mark.asyncio
async def test_summary_is_persisted_on_last_dropped_message(store, make_provider) -> None:
    msgs = [
        Message(id=f"m{i}", parent_id=f"m{i - 1}" if i > 1 else None, conversation_id="c1",
                is_created_by_user=i % 2 == 1, text=str(i) * 40)
        for i in range(1, 6)
    ]
    _persist(store, msgs)
    provider = make_provider(
        [StreamEvent("delta", text="k"), StreamEvent("final", message={"role": "assistant", "content": "k", "finish_reason": "stop"})],
        completions=[CompletionResult(text="Earlier they talked about numbers.")],
    )
    request = ChatRequest(
        leaf_id="m5",
        messages=store.get_messages("c1"),
        options=EndpointOptions(
            model="gpt-4",
            context_strategy="summarize",
            max_context_tokens=600,
            max_prompt_tokens=200,
            model_options={"max_tokens": 50},
        ),
        conversation_id="c1",
        user="u1",
    )
    result = await run_chat(request, provider=provider, store=store)

    summary_req, chat_req = provider.requests
    assert summary_req.stream is False
    assert chat_req.body["messages"][0] == {"role": "system", "content": "Earlier they talked about numbers."}
    assert "summary" in [s.context for s in result.spend]

    dropped_id = result.token_count_map["summaryMessage"]["message_id"]
    stored = {m.id: m for m in store.get_messages("c1")}
    assert stored[dropped_id].summary == "Earlier they talked about numbers."
    assert stored[dropped_id].summary_token_count == result.token_count_map["summaryMessage"]["token_count"]


@pytest.mark.asyncio
async def test_overflow_propagates_before_any_provider_call(make_provider, make_chain) -> None:
    provider = make_provider()
    request = ChatRequest(
        leaf_id="m1",
        messages=make_chain("z" * 500),
        options=EndpointOptions(model="gpt-4", max_prompt_tokens=100),
        conversation_id="c1",
    )
    with pytest.raises(ContextOverflow):
        await run_chat(request, provider=provider)
    assert provider.requests == []


@pytest.mark.asyncio
async def test_hard_error_unregisters_run(make_provider, make_chain) -> None:
    registry = AbortRegistry()
    provider = make_provider([StreamEvent("delta", text="half"), StreamEvent("error", error=ProviderHardError("boom"))])
    request = ChatRequest(leaf_id="m1", messages=make_chain("hi"), options=EndpointOptions(model="gpt-4"), conversation_id="c1")
    with pytest.raises(ProviderHardError) as exc:
        await run_chat(request, provider=provider, registry=registry)
    assert exc.value.partial_text == "half"
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_stored_reply_count_matches_next_turn_prompt(store, make_provider, make_chain, stream_events) -> None:
    _persist(store, make_chain("hi"))
    options = EndpointOptions(model="gpt-4", model_label="Bot")
    first = ChatRequest(leaf_id="m1", messages=store.get_messages("c1"), options=options, conversation_id="c1", user="u1")
    await run_chat(first, provider=make_provider(stream_events("Hello", " there")), store=store)

    reply = {m.id: m for m in store.get_messages("c1")}[first.response_message_id]
    # per-message overhead + role + name + 1 + content
    assert reply.token_count == 3 + len("assistant") + len("Bot") + 1 + len("Hello there")

    store.save_message(
        message_record(
            Message(id="m3", parent_id=reply.id, conversation_id="c1", is_created_by_user=True, text="and you?"),
            "c1",
            "u1",
        )
    )
    provider = make_provider(stream_events("ok"))
    second = ChatRequest(leaf_id="m3", messages=store.get_messages("c1"), options=options, conversation_id="c1", user="u1")
    result = await run_chat(second, provider=provider, store=store)

    sent = provider.requests[0].body["messages"]
    assert sent[1] == {"role": "assistant", "name": "Bot", "content": "Hello there"}
    assert result.prompt_tokens == REPLY_PRIMING_TOKENS + sum(count_message_tokens(u) for u in sent)
    assert result.token_count_map[reply.id] == reply.token_count
