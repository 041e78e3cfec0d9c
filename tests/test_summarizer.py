from __future__ import annotations

import pytest
import respx
from httpx import Response

from chatcore.core.errors import ProviderTransportError
from chatcore.orchestration.messages import Message
from chatcore.orchestration.request_context import EndpointOptions, RequestContext
from chatcore.orchestration.summarizer import DEFAULT_TITLE, generate_title, summarize_messages
from chatcore.providers.base import CompletionResult
from chatcore.providers.openai_compat import OpenAICompatProvider
from chatcore.utils.tokens import ELISION_MARKER


def _ctx() -> RequestContext:
    return RequestContext(EndpointOptions(model="gpt-4", context_strategy="summarize"))


@pytest.mark.asyncio
async def test_summary_prompt_carries_previous_summary_and_lines(make_provider, make_chain) -> None:
    provider = make_provider(completions=[CompletionResult(text=" They said hi. ", usage={"input_tokens": 40, "output_tokens": 4})])
    outcome = await summarize_messages(make_chain("hi", "hello"), 300, "Earlier stuff.", ctx=_ctx(), provider=provider)

    assert outcome.text == "They said hi."
    assert (outcome.prompt_tokens, outcome.completion_tokens) == (40, 4)
    assert outcome.model == "gpt-3.5-turbo"

    req = provider.requests[0]
    assert req.stream is False
    assert req.body["model"] == "gpt-3.5-turbo"
    assert req.body["max_tokens"] == 300
    prompt = req.body["messages"][0]["content"]
    assert "Current summary:\nEarlier stuff." in prompt
    assert "Human: hi\nAI: hello" in prompt


@pytest.mark.asyncio
async def test_oversized_message_uses_cut_off_prompt(make_provider, monkeypatch) -> None:
    monkeypatch.setenv("SUMMARY_MODEL", "tiny-model")
    monkeypatch.setenv("DEFAULT_CONTEXT_TOKENS", "400")
    from chatcore.core.settings import get_settings

    get_settings.cache_clear()
    provider = make_provider(completions=["cut summary"])
    big = [Message(id="u", is_created_by_user=True, text="BEGIN" + "z" * 2000 + "FINISH")]
    outcome = await summarize_messages(big, 100, None, ctx=_ctx(), provider=provider)

    assert outcome.text == "cut summary"
    prompt = provider.requests[0].body["messages"][0]["content"]
    assert prompt.startswith("The following text is cut-off:")
    assert ELISION_MARKER in prompt
    assert "Human: BEGIN" in prompt


@pytest.mark.asyncio
async def test_cut_off_split_uses_request_encoding(make_provider, monkeypatch) -> None:
    from chatcore.core.settings import get_settings
    from chatcore.orchestration import summarizer

    monkeypatch.setenv("SUMMARY_MODEL", "tiny-model")
    monkeypatch.setenv("DEFAULT_CONTEXT_TOKENS", "400")
    get_settings.cache_clear()
    seen = []
    real_split = summarizer.token_split

    def recording_split(text, size, encoding):
        seen.append(encoding)
        return real_split(text, size, encoding)

    monkeypatch.setattr(summarizer, "token_split", recording_split)
    ctx = RequestContext(EndpointOptions(model="gpt-4o", context_strategy="summarize"))
    big = [Message(id="u", is_created_by_user=True, text="z" * 2000)]
    await summarize_messages(big, 100, None, ctx=ctx, provider=make_provider(completions=["s"]))
    assert seen == [ctx.encoding]
    assert ctx.encoding.key == "o200k_base"


@pytest.mark.asyncio
async def test_summary_failure_returns_none(make_provider, make_chain) -> None:
    provider = make_provider(completions=[ProviderTransportError("down")])
    assert await summarize_messages(make_chain("hi"), 100, None, ctx=_ctx(), provider=provider) is None

    empty = make_provider(completions=["   "])
    assert await summarize_messages(make_chain("hi"), 100, None, ctx=_ctx(), provider=empty) is None


@pytest.mark.asyncio
async def test_generate_title(make_provider) -> None:
    provider = make_provider(completions=[CompletionResult(text='"Friendly Greeting."\nextra', usage={"input_tokens": 30, "output_tokens": 3})])
    title, usage = await generate_title("hi", "hello there", ctx=_ctx(), provider=provider)
    assert title == "Friendly Greeting"
    assert usage == {"input_tokens": 30, "output_tokens": 3}
    assert provider.requests[0].body["max_tokens"] == 16


@pytest.mark.asyncio
async def test_generate_title_falls_back(make_provider) -> None:
    provider = make_provider(completions=[ProviderTransportError("down")])
    title, usage = await generate_title("hi", "hello", ctx=_ctx(), provider=provider)
    assert title == DEFAULT_TITLE
    assert usage is None


@pytest.mark.asyncio
@respx.mock
async def test_garbled_provider_reply_degrades_gracefully(make_chain) -> None:
    respx.post("https://api.openai.com/v1/chat/completions").mock(
        return_value=Response(200, text="<html>bad gateway</html>")
    )
    provider = OpenAICompatProvider()
    assert await summarize_messages(make_chain("hi", "hello"), 100, None, ctx=_ctx(), provider=provider) is None
    title, usage = await generate_title("hi", "hello", ctx=_ctx(), provider=provider)
    assert (title, usage) == (DEFAULT_TITLE, None)
