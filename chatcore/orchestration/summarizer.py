# chatcore/orchestration/summarizer.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from chatcore.core import metrics
from chatcore.core.errors import ChatCoreError
from chatcore.orchestration.budget import get_model_max_tokens
from chatcore.orchestration.context_builder import get_messages_within_token_limit, message_token_count
from chatcore.orchestration.messages import Message
from chatcore.orchestration.request_context import RequestContext
from chatcore.orchestration.request_shaper import shape_request
from chatcore.providers.base import Provider
from chatcore.utils.tokens import ELISION_MARKER, count_tokens, token_split

logger = logging.getLogger("app.context")

SUMMARY_PROMPT = """Progressively summarize the lines of conversation provided, adding onto the previous summary and returning a new summary.

EXAMPLE
Current summary:
The human asks what the AI thinks of artificial intelligence. The AI thinks artificial intelligence is a force for good.

New lines of conversation:
Human: Why do you think artificial intelligence is a force for good?
AI: Because artificial intelligence will help humans reach their full potential.

New summary:
The human asks what the AI thinks of artificial intelligence. The AI thinks artificial intelligence is a force for good because it will help humans reach their full potential.
END OF EXAMPLE

Current summary:
{summary}

New lines of conversation:
{new_lines}

New summary:"""

CUT_OFF_PROMPT = """The following text is cut-off:
{new_lines}

Summarize the content as best as you can, noting that it was cut-off.

Summary:"""

TITLE_PROMPT = (
    "Please generate a concise, 5-word-or-less title for the conversation, using its same language, "
    "with no punctuation. Apply title case conventions appropriate for the language. "
    "Never directly mention the language name or the word \"title\""
)
DEFAULT_TITLE = "New Chat"

# 3 tokens for the assistant label plus the summarizer prompt itself
PROMPT_BUFFER = 101


@dataclass
class SummaryOutcome:
    text: str
    prompt_tokens: int
    completion_tokens: int
    model: str


def _line(message: Message) -> str:
    role = message.resolved_role
    label = "Human" if role == "user" else ("System" if role == "system" else "AI")
    return f"{label}: {message.text}"


async def summarize_messages(
    messages: List[Message],
    remaining_tokens: int,
    previous_summary: Optional[str],
    *,
    ctx: RequestContext,
    provider: Provider,
) -> Optional[SummaryOutcome]:
    """Summarize ``messages`` into one progressive summary.

    Returns None when the sub-call fails; the caller falls back to plain discard.
    """
    s = ctx.settings
    model = s.summary_model
    max_ctx = get_model_max_tokens(model) or s.default_context_tokens

    counts = {m.id: message_token_count(m, ctx) for m in messages}
    context = list(messages)
    template = SUMMARY_PROMPT
    if sum(counts.values()) + PROMPT_BUFFER > max_ctx:
        context = get_messages_within_token_limit(messages, counts, max_ctx - PROMPT_BUFFER).context

    if not context:
        latest = messages[-1]
        chunks = token_split(latest.text, max(1, (max_ctx - PROMPT_BUFFER) // 3), ctx.encoding)
        cut = f"{chunks[0]}{ELISION_MARKER}{chunks[-1]}" if len(chunks) > 1 else "".join(chunks)
        context = [latest.model_copy(update={"text": cut})]
        template = CUT_OFF_PROMPT
        logger.info({"event": "summary.cut_off", "message_id": latest.id})

    new_lines = "\n".join(_line(m) for m in context)
    prompt = template.format(summary=previous_summary or "", new_lines=new_lines)
    overrides = {
        "model": model,
        "temperature": 0.2,
        "max_tokens": max(1, min(remaining_tokens, s.default_response_tokens)),
    }
    req = shape_request(ctx, [{"role": "system", "content": prompt}], overrides=overrides, stream=False)
    try:
        result = await provider.complete(req)
    except ChatCoreError as exc:
        metrics.CTX_SUMMARIES.labels("error").inc()
        logger.warning({"event": "summary.failed", "error": str(exc)})
        return None

    text = (result.text or "").strip()
    if not text:
        metrics.CTX_SUMMARIES.labels("empty").inc()
        return None
    metrics.CTX_SUMMARIES.labels("ok").inc()
    usage = result.usage or {}
    return SummaryOutcome(
        text=text,
        prompt_tokens=int(usage.get("input_tokens") or count_tokens(prompt, ctx.encoding)),
        completion_tokens=int(usage.get("output_tokens") or count_tokens(text, ctx.encoding)),
        model=model,
    )


_TITLE_STRIP = re.compile(r"^[\s\"'`]+|[\s\"'`.!?:;,]+$")


async def generate_title(
    text: str,
    response_text: str,
    *,
    ctx: RequestContext,
    provider: Provider,
) -> tuple[str, Optional[Dict[str, int]]]:
    """Short conversation title; falls back to "New Chat" on any provider failure."""
    model = ctx.settings.title_model
    convo = f"||>User:\n\"{text}\"\n||>Response:\n\"{response_text}\"\n\n||>Title:"
    payload = [{"role": "system", "content": TITLE_PROMPT}, {"role": "user", "content": convo}]
    overrides = {
        "model": model,
        "temperature": 0.2,
        "presence_penalty": 0,
        "frequency_penalty": 0,
        "max_tokens": 16,
    }
    try:
        req = shape_request(ctx, payload, overrides=overrides, stream=False)
        result = await provider.complete(req)
    except ChatCoreError as exc:
        logger.warning({"event": "title.failed", "error": str(exc)})
        return DEFAULT_TITLE, None
    title = _TITLE_STRIP.sub("", (result.text or "").splitlines()[0] if result.text else "")
    return (title or DEFAULT_TITLE), result.usage
