from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from chatcore.core import metrics
from chatcore.core.errors import ContextOverflow
from chatcore.orchestration.messages import Message, format_message
from chatcore.orchestration.request_context import RequestContext
from chatcore.utils.tokens import (
    REPLY_PRIMING_TOKENS,
    EncodingSpec,
    count_message_tokens,
    count_tokens,
    image_token_cost,
    truncate_middle,
    truncate_to_tokens,
)

logger = logging.getLogger("app.context")

# (messages_to_refine, remaining_tokens, previous_summary) -> summary text or None
Summarize = Callable[[List[Message], int, Optional[str]], Awaitable[Optional[str]]]


@dataclass
class SummaryRecord:
    message_id: str
    text: str
    token_count: int


@dataclass
class Window:
    context: List[Message]
    messages_to_refine: List[Message]
    remaining_tokens: int
    used_tokens: int


@dataclass
class FitResult:
    payload: Union[List[Dict[str, Any]], str]
    prompt_tokens: int
    remaining_tokens: int
    token_count_map: Dict[str, Any] = field(default_factory=dict)
    messages_to_refine: List[Message] = field(default_factory=list)
    summary: Optional[SummaryRecord] = None
    truncated: bool = False
    model_options: Dict[str, Any] = field(default_factory=dict)


# ---------------- token accounting ----------------

def format_for(message: Message, ctx: RequestContext) -> Dict[str, Any]:
    return format_message(
        message,
        user_name=ctx.options.user_name,
        assistant_name=ctx.options.model_label,
        image_detail=ctx.options.image_detail,
    )


def message_token_count(message: Message, ctx: RequestContext) -> int:
    """Token count of a message as sent, cached on the message."""
    if message.token_count is not None:
        return message.token_count
    unit = format_for(message, ctx)
    if isinstance(unit["content"], list):
        unit = {**unit, "content": message.text}
    n = count_message_tokens(unit, ctx.encoding)
    if message.resolved_role == "user":
        for att in message.attachments:
            if att.is_image and att.url and not att.embedded:
                n += image_token_cost(att.width, att.height, ctx.options.image_detail)
    message.token_count = n
    return n


def reply_token_count(text: str, encoding: Union[str, EncodingSpec], assistant_name: Optional[str] = None) -> int:
    """Token count of an assistant reply as later turns will send it."""
    unit = format_message(Message(id="", role="assistant", text=text or ""), assistant_name=assistant_name)
    return count_message_tokens(unit, encoding)


# ---------------- instructions ----------------

def build_context_document(messages: Sequence[Message], *, full_document: bool, max_chars: int) -> str:
    """Collect extracted text of embedded (non-image) attachments into one document."""
    files: List[str] = []
    for msg in messages:
        for att in msg.attachments:
            if not att.embedded or att.is_image or not att.text:
                continue
            text = att.text if full_document else att.text[:max_chars]
            files.append(
                f"<file>\n<filename>{att.filename or att.file_id or 'file'}</filename>\n"
                f"<content>{text}</content>\n</file>"
            )
    if not files:
        return ""
    body = "\n".join(files)
    return f"The user has attached files to the conversation:\n\n<files>\n{body}\n</files>\n\n"


def instructions_text(ctx: RequestContext, context_document: str = "") -> str:
    parts = [context_document + (ctx.prompt_prefix or "").strip()]
    if ctx.settings.safety_prompt:
        parts.append(ctx.settings.safety_prompt.strip())
    return "\n".join(p for p in parts if p).strip()


def build_instructions(ctx: RequestContext, context_document: str = "") -> Optional[Dict[str, Any]]:
    text = instructions_text(ctx, context_document)
    if not text:
        return None
    return {"role": "system", "name": "instructions", "content": f"Instructions:\n{text}"}


def add_instructions(units: List[Dict[str, Any]], instructions: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Place instructions immediately before the latest message."""
    if not instructions:
        return list(units)
    if not units:
        return [instructions]
    return [*units[:-1], instructions, units[-1]]


# ---------------- discard window ----------------

def get_messages_within_token_limit(
    messages: Sequence[Message], counts: Dict[str, int], max_tokens: int
) -> Window:
    """Keep the newest messages that fit; everything older is returned for refinement.

    Accounting starts at the reply-priming overhead. The retained list keeps
    chronological order.
    """
    used = REPLY_PRIMING_TOKENS
    context: List[Message] = []
    idx = len(messages) - 1
    while idx >= 0 and used < max_tokens:
        n = counts[messages[idx].id]
        if used + n > max_tokens:
            break
        context.append(messages[idx])
        used += n
        idx -= 1
    context.reverse()
    return Window(context, list(messages[: idx + 1]), max_tokens - used, used)


# ---------------- strategy ----------------

def _last_resort(message: Message, room: int, ctx: RequestContext) -> Optional[Dict[str, Any]]:
    unit = format_for(message, ctx)
    overhead = count_message_tokens({**unit, "content": ""}, ctx.encoding)
    text = truncate_middle(message.text, room - overhead, ctx.encoding)
    if not text:
        return None
    return {**unit, "content": text}


def _is_summary_root(message: Message) -> bool:
    return bool(message.summary) and message.resolved_role == "system"


def _fit_summary(text: str, room: int, ctx: RequestContext) -> Optional[Dict[str, Any]]:
    unit = {"role": "system", "content": text}
    if count_message_tokens(unit, ctx.encoding) <= room:
        return unit
    overhead = count_message_tokens({"role": "system", "content": ""}, ctx.encoding)
    clipped = truncate_to_tokens(text, room - overhead, ctx.encoding)
    if not clipped:
        return None
    unit = {"role": "system", "content": clipped}
    return unit if count_message_tokens(unit, ctx.encoding) <= room else None


async def handle_context_strategy(
    ordered: List[Message],
    ctx: RequestContext,
    *,
    instructions: Optional[Dict[str, Any]] = None,
    summarize: Optional[Summarize] = None,
) -> FitResult:
    """Fit ``ordered`` into the prompt budget.

    Discard drops the oldest messages. Summarize replaces them with a single
    system summary and, when even the latest message does not fit, keeps only
    its first and last chunks around an elision marker.
    """
    budget = ctx.budget
    max_prompt = budget.max_prompt_tokens
    summarizing = budget.summarizing
    instr_tokens = count_message_tokens(instructions, ctx.encoding) if instructions else 0
    if instr_tokens + REPLY_PRIMING_TOKENS > max_prompt:
        raise ContextOverflow(max_prompt, instr_tokens, max_prompt - instr_tokens - REPLY_PRIMING_TOKENS)

    counts = {m.id: message_token_count(m, ctx) for m in ordered}
    window = get_messages_within_token_limit(ordered, counts, max_prompt - instr_tokens)
    kept_units = [format_for(m, ctx) for m in window.context]
    refine = window.messages_to_refine
    remaining = window.remaining_tokens
    truncated = False

    if ordered and not window.context:
        latest = ordered[-1]
        if not summarizing:
            logger.info({"event": "context.overflow", "latest_tokens": counts[latest.id], "room": remaining})
            raise ContextOverflow(max_prompt, instr_tokens, remaining)
        unit = _last_resort(latest, remaining, ctx)
        if unit is None:
            raise ContextOverflow(max_prompt, instr_tokens, remaining)
        kept_units = [unit]
        refine = list(ordered[:-1])
        remaining -= count_message_tokens(unit, ctx.encoding)
        truncated = True
        metrics.CTX_TRUNCATIONS.inc()
        logger.info({"event": "context.last_resort", "message_id": latest.id, "tokens": counts[latest.id]})

    if refine:
        metrics.CTX_DISCARDED.labels(budget.strategy).inc(len(refine))
        logger.debug({"event": "context.discard", "strategy": budget.strategy, "dropped": len(refine), "kept": len(kept_units)})

    summary: Optional[SummaryRecord] = None
    if summarizing and refine:
        previous: Optional[str] = None
        to_summarize = refine
        if _is_summary_root(refine[0]):
            previous = refine[0].text
            to_summarize = refine[1:]
        text: Optional[str] = previous
        if to_summarize and summarize is not None:
            text = await summarize(to_summarize, remaining, previous)
        unit = _fit_summary(text, remaining, ctx) if text else None
        if unit is not None:
            n = count_message_tokens(unit, ctx.encoding)
            kept_units.insert(0, unit)
            remaining -= n
            if to_summarize:
                summary = SummaryRecord(refine[-1].id, unit["content"], n)
        else:
            logger.warning({"event": "context.summary_skipped", "refine": len(refine)})

    token_count_map: Dict[str, Any] = dict(counts)
    if instructions:
        token_count_map["instructions"] = instr_tokens
    if summary:
        token_count_map["summaryMessage"] = {
            "message_id": summary.message_id,
            "content": summary.text,
            "token_count": summary.token_count,
        }

    payload = add_instructions(kept_units, instructions)
    return FitResult(
        payload=payload,
        prompt_tokens=max_prompt - remaining,
        remaining_tokens=remaining,
        token_count_map=token_count_map,
        messages_to_refine=refine,
        summary=summary,
        truncated=truncated,
    )


# ---------------- legacy completion prompt ----------------

def build_prompt(ordered: List[Message], ctx: RequestContext, instructions: str = "") -> FitResult:
    """Flat prompt for completion-mode models, filled newest first."""
    start, end = ctx.start_token, ctx.end_token
    if instructions:
        prefix = f"{start}Instructions:\n{instructions}{end}\n\n"
    else:
        today = datetime.now(UTC).strftime("%B %d, %Y")
        prefix = (
            f"You are {ctx.assistant_label}, a large language model. Respond conversationally.\n"
            f"Current date: {today}{end}\n\n"
        )
    suffix = f"{start}{ctx.assistant_label}:\n"
    max_prompt = ctx.budget.max_prompt_tokens
    used = count_tokens(prefix + suffix, ctx.encoding)

    body = ""
    counts: Dict[str, int] = {}
    kept = 0
    for msg in reversed(ordered):
        label = ctx.user_label if msg.resolved_role == "user" else ctx.assistant_label
        block = f"{start}{label}:\n{msg.text}{end}\n"
        n = count_tokens(block, ctx.encoding)
        counts[msg.id] = n
        if used + n > max_prompt:
            break
        body = block + body
        used += n
        kept += 1

    if ordered and kept == 0:
        raise ContextOverflow(max_prompt, count_tokens(prefix, ctx.encoding), max_prompt - used)

    # metadata tokens
    used += 2
    stop = [f"\n{start}{ctx.user_label}:"]
    if end:
        stop.append(end)
    return FitResult(
        payload=f"{prefix}{body}{suffix}",
        prompt_tokens=used,
        remaining_tokens=max_prompt - used,
        token_count_map=counts,
        messages_to_refine=list(ordered[: len(ordered) - kept]),
        model_options={
            "max_tokens": min(ctx.budget.max_context_tokens - used, ctx.budget.max_response_tokens),
            "stop": stop,
        },
    )


# ---------------- entry point ----------------

async def build_messages(
    ordered: List[Message],
    ctx: RequestContext,
    *,
    summarize: Optional[Summarize] = None,
) -> FitResult:
    s = ctx.settings
    scope = ordered if ctx.options.resend_files else ordered[-1:]
    document = build_context_document(
        scope, full_document=ctx.options.full_document, max_chars=s.embedded_file_max_chars
    )
    if not ctx.is_chat:
        return build_prompt(ordered, ctx, instructions_text(ctx, document))
    instructions = build_instructions(ctx, document)
    result = await handle_context_strategy(ordered, ctx, instructions=instructions, summarize=summarize)
    logger.debug({
        "event": "context.fitted",
        "model": ctx.model,
        "prompt_tokens": result.prompt_tokens,
        "remaining": result.remaining_tokens,
        "units": len(result.payload),
        "summarized": bool(result.summary),
        "truncated": result.truncated,
    })
    return result
