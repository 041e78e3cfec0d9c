from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from chatcore.core.logging import bound_log_context
from chatcore.orchestration.abort_registry import AbortData, AbortEntry, AbortRegistry, abort_key
from chatcore.orchestration.completion import (
    CancelToken,
    ProgressSink,
    RunState,
    StreamState,
    emit_progress,
    send_completion,
)
from chatcore.orchestration.context_builder import build_messages, reply_token_count
from chatcore.orchestration.messages import Message, index_messages, order_messages
from chatcore.orchestration.request_context import EndpointOptions, RequestContext
from chatcore.orchestration.request_shaper import shape_request
from chatcore.orchestration.safety import PII_REPLACE_MODES, SafetyGate
from chatcore.orchestration.summarizer import generate_title, summarize_messages
from chatcore.providers.base import Provider
from chatcore.storage.repo import ConversationStore, SpendRecord
from chatcore.utils.tokens import count_tokens

log = logging.getLogger("app.completion")


class ChatRequest(BaseModel):
    """Inbound request: the message tree, the leaf to answer and the endpoint options."""

    leaf_id: str
    messages: List[Message]
    options: EndpointOptions = Field(default_factory=EndpointOptions)
    conversation_id: Optional[str] = None
    user: Optional[str] = None
    # conversation not yet persisted on the client: abort by user id
    new_conversation: bool = False
    response_message_id: str = Field(default_factory=lambda: uuid4().hex)
    generate_title: bool = False

    @property
    def abort_key(self) -> str:
        return abort_key(None if self.new_conversation else self.conversation_id, self.user)


@dataclass
class ChatResult:
    reply_text: str
    finish_reason: Optional[str]
    prompt_tokens: int
    completion_tokens: int
    state: StreamState
    conversation_id: str
    token_count_map: Dict[str, Any] = field(default_factory=dict)
    spend: List[SpendRecord] = field(default_factory=list)
    request_message: Optional[Dict[str, Any]] = None
    response_message: Optional[Dict[str, Any]] = None
    title: Optional[str] = None
    blocked: Optional[str] = None
    aborted: Optional[Dict[str, Any]] = None  # final payload produced by the abort path


def message_record(message: Message, conversation_id: str, user: Optional[str]) -> Dict[str, Any]:
    return {
        "message_id": message.id,
        "conversation_id": conversation_id,
        "parent_message_id": message.parent_id,
        "user": user,
        "sender": message.sender or ("User" if message.resolved_role == "user" else None),
        "role": message.resolved_role,
        "is_created_by_user": message.resolved_role == "user",
        "text": message.text,
        "attachments": [a.model_dump() for a in message.attachments],
        "token_count": message.token_count,
    }


def response_record(
    request: ChatRequest,
    ctx: RequestContext,
    conversation_id: str,
    text: str,
    *,
    finish_reason: Optional[str],
    token_count: int,
) -> Dict[str, Any]:
    return {
        "message_id": request.response_message_id,
        "conversation_id": conversation_id,
        "parent_message_id": request.leaf_id,
        "user": request.user,
        "sender": ctx.assistant_label,
        "role": "assistant",
        "is_created_by_user": False,
        "text": text,
        "token_count": token_count,
        "model": ctx.model,
        "endpoint": request.options.endpoint,
        "finish_reason": finish_reason,
        "unfinished": False,
        "error": False,
    }


async def run_chat(
    request: ChatRequest,
    *,
    provider: Provider,
    registry: Optional[AbortRegistry] = None,
    store: Optional[ConversationStore] = None,
    safety: Optional[SafetyGate] = None,
    cancel_token: Optional[CancelToken] = None,
    on_progress: Optional[ProgressSink] = None,
) -> ChatResult:
    """Order, fit, shape and complete one chat turn, then emit spend and response records.

    Storage writes happen only when ``store`` is given.
    """
    key = request.abort_key if registry is not None else (request.conversation_id or request.user)
    conversation_id = request.conversation_id or uuid4().hex
    with bound_log_context(abort_key=key, conversation_id=conversation_id):
        return await _run_chat(
            request,
            key,
            conversation_id,
            provider=provider,
            registry=registry,
            store=store,
            safety=safety,
            cancel_token=cancel_token,
            on_progress=on_progress,
        )


async def _run_chat(
    request: ChatRequest,
    key: Optional[str],
    conversation_id: str,
    *,
    provider: Provider,
    registry: Optional[AbortRegistry],
    store: Optional[ConversationStore],
    safety: Optional[SafetyGate],
    cancel_token: Optional[CancelToken],
    on_progress: Optional[ProgressSink],
) -> ChatResult:
    opts = request.options

    arena = index_messages(request.messages)
    leaf = arena.get(request.leaf_id)
    ctx = RequestContext(opts, attachments=leaf.attachments if leaf else ())
    ordered = order_messages(arena, request.leaf_id, summary=ctx.budget.summarizing)
    latest = ordered[-1] if ordered else None
    spends: List[SpendRecord] = []

    safety = safety or SafetyGate(ctx.settings)
    if latest is not None and (opts.detect_injection or (opts.pii_mode or "").lower() == "block"):
        verdict = await safety.check(latest.text, detect_injection=opts.detect_injection, pii_mode=opts.pii_mode)
        if verdict.blocked:
            warning = verdict.message or ""
            await emit_progress(on_progress, warning)
            response = response_record(
                request,
                ctx,
                conversation_id,
                warning,
                finish_reason="stop",
                token_count=reply_token_count(warning, ctx.encoding, opts.model_label),
            )
            if store is not None:
                store.save_message(response)
            return ChatResult(
                reply_text=warning,
                finish_reason="stop",
                prompt_tokens=0,
                completion_tokens=0,
                state=StreamState.COMPLETED,
                conversation_id=conversation_id,
                request_message=message_record(latest, conversation_id, request.user),
                response_message=response,
                blocked=verdict.kind,
            )

    async def _summarize(messages: List[Message], remaining: int, previous: Optional[str]) -> Optional[str]:
        outcome = await summarize_messages(messages, remaining, previous, ctx=ctx, provider=provider)
        if outcome is None:
            return None
        spends.append(
            SpendRecord(outcome.prompt_tokens, outcome.completion_tokens, outcome.model, conversation_id, request.user, "summary")
        )
        return outcome.text

    fit = await build_messages(ordered, ctx, summarize=_summarize)
    payload = fit.payload
    if ctx.is_chat and opts.pii_mode in PII_REPLACE_MODES and isinstance(payload, list):
        payload = await safety.replace_pii(payload, opts.pii_mode)
    shaped = shape_request(ctx, payload, overrides=fit.model_options or None)

    run = RunState(key=key, cancel_token=cancel_token or CancelToken())
    request_message = message_record(latest, conversation_id, request.user) if latest else None
    entry: Optional[AbortEntry] = None
    if registry is not None:
        entry = AbortEntry(
            run=run,
            endpoint_option=opts,
            get_abort_data=lambda: AbortData(
                conversation_id=conversation_id,
                user=request.user,
                user_message=request_message or {},
                response_message_id=request.response_message_id,
                text=run.reply,
                model=ctx.model,
                sender=ctx.assistant_label,
                endpoint=opts.endpoint,
                prompt_tokens=fit.prompt_tokens,
                encoding=ctx.encoding,
                assistant_name=opts.model_label,
            ),
        )
        registry.register(key, entry)

    log.info({"event": "completion.start", "key": key, **ctx.describe(), "prompt_tokens": fit.prompt_tokens})
    try:
        outcome = await send_completion(provider, shaped, run=run, on_progress=on_progress)
    finally:
        if registry is not None:
            registry.remove(key, entry)

    if entry is not None and entry.aborted:
        final = entry.final or {}
        response = final.get("responseMessage") or {}
        return ChatResult(
            reply_text=outcome.text,
            finish_reason="incomplete",
            prompt_tokens=fit.prompt_tokens,
            completion_tokens=int((final.get("spend") or {}).get("completion_tokens") or 0),
            state=outcome.state,
            conversation_id=conversation_id,
            token_count_map=fit.token_count_map,
            request_message=request_message,
            response_message=response,
            aborted=final,
        )

    usage = outcome.usage or {}
    prompt_tokens = int(usage.get("input_tokens") or fit.prompt_tokens)
    completion_tokens = int(usage.get("output_tokens") or count_tokens(outcome.text, ctx.encoding))
    context = "incomplete" if outcome.state is StreamState.ABORTED else "message"
    spends.append(SpendRecord(prompt_tokens, completion_tokens, ctx.model, conversation_id, request.user, context))
    response = response_record(
        request,
        ctx,
        conversation_id,
        outcome.text,
        finish_reason=outcome.finish_reason,
        token_count=reply_token_count(outcome.text, ctx.encoding, opts.model_label),
    )

    title: Optional[str] = None
    if request.generate_title and latest is not None and outcome.state is StreamState.COMPLETED:
        title, title_usage = await generate_title(latest.text, outcome.text, ctx=ctx, provider=provider)
        if title_usage:
            spends.append(
                SpendRecord(
                    title_usage.get("input_tokens", 0),
                    title_usage.get("output_tokens", 0),
                    ctx.settings.title_model,
                    conversation_id,
                    request.user,
                    "title",
                )
            )

    if store is not None:
        for spend in spends:
            store.spend_tokens(spend)
        if latest is not None and request_message is not None and latest.id in fit.token_count_map:
            store.update_message(latest.id, {"token_count": fit.token_count_map[latest.id]})
        if fit.summary is not None:
            store.update_message(
                fit.summary.message_id,
                {"summary": fit.summary.text, "summary_token_count": fit.summary.token_count},
            )
        store.save_message(response)
        if title:
            store.save_convo(conversation_id, title=title, user=request.user, endpoint=opts.endpoint, model=ctx.model)

    log.info({
        "event": "completion.done",
        "key": key,
        "state": outcome.state.value,
        "finish_reason": outcome.finish_reason,
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
    })
    return ChatResult(
        reply_text=outcome.text,
        finish_reason=outcome.finish_reason,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        state=outcome.state,
        conversation_id=conversation_id,
        token_count_map=fit.token_count_map,
        spend=spends,
        request_message=request_message,
        response_message=response,
        title=title,
    )
