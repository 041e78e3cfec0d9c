# apps/api/main.py
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from chatcore.core.errors import ChatCoreError, user_error_text
from chatcore.core.logging import configure_logging, request_logging_middleware
from chatcore.core.settings import get_settings
from chatcore.orchestration.abort_registry import AbortData, build_incomplete_message, get_registry
from chatcore.orchestration.completion import CancelToken
from chatcore.orchestration.context_builder import reply_token_count
from chatcore.orchestration.messages import NO_PARENT, Attachment, Message
from chatcore.orchestration.pipeline import ChatRequest, ChatResult, message_record, run_chat
from chatcore.orchestration.request_context import EndpointOptions
from chatcore.providers.openai_compat import get_provider
from chatcore.storage.repo import SpendRecord, get_store
from chatcore.utils.tokens import count_tokens

settings = get_settings()
configure_logging(level=settings.log_level)

app = FastAPI(title=settings.app_name, version="0.1.0")
log = logging.getLogger("app.api")

allow_origins = os.environ.get("CORS_ALLOWED_ORIGINS", "http://127.0.0.1:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(request_logging_middleware)

# Partial replies shorter than this are reported as errors instead of saved
MIN_PARTIAL_CHARS = 5


class AskRequest(BaseModel):
    text: str
    conversation_id: Optional[str] = None
    parent_message_id: str = NO_PARENT
    message_id: Optional[str] = None
    user: str = "anonymous"
    attachments: List[Attachment] = Field(default_factory=list)
    endpoint_option: EndpointOptions = Field(default_factory=EndpointOptions)


class AbortRequest(BaseModel):
    abort_key: Optional[str] = None
    conversation_id: Optional[str] = None
    user: Optional[str] = None


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@app.get("/config")
async def config() -> JSONResponse:
    safe_config = {
        "app_name": settings.app_name,
        "env": settings.app_env,
        "db_dialect": settings.db_dialect,
        "log_level": settings.log_level,
        "default_model": settings.default_model,
        "context_strategy": settings.context_strategy,
        "showInjection": settings.show_injection,
        "showPII": settings.show_pii,
    }
    return JSONResponse(content=safe_config)


@app.get("/metrics")
async def metrics_endpoint() -> PlainTextResponse:
    return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


async def _sse_format(event: str, data: Dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n".encode("utf-8")


def _final_payload(result: ChatResult, conversation: Dict[str, Any]) -> Dict[str, Any]:
    if result.aborted:
        return result.aborted
    return {
        "title": result.title or conversation.get("title") or "New Chat",
        "final": True,
        "conversation": conversation,
        "requestMessage": result.request_message,
        "responseMessage": result.response_message,
        "usage": {"prompt_tokens": result.prompt_tokens, "completion_tokens": result.completion_tokens},
    }


def _handle_abort_error(exc: Exception, chat_req: ChatRequest, user_record: Dict[str, Any]) -> Dict[str, Any]:
    """Turn a failed run into either an incomplete final message or an error message."""
    store = get_store()
    convo_id = chat_req.conversation_id or ""
    partial = getattr(exc, "partial_text", "") or ""
    model = chat_req.options.model or settings.default_model
    if len(partial) > MIN_PARTIAL_CHARS:
        data = AbortData(
            conversation_id=convo_id,
            user=chat_req.user,
            user_message=user_record,
            response_message_id=chat_req.response_message_id,
            text=partial,
            model=model,
            endpoint=chat_req.options.endpoint,
            assistant_name=chat_req.options.model_label,
        )
        tokens = count_tokens(partial, data.encoding)
        response = build_incomplete_message(data, reply_token_count(partial, data.encoding, data.assistant_name))
        store.spend_tokens(SpendRecord(0, tokens, model, convo_id, chat_req.user, "incomplete"))
        store.save_message(response)
        conversation = store.get_convo(convo_id) or {"conversation_id": convo_id}
        return {
            "event": "final",
            "data": {
                "title": conversation.get("title") or "New Chat",
                "final": True,
                "conversation": conversation,
                "requestMessage": user_record,
                "responseMessage": response,
            },
        }

    text = user_error_text(exc)
    store.save_message({
        "message_id": chat_req.response_message_id,
        "conversation_id": convo_id,
        "parent_message_id": chat_req.leaf_id,
        "user": chat_req.user,
        "sender": chat_req.options.model_label or "Assistant",
        "role": "assistant",
        "text": text,
        "error": True,
    })
    return {"event": "error", "data": {"message": text, "requestMessage": user_record}}


def _prepare(req: AskRequest) -> tuple[ChatRequest, Dict[str, Any]]:
    store = get_store()
    convo_id = req.conversation_id or uuid4().hex
    user_msg = Message(
        id=req.message_id or uuid4().hex,
        parent_id=req.parent_message_id,
        conversation_id=convo_id,
        role="user",
        is_created_by_user=True,
        sender="User",
        text=req.text,
        attachments=req.attachments,
    )
    if req.conversation_id is None:
        store.save_convo(convo_id, user=req.user, endpoint=req.endpoint_option.endpoint, model=req.endpoint_option.model)
    user_record = message_record(user_msg, convo_id, req.user)
    store.save_message(user_record)
    chat_req = ChatRequest(
        leaf_id=user_msg.id,
        messages=store.get_messages(convo_id),
        options=req.endpoint_option,
        conversation_id=convo_id,
        user=req.user,
        new_conversation=req.conversation_id is None,
        generate_title=req.conversation_id is None,
    )
    return chat_req, user_record


@app.post("/ask")
async def ask(req: AskRequest, stream: bool = True):
    chat_req, user_record = _prepare(req)
    store = get_store()
    registry = get_registry()
    provider = get_provider()

    if not stream:
        try:
            result = await run_chat(chat_req, provider=provider, registry=registry, store=store)
        except ChatCoreError as exc:
            out = _handle_abort_error(exc, chat_req, user_record)
            return JSONResponse(status_code=200 if out["event"] == "final" else 500, content=out["data"])
        except Exception as exc:
            log.error({"event": "ask.failed", "error": str(exc)}, exc_info=True)
            out = _handle_abort_error(exc, chat_req, user_record)
            return JSONResponse(status_code=500, content=out["data"])
        conversation = store.get_convo(result.conversation_id) or {"conversation_id": result.conversation_id}
        return JSONResponse(content=json.loads(json.dumps(_final_payload(result, conversation), default=str)))

    cancel_token = CancelToken()

    async def event_iter():
        last_delta_ts = time.monotonic()
        done_event = asyncio.Event()
        queue: asyncio.Queue[bytes] = asyncio.Queue()

        async def heartbeat_loop():
            try:
                while not done_event.is_set():
                    await asyncio.sleep(10)
                    if cancel_token.cancelled:
                        break
                    if time.monotonic() - last_delta_ts > 8:
                        await queue.put(await _sse_format("ping", {"ts": datetime.now(timezone.utc).isoformat()}))
            except asyncio.CancelledError:
                pass

        async def on_progress(token: str) -> None:
            nonlocal last_delta_ts
            last_delta_ts = time.monotonic()
            await queue.put(await _sse_format("delta", {"text": token}))

        async def produce_loop():
            await queue.put(await _sse_format("created", {"message": user_record, "abort_key": chat_req.abort_key}))
            try:
                result = await run_chat(
                    chat_req,
                    provider=provider,
                    registry=registry,
                    store=store,
                    cancel_token=cancel_token,
                    on_progress=on_progress,
                )
            except ChatCoreError as exc:
                out = _handle_abort_error(exc, chat_req, user_record)
                await queue.put(await _sse_format(out["event"], out["data"]))
            except Exception as exc:
                log.error({"event": "ask.failed", "error": str(exc)}, exc_info=True)
                out = _handle_abort_error(exc, chat_req, user_record)
                await queue.put(await _sse_format(out["event"], out["data"]))
            else:
                conversation = store.get_convo(result.conversation_id) or {"conversation_id": result.conversation_id}
                await queue.put(await _sse_format("final", _final_payload(result, conversation)))
            finally:
                await queue.put(await _sse_format("done", {"status": "cancelled" if cancel_token.cancelled else "completed"}))
                done_event.set()

        hb_task = asyncio.create_task(heartbeat_loop())
        prod_task = asyncio.create_task(produce_loop())
        try:
            while True:
                if done_event.is_set() and queue.empty():
                    break
                try:
                    chunk = await asyncio.wait_for(queue.get(), timeout=0.5)
                    yield chunk
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:
            cancel_token.cancel()
        finally:
            hb_task.cancel()
            if not prod_task.done():
                cancel_token.cancel()

    headers = {"Content-Type": "text/event-stream; charset=utf-8", "Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
    return StreamingResponse(event_iter(), headers=headers)


@app.post("/ask/abort")
async def abort(req: AbortRequest):
    key = req.abort_key or req.conversation_id or req.user
    final = get_registry().abort_message(key, store=get_store()) if key else None
    if final is None:
        return Response(status_code=204)
    return JSONResponse(content=json.loads(json.dumps(final, default=str)))
