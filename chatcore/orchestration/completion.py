from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from chatcore.core import metrics
from chatcore.core.errors import ProviderError, ProviderHardError, ProviderSoftError, ProviderTransportError
from chatcore.providers.base import Provider, ShapedRequest

log = logging.getLogger("app.completion")

# Known benign stream anomalies: the accumulated reply stands as the result.
SOFT_ERROR_PATTERNS = (
    "Invalid final message",
    "stream ended without producing a ChatCompletionMessage with role=assistant",
    "The server had an error processing your request",
    "missing finish_reason",
    "missing role",
)
END_TOKENS = ("<|im_end|>", "<|endoftext|>")

ProgressSink = Callable[[str], Union[None, Awaitable[None]]]


class StreamState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


_TRANSITIONS = {
    StreamState.IDLE: {StreamState.REQUESTED},
    StreamState.REQUESTED: {StreamState.STREAMING, StreamState.COMPLETED, StreamState.ABORTED, StreamState.FAILED},
    StreamState.STREAMING: {StreamState.COMPLETED, StreamState.ABORTED, StreamState.FAILED},
    StreamState.COMPLETED: set(),
    StreamState.ABORTED: set(),
    StreamState.FAILED: set(),
}


class CancelToken:
    """Cooperative cancellation flag, polled by the driver once per chunk."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RunState:
    key: Optional[str] = None
    cancel_token: CancelToken = field(default_factory=CancelToken)
    state: StreamState = StreamState.IDLE
    parts: List[str] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None

    @property
    def reply(self) -> str:
        return "".join(self.parts)

    @property
    def done(self) -> bool:
        return not _TRANSITIONS[self.state]

    def transition(self, new: StreamState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid stream transition {self.state.value} -> {new.value}")
        log.debug({"event": "completion.state", "key": self.key, "from": self.state.value, "to": new.value})
        self.state = new


@dataclass
class CompletionOutcome:
    text: str
    finish_reason: Optional[str]
    state: StreamState
    usage: Optional[Dict[str, int]] = None
    soft_error: Optional[str] = None


def classify_error(exc: BaseException) -> Optional[str]:
    """Return the matching benign pattern, or None for a hard failure."""
    msg = str(exc)
    pattern = next((p for p in SOFT_ERROR_PATTERNS if p in msg), None)
    if pattern is None and isinstance(exc, ProviderSoftError):
        return type(exc).__name__
    return pattern


def trim_reply(text: str) -> str:
    text = (text or "").strip()
    for token in END_TOKENS:
        if text.endswith(token):
            text = text[: -len(token)].rstrip()
    return text


async def emit_progress(sink: Optional[ProgressSink], token: str) -> None:
    if sink is None:
        return
    res = sink(token)
    if inspect.isawaitable(res):
        await res


def _finish(run: RunState, state: StreamState, soft_error: Optional[str] = None) -> CompletionOutcome:
    run.transition(state)
    metrics.STREAM_OUTCOMES.labels(state.value).inc()
    return CompletionOutcome(run.reply, run.finish_reason, state, run.usage, soft_error)


def _abort(run: RunState) -> CompletionOutcome:
    log.info({"event": "completion.aborted", "key": run.key, "partial_chars": len(run.reply)})
    run.finish_reason = "incomplete"
    return _finish(run, StreamState.ABORTED)


def _fail(run: RunState, exc: BaseException) -> CompletionOutcome:
    pattern = classify_error(exc)
    if pattern is not None:
        metrics.STREAM_SOFT_ERRORS.labels(pattern).inc()
        log.warning({"event": "completion.soft_error", "key": run.key, "pattern": pattern, "partial_chars": len(run.reply)})
        return _finish(run, StreamState.FAILED, soft_error=pattern)

    run.transition(StreamState.FAILED)
    metrics.STREAM_OUTCOMES.labels(StreamState.FAILED.value).inc()
    log.error({"event": "completion.error", "key": run.key, "error": str(exc), "partial_chars": len(run.reply)})
    status = getattr(exc, "status_code", None)
    if isinstance(exc, ProviderTransportError):
        raise ProviderTransportError(str(exc), status_code=status, partial_text=run.reply) from exc
    raise ProviderHardError(str(exc), status_code=status, partial_text=run.reply) from exc


async def send_completion(
    provider: Provider,
    request: ShapedRequest,
    *,
    run: Optional[RunState] = None,
    on_progress: Optional[ProgressSink] = None,
) -> CompletionOutcome:
    """Drive one completion call to a terminal state.

    Cancellation and known benign stream errors return the partial reply.
    Other failures raise ``ProviderHardError`` (or ``ProviderTransportError``)
    carrying the partial reply.
    """
    run = run or RunState()
    run.transition(StreamState.REQUESTED)

    if not request.stream:
        try:
            result = await provider.complete(request)
        except ProviderError as exc:
            return _fail(run, exc)
        run.parts = [trim_reply(result.text)]
        run.finish_reason = result.finish_reason
        run.usage = result.usage
        return _finish(run, StreamState.COMPLETED)

    if run.cancel_token.cancelled:
        return _abort(run)

    error: Optional[BaseException] = None
    try:
        async with aclosing(provider.stream(request)) as events:
            async for event in events:
                # nothing that arrives after an abort is appended or emitted
                if run.cancel_token.cancelled:
                    return _abort(run)
                if event.type == "delta":
                    if run.state is StreamState.REQUESTED:
                        run.transition(StreamState.STREAMING)
                    run.parts.append(event.text)
                    await emit_progress(on_progress, event.text)
                    if request.stream_delay:
                        await asyncio.sleep(request.stream_delay)
                    if run.cancel_token.cancelled:
                        return _abort(run)
                elif event.type == "final":
                    message: Dict[str, Any] = event.message or {}
                    content = message.get("content") or ""
                    if not content.strip() and run.reply:
                        content = run.reply
                    run.parts = [content]
                    run.finish_reason = message.get("finish_reason") or run.finish_reason
                    run.usage = event.usage or run.usage
                    return _finish(run, StreamState.COMPLETED)
                elif event.type == "error":
                    error = event.error or ProviderHardError("stream error")
                    break
    except ProviderError as exc:
        error = exc

    if run.cancel_token.cancelled:
        return _abort(run)
    if error is not None:
        return _fail(run, error)
    # stream closed without a terminal event
    return _fail(run, ProviderSoftError("stream ended without producing a ChatCompletionMessage with role=assistant"))
