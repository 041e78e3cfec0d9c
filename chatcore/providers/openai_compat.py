# chatcore/providers/openai_compat.py
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from chatcore.core.errors import ProviderHardError, ProviderSoftError, ProviderTransportError
from chatcore.providers.base import CompletionResult, ShapedRequest, StreamEvent, normalize_usage

log = logging.getLogger("app.provider")

NO_MESSAGE_TEXT = "stream ended without producing a ChatCompletionMessage with role=assistant"
MISSING_FINISH_TEXT = "missing finish_reason for choice 0"
MISSING_ROLE_TEXT = "missing role for choice 0"
ROLE_MISMATCH_TEXT = "Invalid final message: OpenAI expects final message to include role=assistant"


def _error_message(resp: httpx.Response, body: bytes) -> str:
    detail = body.decode("utf-8", errors="ignore")
    try:
        obj = json.loads(detail)
        err = obj.get("error") if isinstance(obj, dict) else None
        if isinstance(err, dict) and err.get("message"):
            detail = str(err["message"])
        elif isinstance(err, str):
            detail = err
    except json.JSONDecodeError:
        pass
    return f"{resp.status_code}: {detail}"


def _sse_data(line: str) -> Optional[str]:
    if line.startswith("data: "):
        return line[len("data: "):]
    if line.startswith("data:"):
        return line[len("data:"):].lstrip()
    return None


class OpenAICompatProvider:
    """OpenAI-compatible chat / completions client over httpx."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.transport = transport

    def _client(self, req: ShapedRequest) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {"timeout": req.timeout}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        elif req.proxy:
            kwargs["proxy"] = req.proxy
        return httpx.AsyncClient(**kwargs)

    async def complete(self, req: ShapedRequest) -> CompletionResult:
        body = {**req.body, "stream": False}
        try:
            async with self._client(req) as client:
                resp = await client.post(req.url, json=body, headers=req.headers)
        except httpx.RequestError as exc:
            raise ProviderTransportError(f"Failed to reach provider: {exc}") from exc
        if resp.status_code >= 400:
            raise ProviderHardError(_error_message(resp, resp.content), status_code=resp.status_code)

        try:
            data = resp.json()
            choice = (data.get("choices") or [{}])[0] or {}
            text = (choice.get("message") or {}).get("content") or choice.get("text") or ""
        except (ValueError, AttributeError, IndexError, TypeError) as exc:
            snippet = resp.content[:200].decode("utf-8", errors="ignore")
            raise ProviderHardError(f"Unexpected provider response: {snippet}", status_code=resp.status_code) from exc
        return CompletionResult(
            text=text,
            finish_reason=choice.get("finish_reason"),
            usage=normalize_usage(data.get("usage")),
        )

    async def stream(self, req: ShapedRequest) -> AsyncIterator[StreamEvent]:
        body = {**req.body, "stream": True}
        role: Optional[str] = None if req.is_chat else "assistant"
        finish_reason: Optional[str] = None
        usage: Optional[Dict[str, int]] = None
        parts: list[str] = []
        seen_chunk = False

        try:
            async with self._client(req) as client:
                async with client.stream("POST", req.url, json=body, headers=req.headers) as resp:
                    if resp.status_code >= 400:
                        raw = await resp.aread()
                        yield StreamEvent(
                            "error",
                            error=ProviderHardError(_error_message(resp, raw), status_code=resp.status_code),
                        )
                        return
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        data_str = _sse_data(line)
                        if data_str is None:
                            continue
                        if data_str.strip() == "[DONE]":
                            break
                        try:
                            obj = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if obj.get("error"):
                            err = obj["error"]
                            msg = err.get("message") if isinstance(err, dict) else str(err)
                            yield StreamEvent("error", error=ProviderHardError(msg or "stream error"))
                            return
                        if obj.get("usage"):
                            usage = normalize_usage(obj["usage"])
                        choices = obj.get("choices") or []
                        if not choices:
                            continue
                        seen_chunk = True
                        choice = choices[0] or {}
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
                        delta = choice.get("delta") or {}
                        if delta.get("role"):
                            role = delta["role"]
                        content = delta.get("content")
                        if content is None:
                            # legacy completion stream
                            content = choice.get("text")
                        if content:
                            parts.append(content)
                            yield StreamEvent("delta", text=content)
        except httpx.RequestError as exc:
            yield StreamEvent("error", error=ProviderTransportError(f"Failed to reach provider: {exc}"))
            return

        if not seen_chunk:
            yield StreamEvent("error", error=ProviderSoftError(NO_MESSAGE_TEXT))
            return
        if finish_reason is None:
            yield StreamEvent("error", error=ProviderSoftError(MISSING_FINISH_TEXT))
            return
        if role is None:
            yield StreamEvent("error", error=ProviderSoftError(MISSING_ROLE_TEXT))
            return
        if role != "assistant":
            yield StreamEvent("error", error=ProviderSoftError(ROLE_MISMATCH_TEXT))
            return
        log.debug({"event": "provider.stream_done", "finish_reason": finish_reason, "chars": sum(map(len, parts))})
        yield StreamEvent(
            "final",
            message={"role": role, "content": "".join(parts), "finish_reason": finish_reason},
            usage=usage,
        )


def get_provider() -> OpenAICompatProvider:
    return OpenAICompatProvider()
