# chatcore/providers/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Literal, Optional, Protocol


@dataclass
class ShapedRequest:
    """A provider-ready HTTP request produced by the request shaper."""

    url: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    stream: bool = True
    is_chat: bool = True
    mode: str = "direct"
    proxy: Optional[str] = None
    timeout: float = 60.0
    stream_delay: float = 0.0  # seconds slept after each streamed chunk


@dataclass
class StreamEvent:
    type: Literal["delta", "final", "error"]
    text: str = ""
    message: Optional[Dict[str, Any]] = None  # final: {role, content, finish_reason}
    error: Optional[BaseException] = None
    usage: Optional[Dict[str, int]] = None


@dataclass
class CompletionResult:
    text: str
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None


class Provider(Protocol):
    async def complete(self, request: ShapedRequest) -> CompletionResult:
        """Blocking completion call."""
        ...

    def stream(self, request: ShapedRequest) -> AsyncIterator[StreamEvent]:
        """Yield delta events, then exactly one final or error event."""
        ...


def normalize_usage(raw_usage: Optional[Dict[str, Any]]) -> Optional[Dict[str, int]]:
    """Map OpenAI-style or responses-style usage onto input/output/total."""
    if not raw_usage:
        return None
    if "input_tokens" in raw_usage or "output_tokens" in raw_usage:
        inp = int(raw_usage.get("input_tokens", 0) or 0)
        out = int(raw_usage.get("output_tokens", 0) or 0)
    else:
        inp = int(raw_usage.get("prompt_tokens", 0) or 0)
        out = int(raw_usage.get("completion_tokens", raw_usage.get("generated_tokens", 0)) or 0)
    tot = int(raw_usage.get("total_tokens", inp + out) or (inp + out))
    return {"input_tokens": inp, "output_tokens": out, "total_tokens": tot}
