from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

_TMP = Path(tempfile.mkdtemp(prefix="chatcore-tests-"))
os.environ["DB_URL"] = f"sqlite:///{_TMP / 'app.db'}"
os.environ["OPENAI_API_KEY"] = "sk-test"
for _var in ("OPENROUTER_API_KEY", "PG_BASE_URL", "SAFETY_PROMPT", "AZURE_OPENAI_DEFAULT_MODEL"):
    os.environ.pop(_var, None)

from chatcore.core.settings import get_settings  # noqa: E402
from chatcore.orchestration.messages import Message  # noqa: E402
from chatcore.providers.base import CompletionResult, StreamEvent  # noqa: E402
from chatcore.storage.repo import SqlConversationStore  # noqa: E402
from chatcore.utils import tokens  # noqa: E402


class CharEncoding:
    """One token per character."""

    name = "chars"

    def encode(self, text: str, allowed_special: Any = "all") -> List[int]:
        return [ord(c) for c in text]

    def decode(self, ids: List[int]) -> str:
        return "".join(chr(i) for i in ids)


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def char_pool(monkeypatch):
    loads: List[str] = []

    def loader(key: str, is_model_name: bool, extra: Optional[Dict[str, int]]):
        loads.append(key)
        return CharEncoding()

    pool = tokens.TokenizerPool(loader=loader, reset_threshold=25)
    pool.loads = loads  # type: ignore[attr-defined]
    monkeypatch.setattr(tokens, "_pool", pool)
    return pool


@pytest.fixture()
def store(tmp_path):
    return SqlConversationStore(f"sqlite:///{tmp_path / 'store.db'}")


class FakeProvider:
    """Scripted provider. ``script`` items are StreamEvents or callables run between events."""

    def __init__(self, script: Optional[List[Any]] = None, completions: Optional[List[Any]] = None) -> None:
        self.script = list(script or [])
        self.completions = list(completions or [])
        self.requests: List[Any] = []
        self.closed = False

    async def complete(self, request):
        self.requests.append(request)
        item = self.completions.pop(0) if self.completions else CompletionResult(text="")
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return CompletionResult(text=item, finish_reason="stop")
        return item

    async def stream(self, request):
        self.requests.append(request)
        try:
            for item in self.script:
                if callable(item):
                    item()
                    continue
                yield item
        finally:
            self.closed = True


def deltas(*texts: str, final: Optional[str] = None, finish_reason: str = "stop") -> List[StreamEvent]:
    events = [StreamEvent("delta", text=t) for t in texts]
    content = "".join(texts) if final is None else final
    events.append(StreamEvent("final", message={"role": "assistant", "content": content, "finish_reason": finish_reason}))
    return events


@pytest.fixture()
def make_provider():
    return FakeProvider


@pytest.fixture()
def stream_events():
    return deltas


def chain(*texts: str, token_counts: Optional[List[int]] = None, conversation_id: str = "c1") -> List[Message]:
    """Linear conversation m1..mN alternating user / assistant."""
    out: List[Message] = []
    parent = None
    for i, text in enumerate(texts, start=1):
        out.append(
            Message(
                id=f"m{i}",
                parent_id=parent,
                conversation_id=conversation_id,
                is_created_by_user=(i % 2 == 1),
                text=text,
                token_count=token_counts[i - 1] if token_counts else None,
            )
        )
        parent = f"m{i}"
    return out


@pytest.fixture()
def make_chain():
    return chain
