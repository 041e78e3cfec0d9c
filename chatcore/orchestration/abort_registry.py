from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from chatcore.core import metrics
from chatcore.orchestration.completion import RunState
from chatcore.orchestration.context_builder import reply_token_count
from chatcore.orchestration.request_context import EndpointOptions
from chatcore.storage.repo import ConversationStore, SpendRecord
from chatcore.utils.tokens import CHAT_ENCODING, EncodingSpec, count_tokens

log = logging.getLogger("app.abort")


@dataclass
class AbortData:
    """Snapshot of an in-flight run, captured at abort time."""

    conversation_id: str
    user: Optional[str]
    user_message: Dict[str, Any]
    response_message_id: str
    text: str
    model: str
    sender: str = "Assistant"
    endpoint: Optional[str] = None
    prompt_tokens: int = 0
    encoding: EncodingSpec = EncodingSpec(CHAT_ENCODING)
    assistant_name: Optional[str] = None


@dataclass
class AbortEntry:
    run: RunState
    endpoint_option: EndpointOptions
    get_abort_data: Callable[[], AbortData]
    aborted: bool = False
    # set once the abort path has produced the final payload
    final: Optional[Dict[str, Any]] = field(default=None, repr=False)


def abort_key(conversation_id: Optional[str], user_id: Optional[str]) -> str:
    key = conversation_id or user_id
    if not key:
        raise ValueError("abort key requires a conversation id or a user id")
    return key


def build_incomplete_message(data: AbortData, token_count: int) -> Dict[str, Any]:
    return {
        "message_id": data.response_message_id or uuid.uuid4().hex,
        "conversation_id": data.conversation_id,
        "parent_message_id": data.user_message.get("message_id"),
        "user": data.user,
        "sender": data.sender,
        "role": "assistant",
        "is_created_by_user": False,
        "text": data.text,
        "token_count": token_count,
        "model": data.model,
        "endpoint": data.endpoint,
        "finish_reason": "incomplete",
        "unfinished": False,
        "error": False,
    }


class AbortRegistry:
    """Process-wide map from abort key to the in-flight run."""

    def __init__(self) -> None:
        self._entries: Dict[str, AbortEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def register(self, key: str, entry: AbortEntry) -> None:
        with self._lock:
            if key in self._entries:
                log.warning({"event": "abort.replace", "key": key})
            self._entries[key] = entry
        log.debug({"event": "abort.register", "key": key})

    def get(self, key: str) -> Optional[AbortEntry]:
        return self._entries.get(key)

    def remove(self, key: str, entry: Optional[AbortEntry] = None) -> Optional[AbortEntry]:
        """Remove ``key``; with ``entry`` given, only if it is still the registered one."""
        with self._lock:
            current = self._entries.get(key)
            if current is None or (entry is not None and current is not entry):
                return None
            return self._entries.pop(key)

    def abort_message(self, key: str, *, store: Optional[ConversationStore] = None) -> Optional[Dict[str, Any]]:
        """Cancel the run under ``key`` and synthesize its incomplete final message.

        Returns None when no run is registered under ``key``.
        """
        entry = self.remove(key)
        if entry is None:
            metrics.ABORTS.labels("not_found").inc()
            log.info({"event": "abort.not_found", "key": key})
            return None

        entry.run.cancel_token.cancel()
        entry.aborted = True
        data = entry.get_abort_data()
        completion_tokens = count_tokens(data.text, data.encoding)
        response_message = build_incomplete_message(
            data, reply_token_count(data.text, data.encoding, data.assistant_name)
        )
        spend = SpendRecord(
            prompt_tokens=data.prompt_tokens,
            completion_tokens=completion_tokens,
            model=data.model,
            conversation_id=data.conversation_id,
            user=data.user,
            context="incomplete",
        )

        conversation: Dict[str, Any] = {"conversation_id": data.conversation_id}
        if store is not None:
            store.spend_tokens(spend)
            store.save_message(response_message)
            conversation = store.get_convo(data.conversation_id) or conversation

        metrics.ABORTS.labels("aborted").inc()
        log.info({"event": "abort.done", "key": key, "partial_chars": len(data.text), "completion_tokens": completion_tokens})
        entry.final = {
            "title": conversation.get("title") or "New Chat",
            "final": True,
            "conversation": conversation,
            "requestMessage": data.user_message,
            "responseMessage": response_message,
            "spend": spend.as_dict(),
        }
        return entry.final


_registry = AbortRegistry()


def get_registry() -> AbortRegistry:
    return _registry
