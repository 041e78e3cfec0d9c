from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field

from chatcore.core.errors import BrokenChain

# Parent id stored on conversation roots
NO_PARENT = "00000000-0000-0000-0000-000000000000"

_NAME_RX = re.compile(r"[^a-zA-Z0-9_-]")


class Attachment(BaseModel):
    type: str = "file"
    file_id: Optional[str] = None
    filename: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    embedded: bool = False
    text: Optional[str] = None  # extracted text (embedded files)
    url: Optional[str] = None  # image URL or data URI

    @property
    def is_image(self) -> bool:
        return "image" in (self.type or "")


class Message(BaseModel):
    id: str
    parent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    role: Optional[Literal["user", "assistant", "system"]] = None
    is_created_by_user: bool = False
    sender: Optional[str] = None
    text: str = ""
    attachments: List[Attachment] = Field(default_factory=list)
    token_count: Optional[int] = None
    summary: Optional[str] = None
    summary_token_count: Optional[int] = None

    @property
    def resolved_role(self) -> str:
        if self.role:
            return self.role
        return "user" if self.is_created_by_user else "assistant"


MessageSet = Union[Mapping[str, Message], Iterable[Message]]


def index_messages(messages: MessageSet) -> Dict[str, Message]:
    if isinstance(messages, Mapping):
        return dict(messages)
    return {m.id: m for m in messages}


def is_root(parent_id: Optional[str]) -> bool:
    return not parent_id or parent_id == NO_PARENT


def order_messages(messages: MessageSet, leaf_id: str, *, summary: bool = False) -> List[Message]:
    """Walk parent links from ``leaf_id`` to the root and return them oldest first.

    With ``summary`` set, the walk stops at the newest message carrying a
    summary; that message is returned as a system message holding the summary
    text. Input messages are never mutated.
    """
    arena = index_messages(messages)
    if not arena:
        return []

    ordered: List[Message] = []
    visited: set[str] = set()
    current: Optional[str] = leaf_id
    while current:
        if current in visited:
            raise BrokenChain(leaf_id, current, "cycle")
        visited.add(current)
        msg = arena.get(current)
        if msg is None:
            raise BrokenChain(leaf_id, current, "missing_parent" if ordered else "missing_leaf")
        if summary and msg.summary:
            ordered.append(
                msg.model_copy(
                    update={
                        "role": "system",
                        "text": msg.summary,
                        "attachments": [],
                        "token_count": msg.summary_token_count,
                    }
                )
            )
            break
        ordered.append(msg)
        current = None if is_root(msg.parent_id) else msg.parent_id
    ordered.reverse()
    return ordered


def image_parts(message: Message, detail: Optional[str] = "auto") -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for att in message.attachments:
        if att.is_image and att.url and not att.embedded:
            parts.append({"type": "image_url", "image_url": {"url": att.url, "detail": detail or "auto"}})
    return parts


def format_message(
    message: Message,
    *,
    user_name: Optional[str] = None,
    assistant_name: Optional[str] = None,
    image_detail: Optional[str] = "auto",
) -> Dict[str, Any]:
    """Convert a stored message into a provider-neutral ``{role, content, name?}`` unit."""
    role = message.resolved_role
    unit: Dict[str, Any] = {"role": role, "content": message.text}

    name = None
    if user_name and role == "user":
        name = user_name
    elif assistant_name and role == "assistant":
        name = assistant_name
    if name:
        # API constraint: ^[a-zA-Z0-9_-]{1,64}$
        unit["name"] = _NAME_RX.sub("_", name)[:64]

    if role == "user":
        images = image_parts(message, image_detail)
        if images:
            unit["content"] = [{"type": "text", "text": message.text}, *images]
    return unit
