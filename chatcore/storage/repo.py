# chatcore/storage/repo.py
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from chatcore.core.pricing import token_value
from chatcore.core.settings import get_settings
from chatcore.orchestration.messages import Attachment, Message
from chatcore.storage.models import Base, Conversation, Message as MessageRow, Transaction

log = logging.getLogger("app.storage")

SPEND_CONTEXTS = ("message", "incomplete", "title", "summary")


@dataclass
class SpendRecord:
    prompt_tokens: int
    completion_tokens: int
    model: str
    conversation_id: Optional[str]
    user: Optional[str]
    context: str = "message"

    def token_values(self, overrides: Optional[Dict[str, float]] = None) -> Dict[str, float]:
        return {
            "prompt": token_value(self.model, "prompt", self.prompt_tokens, overrides),
            "completion": token_value(self.model, "completion", self.completion_tokens, overrides),
        }

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConversationStore(Protocol):
    """Persistence collaborator used by the pipeline and the abort path."""

    def save_message(self, record: Dict[str, Any]) -> None: ...

    def update_message(self, message_id: str, fields: Dict[str, Any]) -> None: ...

    def spend_tokens(self, record: SpendRecord) -> None: ...

    def get_convo(self, conversation_id: str) -> Optional[Dict[str, Any]]: ...

    def save_convo(self, conversation_id: str, **fields: Any) -> Dict[str, Any]: ...

    def get_messages(self, conversation_id: str) -> List[Message]: ...


_MESSAGE_FIELDS = {c.name for c in MessageRow.__table__.columns} - {"created_at"}


def _row_to_message(row: MessageRow) -> Message:
    attachments = [Attachment(**a) for a in json.loads(row.attachments)] if row.attachments else []
    return Message(
        id=row.message_id,
        parent_id=row.parent_message_id,
        conversation_id=row.conversation_id,
        role=row.role,
        is_created_by_user=bool(row.is_created_by_user),
        sender=row.sender,
        text=row.text or "",
        attachments=attachments,
        token_count=row.token_count,
        summary=row.summary,
        summary_token_count=row.summary_token_count,
    )


def _convo_dict(row: Conversation) -> Dict[str, Any]:
    return {
        "conversation_id": row.conversation_id,
        "user": row.user,
        "title": row.title,
        "endpoint": row.endpoint,
        "model": row.model,
    }


class SqlConversationStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        url = db_url or get_settings().db_url
        if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(url, echo=False, future=True)
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        with Session(self.engine, future=True, expire_on_commit=False) as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    def save_convo(self, conversation_id: str, **fields: Any) -> Dict[str, Any]:
        with self.session_scope() as s:
            row = s.get(Conversation, conversation_id)
            if row is None:
                row = Conversation(conversation_id=conversation_id)
                s.add(row)
            for key, value in fields.items():
                if value is not None and hasattr(row, key):
                    setattr(row, key, value)
            s.flush()
            return _convo_dict(row)

    def get_convo(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        with self.session_scope() as s:
            row = s.get(Conversation, conversation_id)
            return _convo_dict(row) if row else None

    def save_message(self, record: Dict[str, Any]) -> None:
        data = {k: v for k, v in record.items() if k in _MESSAGE_FIELDS}
        if isinstance(data.get("attachments"), list):
            data["attachments"] = json.dumps(
                [a.model_dump() if isinstance(a, Attachment) else a for a in data["attachments"]],
                ensure_ascii=False,
            )
        with self.session_scope() as s:
            if s.get(Conversation, data["conversation_id"]) is None:
                s.add(Conversation(conversation_id=data["conversation_id"], user=data.get("user")))
                s.flush()
            row = s.get(MessageRow, data["message_id"])
            if row is None:
                s.add(MessageRow(**data))
            else:
                for key, value in data.items():
                    setattr(row, key, value)

    def update_message(self, message_id: str, fields: Dict[str, Any]) -> None:
        with self.session_scope() as s:
            row = s.get(MessageRow, message_id)
            if row is None:
                log.warning({"event": "storage.update_missing", "message_id": message_id})
                return
            for key, value in fields.items():
                if key in _MESSAGE_FIELDS:
                    setattr(row, key, value)

    def get_messages(self, conversation_id: str) -> List[Message]:
        with self.session_scope() as s:
            rows = s.scalars(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.asc())
            ).all()
            return [_row_to_message(r) for r in rows]

    def spend_tokens(self, record: SpendRecord) -> None:
        values = record.token_values(get_settings().price_overrides)
        with self.session_scope() as s:
            for token_type, amount in (("prompt", record.prompt_tokens), ("completion", record.completion_tokens)):
                if not amount:
                    continue
                s.add(
                    Transaction(
                        user=record.user,
                        conversation_id=record.conversation_id,
                        model=record.model,
                        context=record.context,
                        token_type=token_type,
                        raw_amount=int(amount),
                        token_value=Decimal(str(values[token_type])),
                    )
                )

    def get_transactions(self, conversation_id: str) -> List[Transaction]:
        with self.session_scope() as s:
            return list(s.scalars(select(Transaction).where(Transaction.conversation_id == conversation_id)).all())


@lru_cache(maxsize=1)
def get_store() -> SqlConversationStore:
    return SqlConversationStore()
