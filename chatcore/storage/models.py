# chatcore/storage/models.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Conversation(Base):
    __tablename__ = "conversations"

    conversation_id = Column(String(64), primary_key=True)
    user = Column(String(64), index=True)
    title = Column(String(256), nullable=True, default="New Chat")
    endpoint = Column(String(64), nullable=True)
    model = Column(String(128), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")


class Message(Base):
    __tablename__ = "messages"

    message_id = Column(String(64), primary_key=True)
    conversation_id = Column(
        String(64), ForeignKey("conversations.conversation_id", ondelete="CASCADE"), nullable=False, index=True
    )
    parent_message_id = Column(String(64), nullable=True, index=True)
    user = Column(String(64), nullable=True)
    sender = Column(String(128), nullable=True)
    role = Column(String(16), nullable=True)
    is_created_by_user = Column(Boolean, default=False)
    text = Column(Text, nullable=False, default="")
    attachments = Column(Text, nullable=True)  # JSON serialized

    token_count = Column(Integer, nullable=True)
    summary = Column(Text, nullable=True)
    summary_token_count = Column(Integer, nullable=True)

    model = Column(String(128), nullable=True)
    endpoint = Column(String(64), nullable=True)
    finish_reason = Column(String(32), nullable=True)
    unfinished = Column(Boolean, default=False)
    error = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        CheckConstraint("role is null or role in ('system','user','assistant')", name="ck_messages_role"),
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user = Column(String(64), index=True)
    conversation_id = Column(String(64), index=True, nullable=True)
    model = Column(String(128))
    context = Column(String(32))  # message|incomplete|title|summary
    token_type = Column(String(16))  # prompt|completion
    raw_amount = Column(Integer, default=0)
    token_value = Column(Numeric(12, 6), default=Decimal("0.000000"))

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        CheckConstraint("token_type in ('prompt','completion')", name="ck_transactions_token_type"),
    )
