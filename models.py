"""
Database Models

Tables shared with the admin UI. The runtime never creates numbers or
deployments; it updates number status and writes sessions, connection
events, conversations and messages.
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, Integer, ForeignKey, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Number(Base):
    """A registered WhatsApp number. Created by the registration flow."""
    __tablename__ = "numbers"

    id = Column(String(36), primary_key=True, default=_uuid)
    phone_number = Column(String(32), nullable=False, unique=True)
    status = Column(String(32), nullable=False, default="pending_qr", index=True)
    last_connected_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)

    def __repr__(self):
        return f"<Number {self.phone_number} [{self.status}]>"


class NumberSession(Base):
    """
    Authentication handshake state, one row per number.

    qr_token is only meaningful while session_state == 'pending_qr'.
    """
    __tablename__ = "number_sessions"

    number_id = Column(String(36), ForeignKey("numbers.id", ondelete="CASCADE"), primary_key=True)
    session_state = Column(String(32), nullable=False)
    qr_token = Column(Text, nullable=True)
    qr_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


class NumberConnectionEvent(Base):
    """Append-only audit trail of lifecycle transitions."""
    __tablename__ = "number_connection_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    number_id = Column(String(36), ForeignKey("numbers.id", ondelete="CASCADE"), index=True)
    event_type = Column(String(50), nullable=False)
    payload = Column(JsonType, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), default=_now, index=True)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_number_customer", "number_id", "customer_wa_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    number_id = Column(String(36), ForeignKey("numbers.id", ondelete="CASCADE"), nullable=False)
    customer_wa_id = Column(String(100), nullable=False)
    bot_version_id = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False, default="open")
    opened_at = Column(DateTime(timezone=True), default=_now)
    last_message_at = Column(DateTime(timezone=True), default=_now)
    created_at = Column(DateTime(timezone=True), default=_now)


class Message(Base):
    """Immutable message row; payload is a snapshot of the protocol message."""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), index=True)
    direction = Column(String(10), nullable=False)  # 'inbound' or 'outbound'
    message_type = Column(String(30), nullable=False, default="text")
    payload = Column(JsonType, nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=False)
    delivery_status = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)


class NumberBotDeployment(Base):
    __tablename__ = "number_bot_deployments"

    id = Column(String(36), primary_key=True, default=_uuid)
    number_id = Column(String(36), ForeignKey("numbers.id", ondelete="CASCADE"), index=True)
    bot_version_id = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False, default="active")
    effective_at = Column(DateTime(timezone=True), default=_now)
