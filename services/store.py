"""
Store Gateway

Typed reads/writes against the runtime tables:
1. numbers / number_sessions (status + QR handshake)
2. number_connection_events (append-only audit trail)
3. conversations / messages (history)
4. number_bot_deployments (read only)

No business logic lives here. Every SQLAlchemy failure is raised as
StoreError so callers can log it with their own context.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from models import (
    Number,
    NumberSession,
    NumberConnectionEvent,
    Conversation,
    Message,
    NumberBotDeployment,
)
from schemas import NumberRecord, SessionRecord, BotBinding

RESTART_REQUESTED = "restart_requested"


class StoreError(Exception):
    """A store read or write failed."""

    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class StoreGateway:
    """Query construction over an async session factory."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # =========================================================================
    # NUMBERS & SESSIONS
    # =========================================================================

    async def list_numbers_by_status(self, statuses: Iterable[str]) -> List[NumberRecord]:
        stmt = select(Number.id, Number.phone_number, Number.status).where(
            Number.status.in_(list(statuses))
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as e:
            raise StoreError("list_numbers_by_status", e) from e

        return [
            NumberRecord(id=row.id, phone_number=row.phone_number, status=row.status)
            for row in rows
        ]

    async def update_number_status(
        self,
        number_id: str,
        status: str,
        connected_at: Optional[datetime] = None
    ):
        """Set status; last_connected_at only moves forward, it is never cleared."""
        values: Dict[str, Any] = {"status": status}
        if connected_at is not None:
            values["last_connected_at"] = connected_at

        stmt = update(Number).where(Number.id == number_id).values(**values)
        await self._execute("update_number_status", stmt)

    async def upsert_session(
        self,
        number_id: str,
        session_state: str,
        qr_token: Optional[str] = None,
        qr_expires_at: Optional[datetime] = None,
        last_error: Optional[str] = None
    ):
        values = {
            "number_id": number_id,
            "session_state": session_state,
            "qr_token": qr_token,
            "qr_expires_at": qr_expires_at,
            "last_error": last_error,
            "updated_at": datetime.now(timezone.utc),
        }
        stmt = pg_insert(NumberSession).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[NumberSession.number_id],
            set_={k: v for k, v in values.items() if k != "number_id"},
        )
        await self._execute("upsert_session", stmt)

    async def get_session(self, number_id: str) -> Optional[SessionRecord]:
        stmt = select(NumberSession).where(NumberSession.number_id == number_id)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                row = result.scalars().first()
        except SQLAlchemyError as e:
            raise StoreError("get_session", e) from e

        if row is None:
            return None
        return SessionRecord(
            number_id=row.number_id,
            session_state=row.session_state,
            qr_token=row.qr_token,
            qr_expires_at=row.qr_expires_at,
            last_error=row.last_error,
        )

    async def clear_expired_qr_tokens(self, now: datetime) -> int:
        stmt = (
            update(NumberSession)
            .where(
                NumberSession.qr_token.is_not(None),
                NumberSession.qr_expires_at < now,
            )
            .values(qr_token=None, qr_expires_at=None)
        )
        result = await self._execute("clear_expired_qr_tokens", stmt)
        return result.rowcount or 0

    # =========================================================================
    # CONNECTION EVENTS
    # =========================================================================

    async def insert_connection_event(
        self,
        number_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None
    ):
        try:
            async with self.session_factory() as session:
                session.add(NumberConnectionEvent(
                    number_id=number_id,
                    event_type=event_type,
                    payload=payload or {},
                    timestamp=datetime.now(timezone.utc),
                ))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError("insert_connection_event", e) from e

    async def list_restart_requests(self, since: datetime) -> List[Tuple[int, str, datetime]]:
        """(event_id, number_id, timestamp) of restart requests strictly newer than `since`."""
        stmt = (
            select(NumberConnectionEvent.id, NumberConnectionEvent.number_id, NumberConnectionEvent.timestamp)
            .where(
                NumberConnectionEvent.event_type == RESTART_REQUESTED,
                NumberConnectionEvent.timestamp > since,
            )
            .order_by(NumberConnectionEvent.timestamp.asc(), NumberConnectionEvent.id.asc())
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [(row.id, row.number_id, row.timestamp) for row in result.all()]
        except SQLAlchemyError as e:
            raise StoreError("list_restart_requests", e) from e

    async def request_restart(self, number_id: str):
        """Reset a number to pending_qr and record the request, in one transaction."""
        now = datetime.now(timezone.utc)
        session_values = {
            "number_id": number_id,
            "session_state": "pending_qr",
            "qr_token": None,
            "qr_expires_at": None,
            "updated_at": now,
        }
        upsert = pg_insert(NumberSession).values(**session_values).on_conflict_do_update(
            index_elements=[NumberSession.number_id],
            set_={k: v for k, v in session_values.items() if k != "number_id"},
        )
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(Number).where(Number.id == number_id).values(status="pending_qr")
                )
                await session.execute(upsert)
                session.add(NumberConnectionEvent(
                    number_id=number_id,
                    event_type=RESTART_REQUESTED,
                    payload={},
                    timestamp=now,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError("request_restart", e) from e

    # =========================================================================
    # CONVERSATIONS & MESSAGES
    # =========================================================================

    async def find_latest_conversation(
        self,
        number_id: str,
        customer_wa_id: str
    ) -> Optional[Dict[str, Any]]:
        stmt = (
            select(Conversation.id, Conversation.bot_version_id)
            .where(
                Conversation.number_id == number_id,
                Conversation.customer_wa_id == customer_wa_id,
            )
            .order_by(Conversation.created_at.desc())
            .limit(1)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                row = result.first()
        except SQLAlchemyError as e:
            raise StoreError("find_latest_conversation", e) from e

        if row is None:
            return None
        return {"id": row.id, "bot_version_id": row.bot_version_id}

    async def create_conversation(
        self,
        number_id: str,
        customer_wa_id: str,
        bot_version_id: Optional[str],
        opened_at: datetime
    ) -> Dict[str, Any]:
        conversation = Conversation(
            number_id=number_id,
            customer_wa_id=customer_wa_id,
            bot_version_id=bot_version_id,
            status="open",
            opened_at=opened_at,
            last_message_at=opened_at,
            created_at=opened_at,
        )
        try:
            async with self.session_factory() as session:
                session.add(conversation)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError("create_conversation", e) from e

        return {"id": conversation.id, "bot_version_id": conversation.bot_version_id}

    async def update_conversation_bot_version(self, conversation_id: str, bot_version_id: str):
        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(bot_version_id=bot_version_id)
        )
        await self._execute("update_conversation_bot_version", stmt)

    async def touch_conversation(self, conversation_id: str, last_message_at: datetime):
        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_message_at=last_message_at, status="open")
        )
        await self._execute("touch_conversation", stmt)

    async def insert_message(
        self,
        conversation_id: str,
        direction: str,
        message_type: str,
        payload: Dict[str, Any],
        sent_at: datetime,
        delivery_status: str
    ) -> str:
        message = Message(
            conversation_id=conversation_id,
            direction=direction,
            message_type=message_type,
            payload=payload,
            sent_at=sent_at,
            delivery_status=delivery_status,
        )
        try:
            async with self.session_factory() as session:
                session.add(message)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError("insert_message", e) from e
        return message.id

    # =========================================================================
    # BOT DEPLOYMENTS
    # =========================================================================

    async def get_active_deployment(self, number_id: str) -> Optional[BotBinding]:
        stmt = (
            select(NumberBotDeployment.id, NumberBotDeployment.bot_version_id)
            .where(
                NumberBotDeployment.number_id == number_id,
                NumberBotDeployment.status == "active",
            )
            .order_by(NumberBotDeployment.effective_at.desc())
            .limit(1)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                row = result.first()
        except SQLAlchemyError as e:
            raise StoreError("get_active_deployment", e) from e

        if row is None:
            return None
        return BotBinding(deployment_id=row.id, bot_version_id=row.bot_version_id)

    async def _execute(self, operation: str, stmt):
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result
        except SQLAlchemyError as e:
            raise StoreError(operation, e) from e
