"""
Session Lifecycle Manager

Owns one WhatsApp client per number and keeps the store in sync with it:
1. Reconciliation: discover numbers that need a session
2. Session creation and event wiring
3. Lifecycle transitions (qr / ready / auth_failure / disconnected)
4. Automatic reconnect with backoff and a circuit breaker
5. Message pipeline: resolve conversation -> record -> executor queue
6. Shutdown

Everything runs on one event loop; the session map is only touched
from it, so no locking is needed.
"""

import asyncio
import structlog
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional

from prometheus_client import Counter, Gauge

from schemas import NumberRecord, WhatsAppMessage, ConversationMeta, BotExecutorRequest
from services.store import StoreGateway, StoreError
from services.conversations import ConversationResolver
from services.recorder import MessageRecorder, get_counterparty, INBOUND, OUTBOUND
from services.reconnect import ReconnectPolicy
from services.queue import ExecutorQueue, ExecutorJob
from services.whatsapp_client import WhatsAppClient
from services.transitions import (
    SessionState,
    TransitionContext,
    TRANSITIONS,
    SetNumberStatus,
    UpsertSession,
    AppendConnectionEvent,
    EvictClient,
    ScheduleReconnect,
    RECONNECT_SUSPENDED,
)

logger = structlog.get_logger("session_manager")

SESSIONS_ACTIVE = Gauge("wa_sessions_active", "Live WhatsApp client sessions")
CONNECTION_EVENTS = Counter("wa_connection_events_total", "Connection events", ["event_type"])

ClientFactory = Callable[[NumberRecord], WhatsAppClient]

# Restart events are re-read this far behind the newest one seen. A request
# committed late with an older timestamp is caught while inside this window.
RESTART_LOOKBACK = timedelta(minutes=5)


@dataclass
class SessionHandle:
    number: NumberRecord
    client: WhatsAppClient
    state: SessionState = SessionState.UNINITIALIZED


class SessionManager:
    """Per-number client registry and lifecycle driver."""

    def __init__(
        self,
        store: StoreGateway,
        client_factory: ClientFactory,
        resolver: ConversationResolver,
        recorder: MessageRecorder,
        executor_queue: Optional[ExecutorQueue] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        session_data_dir: str = "./session-data",
        qr_expiry_seconds: int = 60,
        reattach_connected: bool = True,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.client_factory = client_factory
        self.resolver = resolver
        self.recorder = recorder
        self.executor_queue = executor_queue
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self.session_data_dir = session_data_dir
        self.qr_expiry_seconds = qr_expiry_seconds
        self.reattach_connected = reattach_connected
        self._now = clock or (lambda: datetime.now(timezone.utc))

        self._sessions: Dict[str, SessionHandle] = {}
        self.reconnect_tasks: Dict[str, asyncio.Task] = {}
        self._shutting_down = False
        self._sync_in_progress = False
        self._started_at = self._now()
        self._restart_watermark = self._started_at
        self._seen_restarts: Dict[int, datetime] = {}

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    @property
    def clients(self) -> Dict[str, WhatsAppClient]:
        return {number_id: handle.client for number_id, handle in self._sessions.items()}

    def state_of(self, number_id: str) -> SessionState:
        handle = self._sessions.get(number_id)
        return handle.state if handle else SessionState.UNINITIALIZED

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def initialize(self):
        Path(self.session_data_dir).mkdir(parents=True, exist_ok=True)

    def _statuses_to_sync(self) -> List[str]:
        statuses = [SessionState.PENDING_QR.value]
        if self.reattach_connected:
            # Connected rows left over from a previous process have no live client
            statuses.append(SessionState.CONNECTED.value)
        return statuses

    async def sync_pending_numbers(self) -> int:
        """
        One reconciliation tick. Returns the number of sessions started.

        Overlapping ticks are skipped rather than queued.
        """
        if self._shutting_down:
            return 0
        if self._sync_in_progress:
            logger.warning("Previous sync still running, skipping tick")
            return 0

        self._sync_in_progress = True
        try:
            await self._process_restart_requests()

            try:
                numbers = await self.store.list_numbers_by_status(self._statuses_to_sync())
            except StoreError as e:
                logger.error("Failed to fetch numbers", error=str(e))
                return 0

            started = 0
            for number in numbers:
                if self._shutting_down:
                    break
                if number.id in self._sessions or number.id in self.reconnect_tasks:
                    continue
                logger.debug("Ensuring session for number", number_id=number.id, status=number.status)
                await self.ensure_session(number)
                started += 1
            return started
        finally:
            self._sync_in_progress = False

    def _restart_window_start(self) -> datetime:
        return max(self._started_at, self._restart_watermark - RESTART_LOOKBACK)

    async def _process_restart_requests(self):
        try:
            requests = await self.store.list_restart_requests(self._restart_window_start())
        except StoreError as e:
            logger.error("Failed to fetch restart requests", error=str(e))
            return

        for event_id, number_id, requested_at in requests:
            if event_id in self._seen_restarts:
                continue
            self._seen_restarts[event_id] = requested_at
            self._restart_watermark = max(self._restart_watermark, requested_at)
            self.reconnect_policy.reset(number_id)

            pending = self.reconnect_tasks.pop(number_id, None)
            if pending:
                pending.cancel()

            handle = self._sessions.pop(number_id, None)
            SESSIONS_ACTIVE.set(len(self._sessions))
            logger.info("Restart requested", number_id=number_id, had_client=handle is not None)
            if handle:
                await self._destroy_client(number_id, handle.client)

        # Anything at or before the window start can no longer be returned
        window_start = self._restart_window_start()
        self._seen_restarts = {
            event_id: requested_at
            for event_id, requested_at in self._seen_restarts.items()
            if requested_at > window_start
        }

    # =========================================================================
    # SESSION CREATION
    # =========================================================================

    async def ensure_session(self, number: NumberRecord, reconnecting: bool = False):
        """
        Create, wire and initialise a client for the number.

        A failed initialise during an automatic reconnect schedules the next
        attempt; the reconnect policy still bounds how often that happens.
        """
        if self._shutting_down or number.id in self._sessions:
            return

        client = self.client_factory(number)
        handle = SessionHandle(number=number, client=client)
        # Registered before the first await so a concurrent tick sees it
        self._sessions[number.id] = handle
        SESSIONS_ACTIVE.set(len(self._sessions))
        logger.info("Initialising WhatsApp client", number_id=number.id)

        self._wire(handle)

        try:
            await client.initialize()
        except Exception as e:
            logger.error("Failed to initialise WhatsApp client", number_id=number.id, error=str(e))
            self.reconnect_policy.record_failure(number.id)
            current = self._is_current(handle)
            if current:
                del self._sessions[number.id]
                SESSIONS_ACTIVE.set(len(self._sessions))
            await self._destroy_client(number.id, client)
            if reconnecting and current:
                await self._schedule_reconnect(number)

    def _wire(self, handle: SessionHandle):
        client = handle.client
        client.on("qr", partial(self._on_lifecycle, handle, "qr"))
        client.on("ready", partial(self._on_lifecycle, handle, "ready"))
        client.on("auth_failure", partial(self._on_lifecycle, handle, "auth_failure"))
        client.on("disconnected", partial(self._on_lifecycle, handle, "disconnected"))
        client.on("message", partial(self._on_message, handle, INBOUND))
        client.on("message_create", partial(self._on_message, handle, OUTBOUND))

    def _is_current(self, handle: SessionHandle) -> bool:
        return self._sessions.get(handle.number.id) is handle

    # =========================================================================
    # LIFECYCLE EVENTS
    # =========================================================================

    async def _on_lifecycle(self, handle: SessionHandle, event: str, payload=None):
        number_id = handle.number.id
        if not self._is_current(handle):
            logger.debug("Ignoring event from stale client", number_id=number_id, client_event=event)
            return

        if event == "qr":
            logger.info("QR generated", number_id=number_id)
        elif event == "ready":
            logger.info("WhatsApp client ready", number_id=number_id)
            self.reconnect_policy.record_success(number_id)
        elif event == "auth_failure":
            logger.error("Authentication failure", number_id=number_id, message=payload)
        elif event == "disconnected":
            logger.warning("WhatsApp client disconnected", number_id=number_id, reason=payload)
            self.reconnect_policy.record_failure(number_id)

        ctx = TransitionContext(
            now=self._now(),
            qr_ttl_seconds=self.qr_expiry_seconds,
            shutting_down=self._shutting_down,
        )
        transition = TRANSITIONS[event](handle.state, payload, ctx)
        handle.state = transition.state
        await self._apply(handle, transition.commands)

    async def _apply(self, handle: SessionHandle, commands: list):
        number_id = handle.number.id

        for command in commands:
            if isinstance(command, UpsertSession):
                try:
                    await self.store.upsert_session(
                        number_id,
                        command.session_state,
                        qr_token=command.qr_token,
                        qr_expires_at=command.qr_expires_at,
                        last_error=command.last_error,
                    )
                except StoreError as e:
                    logger.error("Failed to persist session state",
                                 number_id=number_id, session_state=command.session_state, error=str(e))
                    if command.halt_on_failure:
                        return

            elif isinstance(command, SetNumberStatus):
                try:
                    await self.store.update_number_status(
                        number_id, command.status, connected_at=command.connected_at
                    )
                except StoreError as e:
                    logger.error("Failed to update number status",
                                 number_id=number_id, status=command.status, error=str(e))

            elif isinstance(command, AppendConnectionEvent):
                await self._append_event(number_id, command.event_type, command.payload)

            elif isinstance(command, EvictClient):
                if self._is_current(handle):
                    del self._sessions[number_id]
                    SESSIONS_ACTIVE.set(len(self._sessions))
                    await self._destroy_client(number_id, handle.client)

            elif isinstance(command, ScheduleReconnect):
                await self._schedule_reconnect(handle.number)

    async def _append_event(self, number_id: str, event_type: str, payload: Optional[dict] = None):
        CONNECTION_EVENTS.labels(event_type=event_type).inc()
        try:
            await self.store.insert_connection_event(number_id, event_type, payload or {})
        except StoreError as e:
            logger.error("Failed to log connection event",
                         number_id=number_id, event_type=event_type, error=str(e))

    # =========================================================================
    # RECONNECT
    # =========================================================================

    async def _schedule_reconnect(self, number: NumberRecord):
        if self._shutting_down:
            return

        delay = self.reconnect_policy.next_delay(number.id)
        if delay is None:
            logger.warning("Auto-reconnect suspended, waiting for restart request", number_id=number.id)
            await self._append_event(number.id, RECONNECT_SUSPENDED, {
                "max_failures": self.reconnect_policy.max_failures,
                "window_seconds": self.reconnect_policy.window_seconds,
            })
            return

        logger.info("Reconnect scheduled", number_id=number.id, delay=delay)
        self.reconnect_tasks[number.id] = asyncio.create_task(
            self._reconnect_later(number, delay), name=f"reconnect-{number.id}"
        )

    async def _reconnect_later(self, number: NumberRecord, delay: float):
        await asyncio.sleep(delay)

        if self.reconnect_tasks.get(number.id) is asyncio.current_task():
            del self.reconnect_tasks[number.id]

        if self._shutting_down or number.id in self._sessions:
            return
        await self.ensure_session(number, reconnecting=True)

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def _on_message(self, handle: SessionHandle, direction: str, message: WhatsAppMessage):
        if message.from_me != (direction == OUTBOUND):
            return
        if not self._is_current(handle):
            return
        await self.handle_message_event(handle.number, message, direction, client=handle.client)

    async def handle_message_event(
        self,
        number: NumberRecord,
        message: WhatsAppMessage,
        direction: str,
        client: Optional[WhatsAppClient] = None
    ) -> Optional[ConversationMeta]:
        """
        Persist one message and, for inbound ones, queue the bot executor.

        Returns the conversation the message was recorded in, or None
        if it was dropped or could not be stored.
        """
        counterparty = get_counterparty(message, direction)
        if not counterparty:
            logger.warning("Unable to determine counterparty for message",
                           number_id=number.id, direction=direction, message_id=message.id)
            return None

        try:
            conversation = await self.resolver.resolve(number.id, counterparty)
            if conversation is None:
                return None
            message_id = await self.recorder.record(number.id, conversation, message, direction)
        except Exception as e:
            logger.error("Failed to persist message",
                         number_id=number.id, message_id=message.id, direction=direction, error=str(e))
            return None

        if message_id is None:
            return None

        if direction == INBOUND:
            self._dispatch_to_executor(number, conversation, message, client)
        return conversation

    def _dispatch_to_executor(
        self,
        number: NumberRecord,
        conversation: ConversationMeta,
        message: WhatsAppMessage,
        client: Optional[WhatsAppClient]
    ):
        if self.executor_queue is None:
            return

        if client is None:
            handle = self._sessions.get(number.id)
            client = handle.client if handle else None
        if client is None:
            logger.warning("No live client for bot replies", number_id=number.id)
            return

        request = BotExecutorRequest(
            number_id=number.id,
            conversation_id=conversation.conversation_id,
            bot_version_id=conversation.bot_version_id,
            message=message,
        )
        self.executor_queue.submit(ExecutorJob(request=request, client=client))

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    async def shutdown(self):
        self._shutting_down = True
        logger.info("Shutting down session manager", sessions=len(self._sessions))

        for task in self.reconnect_tasks.values():
            task.cancel()
        self.reconnect_tasks.clear()

        for number_id, handle in list(self._sessions.items()):
            await self._destroy_client(number_id, handle.client)
        self._sessions.clear()
        SESSIONS_ACTIVE.set(0)

    async def _destroy_client(self, number_id: str, client: WhatsAppClient):
        try:
            await client.destroy()
            logger.info("Destroyed WhatsApp client", number_id=number_id)
        except Exception as e:
            logger.error("Failed to destroy client", number_id=number_id, error=str(e))
