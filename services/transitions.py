"""
Session state machine.

Each lifecycle event maps to a pure function that takes the current
state plus the event payload and returns the next state and the side
effects the manager must carry out. No I/O happens here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    PENDING_QR = "pending_qr"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# Connection event types
QR_GENERATED = "qr_generated"
CONNECTED = "connected"
AUTH_FAILURE = "auth_failure"
DISCONNECTED = "disconnected"
RESTART_REQUESTED = "restart_requested"
RECONNECT_SUSPENDED = "reconnect_suspended"


@dataclass(frozen=True)
class SetNumberStatus:
    status: str
    connected_at: Optional[datetime] = None


@dataclass(frozen=True)
class UpsertSession:
    session_state: str
    qr_token: Optional[str] = None
    qr_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    halt_on_failure: bool = False


@dataclass(frozen=True)
class AppendConnectionEvent:
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EvictClient:
    pass


@dataclass(frozen=True)
class ScheduleReconnect:
    pass


@dataclass(frozen=True)
class TransitionContext:
    now: datetime
    qr_ttl_seconds: int
    shutting_down: bool = False


@dataclass(frozen=True)
class Transition:
    state: SessionState
    commands: List[Any]


def on_qr(state: SessionState, token: str, ctx: TransitionContext) -> Transition:
    expires_at = ctx.now + timedelta(seconds=ctx.qr_ttl_seconds)
    return Transition(SessionState.PENDING_QR, [
        # A QR that cannot be persisted is never advertised
        UpsertSession(SessionState.PENDING_QR.value, qr_token=token,
                      qr_expires_at=expires_at, halt_on_failure=True),
        SetNumberStatus(SessionState.PENDING_QR.value),
        AppendConnectionEvent(QR_GENERATED),
    ])


def on_ready(state: SessionState, _payload: Any, ctx: TransitionContext) -> Transition:
    return Transition(SessionState.CONNECTED, [
        SetNumberStatus(SessionState.CONNECTED.value, connected_at=ctx.now),
        UpsertSession(SessionState.CONNECTED.value),
        AppendConnectionEvent(CONNECTED),
    ])


def on_auth_failure(state: SessionState, message: Optional[str], ctx: TransitionContext) -> Transition:
    return Transition(SessionState.DISCONNECTED, [
        SetNumberStatus(SessionState.DISCONNECTED.value),
        UpsertSession(SessionState.DISCONNECTED.value, last_error=message),
        AppendConnectionEvent(AUTH_FAILURE, {"message": message}),
    ])


def on_disconnected(state: SessionState, reason: Optional[str], ctx: TransitionContext) -> Transition:
    commands: List[Any] = [
        SetNumberStatus(SessionState.DISCONNECTED.value),
        UpsertSession(SessionState.DISCONNECTED.value, last_error=reason),
        AppendConnectionEvent(DISCONNECTED, {"reason": reason}),
        EvictClient(),
    ]
    if not ctx.shutting_down:
        commands.append(ScheduleReconnect())
    return Transition(SessionState.DISCONNECTED, commands)


TRANSITIONS: Dict[str, Callable[[SessionState, Any, TransitionContext], Transition]] = {
    "qr": on_qr,
    "ready": on_ready,
    "auth_failure": on_auth_failure,
    "disconnected": on_disconnected,
}
