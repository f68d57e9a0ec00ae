"""
WhatsApp client abstraction + wppconnect-server driver.

The session manager only talks to WhatsAppClient:
- on(event, handler) / emit(event, *args)
- initialize(), send_message(chat_id, body), destroy()

Events: qr(token), ready(), auth_failure(message), disconnected(reason),
message(WhatsAppMessage), message_create(WhatsAppMessage).

WppConnectClient drives one wppconnect-server session per number:
HTTP (httpx) for commands, Socket.IO for the event stream.
"""

import structlog
import orjson
import httpx
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from socketio.async_client import AsyncClient

from schemas import WhatsAppMessage

logger = structlog.get_logger("whatsapp_client")

Handler = Callable[..., Awaitable[None]]

CLIENT_EVENTS = ("qr", "ready", "auth_failure", "disconnected", "message", "message_create")

# status-find values reported by wppconnect
AUTH_FAILURE_STATUSES = {"qrReadError", "qrReadFail", "deviceNotConnected"}
DISCONNECT_STATUSES = {"browserClose", "desconnectedMobile", "serverClose", "autocloseCalled", "disconnected"}


class WhatsAppClient(ABC):
    """Event-emitting client bound to a single number."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event: str, handler: Handler):
        if event not in CLIENT_EVENTS:
            raise ValueError(f"Unknown client event: {event}")
        self._handlers.setdefault(event, []).append(handler)

    async def emit(self, event: str, *args: Any):
        """Run handlers in registration order; a failing handler does not stop the others."""
        for handler in self._handlers.get(event, []):
            try:
                await handler(*args)
            except Exception:
                logger.exception("Client event handler failed", client_event=event)

    @abstractmethod
    async def initialize(self):
        ...

    @abstractmethod
    async def send_message(self, chat_id: str, body: str):
        ...

    @abstractmethod
    async def destroy(self):
        ...


class WppConnectClient(WhatsAppClient):
    """
    One wppconnect-server session.

    The bearer token is kept in `auth_dir/token.json` so a restarted
    runtime resumes the server-side session instead of asking for a new QR.
    """

    def __init__(
        self,
        session_name: str,
        base_url: str,
        secret_key: str,
        auth_dir: Path,
        socketio_path: str = "/socket.io/",
        timeout: float = 15.0
    ):
        super().__init__()
        self.session_name = session_name
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.auth_dir = Path(auth_dir)
        self.socketio_path = socketio_path
        self.timeout = timeout

        self.http: Optional[httpx.AsyncClient] = None
        self.sio: Optional[AsyncClient] = None
        self._closing = False

    @property
    def token_path(self) -> Path:
        return self.auth_dir / "token.json"

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self):
        self.http = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

        token = self._load_token() or await self._generate_token()
        self._set_token(token)

        self.sio = AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        self._register_socket_handlers()
        await self.sio.connect(self.base_url, socketio_path=self.socketio_path)

        response = await self.http.post(
            f"/api/{self.session_name}/start-session",
            json={"waitQrCode": False},
        )
        if response.status_code == 401:
            # Stored token was revoked server side
            self._set_token(await self._generate_token())
            response = await self.http.post(
                f"/api/{self.session_name}/start-session",
                json={"waitQrCode": False},
            )
        response.raise_for_status()
        logger.info("wppconnect session started", session=self.session_name)

    async def send_message(self, chat_id: str, body: str):
        if not self.http:
            raise RuntimeError("Client not initialised")

        payload = {
            "phone": chat_id.split("@", 1)[0],
            "message": body,
            "isGroup": chat_id.endswith("@g.us"),
        }
        response = await self.http.post(f"/api/{self.session_name}/send-message", json=payload)
        response.raise_for_status()

    async def destroy(self):
        """Close the browser session but keep the token for the next start."""
        self._closing = True
        try:
            if self.http:
                await self.http.post(f"/api/{self.session_name}/close-session")
        except httpx.HTTPError as e:
            logger.warning("close-session failed", session=self.session_name, error=str(e))
        finally:
            if self.sio and self.sio.connected:
                await self.sio.disconnect()
            if self.http:
                await self.http.aclose()

    # =========================================================================
    # TOKEN
    # =========================================================================

    async def _generate_token(self) -> str:
        response = await self.http.post(f"/api/{self.session_name}/{self.secret_key}/generate-token")
        response.raise_for_status()
        token = response.json().get("token")
        if not token:
            raise RuntimeError("wppconnect did not return a token")

        self.auth_dir.mkdir(parents=True, exist_ok=True)
        self.token_path.write_bytes(orjson.dumps({"token": token}))
        return token

    def _load_token(self) -> Optional[str]:
        try:
            return orjson.loads(self.token_path.read_bytes()).get("token")
        except (OSError, orjson.JSONDecodeError):
            return None

    def _set_token(self, token: str):
        self.http.headers["Authorization"] = f"Bearer {token}"

    # =========================================================================
    # SOCKET EVENTS
    # =========================================================================

    def _register_socket_handlers(self):
        self.sio.on("qrCode", self._on_qr_code)
        self.sio.on("session-logged", self._on_session_logged)
        self.sio.on("status-find", self._on_status_find)
        self.sio.on("received-message", self._on_received_message)
        self.sio.on("disconnect", self._on_socket_disconnect)

    def _is_mine(self, data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        session = data.get("session")
        if session is None and isinstance(data.get("response"), dict):
            session = data["response"].get("session")
        return session is None or session == self.session_name

    async def _on_qr_code(self, data):
        if not self._is_mine(data):
            return
        token = data.get("urlcode") or data.get("data")
        if token:
            await self.emit("qr", token)

    async def _on_session_logged(self, data):
        if self._is_mine(data) and data.get("status", True):
            await self.emit("ready")

    async def _on_status_find(self, data):
        if not self._is_mine(data):
            return
        status = data.get("status")
        if status in AUTH_FAILURE_STATUSES:
            await self.emit("auth_failure", status)
        elif status in DISCONNECT_STATUSES:
            await self.emit("disconnected", status)

    async def _on_received_message(self, data):
        if not self._is_mine(data):
            return
        raw = data.get("response", data)
        message = WhatsAppMessage.from_payload(raw)
        await self.emit("message_create" if message.from_me else "message", message)

    async def _on_socket_disconnect(self, *args):
        if self._closing:
            return
        await self.emit("disconnected", "SOCKET_CLOSED")


def wppconnect_client_factory(settings) -> Callable[[Any], WppConnectClient]:
    """Build a client factory for SessionManager from Settings."""

    def factory(number) -> WppConnectClient:
        return WppConnectClient(
            session_name=number.id,
            base_url=settings.WPPCONNECT_URL,
            secret_key=settings.WPPCONNECT_SECRET_KEY,
            auth_dir=Path(settings.SESSION_DATA_DIR).resolve() / number.id,
            socketio_path=settings.WPPCONNECT_SOCKETIO_PATH,
        )

    return factory
