import uuid
import fnmatch
import pytest
import pytest_asyncio
from datetime import datetime, timezone
from httpx import AsyncClient, ASGITransport
from fastapi_limiter import FastAPILimiter

from main import app
from routers.sessions import get_store
from schemas import NumberRecord, SessionRecord, BotBinding, WhatsAppMessage
from services.store import StoreError, RESTART_REQUESTED
from services.cache import BotBindingCache
from services.conversations import ConversationResolver
from services.recorder import MessageRecorder
from services.executor import EchoBotExecutor
from services.queue import ExecutorQueue
from services.reconnect import ReconnectPolicy
from services.session_manager import SessionManager
from services.whatsapp_client import WhatsAppClient


class FakeRedis:
    """In-memory Redis with SETEX expiry driven by a manual clock."""

    def __init__(self):
        self.data = {}
        self.expires = {}
        self.now = 0.0
        self.fail = False

    def advance(self, seconds):
        self.now += seconds

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    def _alive(self, key):
        deadline = self.expires.get(key)
        if deadline is not None and deadline <= self.now:
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return key in self.data

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.data.get(key) if self._alive(key) else None

    async def set(self, key, value, ex=None, *args, **kwargs):
        self._check()
        self.data[key] = value
        if ex:
            self.expires[key] = self.now + ex
        return True

    async def setex(self, key, time, value):
        self._check()
        self.data[key] = value
        self.expires[key] = self.now + time
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                removed += 1
            self.expires.pop(key, None)
        return removed

    async def keys(self, pattern="*"):
        self._check()
        return [k for k in list(self.data.keys()) if self._alive(k) and fnmatch.fnmatch(k, pattern)]

    # Rate limiter support
    async def eval(self, *args, **kwargs): return 0
    async def evalsha(self, *args, **kwargs): return 0
    async def script_load(self, script): return "dummy_sha"

    async def close(self): pass
    async def aclose(self): pass


class FakeStore:
    """
    In-memory StoreGateway.

    Operation names added to `fail` raise StoreError, the same way a
    broken database surfaces through the real gateway.
    """

    def __init__(self):
        self.numbers = {}
        self.sessions = {}
        self.events = []
        self.conversations = []
        self.messages = []
        self.deployments = {}
        self.fail = set()
        self.calls = []

    def _op(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise StoreError(name, RuntimeError("connection refused"))

    # --- helpers -------------------------------------------------------------

    def add_number(self, number_id=None, phone_number="966500000001", status="pending_qr"):
        number_id = number_id or str(uuid.uuid4())
        self.numbers[number_id] = {
            "id": number_id,
            "phone_number": phone_number,
            "status": status,
            "last_connected_at": None,
        }
        return NumberRecord(id=number_id, phone_number=phone_number, status=status)

    def add_event(self, number_id, event_type, payload=None, timestamp=None):
        self.events.append({
            "id": len(self.events) + 1,
            "number_id": number_id,
            "event_type": event_type,
            "payload": payload or {},
            "timestamp": timestamp or datetime.now(timezone.utc),
        })

    def event_types(self, number_id=None):
        return [e["event_type"] for e in self.events if number_id is None or e["number_id"] == number_id]

    def set_deployment(self, number_id, bot_version_id, deployment_id="dep-1"):
        self.deployments[number_id] = BotBinding(deployment_id=deployment_id, bot_version_id=bot_version_id)

    # --- gateway -------------------------------------------------------------

    async def list_numbers_by_status(self, statuses):
        self._op("list_numbers_by_status")
        statuses = list(statuses)
        return [
            NumberRecord(id=n["id"], phone_number=n["phone_number"], status=n["status"])
            for n in self.numbers.values()
            if n["status"] in statuses
        ]

    async def update_number_status(self, number_id, status, connected_at=None):
        self._op("update_number_status")
        row = self.numbers.setdefault(number_id, {"id": number_id, "phone_number": "", "last_connected_at": None})
        row["status"] = status
        if connected_at is not None:
            row["last_connected_at"] = connected_at

    async def upsert_session(self, number_id, session_state, qr_token=None, qr_expires_at=None, last_error=None):
        self._op("upsert_session")
        self.sessions[number_id] = {
            "number_id": number_id,
            "session_state": session_state,
            "qr_token": qr_token,
            "qr_expires_at": qr_expires_at,
            "last_error": last_error,
        }

    async def get_session(self, number_id):
        self._op("get_session")
        row = self.sessions.get(number_id)
        return SessionRecord(**row) if row else None

    async def clear_expired_qr_tokens(self, now):
        self._op("clear_expired_qr_tokens")
        cleared = 0
        for row in self.sessions.values():
            if row["qr_token"] is not None and row["qr_expires_at"] and row["qr_expires_at"] < now:
                row["qr_token"] = None
                row["qr_expires_at"] = None
                cleared += 1
        return cleared

    async def insert_connection_event(self, number_id, event_type, payload=None):
        self._op("insert_connection_event")
        self.add_event(number_id, event_type, payload)

    async def list_restart_requests(self, since):
        self._op("list_restart_requests")
        return [
            (e["id"], e["number_id"], e["timestamp"])
            for e in self.events
            if e["event_type"] == RESTART_REQUESTED and e["timestamp"] > since
        ]

    async def request_restart(self, number_id):
        self._op("request_restart")
        if number_id in self.numbers:
            self.numbers[number_id]["status"] = "pending_qr"
        self.sessions[number_id] = {
            "number_id": number_id,
            "session_state": "pending_qr",
            "qr_token": None,
            "qr_expires_at": None,
            "last_error": None,
        }
        self.add_event(number_id, RESTART_REQUESTED)

    async def find_latest_conversation(self, number_id, customer_wa_id):
        self._op("find_latest_conversation")
        matches = [
            c for c in self.conversations
            if c["number_id"] == number_id and c["customer_wa_id"] == customer_wa_id
        ]
        if not matches:
            return None
        latest = matches[-1]
        return {"id": latest["id"], "bot_version_id": latest["bot_version_id"]}

    async def create_conversation(self, number_id, customer_wa_id, bot_version_id, opened_at):
        self._op("create_conversation")
        row = {
            "id": str(uuid.uuid4()),
            "number_id": number_id,
            "customer_wa_id": customer_wa_id,
            "bot_version_id": bot_version_id,
            "status": "open",
            "opened_at": opened_at,
            "last_message_at": opened_at,
        }
        self.conversations.append(row)
        return {"id": row["id"], "bot_version_id": bot_version_id}

    async def update_conversation_bot_version(self, conversation_id, bot_version_id):
        self._op("update_conversation_bot_version")
        for c in self.conversations:
            if c["id"] == conversation_id:
                c["bot_version_id"] = bot_version_id

    async def touch_conversation(self, conversation_id, last_message_at):
        self._op("touch_conversation")
        for c in self.conversations:
            if c["id"] == conversation_id:
                c["last_message_at"] = last_message_at
                c["status"] = "open"

    async def insert_message(self, conversation_id, direction, message_type, payload, sent_at, delivery_status):
        self._op("insert_message")
        message_id = str(uuid.uuid4())
        self.messages.append({
            "id": message_id,
            "conversation_id": conversation_id,
            "direction": direction,
            "message_type": message_type,
            "payload": payload,
            "sent_at": sent_at,
            "delivery_status": delivery_status,
        })
        return message_id

    async def get_active_deployment(self, number_id):
        self._op("get_active_deployment")
        return self.deployments.get(number_id)


class FakeClient(WhatsAppClient):
    """Scriptable WhatsApp client: tests drive it through emit()."""

    def __init__(self, number=None, fail_init=False):
        super().__init__()
        self.number = number
        self.fail_init = fail_init
        self.initialized = 0
        self.destroyed = 0
        self.sent = []
        self.send_error = None

    async def initialize(self):
        self.initialized += 1
        if self.fail_init:
            raise RuntimeError("browser failed to launch")

    async def send_message(self, chat_id, body):
        if self.send_error:
            raise self.send_error
        self.sent.append((chat_id, body))

    async def destroy(self):
        self.destroyed += 1


class FakeClientFactory:

    def __init__(self):
        self.created = []
        self.failing = set()

    def __call__(self, number):
        client = FakeClient(number, fail_init=number.id in self.failing)
        self.created.append(client)
        return client

    def for_number(self, number_id):
        return [c for c in self.created if c.number.id == number_id]


def make_message(body="hello", sender="9665551234@c.us", to="966500000001@c.us", from_me=False, **kwargs):
    data = {
        "id": kwargs.pop("id", f"false_{sender}_{uuid.uuid4().hex[:8]}"),
        "from": to if from_me else sender,
        "to": sender if from_me else to,
        "body": body,
        "type": "chat",
        "timestamp": 1700000000,
        "fromMe": from_me,
    }
    data.update(kwargs)
    return WhatsAppMessage(**data)


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest.fixture
def reconnect_policy():
    # Fixed, tiny delay so reconnect tasks finish quickly
    return ReconnectPolicy(base_delay=0.01, factor=1.0, max_delay=0.01, max_failures=3, window_seconds=60)


@pytest_asyncio.fixture
async def executor_queue():
    queue = ExecutorQueue(EchoBotExecutor(), maxsize=10, workers=1)
    yield queue
    await queue.stop()


@pytest_asyncio.fixture
async def manager(store, redis_client, client_factory, executor_queue, reconnect_policy, tmp_path):
    bindings = BotBindingCache(redis_client, store, ttl=60)
    mgr = SessionManager(
        store,
        client_factory=client_factory,
        resolver=ConversationResolver(store, bindings),
        recorder=MessageRecorder(store),
        executor_queue=executor_queue,
        reconnect_policy=reconnect_policy,
        session_data_dir=str(tmp_path / "sessions"),
        qr_expiry_seconds=60,
    )
    await mgr.initialize()
    yield mgr
    await mgr.shutdown()


@pytest_asyncio.fixture
async def async_client(redis_client, store):
    app.dependency_overrides[get_store] = lambda: store

    await FastAPILimiter.init(redis_client)

    app.state.redis = redis_client
    app.state.store = store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
