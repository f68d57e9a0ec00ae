"""
WhatsApp Session Runtime

Long-running process that services every registered number:
1. Reconciliation tick at startup and on a fixed interval
2. One WhatsApp client per number (SessionManager)
3. Bot executor workers fed by an in-process queue
4. Redis heartbeat + Prometheus metrics + Sentry
5. Graceful shutdown on SIGINT/SIGTERM
"""

import asyncio
import uuid
import signal
import socket
import sys
import os
import redis.asyncio as redis
import structlog
import sentry_sdk
from prometheus_client import start_http_server

from config import get_settings, HEARTBEAT_PREFIX
from database import get_session_factory, dispose_engine
from logger_config import configure_logger
from services.store import StoreGateway
from services.cache import BotBindingCache
from services.conversations import ConversationResolver
from services.recorder import MessageRecorder
from services.executor import EchoBotExecutor
from services.queue import ExecutorQueue
from services.reconnect import ReconnectPolicy
from services.maintenance import MaintenanceService
from services.session_manager import SessionManager
from services.whatsapp_client import wppconnect_client_factory

settings = get_settings()
logger = structlog.get_logger("worker")

SHUTDOWN_GRACE_SECONDS = 10


class SessionRuntime:
    """Bootstrap and tick scheduler around SessionManager."""

    def __init__(self):
        self.runtime_id = f"rt_{os.getpid()}_{str(uuid.uuid4())[:4]}"
        self.hostname = socket.gethostname()
        self.running = True

        # Services
        self.redis = None
        self.store = None
        self.executor_queue = None
        self.manager = None
        self.maintenance = None

        self._stop_event = asyncio.Event()
        self._tick_tasks = set()
        self._closed = False

    async def start(self):
        """Initialize and run until stopped."""
        logger.info("=" * 70)
        logger.info("🚀 WhatsApp session runtime STARTING")
        logger.info(f"   Runtime ID: {self.runtime_id}")
        logger.info(f"   Hostname: {self.hostname}")
        logger.info("=" * 70)

        if not settings.DATABASE_URL:
            logger.critical("Missing DATABASE_URL, refusing to start")
            sys.exit(1)

        try:
            await self._initialize_services()
            await self._run_main_loop()
        except Exception as e:
            logger.critical("Fatal error", error=str(e))
            sys.exit(1)
        finally:
            await self.shutdown()

    async def _initialize_services(self):
        # 1. Sentry
        if settings.SENTRY_DSN:
            sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.APP_ENV)
            logger.info("✓ Sentry initialized")

        # 2. Prometheus
        try:
            start_http_server(settings.METRICS_PORT)
            logger.info(f"✓ Prometheus metrics on :{settings.METRICS_PORT}")
        except OSError:
            logger.warning("Prometheus port already in use", port=settings.METRICS_PORT)

        # 3. Redis
        try:
            self.redis = redis.from_url(settings.REDIS_URL, decode_responses=True)
            await self.redis.ping()
            logger.info("✓ Redis connected")
        except Exception as e:
            logger.critical(f"Redis connection failed: {e}")
            raise

        # 4. Store
        self.store = StoreGateway(get_session_factory())
        logger.info("✓ Store ready")

        # 5. Bot executor workers
        self.executor_queue = ExecutorQueue(
            EchoBotExecutor(),
            maxsize=settings.EXECUTOR_QUEUE_SIZE,
            workers=settings.EXECUTOR_WORKERS,
        )
        self.executor_queue.start()

        # 6. Session manager
        bindings = BotBindingCache(self.redis, self.store, ttl=settings.BOT_CACHE_TTL_SECONDS)
        self.manager = SessionManager(
            self.store,
            client_factory=wppconnect_client_factory(settings),
            resolver=ConversationResolver(self.store, bindings),
            recorder=MessageRecorder(self.store),
            executor_queue=self.executor_queue,
            reconnect_policy=ReconnectPolicy(
                base_delay=settings.RECONNECT_BASE_DELAY_SECONDS,
                factor=settings.RECONNECT_BACKOFF_FACTOR,
                max_delay=settings.RECONNECT_MAX_DELAY_SECONDS,
                max_failures=settings.RECONNECT_MAX_FAILURES,
                window_seconds=settings.RECONNECT_FAILURE_WINDOW_SECONDS,
            ),
            session_data_dir=settings.SESSION_DATA_DIR,
            qr_expiry_seconds=settings.QR_EXPIRY_SECONDS,
            reattach_connected=settings.REATTACH_CONNECTED,
        )
        await self.manager.initialize()
        self.maintenance = MaintenanceService(self.store, interval=settings.QR_SWEEP_INTERVAL_SECONDS)

        logger.info("=" * 70)
        logger.info("✅ ALL SYSTEMS READY")
        logger.info(f"   Poll interval: {settings.POLL_INTERVAL_MS} ms")
        logger.info(f"   Session data: {settings.SESSION_DATA_DIR}")
        logger.info("=" * 70)

    async def _run_main_loop(self):
        """
        Fire a tick every poll interval regardless of how long the last one took.

        SessionManager skips a tick that would overlap a running one.
        """
        interval = settings.poll_interval_seconds

        while self.running:
            task = asyncio.create_task(self._tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _tick(self):
        try:
            await self.redis.setex(
                f"{HEARTBEAT_PREFIX}{self.runtime_id}",
                max(int(settings.poll_interval_seconds * 3), 30),
                self.hostname,
            )
        except Exception as e:
            logger.warning("Heartbeat failed", error=str(e))

        try:
            logger.debug("Syncing pending numbers")
            await self.manager.sync_pending_numbers()
            await self.maintenance.run_qr_sweep()
        except Exception as e:
            logger.error("Failed to sync pending numbers", error=str(e))

    def stop(self):
        """Signal handler: stop scheduling ticks."""
        logger.info("🛑 Stop requested")
        self.running = False
        self._stop_event.set()

    async def shutdown(self):
        """Graceful shutdown. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.running = False

        # Tick scheduler first, then sessions; a running tick may finish
        if self._tick_tasks:
            _, pending = await asyncio.wait(list(self._tick_tasks), timeout=SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if self.manager:
            await self.manager.shutdown()
        if self.executor_queue:
            await self.executor_queue.stop()
        if self.redis:
            try:
                await self.redis.delete(f"{HEARTBEAT_PREFIX}{self.runtime_id}")
            except Exception as e:
                logger.warning("Heartbeat cleanup failed", error=str(e))
            await self.redis.aclose()
        await dispose_engine()

        logger.info("👋 Runtime shut down cleanly")


async def main():
    configure_logger()
    runtime = SessionRuntime()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, runtime.stop)

    await runtime.start()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
