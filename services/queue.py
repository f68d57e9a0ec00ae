"""
Executor Queue

Hands inbound messages to the Bot Executor off the event path:
1. Bounded in-process queue (submit never blocks the event handler)
2. A pool of worker tasks runs the executor
3. Replies go out through the client that received the message
4. Depth and outcomes are exported as Prometheus metrics
"""

import asyncio
import structlog
import sentry_sdk
from dataclasses import dataclass
from typing import List

from prometheus_client import Counter, Gauge

from schemas import BotExecutorRequest, BotReply
from services.executor import BotExecutor
from services.whatsapp_client import WhatsAppClient

logger = structlog.get_logger("queue")

QUEUE_DEPTH = Gauge("wa_executor_queue_depth", "Inbound messages waiting for the bot executor")
JOBS_TOTAL = Counter("wa_executor_jobs_total", "Bot executor jobs", ["status"])

SUPPORTED_REPLY_TYPES = {"text"}


@dataclass
class ExecutorJob:
    request: BotExecutorRequest
    client: WhatsAppClient


class ExecutorQueue:

    def __init__(self, executor: BotExecutor, maxsize: int = 1000, workers: int = 4):
        self.executor = executor
        self.workers = workers
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._tasks: List[asyncio.Task] = []

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def submit(self, job: ExecutorJob) -> bool:
        """Enqueue without waiting. Returns False when the job was dropped."""
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.error("Executor queue full, dropping message",
                         number_id=job.request.number_id,
                         conversation_id=job.request.conversation_id,
                         depth=self.depth)
            JOBS_TOTAL.labels(status="dropped").inc()
            return False

        QUEUE_DEPTH.set(self.depth)
        return True

    def start(self):
        if self._tasks:
            return
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(i), name=f"executor-worker-{i}"))
        logger.info("Executor workers started", workers=self.workers)

    async def join(self):
        await self._queue.join()

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.depth:
            logger.warning("Executor queue stopped with pending jobs", depth=self.depth)

    async def _worker(self, index: int):
        while True:
            job = await self._queue.get()
            QUEUE_DEPTH.set(self.depth)
            try:
                await self.process(job)
            except Exception as e:
                logger.error("Executor job failed",
                             worker=index,
                             number_id=job.request.number_id,
                             conversation_id=job.request.conversation_id,
                             error=str(e))
                sentry_sdk.capture_exception(e)
                JOBS_TOTAL.labels(status="error").inc()
            finally:
                self._queue.task_done()

    async def process(self, job: ExecutorJob):
        """Run the executor for one job and send its replies."""
        request = job.request
        try:
            replies = await self.executor.handle_inbound_message(request) or []
        except Exception as e:
            logger.error("Bot executor failed",
                         number_id=request.number_id,
                         conversation_id=request.conversation_id,
                         error=str(e))
            sentry_sdk.capture_exception(e)
            JOBS_TOTAL.labels(status="error").inc()
            return

        for reply in replies:
            await self._send_reply(job, reply)

        JOBS_TOTAL.labels(status="success").inc()

    async def _send_reply(self, job: ExecutorJob, reply: BotReply):
        request = job.request
        if not reply.chat_id:
            return

        if reply.type not in SUPPORTED_REPLY_TYPES:
            logger.warning("Unsupported bot response type",
                           number_id=request.number_id,
                           conversation_id=request.conversation_id,
                           response_type=reply.type)
            return

        try:
            await job.client.send_message(reply.chat_id, reply.body or "")
        except Exception as e:
            logger.error("Failed to send bot response",
                         number_id=request.number_id,
                         conversation_id=request.conversation_id,
                         error=str(e))
