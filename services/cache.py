"""
Bot Binding Cache

Maps a number to its active bot deployment for a bounded time:
1. Cached entries live in Redis with a TTL (SETEX)
2. Misses are refreshed from the store
3. "No binding" and store failures are cached too, so a broken
   deployments query is not retried on every message
4. Redis failures degrade to a store lookup (cache miss)
"""

import orjson
import structlog
import redis.asyncio as redis
from typing import Optional

from schemas import BotBinding
from services.store import StoreGateway, StoreError

logger = structlog.get_logger("cache")

DEFAULT_TTL_SECONDS = 60


class BotBindingCache:
    """
    Redis-backed TTL cache in front of StoreGateway.get_active_deployment.

    Storage format:
    - Key: "bot_binding:{number_id}"
    - Value: {"binding": {...}} or {"binding": null}
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        store: StoreGateway,
        ttl: int = DEFAULT_TTL_SECONDS
    ):
        self.redis = redis_client
        self.store = store
        self.ttl = ttl

    def _get_key(self, number_id: str) -> str:
        return f"bot_binding:{number_id}"

    async def get_active_binding(self, number_id: str) -> Optional[BotBinding]:
        """Return the active binding for a number, or None."""
        key = self._get_key(number_id)

        try:
            cached = await self.redis.get(key)
            if cached:
                entry = orjson.loads(cached)
                binding = entry.get("binding")
                return BotBinding(**binding) if binding else None
        except Exception as e:
            logger.warning("Cache GET failed", key=key, error=str(e))

        try:
            binding = await self.store.get_active_deployment(number_id)
        except StoreError as e:
            logger.error("Failed to load bot deployment", number_id=number_id, error=str(e))
            binding = None

        await self._set(key, binding)
        return binding

    async def _set(self, key: str, binding: Optional[BotBinding]):
        entry = {"binding": binding.model_dump() if binding else None}
        try:
            await self.redis.setex(key, self.ttl, orjson.dumps(entry).decode("utf-8"))
        except Exception as e:
            logger.warning("Cache SET failed", key=key, error=str(e))
