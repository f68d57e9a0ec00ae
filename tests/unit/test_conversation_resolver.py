import pytest

from services.cache import BotBindingCache
from services.conversations import ConversationResolver


@pytest.fixture
def resolver(store, redis_client):
    return ConversationResolver(store, BotBindingCache(redis_client, store, ttl=60))


@pytest.mark.asyncio
async def test_creates_conversation_with_active_bot(resolver, store):
    store.set_deployment("n1", "v1")

    meta = await resolver.resolve("n1", "9665551234@c.us")

    assert meta.bot_version_id == "v1"
    assert meta.customer_wa_id == "9665551234@c.us"
    assert store.conversations[0]["id"] == meta.conversation_id
    assert store.conversations[0]["status"] == "open"


@pytest.mark.asyncio
async def test_creates_conversation_without_bot(resolver, store):
    meta = await resolver.resolve("n1", "9665551234@c.us")

    assert meta.bot_version_id is None
    assert store.conversations[0]["bot_version_id"] is None


@pytest.mark.asyncio
async def test_reuses_latest_conversation(resolver, store):
    first = await resolver.resolve("n1", "a@c.us")
    second = await resolver.resolve("n1", "a@c.us")
    other = await resolver.resolve("n1", "b@c.us")

    assert first.conversation_id == second.conversation_id
    assert other.conversation_id != first.conversation_id
    assert len(store.conversations) == 2


@pytest.mark.asyncio
async def test_refreshes_bot_version_on_existing_conversation(resolver, store, redis_client):
    store.set_deployment("n1", "v1")
    first = await resolver.resolve("n1", "a@c.us")

    store.set_deployment("n1", "v2")
    redis_client.advance(61)
    second = await resolver.resolve("n1", "a@c.us")

    assert second.conversation_id == first.conversation_id
    assert second.bot_version_id == "v2"
    assert store.conversations[0]["bot_version_id"] == "v2"


@pytest.mark.asyncio
async def test_keeps_old_version_when_no_bot_is_active(resolver, store, redis_client):
    store.set_deployment("n1", "v1")
    await resolver.resolve("n1", "a@c.us")

    store.deployments.clear()
    redis_client.advance(61)
    meta = await resolver.resolve("n1", "a@c.us")

    assert meta.bot_version_id == "v1"
    assert "update_conversation_bot_version" not in store.calls


@pytest.mark.asyncio
async def test_refresh_failure_still_returns_conversation(resolver, store, redis_client):
    await resolver.resolve("n1", "a@c.us")
    store.set_deployment("n1", "v2")
    redis_client.advance(61)
    store.fail.add("update_conversation_bot_version")

    meta = await resolver.resolve("n1", "a@c.us")

    assert meta is not None
    assert store.conversations[0]["bot_version_id"] is None


@pytest.mark.asyncio
@pytest.mark.parametrize("operation", ["find_latest_conversation", "create_conversation"])
async def test_store_failure_returns_none(resolver, store, operation):
    store.fail.add(operation)

    assert await resolver.resolve("n1", "a@c.us") is None
