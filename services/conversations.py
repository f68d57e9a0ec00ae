"""
Conversation Resolver

Finds or creates the conversation for a (number, counterpart) pair and
keeps its bot version in step with the number's active deployment.
"""

import structlog
from datetime import datetime, timezone
from typing import Optional

from schemas import ConversationMeta
from services.cache import BotBindingCache
from services.store import StoreGateway, StoreError

logger = structlog.get_logger("conversations")


class ConversationResolver:

    def __init__(self, store: StoreGateway, bindings: BotBindingCache):
        self.store = store
        self.bindings = bindings

    async def resolve(self, number_id: str, customer_wa_id: str) -> Optional[ConversationMeta]:
        """
        Return the latest conversation for the pair, creating one if needed.

        Returns None when the conversation could not be loaded or created.
        """
        binding = await self.bindings.get_active_binding(number_id)
        active_version = binding.bot_version_id if binding else None

        try:
            existing = await self.store.find_latest_conversation(number_id, customer_wa_id)
        except StoreError as e:
            logger.error("Failed to load conversation",
                         number_id=number_id, customer_wa_id=customer_wa_id, error=str(e))
            return None

        if existing:
            bot_version_id = existing["bot_version_id"]
            if active_version and bot_version_id != active_version:
                try:
                    await self.store.update_conversation_bot_version(existing["id"], active_version)
                    bot_version_id = active_version
                except StoreError as e:
                    logger.warning("Failed to refresh conversation bot binding",
                                   number_id=number_id,
                                   conversation_id=existing["id"],
                                   error=str(e))
            return ConversationMeta(
                conversation_id=existing["id"],
                bot_version_id=bot_version_id or active_version,
                customer_wa_id=customer_wa_id,
            )

        try:
            created = await self.store.create_conversation(
                number_id=number_id,
                customer_wa_id=customer_wa_id,
                bot_version_id=active_version,
                opened_at=datetime.now(timezone.utc),
            )
        except StoreError as e:
            logger.error("Failed to create conversation",
                         number_id=number_id, customer_wa_id=customer_wa_id, error=str(e))
            return None

        logger.info("Conversation opened",
                    number_id=number_id, conversation_id=created["id"])
        return ConversationMeta(
            conversation_id=created["id"],
            bot_version_id=created["bot_version_id"] or active_version,
            customer_wa_id=customer_wa_id,
        )
