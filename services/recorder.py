"""
Message Recorder

Turns a protocol message into a durable message row and bumps the
parent conversation's last-activity marker.
"""

import structlog
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from prometheus_client import Counter

from schemas import ConversationMeta, WhatsAppMessage
from services.store import StoreGateway, StoreError

logger = structlog.get_logger("recorder")

MESSAGES_RECORDED = Counter("wa_messages_total", "Recorded messages", ["direction", "status"])

INBOUND = "inbound"
OUTBOUND = "outbound"

# Outbound delivery acknowledgements are not tracked
DELIVERY_STATUS = {INBOUND: "delivered", OUTBOUND: "pending"}


def get_counterparty(message: WhatsAppMessage, direction: str) -> Optional[str]:
    """Sender for inbound (author in groups), recipient for outbound."""
    if direction == INBOUND:
        return message.from_ or message.author or None
    return message.to or message.from_ or None


def serialize_message(message: WhatsAppMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "from": message.from_,
        "to": message.to,
        "author": message.author,
        "body": message.body,
        "type": message.type,
        "timestamp": message.timestamp,
        "fromMe": message.from_me,
        "hasMedia": message.has_media,
        "ack": message.ack,
        "deviceType": message.device_type,
        "hasQuotedMsg": message.has_quoted_msg,
    }


def compute_sent_at(message: WhatsAppMessage) -> datetime:
    if message.timestamp:
        return datetime.fromtimestamp(message.timestamp, tz=timezone.utc)
    return datetime.now(timezone.utc)


class MessageRecorder:

    def __init__(self, store: StoreGateway):
        self.store = store

    async def record(
        self,
        number_id: str,
        conversation: ConversationMeta,
        message: WhatsAppMessage,
        direction: str
    ) -> Optional[str]:
        """
        Insert the message row and touch the conversation.

        Returns the message id, or None if the insert failed. A failed
        conversation update is logged but keeps the inserted row.
        """
        sent_at = compute_sent_at(message)

        try:
            message_id = await self.store.insert_message(
                conversation_id=conversation.conversation_id,
                direction=direction,
                message_type=message.type or "text",
                payload=serialize_message(message),
                sent_at=sent_at,
                delivery_status=DELIVERY_STATUS[direction],
            )
        except StoreError as e:
            logger.error("Failed to insert message",
                         number_id=number_id,
                         conversation_id=conversation.conversation_id,
                         direction=direction,
                         error=str(e))
            MESSAGES_RECORDED.labels(direction=direction, status="error").inc()
            return None

        MESSAGES_RECORDED.labels(direction=direction, status="stored").inc()

        try:
            await self.store.touch_conversation(conversation.conversation_id, sent_at)
        except StoreError as e:
            logger.error("Failed to update conversation metadata",
                         number_id=number_id,
                         conversation_id=conversation.conversation_id,
                         error=str(e))

        return message_id
