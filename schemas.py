"""
Pydantic schemas for the session runtime.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class NumberRecord(BaseModel):
    """A number as seen by the session manager."""
    id: str
    phone_number: str = ""
    status: str = "pending_qr"


class SessionRecord(BaseModel):
    """Authentication handshake state for one number."""
    number_id: str
    session_state: str
    qr_token: Optional[str] = None
    qr_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None


class BotBinding(BaseModel):
    """Active bot deployment for a number."""
    deployment_id: str
    bot_version_id: Optional[str] = None


class ConversationMeta(BaseModel):
    conversation_id: str
    bot_version_id: Optional[str] = None
    customer_wa_id: str


class WhatsAppMessage(BaseModel):
    """
    Protocol-level message as delivered by the WhatsApp gateway.

    Field aliases follow the gateway's camelCase payload.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    author: Optional[str] = None
    body: Optional[str] = None
    type: Optional[str] = None
    timestamp: Optional[int] = None
    from_me: bool = Field(default=False, alias="fromMe")
    has_media: bool = Field(default=False, alias="hasMedia")
    ack: Optional[int] = None
    device_type: Optional[str] = Field(default=None, alias="deviceType")
    has_quoted_msg: bool = Field(default=False, alias="hasQuotedMsg")

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "WhatsAppMessage":
        """Build from a raw gateway payload, tolerating its field variants."""
        raw_id = data.get("id")
        if isinstance(raw_id, dict):
            raw_id = raw_id.get("_serialized") or raw_id.get("id")

        return cls(
            id=str(raw_id) if raw_id is not None else None,
            to=data.get("to"),
            author=data.get("author"),
            body=data.get("body") if data.get("body") is not None else data.get("content"),
            type=data.get("type"),
            timestamp=_parse_timestamp(data.get("timestamp") or data.get("t")),
            ack=data.get("ack"),
            **{
                "from": data.get("from") or data.get("chatId"),
                "fromMe": bool(data.get("fromMe", False)),
                "hasMedia": bool(data.get("hasMedia") or data.get("isMedia", False)),
                "deviceType": data.get("deviceType"),
                "hasQuotedMsg": bool(data.get("hasQuotedMsg") or data.get("quotedMsg")),
            },
        )


def _parse_timestamp(value: Any) -> Optional[int]:
    """Epoch seconds, or None when the gateway sent something unusable."""
    if not value:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


class BotExecutorRequest(BaseModel):
    number_id: str
    conversation_id: str
    bot_version_id: Optional[str] = None
    message: WhatsAppMessage


class BotReply(BaseModel):
    """Outbound reply intent. Only type 'text' is sent."""
    chat_id: Optional[str] = None
    type: str = "text"
    body: Optional[str] = None
