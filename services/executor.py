"""
Bot Executor contract.

An executor turns an inbound message plus its conversation/bot context
into zero or more reply intents. Flow interpretation plugs in here;
EchoBotExecutor is the default used when no engine is wired in.
"""

from abc import ABC, abstractmethod
from typing import List

from schemas import BotExecutorRequest, BotReply

NO_BOT_PLACEHOLDER = "no-bot"
MAX_ECHO_CHARS = 200


class BotExecutor(ABC):

    @abstractmethod
    async def handle_inbound_message(self, request: BotExecutorRequest) -> List[BotReply]:
        ...


class EchoBotExecutor(BotExecutor):
    """Echoes the inbound text back, tagged with the bound bot version."""

    async def handle_inbound_message(self, request: BotExecutorRequest) -> List[BotReply]:
        tag = request.bot_version_id or NO_BOT_PLACEHOLDER
        preview = (request.message.body or "").strip()
        body = f"Echo ({tag}): {preview[:MAX_ECHO_CHARS]}" if preview else f"Echo ({tag})"

        return [BotReply(chat_id=request.message.from_, type="text", body=body)]
