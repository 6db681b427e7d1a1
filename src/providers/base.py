"""
Messaging provider interface.

The session layer depends only on this capability set. A concrete provider
bridges it to a platform (see providers/webhook.py).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class IncomingMessage:
    provider_id: str
    message_id: str
    channel_id: str
    thread_id: str
    user_id: str
    text: str
    user_name: Optional[str] = None
    mentions: list[str] = field(default_factory=list)
    raw: Any = None


@dataclass
class OutgoingMessage:
    text: str
    mode: Optional[str] = None          # streaming | final
    status: Optional[str] = None        # info | warning | error
    card_id: Optional[str] = None
    element_id: Optional[str] = None


@dataclass
class OutgoingTarget:
    channel_id: str
    thread_id: Optional[str] = None


@dataclass
class SendResult:
    message_id: str
    card_id: Optional[str] = None
    element_id: Optional[str] = None


MessageHandler = Callable[[IncomingMessage], Awaitable[None]]


class MessageProvider:
    """Base class for messaging platform bridges."""

    id = "base"
    supports_update = False

    def __init__(self) -> None:
        self._handlers: list[MessageHandler] = []

    async def start(self) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    async def dispatch(self, message: IncomingMessage) -> None:
        """Deliver an incoming message to every registered handler."""
        for handler in self._handlers:
            try:
                await handler(message)
            except Exception as e:
                logger.error(f"[provider:{self.id}] handler failed for thread={message.thread_id}: {e}", exc_info=True)

    async def send_message(self, target: OutgoingTarget, message: OutgoingMessage) -> SendResult:
        raise NotImplementedError

    async def reply_message(self, original: IncomingMessage, message: OutgoingMessage) -> SendResult:
        return await self.send_message(
            OutgoingTarget(channel_id=original.channel_id, thread_id=original.thread_id), message
        )

    async def update_message(self, message_id: str, message: OutgoingMessage) -> bool:
        """Edit a previously sent message. Providers without editing return False."""
        return False
