"""
Generic HTTP webhook provider.

Incoming messages arrive through the host app's POST /api/messages route.
Outbound messages are POSTed to a bridge service that owns the real platform
credentials:

    POST  {base}/messages              {"channel_id", "thread_id", "reply_to", "text", ...} -> {"message_id"}
    PATCH {base}/messages/{message_id} {"text", "mode", "status", ...}                       -> 2xx
"""
import logging
from typing import Any, Optional

import httpx

from src.providers.base import (
    IncomingMessage,
    MessageProvider,
    OutgoingMessage,
    OutgoingTarget,
    SendResult,
)

logger = logging.getLogger(__name__)


class WebhookProvider(MessageProvider):
    id = "webhook"
    supports_update = True

    def __init__(self, base_url: str, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        logger.info(f"[webhook] outbound bridge at {self.base_url}")

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _payload(self, message: OutgoingMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {"text": message.text}
        for key in ("mode", "status", "card_id", "element_id"):
            value = getattr(message, key)
            if value is not None:
                payload[key] = value
        return payload

    async def _post(self, payload: dict[str, Any]) -> SendResult:
        if self._client is None:
            raise RuntimeError("WebhookProvider used before start()")
        resp = await self._client.post("/messages", json=payload)
        resp.raise_for_status()
        data = resp.json()
        return SendResult(
            message_id=str(data.get("message_id", "")),
            card_id=data.get("card_id"),
            element_id=data.get("element_id"),
        )

    async def send_message(self, target: OutgoingTarget, message: OutgoingMessage) -> SendResult:
        payload = self._payload(message)
        payload["channel_id"] = target.channel_id
        if target.thread_id:
            payload["thread_id"] = target.thread_id
        return await self._post(payload)

    async def reply_message(self, original: IncomingMessage, message: OutgoingMessage) -> SendResult:
        payload = self._payload(message)
        payload.update({
            "channel_id": original.channel_id,
            "thread_id": original.thread_id,
            "reply_to": original.message_id,
        })
        return await self._post(payload)

    async def update_message(self, message_id: str, message: OutgoingMessage) -> bool:
        if self._client is None:
            raise RuntimeError("WebhookProvider used before start()")
        try:
            resp = await self._client.patch(f"/messages/{message_id}", json=self._payload(message))
        except httpx.HTTPError as e:
            logger.debug(f"[webhook] update {message_id} failed: {e}")
            return False
        return resp.is_success
