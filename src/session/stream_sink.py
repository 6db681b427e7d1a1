"""
Stream sink: renders one generation into a single editable placeholder reply.

Partial text goes through a ThrottledRenderer; the final text is chunked so
that oversized output spills into additional replies.
"""
import logging
from typing import Optional

from src.config import ABORTED_STATUS_TEXT
from src.providers.base import IncomingMessage, MessageProvider, OutgoingMessage
from src.session.chunker import split_markdown_into_chunks, truncate_for_display
from src.session.state import ActiveStreamState, ThreadStateRegistry, get_registry
from src.session.throttle import ThrottledRenderer

logger = logging.getLogger(__name__)


class StreamSink:
    def __init__(
        self,
        provider: MessageProvider,
        message: IncomingMessage,
        throttle_ms: int,
        max_message_chars: int,
        registry: Optional[ThreadStateRegistry] = None,
    ) -> None:
        self.provider = provider
        self.message = message
        self.max_message_chars = max_message_chars
        self._registry = registry or get_registry()
        self._state = ActiveStreamState()
        self._message_id: Optional[str] = None
        self._last_rendered = ""
        # set once the final answer has reached the chat
        self._delivered = False
        self._renderer = ThrottledRenderer(self._render_text, throttle_ms)

    @property
    def message_id(self) -> Optional[str]:
        return self._message_id

    async def _send_new(self, text: str, mode: str) -> str:
        result = await self.provider.reply_message(self.message, OutgoingMessage(text=text, mode=mode))
        if result.card_id:
            self._state.card_id = result.card_id
        if result.element_id:
            self._state.element_id = result.element_id
        return result.message_id

    async def _update(self, message_id: str, text: str, mode: str, status: Optional[str] = None) -> bool:
        if not self.provider.supports_update:
            return False
        return await self.provider.update_message(message_id, OutgoingMessage(
            text=text,
            mode=mode,
            status=status,
            card_id=self._state.card_id,
            element_id=self._state.element_id,
        ))

    def _is_registered(self) -> bool:
        return self._registry.active_streams.get(self.message.thread_id) is self._state

    async def start(self) -> str:
        self._registry.active_streams[self.message.thread_id] = self._state
        message_id = await self._send_new("", "streaming")
        self._message_id = message_id
        self._state.placeholder_ids.append(message_id)
        if not self._is_registered():
            # aborted while the placeholder was in flight
            await self._update(message_id, ABORTED_STATUS_TEXT, "final", "warning")
        return message_id

    def render(self, text: str) -> None:
        self._renderer.update(truncate_for_display(text, self.max_message_chars))

    async def _render_text(self, text: str) -> None:
        if text == self._last_rendered or not self._is_registered():
            return
        if self._message_id is None:
            self._message_id = await self._send_new(text, "streaming")
            self._state.placeholder_ids.append(self._message_id)
            self._last_rendered = text
            return
        if await self._update(self._message_id, text, "streaming"):
            self._last_rendered = text
            return
        logger.debug(f"[stream] update failed message={self._message_id}")

    async def finalize(self, final_text: str, footer: str) -> None:
        try:
            await self._renderer.flush()
        except Exception as e:
            logger.debug(f"[stream] last partial render failed: {e}")

        body = final_text.strip()
        combined = f"{body}\n\n{footer}" if body and footer else (body or footer)
        if not combined:
            return
        chunks = split_markdown_into_chunks(combined, self.max_message_chars)
        first, rest = chunks[0], chunks[1:]

        # an abort that lands mid-finalize owns the placeholder from then on
        if not self._is_registered():
            return
        updated = False
        if self._message_id is not None:
            updated = await self._update(self._message_id, first, "final")
        if not self._is_registered():
            return
        if not updated:
            await self._send_new(first, "final")
        self._delivered = True
        for chunk in rest:
            if not self._is_registered():
                return
            await self._send_new(chunk, "final")

    async def fail(self, reason: str) -> bool:
        """Show `reason` in the placeholder. Returns True if the placeholder now carries it."""
        await self._renderer.discard()
        if self._message_id is None or self._delivered:
            return False
        try:
            return await self._update(
                self._message_id, truncate_for_display(reason, self.max_message_chars), "final", "error"
            )
        except Exception as e:
            logger.warning(f"[stream] failed to write error into placeholder {self._message_id}: {e}")
            return False

    def close(self) -> None:
        self._renderer.cancel()
        if self._is_registered():
            del self._registry.active_streams[self.message.thread_id]
