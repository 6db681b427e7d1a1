"""
Cancellation Registry.

One CancellationToken per active generation. Aborting a thread removes its
ActiveRequest immediately (local bookkeeping is authoritative), signals the
token, and asks the agent session to stop on a best-effort basis.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, TypeVar

from src.config import ABORTED_STATUS_TEXT
from src.errors import GenerationCancelled
from src.providers.base import MessageProvider, OutgoingMessage
from src.session.state import ActiveRequest, ThreadStateRegistry, get_registry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "abort") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise GenerationCancelled(self.reason or "abort")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await `aw` unless the token fires first.

        On cancellation the inner task is cancelled and GenerationCancelled is
        raised in the caller. The calling task itself is never cancelled.
        """
        if self.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise GenerationCancelled(self.reason or "abort")
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        # the external call may ignore cancellation; retrieve its outcome whenever it ends
        task.add_done_callback(_consume_result)
        raise GenerationCancelled(self.reason or "abort")


def _consume_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"[cancel] abandoned generation ended with {type(exc).__name__}: {exc}")


@dataclass
class AbortResult:
    aborted: bool
    session_id: Optional[str] = None


def reserve(thread_id: str, registry: Optional[ThreadStateRegistry] = None) -> CancellationToken:
    """Claim the thread for a new generation before its session is known.

    Synchronous on purpose: callers run it before their first await.
    """
    registry = registry or get_registry()
    if thread_id in registry.active_requests:
        raise RuntimeError(f"thread {thread_id} already has an active generation")
    token = CancellationToken()
    registry.active_requests[thread_id] = ActiveRequest(session_id="", token=token)
    return token


def register_active(
    thread_id: str,
    session_id: str,
    token: Optional[CancellationToken] = None,
    directory: Optional[str] = None,
    registry: Optional[ThreadStateRegistry] = None,
) -> CancellationToken:
    registry = registry or get_registry()
    active = registry.active_requests.get(thread_id)
    if token is None:
        if active is not None:
            raise RuntimeError(f"thread {thread_id} already has an active generation")
        token = reserve(thread_id, registry)
        active = registry.active_requests[thread_id]
    else:
        token.raise_if_cancelled()
        if active is None or active.token is not token:
            # the reservation was aborted while the session was being resolved
            raise GenerationCancelled("abort")
    active.session_id = session_id
    active.directory = directory
    return token


def clear_active(
    thread_id: str, token: CancellationToken, registry: Optional[ThreadStateRegistry] = None
) -> bool:
    registry = registry or get_registry()
    active = registry.active_requests.get(thread_id)
    if active is None or active.token is not token:
        return False
    del registry.active_requests[thread_id]
    return True


async def abort(
    thread_id: str,
    client: Any = None,
    provider: Optional[MessageProvider] = None,
    registry: Optional[ThreadStateRegistry] = None,
) -> AbortResult:
    registry = registry or get_registry()
    # prompts the aborted generation was waiting on can no longer be answered
    registry.drop_prompts(thread_id)
    active = registry.active_requests.pop(thread_id, None)
    if active is None:
        return AbortResult(aborted=False)

    active.token.cancel("abort")
    logger.info(f"[abort] thread={thread_id} session={active.session_id or '-'}")

    if client is not None and active.session_id:
        try:
            await client.abort_session(active.session_id, active.directory)
        except Exception as e:
            logger.debug(f"[abort] agent session abort failed for {active.session_id}: {e}")

    stream = registry.active_streams.pop(thread_id, None)
    if stream is not None and provider is not None and provider.supports_update:
        for placeholder_id in stream.placeholder_ids:
            try:
                await provider.update_message(placeholder_id, OutgoingMessage(
                    text=ABORTED_STATUS_TEXT,
                    mode="final",
                    status="warning",
                    card_id=stream.card_id,
                    element_id=stream.element_id,
                ))
            except Exception as e:
                logger.warning(f"[abort] failed to finalize placeholder {placeholder_id}: {e}")

    return AbortResult(aborted=True, session_id=active.session_id or None)
