"""
Request Queue.

Per-thread FIFO admission. `submit` decides synchronously whether a message
dispatches now (and reserves the thread) or waits in the queue; `drain`
runs the queued backlog one item at a time after a generation ends.
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from src.providers.base import IncomingMessage
from src.session.cancellation import CancellationToken, clear_active, reserve
from src.session.state import ActiveRequest, QueuedMessage, ThreadStateRegistry, get_registry

logger = logging.getLogger(__name__)

DrainHandler = Callable[[IncomingMessage, CancellationToken], Awaitable[None]]
DrainErrorHandler = Callable[[IncomingMessage, Exception], Awaitable[None]]


class Accepted(str, enum.Enum):
    DISPATCH = "dispatch"
    QUEUED = "queued"


@dataclass
class Submission:
    accepted: Accepted
    position: int = 0
    token: Optional[CancellationToken] = None


@dataclass
class QueueSnapshot:
    thread_id: str
    active: Optional[ActiveRequest]
    items: list[QueuedMessage] = field(default_factory=list)
    total: int = 0


def submit(
    thread_id: str,
    message: IncomingMessage,
    registry: Optional[ThreadStateRegistry] = None,
) -> Submission:
    registry = registry or get_registry()
    # a backlog without an active request means an abort just happened; keep FIFO
    if registry.is_busy(thread_id):
        position = registry.enqueue(thread_id, message)
        logger.info(f"[queue] thread={thread_id} queued message={message.message_id} position={position}")
        return Submission(accepted=Accepted.QUEUED, position=position)
    token = reserve(thread_id, registry)
    return Submission(accepted=Accepted.DISPATCH, token=token)


def release(thread_id: str, token: Optional[CancellationToken], registry: Optional[ThreadStateRegistry] = None) -> bool:
    if token is None:
        return False
    return clear_active(thread_id, token, registry)


async def drain(
    thread_id: str,
    handler: DrainHandler,
    on_error: Optional[DrainErrorHandler] = None,
    registry: Optional[ThreadStateRegistry] = None,
) -> int:
    """Process the thread's backlog in arrival order. Returns the item count."""
    registry = registry or get_registry()
    processed = 0
    while True:
        if thread_id in registry.active_requests:
            # a newer dispatcher owns the thread and will drain after itself
            break
        item = registry.pop_queued(thread_id)
        if item is None:
            break
        token = reserve(thread_id, registry)
        waited = time.time() - item.queued_at
        logger.info(f"[queue] thread={thread_id} dispatching message={item.message.message_id} waited={waited:.1f}s")
        try:
            await handler(item.message, token)
        except Exception as e:
            if on_error is not None:
                try:
                    await on_error(item.message, e)
                except Exception as report_err:
                    logger.error(f"[queue] error reporter failed for thread={thread_id}: {report_err}")
            else:
                logger.error(f"[queue] queued message failed thread={thread_id}: {e}", exc_info=True)
        finally:
            clear_active(thread_id, token, registry)
        processed += 1
    return processed


def queue_snapshot(
    thread_id: str,
    limit: Optional[int] = None,
    registry: Optional[ThreadStateRegistry] = None,
) -> QueueSnapshot:
    registry = registry or get_registry()
    items = registry.queued(thread_id)
    total = len(items)
    if limit is not None:
        items = items[:max(0, limit)]
    return QueueSnapshot(
        thread_id=thread_id,
        active=registry.get_active(thread_id),
        items=items,
        total=total,
    )
