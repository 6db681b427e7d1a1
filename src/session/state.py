"""
Thread State Registry.

Process-wide, in-memory bookkeeping keyed by thread id: the pending message
queue, the active generation with its cancellation token, the active stream
placeholders, and pending question/permission prompts. Nothing here is
persisted; lifetime is process uptime.

All mutation happens on the event loop that owns the thread's queue entry.
Methods that must not be interleaved with other coroutines are synchronous.
"""
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from src.providers.base import IncomingMessage

if TYPE_CHECKING:
    from src.session.cancellation import CancellationToken


@dataclass
class QueuedMessage:
    message: IncomingMessage
    queued_at: float


@dataclass
class ActiveRequest:
    session_id: str                  # "" until the agent session is resolved
    token: "CancellationToken"
    directory: Optional[str] = None


@dataclass
class ActiveStreamState:
    placeholder_ids: list[str] = field(default_factory=list)
    card_id: Optional[str] = None
    element_id: Optional[str] = None


@dataclass
class QuestionOption:
    label: str
    description: Optional[str] = None


@dataclass
class QuestionSpec:
    question: str
    header: str
    options: list[QuestionOption]
    multiple: bool = False


@dataclass
class PendingQuestion:
    request_id: str
    session_id: str
    directory: str
    questions: list[QuestionSpec]
    answers: dict[int, list[str]] = field(default_factory=dict)
    answered_indices: set[int] = field(default_factory=set)
    current_index: int = 0


@dataclass
class PendingPermission:
    request_ids: list[str]
    directory: str
    thread_id: str
    message: IncomingMessage
    dedupe_key: str
    permission: str
    patterns: list[str]


class ThreadStateRegistry:
    def __init__(self) -> None:
        self.message_queue: dict[str, deque[QueuedMessage]] = {}
        self.active_requests: dict[str, ActiveRequest] = {}
        self.active_streams: dict[str, ActiveStreamState] = {}
        self.pending_questions: dict[str, PendingQuestion] = {}
        # keyed by dedupe key; several agent requests may share one prompt
        self.pending_permissions: dict[str, PendingPermission] = {}

    def reset(self) -> None:
        self.message_queue.clear()
        self.active_requests.clear()
        self.active_streams.clear()
        self.pending_questions.clear()
        self.pending_permissions.clear()

    # ── queue ─────────────────────────────────

    def enqueue(self, thread_id: str, message: IncomingMessage) -> int:
        queue = self.message_queue.setdefault(thread_id, deque())
        queue.append(QueuedMessage(message=message, queued_at=time.time()))
        return len(queue)

    def pop_queued(self, thread_id: str) -> Optional[QueuedMessage]:
        queue = self.message_queue.get(thread_id)
        if not queue:
            self.message_queue.pop(thread_id, None)
            return None
        item = queue.popleft()
        if not queue:
            # idle threads must not keep an empty deque around
            del self.message_queue[thread_id]
        return item

    def queued(self, thread_id: str) -> list[QueuedMessage]:
        return list(self.message_queue.get(thread_id, ()))

    def has_queued(self, thread_id: str) -> bool:
        return bool(self.message_queue.get(thread_id))

    # ── active requests ───────────────────────

    def get_active(self, thread_id: str) -> Optional[ActiveRequest]:
        return self.active_requests.get(thread_id)

    def is_busy(self, thread_id: str) -> bool:
        return thread_id in self.active_requests or self.has_queued(thread_id)

    # ── permissions ───────────────────────────

    def permission_for_thread(self, thread_id: str) -> Optional[PendingPermission]:
        for pending in self.pending_permissions.values():
            if pending.thread_id == thread_id:
                return pending
        return None

    def drop_prompts(self, thread_id: str) -> None:
        """Forget the thread's open question and every permission prompt it owns."""
        self.pending_questions.pop(thread_id, None)
        for key in [k for k, p in self.pending_permissions.items() if p.thread_id == thread_id]:
            del self.pending_permissions[key]


_registry = ThreadStateRegistry()


def get_registry() -> ThreadStateRegistry:
    return _registry


def reset_registry() -> None:
    _registry.reset()
