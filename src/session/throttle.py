"""
Throttled Streaming Renderer.

Coalesces rapid text updates so that at most one render starts per interval,
always with the newest text, and renders never overlap or reorder.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

RenderFn = Callable[[str], Awaitable[None]]


class ThrottledRenderer:
    def __init__(self, render: RenderFn, interval_ms: float) -> None:
        self._render = render
        self._interval = max(0.0, interval_ms) / 1000.0
        self._pending: Optional[str] = None
        # start time of the most recent render
        self._last_run: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tail: Optional[asyncio.Task] = None
        self._waiting_on_tail = False

    @property
    def pending_text(self) -> Optional[str]:
        return self._pending

    def update(self, text: str) -> None:
        self._pending = text
        if self._handle is not None or self._waiting_on_tail:
            return
        self._schedule()

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        if self._last_run is None:
            delay = 0.0
        else:
            delay = max(0.0, self._interval - (loop.time() - self._last_run))
        self._handle = loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        if self._tail is not None and not self._tail.done():
            # pick up whatever is newest once the running render completes
            self._waiting_on_tail = True
            self._tail.add_done_callback(self._on_tail_done)
            return
        text = self._pending
        self._pending = None
        if text is None:
            return
        task = self._enqueue(text)
        task.add_done_callback(_log_render_failure)

    def _on_tail_done(self, task: asyncio.Task) -> None:
        self._waiting_on_tail = False
        if self._pending is not None and self._handle is None:
            self._schedule()

    def _enqueue(self, text: str) -> asyncio.Task:
        previous = self._tail

        async def step() -> None:
            if previous is not None:
                await asyncio.wait([previous])
            self._last_run = asyncio.get_running_loop().time()
            await self._render(text)

        task = asyncio.ensure_future(step())
        self._tail = task
        return task

    async def flush(self) -> None:
        """Render any pending text now and wait for every queued render.

        Errors from this final render propagate to the caller.
        """
        self.cancel()
        text = self._pending
        self._pending = None
        if text is not None:
            await self._enqueue(text)
        elif self._tail is not None:
            await asyncio.wait([self._tail])

    async def discard(self) -> None:
        """Drop pending text and wait for renders already queued."""
        self.cancel()
        self._pending = None
        if self._tail is not None:
            await asyncio.wait([self._tail])

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


def _log_render_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"[stream] render failed: {exc}")
