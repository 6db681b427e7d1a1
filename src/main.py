"""
ThreadRelay main entry point.

Starts a FastAPI HTTP server that:
  1. Accepts incoming chat messages from the messaging bridge at /api/messages
  2. Exposes per-thread queue inspection and abort endpoints
  3. Runs the host-side mailbox watcher for sandboxed agents
"""
import asyncio
import logging
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from src.agent.client import HttpAgentClient
from src.config import (
    AGENT_BASE_URL,
    AGENT_REQUEST_TIMEOUT,
    HOST,
    HOST_IPC_ROOT,
    MAIN_CHAT_JID,
    PORT,
    RELAY_VERSION,
    WEBHOOK_OUTBOUND_URL,
)
from src.db.database import close_db, get_db
from src.ipc.watcher import IpcWatcher, register_main_group
from src.providers.base import IncomingMessage
from src.providers.webhook import WebhookProvider
from src.session.cancellation import abort
from src.session.handler import handle_incoming_message
from src.session.options import SessionHandlerOptions
from src.session.queue import queue_snapshot

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("threadrelay")

# Strong references to in-flight message tasks; asyncio only keeps weak ones
_background: set[asyncio.Task] = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_db()
    client = HttpAgentClient(AGENT_BASE_URL, timeout=AGENT_REQUEST_TIMEOUT)
    provider = WebhookProvider(WEBHOOK_OUTBOUND_URL)
    await provider.start()
    options = SessionHandlerOptions(provider=provider, client=client)

    async def on_message(message: IncomingMessage) -> None:
        await handle_incoming_message(message, options)

    provider.on_message(on_message)

    watcher = IpcWatcher(provider, HOST_IPC_ROOT)
    if MAIN_CHAT_JID:
        await register_main_group(watcher, MAIN_CHAT_JID)
    watcher_task = asyncio.create_task(watcher.run())

    app.state.provider = provider
    app.state.client = client
    app.state.options = options
    logger.info(f"ThreadRelay running at http://{HOST}:{PORT}")
    yield

    watcher_task.cancel()
    with suppress(asyncio.CancelledError):
        await watcher_task
    for task in list(_background):
        task.cancel()
    await provider.stop()
    await client.aclose()
    await close_db()


app = FastAPI(
    title="ThreadRelay",
    description="Binds chat threads to AI-agent sessions with per-thread queueing and cancellation.",
    version=RELAY_VERSION,
    lifespan=lifespan,
)


# ─────────────────────────────────────────────
# Incoming messages
# ─────────────────────────────────────────────

class MessageIn(BaseModel):
    message_id: str
    channel_id: str
    thread_id: str | None = None
    user_id: str
    text: str
    user_name: str | None = None
    mentions: list[str] = []


@app.post("/api/messages", status_code=202)
async def api_incoming_message(body: MessageIn):
    provider: WebhookProvider = app.state.provider
    message = IncomingMessage(
        provider_id=provider.id,
        message_id=body.message_id,
        channel_id=body.channel_id,
        # a message outside any thread starts one rooted at itself
        thread_id=body.thread_id or body.message_id,
        user_id=body.user_id,
        text=body.text,
        user_name=body.user_name,
        mentions=body.mentions,
    )
    task = asyncio.create_task(provider.dispatch(message))
    _background.add(task)
    task.add_done_callback(_background.discard)
    return {"accepted": True, "thread_id": message.thread_id}


# ─────────────────────────────────────────────
# Thread inspection / control
# ─────────────────────────────────────────────

@app.get("/api/threads/{thread_id}/queue")
async def api_thread_queue(thread_id: str, limit: int = 10):
    if limit < 0:
        raise HTTPException(status_code=400, detail="limit must be >= 0")
    snap = queue_snapshot(thread_id, limit=limit)
    return {
        "thread_id": thread_id,
        "active": {"session_id": snap.active.session_id or None} if snap.active else None,
        "waiting": snap.total,
        "items": [
            {
                "message_id": item.message.message_id,
                "user_id": item.message.user_id,
                "text": item.message.text,
                "queued_at": item.queued_at,
            }
            for item in snap.items
        ],
    }


@app.post("/api/threads/{thread_id}/abort")
async def api_thread_abort(thread_id: str):
    result = await abort(thread_id, client=app.state.client, provider=app.state.provider)
    return {"aborted": result.aborted, "session_id": result.session_id}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "ThreadRelay", "version": RELAY_VERSION}


if __name__ == "__main__":
    uvicorn.run("src.main:app", host=HOST, port=PORT, reload=True)
