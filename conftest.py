"""
Shared test setup for ThreadRelay unit tests.

Configuration is fixed at import time in src.config, so the environment is
prepared here before anything under src/ is imported. Every test gets an empty
in-memory database (via fresh_db) and an empty thread state registry.
"""
import asyncio
import os
import tempfile
from typing import Any, Optional

import pytest

os.environ["THREADRELAY_DB"] = ":memory:"
os.environ["THREADRELAY_DATA_DIR"] = tempfile.mkdtemp(prefix="threadrelay-test-")
os.environ["THREADRELAY_BOT_USER_ID"] = ""

import src.db.database as dbmod
from src.agent.client import AgentSessionClient, parse_event
from src.errors import AgentSessionError
from src.providers.base import MessageProvider, OutgoingMessage, OutgoingTarget, SendResult
from src.session.state import reset_registry


async def fresh_db():
    """Drop the shared connection and open a new, empty in-memory database."""
    await dbmod.close_db()
    return await dbmod.get_db()


@pytest.fixture(autouse=True)
def _clean_registry():
    reset_registry()
    yield
    reset_registry()


@pytest.fixture(scope="session", autouse=True)
def _close_db_at_exit():
    yield
    if dbmod._db is not None:
        asyncio.run(dbmod.close_db())


@pytest.fixture
def ipc_dir(tmp_path):
    path = tmp_path / "ipc"
    path.mkdir()
    return path


# ─────────────────────────────────────────────
# Test doubles
# ─────────────────────────────────────────────

class FakeProvider(MessageProvider):
    id = "fake"

    def __init__(self, supports_update: bool = True, update_ok: bool = True) -> None:
        super().__init__()
        self.supports_update = supports_update
        self.update_ok = update_ok
        self.sent: list[tuple[str, OutgoingTarget, OutgoingMessage]] = []
        self.updates: list[tuple[str, OutgoingMessage]] = []
        self._seq = 0

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def send_message(self, target: OutgoingTarget, message: OutgoingMessage) -> SendResult:
        self._seq += 1
        message_id = f"out-{self._seq}"
        self.sent.append((message_id, target, message))
        return SendResult(message_id=message_id)

    async def update_message(self, message_id: str, message: OutgoingMessage) -> bool:
        if not self.supports_update or not self.update_ok:
            return False
        self.updates.append((message_id, message))
        return True

    def sent_texts(self) -> list[str]:
        return [m.text for _, _, m in self.sent]

    def last_update(self, message_id: str) -> Optional[OutgoingMessage]:
        for mid, msg in reversed(self.updates):
            if mid == message_id:
                return msg
        return None


class FakeAgentClient(AgentSessionClient):
    """Scripted agent: each stream_prompt call consumes the next list of raw events.

    A raw event {"type": "wait", "event": asyncio.Event} blocks the stream until set.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.scripts: list[list[dict[str, Any]]] = []
        self.prompts: list[str] = []
        self.models: list[Optional[str]] = []
        self.aborted: list[str] = []
        self.question_replies: list[tuple[str, list[list[str]]]] = []
        self.permission_replies: list[tuple[str, str]] = []
        self.history: dict[str, list[dict[str, Any]]] = {}
        self.fail_abort = False
        self._created = 0

    async def get_session(self, session_id, directory):
        return self.sessions.get(session_id)

    async def create_session(self, title, directory):
        self._created += 1
        session_id = f"ses-{self._created}"
        self.sessions[session_id] = {"id": session_id, "title": title, "directory": directory}
        return session_id

    async def session_messages(self, session_id, directory):
        if session_id not in self.history:
            raise AgentSessionError(404, "session not found")
        return self.history[session_id]

    async def abort_session(self, session_id, directory=None):
        self.aborted.append(session_id)
        if self.fail_abort:
            raise RuntimeError("abort endpoint unavailable")

    async def stream_prompt(self, session_id, text, directory, model=None, agent=None):
        self.prompts.append(text)
        self.models.append(model)
        script = self.scripts.pop(0) if self.scripts else [{"type": "done", "text": f"echo: {text}"}]
        for raw in script:
            if raw.get("type") == "wait":
                await raw["event"].wait()
                continue
            event = parse_event(raw)
            if event is not None:
                yield event

    async def reply_question(self, request_id, answers, directory):
        self.question_replies.append((request_id, answers))

    async def reply_permission(self, request_id, reply, directory):
        self.permission_replies.append((request_id, reply))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def agent_client():
    return FakeAgentClient()
