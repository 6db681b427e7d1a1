"""
End-to-end tests for handle_incoming_message with a scripted agent and an
in-memory messaging provider.
"""
import asyncio

import pytest
import pytest_asyncio

from conftest import FakeAgentClient, FakeProvider, fresh_db
from src.config import ABORTED_STATUS_TEXT
from src.db import crud
from src.providers.base import IncomingMessage
from src.session.generation import build_footer, session_title
from src.session.handler import handle_incoming_message, is_thread_reply
from src.session.options import SessionHandlerOptions
from src.session.state import get_registry


def _msg(text: str, n: int = 1, thread: str = "t1", mentions=None) -> IncomingMessage:
    return IncomingMessage(
        provider_id="fake",
        message_id=f"m{n}",
        channel_id="c1",
        thread_id=thread,
        user_id="u1",
        text=text,
        mentions=list(mentions or []),
    )


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _options(tmp_path, streaming: bool = False, **overrides) -> SessionHandlerOptions:
    values = dict(
        provider=FakeProvider(supports_update=streaming),
        client=FakeAgentClient(),
        project_directory=str(tmp_path),
        streaming_enabled=streaming,
        throttle_ms=0,
        max_message_chars=4000,
        bot_user_id=None,
        mention_required_default=True,
    )
    values.update(overrides)
    return SessionHandlerOptions(**values)


@pytest_asyncio.fixture
async def db():
    return await fresh_db()


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def test_session_title_and_footer():
    assert session_title("  fix the build  ") == "fix the build"
    assert session_title("") == "Chat thread"
    long_title = session_title("x" * 200)
    assert len(long_title) == 80 and long_title.endswith("...")
    assert build_footer(1.34, "ses-1", "anthropic/model") == "1.3s · ses-1 · anthropic/model"
    assert build_footer(-1, "ses-1", None) == "0.0s · ses-1"


def test_is_thread_reply():
    assert is_thread_reply(_msg("x", n=1, thread="m1")) is False
    assert is_thread_reply(_msg("x", n=2, thread="m1")) is True


# ─────────────────────────────────────────────
# Generation
# ─────────────────────────────────────────────

class TestGeneration:
    @pytest.mark.asyncio
    async def test_plain_reply_and_session_reuse(self, db, tmp_path):
        options = _options(tmp_path)
        await handle_incoming_message(_msg("hello"), options)
        [reply] = options.provider.sent_texts()
        assert reply.startswith("echo: hello\n\n")
        assert "· ses-1" in reply
        assert await crud.thread_get_session(db, "t1") == "ses-1"
        assert (await crud.channel_get(db, "c1")).directory == str(tmp_path)

        await handle_incoming_message(_msg("again", n=2), options)
        assert "· ses-1" in options.provider.sent_texts()[-1]
        assert options.client.prompts == ["hello", "again"]
        assert get_registry().get_active("t1") is None

    @pytest.mark.asyncio
    async def test_vanished_session_is_recreated(self, db, tmp_path):
        options = _options(tmp_path)
        await crud.thread_set_session(db, "t1", "ses-gone")
        await handle_incoming_message(_msg("hello"), options)
        assert await crud.thread_get_session(db, "t1") == "ses-1"

    @pytest.mark.asyncio
    async def test_streaming_updates_placeholder(self, db, tmp_path):
        options = _options(tmp_path, streaming=True)
        options.client.scripts.append([
            {"type": "text", "text": "thinking"},
            {"type": "text", "text": "thinking hard"},
            {"type": "done", "text": "final answer", "model": "p/m"},
        ])
        await handle_incoming_message(_msg("question"), options)
        assert options.provider.sent_texts() == [""]
        final = options.provider.last_update("out-1")
        assert final.mode == "final"
        assert final.text.startswith("final answer\n\n")
        assert final.text.endswith("· ses-1 · p/m")
        assert get_registry().active_streams == {}

    @pytest.mark.asyncio
    async def test_model_override_is_passed_to_agent(self, db, tmp_path):
        options = _options(tmp_path)
        await crud.channel_set(db, "c1", model="chan/default")
        await handle_incoming_message(_msg("one"), options)
        await crud.thread_set_model(db, "t1", "thread/override")
        await handle_incoming_message(_msg("two", n=2), options)
        assert options.client.models == ["chan/default", "thread/override"]

    @pytest.mark.asyncio
    async def test_agent_error_is_reported_once(self, db, tmp_path):
        options = _options(tmp_path)
        options.client.scripts.append([{"type": "error", "status": 502, "message": '{"message": "upstream down"}'}])
        await handle_incoming_message(_msg("hello"), options)
        [report] = options.provider.sent_texts()
        assert report.startswith("✗ Agent API 502: upstream down")
        assert "- operation: agent.prompt" in report
        assert "- session: ses-1" in report
        assert get_registry().get_active("t1") is None

    @pytest.mark.asyncio
    async def test_streaming_error_lands_in_placeholder(self, db, tmp_path):
        options = _options(tmp_path, streaming=True)
        options.client.scripts.append([
            {"type": "text", "text": "partial"},
            {"type": "error", "status": 500, "message": "crashed"},
        ])
        await handle_incoming_message(_msg("hello"), options)
        assert options.provider.sent_texts() == [""]
        update = options.provider.last_update("out-1")
        assert update.status == "error"
        assert update.text.startswith("✗ Agent API 500: crashed")

    @pytest.mark.asyncio
    async def test_long_plain_reply_is_chunked(self, db, tmp_path):
        options = _options(tmp_path, max_message_chars=50)
        body = "\n\n".join(f"paragraph {n} " + "x" * 20 for n in range(5))
        options.client.scripts.append([{"type": "done", "text": body}])
        await handle_incoming_message(_msg("long"), options)
        assert len(options.provider.sent) > 1
        assert all(len(t) <= 50 for t in options.provider.sent_texts())


# ─────────────────────────────────────────────
# Queueing and abort
# ─────────────────────────────────────────────

class TestQueueAndAbort:
    @pytest.mark.asyncio
    async def test_messages_in_busy_thread_are_queued(self, db, tmp_path):
        options = _options(tmp_path)
        gate = asyncio.Event()
        options.client.scripts.append([{"type": "wait", "event": gate}, {"type": "done", "text": "first done"}])

        first = asyncio.create_task(handle_incoming_message(_msg("first"), options))
        await _until(lambda: options.client.prompts == ["first"])

        await handle_incoming_message(_msg("second", n=2), options)
        await handle_incoming_message(_msg("third", n=3), options)
        assert options.provider.sent_texts() == ["⏳ Queued (1 pending)", "⏳ Queued (2 pending)"]

        gate.set()
        await first
        assert options.client.prompts == ["first", "second", "third"]
        replies = options.provider.sent_texts()[2:]
        assert [r.split("\n")[0] for r in replies] == ["first done", "echo: second", "echo: third"]
        assert get_registry().message_queue == {}
        assert get_registry().get_active("t1") is None

    @pytest.mark.asyncio
    async def test_other_threads_are_not_blocked(self, db, tmp_path):
        options = _options(tmp_path)
        gate = asyncio.Event()
        options.client.scripts.append([{"type": "wait", "event": gate}, {"type": "done", "text": "slow"}])
        first = asyncio.create_task(handle_incoming_message(_msg("slow", thread="t1"), options))
        await _until(lambda: len(options.client.prompts) == 1)

        await handle_incoming_message(_msg("fast", n=2, thread="t2"), options)
        assert options.provider.sent_texts()[0].startswith("echo: fast")
        gate.set()
        await first

    @pytest.mark.asyncio
    async def test_abort_stops_generation_and_runs_backlog(self, db, tmp_path):
        options = _options(tmp_path, streaming=True)
        gate = asyncio.Event()
        options.client.scripts.append([
            {"type": "text", "text": "working"},
            {"type": "wait", "event": gate},
            {"type": "done", "text": "should never show"},
        ])

        first = asyncio.create_task(handle_incoming_message(_msg("long job"), options))
        await _until(lambda: options.provider.last_update("out-1") is not None)
        await handle_incoming_message(_msg("next", n=2), options)

        await handle_incoming_message(_msg("/abort", n=3), options)
        await asyncio.wait_for(first, 2)

        assert options.client.aborted == ["ses-1"]
        assert options.provider.last_update("out-1").text == ABORTED_STATUS_TEXT
        assert "⏹ Aborted the active request." in options.provider.sent_texts()
        assert not any("should never show" in m.text for _, m in options.provider.updates)
        assert not any(t.startswith("✗") for t in options.provider.sent_texts())
        assert options.client.prompts == ["long job", "next"]
        assert get_registry().get_active("t1") is None

    @pytest.mark.asyncio
    async def test_abort_when_idle(self, db, tmp_path):
        options = _options(tmp_path)
        await handle_incoming_message(_msg("/abort"), options)
        assert options.provider.sent_texts() == ["No active request in this thread."]
        assert options.client.prompts == []


# ─────────────────────────────────────────────
# Mention gate
# ─────────────────────────────────────────────

class TestMentionGate:
    @pytest.mark.asyncio
    async def test_top_level_message_needs_mention(self, db, tmp_path):
        options = _options(tmp_path, bot_user_id="bot")
        await handle_incoming_message(_msg("hi", n=1, thread="m1"), options)
        assert options.client.prompts == []
        await handle_incoming_message(_msg("hi bot", n=2, thread="m2", mentions=["bot"]), options)
        assert options.client.prompts == ["hi bot"]

    @pytest.mark.asyncio
    async def test_thread_replies_pass(self, db, tmp_path):
        options = _options(tmp_path, bot_user_id="bot")
        await handle_incoming_message(_msg("follow up", n=5, thread="m1"), options)
        assert options.client.prompts == ["follow up"]

    @pytest.mark.asyncio
    async def test_mention_required_reachable_behind_gate(self, db, tmp_path):
        options = _options(tmp_path, bot_user_id="bot")
        await handle_incoming_message(_msg("/mention-required off", n=1, thread="m1"), options)
        assert await crud.thread_get_mention_required(db, "m1") is False
        await handle_incoming_message(_msg("no mention", n=1, thread="m1"), options)
        assert options.client.prompts == ["no mention"]

    @pytest.mark.asyncio
    async def test_other_commands_are_gated(self, db, tmp_path):
        options = _options(tmp_path, bot_user_id="bot")
        await handle_incoming_message(_msg("/help", n=1, thread="m1"), options)
        assert options.provider.sent == []

    @pytest.mark.asyncio
    async def test_unknown_command_goes_to_agent(self, db, tmp_path):
        options = _options(tmp_path)
        await handle_incoming_message(_msg("/summarize this"), options)
        assert options.client.prompts == ["/summarize this"]


# ─────────────────────────────────────────────
# Agent prompts
# ─────────────────────────────────────────────

class TestAgentPrompts:
    @pytest.mark.asyncio
    async def test_question_answered_from_thread(self, db, tmp_path):
        options = _options(tmp_path)
        gate = asyncio.Event()
        options.client.scripts.append([
            {"type": "question", "id": "q1", "questions": [
                {"question": "Proceed?", "options": [{"label": "yes"}, {"label": "no"}]},
            ]},
            {"type": "wait", "event": gate},
            {"type": "done", "text": "ok"},
        ])
        first = asyncio.create_task(handle_incoming_message(_msg("go"), options))
        await _until(lambda: "t1" in get_registry().pending_questions)

        # an answer is consumed by the question, not queued behind the generation
        await handle_incoming_message(_msg("1", n=2), options)
        assert options.client.question_replies == [("q1", [["yes"]])]
        assert options.client.prompts == ["go"]

        gate.set()
        await first

    @pytest.mark.asyncio
    async def test_permission_approved_once(self, db, tmp_path):
        options = _options(tmp_path)
        gate = asyncio.Event()
        options.client.scripts.append([
            {"type": "permission", "id": "p1", "permission": "bash", "patterns": ["make"]},
            {"type": "permission", "id": "p2", "permission": "bash", "patterns": ["make"]},
            {"type": "wait", "event": gate},
            {"type": "done", "text": "built"},
        ])
        first = asyncio.create_task(handle_incoming_message(_msg("build it"), options))
        await _until(lambda: len(get_registry().pending_permissions) == 1 and
                     len(next(iter(get_registry().pending_permissions.values())).request_ids) == 2)
        prompts = [t for t in options.provider.sent_texts() if t.startswith("🔐")]
        assert len(prompts) == 1

        await handle_incoming_message(_msg("/approve", n=2), options)
        assert options.client.permission_replies == [("p1", "once"), ("p2", "once")]
        gate.set()
        await first
        assert options.provider.sent_texts()[-1].startswith("built")
