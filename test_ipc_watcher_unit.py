"""
Unit tests for the host-side mailbox watcher.
Authorization comes from the directory an intent is found in, never from its payload.
"""
import json

import pytest
import pytest_asyncio

from conftest import FakeProvider, fresh_db
from src.db import crud
from src.db.database import get_db
from src.ipc.mailbox import IpcPaths, read_context, write_intent
from src.ipc.watcher import IpcWatcher, register_main_group


@pytest_asyncio.fixture
async def watcher(tmp_path):
    db = await fresh_db()
    w = IpcWatcher(FakeProvider(), ipc_root=tmp_path / "ipc", poll_interval=0.01, main_folder="main")
    await register_main_group(w, "chat-main")
    group = await crud.group_register(db, "chat-team", "Team", "team", "@bot")
    await w.prepare_group_ipc(group)
    return w


def _errors(w: IpcWatcher) -> list[str]:
    errors = w.ipc_root / "errors"
    return sorted(p.name for p in errors.iterdir()) if errors.exists() else []


def _remaining(w: IpcWatcher, folder: str) -> list[str]:
    paths = IpcPaths.at(w.ipc_root / folder)
    return sorted(p.name for d in (paths.messages, paths.tasks) for p in d.glob("*.json"))


# ─────────────────────────────────────────────
# Group mailboxes
# ─────────────────────────────────────────────

class TestPrepare:
    @pytest.mark.asyncio
    async def test_context_files_reflect_group_trust(self, watcher):
        main = read_context(watcher.paths_for("main").context)
        team = read_context(watcher.paths_for("team").context)
        assert (main.chat_jid, main.group_folder, main.is_main) == ("chat-main", "main", True)
        assert (team.chat_jid, team.group_folder, team.is_main) == ("chat-team", "team", False)

    @pytest.mark.asyncio
    async def test_only_main_sees_groups(self, watcher):
        await watcher.refresh_group_snapshots()
        main = json.loads(watcher.paths_for("main").available_groups.read_text())
        team = json.loads(watcher.paths_for("team").available_groups.read_text())
        assert sorted(g["folder"] for g in main["groups"]) == ["main", "team"]
        assert team["groups"] == []

    @pytest.mark.asyncio
    async def test_register_main_group_needs_chat(self, tmp_path):
        await fresh_db()
        w = IpcWatcher(FakeProvider(), ipc_root=tmp_path / "ipc")
        assert await register_main_group(w, "") is None


# ─────────────────────────────────────────────
# Message intents
# ─────────────────────────────────────────────

class TestMessages:
    @pytest.mark.asyncio
    async def test_group_message_to_own_chat_is_delivered(self, watcher):
        write_intent(watcher.paths_for("team").messages, {"type": "message", "chatJid": "chat-team", "text": "hi"})
        assert await watcher.poll_once() == 1
        [(_, target, msg)] = watcher.provider.sent
        assert target.channel_id == "chat-team"
        assert msg.text == "hi"
        assert _remaining(watcher, "team") == []

    @pytest.mark.asyncio
    async def test_group_cannot_message_other_chat(self, watcher):
        name = write_intent(
            watcher.paths_for("team").messages, {"type": "message", "chatJid": "chat-main", "text": "sneaky"}
        )
        assert await watcher.poll_once() == 0
        assert watcher.provider.sent == []
        assert _errors(watcher) == [f"team-{name}"]
        assert _remaining(watcher, "team") == []

    @pytest.mark.asyncio
    async def test_main_can_message_any_chat(self, watcher):
        write_intent(watcher.paths_for("main").messages, {"type": "message", "chatJid": "chat-team", "text": "hello team"})
        assert await watcher.poll_once() == 1
        assert watcher.provider.sent_texts() == ["hello team"]

    @pytest.mark.asyncio
    async def test_payload_cannot_claim_main(self, watcher):
        write_intent(watcher.paths_for("team").messages, {
            "type": "message", "chatJid": "chat-main", "text": "x", "groupFolder": "main", "isMain": True,
        })
        assert await watcher.poll_once() == 0
        assert watcher.provider.sent == []

    @pytest.mark.asyncio
    async def test_malformed_file_moves_to_errors(self, watcher):
        bad = watcher.paths_for("team").messages / "100-broken.json"
        bad.write_text("{not json")
        assert await watcher.poll_once() == 0
        assert _errors(watcher) == ["team-100-broken.json"]

    @pytest.mark.asyncio
    async def test_temp_files_are_left_alone(self, watcher):
        tmp = watcher.paths_for("team").messages / "100-aaaaaa.json.tmp"
        tmp.write_text("{")
        assert await watcher.poll_once() == 0
        assert tmp.exists()
        assert _errors(watcher) == []


# ─────────────────────────────────────────────
# Task intents
# ─────────────────────────────────────────────

def _schedule(folder: str, **extra) -> dict:
    return {
        "type": "schedule_task",
        "prompt": "report",
        "schedule_type": "interval",
        "schedule_value": "60000",
        "context_mode": "isolated",
        "groupFolder": folder,
        **extra,
    }


class TestTasks:
    @pytest.mark.asyncio
    async def test_schedule_for_own_group_and_snapshot(self, watcher):
        write_intent(watcher.paths_for("team").tasks, _schedule("team"))
        assert await watcher.poll_once() == 1
        tasks = await crud.task_list(await get_db(), "team")
        assert len(tasks) == 1
        assert tasks[0].chat_jid == "chat-team"
        assert tasks[0].context_mode == "isolated"
        assert tasks[0].created_by == "team"

        team_snapshot = json.loads(watcher.paths_for("team").current_tasks.read_text())
        main_snapshot = json.loads(watcher.paths_for("main").current_tasks.read_text())
        assert [t["id"] for t in team_snapshot] == [tasks[0].id]
        assert [t["id"] for t in main_snapshot] == [tasks[0].id]

    @pytest.mark.asyncio
    async def test_group_cannot_schedule_for_another(self, watcher):
        write_intent(watcher.paths_for("team").tasks, _schedule("main"))
        assert await watcher.poll_once() == 0
        assert len(_errors(watcher)) == 1

    @pytest.mark.asyncio
    async def test_main_schedules_for_registered_group(self, watcher):
        write_intent(watcher.paths_for("main").tasks, _schedule("team"))
        assert await watcher.poll_once() == 1
        write_intent(watcher.paths_for("main").tasks, _schedule("ghost"))
        assert await watcher.poll_once() == 0

    @pytest.mark.asyncio
    async def test_invalid_schedule_type_rejected(self, watcher):
        write_intent(watcher.paths_for("team").tasks, _schedule("team", schedule_type="weekly"))
        assert await watcher.poll_once() == 0

    @pytest.mark.asyncio
    async def test_pause_resume_cancel_own_task(self, watcher):
        db = await get_db()
        task = await crud.task_create(db, "team", "p", "once", "2030-01-01T00:00:00Z", chat_jid="chat-team")
        tasks_dir = watcher.paths_for("team").tasks

        write_intent(tasks_dir, {"type": "pause_task", "taskId": task.id})
        assert await watcher.poll_once() == 1
        assert (await crud.task_get(db, task.id)).status == "paused"

        write_intent(tasks_dir, {"type": "resume_task", "taskId": task.id})
        assert await watcher.poll_once() == 1
        assert (await crud.task_get(db, task.id)).status == "active"

        write_intent(tasks_dir, {"type": "cancel_task", "taskId": task.id})
        assert await watcher.poll_once() == 1
        assert await crud.task_get(db, task.id) is None

    @pytest.mark.asyncio
    async def test_group_cannot_touch_foreign_task(self, watcher):
        db = await get_db()
        task = await crud.task_create(db, "main", "p", "once", "x")
        write_intent(watcher.paths_for("team").tasks, {"type": "cancel_task", "taskId": task.id, "isMain": True})
        assert await watcher.poll_once() == 0
        assert await crud.task_get(db, task.id) is not None

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, watcher):
        write_intent(watcher.paths_for("main").tasks, {"type": "format_disk"})
        assert await watcher.poll_once() == 0
        assert len(_errors(watcher)) == 1


# ─────────────────────────────────────────────
# Group intents
# ─────────────────────────────────────────────

class TestGroups:
    @pytest.mark.asyncio
    async def test_main_registers_group(self, watcher):
        write_intent(watcher.paths_for("main").tasks, {
            "type": "register_group", "jid": "chat-ops", "name": "Ops", "folder": "ops", "trigger": "@bot",
        })
        assert await watcher.poll_once() == 1
        ctx = read_context(watcher.paths_for("ops").context)
        assert (ctx.chat_jid, ctx.is_main) == ("chat-ops", False)
        groups = json.loads(watcher.paths_for("main").available_groups.read_text())["groups"]
        assert "ops" in [g["folder"] for g in groups]

    @pytest.mark.asyncio
    async def test_registration_rejects_path_like_folder(self, watcher):
        write_intent(watcher.paths_for("main").tasks, {
            "type": "register_group", "jid": "chat-x", "name": "X", "folder": "../escape", "trigger": "@bot",
        })
        assert await watcher.poll_once() == 0
        assert not (watcher.ipc_root.parent / "escape").exists()

    @pytest.mark.asyncio
    async def test_non_main_cannot_register_or_refresh(self, watcher):
        tasks_dir = watcher.paths_for("team").tasks
        write_intent(tasks_dir, {"type": "register_group", "jid": "j", "name": "n", "folder": "newgroup", "trigger": "t"})
        write_intent(tasks_dir, {"type": "refresh_groups"})
        assert await watcher.poll_once() == 0
        assert len(_errors(watcher)) == 2
        assert not watcher.paths_for("newgroup").root.exists()

    @pytest.mark.asyncio
    async def test_main_refresh_groups(self, watcher):
        write_intent(watcher.paths_for("main").tasks, {"type": "refresh_groups"})
        assert await watcher.poll_once() == 1
