"""
Host-side mailbox watcher.

Polls every group's mailbox under the host IPC root, authorizes each intent
by the directory it was found in (never by its payload), applies it, and
deletes the file. Files that fail to parse, are not authorized, or fail to
apply are moved to <ipc_root>/errors/ for inspection.
"""
import asyncio
import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from src.config import HOST_IPC_ROOT, IPC_POLL_INTERVAL, MAIN_GROUP_FOLDER
from src.db import crud
from src.db.database import get_db
from src.db.models import RegisteredGroup, ScheduledTask
from src.ipc.mailbox import IpcContext, IpcPaths, list_intents, now_iso, write_context, write_json_snapshot
from src.providers.base import MessageProvider, OutgoingMessage, OutgoingTarget

logger = logging.getLogger(__name__)

ERRORS_DIR = "errors"
SCHEDULE_TYPES = ("cron", "interval", "once")
CONTEXT_MODES = ("group", "isolated")
_FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


class IntentRejected(Exception):
    """The intent is malformed or the source group may not perform it."""


def task_to_snapshot(task: ScheduledTask) -> dict[str, Any]:
    return {
        "id": task.id,
        "groupFolder": task.group_folder,
        "prompt": task.prompt,
        "schedule_type": task.schedule_type,
        "schedule_value": task.schedule_value,
        "status": task.status,
        "next_run": task.next_run,
    }


def _read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class IpcWatcher:
    def __init__(
        self,
        provider: MessageProvider,
        ipc_root: Union[str, Path] = HOST_IPC_ROOT,
        poll_interval: float = IPC_POLL_INTERVAL,
        main_folder: str = MAIN_GROUP_FOLDER,
    ) -> None:
        self.provider = provider
        self.ipc_root = Path(ipc_root)
        self.poll_interval = poll_interval
        self.main_folder = main_folder

    def paths_for(self, folder: str) -> IpcPaths:
        return IpcPaths.at(self.ipc_root / folder)

    # ── snapshots ─────────────────────────────

    async def prepare_group_ipc(self, group: RegisteredGroup) -> None:
        """Create the group's mailbox and write its trust context and snapshots."""
        is_main = group.folder == self.main_folder
        paths = self.paths_for(group.folder)

        def _prepare() -> None:
            paths.messages.mkdir(parents=True, exist_ok=True)
            paths.tasks.mkdir(parents=True, exist_ok=True)
            write_context(paths.context, IpcContext(chat_jid=group.chat_jid, group_folder=group.folder, is_main=is_main))

        await asyncio.to_thread(_prepare)
        db = await get_db()
        await self._write_tasks_snapshot(group.folder, await crud.task_list(db))
        await self._write_groups_snapshot(group.folder, await crud.group_list(db))

    async def _write_tasks_snapshot(self, folder: str, tasks: list[ScheduledTask]) -> None:
        is_main = folder == self.main_folder
        visible = [task_to_snapshot(t) for t in tasks if is_main or t.group_folder == folder]
        await asyncio.to_thread(write_json_snapshot, self.paths_for(folder).current_tasks, visible)

    async def _write_groups_snapshot(self, folder: str, groups: list[RegisteredGroup]) -> None:
        is_main = folder == self.main_folder
        visible = [
            {"jid": g.chat_jid, "name": g.name, "folder": g.folder, "isRegistered": True}
            for g in groups
        ] if is_main else []
        await asyncio.to_thread(
            write_json_snapshot, self.paths_for(folder).available_groups, {"groups": visible, "lastSync": now_iso()}
        )

    async def refresh_task_snapshots(self) -> None:
        db = await get_db()
        tasks = await crud.task_list(db)
        for group in await crud.group_list(db):
            await self._write_tasks_snapshot(group.folder, tasks)

    async def refresh_group_snapshots(self) -> None:
        db = await get_db()
        groups = await crud.group_list(db)
        for group in groups:
            await self._write_groups_snapshot(group.folder, groups)

    # ── polling ───────────────────────────────

    async def start(self) -> None:
        db = await get_db()
        groups = await crud.group_list(db)
        for group in groups:
            await self.prepare_group_ipc(group)
        logger.info(f"[ipc-watch] watching {self.ipc_root} ({len(groups)} groups)")

    async def run(self) -> None:
        await self.start()
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"[ipc-watch] poll failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    def _group_folders(self) -> list[str]:
        if not self.ipc_root.is_dir():
            return []
        return sorted(p.name for p in self.ipc_root.iterdir() if p.is_dir() and p.name != ERRORS_DIR)

    async def poll_once(self) -> int:
        """Process every pending intent once. Returns the number applied."""
        applied = 0
        for folder in await asyncio.to_thread(self._group_folders):
            is_main = folder == self.main_folder
            paths = self.paths_for(folder)
            for path in await asyncio.to_thread(list_intents, paths.messages):
                applied += await self._consume(path, folder, is_main, self._apply_message)
            tasks_changed = False
            for path in await asyncio.to_thread(list_intents, paths.tasks):
                ok = await self._consume(path, folder, is_main, self._apply_task)
                applied += ok
                tasks_changed = tasks_changed or bool(ok)
            if tasks_changed:
                await self.refresh_task_snapshots()
        return applied

    async def _consume(
        self,
        path: Path,
        folder: str,
        is_main: bool,
        apply: Callable[[str, bool, dict[str, Any]], Awaitable[None]],
    ) -> int:
        try:
            data = await asyncio.to_thread(_read_json, path)
            if not isinstance(data, dict):
                raise IntentRejected("intent is not a JSON object")
            await apply(folder, is_main, data)
        except Exception as e:
            logger.warning(f"[ipc-watch] rejected {folder}/{path.parent.name}/{path.name}: {e}")
            await asyncio.to_thread(self._move_to_errors, path, folder)
            return 0
        await asyncio.to_thread(path.unlink, missing_ok=True)
        return 1

    def _move_to_errors(self, path: Path, folder: str) -> None:
        errors = self.ipc_root / ERRORS_DIR
        errors.mkdir(parents=True, exist_ok=True)
        shutil.move(str(path), str(errors / f"{folder}-{path.name}"))

    # ── intents ───────────────────────────────

    async def _apply_message(self, folder: str, is_main: bool, data: dict[str, Any]) -> None:
        if data.get("type") != "message":
            raise IntentRejected(f"unexpected intent type in messages/: {data.get('type')}")
        chat_jid = str(data.get("chatJid") or "")
        text = str(data.get("text") or "")
        if not chat_jid or not text:
            raise IntentRejected("message intent needs chatJid and text")
        if not is_main:
            db = await get_db()
            own = await crud.group_get_by_folder(db, folder)
            if own is None or own.chat_jid != chat_jid:
                raise IntentRejected(f"group {folder} may not message {chat_jid}")
        await self.provider.send_message(OutgoingTarget(channel_id=chat_jid), OutgoingMessage(text=text))
        logger.info(f"[ipc-watch] message from {folder} delivered to {chat_jid}")

    async def _apply_task(self, folder: str, is_main: bool, data: dict[str, Any]) -> None:
        kind = data.get("type")
        handler = self._task_handlers().get(kind) if isinstance(kind, str) else None
        if handler is None:
            raise IntentRejected(f"unknown task intent type: {kind}")
        await handler(folder, is_main, data)

    def _task_handlers(self) -> dict[str, Callable[[str, bool, dict[str, Any]], Awaitable[None]]]:
        return {
            "schedule_task": self._schedule_task,
            "pause_task": self._change_task,
            "resume_task": self._change_task,
            "cancel_task": self._change_task,
            "refresh_groups": self._refresh_groups,
            "register_group": self._register_group,
        }

    async def _schedule_task(self, folder: str, is_main: bool, data: dict[str, Any]) -> None:
        target = str(data.get("groupFolder") or folder)
        if not is_main and target != folder:
            raise IntentRejected(f"group {folder} may not schedule for {target}")
        prompt = str(data.get("prompt") or "")
        schedule_type = str(data.get("schedule_type") or "")
        schedule_value = str(data.get("schedule_value") or "")
        context_mode = str(data.get("context_mode") or "group")
        if not prompt or not schedule_value:
            raise IntentRejected("schedule_task needs prompt and schedule_value")
        if schedule_type not in SCHEDULE_TYPES or context_mode not in CONTEXT_MODES:
            raise IntentRejected(f"invalid schedule {schedule_type}/{context_mode}")

        db = await get_db()
        target_group = await crud.group_get_by_folder(db, target)
        if target_group is None and target != folder:
            raise IntentRejected(f"unknown target group {target}")
        chat_jid = target_group.chat_jid if target_group else str(data.get("chatJid") or "")
        await crud.task_create(
            db, target, prompt, schedule_type, schedule_value,
            chat_jid=chat_jid, context_mode=context_mode, created_by=folder,
        )

    async def _change_task(self, folder: str, is_main: bool, data: dict[str, Any]) -> None:
        task_id = str(data.get("taskId") or "")
        db = await get_db()
        task = await crud.task_get(db, task_id) if task_id else None
        if task is None:
            raise IntentRejected(f"unknown task {task_id or '-'}")
        if not is_main and task.group_folder != folder:
            raise IntentRejected(f"group {folder} may not modify task {task_id}")
        kind = data["type"]
        if kind == "pause_task":
            await crud.task_set_status(db, task_id, "paused")
        elif kind == "resume_task":
            await crud.task_set_status(db, task_id, "active")
        else:
            await crud.task_delete(db, task_id)
        logger.info(f"[ipc-watch] {kind} {task_id} by {folder}")

    async def _refresh_groups(self, folder: str, is_main: bool, data: dict[str, Any]) -> None:
        if not is_main:
            raise IntentRejected(f"group {folder} may not refresh groups")
        await self.refresh_group_snapshots()

    async def _register_group(self, folder: str, is_main: bool, data: dict[str, Any]) -> None:
        if not is_main:
            raise IntentRejected(f"group {folder} may not register groups")
        jid = str(data.get("jid") or "")
        name = str(data.get("name") or "")
        new_folder = str(data.get("folder") or "")
        trigger = str(data.get("trigger") or "")
        if not jid or not name or not _FOLDER_RE.match(new_folder) or new_folder == ERRORS_DIR:
            raise IntentRejected(f"invalid group registration jid={jid!r} folder={new_folder!r}")
        db = await get_db()
        group = await crud.group_register(db, jid, name, new_folder, trigger)
        await self.prepare_group_ipc(group)
        await self.refresh_group_snapshots()


async def register_main_group(watcher: IpcWatcher, chat_jid: str, name: str = "main", trigger: str = "") -> Optional[RegisteredGroup]:
    """Bootstrap the main group so its agent can register the rest."""
    if not chat_jid:
        return None
    db = await get_db()
    group = await crud.group_register(db, chat_jid, name, watcher.main_folder, trigger)
    await watcher.prepare_group_ipc(group)
    return group
