"""
CRUD operations for ThreadRelay.
All functions are async and receive the aiosqlite connection from the caller.
"""
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from src.db.models import ThreadBinding, ChannelSettings, ScheduledTask, RegisteredGroup

logger = logging.getLogger(__name__)

TASK_STATUSES = {"active", "paused"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


# ─────────────────────────────────────────────
# Thread bindings
# ─────────────────────────────────────────────

async def thread_get(db: aiosqlite.Connection, thread_id: str) -> Optional[ThreadBinding]:
    async with db.execute("SELECT * FROM threads WHERE thread_id = ?", (thread_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_thread(row)


async def _thread_upsert(db: aiosqlite.Connection, thread_id: str, column: str, value) -> None:
    # column is always one of our own literals, never user input
    await db.execute(
        f"INSERT INTO threads (thread_id, {column}, updated_at) VALUES (?, ?, ?) "
        f"ON CONFLICT(thread_id) DO UPDATE SET {column} = excluded.{column}, updated_at = excluded.updated_at",
        (thread_id, value, _now()),
    )
    await db.commit()


async def thread_set_session(db: aiosqlite.Connection, thread_id: str, session_id: str) -> None:
    await _thread_upsert(db, thread_id, "session_id", session_id)
    logger.info(f"Thread {thread_id} bound to session {session_id}")


async def thread_clear_session(db: aiosqlite.Connection, thread_id: str) -> bool:
    async with db.execute(
        "UPDATE threads SET session_id = NULL, updated_at = ? WHERE thread_id = ? AND session_id IS NOT NULL",
        (_now(), thread_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def thread_get_session(db: aiosqlite.Connection, thread_id: str) -> Optional[str]:
    binding = await thread_get(db, thread_id)
    return binding.session_id if binding else None


async def thread_list_sessions(db: aiosqlite.Connection, limit: int = 20) -> list[ThreadBinding]:
    """Threads with a bound session, most recently touched first."""
    async with db.execute(
        "SELECT * FROM threads WHERE session_id IS NOT NULL ORDER BY updated_at DESC LIMIT ?",
        (limit,),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_thread(row) for row in rows]


async def thread_set_mention_required(db: aiosqlite.Connection, thread_id: str, required: bool) -> None:
    await _thread_upsert(db, thread_id, "mention_required", 1 if required else 0)


async def thread_get_mention_required(db: aiosqlite.Connection, thread_id: str) -> Optional[bool]:
    binding = await thread_get(db, thread_id)
    return binding.mention_required if binding else None


async def thread_set_model(db: aiosqlite.Connection, thread_id: str, model: Optional[str]) -> None:
    await _thread_upsert(db, thread_id, "model", model)


async def thread_set_agent(db: aiosqlite.Connection, thread_id: str, agent: Optional[str]) -> None:
    await _thread_upsert(db, thread_id, "agent", agent)


def _row_to_thread(row: aiosqlite.Row) -> ThreadBinding:
    mention = row["mention_required"]
    return ThreadBinding(
        thread_id=row["thread_id"],
        session_id=row["session_id"],
        mention_required=None if mention is None else bool(mention),
        model=row["model"],
        agent=row["agent"],
        updated_at=_parse_dt(row["updated_at"]),
    )


# ─────────────────────────────────────────────
# Channel settings
# ─────────────────────────────────────────────

async def channel_get(db: aiosqlite.Connection, channel_id: str) -> Optional[ChannelSettings]:
    async with db.execute("SELECT * FROM channels WHERE channel_id = ?", (channel_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return ChannelSettings(
        channel_id=row["channel_id"],
        directory=row["directory"],
        model=row["model"],
        agent=row["agent"],
    )


async def channel_set(
    db: aiosqlite.Connection,
    channel_id: str,
    directory: Optional[str] = None,
    model: Optional[str] = None,
    agent: Optional[str] = None,
) -> ChannelSettings:
    """Upsert a channel; None keeps the stored value."""
    current = await channel_get(db, channel_id)
    merged = ChannelSettings(
        channel_id=channel_id,
        directory=directory if directory is not None else (current.directory if current else None),
        model=model if model is not None else (current.model if current else None),
        agent=agent if agent is not None else (current.agent if current else None),
    )
    await db.execute(
        "INSERT INTO channels (channel_id, directory, model, agent) VALUES (?, ?, ?, ?) "
        "ON CONFLICT(channel_id) DO UPDATE SET directory = excluded.directory, "
        "model = excluded.model, agent = excluded.agent",
        (merged.channel_id, merged.directory, merged.model, merged.agent),
    )
    await db.commit()
    return merged


async def _channel_upsert(db: aiosqlite.Connection, channel_id: str, column: str, value: Optional[str]) -> None:
    # unlike channel_set, None here clears the stored value
    await db.execute(
        f"INSERT INTO channels (channel_id, {column}) VALUES (?, ?) "
        f"ON CONFLICT(channel_id) DO UPDATE SET {column} = excluded.{column}",
        (channel_id, value),
    )
    await db.commit()


async def channel_set_model(db: aiosqlite.Connection, channel_id: str, model: Optional[str]) -> None:
    await _channel_upsert(db, channel_id, "model", model)


async def channel_set_agent(db: aiosqlite.Connection, channel_id: str, agent: Optional[str]) -> None:
    await _channel_upsert(db, channel_id, "agent", agent)


# ─────────────────────────────────────────────
# Scheduled tasks
# ─────────────────────────────────────────────

async def task_create(
    db: aiosqlite.Connection,
    group_folder: str,
    prompt: str,
    schedule_type: str,
    schedule_value: str,
    chat_jid: str = "",
    context_mode: str = "group",
    created_by: Optional[str] = None,
) -> ScheduledTask:
    tid = f"task-{uuid.uuid4().hex[:12]}"
    now = _now()
    await db.execute(
        "INSERT INTO scheduled_tasks (id, group_folder, chat_jid, prompt, schedule_type, schedule_value, "
        "context_mode, next_run, status, created_at, created_by) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, 'active', ?, ?)",
        (tid, group_folder, chat_jid, prompt, schedule_type, schedule_value, context_mode, now, created_by),
    )
    await db.commit()
    logger.info(f"Task created: {tid} group={group_folder} {schedule_type}={schedule_value}")
    return ScheduledTask(
        id=tid, group_folder=group_folder, chat_jid=chat_jid, prompt=prompt,
        schedule_type=schedule_type, schedule_value=schedule_value, context_mode=context_mode,
        next_run=None, status="active", created_at=_parse_dt(now), created_by=created_by,
    )


async def task_get(db: aiosqlite.Connection, task_id: str) -> Optional[ScheduledTask]:
    async with db.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_task(row)


async def task_list(db: aiosqlite.Connection, group_folder: Optional[str] = None) -> list[ScheduledTask]:
    if group_folder is not None:
        async with db.execute(
            "SELECT * FROM scheduled_tasks WHERE group_folder = ? ORDER BY created_at DESC", (group_folder,)
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute("SELECT * FROM scheduled_tasks ORDER BY created_at DESC") as cur:
            rows = await cur.fetchall()
    return [_row_to_task(r) for r in rows]


async def task_set_status(db: aiosqlite.Connection, task_id: str, status: str) -> bool:
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid task status '{status}'. Must be one of {TASK_STATUSES}")
    async with db.execute("UPDATE scheduled_tasks SET status = ? WHERE id = ?", (status, task_id)) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def task_delete(db: aiosqlite.Connection, task_id: str) -> bool:
    async with db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    return deleted > 0


def _row_to_task(row: aiosqlite.Row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        group_folder=row["group_folder"],
        chat_jid=row["chat_jid"],
        prompt=row["prompt"],
        schedule_type=row["schedule_type"],
        schedule_value=row["schedule_value"],
        context_mode=row["context_mode"],
        next_run=row["next_run"],
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
        created_by=row["created_by"],
    )


# ─────────────────────────────────────────────
# Registered groups
# ─────────────────────────────────────────────

async def group_register(
    db: aiosqlite.Connection, chat_jid: str, name: str, folder: str, trigger: str
) -> RegisteredGroup:
    now = _now()
    await db.execute(
        "INSERT INTO registered_groups (chat_jid, name, folder, trigger, added_at) VALUES (?, ?, ?, ?, ?) "
        "ON CONFLICT(chat_jid) DO UPDATE SET name = excluded.name, folder = excluded.folder, trigger = excluded.trigger",
        (chat_jid, name, folder, trigger, now),
    )
    await db.commit()
    logger.info(f"Group registered: {name} ({chat_jid}) folder={folder}")
    return RegisteredGroup(chat_jid=chat_jid, name=name, folder=folder, trigger=trigger, added_at=_parse_dt(now))


async def group_list(db: aiosqlite.Connection) -> list[RegisteredGroup]:
    async with db.execute("SELECT * FROM registered_groups ORDER BY added_at ASC") as cur:
        rows = await cur.fetchall()
    return [
        RegisteredGroup(
            chat_jid=r["chat_jid"], name=r["name"], folder=r["folder"],
            trigger=r["trigger"], added_at=_parse_dt(r["added_at"]),
        )
        for r in rows
    ]


async def group_get_by_folder(db: aiosqlite.Connection, folder: str) -> Optional[RegisteredGroup]:
    for group in await group_list(db):
        if group.folder == folder:
            return group
    return None
