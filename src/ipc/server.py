"""
Agent IPC server.

Runs inside the agent sandbox and speaks Content-Length framed JSON-RPC over
stdio. Every tool call re-reads the trust context written by the host, checks
what the calling group is allowed to do, and records the request as an intent
file in the mailbox. Nothing here acts on an intent; the host watcher does.
"""
import asyncio
import logging
import sys
import threading
from typing import Any, Awaitable, BinaryIO, Callable, Optional

import mcp.types as types

from src.config import RELAY_VERSION
from src.ipc.mailbox import (
    IpcContext,
    IpcPaths,
    now_iso,
    read_context,
    read_tasks_snapshot,
    write_intent,
)
from src.ipc.protocol import FrameBuffer, encode_frame

logger = logging.getLogger(__name__)

SERVER_NAME = "threadrelay-ipc"
DEFAULT_PROTOCOL_VERSION = "2024-11-05"
SCHEDULE_TYPES = ("cron", "interval", "once")
CONTEXT_MODES = ("group", "isolated")

ReadFn = Callable[[], Awaitable[bytes]]
WriteFn = Callable[[bytes], Awaitable[None]]


# ─────────────────────────────────────────────
# Tool catalog
# ─────────────────────────────────────────────

_TASK_ID_SCHEMA = {
    "type": "object",
    "properties": {"task_id": {"type": "string"}},
    "required": ["task_id"],
    "additionalProperties": False,
}

TOOLS: list[types.Tool] = [
    types.Tool(
        name="send_message",
        description="Send a message to the current chat.",
        inputSchema={
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Message text."}},
            "required": ["text"],
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="schedule_task",
        description="Schedule a recurring or one-time task.",
        inputSchema={
            "type": "object",
            "properties": {
                "prompt":         {"type": "string", "description": "Prompt the agent runs when the task fires."},
                "schedule_type":  {"type": "string", "enum": list(SCHEDULE_TYPES)},
                "schedule_value": {"type": "string", "description": "Cron expression, interval in ms, or ISO timestamp."},
                "context_mode":   {"type": "string", "enum": list(CONTEXT_MODES), "default": "group"},
                "target_group":   {"type": "string", "description": "Group folder; defaults to the caller's group."},
            },
            "required": ["prompt", "schedule_type", "schedule_value"],
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="list_tasks",
        description="List scheduled tasks visible to this group.",
        inputSchema={"type": "object", "properties": {}, "additionalProperties": False},
    ),
    types.Tool(name="pause_task", description="Pause a scheduled task.", inputSchema=_TASK_ID_SCHEMA),
    types.Tool(name="resume_task", description="Resume a paused task.", inputSchema=_TASK_ID_SCHEMA),
    types.Tool(name="cancel_task", description="Cancel and delete a scheduled task.", inputSchema=_TASK_ID_SCHEMA),
    types.Tool(
        name="refresh_groups",
        description="Refresh group metadata (main group only).",
        inputSchema={"type": "object", "properties": {}, "additionalProperties": False},
    ),
    types.Tool(
        name="register_group",
        description="Register a new group (main group only).",
        inputSchema={
            "type": "object",
            "properties": {
                "jid":     {"type": "string", "description": "Chat id of the group."},
                "name":    {"type": "string"},
                "folder":  {"type": "string", "description": "Folder name for the group's workspace and mailbox."},
                "trigger": {"type": "string", "description": "Trigger word that addresses the agent."},
            },
            "required": ["jid", "name", "folder", "trigger"],
            "additionalProperties": False,
        },
    ),
]


def _text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)], isError=is_error)


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _arg(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    return "" if value is None else str(value)


# ─────────────────────────────────────────────
# Tool handlers
# ─────────────────────────────────────────────

async def _tool_send_message(server: "IpcServer", ctx: IpcContext, arguments: dict[str, Any]) -> types.CallToolResult:
    if not ctx.chat_jid:
        return _text_result("Missing chat context.", is_error=True)
    data = {
        "type": "message",
        "chatJid": ctx.chat_jid,
        "text": _arg(arguments, "text"),
        "groupFolder": ctx.group_folder,
        "timestamp": now_iso(),
    }
    filename = await asyncio.to_thread(write_intent, server.paths.messages, data)
    return _text_result(f"Message queued ({filename})")


async def _tool_schedule_task(server: "IpcServer", ctx: IpcContext, arguments: dict[str, Any]) -> types.CallToolResult:
    schedule_type = _arg(arguments, "schedule_type")
    context_mode = _arg(arguments, "context_mode") or "group"
    if schedule_type not in SCHEDULE_TYPES:
        return _text_result(f"schedule_type must be one of: {', '.join(SCHEDULE_TYPES)}", is_error=True)
    if context_mode not in CONTEXT_MODES:
        return _text_result(f"context_mode must be one of: {', '.join(CONTEXT_MODES)}", is_error=True)
    data = {
        "type": "schedule_task",
        "prompt": _arg(arguments, "prompt"),
        "schedule_type": schedule_type,
        "schedule_value": _arg(arguments, "schedule_value"),
        "context_mode": context_mode,
        "groupFolder": _arg(arguments, "target_group") or ctx.group_folder,
        "chatJid": ctx.chat_jid,
        "createdBy": ctx.group_folder,
        "timestamp": now_iso(),
    }
    filename = await asyncio.to_thread(write_intent, server.paths.tasks, data)
    return _text_result(f"Task scheduled ({filename}): {schedule_type} - {data['schedule_value']}")


async def _tool_list_tasks(server: "IpcServer", ctx: IpcContext, arguments: dict[str, Any]) -> types.CallToolResult:
    if not ctx.is_main and not ctx.group_folder:
        return _text_result("Missing group context.", is_error=True)
    tasks = await asyncio.to_thread(read_tasks_snapshot, server.paths.current_tasks)
    if not ctx.is_main:
        tasks = [t for t in tasks if t.get("groupFolder") == ctx.group_folder]
    if not tasks:
        return _text_result("No scheduled tasks found.")
    lines = [
        f"- [{t.get('id')}] {str(t.get('prompt', ''))[:50]}... "
        f"({t.get('schedule_type')}: {t.get('schedule_value')}) - {t.get('status')}, next: {t.get('next_run') or 'N/A'}"
        for t in tasks
    ]
    return _text_result("Scheduled tasks:\n" + "\n".join(lines))


def _task_action(action: str):
    async def handler(server: "IpcServer", ctx: IpcContext, arguments: dict[str, Any]) -> types.CallToolResult:
        task_id = _arg(arguments, "task_id")
        if not task_id:
            return _text_result("task_id is required.", is_error=True)
        data = {
            "type": action,
            "taskId": task_id,
            "groupFolder": ctx.group_folder,
            "isMain": ctx.is_main,
            "timestamp": now_iso(),
        }
        await asyncio.to_thread(write_intent, server.paths.tasks, data)
        return _text_result(f"Task {task_id} {action.replace('_', ' ')} requested.")
    return handler


async def _tool_refresh_groups(server: "IpcServer", ctx: IpcContext, arguments: dict[str, Any]) -> types.CallToolResult:
    if not ctx.is_main:
        return _text_result("Only the main group can refresh groups.", is_error=True)
    data = {"type": "refresh_groups", "groupFolder": ctx.group_folder, "timestamp": now_iso()}
    await asyncio.to_thread(write_intent, server.paths.tasks, data)
    return _text_result("Group refresh requested.")


async def _tool_register_group(server: "IpcServer", ctx: IpcContext, arguments: dict[str, Any]) -> types.CallToolResult:
    if not ctx.is_main:
        return _text_result("Only the main group can register groups.", is_error=True)
    data = {
        "type": "register_group",
        "jid": _arg(arguments, "jid"),
        "name": _arg(arguments, "name"),
        "folder": _arg(arguments, "folder"),
        "trigger": _arg(arguments, "trigger"),
        "timestamp": now_iso(),
    }
    await asyncio.to_thread(write_intent, server.paths.tasks, data)
    return _text_result(f'Group "{data["name"]}" registration requested.')


TOOLS_DISPATCH = {
    "send_message": _tool_send_message,
    "schedule_task": _tool_schedule_task,
    "list_tasks": _tool_list_tasks,
    "pause_task": _task_action("pause_task"),
    "resume_task": _task_action("resume_task"),
    "cancel_task": _task_action("cancel_task"),
    "refresh_groups": _tool_refresh_groups,
    "register_group": _tool_register_group,
}


# ─────────────────────────────────────────────
# JSON-RPC
# ─────────────────────────────────────────────

def _error(msg_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "error": _dump(types.ErrorData(code=code, message=message))}


class IpcServer:
    def __init__(self, ipc_dir: str) -> None:
        self.paths = IpcPaths.at(ipc_dir)

    def context(self) -> IpcContext:
        return read_context(self.paths.context)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        handler = TOOLS_DISPATCH.get(name)
        if handler is None:
            return _text_result(f"Unknown tool: {name}", is_error=True)
        ctx = self.context()
        logger.info(f"[ipc] tool={name} group={ctx.group_folder or '-'} main={ctx.is_main}")
        return await handler(self, ctx, arguments)

    async def handle_message(self, message: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Return the response for `message`, or None for notifications."""
        is_notification = "id" not in message
        msg_id = message.get("id")
        method = message.get("method")
        params = message.get("params")
        if not isinstance(params, dict):
            params = {}

        if method == "initialize":
            result = _dump(types.InitializeResult(
                protocolVersion=str(params.get("protocolVersion") or DEFAULT_PROTOCOL_VERSION),
                capabilities=types.ServerCapabilities(tools=types.ToolsCapability(listChanged=False)),
                serverInfo=types.Implementation(name=SERVER_NAME, version=RELAY_VERSION),
            ))
        elif method == "tools/list":
            result = _dump(types.ListToolsResult(tools=TOOLS))
        elif method == "tools/call":
            name = params.get("name")
            if not isinstance(name, str) or not name:
                return None if is_notification else _error(msg_id, types.INVALID_PARAMS, "Missing tool name")
            arguments = params.get("arguments")
            try:
                call = await self.call_tool(name, arguments if isinstance(arguments, dict) else {})
            except Exception as e:
                # the intent was not recorded
                logger.error(f"[ipc] tool {name} failed: {e}")
                return None if is_notification else _error(msg_id, types.INTERNAL_ERROR, str(e))
            result = _dump(call)
        elif method == "ping":
            result = {}
        else:
            if is_notification:
                return None
            return _error(msg_id, types.METHOD_NOT_FOUND, f"Method not found: {method}")

        if is_notification:
            return None
        return {"jsonrpc": "2.0", "id": msg_id, "result": result}

    async def serve(self, read: ReadFn, write: WriteFn) -> int:
        """Pump frames until EOF (exit code 0) or a read error (exit code 1)."""
        buffer = FrameBuffer()
        while True:
            try:
                chunk = await read()
            except Exception as e:
                logger.error(f"[ipc] stdin read failed: {e}")
                return 1
            if not chunk:
                return 0
            for message in buffer.feed(chunk):
                response = await self.handle_message(message)
                if response is not None:
                    await write(encode_frame(response))


# ─────────────────────────────────────────────
# stdio transport
# ─────────────────────────────────────────────

def _stdin_reader(stream: BinaryIO, queue: asyncio.Queue, loop: asyncio.AbstractEventLoop) -> None:
    """Blocking reader thread: forwards chunks, then b"" on EOF or the exception on error."""
    try:
        while True:
            chunk = stream.read1(65536)
            if not chunk:
                break
            loop.call_soon_threadsafe(queue.put_nowait, chunk)
    except Exception as e:
        loop.call_soon_threadsafe(queue.put_nowait, e)
        return
    loop.call_soon_threadsafe(queue.put_nowait, b"")


async def run_stdio(ipc_dir: str, stdin: Optional[BinaryIO] = None, stdout: Optional[BinaryIO] = None) -> int:
    stdin = stdin or sys.stdin.buffer
    stdout = stdout or sys.stdout.buffer
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    threading.Thread(target=_stdin_reader, args=(stdin, queue, loop), daemon=True).start()

    async def read() -> bytes:
        item = await queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def write(frame: bytes) -> None:
        stdout.write(frame)
        stdout.flush()

    server = IpcServer(ipc_dir)
    logger.info(f"[ipc] serving on stdio, mailbox at {server.paths.root}")
    return await server.serve(read, write)
