"""
Chat commands.

A message starting with "/" is parsed into a ParsedCommand and looked up in
COMMANDS_DISPATCH. Handlers return True when they consumed the message;
unknown commands fall through to the agent as ordinary prompts.
"""
import logging
import os
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from src.config import QUEUE_PREVIEW_LIMIT
from src.db import crud
from src.db.database import get_db
from src.errors import to_user_error_message
from src.providers.base import IncomingMessage
from src.session.cancellation import abort
from src.session.interactions import resolve_permission
from src.session.messaging import send_reply
from src.session.options import SessionHandlerOptions
from src.session.queue import queue_snapshot

logger = logging.getLogger(__name__)

SESSION_LIST_LIMIT = 20


@dataclass
class ParsedCommand:
    name: str
    args: list[str] = field(default_factory=list)


CommandHandler = Callable[[IncomingMessage, ParsedCommand, SessionHandlerOptions], Awaitable[bool]]


def parse_command(text: str) -> Optional[ParsedCommand]:
    trimmed = (text or "").strip()
    if not trimmed.startswith("/"):
        return None
    parts = trimmed[1:].split()
    if not parts:
        return None
    return ParsedCommand(name=parts[0].lower(), args=parts[1:])


def parse_bool_arg(value: Optional[str]) -> Optional[bool]:
    if not value:
        return None
    normalized = value.strip().lower()
    if normalized in ("true", "yes", "y", "on", "1"):
        return True
    if normalized in ("false", "no", "n", "off", "0"):
        return False
    return None


def format_age(seconds: float) -> str:
    sec = int(max(0, seconds))
    if sec < 60:
        return f"{sec}s"
    minutes = sec // 60
    if minutes < 60:
        return f"{minutes}m{sec % 60}s"
    return f"{minutes // 60}h{minutes % 60}m"


def preview_text(text: str, max_len: int = 80) -> str:
    flat = " ".join(text.split())
    if len(flat) <= max_len:
        return flat
    return f"{flat[:max(0, max_len - 3)]}..."


def _is_model_ref(value: str) -> bool:
    provider_id, _, model_id = value.partition("/")
    return bool(provider_id and model_id)


# ─────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────

async def _cmd_abort(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    result = await abort(message.thread_id, client=options.client, provider=options.provider, registry=options.registry)
    if not result.aborted:
        await send_reply(options.provider, message, "No active request in this thread.")
        return True
    await send_reply(options.provider, message, "⏹ Aborted the active request.")
    return True


async def _cmd_queue(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    snapshot = queue_snapshot(message.thread_id, limit=QUEUE_PREVIEW_LIMIT, registry=options.registry)
    now = time.time()
    if snapshot.active is None:
        active = "none"
    else:
        active = f"running (session={snapshot.active.session_id or 'pending'})"
    lines = ["Queue", f"- active request: {active}", f"- waiting: {snapshot.total}"]
    for n, item in enumerate(snapshot.items, start=1):
        lines.append(
            f"- #{n} age={format_age(now - item.queued_at)} "
            f"user={item.message.user_id or '-'} text={preview_text(item.message.text, 100) or '-'}"
        )
    hidden = snapshot.total - len(snapshot.items)
    if hidden > 0:
        lines.append(f"- ... {hidden} more not shown")
    await send_reply(options.provider, message, "\n".join(lines))
    return True


async def _cmd_new(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    if options.registry.get_active(message.thread_id) is not None:
        await send_reply(options.provider, message, "A request is still running. Use /abort first.")
        return True
    db = await get_db()
    await crud.thread_clear_session(db, message.thread_id)
    await send_reply(options.provider, message, "✓ The next message will start a new session.")
    return True


async def _cmd_mention_required(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    db = await get_db()
    value = parse_bool_arg(command.args[0] if command.args else None)
    if value is None:
        current = await crud.thread_get_mention_required(db, message.thread_id)
        if current is None:
            current = options.mention_required_default
        await send_reply(
            options.provider,
            message,
            f"Mention required in this thread: {'yes' if current else 'no'}. Usage: /mention-required on|off",
        )
        return True
    if value and not options.bot_user_id:
        await send_reply(options.provider, message, "Set BOT_USER_ID first; without it mentions cannot be detected.")
        return True
    await crud.thread_set_mention_required(db, message.thread_id, value)
    await send_reply(options.provider, message, f"✓ Mention required in this thread: {'yes' if value else 'no'}")
    return True


async def _resolve_permission(message: IncomingMessage, options: SessionHandlerOptions, approve: bool) -> bool:
    result = await resolve_permission(options, message.thread_id, approve)
    if result is None:
        await send_reply(options.provider, message, "No pending permission request in this thread.")
        return True
    verdict = "✓ Approved (once)" if approve else "✗ Denied"
    text = f"{verdict}: {result.pending.permission or 'permission'}"
    if result.failed:
        text += f"\n{len(result.failed)} of {len(result.pending.request_ids)} replies failed to reach the agent."
    await send_reply(options.provider, message, text)
    return True


async def _cmd_approve(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    return await _resolve_permission(message, options, approve=True)


async def _cmd_deny(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    return await _resolve_permission(message, options, approve=False)


async def _cmd_model(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    db = await get_db()
    if not command.args:
        binding = await crud.thread_get(db, message.thread_id)
        current = binding.model if binding and binding.model else "default"
        await send_reply(options.provider, message, f"Model: {current}. Usage: /model <provider/model|clear>")
        return True
    value = command.args[0]
    if value.lower() == "clear":
        await crud.thread_set_model(db, message.thread_id, None)
        await send_reply(options.provider, message, "✓ Model override cleared.")
        return True
    if not _is_model_ref(value):
        await send_reply(options.provider, message, "Model must look like provider/model.")
        return True
    await crud.thread_set_model(db, message.thread_id, value)
    await send_reply(options.provider, message, f"✓ Model set to {value}")
    return True


async def _cmd_agent(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    db = await get_db()
    if not command.args:
        binding = await crud.thread_get(db, message.thread_id)
        current = binding.agent if binding and binding.agent else "default"
        await send_reply(options.provider, message, f"Agent: {current}. Usage: /agent <name|clear>")
        return True
    value = command.args[0]
    await crud.thread_set_agent(db, message.thread_id, None if value.lower() == "clear" else value)
    await send_reply(options.provider, message, f"✓ Agent {'cleared' if value.lower() == 'clear' else 'set to ' + value}")
    return True


async def _cmd_project(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    db = await get_db()
    if not command.args:
        channel = await crud.channel_get(db, message.channel_id)
        current = channel.directory if channel and channel.directory else options.project_directory
        await send_reply(options.provider, message, f"Project directory: {current}")
        return True
    path = os.path.abspath(os.path.expanduser(" ".join(command.args)))
    if not os.path.isdir(path):
        await send_reply(options.provider, message, f"Not a directory: {path}")
        return True
    await crud.channel_set(db, message.channel_id, directory=path)
    await send_reply(options.provider, message, f"✓ Project directory for this channel: {path}")
    return True


async def _cmd_resume(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    db = await get_db()
    if not command.args:
        current = await crud.thread_get_session(db, message.thread_id)
        text = f"Session: {current}" if current else "No session bound to this thread."
        await send_reply(options.provider, message, f"{text} Usage: /resume <session>")
        return True
    if options.registry.get_active(message.thread_id) is not None:
        await send_reply(options.provider, message, "A request is still running. Use /abort first.")
        return True
    session_id = command.args[0]
    await crud.thread_set_session(db, message.thread_id, session_id)
    await send_reply(options.provider, message, f"✓ Thread bound to session {session_id}")
    return True


async def _cmd_list_sessions(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    db = await get_db()
    bindings = await crud.thread_list_sessions(db, limit=SESSION_LIST_LIMIT)
    if not bindings:
        await send_reply(options.provider, message, "No sessions found.")
        return True
    lines = ["Sessions"] + [f"- {b.thread_id}: {b.session_id}" for b in bindings]
    await send_reply(options.provider, message, "\n".join(lines))
    return True


async def _cmd_context(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    db = await get_db()
    session_id = command.args[0] if command.args else await crud.thread_get_session(db, message.thread_id)
    if not session_id:
        await send_reply(options.provider, message, "No session bound to this thread.")
        return True
    channel = await crud.channel_get(db, message.channel_id)
    directory = channel.directory if channel and channel.directory else options.project_directory
    try:
        history = await options.client.session_messages(session_id, directory)
    except Exception as e:
        logger.warning(f"[command] context lookup failed session={session_id}: {e}")
        await send_reply(options.provider, message, f"✗ {to_user_error_message(e)}")
        return True

    roles = Counter()
    for item in history:
        info = item.get("info") if isinstance(item, dict) else None
        if isinstance(info, dict):
            roles[info.get("role")] += 1
    binding = await crud.thread_get(db, message.thread_id)
    model = (binding.model if binding else None) or (channel.model if channel else None) or "default"
    lines = [
        "Context",
        f"- session: {session_id}",
        f"- directory: {directory}",
        f"- model: {model}",
        f"- messages: {len(history)} (user {roles['user']}, assistant {roles['assistant']})",
    ]
    await send_reply(options.provider, message, "\n".join(lines))
    return True


async def _cmd_channel_model(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    db = await get_db()
    if not command.args:
        channel = await crud.channel_get(db, message.channel_id)
        current = channel.model if channel and channel.model else "default"
        await send_reply(options.provider, message, f"Channel model: {current}. Usage: /channel-model <provider/model|clear>")
        return True
    value = command.args[0]
    if value.lower() == "clear":
        await crud.channel_set_model(db, message.channel_id, None)
        await send_reply(options.provider, message, "✓ Channel model cleared.")
        return True
    if not _is_model_ref(value):
        await send_reply(options.provider, message, "Model must look like provider/model.")
        return True
    await crud.channel_set_model(db, message.channel_id, value)
    await send_reply(options.provider, message, f"✓ Channel model set to {value}")
    return True


async def _cmd_channel_agent(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    db = await get_db()
    if not command.args:
        channel = await crud.channel_get(db, message.channel_id)
        current = channel.agent if channel and channel.agent else "default"
        await send_reply(options.provider, message, f"Channel agent: {current}. Usage: /channel-agent <name|clear>")
        return True
    value = command.args[0]
    cleared = value.lower() == "clear"
    await crud.channel_set_agent(db, message.channel_id, None if cleared else value)
    await send_reply(options.provider, message, f"✓ Channel agent {'cleared' if cleared else 'set to ' + value}")
    return True


HELP_TEXT = "\n".join([
    "**Commands**",
    "- `/abort` stop the running request",
    "- `/queue` show the active request and waiting messages",
    "- `/new` start a new agent session on the next message",
    "- `/resume <session>` bind this thread to an existing session",
    "- `/list-sessions` list threads and their sessions",
    "- `/context [session]` show the session's directory, model and message counts",
    "- `/mention-required on|off` require @mentions in this thread",
    "- `/approve` / `/deny` answer a pending permission request",
    "- `/model <provider/model|clear>` set the thread's model",
    "- `/agent <name|clear>` set the thread's agent",
    "- `/channel-model <provider/model|clear>` set the channel's default model",
    "- `/channel-agent <name|clear>` set the channel's default agent",
    "- `/project [path]` (alias `/dir`) show or set the channel's project directory",
    "- `/help` show this help",
])


async def _cmd_help(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    await send_reply(options.provider, message, HELP_TEXT)
    return True


COMMANDS_DISPATCH: dict[str, CommandHandler] = {
    "abort": _cmd_abort,
    "queue": _cmd_queue,
    "new": _cmd_new,
    "new-session": _cmd_new,
    "resume": _cmd_resume,
    "list-sessions": _cmd_list_sessions,
    "context": _cmd_context,
    "mention-required": _cmd_mention_required,
    "approve": _cmd_approve,
    "deny": _cmd_deny,
    "model": _cmd_model,
    "agent": _cmd_agent,
    "channel-model": _cmd_channel_model,
    "channel-agent": _cmd_channel_agent,
    "project": _cmd_project,
    "dir": _cmd_project,
    "help": _cmd_help,
}


async def handle_command(message: IncomingMessage, command: ParsedCommand, options: SessionHandlerOptions) -> bool:
    handler = COMMANDS_DISPATCH.get(command.name)
    if handler is None:
        return False
    logger.info(f"[command] /{command.name} thread={message.thread_id} user={message.user_id}")
    return await handler(message, command, options)
