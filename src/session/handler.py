"""
Incoming message handler.

Entry point for every chat message: answers pending questions, applies the
mention gate, runs commands, and otherwise admits the message through the
per-thread Request Queue.
"""
import logging

from src.db import crud
from src.db.database import get_db
from src.errors import describe_error
from src.providers.base import IncomingMessage
from src.session.cancellation import CancellationToken
from src.session.commands import handle_command, parse_command
from src.session.generation import run_generation
from src.session.interactions import answer_question
from src.session.messaging import format_failure, report_failure, send_reply
from src.session.options import SessionHandlerOptions
from src.session.queue import Accepted, drain, release, submit

logger = logging.getLogger(__name__)


def is_bot_mentioned(message: IncomingMessage, bot_user_id: str | None) -> bool:
    if not bot_user_id:
        return False
    return bot_user_id in (message.mentions or [])


def is_thread_reply(message: IncomingMessage) -> bool:
    return bool(message.thread_id) and bool(message.message_id) and message.thread_id != message.message_id


async def passes_mention_gate(message: IncomingMessage, options: SessionHandlerOptions) -> bool:
    if not options.bot_user_id:
        return True
    db = await get_db()
    required = await crud.thread_get_mention_required(db, message.thread_id)
    if required is None:
        required = options.mention_required_default
    if not required:
        return True
    return is_thread_reply(message) or is_bot_mentioned(message, options.bot_user_id)


async def handle_incoming_message(message: IncomingMessage, options: SessionHandlerOptions) -> None:
    registry = options.registry
    command = parse_command(message.text)

    if command is None and message.thread_id in registry.pending_questions:
        if await answer_question(options, message):
            return

    # must stay reachable when the gate would drop the message
    if command is not None and command.name == "mention-required":
        if await handle_command(message, command, options):
            return

    if not await passes_mention_gate(message, options):
        logger.debug(f"[handler] ignoring unmentioned message thread={message.thread_id}")
        return

    if command is not None and await handle_command(message, command, options):
        return

    submission = submit(message.thread_id, message, registry)
    if submission.accepted is Accepted.QUEUED:
        await send_reply(options.provider, message, f"⏳ Queued ({submission.position} pending)")
        return

    await _dispatch(message, submission.token, options)


async def _dispatch(message: IncomingMessage, token: CancellationToken, options: SessionHandlerOptions) -> None:
    thread_id = message.thread_id

    async def run_queued(queued: IncomingMessage, queued_token: CancellationToken) -> None:
        await run_generation(queued, queued_token, options)

    async def report_queued(queued: IncomingMessage, error: Exception) -> None:
        logger.error(f"[handler] queued message failed thread={thread_id}; {describe_error(error)}")
        await report_failure(
            options.provider, queued, format_failure("queue.drain", options.project_directory, queued, error)
        )

    try:
        await run_generation(message, token, options)
    except Exception as e:
        logger.error(f"[handler] unhandled error thread={thread_id}; {describe_error(e)}", exc_info=True)
        await report_failure(
            options.provider, message, format_failure("handler.unhandled", options.project_directory, message, e)
        )
    finally:
        release(thread_id, token, options.registry)
        processed = await drain(thread_id, run_queued, on_error=report_queued, registry=options.registry)
        if processed:
            logger.info(f"[handler] drained {processed} queued message(s) thread={thread_id}")
