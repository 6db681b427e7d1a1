"""
Generation runner: one user prompt, start to finish.

Resolves the working directory and agent session for the thread, streams the
agent's output into the chat, and guarantees the thread's ActiveRequest is
cleared whatever happens.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import aiosqlite

from src.agent.client import AgentSessionClient, GenerationEvent
from src.db import crud
from src.db.database import get_db
from src.errors import AgentSessionError, GenerationCancelled, describe_error
from src.providers.base import IncomingMessage
from src.session.cancellation import CancellationToken, clear_active, register_active
from src.session.chunker import split_markdown_into_chunks
from src.session.interactions import open_permission, open_question
from src.session.messaging import format_failure, report_failure, send_reply
from src.session.options import SessionHandlerOptions
from src.session.stream_sink import StreamSink

logger = logging.getLogger(__name__)

SESSION_TITLE_LIMIT = 80


@dataclass
class GenerationOutcome:
    text: str = ""
    model: Optional[str] = None


def session_title(prompt: str) -> str:
    prompt = prompt.strip()
    if len(prompt) > SESSION_TITLE_LIMIT:
        prompt = f"{prompt[:SESSION_TITLE_LIMIT - 3]}..."
    return prompt or "Chat thread"


def build_footer(elapsed: float, session_id: str, model: Optional[str]) -> str:
    footer = f"{max(0.0, elapsed):.1f}s · {session_id}"
    if model:
        footer += f" · {model}"
    return footer


async def resolve_directory(db: aiosqlite.Connection, channel_id: str, project_directory: str) -> str:
    channel = await crud.channel_get(db, channel_id)
    if channel and channel.directory:
        return channel.directory
    await crud.channel_set(db, channel_id, directory=project_directory)
    return project_directory


async def resolve_session(
    db: aiosqlite.Connection,
    client: AgentSessionClient,
    thread_id: str,
    directory: str,
    prompt: str,
) -> str:
    existing = await crud.thread_get_session(db, thread_id)
    if existing:
        try:
            if await client.get_session(existing, directory):
                logger.info(f"[session] reusing {existing} for thread={thread_id}")
                return existing
            logger.warning(f"[session] {existing} not found, creating new")
        except Exception as e:
            logger.warning(f"[session] lookup of {existing} failed, creating new; {describe_error(e)}")

    session_id = await client.create_session(session_title(prompt), directory)
    await crud.thread_set_session(db, thread_id, session_id)
    logger.info(f"[session] created {session_id} for thread={thread_id}")
    return session_id


async def resolve_overrides(
    db: aiosqlite.Connection, thread_id: str, channel_id: str
) -> tuple[Optional[str], Optional[str]]:
    """Model and agent: thread override, then channel default, else the agent's own default."""
    binding = await crud.thread_get(db, thread_id)
    channel = await crud.channel_get(db, channel_id)
    model = (binding.model if binding else None) or (channel.model if channel else None)
    agent = (binding.agent if binding else None) or (channel.agent if channel else None)
    return model, agent


async def _consume_events(
    events: AsyncIterator[GenerationEvent],
    message: IncomingMessage,
    sink: Optional[StreamSink],
    session_id: str,
    directory: str,
    options: SessionHandlerOptions,
) -> GenerationOutcome:
    outcome = GenerationOutcome()
    try:
        async for event in events:
            if event.kind == "text":
                outcome.text = event.text
                if sink is not None:
                    sink.render(event.text)
            elif event.kind == "question":
                await open_question(options, message, session_id, directory, event.data)
            elif event.kind == "permission":
                await open_permission(options, message, session_id, directory, event.data)
            elif event.kind == "error":
                status = event.data.get("status")
                raise AgentSessionError(
                    status if isinstance(status, int) else 500,
                    str(event.data.get("message") or event.text or ""),
                )
            elif event.kind == "done":
                if event.text:
                    outcome.text = event.text
                model = event.data.get("model")
                outcome.model = model if isinstance(model, str) and model else None
                break
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()
    return outcome


async def _deliver_plain(options: SessionHandlerOptions, message: IncomingMessage, text: str, footer: str) -> None:
    body = text.strip()
    combined = f"{body}\n\n{footer}" if body else footer
    for chunk in split_markdown_into_chunks(combined, options.max_message_chars):
        await send_reply(options.provider, message, chunk)


async def run_generation(
    message: IncomingMessage,
    token: CancellationToken,
    options: SessionHandlerOptions,
) -> None:
    provider, client, registry = options.provider, options.client, options.registry
    thread_id = message.thread_id
    directory = options.project_directory
    session_id: Optional[str] = None
    sink: Optional[StreamSink] = None
    started = time.monotonic()

    try:
        db = await get_db()
        directory = await resolve_directory(db, message.channel_id, options.project_directory)
        session_id = await token.guard(resolve_session(db, client, thread_id, directory, message.text))
        register_active(thread_id, session_id, token, directory=directory, registry=registry)
        model, agent = await resolve_overrides(db, thread_id, message.channel_id)
        if agent:
            logger.info(f"[session] thread={thread_id} using agent {agent}")

        if options.streaming_enabled and provider.supports_update:
            sink = StreamSink(provider, message, options.throttle_ms, options.max_message_chars, registry)
            try:
                await sink.start()
            except Exception as e:
                logger.warning(f"[stream] init failed session={session_id} directory={directory}; {describe_error(e)}")
                sink.close()
                sink = None

        events = client.stream_prompt(session_id, message.text, directory, model=model, agent=agent)
        outcome = await token.guard(_consume_events(events, message, sink, session_id, directory, options))
        token.raise_if_cancelled()

        footer = build_footer(time.monotonic() - started, session_id, outcome.model or model)
        if sink is not None:
            await sink.finalize(outcome.text, footer)
        else:
            await _deliver_plain(options, message, outcome.text, footer)
    except GenerationCancelled as e:
        logger.info(f"[session] generation cancelled thread={thread_id} session={session_id or '-'} reason={e.reason}")
    except Exception as e:
        logger.error(f"[session] prompt failed thread={thread_id} session={session_id or '-'} directory={directory}; {describe_error(e)}")
        text = format_failure("agent.prompt", directory, message, e, session_id=session_id)
        delivered = False
        if sink is not None:
            delivered = await sink.fail(text)
        if not delivered:
            await report_failure(provider, message, text)
    finally:
        clear_active(thread_id, token, registry)
        if sink is not None:
            sink.close()
