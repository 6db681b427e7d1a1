"""
Agent-initiated prompts: multiple-choice questions and tool permission requests.

Both are answered from the chat thread. Questions are answered by replying
with an option number or label; permissions through /approve and /deny.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from src.errors import to_user_error_message
from src.providers.base import IncomingMessage
from src.session.messaging import send_reply
from src.session.options import SessionHandlerOptions
from src.session.state import PendingPermission, PendingQuestion, QuestionOption, QuestionSpec

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# Questions
# ─────────────────────────────────────────────

def parse_questions(raw: Any) -> list[QuestionSpec]:
    """Keep entries that have a question and at least one labelled option."""
    if not isinstance(raw, list):
        return []
    specs: list[QuestionSpec] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        question = entry.get("question") if isinstance(entry.get("question"), str) else ""
        header = entry.get("header") if isinstance(entry.get("header"), str) else ""
        opts: list[QuestionOption] = []
        for opt in entry.get("options") or []:
            if not isinstance(opt, dict):
                continue
            label = opt.get("label")
            if not isinstance(label, str) or not label:
                continue
            desc = opt.get("description")
            opts.append(QuestionOption(label=label, description=desc if isinstance(desc, str) and desc else None))
        if not question or not opts:
            continue
        specs.append(QuestionSpec(
            question=question,
            header=header or "Please choose",
            options=opts,
            multiple=bool(entry.get("multiple")),
        ))
    return specs


def format_question(pending: PendingQuestion) -> str:
    idx = pending.current_index
    spec = pending.questions[idx]
    lines = [f"❓ {spec.header} ({idx + 1}/{len(pending.questions)})", spec.question, ""]
    for n, opt in enumerate(spec.options, start=1):
        lines.append(f"{n}. {opt.label}" + (f" - {opt.description}" if opt.description else ""))
    lines.append("")
    if spec.multiple:
        lines.append("Reply with option numbers or labels, comma-separated.")
    else:
        lines.append("Reply with an option number or label.")
    return "\n".join(lines)


def match_answer(spec: QuestionSpec, text: str) -> list[str]:
    """Map a reply onto option labels. Any unmatched token rejects the whole answer."""
    tokens = [t.strip() for t in text.split(",")] if spec.multiple else [text.strip()]
    tokens = [t for t in tokens if t]
    if not tokens:
        return []
    labels: list[str] = []
    for token in tokens:
        label = None
        if token.isdigit():
            n = int(token)
            if 1 <= n <= len(spec.options):
                label = spec.options[n - 1].label
        else:
            lowered = token.lower()
            for opt in spec.options:
                if opt.label.lower() == lowered:
                    label = opt.label
                    break
        if label is None:
            return []
        if label not in labels:
            labels.append(label)
    return labels


async def open_question(
    options: SessionHandlerOptions,
    message: IncomingMessage,
    session_id: str,
    directory: str,
    payload: dict[str, Any],
) -> bool:
    request_id = payload.get("id")
    specs = parse_questions(payload.get("questions"))
    if not isinstance(request_id, str) or not request_id or not specs:
        logger.debug(f"[question] ignoring malformed question payload thread={message.thread_id}")
        return False
    pending = PendingQuestion(
        request_id=request_id,
        session_id=session_id,
        directory=directory,
        questions=specs,
    )
    options.registry.pending_questions[message.thread_id] = pending
    logger.info(f"[question] thread={message.thread_id} request={request_id} questions={len(specs)}")
    await send_reply(options.provider, message, format_question(pending))
    return True


async def answer_question(options: SessionHandlerOptions, message: IncomingMessage) -> bool:
    """Consume `message` as an answer. Returns False when no question is pending."""
    registry = options.registry
    pending = registry.pending_questions.get(message.thread_id)
    if pending is None:
        return False

    spec = pending.questions[pending.current_index]
    labels = match_answer(spec, message.text)
    if not labels:
        await send_reply(options.provider, message, f"Could not match that answer.\n\n{format_question(pending)}")
        return True

    pending.answers[pending.current_index] = labels
    pending.answered_indices.add(pending.current_index)
    remaining = [i for i in range(len(pending.questions)) if i not in pending.answered_indices]
    if remaining:
        pending.current_index = remaining[0]
        await send_reply(options.provider, message, format_question(pending))
        return True

    del registry.pending_questions[message.thread_id]
    answers = [pending.answers[i] for i in range(len(pending.questions))]
    try:
        await options.client.reply_question(pending.request_id, answers, pending.directory)
    except Exception as e:
        logger.error(f"[question] reply failed request={pending.request_id}: {e}")
        await send_reply(options.provider, message, f"✗ Failed to send answer: {to_user_error_message(e)}")
        return True
    await send_reply(options.provider, message, "✓ Answer sent.")
    return True


# ─────────────────────────────────────────────
# Permissions
# ─────────────────────────────────────────────

@dataclass
class PermissionResolution:
    pending: PendingPermission
    reply: str
    failed: list[str] = field(default_factory=list)


def permission_key(session_id: str, permission: str, patterns: list[str]) -> str:
    return f"{session_id}:{permission}:{','.join(patterns)}"


async def open_permission(
    options: SessionHandlerOptions,
    message: IncomingMessage,
    session_id: str,
    directory: str,
    payload: dict[str, Any],
) -> bool:
    """Prompt for a permission. Returns False when merged into an open prompt."""
    request_id = payload.get("id")
    if not isinstance(request_id, str) or not request_id:
        return False
    permission = str(payload.get("permission") or "")
    patterns = [str(p) for p in payload.get("patterns") or []]
    key = permission_key(session_id, permission, patterns)

    registry = options.registry
    existing = registry.pending_permissions.get(key)
    if existing is not None:
        if request_id not in existing.request_ids:
            existing.request_ids.append(request_id)
        logger.debug(f"[permission] merged request={request_id} into {key}")
        return False

    registry.pending_permissions[key] = PendingPermission(
        request_ids=[request_id],
        directory=directory,
        thread_id=message.thread_id,
        message=message,
        dedupe_key=key,
        permission=permission,
        patterns=patterns,
    )
    lines = [f"🔐 Permission requested: {permission or 'unknown'}"]
    lines.extend(f"- {p}" for p in patterns)
    lines.append("Reply /approve to allow once, or /deny to reject.")
    await send_reply(options.provider, message, "\n".join(lines))
    return True


async def resolve_permission(
    options: SessionHandlerOptions, thread_id: str, approve: bool
) -> Optional[PermissionResolution]:
    registry = options.registry
    pending = registry.permission_for_thread(thread_id)
    if pending is None:
        return None
    del registry.pending_permissions[pending.dedupe_key]
    result = PermissionResolution(pending=pending, reply="once" if approve else "reject")
    for request_id in pending.request_ids:
        try:
            await options.client.reply_permission(request_id, result.reply, pending.directory)
        except Exception as e:
            logger.error(f"[permission] reply failed request={request_id}: {e}")
            result.failed.append(request_id)
    return result
