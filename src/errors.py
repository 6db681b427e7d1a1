"""
Error types and user-facing failure diagnostics for ThreadRelay.
"""
import json
from typing import Any, Optional

_USER_MESSAGE_LIMIT = 800
_DETAIL_LIMIT = 300


class AgentSessionError(Exception):
    """Raised when the external agent session rejects or fails a request."""

    def __init__(self, status: int, details: str = "") -> None:
        self.status = status
        self.details = details
        super().__init__(f"Agent session error {status}")


class GenerationCancelled(Exception):
    """Raised inside a generation once its cancellation token has been signalled."""

    def __init__(self, reason: str = "abort") -> None:
        self.reason = reason
        super().__init__(f"Generation cancelled: {reason}")


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit - 3]}..."


def describe_cause(cause: Any) -> str:
    if cause is None:
        return ""
    if isinstance(cause, BaseException):
        return f"{type(cause).__name__}: {cause}"
    return str(cause)


def describe_error(error: BaseException) -> str:
    cause = describe_cause(error.__cause__)
    summary = f"{type(error).__name__}: {error}"
    return f"{summary}; cause={cause}" if cause else summary


def compact_error_details(details: str) -> str:
    """Reduce a JSON error body to 'code type message', or clip raw text."""
    trimmed = (details or "").strip()
    if not trimmed:
        return ""
    if not trimmed.startswith(("{", "[")):
        return _clip(trimmed, _DETAIL_LIMIT)
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        return _clip(trimmed, _DETAIL_LIMIT)
    if not isinstance(parsed, dict):
        return _clip(trimmed, _DETAIL_LIMIT)
    parts = [str(parsed[k]) for k in ("code", "type", "message") if isinstance(parsed.get(k), str) and parsed[k]]
    return _clip(" ".join(parts) if parts else trimmed, _DETAIL_LIMIT)


def to_user_error_message(error: BaseException) -> str:
    if isinstance(error, AgentSessionError):
        compact = compact_error_details(error.details)
        msg = f"Agent API {error.status}: {compact}" if compact else f"Agent API {error.status}"
        return _clip(msg, _USER_MESSAGE_LIMIT)
    msg = str(error) or type(error).__name__
    cause = describe_cause(error.__cause__)
    full = f"{msg} (cause: {cause})" if cause else msg
    return _clip(full, _USER_MESSAGE_LIMIT)


def infer_network_hint(cause: Any) -> str:
    upper = describe_cause(cause).upper()
    if "CONNECTERROR" in upper or "ECONNREFUSED" in upper or "CONNECTION REFUSED" in upper:
        return "connection refused: the agent server is not listening"
    if "NAME OR SERVICE" in upper or "ENOTFOUND" in upper:
        return "DNS lookup failed"
    if "TIMEOUT" in upper:
        return "request timed out: network, proxy or firewall"
    if "CERT" in upper or "SSL" in upper or "TLS" in upper:
        return "TLS certificate verification failed"
    return ""


def build_failure_report(
    operation: str,
    directory: str,
    thread_id: str,
    error: BaseException,
    session_id: Optional[str] = None,
) -> str:
    lines = [
        "Failure diagnostics",
        f"- operation: {operation}",
        f"- directory: {directory}",
        f"- thread: {thread_id}",
    ]
    if session_id:
        lines.append(f"- session: {session_id}")
    if isinstance(error, AgentSessionError):
        compact = compact_error_details(error.details)
        lines.append(f"- agent API: {error.status}{' ' + compact if compact else ''}")
    else:
        lines.append(f"- error: {describe_error(error)}")
    cause = describe_cause(error.__cause__)
    if cause:
        lines.append(f"- cause: {cause}")
    hint = infer_network_hint(error.__cause__ or error)
    if hint:
        lines.append(f"- likely reason: {hint}")
    return "\n".join(lines)
