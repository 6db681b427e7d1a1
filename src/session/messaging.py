import logging
from typing import Optional

from src.errors import build_failure_report, describe_error, to_user_error_message
from src.providers.base import IncomingMessage, MessageProvider, OutgoingMessage, SendResult

logger = logging.getLogger(__name__)


async def send_reply(provider: MessageProvider, message: IncomingMessage, text: str) -> SendResult:
    """Reply in the message's thread."""
    return await provider.reply_message(message, OutgoingMessage(text=text))


def format_failure(
    operation: str,
    directory: str,
    message: IncomingMessage,
    error: BaseException,
    session_id: Optional[str] = None,
) -> str:
    report = build_failure_report(operation, directory, message.thread_id, error, session_id=session_id)
    return f"✗ {to_user_error_message(error) or 'Unknown error'}\n\n{report}"


async def report_failure(provider: MessageProvider, message: IncomingMessage, text: str) -> bool:
    """Send a failure report. Transport errors are logged, never raised."""
    try:
        await send_reply(provider, message, text)
        return True
    except Exception as e:
        logger.error(f"[reply] failed to deliver error report thread={message.thread_id}: {describe_error(e)}")
        return False
