from dataclasses import dataclass, field
from typing import Optional

from src.agent.client import AgentSessionClient
from src.config import (
    BOT_USER_ID,
    MAX_MESSAGE_CHARS,
    MENTION_REQUIRED_DEFAULT,
    PROJECT_DIRECTORY,
    STREAM_THROTTLE_MS,
    STREAMING_ENABLED,
)
from src.providers.base import MessageProvider
from src.session.state import ThreadStateRegistry, get_registry


@dataclass
class SessionHandlerOptions:
    provider: MessageProvider
    client: AgentSessionClient
    project_directory: str = PROJECT_DIRECTORY
    streaming_enabled: bool = STREAMING_ENABLED
    throttle_ms: int = STREAM_THROTTLE_MS
    max_message_chars: int = MAX_MESSAGE_CHARS
    bot_user_id: Optional[str] = BOT_USER_ID
    mention_required_default: bool = MENTION_REQUIRED_DEFAULT
    registry: ThreadStateRegistry = field(default_factory=get_registry)
