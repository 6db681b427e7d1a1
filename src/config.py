"""
ThreadRelay Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "relay.db"
_user_default_db = Path.home() / ".threadrelay" / "relay.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        pass


def _flag(name: str, key: str, default: str) -> bool:
    return str(os.getenv(name, config_data.get(key, default))).lower() in {"1", "true", "yes", "on"}


if os.getenv("THREADRELAY_DB"):
    DB_PATH = os.getenv("THREADRELAY_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only for security
HOST = os.getenv("THREADRELAY_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("THREADRELAY_PORT", config_data.get("PORT", "39780")))
RELAY_VERSION = "0.1.0"

# Default working directory handed to the agent when a channel has no override
PROJECT_DIRECTORY = os.getenv("THREADRELAY_PROJECT_DIR", config_data.get("PROJECT_DIRECTORY", os.getcwd()))

# Host-side data root; one IPC mailbox directory per registered group lives under HOST_IPC_ROOT
DATA_DIR = Path(os.getenv("THREADRELAY_DATA_DIR", config_data.get("DATA_DIR", str(BASE_DIR / "data"))))
HOST_IPC_ROOT = DATA_DIR / "ipc"
# The group whose agent may register groups and see every task
MAIN_GROUP_FOLDER = os.getenv("THREADRELAY_MAIN_GROUP", config_data.get("MAIN_GROUP_FOLDER", "main"))
# Chat bound to the main group at startup; empty leaves registration to the operator
MAIN_CHAT_JID = os.getenv("THREADRELAY_MAIN_CHAT", config_data.get("MAIN_CHAT_JID", ""))
# How often the host mailbox watcher polls (seconds)
IPC_POLL_INTERVAL = float(os.getenv("THREADRELAY_IPC_POLL_INTERVAL", config_data.get("IPC_POLL_INTERVAL", "1.0")))

# Agent-side mailbox directory, as mounted inside the sandbox
IPC_DIR = os.getenv("THREADRELAY_IPC_DIR", "/workspace/ipc")

# External agent session server
AGENT_BASE_URL = os.getenv("THREADRELAY_AGENT_URL", config_data.get("AGENT_BASE_URL", "http://127.0.0.1:4096"))
# Seconds; a streamed generation may legitimately run for a long time
AGENT_REQUEST_TIMEOUT = float(os.getenv("THREADRELAY_AGENT_TIMEOUT", config_data.get("AGENT_REQUEST_TIMEOUT", "600")))

# Messaging platform bridge: outbound messages are POSTed here
WEBHOOK_OUTBOUND_URL = os.getenv("THREADRELAY_WEBHOOK_URL", config_data.get("WEBHOOK_OUTBOUND_URL", "http://127.0.0.1:39781"))
# When set, messages outside a thread must mention this user id
BOT_USER_ID = os.getenv("THREADRELAY_BOT_USER_ID", config_data.get("BOT_USER_ID", "")) or None
MENTION_REQUIRED_DEFAULT = _flag("THREADRELAY_MENTION_REQUIRED", "MENTION_REQUIRED_DEFAULT", "true")

# Streaming replies
STREAMING_ENABLED = _flag("THREADRELAY_STREAMING", "STREAMING_ENABLED", "true")
STREAM_THROTTLE_MS = int(os.getenv("THREADRELAY_STREAM_THROTTLE_MS", config_data.get("STREAM_THROTTLE_MS", "700")))
MAX_MESSAGE_CHARS = int(os.getenv("THREADRELAY_MAX_MESSAGE_CHARS", config_data.get("MAX_MESSAGE_CHARS", "9500")))

# /queue shows at most this many waiting messages
QUEUE_PREVIEW_LIMIT = 10
ABORTED_STATUS_TEXT = "⏹ Aborted"

