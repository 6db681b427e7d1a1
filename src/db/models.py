"""
Data models (dataclasses) for ThreadRelay persistence.
These are plain Python objects shared by the DB, session and IPC layers.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class ThreadBinding:
    thread_id: str
    session_id: Optional[str]
    mention_required: Optional[bool]   # None = use the configured default
    model: Optional[str]               # "provider/model" override
    agent: Optional[str]
    updated_at: datetime


@dataclass
class ChannelSettings:
    channel_id: str
    directory: Optional[str]
    model: Optional[str]
    agent: Optional[str]


@dataclass
class ScheduledTask:
    id: str
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: str    # cron | interval | once
    schedule_value: str
    context_mode: str     # group | isolated
    next_run: Optional[str]
    status: str           # active | paused
    created_at: datetime
    created_by: Optional[str]


@dataclass
class RegisteredGroup:
    chat_jid: str
    name: str
    folder: str
    trigger: str
    added_at: datetime
