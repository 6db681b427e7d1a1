"""
Mailbox directory layout shared by the agent sandbox and the host.

    <ipc_dir>/context.json          trust context, written by the host
    <ipc_dir>/current_tasks.json    task snapshot, written by the host
    <ipc_dir>/available_groups.json group snapshot, written by the host
    <ipc_dir>/messages/*.json       message intents, written by the agent
    <ipc_dir>/tasks/*.json          task/group intents, written by the agent

Intent files are written under a .tmp name and renamed into place, so a
reader never observes a partial file.
"""
import json
import logging
import os
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class IpcContext:
    chat_jid: str
    group_folder: str
    is_main: bool

    def to_json(self) -> dict[str, Any]:
        return {"chatJid": self.chat_jid, "groupFolder": self.group_folder, "isMain": self.is_main}


EMPTY_CONTEXT = IpcContext(chat_jid="", group_folder="", is_main=False)


@dataclass(frozen=True)
class IpcPaths:
    root: Path

    @classmethod
    def at(cls, ipc_dir: PathLike) -> "IpcPaths":
        return cls(root=Path(ipc_dir))

    @property
    def messages(self) -> Path:
        return self.root / "messages"

    @property
    def tasks(self) -> Path:
        return self.root / "tasks"

    @property
    def context(self) -> Path:
        return self.root / "context.json"

    @property
    def current_tasks(self) -> Path:
        return self.root / "current_tasks.json"

    @property
    def available_groups(self) -> Path:
        return self.root / "available_groups.json"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def read_context(path: PathLike) -> IpcContext:
    """Read the trust context. Anything unreadable means no privileges."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            parsed = json.load(f)
    except (OSError, ValueError):
        return EMPTY_CONTEXT
    if not isinstance(parsed, dict):
        return EMPTY_CONTEXT
    return IpcContext(
        chat_jid=str(parsed.get("chatJid") or ""),
        group_folder=str(parsed.get("groupFolder") or ""),
        is_main=parsed.get("isMain") is True,
    )


def _atomic_write_json(path: Path, data: Any) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


def write_context(path: PathLike, context: IpcContext) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    _atomic_write_json(path, context.to_json())


def intent_filename() -> str:
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{int(time.time() * 1000)}-{suffix}.json"


def write_intent(directory: PathLike, data: dict[str, Any]) -> str:
    """Atomically drop one intent into `directory`. Returns the file name."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    filename = intent_filename()
    _atomic_write_json(directory / filename, data)
    return filename


def write_json_snapshot(path: PathLike, data: Any) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    _atomic_write_json(path, data)


def read_tasks_snapshot(path: PathLike) -> list[dict[str, Any]]:
    path = Path(path)
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        return []
    return [t for t in data if isinstance(t, dict)]


def list_intents(directory: PathLike) -> list[Path]:
    """Completed intent files in name (arrival) order; in-flight .tmp files are skipped."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == ".json")
