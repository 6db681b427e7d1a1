"""
Content-Length framed JSON-RPC messages, as spoken over the agent's stdio.

    Content-Length: <N>\r\n
    \r\n
    <N bytes of UTF-8 JSON>
"""
import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

HEADER_END = b"\r\n\r\n"
_LENGTH_RE = re.compile(rb"Content-Length:\s*(\d+)", re.IGNORECASE)


def encode_frame(message: dict[str, Any]) -> bytes:
    body = json.dumps(message, ensure_ascii=False).encode("utf-8")
    return b"Content-Length: " + str(len(body)).encode("ascii") + HEADER_END + body


class FrameBuffer:
    """Accumulates raw bytes and yields complete JSON-object frames."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def __len__(self) -> int:
        return len(self._buf)

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        self._buf.extend(data)
        messages: list[dict[str, Any]] = []
        while True:
            header_end = self._buf.find(HEADER_END)
            if header_end == -1:
                break
            match = _LENGTH_RE.search(self._buf[:header_end])
            if match is None:
                logger.debug("[ipc] skipping header without Content-Length")
                del self._buf[:header_end + len(HEADER_END)]
                continue

            length = int(match.group(1))
            body_start = header_end + len(HEADER_END)
            if len(self._buf) < body_start + length:
                break
            body = bytes(self._buf[body_start:body_start + length])
            del self._buf[:body_start + length]

            try:
                message = json.loads(body.decode("utf-8"))
            except (UnicodeDecodeError, ValueError):
                logger.debug(f"[ipc] discarding malformed frame ({length} bytes)")
                continue
            if not isinstance(message, dict):
                logger.debug("[ipc] discarding non-object frame")
                continue
            messages.append(message)
        return messages
