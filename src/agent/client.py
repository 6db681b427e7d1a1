"""
Agent session client.

AgentSessionClient is the capability set the session layer consumes.
HttpAgentClient talks to an agent server over HTTP; generations are streamed
as newline-delimited JSON events from POST /session/{id}/prompt:

    {"type": "text", "text": "<cumulative text>"}
    {"type": "question", "id": "...", "questions": [...]}
    {"type": "permission", "id": "...", "permission": "...", "patterns": [...]}
    {"type": "error", "status": 500, "message": "..."}
    {"type": "done", "text": "<final text>", "model": "provider/model"}
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx

from src.errors import AgentSessionError

logger = logging.getLogger(__name__)

EVENT_TYPES = {"text", "question", "permission", "error", "done"}


@dataclass
class GenerationEvent:
    kind: str
    text: str = ""
    data: dict[str, Any] = field(default_factory=dict)


def parse_event(raw: dict[str, Any]) -> Optional[GenerationEvent]:
    kind = raw.get("type")
    if kind not in EVENT_TYPES:
        return None
    text = raw.get("text") if isinstance(raw.get("text"), str) else ""
    return GenerationEvent(kind=kind, text=text, data=raw)


class AgentSessionClient:
    """Interface for the external agent session service."""

    async def get_session(self, session_id: str, directory: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    async def create_session(self, title: str, directory: str) -> str:
        raise NotImplementedError

    async def session_messages(self, session_id: str, directory: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def abort_session(self, session_id: str, directory: Optional[str] = None) -> None:
        raise NotImplementedError

    def stream_prompt(
        self,
        session_id: str,
        text: str,
        directory: str,
        model: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> AsyncIterator[GenerationEvent]:
        raise NotImplementedError

    async def reply_question(self, request_id: str, answers: list[list[str]], directory: str) -> None:
        raise NotImplementedError

    async def reply_permission(self, request_id: str, reply: str, directory: str) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class HttpAgentClient(AgentSessionClient):
    def __init__(self, base_url: str, timeout: float = 600.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    @staticmethod
    def _raise_for(resp: httpx.Response) -> None:
        if resp.is_error:
            raise AgentSessionError(resp.status_code, resp.text)

    async def get_session(self, session_id: str, directory: str) -> Optional[dict[str, Any]]:
        resp = await self._client.get(f"/session/{session_id}", params={"directory": directory})
        if resp.status_code == 404:
            return None
        self._raise_for(resp)
        return resp.json()

    async def create_session(self, title: str, directory: str) -> str:
        resp = await self._client.post("/session", params={"directory": directory}, json={"title": title})
        self._raise_for(resp)
        session_id = resp.json().get("id")
        if not session_id:
            raise AgentSessionError(resp.status_code, "session create returned no id")
        return session_id

    async def session_messages(self, session_id: str, directory: str) -> list[dict[str, Any]]:
        resp = await self._client.get(f"/session/{session_id}/message", params={"directory": directory})
        self._raise_for(resp)
        return resp.json()

    async def abort_session(self, session_id: str, directory: Optional[str] = None) -> None:
        params = {"directory": directory} if directory else None
        resp = await self._client.post(f"/session/{session_id}/abort", params=params)
        self._raise_for(resp)

    async def stream_prompt(
        self,
        session_id: str,
        text: str,
        directory: str,
        model: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> AsyncIterator[GenerationEvent]:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if model:
            body["model"] = model
        if agent:
            body["agent"] = agent
        async with self._client.stream(
            "POST", f"/session/{session_id}/prompt", params={"directory": directory}, json=body
        ) as resp:
            if resp.is_error:
                await resp.aread()
                raise AgentSessionError(resp.status_code, resp.text)
            async for line in resp.aiter_lines():
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except ValueError:
                    logger.debug(f"[agent] skipping non-JSON stream line: {line[:120]}")
                    continue
                event = parse_event(raw) if isinstance(raw, dict) else None
                if event is not None:
                    yield event

    async def reply_question(self, request_id: str, answers: list[list[str]], directory: str) -> None:
        resp = await self._client.post(
            f"/question/{request_id}/reply", params={"directory": directory}, json={"answers": answers}
        )
        self._raise_for(resp)

    async def reply_permission(self, request_id: str, reply: str, directory: str) -> None:
        resp = await self._client.post(
            f"/permission/{request_id}/reply", params={"directory": directory}, json={"reply": reply}
        )
        self._raise_for(resp)

    async def aclose(self) -> None:
        await self._client.aclose()
