from __future__ import annotations

"""Token stream intake: SSE decoding and async bridging for assistant replies."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import Settings, get_settings
from ..domain.message_models import Message

LOG = logging.getLogger("canvaschat.stream")


@dataclass(frozen=True)
class TokenEvent:
    kind: str  # chunk | complete | error | tool
    text: str = ""
    message_id: Optional[str] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def chunk(cls, text: str) -> "TokenEvent":
        return cls(kind="chunk", text=text)

    @classmethod
    def complete(cls, message_id: Optional[str], **data: Any) -> "TokenEvent":
        return cls(kind="complete", message_id=message_id, data=data)

    @classmethod
    def failure(cls, error: str) -> "TokenEvent":
        return cls(kind="error", error=error)


def iter_as_async(it: Iterable[TokenEvent]) -> AsyncIterator[TokenEvent]:
    async def gen() -> AsyncIterator[TokenEvent]:
        for x in it:
            yield x

    return gen()


def aiter_blocking(it: Iterator[TokenEvent]) -> AsyncIterator[TokenEvent]:
    """Drive a blocking iterator from the event loop without stalling it."""
    sentinel = object()

    async def gen() -> AsyncIterator[TokenEvent]:
        while True:
            item = await asyncio.to_thread(next, it, sentinel)
            if item is sentinel:
                break
            yield item  # type: ignore[misc]

    return gen()


def _event_from_frame(name: str, data: Dict[str, Any]) -> Optional[TokenEvent]:
    if name == "chunk":
        text = data.get("content")
        if text is None:
            text = data.get("token") or ""
        return TokenEvent.chunk(str(text)) if text else None
    if name == "complete":
        extra = {k: v for k, v in data.items() if k != "messageId"}
        return TokenEvent.complete(data.get("messageId") or None, **extra)
    if name == "error":
        return TokenEvent.failure(str(data.get("error") or "Unknown error occurred"))
    if name == "tool":
        return TokenEvent(kind="tool", data=data)
    return None


def decode_sse_lines(lines: Iterable[Any]) -> Iterator[TokenEvent]:
    """Decode ``event: <name>`` / ``data: {json}`` frames separated by blank lines."""
    name: Optional[str] = None
    data_lines: List[str] = []

    def _flush() -> Optional[TokenEvent]:
        if not data_lines:
            return None
        raw = "\n".join(data_lines)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            LOG.debug("sse_frame_unparseable", extra={"sse_event": name, "raw": raw[:80]})
            return None
        if not isinstance(payload, dict):
            return None
        return _event_from_frame(name or str(payload.get("type") or "chunk"), payload)

    for raw_line in lines:
        line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else str(raw_line)
        line = line.rstrip("\r")
        if not line:
            event = _flush()
            name, data_lines = None, []
            if event is not None:
                yield event
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            name = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    event = _flush()
    if event is not None:
        yield event


def limit_history(messages: List[Message], max_tokens: Optional[int] = None) -> List[Message]:
    """Keep the newest messages that fit an approximate token budget (chars/4)."""
    if max_tokens is None:
        max_tokens = get_settings().history_token_budget
    kept: List[Message] = []
    used = 0
    for message in reversed(messages):
        cost = max(1, len(message.content) // 4)
        if used + cost > max_tokens:
            break
        kept.append(message)
        used += cost
    kept.reverse()
    return kept


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class SSETokenProducer:
    """Assistant-service client that turns an SSE reply into ``TokenEvent``s."""

    def __init__(
        self,
        url: str,
        *,
        session: Optional[requests.Session] = None,
        settings: Optional[Settings] = None,
        timeout: Optional[Tuple[float, float]] = None,
    ) -> None:
        settings = settings or get_settings()
        self.url = url
        self._session = session or _build_session()
        self._timeout = timeout or (settings.producer_connect_timeout, settings.producer_read_timeout)
        self._history_budget = settings.history_token_budget

    def _payload(self, message: Message, history: List[Message]) -> Dict[str, Any]:
        return {
            "message": message.content,
            "contextType": message.scope_type.value,
            "contextId": message.scope_id,
            "contextEntityVersionId": message.scope_version_ref,
            "chatHistory": [
                {"role": m.sender_role.value, "content": m.content}
                for m in limit_history(history, self._history_budget)
            ],
        }

    def iter_events(self, message: Message, history: List[Message]) -> Iterator[TokenEvent]:
        LOG.debug("producer_stream", extra={"url": self.url, "timeout": self._timeout})
        with self._session.post(
            self.url,
            json=self._payload(message, history),
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            yield from decode_sse_lines(resp.iter_lines())

    def __call__(self, message: Message, history: List[Message]) -> AsyncIterator[TokenEvent]:
        return aiter_blocking(self.iter_events(message, history))
