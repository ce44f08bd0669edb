from __future__ import annotations

from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import logging
import uuid

from ..domain.message_models import Message, MessageDraft, PushEvent, ScopeKey, ScopeType, utc_now
from .events import InMemoryPushFeed, publish_event

LOG = logging.getLogger("canvaschat.store")

_PATCHABLE = {"content", "scope_version_ref"}


class MessageStore(Protocol):
    async def create(self, draft: MessageDraft) -> Message: ...

    async def fetch_by_id(self, message_id: str) -> Optional[Message]: ...

    async def update(self, message_id: str, patch: Dict[str, Any]) -> Message: ...

    async def delete(self, message_id: str) -> bool: ...

    async def query(self, scope_type: Optional[ScopeType] = None, scope_id: Optional[str] = None) -> List[Message]: ...


class InMemoryMessageStore:
    """Durable-store stand-in: assigns ids and ``created_at`` and echoes writes to push feeds."""

    def __init__(self) -> None:
        self._messages: Dict[str, Message] = {}
        self._feeds: List[InMemoryPushFeed] = []
        self._last_created: Optional[datetime] = None
        self._lock = RLock()

    def attach_feed(self, feed: InMemoryPushFeed) -> None:
        with self._lock:
            if feed not in self._feeds:
                self._feeds.append(feed)

    def _next_created_at(self) -> datetime:
        now = utc_now()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    def _publish(self, op: str, record: Message) -> None:
        event = PushEvent(op=op, record=record)
        for feed in list(self._feeds):
            feed.publish(event)
        publish_event(event)

    async def create(self, draft: MessageDraft) -> Message:
        with self._lock:
            message = draft.as_message(uuid.uuid4().hex, created_at=self._next_created_at())
            self._messages[message.id] = message
        LOG.debug("store_create", extra={"message_id": message.id, "scope": message.scope_type.value})
        self._publish("insert", message)
        return message

    async def fetch_by_id(self, message_id: str) -> Optional[Message]:
        with self._lock:
            return self._messages.get(message_id)

    async def update(self, message_id: str, patch: Dict[str, Any]) -> Message:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                raise KeyError(message_id)
            changes = {k: v for k, v in patch.items() if k in _PATCHABLE}
            if "content" in changes and changes["content"] != current.content:
                changes["edited"] = True
            updated = current.model_copy(update=changes)
            self._messages[message_id] = updated
        self._publish("update", updated)
        return updated

    async def delete(self, message_id: str) -> bool:
        with self._lock:
            removed = self._messages.pop(message_id, None)
        if removed is None:
            return False
        self._publish("delete", removed)
        return True

    async def query(self, scope_type: Optional[ScopeType] = None, scope_id: Optional[str] = None) -> List[Message]:
        scope = ScopeKey(scope_type, scope_id)
        with self._lock:
            out = [m for m in self._messages.values() if scope.matches(m)]
        return sorted(out, key=lambda m: m.created_at)


_store: Optional[InMemoryMessageStore] = None


def get_message_store() -> InMemoryMessageStore:
    global _store
    if _store is None:
        _store = InMemoryMessageStore()
    return _store
