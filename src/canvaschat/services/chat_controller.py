from __future__ import annotations

"""Renderer-facing commands: send, edit, delete, and assistant reply streaming."""

import asyncio
import logging
import uuid
from typing import AsyncIterator, Callable, List, Optional, Set

from ..domain.message_models import (
    ActionResult,
    Message,
    MessageDraft,
    ScopeKey,
    ScopeType,
    SenderRole,
)
from ..errors import DurabilityFailure, StreamSessionError, translate_error
from ..infrastructure.message_store import MessageStore
from .reconciler import IdentityReconciler
from .stream_tracker import StreamSessionTracker
from .streaming import TokenEvent
from .telemetry_sink import TelemetryEvent, record_event

LOG = logging.getLogger("canvaschat.controller")

TokenProducer = Callable[[Message, List[Message]], AsyncIterator[TokenEvent]]

# Captured notes are saved without an assistant turn
_SILENT_SCOPES = {ScopeType.CAPTURE}


def new_temp_id() -> str:
    return f"temp-{uuid.uuid4().hex}"


def new_session_id() -> str:
    return f"stream-{uuid.uuid4().hex}"


def _describe(exc: BaseException) -> str:
    if isinstance(exc, KeyError):
        return "Message not found"
    return str(translate_error(exc))


class ChatController:
    def __init__(
        self,
        store: MessageStore,
        reconciler: IdentityReconciler,
        tracker: Optional[StreamSessionTracker] = None,
        producer: Optional[TokenProducer] = None,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._tracker = tracker
        self._producer = producer
        self._replies: Set["asyncio.Task[Optional[Message]]"] = set()

    @property
    def reconciler(self) -> IdentityReconciler:
        return self._reconciler

    @property
    def tracker(self) -> Optional[StreamSessionTracker]:
        return self._tracker

    @property
    def pending_replies(self) -> int:
        return len(self._replies)

    async def load(self, scope: Optional[ScopeKey] = None) -> int:
        scope = scope or self._reconciler.scope or ScopeKey.all()
        records = await self._store.query(scope.scope_type, scope.scope_id)
        return self._reconciler.load(records)

    async def send(
        self,
        text: str,
        scope: Optional[ScopeKey] = None,
        *,
        scope_version_ref: Optional[str] = None,
    ) -> Message:
        """Insert optimistically, persist, then kick off the assistant reply in the background.

        Raises ``DurabilityFailure`` after rolling the optimistic entry back when the
        store rejects the write.
        """
        scope = scope or ScopeKey(ScopeType.NONE)
        temp_id = new_temp_id()
        draft = MessageDraft(
            content=text,
            sender_role=SenderRole.USER,
            scope_type=scope.scope_type or ScopeType.NONE,
            scope_id=scope.scope_id,
            scope_version_ref=scope_version_ref,
        )
        self._reconciler.apply_optimistic(temp_id, draft)
        try:
            record = await self._store.create(draft)
        except Exception as exc:
            err = translate_error(exc)
            self._reconciler.apply_durable_failure(temp_id)
            LOG.warning("send_failed", extra={"temp_id": temp_id, "err": str(err)})
            record_event(
                TelemetryEvent(
                    name="durability_failure",
                    properties={"temp_id": temp_id, "scope": scope.channel_suffix, "error": str(err)},
                )
            )
            raise DurabilityFailure(temp_id, cause=err) from exc

        self._reconciler.apply_durable_confirmation(temp_id, record)
        LOG.debug("send_confirmed", extra={"temp_id": temp_id, "message_id": record.id})
        if record.scope_type not in _SILENT_SCOPES and self._tracker is not None and self._producer is not None:
            self._start_reply(record)
        return record

    def _start_reply(self, record: Message) -> None:
        session_id = new_session_id()
        draft = MessageDraft(
            sender_role=SenderRole.ASSISTANT,
            scope_type=record.scope_type,
            scope_id=record.scope_id,
            scope_version_ref=record.scope_version_ref,
        )
        history = [m for m in self._reconciler.messages if not self._reconciler.is_pending(m.id) and m.id != record.id]
        events = self._producer(record, history)  # type: ignore[misc]
        task = asyncio.create_task(self.stream_reply(session_id, draft, events))
        self._replies.add(task)
        task.add_done_callback(self._replies.discard)

    async def _fetch(self, message_id: str) -> Optional[Message]:
        return await self._store.fetch_by_id(message_id)

    async def stream_reply(
        self,
        session_id: str,
        draft: MessageDraft,
        events: AsyncIterator[TokenEvent],
    ) -> Optional[Message]:
        if self._tracker is None:
            raise StreamSessionError("No stream tracker configured")
        self._tracker.open(session_id, draft)
        return await self._tracker.consume(session_id, events, fetch_record=self._fetch)

    async def drain(self) -> None:
        """Wait for every in-flight assistant reply to reach a terminal state."""
        while self._replies:
            pending = list(self._replies)
            results = await asyncio.gather(*pending, return_exceptions=True)
            self._replies.difference_update(pending)
            for result in results:
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    LOG.error("reply_task_failed", extra={"err": str(result)})

    async def cancel_replies(self) -> None:
        for task in list(self._replies):
            task.cancel()
        await self.drain()

    async def edit_message(self, message_id: str, text: str) -> ActionResult:
        if self._reconciler.is_pending(message_id):
            return ActionResult(ok=False, message_id=message_id, error="Message is not saved yet")
        previous = self._reconciler.apply_local_edit(message_id, text)
        if previous is None:
            return ActionResult(ok=False, message_id=message_id, error="Message not found")
        try:
            await self._store.update(previous.id, {"content": text})
        except Exception as exc:
            self._reconciler.revert_local_edit(previous)
            LOG.warning("edit_failed", extra={"message_id": message_id, "err": str(exc)})
            return ActionResult(ok=False, message_id=message_id, error=_describe(exc))
        return ActionResult(ok=True, message_id=message_id)

    async def delete_message(self, message_id: str) -> ActionResult:
        if self._reconciler.is_pending(message_id):
            return ActionResult(ok=False, message_id=message_id, error="Message is not saved yet")
        removed = self._reconciler.apply_local_delete(message_id)
        if removed is None:
            return ActionResult(ok=False, message_id=message_id, error="Message not found")
        try:
            deleted = await self._store.delete(removed.id)
        except Exception as exc:
            self._reconciler.restore(removed)
            LOG.warning("delete_failed", extra={"message_id": message_id, "err": str(exc)})
            return ActionResult(ok=False, message_id=message_id, error=_describe(exc))
        if not deleted:
            self._reconciler.restore(removed)
            return ActionResult(ok=False, message_id=message_id, error="Message could not be deleted")
        return ActionResult(ok=True, message_id=message_id)
