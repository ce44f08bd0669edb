from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..config import Settings, get_settings
from ..core.state_machine import (
    DirectiveState,
    StreamStatus,
    directive_advanced,
    is_valid_stream_transition,
)
from ..domain.message_models import (
    Message,
    MessageDraft,
    Segment,
    SenderRole,
    StreamSnapshot,
)
from ..errors import StreamSessionError, translate_error
from ..observability.metrics import STREAM_DURATION, STREAM_SESSIONS
from .directive_parser import directive_state
from .reconciler import IdentityReconciler
from .segment_classifier import classify
from .streaming import TokenEvent

LOG = logging.getLogger("canvaschat.stream")

RecordFetcher = Callable[[str], Awaitable[Optional[Message]]]


@dataclass
class StreamSession:
    session_id: str
    draft: MessageDraft
    opened_at: float
    status: StreamStatus = StreamStatus.OPEN
    buffer: str = ""
    segments: List[Segment] = field(default_factory=list)
    directive_state: DirectiveState = DirectiveState.NONE
    message_id: Optional[str] = None
    chunks: int = 0

    @property
    def active(self) -> bool:
        return self.status == StreamStatus.OPEN


class StreamSessionTracker:
    """Owns the buffers of in-flight assistant replies until they are handed off."""

    def __init__(
        self,
        reconciler: IdentityReconciler,
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = settings or get_settings()
        self._reconciler = reconciler
        self._clock = clock
        self._sessions: Dict[str, StreamSession] = {}
        self._tombstones: "OrderedDict[str, StreamStatus]" = OrderedDict()
        self._tombstone_limit = settings.tombstone_limit

    def _snapshot(self, session: StreamSession) -> StreamSnapshot:
        return StreamSnapshot(
            session_id=session.session_id,
            status=session.status,
            buffer=session.buffer,
            segments=list(session.segments),
            directive_state=session.directive_state,
            message_id=session.message_id,
        )

    def _transition(self, session: StreamSession, target: StreamStatus) -> None:
        if not is_valid_stream_transition(session.status, target):
            raise StreamSessionError(f"Stream {session.session_id} cannot move from {session.status.value} to {target.value}")
        session.status = target

    def _retire(self, session: StreamSession) -> None:
        self._sessions.pop(session.session_id, None)
        self._tombstones[session.session_id] = session.status
        while len(self._tombstones) > self._tombstone_limit:
            self._tombstones.popitem(last=False)
        try:
            STREAM_SESSIONS.labels(status=session.status.value).inc()
            STREAM_DURATION.observe(max(0.0, self._clock() - session.opened_at))
        except Exception:
            pass

    def status(self, session_id: str) -> Optional[StreamStatus]:
        session = self._sessions.get(session_id)
        if session is not None:
            return session.status
        return self._tombstones.get(session_id)

    def snapshot(self, session_id: str) -> Optional[StreamSnapshot]:
        session = self._sessions.get(session_id)
        return self._snapshot(session) if session else None

    def active_snapshots(self) -> List[StreamSnapshot]:
        return [self._snapshot(s) for s in self._sessions.values() if s.active]

    def open(self, session_id: str, draft: Optional[MessageDraft] = None) -> StreamSnapshot:
        if session_id in self._sessions or session_id in self._tombstones:
            raise StreamSessionError(f"Stream session {session_id} already exists")
        base = draft or MessageDraft()
        base = base.model_copy(update={"content": "", "sender_role": SenderRole.ASSISTANT})
        session = StreamSession(session_id=session_id, draft=base, opened_at=self._clock())
        self._sessions[session_id] = session
        self._reconciler.apply_stream_placeholder(session_id, base)
        LOG.debug("stream_opened", extra={"session_id": session_id})
        return self._snapshot(session)

    def append_chunk(self, session_id: str, text: str) -> Optional[StreamSnapshot]:
        session = self._sessions.get(session_id)
        if session is None:
            if session_id in self._tombstones:
                LOG.debug("stream_late_chunk_discarded", extra={"session_id": session_id})
                return None
            raise StreamSessionError(f"Unknown stream session {session_id}")
        if not session.active:
            LOG.debug("stream_chunk_rejected", extra={"session_id": session_id, "status": session.status.value})
            return None
        if not text:
            return self._snapshot(session)

        session.buffer += text
        session.chunks += 1
        session.segments = classify(session.buffer, streaming=True)
        previous = session.directive_state
        current = directive_state(session.buffer)
        if current != previous:
            if not directive_advanced(previous, current):
                LOG.warning(
                    "directive_state_regressed",
                    extra={"session_id": session_id, "from": previous.value, "to": current.value},
                )
            LOG.debug(
                "directive_state_changed",
                extra={"session_id": session_id, "from": previous.value, "to": current.value},
            )
        session.directive_state = current
        return self._snapshot(session)

    def finalize(self, session_id: str, durable_message_id: str, record: Optional[Message] = None) -> Optional[Message]:
        """Hand the buffer to the reconciler under its durable id."""
        session = self._sessions.get(session_id)
        if session is None:
            if session_id in self._tombstones:
                LOG.debug("stream_finalize_ignored", extra={"session_id": session_id})
                return None
            raise StreamSessionError(f"Unknown stream session {session_id}")
        self._transition(session, StreamStatus.FINALIZING)
        session.message_id = durable_message_id

        if record is not None and record.id != durable_message_id:
            LOG.warning(
                "stream_record_id_mismatch",
                extra={"session_id": session_id, "expected": durable_message_id, "got": record.id},
            )
        final = record
        provisional = final is None
        if provisional:
            # Built from the buffer; the store echo replaces it once it arrives
            final = session.draft.model_copy(update={"content": session.buffer}).as_message(durable_message_id)
        try:
            self._reconciler.apply_stream_finalization(session_id, final, provisional=provisional)
        finally:
            self._transition(session, StreamStatus.CLOSED)
            self._retire(session)
        LOG.debug("stream_finalized", extra={"session_id": session_id, "message_id": final.id, "chunks": session.chunks})
        return final

    def abort(self, session_id: str, reason: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            if session_id in self._tombstones:
                return False
            raise StreamSessionError(f"Unknown stream session {session_id}")
        self._transition(session, StreamStatus.ABORTED)
        session.buffer = ""
        session.segments = []
        self._reconciler.apply_stream_abort(session_id, session.message_id)
        self._retire(session)
        LOG.info("stream_aborted", extra={"session_id": session_id, "reason": reason})
        return True

    def _ensure_terminal(self, session_id: str, reason: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.active:
            self.abort(session_id, reason)

    async def consume(
        self,
        session_id: str,
        events: AsyncIterator[TokenEvent],
        fetch_record: Optional[RecordFetcher] = None,
    ) -> Optional[Message]:
        """Drive a session from a producer until it reaches a terminal state."""
        try:
            async for event in events:
                if event.kind == "chunk":
                    self.append_chunk(session_id, event.text)
                elif event.kind == "complete":
                    if not event.message_id:
                        LOG.warning("stream_complete_without_id", extra={"session_id": session_id})
                        self.abort(session_id, "completed without a message id")
                        return None
                    record = None
                    if fetch_record is not None:
                        try:
                            record = await fetch_record(event.message_id)
                        except Exception as exc:
                            err = translate_error(exc)
                            LOG.warning(
                                "stream_fetch_failed_using_buffer",
                                extra={"session_id": session_id, "message_id": event.message_id, "err": str(err)},
                            )
                    return self.finalize(session_id, event.message_id, record)
                elif event.kind == "error":
                    LOG.warning("stream_producer_error", extra={"session_id": session_id, "err": event.error})
                    self.abort(session_id, event.error or "producer error")
                    return None
                else:
                    LOG.debug("stream_event_ignored", extra={"session_id": session_id, "kind": event.kind})
            self._ensure_terminal(session_id, "stream ended without completion")
            return None
        except asyncio.CancelledError:
            self._ensure_terminal(session_id, "cancelled")
            raise
        except Exception as exc:
            err = translate_error(exc)
            LOG.warning("stream_producer_failed", extra={"session_id": session_id, "err": str(err)})
            self._ensure_terminal(session_id, str(err))
            return None
