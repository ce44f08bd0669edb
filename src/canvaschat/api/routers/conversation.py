from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Response, status

from ...config import Settings, get_settings
from ...domain.message_models import (
    ActionOut,
    ActionResult,
    DirectiveOut,
    EditMessageRequest,
    Message,
    ParseDirectiveRequest,
    ScopeKey,
    ScopeType,
    SegmentOut,
    SendMessageRequest,
    StreamOut,
    StreamSnapshot,
)
from ...errors import DurabilityFailure
from ...infrastructure.events import InMemoryPushFeed, PushFeed, load_push_feed
from ...infrastructure.message_store import InMemoryMessageStore, get_message_store
from ...services.chat_controller import ChatController
from ...services.directive_parser import display_text, parse_directive
from ...services.reconciler import IdentityReconciler
from ...services.segment_classifier import classify
from ...services.stream_tracker import StreamSessionTracker
from ...services.streaming import SSETokenProducer
from ...services.subscription_manager import ContextSubscriptionManager


@dataclass
class ConversationRuntime:
    store: InMemoryMessageStore
    feed: PushFeed
    reconciler: IdentityReconciler
    tracker: StreamSessionTracker
    controller: ChatController
    subscriptions: ContextSubscriptionManager


def build_runtime(settings: Optional[Settings] = None) -> ConversationRuntime:
    settings = settings or get_settings()
    store = get_message_store()
    feed: Optional[PushFeed] = load_push_feed(settings.redis_url)
    if feed is None:
        memory_feed = InMemoryPushFeed()
        store.attach_feed(memory_feed)
        feed = memory_feed
    reconciler = IdentityReconciler(settings=settings)
    tracker = StreamSessionTracker(reconciler, settings=settings)
    producer = SSETokenProducer(settings.producer_url, settings=settings) if settings.producer_url else None
    controller = ChatController(store, reconciler, tracker, producer)
    subscriptions = ContextSubscriptionManager(feed, reconciler, settings=settings)
    return ConversationRuntime(
        store=store,
        feed=feed,
        reconciler=reconciler,
        tracker=tracker,
        controller=controller,
        subscriptions=subscriptions,
    )


_runtime: Optional[ConversationRuntime] = None


def get_runtime() -> ConversationRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def reset_runtime() -> None:
    global _runtime
    _runtime = None


def _segments_out(snapshot_segments) -> List[SegmentOut]:
    return [
        SegmentOut(kind=s.kind, text=s.text, directive_state=s.directive_state, display=s.display)
        for s in snapshot_segments
    ]


def _stream_out(snapshot: StreamSnapshot) -> StreamOut:
    return StreamOut(
        session_id=snapshot.session_id,
        status=snapshot.status,
        buffer=snapshot.buffer,
        directive_state=snapshot.directive_state,
        segments=_segments_out(snapshot.segments),
        message_id=snapshot.message_id,
    )


def _action_out(result: ActionResult, response: Response) -> ActionOut:
    if not result.ok:
        if result.error == "Message not found":
            raise HTTPException(status_code=404, detail=result.error)
        response.status_code = status.HTTP_409_CONFLICT
    return ActionOut(ok=result.ok, message_id=result.message_id, error=result.error)


router = APIRouter(prefix="/conversation", tags=["conversation"])


@router.get("/messages", response_model=List[Message])
async def list_messages(
    scope_type: Optional[ScopeType] = Query(None),
    scope_id: Optional[str] = Query(None),
) -> List[Message]:
    runtime = get_runtime()
    scope = ScopeKey(scope_type, scope_id)
    return [m for m in runtime.reconciler.messages if scope.matches(m)]


@router.get("/streams", response_model=List[StreamOut])
async def list_streams() -> List[StreamOut]:
    runtime = get_runtime()
    return [_stream_out(s) for s in runtime.tracker.active_snapshots()]


@router.post("/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(req: SendMessageRequest) -> Message:
    runtime = get_runtime()
    try:
        return await runtime.controller.send(
            req.content,
            ScopeKey(req.scope_type, req.scope_id),
            scope_version_ref=req.scope_version_ref,
        )
    except DurabilityFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.patch("/messages/{message_id}", response_model=ActionOut)
async def edit_message(message_id: str, req: EditMessageRequest, response: Response) -> ActionOut:
    runtime = get_runtime()
    result = await runtime.controller.edit_message(message_id, req.content)
    return _action_out(result, response)


@router.delete("/messages/{message_id}", response_model=ActionOut)
async def delete_message(message_id: str, response: Response) -> ActionOut:
    runtime = get_runtime()
    result = await runtime.controller.delete_message(message_id)
    return _action_out(result, response)


@router.post("/directives/parse", response_model=DirectiveOut)
async def parse_text(req: ParseDirectiveRequest) -> DirectiveOut:
    parsed = parse_directive(req.text)
    return DirectiveOut(
        state=parsed.state,
        tag=parsed.tag,
        payload_kind=parsed.payload_kind,
        error=parsed.error,
        display=display_text(req.text),
        segments=_segments_out(classify(req.text, streaming=req.streaming)),
    )
