from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.state_machine import DirectiveState, StreamStatus


class SenderRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ScopeType(str, Enum):
    NONE = "none"
    DOCUMENT = "document"
    PROJECT = "project"
    CAPTURE = "capture"
    ASK = "ask"
    REFLECT = "reflect"


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ScopeKey:
    """Which messages a view or subscription covers.

    ``ScopeKey()`` (no scope type) is the aggregate view over every scope.
    ``ScopeKey(ScopeType.NONE)`` is the scope-free general thread only.
    """

    scope_type: Optional[ScopeType] = None
    scope_id: Optional[str] = None

    @classmethod
    def all(cls) -> "ScopeKey":
        return cls()

    @property
    def is_aggregate(self) -> bool:
        return self.scope_type is None

    def matches(self, message: "Message") -> bool:
        if self.is_aggregate:
            return True
        if message.scope_type != self.scope_type:
            return False
        if self.scope_id is None:
            return True
        return message.scope_id == self.scope_id

    @property
    def channel_suffix(self) -> str:
        if self.scope_type is None:
            return "*"
        if self.scope_id:
            return f"{self.scope_type.value}.{self.scope_id}"
        return self.scope_type.value


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    sender_role: SenderRole
    scope_type: ScopeType = ScopeType.NONE
    scope_id: Optional[str] = None
    scope_version_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    edited: bool = False

    @property
    def scope(self) -> ScopeKey:
        return ScopeKey(self.scope_type, self.scope_id)


class MessageDraft(BaseModel):
    """Fields the client knows before the store has assigned an id or timestamp."""

    content: str = ""
    sender_role: SenderRole = SenderRole.USER
    scope_type: ScopeType = ScopeType.NONE
    scope_id: Optional[str] = None
    scope_version_ref: Optional[str] = None

    def as_message(self, message_id: str, created_at: Optional[datetime] = None) -> Message:
        return Message(
            id=message_id,
            content=self.content,
            sender_role=self.sender_role,
            scope_type=self.scope_type,
            scope_id=self.scope_id,
            scope_version_ref=self.scope_version_ref,
            created_at=created_at or utc_now(),
        )


PushOp = Literal["insert", "update", "delete"]


class PushEvent(BaseModel):
    op: PushOp
    record: Message


class SegmentKind(str, Enum):
    PROSE = "prose"
    DIRECTIVE = "directive"


@dataclass(frozen=True)
class Segment:
    kind: SegmentKind
    text: str
    directive_state: Optional[DirectiveState] = None
    display: Optional[str] = None


@dataclass(frozen=True)
class StreamSnapshot:
    session_id: str
    status: StreamStatus
    buffer: str
    segments: List[Segment]
    directive_state: DirectiveState
    message_id: Optional[str] = None


@dataclass(frozen=True)
class ActionResult:
    ok: bool
    message_id: str
    error: Optional[str] = None


# API payloads
class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    scope_type: ScopeType = ScopeType.NONE
    scope_id: Optional[str] = None
    scope_version_ref: Optional[str] = None


class EditMessageRequest(BaseModel):
    content: str = Field(min_length=1)


class ParseDirectiveRequest(BaseModel):
    text: str
    streaming: bool = False


class SegmentOut(BaseModel):
    kind: SegmentKind
    text: str
    directive_state: Optional[DirectiveState] = None
    display: Optional[str] = None


class StreamOut(BaseModel):
    session_id: str
    status: StreamStatus
    buffer: str
    directive_state: DirectiveState
    segments: List[SegmentOut]
    message_id: Optional[str] = None


class ActionOut(BaseModel):
    ok: bool
    message_id: str
    error: Optional[str] = None


class DirectiveOut(BaseModel):
    state: DirectiveState
    tag: Optional[str] = None
    payload_kind: Optional[str] = None
    error: Optional[str] = None
    display: str = ""
    segments: List[SegmentOut]
