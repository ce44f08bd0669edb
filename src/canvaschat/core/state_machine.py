from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional


class DirectiveState(str, Enum):
    NONE = "none"
    OPENING = "opening"
    PAYLOAD_IN_PROGRESS = "payload_in_progress"
    PAYLOAD_COMPLETE = "payload_complete"
    CLOSED = "closed"
    MALFORMED = "malformed"

    @property
    def rank(self) -> int:
        return DIRECTIVE_ORDER[self]

    @property
    def terminal(self) -> bool:
        return self in (DirectiveState.CLOSED, DirectiveState.MALFORMED)


# MALFORMED sits outside the total order; it is reachable from any non-terminal state
DIRECTIVE_ORDER: Dict[DirectiveState, int] = {
    DirectiveState.NONE: 0,
    DirectiveState.OPENING: 1,
    DirectiveState.PAYLOAD_IN_PROGRESS: 2,
    DirectiveState.PAYLOAD_COMPLETE: 3,
    DirectiveState.CLOSED: 4,
    DirectiveState.MALFORMED: 5,
}


class StreamStatus(str, Enum):
    OPEN = "open"
    FINALIZING = "finalizing"
    CLOSED = "closed"
    ABORTED = "aborted"


STREAM_TRANSITIONS: Dict[StreamStatus, List[StreamStatus]] = {
    StreamStatus.OPEN: [StreamStatus.FINALIZING, StreamStatus.ABORTED],
    StreamStatus.FINALIZING: [StreamStatus.CLOSED, StreamStatus.ABORTED],
    StreamStatus.CLOSED: [],
    StreamStatus.ABORTED: [],
}


class SubscriptionStatus(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"


SUBSCRIPTION_TRANSITIONS: Dict[SubscriptionStatus, List[SubscriptionStatus]] = {
    SubscriptionStatus.UNSUBSCRIBED: [SubscriptionStatus.SUBSCRIBING],
    SubscriptionStatus.SUBSCRIBING: [SubscriptionStatus.SUBSCRIBED, SubscriptionStatus.UNSUBSCRIBED],
    SubscriptionStatus.SUBSCRIBED: [SubscriptionStatus.UNSUBSCRIBED],
}


def directive_advanced(previous: DirectiveState, current: DirectiveState) -> bool:
    """True when ``current`` is a legal successor of ``previous`` for a growing buffer."""
    if previous == current:
        return True
    if previous.terminal:
        return False
    if current == DirectiveState.MALFORMED:
        return True
    return current.rank > previous.rank


def next_stream_status(current: StreamStatus) -> Optional[StreamStatus]:
    options = STREAM_TRANSITIONS.get(current, [])
    return options[0] if options else None


def is_valid_stream_transition(current: StreamStatus, target: StreamStatus) -> bool:
    return target in STREAM_TRANSITIONS.get(current, [])


def is_valid_subscription_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in SUBSCRIPTION_TRANSITIONS.get(current, [])
