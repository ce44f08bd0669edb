from __future__ import annotations

"""Split message text into prose and directive segments for rendering."""

from typing import List

from ..core.state_machine import DirectiveState
from ..domain.message_models import Segment, SegmentKind
from .directive_parser import iter_directive_spans, parse_directive


def classify(text: str, streaming: bool = False) -> List[Segment]:
    """Return the ordered segments of ``text``.

    Joining ``segment.text`` for every segment gives back ``text`` unchanged.
    With ``streaming=False`` an unterminated trailing directive is reported as
    ``MALFORMED``; with ``streaming=True`` it carries its live state.
    """

    if not text:
        return []

    segments: List[Segment] = []
    cursor = 0
    for span in iter_directive_spans(text):
        if span.start > cursor:
            segments.append(Segment(kind=SegmentKind.PROSE, text=text[cursor:span.start]))
        block = text[span.start:span.end]
        parsed = parse_directive(block)
        state = parsed.state
        if not span.complete and not streaming:
            state = DirectiveState.MALFORMED
        segments.append(
            Segment(
                kind=SegmentKind.DIRECTIVE,
                text=block,
                directive_state=state,
                display=parsed.payload.strip() or None,
            )
        )
        cursor = span.end

    if cursor < len(text):
        segments.append(Segment(kind=SegmentKind.PROSE, text=text[cursor:]))
    return segments


def trailing_directive_state(segments: List[Segment]) -> DirectiveState:
    for segment in reversed(segments):
        if segment.kind == SegmentKind.DIRECTIVE and segment.directive_state is not None:
            return segment.directive_state
    return DirectiveState.NONE
