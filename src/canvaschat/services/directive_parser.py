from __future__ import annotations

"""Incremental parser for document-edit directives embedded in assistant text.

A directive looks like::

    <write_to_file>
    <content>
    {"Title": "PetDoc", "Problem": "..."}
    </content>
    </write_to_file>

``<document_edit>`` and ``<replace_in_file>`` are accepted as begin markers too, and the
payload region may be ``<content>`` (whole document) or ``<diff>`` (SEARCH/REPLACE blocks).

The state is a pure function of the buffer, so the same text is re-parsed on every chunk.
Only the first directive in a buffer drives the state.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..core.state_machine import DirectiveState
from ..errors import MalformedDirectiveError

DIRECTIVE_TAGS = ("write_to_file", "document_edit", "replace_in_file")
PAYLOAD_TAGS = ("content", "diff")

_BEGIN_RE = re.compile(r"<(write_to_file|document_edit|replace_in_file)>", re.IGNORECASE)
_END_RE = re.compile(r"</(write_to_file|document_edit|replace_in_file)>", re.IGNORECASE)
_END_TAG_RE = {tag: re.compile(rf"</{tag}>", re.IGNORECASE) for tag in DIRECTIVE_TAGS}
_PAYLOAD_OPEN_RE = re.compile(r"<(content|diff)>", re.IGNORECASE)
_PAYLOAD_CLOSE_RE = {tag: re.compile(rf"</{tag}>", re.IGNORECASE) for tag in PAYLOAD_TAGS}
_DIFF_BLOCK_RE = re.compile(
    r"<{7} SEARCH[ \t]*\n?(.*?)\n?[ \t]*={7}[ \t]*\n?(.*?)\n?[ \t]*>{7} REPLACE",
    re.DOTALL,
)

OPENING_PLACEHOLDER = "Preparing document edit..."
PROCESSING_PLACEHOLDER = "Processing document edit..."


@dataclass(frozen=True)
class DirectiveParse:
    state: DirectiveState
    tag: Optional[str] = None
    payload_kind: Optional[str] = None
    payload: str = ""
    record: Optional[Dict[str, Any]] = None
    edits: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    error: Optional[str] = None
    start: Optional[int] = None
    end: Optional[int] = None

    @property
    def is_complete(self) -> bool:
        return self.state == DirectiveState.CLOSED

    def raise_for_state(self) -> None:
        if self.state == DirectiveState.MALFORMED:
            raise MalformedDirectiveError(self.error or "malformed directive", tag=self.tag)


@dataclass(frozen=True)
class DirectiveSpan:
    start: int
    end: int
    tag: str
    complete: bool


def contains_directive(text: str) -> bool:
    return bool(text) and _BEGIN_RE.search(text) is not None


def _malformed(reason: str, **kwargs: Any) -> DirectiveParse:
    return DirectiveParse(state=DirectiveState.MALFORMED, error=reason, **kwargs)


def _trim_partial_close(payload: str, kind: str) -> str:
    # Hide a half-received "</content>" at the tail of a streaming payload
    marker = f"</{kind}>"
    idx = payload.rfind("<")
    if idx == -1:
        return payload
    tail = payload[idx:].lower()
    if marker.startswith(tail):
        return payload[:idx]
    return payload


def _resolve_payload(kind: str, payload: str) -> Tuple[Optional[Dict[str, Any]], List[Tuple[str, str]], Optional[str]]:
    if kind == "diff":
        normalized = payload.replace("\r\n", "\n")
        edits = [(search, replace) for search, replace in _DIFF_BLOCK_RE.findall(normalized)]
        if not edits:
            return None, [], "diff payload has no SEARCH/REPLACE block"
        return None, edits, None

    stripped = payload.strip()
    if not stripped:
        return None, [], "empty payload"
    if stripped[0] in "{[":
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError as exc:
            return None, [], f"payload is not valid JSON: {exc.msg}"
        if not isinstance(parsed, dict):
            return None, [], "payload must be a JSON object"
        return parsed, [], None
    return None, [], None


def parse_directive(text: str) -> DirectiveParse:
    """Classify the first directive in ``text``.

    For a strictly growing buffer the returned state never regresses under
    ``NONE < OPENING < PAYLOAD_IN_PROGRESS < PAYLOAD_COMPLETE < CLOSED``; the only other
    move is a jump to ``MALFORMED``, which is sticky.
    """

    if not text:
        return DirectiveParse(state=DirectiveState.NONE)

    begin = _BEGIN_RE.search(text)
    end = _END_RE.search(text)

    if begin is None:
        if end is not None:
            return _malformed("end marker without begin marker", start=end.start(), end=end.end())
        return DirectiveParse(state=DirectiveState.NONE)

    tag = begin.group(1).lower()
    if end is not None and end.start() < begin.start():
        return _malformed("end marker without begin marker", start=end.start(), end=end.end())
    if end is not None and end.group(1).lower() != tag:
        return _malformed(
            f"</{end.group(1).lower()}> does not close <{tag}>",
            tag=tag,
            start=begin.start(),
            end=end.end(),
        )

    region_end = end.start() if end is not None else len(text)
    span_end = end.end() if end is not None else None
    payload_open = _PAYLOAD_OPEN_RE.search(text, begin.end(), region_end)
    if payload_open is None:
        if end is not None:
            return _malformed("directive closed without a payload", tag=tag, start=begin.start(), end=span_end)
        return DirectiveParse(state=DirectiveState.OPENING, tag=tag, start=begin.start())

    kind = payload_open.group(1).lower()
    payload_close = _PAYLOAD_CLOSE_RE[kind].search(text, payload_open.end(), region_end)
    if payload_close is None:
        if end is not None:
            return _malformed(
                "directive closed while its payload was still open",
                tag=tag,
                payload_kind=kind,
                payload=text[payload_open.end():region_end],
                start=begin.start(),
                end=span_end,
            )
        return DirectiveParse(
            state=DirectiveState.PAYLOAD_IN_PROGRESS,
            tag=tag,
            payload_kind=kind,
            payload=_trim_partial_close(text[payload_open.end():], kind),
            start=begin.start(),
        )

    payload = text[payload_open.end():payload_close.start()]
    record, edits, error = _resolve_payload(kind, payload)
    if error:
        return _malformed(error, tag=tag, payload_kind=kind, payload=payload, start=begin.start(), end=span_end)

    return DirectiveParse(
        state=DirectiveState.CLOSED if end is not None else DirectiveState.PAYLOAD_COMPLETE,
        tag=tag,
        payload_kind=kind,
        payload=payload,
        record=record,
        edits=tuple(edits),
        start=begin.start(),
        end=span_end,
    )


def directive_state(text: str) -> DirectiveState:
    return parse_directive(text).state


def iter_directive_spans(text: str) -> Iterator[DirectiveSpan]:
    """Yield every directive block in order, the last one possibly unterminated."""
    pos = 0
    while True:
        begin = _BEGIN_RE.search(text, pos)
        if begin is None:
            return
        tag = begin.group(1).lower()
        close = _END_TAG_RE[tag].search(text, begin.end())
        if close is None:
            yield DirectiveSpan(start=begin.start(), end=len(text), tag=tag, complete=False)
            return
        yield DirectiveSpan(start=begin.start(), end=close.end(), tag=tag, complete=True)
        pos = close.end()


def display_text(text: str) -> str:
    """Safe text for a live indicator: never shows half-written markup."""
    parsed = parse_directive(text)
    if parsed.state == DirectiveState.NONE:
        return text
    if parsed.state == DirectiveState.OPENING:
        return OPENING_PLACEHOLDER
    if parsed.payload.strip():
        return parsed.payload.strip()
    if parsed.state == DirectiveState.MALFORMED and parsed.tag is None:
        return text
    return PROCESSING_PLACEHOLDER
