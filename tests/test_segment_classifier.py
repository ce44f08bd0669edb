import pytest

from canvaschat.core.state_machine import DirectiveState
from canvaschat.domain.message_models import SegmentKind
from canvaschat.services.segment_classifier import classify, trailing_directive_state

CLOSED = '<write_to_file><content>{"Problem": "Slow vet visits"}</content></write_to_file>'


def test_empty_text_has_no_segments():
    assert classify("") == []


def test_prose_only():
    segments = classify("Let's look at your customer segments.")
    assert len(segments) == 1
    assert segments[0].kind == SegmentKind.PROSE
    assert segments[0].directive_state is None


@pytest.mark.parametrize(
    "text",
    [
        "plain",
        "   ",
        "intro " + CLOSED,
        CLOSED + "\n\n",
        "a " + CLOSED + " b " + CLOSED + " c",
        "start <write_to_file><content>{unfinished",
        "oops </write_to_file> done",
    ],
)
def test_segments_round_trip(text):
    for streaming in (False, True):
        segments = classify(text, streaming=streaming)
        assert "".join(s.text for s in segments) == text


def test_closed_directive_between_prose():
    segments = classify("Here you go: " + CLOSED + " Anything else?")
    assert [s.kind for s in segments] == [SegmentKind.PROSE, SegmentKind.DIRECTIVE, SegmentKind.PROSE]
    directive = segments[1]
    assert directive.directive_state == DirectiveState.CLOSED
    assert directive.display == '{"Problem": "Slow vet visits"}'


def test_unterminated_directive_depends_on_mode():
    text = 'Here you go: <write_to_file><content>{"a": 1'
    live = classify(text, streaming=True)
    final = classify(text)
    assert live[-1].directive_state == DirectiveState.PAYLOAD_IN_PROGRESS
    assert final[-1].directive_state == DirectiveState.MALFORMED
    assert trailing_directive_state(live) == DirectiveState.PAYLOAD_IN_PROGRESS


def test_malformed_directive_keeps_prose_renderable():
    segments = classify("intro <write_to_file><content>{bad json</content></write_to_file>")
    assert segments[0].kind == SegmentKind.PROSE
    assert segments[0].text == "intro "
    assert segments[1].directive_state == DirectiveState.MALFORMED


def test_every_directive_is_extracted():
    segments = classify("a " + CLOSED + " b " + CLOSED)
    directives = [s for s in segments if s.kind == SegmentKind.DIRECTIVE]
    assert len(directives) == 2
    assert all(s.directive_state == DirectiveState.CLOSED for s in directives)


def test_stray_end_marker_stays_in_prose():
    segments = classify("oops </write_to_file> done")
    assert len(segments) == 1
    assert segments[0].kind == SegmentKind.PROSE


def test_classify_is_idempotent():
    text = "a " + CLOSED + " tail <document_edit><content>x"
    assert classify(text, streaming=True) == classify(text, streaming=True)


def test_trailing_state_without_directive():
    assert trailing_directive_state(classify("hi")) == DirectiveState.NONE
