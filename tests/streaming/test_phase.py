from __future__ import annotations

from turnstream.streaming.normalizers import StreamDelta
from turnstream.streaming.phase import (
    PhaseState,
    PhaseSwitch,
    TokenState,
    parse_thinking_content,
    strip_think_tags,
)


def _text(value: str) -> StreamDelta:
    return StreamDelta(content=value, raw_content=value)


def test_parse_splits_inline_think_pair() -> None:
    assert parse_thinking_content("a<think>b</think>c") == ("ac", "b")


def test_parse_unterminated_tag_sends_rest_to_thinking() -> None:
    assert parse_thinking_content("a<think>b") == ("a", "b")


def test_parse_joins_multiple_spans_with_newline() -> None:
    text, thinking = parse_thinking_content(" <think>x</think>mid<think> y </think> ")
    assert text == "mid"
    assert thinking == "x\n y"


def test_parse_without_tags_is_all_text() -> None:
    assert parse_thinking_content("  plain  ") == ("plain", "")


def test_strip_think_tags_removes_markers_only() -> None:
    assert strip_think_tags("<think>plan</think>") == "plan"


def test_structured_reasoning_then_content_switches_to_text() -> None:
    phase = PhaseState()
    reasoning = StreamDelta(
        content=[{"type": "thinking", "thinking": "hmm"}],
        raw_content=[{"type": "thinking", "thinking": "hmm"}],
        reasoning_flagged=True,
    )

    assert phase.advance(reasoning) == "structured_reasoning"
    assert phase.current == TokenState.THINK
    assert phase.switch == PhaseSwitch.REASONING
    assert phase.step_key_suffix() == "reasoning"

    assert phase.advance(_text("Answer")) == "reasoning_ended"
    assert phase.current == TokenState.TEXT
    assert phase.switch == PhaseSwitch.CONTENT
    assert phase.step_key_suffix() == "post-reasoning"


def test_reasoning_field_with_empty_content_enters_think() -> None:
    phase = PhaseState()
    delta = StreamDelta(content="step one", raw_content="", reasoning="step one")

    phase.advance(delta)

    assert phase.current == TokenState.THINK
    # Reasoning deltas are not remembered for the closing-tag lookback
    assert phase.last_token is None


def test_tool_fragments_end_reasoning_phase() -> None:
    phase = PhaseState(current=TokenState.THINK, switch=PhaseSwitch.REASONING)
    delta = StreamDelta(content="", raw_content="", tool_call_chunks=[{"index": 0, "args": "{"}])

    phase.advance(delta)

    assert phase.current == TokenState.TEXT


def test_inline_tags_open_then_close_by_lookback() -> None:
    phase = PhaseState()

    phase.advance(_text("<think>"))
    assert phase.current == TokenState.THINK

    phase.advance(_text("plan"))
    assert phase.current == TokenState.THINK

    phase.advance(_text("</think>"))
    assert phase.current == TokenState.THINK

    phase.advance(_text("Answer"))
    assert phase.current == TokenState.TEXT
    assert phase.step_key_suffix() == "post-reasoning"


def test_inline_pair_in_one_delta_is_think_and_text() -> None:
    phase = PhaseState()

    assert phase.advance(_text("a<think>b</think>c")) == "inline_pair"
    assert phase.current == TokenState.THINK_AND_TEXT
    assert phase.step_key_suffix() == "reasoning"

    phase.enter_text()
    assert phase.current == TokenState.TEXT
    assert phase.step_key_suffix() == "post-reasoning"


def test_plain_text_keeps_initial_state() -> None:
    phase = PhaseState()

    assert phase.advance(_text("hello")) is None
    assert phase.current == TokenState.TEXT
    assert phase.step_key_suffix() is None
    assert phase.last_token == "hello"
