from __future__ import annotations

from langchain_core.messages import AIMessageChunk

from turnstream.core.constants import Provider
from turnstream.streaming.normalizers import normalize_chunk


def test_plain_text_chunk_passes_through() -> None:
    delta = normalize_chunk(AIMessageChunk(content="hello", id="run-1"), Provider.ANTHROPIC)

    assert delta.content == "hello"
    assert delta.raw_content == "hello"
    assert delta.reasoning_flagged is False
    assert delta.id == "run-1"
    assert not delta.is_empty


def test_structured_thinking_block_is_flagged() -> None:
    chunk = AIMessageChunk(content=[{"type": "thinking", "thinking": "hmm", "index": 0}])

    delta = normalize_chunk(chunk, Provider.ANTHROPIC)

    assert delta.reasoning_flagged is True
    assert delta.content == chunk.content


def test_reasoning_key_replaces_content() -> None:
    chunk = AIMessageChunk(content="", additional_kwargs={"reasoning_content": "step one"})

    delta = normalize_chunk(chunk, Provider.DEEPSEEK)

    assert delta.content == "step one"
    assert delta.has_reasoning
    assert delta.reasoning_flagged is False


def test_custom_reasoning_key() -> None:
    chunk = {"content": "", "additional_kwargs": {"thoughts": "deep"}}

    delta = normalize_chunk(chunk, Provider.GOOGLE, reasoning_key="thoughts")

    assert delta.content == "deep"


def test_openai_summary_becomes_content() -> None:
    chunk = AIMessageChunk(
        content="",
        additional_kwargs={"reasoning": {"summary": [{"type": "summary_text", "text": "Weighing"}]}},
    )

    delta = normalize_chunk(chunk, Provider.OPENAI)

    assert delta.reasoning_flagged is True
    assert delta.content == "Weighing"


def test_summary_ignored_for_other_providers() -> None:
    chunk = AIMessageChunk(
        content="",
        additional_kwargs={"reasoning": {"summary": [{"type": "summary_text", "text": "Weighing"}]}},
    )

    delta = normalize_chunk(chunk, Provider.ANTHROPIC)

    assert delta.reasoning_flagged is False
    assert delta.is_empty


def test_openrouter_reasoning_flagged_when_content_empty() -> None:
    chunk = AIMessageChunk(
        content="",
        additional_kwargs={"reasoning": "Thinking it over", "reasoning_details": [{"type": "reasoning.text"}]},
    )

    delta = normalize_chunk(chunk, Provider.OPENROUTER)

    assert delta.reasoning_flagged is True
    assert delta.content == "Thinking it over"


def test_openrouter_prefers_text_content() -> None:
    chunk = AIMessageChunk(content="Answer", additional_kwargs={"reasoning": "leftover"})

    delta = normalize_chunk(chunk, Provider.OPENROUTER)

    assert delta.reasoning_flagged is False
    assert delta.content == "Answer"


def test_tool_call_chunks_are_indexed() -> None:
    chunk = AIMessageChunk(
        content="",
        tool_call_chunks=[{"name": "search", "args": "", "id": "call_1", "index": 0, "type": "tool_call_chunk"}],
    )

    delta = normalize_chunk(chunk, Provider.OPENAI)

    assert delta.has_indexed_tool_call_chunks
    assert delta.has_committed_tool_calls
    assert delta.tool_calls[0]["id"] == "call_1"


def test_partial_tool_call_is_not_committed() -> None:
    chunk = AIMessageChunk(
        content="",
        tool_call_chunks=[{"name": None, "args": '{"q"', "id": None, "index": 0, "type": "tool_call_chunk"}],
    )

    delta = normalize_chunk(chunk, Provider.OPENAI)

    assert delta.has_tool_activity
    assert not delta.has_committed_tool_calls
