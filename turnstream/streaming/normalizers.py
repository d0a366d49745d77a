"""Normalizers for turning provider chunks into one closed delta shape.

Provider adapters hand us langchain `AIMessageChunk`s whose reasoning lives
in different places (structured content blocks, `additional_kwargs`
fields, OpenAI reasoning summaries). Everything downstream of
`normalize_chunk` only sees `StreamDelta`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from turnstream.core.constants import OPENAI_LIKE_PROVIDERS, Provider
from turnstream.core.settings import get_settings
from turnstream.messages.content import MessageContent, is_empty_content, is_thinking_block

DeltaContent = Optional[MessageContent]


@dataclass
class StreamDelta:
    """One provider delta after normalization.

    `content` is what gets dispatched; `raw_content` is the chunk's own
    content, which the phase state machine inspects for inline tags.
    """

    content: DeltaContent = None
    raw_content: DeltaContent = None
    reasoning: Any = None
    reasoning_flagged: bool = False
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    tool_call_chunks: List[Dict[str, Any]] = field(default_factory=list)
    id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return is_empty_content(self.content)

    @property
    def has_reasoning(self) -> bool:
        if isinstance(self.reasoning, (str, list)):
            return not is_empty_content(self.reasoning)
        return bool(self.reasoning)

    @property
    def has_tool_activity(self) -> bool:
        return bool(self.tool_calls) or bool(self.tool_call_chunks)

    @property
    def has_committed_tool_calls(self) -> bool:
        """All parsed tool calls carry both an id and a name."""
        return bool(self.tool_calls) and all(
            call.get("id") and call.get("name") for call in self.tool_calls
        )

    @property
    def has_indexed_tool_call_chunks(self) -> bool:
        if not self.tool_call_chunks:
            return False
        index = self.tool_call_chunks[0].get("index")
        return isinstance(index, int) and not isinstance(index, bool)


def _field(chunk: Any, name: str, default: Any = None) -> Any:
    if isinstance(chunk, dict):
        return chunk.get(name, default)
    return getattr(chunk, name, default)


def _summary_text(reasoning: Any) -> Optional[str]:
    """First OpenAI reasoning-summary text, if any."""
    if not isinstance(reasoning, dict):
        return None
    summary = reasoning.get("summary")
    if not isinstance(summary, list) or not summary:
        return None
    first = summary[0]
    text = first.get("text") if isinstance(first, dict) else None
    return text if isinstance(text, str) and text else None


def _as_dicts(items: Any) -> List[Dict[str, Any]]:
    if not items:
        return []
    return [dict(item) for item in items if isinstance(item, dict)]


def normalize_chunk(
    chunk: Any,
    provider: Optional[str] = None,
    reasoning_key: Optional[str] = None,
) -> StreamDelta:
    """Normalize an `AIMessageChunk` (or a dict of the same shape).

    Args:
        chunk: The streamed chunk
        provider: Provider identifier, see `Provider`
        reasoning_key: `additional_kwargs` field holding reasoning text

    Returns:
        StreamDelta with the effective content resolved per provider
    """
    reasoning_key = reasoning_key or get_settings().default_reasoning_key
    raw_content = _field(chunk, "content")
    kwargs = _field(chunk, "additional_kwargs") or {}
    reasoning = kwargs.get(reasoning_key)
    openai_like = provider in OPENAI_LIKE_PROVIDERS
    summary = _summary_text(kwargs.get("reasoning")) if openai_like else None

    flagged = False
    if isinstance(raw_content, list) and raw_content and is_thinking_block(raw_content[0]):
        flagged = True
    elif openai_like and summary:
        flagged = True
        reasoning = summary
    elif provider == Provider.OPENROUTER and is_empty_content(raw_content):
        details = kwargs.get("reasoning_details")
        openrouter_reasoning = kwargs.get("reasoning")
        if (isinstance(details, list) and details) or (
            isinstance(openrouter_reasoning, str) and openrouter_reasoning
        ):
            flagged = True
            reasoning = openrouter_reasoning or reasoning

    if openai_like and summary:
        content: DeltaContent = summary
    elif provider == Provider.OPENROUTER:
        openrouter_reasoning = kwargs.get("reasoning")
        if isinstance(raw_content, str) and raw_content:
            content = raw_content
        elif isinstance(openrouter_reasoning, str) and openrouter_reasoning:
            content = openrouter_reasoning
        else:
            content = raw_content
    elif isinstance(reasoning, str) and reasoning:
        content = reasoning
    else:
        content = raw_content

    chunk_id = _field(chunk, "id")
    return StreamDelta(
        content=content,
        raw_content=raw_content,
        reasoning=reasoning,
        reasoning_flagged=flagged,
        tool_calls=_as_dicts(_field(chunk, "tool_calls")),
        tool_call_chunks=_as_dicts(_field(chunk, "tool_call_chunks")),
        id=chunk_id if isinstance(chunk_id, str) and chunk_id else None,
    )
