"""Approximate token counting for the context pruner.

The pruner only needs a deterministic estimate per message; real usage
reports recalibrate these numbers after each model call. Callers with a
model tokenizer inject their own counter instead.
"""

from __future__ import annotations

import json
import math
from typing import Any, Callable, Optional

from langchain_core.messages import BaseMessage

from turnstream.core.settings import get_settings
from turnstream.messages.content import THINKING_TYPES, ContentType, block_type, thinking_text

TokenCounter = Callable[[BaseMessage], int]
TextCounter = Callable[[str], int]

_SKIPPED_BLOCK_TYPES = frozenset({ContentType.ERROR.value, ContentType.IMAGE_URL.value})


def count_tokens_approximately(text: str, *, chars_per_token: Optional[float] = None) -> int:
    """Fast approximate token count for a string, rounded up."""
    if not text:
        return 0
    ratio = chars_per_token or get_settings().chars_per_token
    return int(math.ceil(len(text) / ratio))


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def get_token_count_for_message(
    message: BaseMessage,
    get_token_count: TextCounter,
    *,
    tokens_per_message: Optional[int] = None,
) -> int:
    """Estimate the token cost of a single message.

    Args:
        message: Any langchain message
        get_token_count: Counts tokens in a plain string
        tokens_per_message: Fixed overhead per message (defaults to settings)

    Returns:
        Estimated token count including the per-message overhead
    """
    overhead = get_settings().tokens_per_message if tokens_per_message is None else tokens_per_message
    num_tokens = overhead

    def process_value(value: Any) -> None:
        nonlocal num_tokens
        if isinstance(value, str):
            num_tokens += get_token_count(value)
            return
        if not isinstance(value, list):
            num_tokens += get_token_count(_as_text(value))
            return
        for item in value:
            if isinstance(item, str):
                num_tokens += get_token_count(item)
                continue
            item_type = block_type(item)
            if item_type is None or item_type in _SKIPPED_BLOCK_TYPES:
                continue
            if item_type == ContentType.TOOL_CALL.value:
                tool_call = item.get("tool_call") or {}
                for key in ("name", "args", "output"):
                    field_value = tool_call.get(key)
                    if isinstance(field_value, str) and field_value:
                        num_tokens += get_token_count(field_value)
                continue
            nested = item.get(item_type)
            if nested is None and item_type in THINKING_TYPES:
                nested = thinking_text(item)
            if nested is None:
                continue
            process_value(nested)

    process_value(message.content)

    for tool_call in getattr(message, "tool_calls", None) or []:
        num_tokens += get_token_count(tool_call.get("name") or "")
        num_tokens += get_token_count(_as_text(tool_call.get("args")))

    return num_tokens


def create_token_counter(
    *,
    chars_per_token: Optional[float] = None,
    tokens_per_message: Optional[int] = None,
) -> TokenCounter:
    """Build the default message counter from the character heuristic."""

    def count_text(text: str) -> int:
        return count_tokens_approximately(text, chars_per_token=chars_per_token)

    def token_counter(message: BaseMessage) -> int:
        return get_token_count_for_message(
            message, count_text, tokens_per_message=tokens_per_message
        )

    return token_counter
