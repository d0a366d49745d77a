"""Content-part variants shared by the stream engine, aggregator and pruner."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict, Union

from langchain_core.messages import AIMessage, BaseMessage


class ContentType(str, Enum):
    TEXT = "text"
    THINK = "think"
    THINKING = "thinking"
    REASONING = "reasoning"
    REASONING_CONTENT = "reasoning_content"
    TOOL_CALL = "tool_call"
    IMAGE_URL = "image_url"
    AGENT_UPDATE = "agent_update"
    ERROR = "error"


THINKING_TYPES = frozenset(
    {ContentType.THINKING.value, ContentType.REASONING.value, ContentType.REASONING_CONTENT.value}
)


class TextPart(TypedDict, total=False):
    type: str
    text: str
    tool_call_ids: List[str]


class ThinkPart(TypedDict, total=False):
    type: str
    think: str


class ToolCallPart(TypedDict, total=False):
    type: str
    tool_call: Dict[str, Any]


class ImageUrlPart(TypedDict, total=False):
    type: str
    image_url: Dict[str, Any]
    file_id: str


class AgentUpdatePart(TypedDict, total=False):
    type: str
    agent_update: Dict[str, Any]


ContentPart = Union[TextPart, ThinkPart, ToolCallPart, ImageUrlPart, AgentUpdatePart]
MessageContent = Union[str, List[Dict[str, Any]]]


def block_type(block: Any) -> Optional[str]:
    """Return the `type` tag of a content block, if it has one."""
    if isinstance(block, dict):
        value = block.get("type")
    else:
        value = getattr(block, "type", None)
    if isinstance(value, Enum):
        value = value.value
    return value if isinstance(value, str) else None


def is_thinking_block(block: Any) -> bool:
    return block_type(block) in THINKING_TYPES


def has_type_prefix(block: Any, *prefixes: str) -> bool:
    """Whether a block's tag starts with one of `prefixes` (`text_delta` matches `text`)."""
    kind = block_type(block)
    return kind is not None and kind.startswith(tuple(prefixes))


def thinking_text(block: Any) -> str:
    """Extract reasoning text from a structured thinking block.

    Anthropic uses `thinking`, most OpenAI-compatible providers `reasoning`,
    and Bedrock nests it under `reasoningText.text`.
    """
    if not isinstance(block, dict):
        return ""
    for key in ("thinking", "reasoning"):
        value = block.get(key)
        if isinstance(value, str):
            return value
    nested = block.get("reasoningText")
    if isinstance(nested, dict) and isinstance(nested.get("text"), str):
        return nested["text"]
    value = block.get(ContentType.REASONING_CONTENT.value)
    if isinstance(value, str):
        return value
    return ""


def is_empty_content(content: Any) -> bool:
    if content is None:
        return True
    if isinstance(content, (str, list)):
        return len(content) == 0
    return False


def find_block(message: Optional[BaseMessage], content_type: str) -> Optional[Dict[str, Any]]:
    """Return the first block of `content_type` in a message's list content."""
    if message is None or not isinstance(message.content, list):
        return None
    for block in message.content:
        if block_type(block) == content_type:
            return block
    return None


def add_thinking_block(message: BaseMessage, block: Dict[str, Any]) -> AIMessage:
    """Return a copy of an AI message with `block` as its first content part.

    The stored message is left untouched; a block already present by
    identity or equality is not duplicated.
    """
    if isinstance(message.content, list):
        content = list(message.content)
    elif message.content:
        content = [{"type": ContentType.TEXT.value, "text": message.content}]
    else:
        content = []
    if not any(part is block or part == block for part in content):
        content.insert(0, block)
    return message.model_copy(update={"content": content})
