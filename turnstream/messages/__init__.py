"""Message model, token estimation and context-window pruning."""

from .content import ContentType, add_thinking_block, find_block
from .prune import (
    ContextPruner,
    PruneConstraints,
    PruneResult,
    calculate_total_tokens,
    get_messages_within_token_limit,
    prune_messages,
)
from .tokens import count_tokens_approximately, create_token_counter, get_token_count_for_message

__all__ = [
    "ContentType",
    "ContextPruner",
    "PruneConstraints",
    "PruneResult",
    "add_thinking_block",
    "calculate_total_tokens",
    "count_tokens_approximately",
    "create_token_counter",
    "find_block",
    "get_messages_within_token_limit",
    "get_token_count_for_message",
    "prune_messages",
]
