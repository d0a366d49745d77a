"""Context window pruning.

Trims message history to a model's token budget while keeping the payload
structurally valid for the provider:

- the leading system message is always kept and paid for up front;
- a window never opens on a tool result whose tool call was pruned;
- with extended thinking, the latest tool-using assistant turn keeps its
  thinking block even when the message that produced it is pruned.

Token estimates are recalibrated against real usage reports after each
model call, within a configurable safety band.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from langchain_core.messages import AIMessage, BaseMessage
from loguru import logger

from turnstream.core.constants import Provider
from turnstream.core.exceptions import EmptyContextAfterPruningError, MalformedThinkingSequenceError
from turnstream.core.settings import get_settings
from turnstream.messages.content import ContentType, add_thinking_block, find_block
from turnstream.messages.tokens import TokenCounter, create_token_counter

TokenMap = Dict[int, int]

_SEQUENCE_TYPES = frozenset({"ai", "tool"})
_TOOL_SAFE_START_TYPES = frozenset({"ai", "human"})


@dataclass
class UsageTotals:
    input_tokens: int
    output_tokens: int
    total_tokens: int


@dataclass
class PruneConstraints:
    """Provider-driven rules the pruned window must satisfy."""

    start_type: Optional[Sequence[str]] = None
    thinking_enabled: bool = False
    provider: Optional[str] = None
    reasoning_type: Optional[str] = None

    def resolved_reasoning_type(self) -> str:
        if self.reasoning_type:
            return self.reasoning_type
        if self.provider == Provider.BEDROCK:
            return ContentType.REASONING_CONTENT.value
        return ContentType.THINKING.value


@dataclass
class TokenLimitResult:
    context: List[BaseMessage]
    remaining_context_tokens: int
    messages_to_refine: List[BaseMessage] = field(default_factory=list)
    thinking_start_index: int = -1


@dataclass
class PruneResult:
    context: List[BaseMessage]
    index_token_count_map: TokenMap


@dataclass
class _ThinkingSequence:
    """Latest uninterrupted ai/tool run and the thinking block it owns."""

    start: int
    end: int
    block_index: int = -1
    block: Optional[Dict[str, Any]] = None


def _valid_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and value == value
        and value > 0
    )


def _usage_value(usage: Any, key: str) -> Any:
    if isinstance(usage, Mapping):
        return usage.get(key)
    return getattr(usage, key, None)


def has_valid_usage(usage: Any) -> bool:
    """Whether a usage report carries enough numbers to recalibrate from."""
    if not usage:
        return False
    details = _usage_value(usage, "input_token_details") or {}
    has_input = _valid_number(_usage_value(usage, "input_tokens")) or (
        _valid_number(_usage_value(details, "cache_creation"))
        or _valid_number(_usage_value(details, "cache_read"))
    )
    return has_input and _valid_number(_usage_value(usage, "output_tokens"))


def calculate_total_tokens(usage: Any) -> UsageTotals:
    """Sum a provider usage report, counting prompt-cache reads and writes as input."""
    base_input = _usage_value(usage, "input_tokens")
    details = _usage_value(usage, "input_token_details") or {}
    cache_creation = _usage_value(details, "cache_creation")
    cache_read = _usage_value(details, "cache_read")
    output = _usage_value(usage, "output_tokens")

    input_tokens = sum(
        int(value) for value in (base_input, cache_creation, cache_read) if _valid_number(value)
    )
    output_tokens = int(output) if _valid_number(output) else 0
    return UsageTotals(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
    )


def _latest_thinking_sequence(
    messages: Sequence[BaseMessage],
    reasoning_type: str,
    hint_index: int = -1,
) -> Optional[_ThinkingSequence]:
    if not messages or messages[-1].type not in _SEQUENCE_TYPES:
        return None
    end = len(messages) - 1
    start = end
    while start > 0 and messages[start - 1].type in _SEQUENCE_TYPES:
        start -= 1
    # A lone trailing ai/tool message is not a tool-use sequence
    if start == end:
        return None

    sequence = _ThinkingSequence(start=start, end=end)
    candidates: List[int] = []
    if start <= hint_index <= end:
        candidates.append(hint_index)
    candidates.extend(i for i in range(end, start - 1, -1) if messages[i].type == "ai")
    for index in candidates:
        block = find_block(messages[index], reasoning_type)
        if block is not None:
            sequence.block_index = index
            sequence.block = block
            break
    return sequence


def _trim_to_start_type(
    messages: Sequence[BaseMessage],
    window: List[int],
    current_tokens: int,
    token_map: Mapping[int, int],
    start_type: Optional[Sequence[str]],
) -> tuple[List[int], int]:
    """Drop the oldest window entries until one of an allowed start type leads."""
    if not window:
        return window, current_tokens
    required: Set[str] = set(start_type or ())
    if messages[window[0]].type == "tool":
        required |= _TOOL_SAFE_START_TYPES
    if not required:
        return window, current_tokens

    for position, index in enumerate(window):
        if messages[index].type in required:
            return window[position:], current_tokens
        current_tokens -= token_map.get(index, 0)
    return [], current_tokens


def get_messages_within_token_limit(
    messages: Sequence[BaseMessage],
    max_context_tokens: int,
    index_token_count_map: Mapping[int, int],
    *,
    start_type: Optional[Sequence[str]] = None,
    thinking_enabled: bool = False,
    token_counter: Optional[TokenCounter] = None,
    thinking_start_index: int = -1,
    reasoning_type: str = ContentType.THINKING.value,
    reply_primer_tokens: Optional[int] = None,
) -> TokenLimitResult:
    """Return the largest trailing slice of `messages` that fits the budget.

    Args:
        messages: Full history, oldest first, optionally led by a system message
        max_context_tokens: Provider input budget
        index_token_count_map: Token estimate per history index
        start_type: Message types the window may open with
        thinking_enabled: Enforce thinking-block retention for the latest turn
        token_counter: Counts the cost of a reattached thinking block
        thinking_start_index: Index of a known thinking-block owner from a previous call
        reasoning_type: Content type of the provider's thinking blocks
        reply_primer_tokens: Tokens reserved for the reply preamble

    Returns:
        TokenLimitResult with the chronological context

    Raises:
        EmptyContextAfterPruningError: Nothing can be retained
        MalformedThinkingSequenceError: The mandatory thinking block cannot be kept
    """
    primer = get_settings().reply_primer_tokens if reply_primer_tokens is None else reply_primer_tokens
    messages = list(messages)
    instructions = messages[0] if messages and messages[0].type == "system" else None
    first_index = 1 if instructions is not None else 0
    instructions_tokens = index_token_count_map.get(0, 0) if instructions is not None else 0
    initial_context_tokens = max_context_tokens - instructions_tokens

    if initial_context_tokens < primer:
        raise EmptyContextAfterPruningError(
            max_tokens=max_context_tokens,
            required_tokens=instructions_tokens + primer,
            message_count=len(messages),
        )

    def cost(index: int) -> int:
        return index_token_count_map.get(index, 0)

    current_tokens = primer
    cut = len(messages)
    while cut > first_index:
        candidate = cost(cut - 1)
        if current_tokens + candidate > initial_context_tokens:
            break
        current_tokens += candidate
        cut -= 1

    window = list(range(cut, len(messages)))
    window, current_tokens = _trim_to_start_type(
        messages, window, current_tokens, index_token_count_map, start_type
    )
    pruned_any = cut > first_index

    sequence = (
        _latest_thinking_sequence(messages, reasoning_type, thinking_start_index)
        if thinking_enabled
        else None
    )
    owner_in_window = sequence is not None and sequence.block_index in window
    if sequence is None or not pruned_any or owner_in_window:
        return _build_result(
            messages,
            instructions,
            window,
            initial_context_tokens - current_tokens,
            first_index,
            max_context_tokens,
            sequence.block_index if sequence is not None else -1,
        )

    if sequence.block_index < 0:
        raise MalformedThinkingSequenceError(
            "there is a thinking sequence but no ai messages with thinking blocks",
            max_tokens=max_context_tokens,
        )
    if sequence.block is None:
        raise MalformedThinkingSequenceError(
            "there is a thinking sequence but no thinking block found",
            max_tokens=max_context_tokens,
        )

    # Oldest retained ai message of the latest turn receives the block
    assistant_index = -1
    for index in reversed(window):
        message_type = messages[index].type
        if message_type == "ai":
            assistant_index = index
        if assistant_index > -1 and message_type in ("human", "system"):
            break
    if assistant_index == -1:
        raise MalformedThinkingSequenceError(
            "there is a thinking sequence but no ai messages to append thinking blocks to",
            max_tokens=max_context_tokens,
        )

    counter = token_counter or create_token_counter()
    thinking_tokens = counter(AIMessage(content=[sequence.block]))
    overrides: Dict[int, BaseMessage] = {
        assistant_index: add_thinking_block(messages[assistant_index], sequence.block)
    }
    remaining = initial_context_tokens - current_tokens - thinking_tokens
    if remaining >= 0:
        return _build_result(
            messages,
            instructions,
            window,
            remaining,
            first_index,
            max_context_tokens,
            assistant_index,
            overrides,
        )

    # Second pass: reserve room for the thinking message, then refill
    reserved = cost(assistant_index) + thinking_tokens
    second_budget = initial_context_tokens - reserved
    if second_budget < primer:
        raise MalformedThinkingSequenceError(
            f"thinking block needs {reserved} tokens but only "
            f"{initial_context_tokens - primer} are available",
            max_tokens=max_context_tokens,
        )

    current_tokens = primer
    second_cut = len(messages)
    while second_cut > assistant_index + 1:
        candidate = cost(second_cut - 1)
        if current_tokens + candidate > second_budget:
            break
        current_tokens += candidate
        second_cut -= 1

    second_window = list(range(second_cut, len(messages)))
    second_window, current_tokens = _trim_to_start_type(
        messages, second_window, current_tokens, index_token_count_map, start_type
    )
    if second_window and messages[second_window[0]].type == "ai":
        owner = second_window[0]
        overrides = {owner: add_thinking_block(messages[owner], sequence.block)}
    else:
        second_window.insert(0, assistant_index)

    logger.debug(
        "thinking_block_second_pass",
        assistant_index=assistant_index,
        reserved_tokens=reserved,
        retained=len(second_window),
    )
    return _build_result(
        messages,
        instructions,
        second_window,
        second_budget - current_tokens,
        first_index,
        max_context_tokens,
        assistant_index,
        overrides,
    )


def _build_result(
    messages: List[BaseMessage],
    instructions: Optional[BaseMessage],
    window: List[int],
    remaining_context_tokens: int,
    first_index: int,
    max_context_tokens: int,
    thinking_start_index: int,
    overrides: Optional[Dict[int, BaseMessage]] = None,
) -> TokenLimitResult:
    if not window:
        if instructions is None:
            raise EmptyContextAfterPruningError(
                max_tokens=max_context_tokens,
                required_tokens=None,
                message_count=len(messages),
            )
        logger.warning(
            "context_only_instructions",
            max_tokens=max_context_tokens,
            message_count=len(messages),
        )

    overrides = overrides or {}
    retained = set(window)
    context: List[BaseMessage] = [instructions] if instructions is not None else []
    context.extend(overrides.get(index, messages[index]) for index in window)
    return TokenLimitResult(
        context=context,
        remaining_context_tokens=remaining_context_tokens,
        messages_to_refine=[
            messages[index] for index in range(first_index, len(messages)) if index not in retained
        ],
        thinking_start_index=thinking_start_index,
    )


def _reshape_openai_reasoning(messages: List[BaseMessage]) -> List[BaseMessage]:
    """Move OpenAI-compatible reasoning into a signed thinking block.

    Works on a copy: stored history keeps the provider's original shape.
    """
    reshaped = list(messages)
    for index, message in enumerate(reshaped):
        if message.type != "ai" or not getattr(message, "tool_calls", None):
            continue
        kwargs = message.additional_kwargs or {}
        reasoning = kwargs.get("reasoning_content")
        provider_fields = kwargs.get("provider_specific_fields") or {}
        thinking_blocks = provider_fields.get("thinking_blocks")
        if not isinstance(reasoning, str) or not isinstance(thinking_blocks, list):
            continue
        signature = None
        if thinking_blocks and isinstance(thinking_blocks[-1], dict):
            signature = thinking_blocks[-1].get("signature")
        thinking_block = {
            "type": ContentType.THINKING.value,
            "thinking": reasoning,
            "signature": signature,
        }
        reshaped[index] = message.model_copy(
            update={
                "content": [thinking_block],
                "additional_kwargs": {
                    key: value for key, value in kwargs.items() if key != "reasoning_content"
                },
            }
        )
    return reshaped


class ContextPruner:
    """Stateful pruner for one agent run.

    Holds the token map across model calls so usage reports from one call
    recalibrate the estimates used by the next. The caller persists
    `PruneResult.index_token_count_map` as the new authoritative map.

    Usage:
        pruner = ContextPruner(max_tokens=8000, token_counter=counter,
                               index_token_count_map=initial_map)
        result = pruner.prune(history)
        ...
        result = pruner.prune(history, usage_metadata=response.usage_metadata)
    """

    def __init__(
        self,
        max_tokens: int,
        token_counter: Optional[TokenCounter] = None,
        index_token_count_map: Optional[Mapping[int, int]] = None,
        start_index: int = 0,
        constraints: Optional[PruneConstraints] = None,
        *,
        ratio_min: Optional[float] = None,
        ratio_max: Optional[float] = None,
    ):
        cfg = get_settings()
        self.max_tokens = max_tokens
        self.token_counter = token_counter or create_token_counter()
        self.constraints = constraints or PruneConstraints()
        self.index_token_count_map: TokenMap = dict(index_token_count_map or {})
        self.last_turn_start_index = start_index
        self.last_cut_off_index = 0
        self.total_tokens = sum(self.index_token_count_map.values())
        self.run_thinking_start_index = -1
        self.ratio_min = cfg.usage_ratio_min if ratio_min is None else ratio_min
        self.ratio_max = cfg.usage_ratio_max if ratio_max is None else ratio_max
        self.reply_primer_tokens = cfg.reply_primer_tokens

    def prune(
        self,
        messages: Sequence[BaseMessage],
        usage_metadata: Optional[Any] = None,
        start_type: Optional[Sequence[str]] = None,
    ) -> PruneResult:
        messages = list(messages)
        if self.constraints.thinking_enabled and self.constraints.provider == Provider.OPENAI:
            messages = _reshape_openai_reasoning(messages)

        current_usage = calculate_total_tokens(usage_metadata) if has_valid_usage(usage_metadata) else None
        if current_usage is not None:
            self.total_tokens = current_usage.total_tokens

        new_outputs: Set[int] = set()
        output_index: Optional[int] = None
        for index in range(self.last_turn_start_index, len(messages)):
            if index in self.index_token_count_map:
                continue
            if index == self.last_turn_start_index and current_usage is not None:
                self.index_token_count_map[index] = current_usage.output_tokens
                output_index = index
                continue
            self.index_token_count_map[index] = self.token_counter(messages[index])
            if current_usage is not None:
                new_outputs.add(index)
            self.total_tokens += self.index_token_count_map[index]

        if current_usage is not None:
            self._recalibrate(messages, current_usage, new_outputs, output_index)

        self.last_turn_start_index = len(messages)
        if self.last_cut_off_index == 0 and self.total_tokens + self.reply_primer_tokens <= self.max_tokens:
            return PruneResult(context=messages, index_token_count_map=dict(self.index_token_count_map))

        result = get_messages_within_token_limit(
            messages,
            self.max_tokens,
            self.index_token_count_map,
            start_type=start_type if start_type is not None else self.constraints.start_type,
            thinking_enabled=self.constraints.thinking_enabled,
            token_counter=self.token_counter,
            thinking_start_index=self.run_thinking_start_index if self.constraints.thinking_enabled else -1,
            reasoning_type=self.constraints.resolved_reasoning_type(),
            reply_primer_tokens=self.reply_primer_tokens,
        )
        self.run_thinking_start_index = result.thinking_start_index
        context = result.context
        has_instructions = bool(context) and context[0].type == "system"
        self.last_cut_off_index = max(len(messages) - (len(context) - (1 if has_instructions else 0)), 0)

        logger.debug(
            "context_pruned",
            max_tokens=self.max_tokens,
            kept=len(context),
            total=len(messages),
            cut_off_index=self.last_cut_off_index,
        )
        return PruneResult(context=context, index_token_count_map=dict(self.index_token_count_map))

    def _recalibrate(
        self,
        messages: List[BaseMessage],
        usage: UsageTotals,
        new_outputs: Set[int],
        output_index: Optional[int],
    ) -> None:
        """Scale in-window estimates toward the provider's reported usage.

        The produced output message already holds its real count, so it is
        left out of both sides of the ratio.
        """
        token_map = self.index_token_count_map
        has_instructions = bool(messages) and messages[0].type == "system"
        excluded = set(new_outputs)
        if output_index is not None:
            excluded.add(output_index)

        in_window = [
            index
            for index in range(self.last_cut_off_index, len(messages))
            if index not in excluded and not (index == 0 and has_instructions)
        ]
        if has_instructions and 0 not in excluded:
            in_window.insert(0, 0)

        estimated = sum(token_map.get(index, 0) for index in in_window)
        actual = usage.total_tokens
        if output_index is not None:
            actual -= token_map.get(output_index, 0)
        if estimated <= 0:
            return

        ratio = actual / estimated
        if not self.ratio_min <= ratio <= self.ratio_max:
            logger.warning(
                "usage_ratio_out_of_band",
                ratio=round(ratio, 4),
                ratio_min=self.ratio_min,
                ratio_max=self.ratio_max,
            )
            return

        for index in in_window:
            token_map[index] = round(token_map.get(index, 0) * ratio)

    def update_token_map_with_instructions(self, instruction_tokens: int) -> TokenMap:
        """Add instruction tokens to the system slot and return the new map."""
        if instruction_tokens > 0:
            self.index_token_count_map[0] = self.index_token_count_map.get(0, 0) + instruction_tokens
            self.total_tokens += instruction_tokens
        return dict(self.index_token_count_map)


def prune_messages(
    history: Sequence[BaseMessage],
    token_map: Mapping[int, int],
    max_tokens: int,
    constraints: Optional[PruneConstraints] = None,
    token_counter: Optional[TokenCounter] = None,
) -> PruneResult:
    """One-shot pruning without run state.

    Missing entries in `token_map` are estimated with `token_counter`; the
    caller's map is never mutated.
    """
    constraints = constraints or PruneConstraints()
    counter = token_counter or create_token_counter()
    updated: TokenMap = dict(token_map)
    for index, message in enumerate(history):
        if index not in updated:
            updated[index] = counter(message)

    messages = list(history)
    if constraints.thinking_enabled and constraints.provider == Provider.OPENAI:
        messages = _reshape_openai_reasoning(messages)

    result = get_messages_within_token_limit(
        messages,
        max_tokens,
        updated,
        start_type=constraints.start_type,
        thinking_enabled=constraints.thinking_enabled,
        token_counter=counter,
        reasoning_type=constraints.resolved_reasoning_type(),
    )
    return PruneResult(context=result.context, index_token_count_map=updated)
