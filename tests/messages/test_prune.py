from __future__ import annotations

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from turnstream.core.constants import Provider
from turnstream.core.exceptions import EmptyContextAfterPruningError, MalformedThinkingSequenceError
from turnstream.messages.prune import (
    ContextPruner,
    PruneConstraints,
    calculate_total_tokens,
    get_messages_within_token_limit,
    has_valid_usage,
    prune_messages,
)
from turnstream.streaming.session import AgentContext

PRIMER = 3


def _tool_history():
    return [
        SystemMessage(content="You are helpful."),
        HumanMessage(content="What is 2 + 2?"),
        AIMessage(content="", tool_calls=[{"name": "calc", "args": {"expr": "2+2"}, "id": "call_1"}]),
        ToolMessage(content="4", tool_call_id="call_1"),
    ]


TOOL_MAP = {0: 50, 1: 20, 2: 30, 3: 15}


def _thinking_history(with_block: bool = True):
    first_content = [{"type": "text", "text": "Let me check."}]
    if with_block:
        first_content.insert(0, {"type": "thinking", "thinking": "Need two lookups.", "signature": "sig-1"})
    return [
        SystemMessage(content="You are helpful."),
        HumanMessage(content="Compare A and B."),
        AIMessage(content=first_content, tool_calls=[{"name": "lookup", "args": {"key": "a"}, "id": "call_a"}]),
        ToolMessage(content="A=1", tool_call_id="call_a"),
        AIMessage(content="", tool_calls=[{"name": "lookup", "args": {"key": "b"}, "id": "call_b"}]),
        ToolMessage(content="B=2", tool_call_id="call_b"),
    ]


THINKING_MAP = {0: 10, 1: 10, 2: 40, 3: 10, 4: 10, 5: 10}


def _indices(history, context):
    return [next(i for i, message in enumerate(history) if message is kept) for kept in context]


def _fixed_counter(_message) -> int:
    return 15


# ---------------------------------------------------------------------------
# Window selection
# ---------------------------------------------------------------------------


def test_everything_fits() -> None:
    history = _tool_history()

    result = prune_messages(history, TOOL_MAP, max_tokens=118)

    assert result.context == history


def test_pruned_window_opens_on_assistant() -> None:
    history = _tool_history()

    result = prune_messages(history, TOOL_MAP, max_tokens=98)

    assert _indices(history, result.context) == [0, 2, 3]


@pytest.mark.parametrize("max_tokens", [70, 55])
def test_orphan_tool_result_is_dropped(max_tokens: int) -> None:
    history = _tool_history()

    result = prune_messages(history, TOOL_MAP, max_tokens=max_tokens)

    assert _indices(history, result.context) == [0]


def test_budget_below_instructions_and_primer_raises() -> None:
    with pytest.raises(EmptyContextAfterPruningError) as exc_info:
        prune_messages(_tool_history(), TOOL_MAP, max_tokens=52)

    assert exc_info.value.metadata["required_tokens"] == 53


def test_nothing_fits_without_system_message_raises() -> None:
    history = [HumanMessage(content="hi"), AIMessage(content="hello")]

    with pytest.raises(EmptyContextAfterPruningError):
        prune_messages(history, {0: 20, 1: 30}, max_tokens=10)


def test_retained_window_always_fits_budget() -> None:
    history = _tool_history()
    for max_tokens in range(53, 140):
        result = prune_messages(history, TOOL_MAP, max_tokens=max_tokens)
        kept = _indices(history, result.context)

        assert kept[0] == 0
        assert sum(TOOL_MAP[i] for i in kept) + PRIMER <= max_tokens
        if len(kept) > 1:
            assert history[kept[1]].type != "tool"


def test_start_type_constraint() -> None:
    history = _tool_history()

    result = prune_messages(
        history, TOOL_MAP, max_tokens=98, constraints=PruneConstraints(start_type=["human"])
    )

    assert _indices(history, result.context) == [0]


def test_messages_to_refine_lists_pruned_history() -> None:
    history = _tool_history()

    result = get_messages_within_token_limit(history, 98, TOOL_MAP)

    assert result.messages_to_refine == [history[1]]
    assert result.remaining_context_tokens == 0


def test_prune_messages_does_not_mutate_token_map() -> None:
    history = _tool_history()
    token_map = {0: 50, 1: 20}

    result = prune_messages(history, token_map, max_tokens=1000, token_counter=_fixed_counter)

    assert token_map == {0: 50, 1: 20}
    assert result.index_token_count_map == {0: 50, 1: 20, 2: 15, 3: 15}


# ---------------------------------------------------------------------------
# Thinking sequences
# ---------------------------------------------------------------------------


def test_thinking_block_attached_to_retained_assistant() -> None:
    history = _thinking_history()
    constraints = PruneConstraints(thinking_enabled=True)

    result = prune_messages(history, THINKING_MAP, max_tokens=60, constraints=constraints, token_counter=_fixed_counter)

    assert len(result.context) == 3
    assert result.context[0] is history[0]
    assert result.context[2] is history[5]
    carrier = result.context[1]
    assert carrier.tool_calls[0]["id"] == "call_b"
    assert carrier.content[0] == history[2].content[0]
    # Stored history keeps its original shape
    assert history[4].content == ""


def test_thinking_second_pass_keeps_only_carrier() -> None:
    history = _thinking_history()
    constraints = PruneConstraints(thinking_enabled=True)

    result = prune_messages(history, THINKING_MAP, max_tokens=45, constraints=constraints, token_counter=_fixed_counter)

    assert len(result.context) == 2
    assert result.context[0] is history[0]
    assert result.context[1].tool_calls[0]["id"] == "call_b"
    assert result.context[1].content[0]["type"] == "thinking"


def test_thinking_block_that_cannot_fit_raises() -> None:
    constraints = PruneConstraints(thinking_enabled=True)

    with pytest.raises(MalformedThinkingSequenceError) as exc_info:
        prune_messages(
            _thinking_history(), THINKING_MAP, max_tokens=37, constraints=constraints, token_counter=_fixed_counter
        )

    assert "Increase the max context tokens" in exc_info.value.recovery_suggestions


def test_sequence_without_thinking_block_raises() -> None:
    constraints = PruneConstraints(thinking_enabled=True)

    with pytest.raises(MalformedThinkingSequenceError):
        prune_messages(
            _thinking_history(with_block=False),
            THINKING_MAP,
            max_tokens=45,
            constraints=constraints,
            token_counter=_fixed_counter,
        )


def test_owner_in_window_needs_no_reattachment() -> None:
    history = _thinking_history()

    result = get_messages_within_token_limit(
        history, 200, THINKING_MAP, thinking_enabled=True, token_counter=_fixed_counter
    )

    assert result.context == history
    assert result.thinking_start_index == 2


def test_bedrock_uses_reasoning_content_blocks() -> None:
    assert PruneConstraints(provider=Provider.BEDROCK).resolved_reasoning_type() == "reasoning_content"
    assert PruneConstraints(provider=Provider.ANTHROPIC).resolved_reasoning_type() == "thinking"
    assert PruneConstraints(reasoning_type="reasoning").resolved_reasoning_type() == "reasoning"


# ---------------------------------------------------------------------------
# Usage recalibration
# ---------------------------------------------------------------------------


def _recalibration_history():
    return [SystemMessage(content="sys"), HumanMessage(content="question"), AIMessage(content="answer")]


def _usage(input_tokens: int, output_tokens: int = 40) -> dict:
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


@pytest.mark.parametrize(
    "input_tokens, expected",
    [
        (100, {0: 50, 1: 50, 2: 40}),
        (150, {0: 75, 1: 75, 2: 40}),
        (1000, {0: 50, 1: 50, 2: 40}),
    ],
)
def test_recalibration_within_band(input_tokens: int, expected: dict) -> None:
    pruner = ContextPruner(max_tokens=10_000, index_token_count_map={0: 50, 1: 50}, start_index=2)

    result = pruner.prune(_recalibration_history(), usage_metadata=_usage(input_tokens))

    assert result.index_token_count_map == expected


def test_recalibration_skips_messages_before_cut_off() -> None:
    history = _tool_history()
    pruner = ContextPruner(max_tokens=98, index_token_count_map=TOOL_MAP, start_index=len(history))
    pruner.prune(history)
    assert pruner.last_cut_off_index == 2

    history.append(AIMessage(content="It is 4."))
    result = pruner.prune(history, usage_metadata=_usage(142, output_tokens=10))

    # 142 / (50 + 30 + 15) scales the system message and the retained window only
    assert result.index_token_count_map == {0: 75, 1: 20, 2: 45, 3: 22, 4: 10}


def test_recalibration_band_is_configurable() -> None:
    pruner = ContextPruner(
        max_tokens=10_000, index_token_count_map={0: 50, 1: 50}, start_index=2, ratio_max=20
    )

    result = pruner.prune(_recalibration_history(), usage_metadata=_usage(1000))

    assert result.index_token_count_map == {0: 500, 1: 500, 2: 40}


def test_invalid_usage_skips_recalibration() -> None:
    pruner = ContextPruner(
        max_tokens=10_000,
        index_token_count_map={0: 50, 1: 50},
        start_index=2,
        token_counter=_fixed_counter,
    )

    result = pruner.prune(_recalibration_history(), usage_metadata={"input_tokens": 0, "output_tokens": 0})

    assert result.index_token_count_map == {0: 50, 1: 50, 2: 15}


def test_pruner_tracks_cut_off_between_calls() -> None:
    history = _tool_history()
    pruner = ContextPruner(max_tokens=98, index_token_count_map=TOOL_MAP, start_index=len(history))

    result = pruner.prune(history)

    assert _indices(history, result.context) == [0, 2, 3]
    assert pruner.last_cut_off_index == 2


def test_pruner_shortcut_returns_history_unchanged() -> None:
    history = _tool_history()
    pruner = ContextPruner(max_tokens=118, index_token_count_map=TOOL_MAP, start_index=len(history))

    result = pruner.prune(history)

    assert result.context == history
    assert pruner.last_cut_off_index == 0


def test_openai_reasoning_reshaped_on_copy() -> None:
    reasoning_ai = AIMessage(
        content="",
        tool_calls=[{"name": "calc", "args": {}, "id": "call_1"}],
        additional_kwargs={
            "reasoning_content": "Use the calculator.",
            "provider_specific_fields": {"thinking_blocks": [{"signature": "sig-9"}]},
        },
    )
    history = [
        SystemMessage(content="sys"),
        HumanMessage(content="2+2?"),
        reasoning_ai,
        ToolMessage(content="4", tool_call_id="call_1"),
    ]
    pruner = ContextPruner(
        max_tokens=10_000,
        index_token_count_map={0: 5, 1: 5, 2: 5, 3: 5},
        start_index=4,
        constraints=PruneConstraints(thinking_enabled=True, provider=Provider.OPENAI),
    )

    result = pruner.prune(history)

    assert result.context[2].content == [
        {"type": "thinking", "thinking": "Use the calculator.", "signature": "sig-9"}
    ]
    assert "reasoning_content" not in result.context[2].additional_kwargs
    assert reasoning_ai.content == ""
    assert reasoning_ai.additional_kwargs["reasoning_content"] == "Use the calculator."


def test_instruction_tokens_charged_to_system_slot() -> None:
    pruner = ContextPruner(max_tokens=1000, index_token_count_map={0: 50, 1: 20})

    updated = pruner.update_token_map_with_instructions(10)

    assert updated == {0: 60, 1: 20}
    assert pruner.total_tokens == 80


def test_agent_context_instruction_tokens_do_not_mutate_base_map() -> None:
    base_map = {0: 10, 1: 2}

    updated = AgentContext("default", instruction_tokens=5).update_token_map_with_instructions(base_map)

    assert updated == {0: 15, 1: 2}
    assert base_map == {0: 10, 1: 2}


# ---------------------------------------------------------------------------
# Usage reports
# ---------------------------------------------------------------------------


def test_calculate_total_tokens_counts_cache_as_input() -> None:
    usage = {
        "input_tokens": 10,
        "output_tokens": 5,
        "input_token_details": {"cache_creation": 3, "cache_read": 2},
    }

    totals = calculate_total_tokens(usage)

    assert totals.input_tokens == 15
    assert totals.output_tokens == 5
    assert totals.total_tokens == 20


def test_has_valid_usage() -> None:
    assert has_valid_usage({"input_tokens": 0, "output_tokens": 5, "input_token_details": {"cache_read": 4}})
    assert not has_valid_usage({"input_tokens": 10, "output_tokens": 0})
    assert not has_valid_usage(None)
    assert not has_valid_usage({"input_tokens": float("nan"), "output_tokens": 3})
