"""Turn-scoped state shared by the stream handler and tool handlers.

A TurnSession is created when a turn starts and dropped when it ends. It
owns every map that correlates step keys, run steps, message ids and tool
calls, so nothing about a turn lives in module-level state.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from langchain_core.messages import SystemMessage
from loguru import logger

from turnstream.core.constants import (
    AGENT_NODE_PREFIX,
    MESSAGE_ID_PREFIX,
    STEP_ID_PREFIX,
    TOOL_NODE_PREFIX,
)
from turnstream.core.exceptions import ContextMissingError, StepLookupMissError
from turnstream.core.settings import get_settings
from turnstream.messages.tokens import TokenCounter, create_token_counter
from turnstream.streaming.event_types import RunStep, StepDetails, StepType
from turnstream.streaming.phase import PhaseState
from turnstream.streaming.step_keys import resolve_step_key


def _short_id() -> str:
    return uuid.uuid4().hex[:24]


@dataclass
class AgentContext:
    """Per-agent configuration and phase state within a turn."""

    agent_id: str
    provider: Optional[str] = None
    reasoning_key: Optional[str] = None
    instruction_tokens: int = 0
    token_counter: Optional[TokenCounter] = None
    phase: PhaseState = field(default_factory=PhaseState)

    def __post_init__(self) -> None:
        if self.reasoning_key is None:
            self.reasoning_key = get_settings().default_reasoning_key

    def calculate_instruction_tokens(self, instructions: str) -> int:
        """Count `instructions` as a system message and remember the result."""
        counter = self.token_counter or create_token_counter()
        self.instruction_tokens = counter(SystemMessage(content=instructions)) if instructions else 0
        return self.instruction_tokens

    def update_token_map_with_instructions(self, base_map: Mapping[int, int]) -> Dict[int, int]:
        """Return a copy of `base_map` with instruction tokens charged to index 0."""
        updated = dict(base_map)
        if self.instruction_tokens > 0:
            updated[0] = updated.get(0, 0) + self.instruction_tokens
        return updated

    def reset(self) -> None:
        self.phase.reset()


class TurnSession:
    """Correlation state for one in-flight turn.

    Usage:
        session = TurnSession(run_id="run-1", agents=[AgentContext("default")])
        key = session.get_step_key(metadata)
        message_id = session.get_message_id(key)
    """

    def __init__(
        self,
        run_id: Optional[str] = None,
        agents: Optional[Iterable[AgentContext]] = None,
        multi_agent: Optional[bool] = None,
        agent_groups: Optional[Mapping[str, int]] = None,
    ):
        self.run_id = run_id
        self.agent_contexts: Dict[str, AgentContext] = {
            context.agent_id: context for context in (agents or [])
        }
        self.multi_agent = (
            len(self.agent_contexts) > 1 if multi_agent is None else multi_agent
        )
        self.agent_groups: Dict[str, int] = dict(agent_groups or {})

        self.content_data: List[RunStep] = []
        self.content_index_map: Dict[str, int] = {}
        self.step_key_ids: Dict[str, List[str]] = {}
        self.message_ids_by_step_key: Dict[str, str] = {}
        self.prelim_message_ids_by_step_key: Dict[str, str] = {}
        self.tool_call_step_ids: Dict[str, str] = {}
        self.message_step_has_tool_calls: Set[str] = set()
        self.invoked_tool_ids: Set[str] = set()

    # -------------------------------------------------------------------------
    # Agent context
    # -------------------------------------------------------------------------

    def add_agent(self, context: AgentContext) -> None:
        self.agent_contexts[context.agent_id] = context
        if len(self.agent_contexts) > 1:
            self.multi_agent = True

    def get_agent_context(self, metadata: Optional[Mapping[str, Any]]) -> AgentContext:
        """Resolve the agent that produced a chunk from its graph node name."""
        if not metadata:
            raise ContextMissingError("No metadata provided to retrieve agent context", missing=["metadata"])
        node = metadata.get("langgraph_node")
        if not isinstance(node, str) or not node:
            raise ContextMissingError("No langgraph_node in metadata", missing=["langgraph_node"])

        agent_id = None
        for prefix in (AGENT_NODE_PREFIX, TOOL_NODE_PREFIX):
            if node.startswith(prefix):
                agent_id = node[len(prefix):]
                break

        context = self.agent_contexts.get(agent_id) if agent_id else None
        if context is None:
            raise ContextMissingError(
                f"No agent context found for node {node}",
                missing=["agent_context"],
                metadata={"node": node},
            )
        return context

    # -------------------------------------------------------------------------
    # Step keys and ids
    # -------------------------------------------------------------------------

    def get_step_key(self, metadata: Optional[Mapping[str, Any]]) -> str:
        context = self.get_agent_context(metadata)
        return resolve_step_key(metadata, context.phase, len(self.invoked_tool_ids))

    def get_step_id_by_key(self, step_key: str, index: Optional[int] = None) -> str:
        step_ids = self.step_key_ids.get(step_key)
        if not step_ids:
            raise StepLookupMissError(step_key)
        if index is None:
            return step_ids[-1]
        try:
            return step_ids[index]
        except IndexError as exc:
            raise StepLookupMissError(f"{step_key}[{index}]") from exc

    def generate_step_id(self, step_key: str) -> tuple[str, int]:
        """Append a new step id under `step_key`; returns (id, position)."""
        step_ids = self.step_key_ids.setdefault(step_key, [])
        step_id = f"{STEP_ID_PREFIX}{_short_id()}"
        step_ids.append(step_id)
        return step_id, len(step_ids) - 1

    def get_run_step(self, step_id: str) -> Optional[RunStep]:
        index = self.content_index_map.get(step_id)
        if index is None:
            return None
        return self.content_data[index]

    def get_message_id(self, step_key: str, return_existing: bool = False) -> Optional[str]:
        """Issue the message id for a step key.

        Returns None when an id was already issued for the key, unless
        `return_existing` is set. A preliminary id seeded by an empty,
        id-bearing chunk is promoted on first use.
        """
        existing = self.message_ids_by_step_key.get(step_key)
        if existing is not None:
            return existing if return_existing else None

        message_id = self.prelim_message_ids_by_step_key.pop(step_key, None)
        if message_id is None:
            message_id = f"{MESSAGE_ID_PREFIX}{_short_id()}"
        self.message_ids_by_step_key[step_key] = message_id
        return message_id

    def seed_prelim_message_id(self, step_key: str, chunk_id: str) -> bool:
        """Remember an early chunk id for the next step under `step_key`."""
        if chunk_id in self.message_ids_by_step_key.values():
            # Providers repeat the completion id on trailing empty chunks
            logger.debug("prelim_message_id_already_issued", chunk_id=chunk_id)
            return False
        if chunk_id in self.prelim_message_ids_by_step_key.values():
            logger.warning("duplicate_prelim_message_id", chunk_id=chunk_id, step_key=step_key)
            return False
        self.prelim_message_ids_by_step_key[step_key] = chunk_id
        return True

    # -------------------------------------------------------------------------
    # Run steps
    # -------------------------------------------------------------------------

    def create_run_step(
        self,
        step_key: str,
        step_details: StepDetails,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> RunStep:
        """Register a new run step; the caller dispatches it."""
        step_id, step_index = self.generate_step_id(step_key)
        run_step = RunStep(
            id=step_id,
            type=step_details.type,
            index=len(self.content_data),
            step_index=step_index,
            step_details=step_details,
            run_id=self.run_id,
        )

        if self.multi_agent and metadata:
            try:
                context = self.get_agent_context(metadata)
            except ContextMissingError:
                logger.warning("run_step_missing_agent_attribution", step_id=step_id)
            else:
                run_step.agent_id = context.agent_id
                run_step.group_id = self.agent_groups.get(context.agent_id)

        self.content_index_map[step_id] = run_step.index
        self.content_data.append(run_step)

        if step_details.type == StepType.TOOL_CALLS:
            for tool_call in step_details.tool_calls:
                tool_call_id = tool_call.get("id")
                if tool_call_id:
                    self.tool_call_step_ids[tool_call_id] = step_id
        return run_step

    def record_invoked_tool(self, tool_call_id: str) -> None:
        self.invoked_tool_ids.add(tool_call_id)

    def reset(self) -> None:
        """Discard all per-turn state, including partial steps."""
        self.content_data = []
        self.content_index_map = {}
        self.step_key_ids = {}
        self.message_ids_by_step_key = {}
        self.prelim_message_ids_by_step_key = {}
        self.tool_call_step_ids = {}
        self.message_step_has_tool_calls = set()
        self.invoked_tool_ids = set()
        for context in self.agent_contexts.values():
            context.reset()
