"""Typed payloads for the normalized stream events.

These types are the contract between the reconciliation engine and any
consumer of the event stream (UI layers, telemetry, the content
aggregator). `to_dict()` produces the JSON-safe wire shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from turnstream.messages.content import ContentPart


class StreamEvent(str, Enum):
    """Event kinds passed to the dispatch sink."""

    ON_RUN_STEP = "on_run_step"
    ON_RUN_STEP_DELTA = "on_run_step_delta"
    ON_RUN_STEP_COMPLETED = "on_run_step_completed"
    ON_MESSAGE_DELTA = "on_message_delta"
    ON_REASONING_DELTA = "on_reasoning_delta"
    ON_AGENT_UPDATE = "on_agent_update"


class StepType(str, Enum):
    MESSAGE_CREATION = "message_creation"
    TOOL_CALLS = "tool_calls"


@dataclass
class StepDetails:
    """What a run step produces: one assistant message or a batch of tool calls."""

    type: StepType
    message_id: Optional[str] = None
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def message_creation(cls, message_id: str) -> "StepDetails":
        return cls(type=StepType.MESSAGE_CREATION, message_id=message_id)

    @classmethod
    def tool_call_batch(cls, tool_calls: List[Dict[str, Any]]) -> "StepDetails":
        return cls(type=StepType.TOOL_CALLS, tool_calls=list(tool_calls))

    def to_dict(self) -> Dict[str, Any]:
        if self.type == StepType.MESSAGE_CREATION:
            return {
                "type": self.type.value,
                "message_creation": {"message_id": self.message_id},
            }
        return {"type": self.type.value, "tool_calls": list(self.tool_calls)}


@dataclass
class RunStep:
    """A stable unit of work within one turn.

    `index` is the position of the step's first content part in the
    flattened content array; `step_index` is its position among steps that
    share the same step key.
    """

    id: str
    type: StepType
    index: int
    step_index: int
    step_details: StepDetails
    run_id: Optional[str] = None
    agent_id: Optional[str] = None
    group_id: Optional[int] = None
    usage: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "index": self.index,
            "stepIndex": self.step_index,
            "stepDetails": self.step_details.to_dict(),
            "usage": self.usage,
        }
        if self.run_id is not None:
            payload["runId"] = self.run_id
        if self.agent_id is not None:
            payload["agentId"] = self.agent_id
        if self.group_id is not None:
            payload["groupId"] = self.group_id
        return payload


@dataclass
class MessageDeltaEvent:
    id: str
    content: List[ContentPart]

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "delta": {"content": list(self.content)}}


@dataclass
class ReasoningDeltaEvent:
    id: str
    content: List[ContentPart]

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "delta": {"content": list(self.content)}}


@dataclass
class RunStepDeltaEvent:
    """Partial tool-call fragments for a tool_calls step."""

    id: str
    tool_calls: List[Dict[str, Any]]
    type: StepType = StepType.TOOL_CALLS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "delta": {"type": self.type.value, "tool_calls": list(self.tool_calls)},
        }


@dataclass
class ToolCompleteEvent:
    """A finished tool call, with its output, attached to its tool_calls step."""

    id: str
    index: int
    tool_call: Dict[str, Any]
    type: str = "tool_call"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": {
                "id": self.id,
                "index": self.index,
                "type": self.type,
                "tool_call": dict(self.tool_call),
            }
        }


@dataclass
class AgentUpdateEvent:
    index: int
    agent_id: str
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "agent_update",
            "agent_update": {
                "index": self.index,
                "runId": self.run_id,
                "agentId": self.agent_id,
            },
        }
