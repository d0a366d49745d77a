"""Stream reconciliation: provider deltas in, ordered run-step events out."""

from .aggregator import ContentAggregator
from .emitter import StreamEventEmitter
from .event_types import (
    AgentUpdateEvent,
    MessageDeltaEvent,
    ReasoningDeltaEvent,
    RunStep,
    RunStepDeltaEvent,
    StepDetails,
    StepType,
    StreamEvent,
    ToolCompleteEvent,
)
from .handler import StreamEventHandler
from .normalizers import StreamDelta, normalize_chunk
from .phase import PhaseState, TokenState, parse_thinking_content
from .session import AgentContext, TurnSession
from .step_keys import resolve_step_key

__all__ = [
    # Event types
    "AgentUpdateEvent",
    "MessageDeltaEvent",
    "ReasoningDeltaEvent",
    "RunStep",
    "RunStepDeltaEvent",
    "StepDetails",
    "StepType",
    "StreamEvent",
    "ToolCompleteEvent",
    # Classes
    "AgentContext",
    "ContentAggregator",
    "PhaseState",
    "StreamDelta",
    "StreamEventEmitter",
    "StreamEventHandler",
    "TokenState",
    "TurnSession",
    # Utilities
    "normalize_chunk",
    "parse_thinking_content",
    "resolve_step_key",
]
