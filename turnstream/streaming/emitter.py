"""Ordered event emission to the caller's dispatch sink."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from turnstream.core.exceptions import ContextMissingError
from turnstream.messages.content import ContentPart
from turnstream.streaming.event_types import (
    MessageDeltaEvent,
    ReasoningDeltaEvent,
    RunStep,
    RunStepDeltaEvent,
    StreamEvent,
    ToolCompleteEvent,
)

Dispatch = Callable[[StreamEvent, Any], Awaitable[None]]


class StreamEventEmitter:
    """Awaits the dispatch sink once per event, in call order.

    Consumers rely on a step's `on_run_step` arriving before any delta for
    that step, so each dispatch completes before the next one starts.

    Usage:
        emitter = StreamEventEmitter(dispatch)
        await emitter.dispatch_run_step(run_step)
        await emitter.dispatch_message_delta(run_step.id, [{"type": "text", "text": "Hi"}])
    """

    def __init__(self, dispatch: Optional[Dispatch]):
        self.dispatch = dispatch
        self.event_count = 0

    async def emit(self, event: StreamEvent, payload: Any) -> None:
        if self.dispatch is None:
            raise ContextMissingError(
                f"No dispatch sink for {event.value}",
                missing=["dispatch"],
            )
        self.event_count += 1
        await self.dispatch(event, payload)

    async def dispatch_run_step(self, run_step: RunStep) -> None:
        logger.debug("run_step_created", step_id=run_step.id, type=run_step.type.value, index=run_step.index)
        await self.emit(StreamEvent.ON_RUN_STEP, run_step)

    async def dispatch_run_step_delta(self, step_id: str, tool_calls: List[Dict[str, Any]]) -> None:
        await self.emit(StreamEvent.ON_RUN_STEP_DELTA, RunStepDeltaEvent(id=step_id, tool_calls=tool_calls))

    async def dispatch_message_delta(self, step_id: str, content: List[ContentPart]) -> None:
        await self.emit(StreamEvent.ON_MESSAGE_DELTA, MessageDeltaEvent(id=step_id, content=content))

    async def dispatch_reasoning_delta(self, step_id: str, content: List[ContentPart]) -> None:
        await self.emit(StreamEvent.ON_REASONING_DELTA, ReasoningDeltaEvent(id=step_id, content=content))

    async def dispatch_run_step_completed(self, event: ToolCompleteEvent) -> None:
        await self.emit(StreamEvent.ON_RUN_STEP_COMPLETED, event)
