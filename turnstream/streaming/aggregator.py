"""Fold the normalized event stream into final content parts.

The aggregator is a pure reducer: it never sees provider chunks, only the
events the stream handler emitted (plus externally sourced tool
completions and agent updates), so it can rebuild a turn's content after
the fact for summaries and title generation.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Set, Union

from loguru import logger

from turnstream.core.exceptions import ContentTypeMismatchError
from turnstream.core.settings import get_settings
from turnstream.messages.content import ContentPart, ContentType
from turnstream.streaming.event_types import (
    AgentUpdateEvent,
    MessageDeltaEvent,
    ReasoningDeltaEvent,
    RunStep,
    RunStepDeltaEvent,
    StepType,
    StreamEvent,
    ToolCompleteEvent,
)


def _first_non_empty(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


class ContentAggregator:
    """Reduce `(event, payload)` pairs into an ordered list of content parts.

    Usage:
        aggregator = ContentAggregator()
        async def dispatch(event, payload):
            aggregator.aggregate(event, payload)
        ...
        summary_source = aggregator.text()
    """

    def __init__(self, strict: Optional[bool] = None):
        self.strict = get_settings().strict_aggregation if strict is None else strict
        self.content_parts: List[Optional[ContentPart]] = []
        self.step_map: Dict[str, RunStep] = {}
        self.tool_call_id_map: Dict[str, str] = {}
        self.content_meta: Dict[int, Dict[str, Any]] = {}
        self._finalized: Set[int] = set()

    def aggregate(self, event: Union[StreamEvent, str], payload: Any) -> None:
        event = StreamEvent(event)
        if event == StreamEvent.ON_RUN_STEP:
            self._on_run_step(payload)
        elif event == StreamEvent.ON_MESSAGE_DELTA:
            self._on_message_delta(payload)
        elif event == StreamEvent.ON_REASONING_DELTA:
            self._on_reasoning_delta(payload)
        elif event == StreamEvent.ON_RUN_STEP_DELTA:
            self._on_run_step_delta(payload)
        elif event == StreamEvent.ON_RUN_STEP_COMPLETED:
            self._on_run_step_completed(payload)
        elif event == StreamEvent.ON_AGENT_UPDATE:
            self._on_agent_update(payload)

    def text(self, include_thinking: bool = False) -> str:
        """Concatenate text parts, optionally with thinking, in content order."""
        pieces = []
        for part in self.content_parts:
            if not part:
                continue
            if part.get("type") == ContentType.TEXT.value:
                pieces.append(part.get("text", ""))
            elif include_thinking and part.get("type") == ContentType.THINK.value:
                pieces.append(part.get("think", ""))
        return "".join(pieces)

    # -------------------------------------------------------------------------
    # Merging
    # -------------------------------------------------------------------------

    def update_content(self, index: int, part: ContentPart, final_update: bool = False) -> None:
        part_type = part.get("type")
        if not part_type:
            logger.warning("content_part_without_type", index=index)
            return

        while len(self.content_parts) <= index:
            self.content_parts.append(None)
        existing = self.content_parts[index]
        if existing is None:
            existing = {"type": part_type}
            self.content_parts[index] = existing
        elif not part_type.startswith(existing["type"]):
            if self.strict:
                raise ContentTypeMismatchError(index, existing["type"], part_type)
            logger.warning(
                "content_type_mismatch",
                index=index,
                existing_type=existing["type"],
                incoming_type=part_type,
            )
            return

        if part_type == ContentType.TEXT.value:
            existing["text"] = existing.get("text", "") + (part.get("text") or "")
            if part.get("tool_call_ids"):
                existing["tool_call_ids"] = list(part["tool_call_ids"])
        elif part_type == ContentType.THINK.value:
            existing["think"] = existing.get("think", "") + (part.get("think") or "")
        elif part_type == ContentType.AGENT_UPDATE.value:
            existing["agent_update"] = part.get("agent_update")
        elif part_type == ContentType.IMAGE_URL.value:
            existing["image_url"] = part.get("image_url", existing.get("image_url"))
            file_id = part.get("file_id") or existing.get("file_id")
            if file_id:
                existing["file_id"] = file_id
        elif part_type == ContentType.TOOL_CALL.value:
            self._merge_tool_call(index, existing, part.get("tool_call") or {}, final_update)

        meta = self.content_meta.get(index)
        if meta:
            existing.update(meta)

    def _merge_tool_call(
        self,
        index: int,
        existing: Dict[str, Any],
        incoming: Dict[str, Any],
        final_update: bool,
    ) -> None:
        if index in self._finalized and not final_update:
            logger.debug("tool_call_update_after_completion", index=index)
            return

        current = existing.get("tool_call") or {}
        current_args = current.get("args")
        incoming_args = incoming.get("args")

        if final_update:
            args = current_args if incoming_args is None else incoming_args
        elif isinstance(current_args, dict) or isinstance(incoming_args, dict):
            args = current_args if incoming_args is None else incoming_args
        else:
            args = (current_args or "") + (incoming_args or "")

        merged: Dict[str, Any] = {
            "name": _first_non_empty(incoming.get("name"), current.get("name")) or "",
            "id": _first_non_empty(incoming.get("id"), current.get("id")) or "",
            "args": args,
            "type": "tool_call",
        }
        if final_update:
            merged["progress"] = 1
            merged["output"] = incoming.get("output")
            self._finalized.add(index)
        existing["tool_call"] = merged

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------

    def _step_for(self, step_id: str, event: StreamEvent) -> Optional[RunStep]:
        run_step = self.step_map.get(step_id)
        if run_step is None:
            logger.warning("aggregator_unknown_step", step_id=step_id, event=event.value)
        return run_step

    def _on_run_step(self, run_step: RunStep) -> None:
        self.step_map[run_step.id] = run_step
        meta = {}
        if run_step.agent_id is not None:
            meta["agentId"] = run_step.agent_id
        if run_step.group_id is not None:
            meta["groupId"] = run_step.group_id
        if meta:
            self.content_meta[run_step.index] = meta

        if run_step.step_details.type != StepType.TOOL_CALLS:
            return
        for tool_call in run_step.step_details.tool_calls:
            tool_call_id = tool_call.get("id")
            if tool_call_id:
                self.tool_call_id_map[run_step.id] = tool_call_id
            self.update_content(
                run_step.index,
                {
                    "type": ContentType.TOOL_CALL.value,
                    "tool_call": {
                        "args": tool_call.get("args"),
                        "name": tool_call.get("name"),
                        "id": tool_call_id,
                    },
                },
            )

    def _on_message_delta(self, event: MessageDeltaEvent) -> None:
        run_step = self._step_for(event.id, StreamEvent.ON_MESSAGE_DELTA)
        if run_step is None:
            return
        for offset, part in enumerate(event.content):
            self.update_content(run_step.index + offset, part)

    def _on_reasoning_delta(self, event: ReasoningDeltaEvent) -> None:
        run_step = self._step_for(event.id, StreamEvent.ON_REASONING_DELTA)
        if run_step is None or not event.content:
            return
        self.update_content(run_step.index, event.content[0])

    def _on_run_step_delta(self, event: RunStepDeltaEvent) -> None:
        run_step = self._step_for(event.id, StreamEvent.ON_RUN_STEP_DELTA)
        if run_step is None:
            return
        for fragment in event.tool_calls:
            self.update_content(
                run_step.index,
                {
                    "type": ContentType.TOOL_CALL.value,
                    "tool_call": {
                        "args": fragment.get("args"),
                        "name": fragment.get("name"),
                        "id": self.tool_call_id_map.get(event.id) or fragment.get("id"),
                    },
                },
            )

    def _on_run_step_completed(self, event: ToolCompleteEvent) -> None:
        run_step = self.step_map.get(event.id)
        index = run_step.index if run_step is not None else event.index
        self.update_content(
            index,
            {"type": ContentType.TOOL_CALL.value, "tool_call": dict(event.tool_call)},
            final_update=True,
        )

    def _on_agent_update(self, event: AgentUpdateEvent) -> None:
        self.update_content(
            event.index,
            {
                "type": ContentType.AGENT_UPDATE.value,
                "agent_update": event.to_dict()["agent_update"],
            },
        )
