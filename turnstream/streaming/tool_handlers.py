"""Tool-call announcement, streaming fragments and completion events."""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Mapping, Optional

from langchain_core.messages import ToolMessage
from loguru import logger

from turnstream.core.constants import TOOL_CALL_ID_PREFIX
from turnstream.core.exceptions import StepLookupMissError
from turnstream.streaming.emitter import StreamEventEmitter
from turnstream.streaming.event_types import RunStep, StepDetails, StepType, ToolCompleteEvent
from turnstream.streaming.session import TurnSession


def _previous_step(session: TurnSession, step_key: str) -> Optional[RunStep]:
    try:
        return session.get_run_step(session.get_step_id_by_key(step_key))
    except StepLookupMissError:
        return None


async def _open_message_step(
    session: TurnSession,
    emitter: StreamEventEmitter,
    step_key: str,
    metadata: Optional[Mapping[str, Any]],
) -> RunStep:
    message_id = session.get_message_id(step_key, return_existing=True) or ""
    run_step = session.create_run_step(step_key, StepDetails.message_creation(message_id), metadata)
    await emitter.dispatch_run_step(run_step)
    return run_step


async def handle_tool_calls(
    session: TurnSession,
    emitter: StreamEventEmitter,
    tool_calls: List[Dict[str, Any]],
    metadata: Optional[Mapping[str, Any]],
) -> None:
    """Announce each committed, not yet announced tool call as a tool_calls step."""
    if not tool_calls:
        return
    step_key = session.get_step_key(metadata)

    for raw_call in tool_calls:
        tool_call = dict(raw_call)
        tool_call["id"] = tool_call.get("id") or f"{TOOL_CALL_ID_PREFIX}{uuid.uuid4().hex[:24]}"
        if tool_call["id"] in session.tool_call_step_ids:
            continue

        previous = _previous_step(session, step_key)
        if previous is not None and previous.type == StepType.MESSAGE_CREATION:
            session.message_step_has_tool_calls.add(previous.id)
        else:
            message_step = await _open_message_step(session, emitter, step_key, metadata)
            session.message_step_has_tool_calls.add(message_step.id)

        run_step = session.create_run_step(step_key, StepDetails.tool_call_batch([tool_call]), metadata)
        await emitter.dispatch_run_step(run_step)


async def handle_tool_call_chunks(
    session: TurnSession,
    emitter: StreamEventEmitter,
    step_key: str,
    tool_call_chunks: List[Dict[str, Any]],
    metadata: Optional[Mapping[str, Any]],
) -> None:
    """Forward partial tool-call fragments to the current tool_calls step.

    Argument text is not merged here; the content aggregator concatenates
    fragments by index.
    """
    previous = _previous_step(session, step_key)
    if previous is None:
        previous = await _open_message_step(session, emitter, step_key, metadata)

    fragments: List[Dict[str, Any]] = []
    for chunk in tool_call_chunks:
        fragment = dict(chunk)
        if fragment.get("name") == "":
            fragment["name"] = None
        if fragment.get("id") == "":
            fragment["id"] = None
        fragments.append(fragment)

    if previous.type == StepType.TOOL_CALLS:
        step_id = previous.id
    elif previous.id in session.message_step_has_tool_calls:
        step_id = session.get_step_id_by_key(step_key)
    else:
        session.message_step_has_tool_calls.add(previous.id)
        committed = [
            {"args": {}, "id": fragment["id"], "name": fragment["name"], "type": "tool_call"}
            for fragment in fragments
            if fragment.get("id") and fragment.get("name")
        ]
        run_step = session.create_run_step(step_key, StepDetails.tool_call_batch(committed), metadata)
        await emitter.dispatch_run_step(run_step)
        step_id = run_step.id

    await emitter.dispatch_run_step_delta(step_id, fragments)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _tool_args(tool_input: Any) -> str:
    if isinstance(tool_input, Mapping) and "input" in tool_input and len(tool_input) == 1:
        tool_input = tool_input["input"]
    return _stringify(tool_input)


async def handle_tool_call_completed(
    session: TurnSession,
    emitter: StreamEventEmitter,
    output: ToolMessage,
    tool_input: Any = None,
    omit_output: bool = False,
) -> Optional[ToolCompleteEvent]:
    """Emit the completed tool call for the step that announced it."""
    tool_call_id = output.tool_call_id
    step_id = session.tool_call_step_ids.get(tool_call_id)
    run_step = session.get_run_step(step_id) if step_id else None
    if run_step is None:
        logger.warning("tool_call_step_missing", tool_call_id=tool_call_id, tool_name=output.name)
        return None

    event = ToolCompleteEvent(
        id=run_step.id,
        index=run_step.index,
        tool_call={
            "args": _tool_args(tool_input),
            "name": output.name or "",
            "id": tool_call_id,
            "output": "" if omit_output else _stringify(output.content),
            "progress": 1,
        },
    )
    await emitter.dispatch_run_step_completed(event)
    return event


async def handle_tool_call_error(
    session: TurnSession,
    emitter: StreamEventEmitter,
    tool_call_id: str,
    error: Any,
    tool_name: Optional[str] = None,
    tool_input: Any = None,
) -> Optional[ToolCompleteEvent]:
    """Emit a completed tool call whose output describes the failure."""
    step_id = session.tool_call_step_ids.get(tool_call_id)
    run_step = session.get_run_step(step_id) if step_id else None
    if run_step is None:
        logger.warning("tool_call_step_missing", tool_call_id=tool_call_id, tool_name=tool_name)
        return None

    announced = next(
        (call for call in run_step.step_details.tool_calls if call.get("id") == tool_call_id),
        {},
    )
    message = str(error) if error is not None else "unknown error"
    event = ToolCompleteEvent(
        id=run_step.id,
        index=run_step.index,
        tool_call={
            "args": _tool_args(tool_input if tool_input is not None else announced.get("args")),
            "name": tool_name or announced.get("name") or "",
            "id": tool_call_id,
            "output": f"Error processing tool: {message}",
            "progress": 1,
        },
    )
    logger.debug("tool_call_error_reported", tool_call_id=tool_call_id, error=message)
    await emitter.dispatch_run_step_completed(event)
    return event
