"""Step key resolution.

A step key collapses every delta of one logical step onto the same run
step. It is built from the run coordinates LangGraph attaches to each
streamed chunk plus the agent's reasoning phase, so a phase change yields
a new key and therefore a new step.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional

from turnstream.core.constants import STEP_KEY_SEPARATOR
from turnstream.core.exceptions import MissingMetadataError
from turnstream.streaming.phase import PhaseState

REQUIRED_COORDINATES = ("run_id", "thread_id", "langgraph_node", "langgraph_step")
OPTIONAL_COORDINATES = ("checkpoint_ns",)


def build_key_list(
    metadata: Optional[Mapping[str, Any]],
    phase: PhaseState,
    invoked_tool_count: int = 0,
) -> List[str]:
    if not metadata:
        raise MissingMetadataError(list(REQUIRED_COORDINATES))

    missing = [name for name in REQUIRED_COORDINATES if metadata.get(name) in (None, "")]
    if missing:
        raise MissingMetadataError(missing)

    keys = [str(metadata[name]) for name in REQUIRED_COORDINATES]
    keys.extend(str(metadata[name]) for name in OPTIONAL_COORDINATES if metadata.get(name))

    suffix = phase.step_key_suffix()
    if suffix:
        keys.append(suffix)
    if invoked_tool_count > 0:
        keys.append(str(invoked_tool_count))
    return keys


def resolve_step_key(
    metadata: Optional[Mapping[str, Any]],
    phase: PhaseState,
    invoked_tool_count: int = 0,
) -> str:
    """Return the step key for a chunk.

    Raises:
        MissingMetadataError: A required run coordinate is absent
    """
    return STEP_KEY_SEPARATOR.join(build_key_list(metadata, phase, invoked_tool_count))
