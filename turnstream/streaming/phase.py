"""Per-agent reasoning phase state machine.

Each streamed delta advances the machine once. The current state decides
whether string content is dispatched as reasoning or as message text, and
it feeds the step key so reasoning and the final answer never share a
message id.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from turnstream.core.constants import POST_REASONING_KEY_TAG, REASONING_KEY_TAG
from turnstream.core.settings import get_settings
from turnstream.messages.content import is_empty_content
from turnstream.streaming.normalizers import StreamDelta


class TokenState(str, Enum):
    TEXT = "text"
    THINK = "think"
    THINK_AND_TEXT = "think_and_text"


class PhaseSwitch(str, Enum):
    """Why the last transition happened."""

    REASONING = "reasoning"
    CONTENT = "content"


Tags = Tuple[str, str]


@dataclass(frozen=True)
class Transition:
    name: str
    applies: Callable[["PhaseState", StreamDelta, Tags], bool]
    target: TokenState
    switch: PhaseSwitch
    remember_token: bool = True


def _starts_reasoning(_phase: "PhaseState", delta: StreamDelta, _tags: Tags) -> bool:
    return delta.reasoning_flagged or (
        delta.has_reasoning and is_empty_content(delta.raw_content)
    )


def _ends_reasoning(phase: "PhaseState", delta: StreamDelta, _tags: Tags) -> bool:
    return (
        phase.switch == PhaseSwitch.REASONING
        and phase.current != TokenState.TEXT
        and (not is_empty_content(delta.raw_content) or delta.has_tool_activity)
    )


def _has_inline_pair(_phase: "PhaseState", delta: StreamDelta, tags: Tags) -> bool:
    raw = delta.raw_content
    return isinstance(raw, str) and tags[0] in raw and tags[1] in raw


def _opens_inline(_phase: "PhaseState", delta: StreamDelta, tags: Tags) -> bool:
    raw = delta.raw_content
    return isinstance(raw, str) and tags[0] in raw


def _closed_inline(phase: "PhaseState", _delta: StreamDelta, tags: Tags) -> bool:
    return bool(phase.last_token) and tags[1] in phase.last_token


# Evaluated in order; the first match wins.
TRANSITIONS: Tuple[Transition, ...] = (
    Transition("structured_reasoning", _starts_reasoning, TokenState.THINK, PhaseSwitch.REASONING, remember_token=False),
    Transition("reasoning_ended", _ends_reasoning, TokenState.TEXT, PhaseSwitch.CONTENT),
    Transition("inline_pair", _has_inline_pair, TokenState.THINK_AND_TEXT, PhaseSwitch.CONTENT),
    Transition("inline_open", _opens_inline, TokenState.THINK, PhaseSwitch.CONTENT),
    Transition("inline_closed", _closed_inline, TokenState.TEXT, PhaseSwitch.CONTENT),
)


@dataclass
class PhaseState:
    current: TokenState = TokenState.TEXT
    switch: Optional[PhaseSwitch] = None
    last_token: Optional[str] = None

    def advance(self, delta: StreamDelta, tags: Optional[Tags] = None) -> Optional[str]:
        """Apply the first matching transition and return its name."""
        tags = tags or default_tags()
        for transition in TRANSITIONS:
            if not transition.applies(self, delta, tags):
                continue
            self.current = transition.target
            self.switch = transition.switch
            if transition.remember_token:
                self._remember(delta)
            return transition.name
        self._remember(delta)
        return None

    def enter_text(self) -> None:
        """Leave a demultiplexed think-and-text delta in the answer phase."""
        self.current = TokenState.TEXT
        self.switch = PhaseSwitch.CONTENT

    def step_key_suffix(self) -> Optional[str]:
        if self.current in (TokenState.THINK, TokenState.THINK_AND_TEXT):
            return REASONING_KEY_TAG
        if self.switch == PhaseSwitch.CONTENT:
            return POST_REASONING_KEY_TAG
        return None

    def reset(self) -> None:
        self.current = TokenState.TEXT
        self.switch = None
        self.last_token = None

    def _remember(self, delta: StreamDelta) -> None:
        if isinstance(delta.raw_content, str):
            self.last_token = delta.raw_content


def default_tags() -> Tags:
    cfg = get_settings()
    return cfg.think_open_tag, cfg.think_close_tag


def parse_thinking_content(text: str, tags: Optional[Tags] = None) -> Tuple[str, str]:
    """Split inline-tagged content into (text, thinking).

    Text outside tags is message text; each tagged span is thinking, joined
    by newlines. An unterminated opening tag sends the rest of the string to
    thinking.
    """
    open_tag, close_tag = tags or default_tags()
    text_parts = []
    thinking_parts = []
    position = 0
    while True:
        start = text.find(open_tag, position)
        if start == -1:
            text_parts.append(text[position:])
            break
        text_parts.append(text[position:start])
        body_start = start + len(open_tag)
        end = text.find(close_tag, body_start)
        if end == -1:
            thinking_parts.append(text[body_start:])
            break
        thinking_parts.append(text[body_start:end])
        position = end + len(close_tag)

    return "".join(text_parts).strip(), "\n".join(thinking_parts).strip()


def strip_think_tags(text: str, tags: Optional[Tags] = None) -> str:
    open_tag, close_tag = tags or default_tags()
    return text.replace(open_tag, "").replace(close_tag, "")
