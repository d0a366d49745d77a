"""Stream event handler that reconciles provider deltas into run-step events.

Consumes LangGraph `astream_events`-style dicts for one turn, strictly in
arrival order, and emits the normalized event stream through a
StreamEventEmitter. Each emission is awaited before the next delta is
read.
"""

from __future__ import annotations

from typing import Any, AsyncIterable, Dict, List, Mapping, Optional

from langchain_core.messages import ToolMessage
from loguru import logger

from turnstream.core.constants import AGENT_NODE_PREFIX
from turnstream.core.exceptions import ContextMissingError, StepLookupMissError
from turnstream.messages.content import (
    THINKING_TYPES,
    ContentType,
    block_type,
    has_type_prefix,
    thinking_text,
)
from turnstream.streaming.emitter import StreamEventEmitter
from turnstream.streaming.event_types import StepDetails, StepType
from turnstream.streaming.normalizers import normalize_chunk
from turnstream.streaming.phase import TokenState, default_tags, parse_thinking_content, strip_think_tags
from turnstream.streaming.session import AgentContext, TurnSession
from turnstream.streaming.tool_handlers import (
    handle_tool_call_chunks,
    handle_tool_call_completed,
    handle_tool_call_error,
    handle_tool_calls,
)


class StreamEventHandler:
    """Reconciles one turn's streamed chunks into run steps and deltas.

    Usage:
        handler = StreamEventHandler(session, StreamEventEmitter(dispatch))
        await handler.stream_and_process(graph.astream_events(inputs, version="v2"))
    """

    def __init__(self, session: TurnSession, emitter: StreamEventEmitter):
        self.session = session
        self.emitter = emitter
        self.tags = default_tags()

    async def stream_and_process(self, events: AsyncIterable[Dict[str, Any]]) -> None:
        async for event in events:
            await self.handle_event(event)

    async def handle_event(self, event: Dict[str, Any]) -> None:
        """Route event to appropriate handler."""
        handlers = {
            "on_chat_model_stream": self._on_model_stream,
            "on_llm_stream": self._on_model_stream,
            "on_tool_end": self._on_tool_end,
            "on_tool_error": self._on_tool_error,
        }
        handler = handlers.get(event.get("event"))
        if handler:
            await handler(event)

    def _event_metadata(self, event: Dict[str, Any]) -> Dict[str, Any]:
        metadata = dict(event.get("metadata") or {})
        if metadata.get("run_id") is None and self.session.run_id is not None:
            metadata["run_id"] = self.session.run_id
        return metadata

    async def _on_model_stream(self, event: Dict[str, Any]) -> None:
        data = event.get("data") or {}
        chunk = data.get("chunk") or data.get("output")
        if chunk is None:
            logger.warning("stream_event_without_chunk", event=event.get("event"))
            return
        await self.on_model_stream(chunk, self._event_metadata(event))

    async def _on_tool_end(self, event: Dict[str, Any]) -> None:
        data = event.get("data") or {}
        output = data.get("output")
        if not isinstance(output, ToolMessage):
            logger.debug("tool_end_without_tool_message", name=event.get("name"))
            return

        metadata = self._event_metadata(event)
        node = metadata.get("langgraph_node")
        if isinstance(node, str) and node.startswith(AGENT_NODE_PREFIX):
            # Tool ran inside the agent node, so the model resumes in the same step
            self.session.record_invoked_tool(output.tool_call_id)

        await handle_tool_call_completed(self.session, self.emitter, output, data.get("input"))

    async def _on_tool_error(self, event: Dict[str, Any]) -> None:
        data = event.get("data") or {}
        tool_call_id = data.get("tool_call_id") or (event.get("metadata") or {}).get("tool_call_id")
        if not tool_call_id:
            logger.warning("tool_error_without_tool_call_id", name=event.get("name"))
            return
        await handle_tool_call_error(
            self.session,
            self.emitter,
            str(tool_call_id),
            data.get("error"),
            tool_name=event.get("name"),
            tool_input=data.get("input"),
        )

    # -------------------------------------------------------------------------
    # Model deltas
    # -------------------------------------------------------------------------

    async def on_model_stream(self, chunk: Any, metadata: Optional[Mapping[str, Any]]) -> None:
        """Process one streamed chunk.

        Raises:
            ContextMissingError: The chunk cannot be attributed to an agent
                or the run coordinates are incomplete
        """
        if self.emitter.dispatch is None:
            raise ContextMissingError("No dispatch sink configured", missing=["dispatch"])
        session = self.session
        agent = session.get_agent_context(metadata)
        delta = normalize_chunk(chunk, agent.provider, agent.reasoning_key)
        agent.phase.advance(delta, self.tags)

        if delta.has_committed_tool_calls:
            await handle_tool_calls(session, self.emitter, delta.tool_calls, metadata)

        if delta.is_empty and not delta.tool_call_chunks:
            if delta.id:
                session.seed_prelim_message_id(session.get_step_key(metadata), delta.id)
            else:
                logger.debug("empty_stream_chunk_dropped", provider=agent.provider)
            return

        step_key = session.get_step_key(metadata)

        if delta.has_indexed_tool_call_chunks:
            await handle_tool_call_chunks(session, self.emitter, step_key, delta.tool_call_chunks, metadata)

        if delta.is_empty:
            return

        message_id = session.get_message_id(step_key)
        if message_id:
            run_step = session.create_run_step(step_key, StepDetails.message_creation(message_id), metadata)
            await self.emitter.dispatch_run_step(run_step)

        try:
            step_id = session.get_step_id_by_key(step_key)
        except StepLookupMissError:
            logger.warning("step_lookup_miss", step_key=step_key)
            return
        run_step = session.get_run_step(step_id)
        if run_step is None:
            logger.warning("step_lookup_miss", step_key=step_key, step_id=step_id)
            return

        content = delta.content
        if isinstance(content, str) and run_step.type == StepType.TOOL_CALLS:
            return
        if any(fragment.get("args") == content for fragment in delta.tool_call_chunks):
            logger.debug("tool_call_args_echo_suppressed", step_id=step_id)
            return

        if isinstance(content, str):
            await self._dispatch_string(agent, step_id, content, metadata)
        else:
            await self._dispatch_blocks(step_id, content)

    async def _dispatch_string(
        self,
        agent: AgentContext,
        step_id: str,
        content: str,
        metadata: Optional[Mapping[str, Any]],
    ) -> None:
        state = agent.phase.current
        if state == TokenState.TEXT:
            await self.emitter.dispatch_message_delta(
                step_id, [{"type": ContentType.TEXT.value, "text": content}]
            )
            return

        if state == TokenState.THINK:
            reasoning = strip_think_tags(content, self.tags)
            if reasoning:
                await self.emitter.dispatch_reasoning_delta(
                    step_id, [{"type": ContentType.THINK.value, "think": reasoning}]
                )
            return

        text, thinking = parse_thinking_content(content, self.tags)
        if thinking:
            await self.emitter.dispatch_reasoning_delta(
                step_id, [{"type": ContentType.THINK.value, "think": thinking}]
            )
        if not text:
            return

        # The answer half of an inline-tagged delta always opens a new step
        agent.phase.enter_text()
        session = self.session
        step_key = session.get_step_key(metadata)
        message_id = session.get_message_id(step_key) or ""
        if message_id:
            run_step = session.create_run_step(step_key, StepDetails.message_creation(message_id), metadata)
            await self.emitter.dispatch_run_step(run_step)
            text_step_id = run_step.id
        else:
            try:
                text_step_id = session.get_step_id_by_key(step_key)
            except StepLookupMissError:
                logger.warning("step_lookup_miss", step_key=step_key)
                return
        await self.emitter.dispatch_message_delta(
            text_step_id, [{"type": ContentType.TEXT.value, "text": text}]
        )

    async def _dispatch_blocks(self, step_id: str, content: List[Dict[str, Any]]) -> None:
        types = [block_type(block) for block in content]
        if all(has_type_prefix(block, ContentType.TEXT.value) for block in content):
            # Provider variants such as `text_delta` fold as plain text
            await self.emitter.dispatch_message_delta(
                step_id, [{**block, "type": ContentType.TEXT.value} for block in content]
            )
            return
        if all(has_type_prefix(block, *THINKING_TYPES) for block in content):
            await self.emitter.dispatch_reasoning_delta(
                step_id,
                [{"type": ContentType.THINK.value, "think": thinking_text(block)} for block in content],
            )
            return
        logger.debug("mixed_content_blocks_skipped", step_id=step_id, types=types)
