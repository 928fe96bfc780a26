"""StreamCoordinator: one user exchange, including the tool-call loop.

Drives the adapter stream for a conversation, forwarding text deltas as
they arrive and accumulating tool-call data.  When a cycle's stream ends
it appends the model turn, runs the requested tools, appends their results
and calls the model again, up to ``max_tool_depth`` follow-ups.

State machine per run: IDLE -> STREAMING -> COMPLETED | CANCELLED | FAILED.

- CANCELLED: partial text is kept as a model turn flagged ``stopped``;
  buffered tool calls are discarded and nothing is dispatched.  A cancel
  during tool execution flags the already recorded model turn instead.
  Pending chunk reads and tool calls are abandoned as soon as the token
  fires.
- FAILED: nothing from the failing cycle is appended; one ``error`` event
  is emitted.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import AsyncGenerator, Awaitable
from typing import Any

from palaver.actions.base import ToolContext
from palaver.actions.registry import ActionRegistry
from palaver.chat.protocols import UsageTracker
from palaver.chat.schemas import CancelToken, ChatEvent, PendingCall, StreamSession, StreamState
from palaver.conversation.schemas import ToolCallRequest, ToolCallSegment, ToolSchema, Turn
from palaver.conversation.store import ConversationStore
from palaver.errors import ToolLoopExceeded
from palaver.models.base import ChunkShape, ModelAdapter, NormalizedChunk
from palaver.services.usage import TokenUsage
from palaver.utils import estimate_tokens, now_ms

logger = logging.getLogger(__name__)

# Returned by _until_cancelled when the token fires first
CANCELLED = object()
_END = object()


class StreamCoordinator:
    def __init__(
        self,
        registry: ActionRegistry,
        usage_tracker: UsageTracker | None = None,
        max_tool_depth: int = 5,
    ) -> None:
        self._registry = registry
        self._usage_tracker = usage_tracker
        self._max_tool_depth = max_tool_depth
        self._call_seq = itertools.count(1)

    def synthesize_call_id(self) -> str:
        return f"call_{next(self._call_seq)}_{now_ms()}"

    async def run(
        self,
        adapter: ModelAdapter,
        store: ConversationStore,
        session: StreamSession,
        tool_schemas: list[ToolSchema],
        context: ToolContext,
    ) -> AsyncGenerator[ChatEvent, None]:
        """Stream one exchange. The user turn must already be in ``store``."""
        session.state = StreamState.STREAMING
        follow_ups = 0
        total_usage = TokenUsage()

        try:
            while True:
                session.reset_cycle()
                whole_calls: list[ToolCallRequest] = []
                usage: TokenUsage | None = None
                token = session.cancel_token

                if token.cancelled:
                    for event in self._stop(store, session):
                        yield event
                    return

                handle = await _until_cancelled(
                    adapter.send_turn(store.turns, None, tool_schemas), token
                )
                if handle is CANCELLED:
                    for event in self._stop(store, session):
                        yield event
                    return
                try:
                    while True:
                        raw = await _until_cancelled(anext(handle, _END), token)
                        if raw is CANCELLED or token.cancelled:
                            break
                        if raw is _END:
                            usage = handle.final()
                            break
                        chunk = adapter.normalize_chunk(raw)
                        if chunk.text:
                            session.text_parts.append(chunk.text)
                            yield ChatEvent(type="delta", text=chunk.text)
                        self._accumulate(adapter.chunk_shape, chunk, session, whole_calls)
                finally:
                    await handle.aclose()

                if token.cancelled:
                    for event in self._stop(store, session):
                        yield event
                    return

                # Stream segment ended -- finalize and record the model turn
                calls = self._finalize_calls(adapter.chunk_shape, session, whole_calls)
                input_estimate_source = _history_text(store.turns)
                model_turn = store.append(Turn.for_model(session.text, calls))
                cycle_usage = await self._report_usage(usage, input_estimate_source, session.text, calls)
                total_usage.input += cycle_usage.input
                total_usage.output += cycle_usage.output

                if not calls:
                    session.state = StreamState.COMPLETED
                    yield ChatEvent(
                        type="final",
                        text=session.text,
                        turn_id=model_turn.id,
                        usage={"input": total_usage.input, "output": total_usage.output},
                    )
                    return

                # Execute tools, one result turn per call
                for call in calls:
                    if token.cancelled:
                        break
                    yield ChatEvent(type="tool_start", tool_name=call.name)
                    result = await _until_cancelled(
                        self._registry.execute(call.name, call.arguments, context), token
                    )
                    if result is CANCELLED or token.cancelled:
                        break
                    store.append(Turn.for_tool_result(call.call_id, call.name, result.to_payload()))
                    yield ChatEvent(type="tool_end", tool_name=call.name)

                if token.cancelled:
                    # Calls left unanswered are skipped when the history is replayed
                    session.state = StreamState.CANCELLED
                    model_turn.stopped = True
                    logger.info("Stream cancelled during tool execution")
                    yield ChatEvent(
                        type="stopped",
                        text=session.text,
                        turn_id=model_turn.id,
                        message="Stopped by user",
                    )
                    return

                if follow_ups >= self._max_tool_depth:
                    logger.warning("Tool loop reached max_tool_depth=%d", self._max_tool_depth)
                    raise ToolLoopExceeded(self._max_tool_depth)
                follow_ups += 1

        except Exception as e:
            session.state = StreamState.FAILED
            logger.error("Streaming error (%s): %s", session.adapter_kind, e)
            yield ChatEvent(type="error", message=str(e))

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def _accumulate(
        self,
        shape: ChunkShape,
        chunk: NormalizedChunk,
        session: StreamSession,
        whole_calls: list[ToolCallRequest],
    ) -> None:
        if shape == ChunkShape.WHOLE_CALL:
            whole_calls.extend(chunk.tool_calls)
            return
        for fragment in chunk.fragments:
            pending = session.pending_tool_calls.setdefault(fragment.index, PendingCall())
            if fragment.call_id:
                pending.call_id = fragment.call_id
            pending.name += fragment.name
            if fragment.arguments:
                pending.argument_parts.append(fragment.arguments)

    def _finalize_calls(
        self,
        shape: ChunkShape,
        session: StreamSession,
        whole_calls: list[ToolCallRequest],
    ) -> list[ToolCallSegment]:
        calls: list[ToolCallSegment] = []
        if shape == ChunkShape.WHOLE_CALL:
            for call in whole_calls:
                if not call.name:
                    continue
                calls.append(ToolCallSegment(
                    call_id=call.call_id or self.synthesize_call_id(),
                    name=call.name,
                    arguments=call.arguments,
                ))
            return calls

        for index in sorted(session.pending_tool_calls):
            pending = session.pending_tool_calls[index]
            if not pending.name:
                logger.debug("Dropping tool call slot %d without a name", index)
                continue
            calls.append(ToolCallSegment(
                call_id=pending.call_id or self.synthesize_call_id(),
                name=pending.name,
                arguments=_parse_arguments(pending.name, "".join(pending.argument_parts)),
            ))
        return calls

    # ------------------------------------------------------------------
    # Terminal states and accounting
    # ------------------------------------------------------------------

    def _stop(self, store: ConversationStore, session: StreamSession) -> list[ChatEvent]:
        session.state = StreamState.CANCELLED
        turn = store.append(Turn.for_model(session.text, stopped=True))
        logger.info("Stream cancelled after %d chars", len(session.text))
        return [ChatEvent(type="stopped", text=session.text, turn_id=turn.id, message="Stopped by user")]

    async def _report_usage(
        self,
        usage: TokenUsage | None,
        history: str,
        text: str,
        calls: list[ToolCallSegment],
    ) -> TokenUsage:
        if usage is None:
            output_source = text + "".join(
                call.name + json.dumps(call.arguments) for call in calls
            )
            usage = TokenUsage(
                input=estimate_tokens(history),
                output=estimate_tokens(output_source),
            )
        if self._usage_tracker is not None:
            try:
                await self._usage_tracker.record_usage(usage.input, usage.output)
            except Exception:
                logger.warning("Usage tracking failed (non-fatal)", exc_info=True)
        return usage


def _parse_arguments(name: str, raw: str) -> dict[str, Any]:
    """Decode accumulated argument JSON. Malformed or non-object input yields {}."""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed arguments for tool %s: %s", name, raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


async def _until_cancelled(awaitable: Awaitable[Any], token: CancelToken) -> Any:
    """Await ``awaitable`` unless ``token`` fires first.

    On cancellation the pending work is cancelled and awaited, then
    ``CANCELLED`` is returned. Exceptions from ``awaitable`` propagate.
    """
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    if task.cancelled():
        return CANCELLED
    return task.result()


def _history_text(turns: list[Turn]) -> str:
    """Text the provider sees for ``turns``: message text plus tool payloads."""
    parts: list[str] = []
    for turn in turns:
        if turn.text:
            parts.append(turn.text)
        for call in turn.tool_calls:
            parts.append(call.name + json.dumps(call.arguments))
        for result in turn.tool_results:
            parts.append(json.dumps(result.result))
    return "\n".join(parts)
