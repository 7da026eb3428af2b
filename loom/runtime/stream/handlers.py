from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable

from ..ids import new_id
from ..models.events import (
    AwaitingConfirmationEvent,
    CancelledEvent,
    CheckpointsEvent,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    InboundEvent,
    ToolIterationEvent,
    ToolsExecutingEvent,
    ToolStatusEvent,
)
from ..models.parts import (
    FunctionCallPart,
    FunctionResponsePart,
    Role,
    TextPart,
    ToolInvocation,
    Turn,
    part_from_wire,
    turn_from_content,
)
from ..models.tool_status import INCOMPLETE_TOOL_STATUSES, ToolStatus
from .assembler import flush_marker_buffer, ingest
from .fragments import merge_function_call_delta

if TYPE_CHECKING:
    from ..session import ConversationSession

logger = logging.getLogger(__name__)


def _current_turn(session: ConversationSession, *, stream_id: str | None = None) -> Turn:
    turn = session.streaming_turn()
    if turn is None:
        # The stream started while nothing was open here (e.g. after a reload).
        turn = session.begin_assistant_turn(stream_id=stream_id)
    return turn


def _rebuild_from_content(
    session: ConversationSession,
    content: dict[str, Any] | None,
    *,
    stream_id: str | None = None,
) -> Turn:
    """Replace the streaming turn with the backend's authoritative content, keeping tool state."""

    turn = _current_turn(session, stream_id=stream_id)
    if not content:
        return turn
    rebuilt = turn_from_content(content, turn_id=turn.id, streaming=turn.streaming)
    rebuilt.role = Role.ASSISTANT
    rebuilt.metadata = turn.metadata
    rebuilt.timestamp = turn.timestamp

    tools: list[ToolInvocation] = []
    seen: set[str] = set()
    for inv in rebuilt.tools:
        existing = turn.tool(inv.id)
        if existing is not None:
            if not existing.args and inv.args:
                existing.args = dict(inv.args)
            if existing.status == ToolStatus.STREAMING and inv.args:
                existing.partial_args = None
                existing.advance(ToolStatus.QUEUED)
            inv = existing
        tools.append(inv)
        seen.add(inv.id)
    for inv in turn.tools:
        if inv.id not in seen:
            tools.append(inv)
    rebuilt.tools = tools

    session.replace_turn(turn.id, rebuilt)
    return rebuilt


def _find_tool(session: ConversationSession, tool_id: str) -> ToolInvocation | None:
    for turn in reversed(session.turns):
        inv = turn.tool(tool_id)
        if inv is not None:
            return inv
    return None


def _set_tool_status(session: ConversationSession, inv: ToolInvocation, status: ToolStatus) -> None:
    before = inv.status
    if inv.advance(status) or before == status:
        return
    session.diagnostics.once(
        f"tool-transition:{inv.id}:{before}:{status}",
        "ignored tool %s transition %s -> %s",
        inv.id,
        before,
        status,
    )


def _finalize_turn(turn: Turn) -> None:
    turn.streaming = False
    for inv in turn.tools:
        if inv.status == ToolStatus.STREAMING:
            inv.partial_args = None
            inv.advance(ToolStatus.QUEUED)
    for part in turn.parts:
        if isinstance(part, FunctionCallPart):
            part.partial_args = None


def _drop_if_empty(session: ConversationSession) -> bool:
    turn = session.streaming_turn()
    if turn is not None and turn.role == Role.ASSISTANT and turn.is_empty:
        session.remove_turn(turn.id)
        return True
    return False


def mark_incomplete_tools_as_error(session: ConversationSession) -> list[str]:
    """Turn every `running`/`pending` invocation into `error`; returns the ids touched."""

    touched: list[str] = []
    for turn in session.turns:
        for inv in turn.tools:
            if inv.status in INCOMPLETE_TOOL_STATUSES and inv.advance(ToolStatus.ERROR):
                touched.append(inv.id)
    return touched


def ensure_rejection_responses(session: ConversationSession, tool_ids: Iterable[str]) -> Turn | None:
    """
    Add a hidden function-response turn for rejected calls that have no response yet.

    The backend needs one response per call before the conversation can continue.
    """

    answered: set[str] = set()
    for turn in session.turns:
        for part in turn.parts:
            if isinstance(part, FunctionResponsePart):
                answered.add(part.id)

    parts: list[FunctionResponsePart] = []
    for tool_id in tool_ids:
        if tool_id in answered:
            continue
        inv = _find_tool(session, tool_id)
        if inv is None:
            continue
        parts.append(
            FunctionResponsePart(
                id=inv.id,
                name=inv.name,
                response={"success": False, "error": "Cancelled by user", "rejected": True},
            )
        )
    if not parts:
        return None
    return session.append_turn(Turn(id=new_id("turn"), role=Role.USER, parts=list(parts), is_function_response=True))


# ---- per-kind application ----


def _apply_chunk(session: ConversationSession, event: ChunkEvent) -> None:
    turn = _current_turn(session, stream_id=event.stream_id)
    for raw in event.chunk.delta:
        part = part_from_wire(raw)
        if part is None:
            continue
        if isinstance(part, TextPart):
            ingest(session, part.value, is_thought=part.is_thought)
        elif isinstance(part, FunctionCallPart):
            merge_function_call_delta(turn, part, diagnostics=session.diagnostics)
        else:
            turn.parts.append(part)
    if event.chunk.usage is not None:
        session.usage = dict(event.chunk.usage)
    session.is_streaming = True
    session.is_waiting_for_response = True


def _apply_tools_executing(session: ConversationSession, event: ToolsExecutingEvent) -> None:
    turn = _rebuild_from_content(session, event.content, stream_id=event.stream_id)
    for call in event.pending_tool_calls:
        inv = turn.tool(call.id)
        if inv is not None:
            _set_tool_status(session, inv, ToolStatus.RUNNING)
    session.is_streaming = True
    session.is_waiting_for_response = True


def _apply_tool_status(session: ConversationSession, event: ToolStatusEvent) -> None:
    inv = _find_tool(session, event.tool_id)
    if inv is None:
        session.diagnostics.once(f"unknown-tool:{event.tool_id}", "status for unknown tool %s", event.tool_id)
        return
    _set_tool_status(session, inv, event.status)
    if event.result is not None:
        inv.result = dict(event.result)


def _apply_awaiting_confirmation(session: ConversationSession, event: AwaitingConfirmationEvent) -> None:
    turn = _rebuild_from_content(session, event.content, stream_id=event.stream_id)
    for call in event.pending_tool_calls:
        inv = turn.tool(call.id)
        if inv is not None:
            _set_tool_status(session, inv, ToolStatus.PENDING)
    session.is_streaming = False
    session.is_waiting_for_response = True


def _apply_tool_iteration(session: ConversationSession, event: ToolIterationEvent) -> None:
    flush_marker_buffer(session)
    turn = _rebuild_from_content(session, event.content, stream_id=event.stream_id)

    any_cancelled = False
    responses: list[FunctionResponsePart] = []
    for res in event.tool_results:
        failed = res.cancelled or res.rejected
        any_cancelled = any_cancelled or res.cancelled
        inv = turn.tool(res.id) or _find_tool(session, res.id)
        if inv is not None:
            _set_tool_status(session, inv, ToolStatus.ERROR if failed else ToolStatus.SUCCESS)
            inv.result = dict(res.result)
        responses.append(FunctionResponsePart(id=res.id, name=res.name or (inv.name if inv else ""), response=dict(res.result)))

    _finalize_turn(turn)
    session.finish_streaming_turn()
    if responses:
        session.append_turn(Turn(id=new_id("turn"), role=Role.USER, parts=list(responses), is_function_response=True))
    session.add_checkpoints(event.checkpoints)

    if any_cancelled:
        session.clear_stream_flags()
        return
    session.begin_assistant_turn(stream_id=event.stream_id)


def _apply_complete(session: ConversationSession, event: CompleteEvent) -> None:
    flush_marker_buffer(session)
    # An untouched placeholder (e.g. opened after a tool iteration) just goes away.
    dropped = not event.content and _drop_if_empty(session)
    if not dropped and (session.streaming_turn() is not None or event.content):
        turn = _rebuild_from_content(session, event.content, stream_id=event.stream_id)
        _finalize_turn(turn)
    session.finish_streaming_turn()
    session.add_checkpoints(event.checkpoints)
    session.clear_stream_flags()


def _apply_checkpoints(session: ConversationSession, event: CheckpointsEvent) -> None:
    session.add_checkpoints(event.checkpoints)


def _apply_cancelled(session: ConversationSession, event: CancelledEvent) -> None:
    flush_marker_buffer(session)
    if not _drop_if_empty(session):
        turn = session.streaming_turn()
        if turn is not None:
            _finalize_turn(turn)
        ensure_rejection_responses(session, mark_incomplete_tools_as_error(session))
    session.finish_streaming_turn()
    session.clear_stream_flags()


def _apply_error(session: ConversationSession, event: ErrorEvent) -> None:
    flush_marker_buffer(session)
    session.error = {"code": event.error.code, "message": event.error.message}
    if not _drop_if_empty(session):
        turn = session.streaming_turn()
        if turn is not None:
            _finalize_turn(turn)
    session.finish_streaming_turn()
    session.clear_stream_flags()


_HANDLERS: dict[type, Callable[[Any, Any], None]] = {
    ChunkEvent: _apply_chunk,
    ToolsExecutingEvent: _apply_tools_executing,
    ToolStatusEvent: _apply_tool_status,
    AwaitingConfirmationEvent: _apply_awaiting_confirmation,
    ToolIterationEvent: _apply_tool_iteration,
    CompleteEvent: _apply_complete,
    CheckpointsEvent: _apply_checkpoints,
    CancelledEvent: _apply_cancelled,
    ErrorEvent: _apply_error,
}


def apply_event(session: ConversationSession, event: InboundEvent) -> bool:
    """Apply one inbound event as a single state replacement. Unknown kinds are ignored."""

    handler = _HANDLERS.get(type(event))
    if handler is None:
        logger.debug("No handler for event %s", type(event).__name__)
        return False
    handler(session, event)
    session.touch()
    return True


def apply_tool_status_batch(session: ConversationSession, events: Iterable[ToolStatusEvent]) -> int:
    """Apply a run of status updates with one state replacement for the whole run."""

    count = 0
    for event in events:
        _apply_tool_status(session, event)
        count += 1
    if count:
        session.touch()
    return count
