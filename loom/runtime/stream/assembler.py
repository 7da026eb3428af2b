from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..ids import new_tool_call_id
from ..models.parts import FunctionCallPart, TextPart, ToolInvocation, Turn
from ..models.tool_status import ToolStatus
from .markers import (
    END_MARKERS,
    START_MARKERS,
    MarkerKind,
    find_start_marker,
    held_prefix_length,
    parse_inline_tool_call,
)

if TYPE_CHECKING:
    from ..session import ConversationSession


def add_text(turn: Turn, text: str, *, is_thought: bool = False) -> None:
    """Append text, extending the last part when it is a text part of the same kind."""

    if not text:
        return
    last = turn.parts[-1] if turn.parts else None
    if isinstance(last, TextPart) and last.is_thought == is_thought:
        last.value += text
        return
    turn.parts.append(TextPart(value=text, is_thought=is_thought))


def append_inline_call(turn: Turn, name: str, args: dict[str, Any]) -> FunctionCallPart:
    part = FunctionCallPart(id=new_tool_call_id(), name=name, args=dict(args))
    turn.parts.append(part)
    turn.tools.append(ToolInvocation(id=part.id, name=name, args=dict(args), status=ToolStatus.QUEUED))
    return part


def ingest(session: ConversationSession, text: str, *, is_thought: bool = False) -> None:
    """
    Feed one text delta of the streaming turn.

    Inline tool calls wrapped in `<tool_use>...</tool_use>` or
    `<<<TOOL_CALL>>>...<<<END_TOOL_CALL>>>` become function-call parts; everything
    else is appended as text. A call may span any number of deltas. Thought text
    never contains calls and is appended as is.
    """

    turn = session.streaming_turn()
    if turn is None or not text:
        return
    if is_thought:
        if session.marker_kind == MarkerKind.NONE and session.marker_buffer:
            # A held marker prefix is plain text once a thought part follows it.
            add_text(turn, session.marker_buffer)
            session.marker_buffer = ""
        add_text(turn, text, is_thought=True)
        return

    remaining = text
    while remaining:
        if session.marker_kind == MarkerKind.NONE:
            if session.marker_buffer:
                # Held tail of the previous delta that might open a marker.
                remaining = session.marker_buffer + remaining
                session.marker_buffer = ""

            idx, kind = find_start_marker(remaining)
            if kind == MarkerKind.NONE:
                hold = held_prefix_length(remaining) if session.buffer_marker_prefixes else 0
                cut = len(remaining) - hold
                add_text(turn, remaining[:cut])
                session.marker_buffer = remaining[cut:]
                return

            add_text(turn, remaining[:idx])
            start = START_MARKERS[kind]
            session.marker_kind = kind
            session.marker_buffer = start
            remaining = remaining[idx + len(start) :]
            continue

        kind = session.marker_kind
        start = START_MARKERS[kind]
        end = END_MARKERS[kind]
        combined = session.marker_buffer + remaining
        end_idx = combined.find(end, len(start))
        if end_idx == -1:
            session.marker_buffer = combined
            return

        stop = end_idx + len(end)
        parsed = parse_inline_tool_call(kind, combined[len(start) : end_idx])
        if parsed is not None:
            append_inline_call(turn, parsed[0], parsed[1])
        else:
            add_text(turn, combined[:stop])
        session.reset_marker()
        remaining = combined[stop:]


def flush_marker_buffer(session: ConversationSession) -> None:
    """Emit whatever the assembler still holds as plain text (stream end)."""

    if not session.marker_buffer:
        session.reset_marker()
        return
    turn = session.streaming_turn() or session.last_assistant_turn()
    if turn is not None:
        add_text(turn, session.marker_buffer)
    session.reset_marker()
