from __future__ import annotations

import json
from typing import TYPE_CHECKING

from ..ids import new_tool_call_id
from ..models.parts import FunctionCallPart, ToolInvocation, Turn
from ..models.tool_status import ToolStatus

if TYPE_CHECKING:
    from ..diagnostics import DiagnosticSink


_OPEN_STATUSES: frozenset[ToolStatus] = frozenset({ToolStatus.STREAMING, ToolStatus.QUEUED})


def _clean_id(value: str | None) -> str:
    return value.strip() if isinstance(value, str) else ""


def _merge_reason(last: FunctionCallPart, delta: FunctionCallPart) -> str | None:
    """
    Decide whether `delta` continues `last`.

    Rules in priority order; None means the delta opens a new call.
    """

    incoming_id = _clean_id(delta.id)
    last_id = _clean_id(last.id)
    incoming_partial = delta.partial_args is not None
    last_partial = last.partial_args is not None

    if incoming_id and last_id and incoming_id == last_id:
        return "same-id"
    same_index = delta.index is not None and last.index == delta.index
    if same_index and last_partial and (incoming_partial or bool(delta.args)):
        return "same-index"
    if not incoming_id and delta.index is None and incoming_partial and last_partial:
        return "legacy-partial"
    # Blank argument text trailing a call whose JSON already closed.
    if (
        not incoming_id
        and not delta.name
        and incoming_partial
        and not delta.partial_args.strip()
        and not last_partial
        and last.args
        and (delta.index is None or last.index == delta.index)
    ):
        return "closed-tail"
    # A header fragment ({name, id}) followed by its first data fragment ({index, partialArgs}).
    if not incoming_id and incoming_partial and not last_partial and not last.args:
        return "fresh-call-data"
    return None


def merge_function_call_delta(
    turn: Turn,
    delta: FunctionCallPart,
    *,
    diagnostics: DiagnosticSink | None = None,
) -> FunctionCallPart:
    """
    Fold one function-call delta into the turn's parts.

    The only merge candidate is the last part, and only when it is itself a function
    call. The matching `ToolInvocation` mirrors the part: `streaming` while argument
    text is still arriving, `queued` once the arguments are complete.
    """

    last = turn.parts[-1] if turn.parts else None
    reason = _merge_reason(last, delta) if isinstance(last, FunctionCallPart) else None
    if reason is None or not isinstance(last, FunctionCallPart):
        return _append_call(turn, delta)
    if reason == "closed-tail":
        return last

    if diagnostics is not None and reason == "fresh-call-data":
        diagnostics.once(f"fresh-call-data:{last.id}", "merged first data fragment into call %s (%s)", last.id, last.name)

    if delta.name and not last.name:
        last.name = delta.name
    if _clean_id(delta.id) and not _clean_id(last.id):
        last.id = _clean_id(delta.id)
    if delta.index is not None and last.index is None:
        last.index = delta.index

    inv = turn.tool(last.id)
    if delta.partial_args is not None:
        last.partial_args = (last.partial_args or "") + delta.partial_args
        if last.partial_args.strip():
            try:
                parsed = json.loads(last.partial_args)
            except Exception:
                parsed = None
            if isinstance(parsed, dict):
                last.args = parsed
                # A closed JSON object cannot grow; the call is complete.
                last.partial_args = None
        if inv is not None and inv.status in _OPEN_STATUSES:
            inv.partial_args = last.partial_args
            if last.args:
                inv.args = dict(last.args)
    elif delta.args:
        last.args = {**last.args, **delta.args}
        last.partial_args = None

    if inv is None and last.id:
        inv = _ensure_invocation(turn, last)
    if inv is not None:
        if inv.name != last.name and last.name:
            inv.name = last.name
        if last.partial_args is None and last.args and inv.status in _OPEN_STATUSES:
            inv.args = dict(last.args)
            inv.partial_args = None
            inv.advance(ToolStatus.QUEUED)
    return last


def _append_call(turn: Turn, delta: FunctionCallPart) -> FunctionCallPart:
    part = FunctionCallPart(
        id=_clean_id(delta.id) or new_tool_call_id(),
        name=delta.name or "",
        args=dict(delta.args),
        partial_args=delta.partial_args,
        index=delta.index,
    )
    if part.partial_args is not None and part.partial_args.strip():
        try:
            parsed = json.loads(part.partial_args)
        except Exception:
            parsed = None
        if isinstance(parsed, dict):
            part.args = parsed
            part.partial_args = None
    turn.parts.append(part)
    _ensure_invocation(turn, part)
    return part


def _ensure_invocation(turn: Turn, part: FunctionCallPart) -> ToolInvocation:
    existing = turn.tool(part.id)
    if existing is not None:
        return existing
    inv = ToolInvocation(
        id=part.id,
        name=part.name,
        args=dict(part.args),
        partial_args=part.partial_args,
        # A header fragment without arguments still waits for them.
        status=ToolStatus.QUEUED if part.partial_args is None and part.args else ToolStatus.STREAMING,
    )
    turn.tools.append(inv)
    return inv
