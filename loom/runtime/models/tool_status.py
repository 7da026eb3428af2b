from __future__ import annotations

from enum import StrEnum
from typing import Iterable


class ToolStatus(StrEnum):
    STREAMING = "streaming"
    QUEUED = "queued"
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


_TOOL_TERMINAL: frozenset[ToolStatus] = frozenset({ToolStatus.SUCCESS, ToolStatus.ERROR})

# Statuses that cancellation turns into `error`.
INCOMPLETE_TOOL_STATUSES: frozenset[ToolStatus] = frozenset({ToolStatus.PENDING, ToolStatus.RUNNING})


_ALLOWED_TOOL_TRANSITIONS: dict[ToolStatus, frozenset[ToolStatus]] = {
    # Arguments still arriving; the call may be finalized or short-circuited by the backend.
    ToolStatus.STREAMING: frozenset(
        {ToolStatus.QUEUED, ToolStatus.PENDING, ToolStatus.RUNNING, ToolStatus.SUCCESS, ToolStatus.ERROR}
    ),
    ToolStatus.QUEUED: frozenset({ToolStatus.PENDING, ToolStatus.RUNNING, ToolStatus.SUCCESS, ToolStatus.ERROR}),
    # Leaving `pending` for `running` needs a user decision or a backend signal.
    ToolStatus.PENDING: frozenset({ToolStatus.RUNNING, ToolStatus.SUCCESS, ToolStatus.ERROR}),
    ToolStatus.RUNNING: frozenset({ToolStatus.SUCCESS, ToolStatus.ERROR}),
    ToolStatus.SUCCESS: frozenset(),
    ToolStatus.ERROR: frozenset(),
}


def is_terminal_tool_status(status: ToolStatus) -> bool:
    return status in _TOOL_TERMINAL


def allowed_next_tool_statuses(status: ToolStatus) -> frozenset[ToolStatus]:
    return _ALLOWED_TOOL_TRANSITIONS.get(status, frozenset())


def can_transition_tool(*, before: ToolStatus, after: ToolStatus) -> bool:
    return after in allowed_next_tool_statuses(before)


def validate_tool_transition(*, before: ToolStatus, after: ToolStatus) -> None:
    _validate_transition(before=before, after=after, allowed=allowed_next_tool_statuses(before), kind="ToolStatus")


def coerce_tool_status(raw: object) -> ToolStatus | None:
    if isinstance(raw, ToolStatus):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return ToolStatus(raw.strip().lower())
    except ValueError:
        return None


def _validate_transition(*, before: StrEnum, after: StrEnum, allowed: Iterable[StrEnum], kind: str) -> None:
    allowed_set = set(allowed)
    if after in allowed_set:
        return
    if before == after:
        raise ValueError(f"Illegal {kind} transition: {before.value} -> {after.value} (no-op not allowed)")
    rendered = ", ".join(s.value for s in sorted(allowed_set, key=lambda s: s.value))
    raise ValueError(f"Illegal {kind} transition: {before.value} -> {after.value} (allowed: {rendered or 'none'})")
