from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from .diagnostics import DiagnosticSink
from .ids import new_id, now_ts_ms
from .models.checkpoint import CheckpointRecord
from .models.diff import DiffBookkeeping
from .models.parts import Role, TextPart, Turn, part_to_wire
from .stream.markers import MarkerKind


@dataclass(slots=True)
class ConversationSession:
    """
    Mutable state of one conversation as the surface sees it.

    Only the turn window is held; `window_start` is the absolute index of `turns[0]`
    and `total_turns` the length of the whole conversation.
    """

    conversation_id: str
    turns: list[Turn] = field(default_factory=list)
    window_start: int = 0
    total_turns: int = 0
    streaming_turn_id: str | None = None

    marker_buffer: str = ""
    marker_kind: MarkerKind = MarkerKind.NONE
    buffer_marker_prefixes: bool = True

    checkpoints: list[CheckpointRecord] = field(default_factory=list)
    diff: DiffBookkeeping = field(default_factory=DiffBookkeeping)

    is_streaming: bool = False
    is_waiting_for_response: bool = False
    active_stream_id: str | None = None
    error: dict[str, Any] | None = None
    usage: dict[str, Any] | None = None

    # Bumped once per applied state replacement.
    revision: int = 0
    diagnostics: DiagnosticSink = field(default_factory=DiagnosticSink, compare=False, repr=False)

    def __post_init__(self) -> None:
        self.diagnostics = DiagnosticSink(self.conversation_id)

    def touch(self) -> None:
        self.revision += 1

    # ---- turns ----

    def streaming_turn(self) -> Turn | None:
        if self.streaming_turn_id is None:
            return None
        for turn in reversed(self.turns):
            if turn.id == self.streaming_turn_id:
                return turn
        return None

    def last_assistant_turn(self) -> Turn | None:
        for turn in reversed(self.turns):
            if turn.role == Role.ASSISTANT and not turn.is_function_response:
                return turn
        return None

    def append_turn(self, turn: Turn) -> Turn:
        turn.absolute_index = self.window_start + len(self.turns)
        self.turns.append(turn)
        self.total_turns = max(self.total_turns, turn.absolute_index + 1)
        return turn

    def begin_user_turn(self, text: str) -> Turn:
        return self.append_turn(Turn(id=new_id("turn"), role=Role.USER, parts=[TextPart(value=text)]))

    def begin_assistant_turn(self, *, stream_id: str | None = None) -> Turn:
        turn = self.append_turn(Turn(id=new_id("turn"), role=Role.ASSISTANT, streaming=True))
        self.streaming_turn_id = turn.id
        self.reset_marker()
        self.is_streaming = True
        self.is_waiting_for_response = True
        self.error = None
        if stream_id is not None:
            self.active_stream_id = stream_id
        return turn

    def replace_turn(self, turn_id: str, turn: Turn) -> Turn | None:
        for i, existing in enumerate(self.turns):
            if existing.id != turn_id:
                continue
            turn.absolute_index = existing.absolute_index
            self.turns[i] = turn
            if self.streaming_turn_id == turn_id:
                self.streaming_turn_id = turn.id
            return turn
        return None

    def remove_turn(self, turn_id: str) -> bool:
        for i, existing in enumerate(self.turns):
            if existing.id != turn_id:
                continue
            del self.turns[i]
            for j in range(i, len(self.turns)):
                self.turns[j].absolute_index = self.window_start + j
            self.total_turns = max(0, self.total_turns - 1)
            if self.streaming_turn_id == turn_id:
                self.streaming_turn_id = None
            return True
        return False

    def load_history(self, turns: Iterable[Turn], *, window_start: int = 0, total: int | None = None) -> None:
        self.turns = list(turns)
        self.window_start = max(0, int(window_start))
        for i, turn in enumerate(self.turns):
            turn.absolute_index = self.window_start + i
        end = self.window_start + len(self.turns)
        self.total_turns = max(end, int(total)) if total is not None else end
        self.streaming_turn_id = None
        self.reset_marker()

    def finish_streaming_turn(self) -> None:
        turn = self.streaming_turn()
        if turn is not None:
            turn.streaming = False
        self.streaming_turn_id = None

    # ---- checkpoints ----

    def add_checkpoints(self, checkpoints: Iterable[CheckpointRecord]) -> int:
        known = {cp.id for cp in self.checkpoints}
        added = 0
        for cp in checkpoints:
            if cp.id in known:
                continue
            known.add(cp.id)
            self.checkpoints.append(cp)
            added += 1
        return added

    def clear_checkpoints_from(self, message_index: int) -> None:
        self.checkpoints = [cp for cp in self.checkpoints if cp.message_index < message_index]

    # ---- flags ----

    def reset_marker(self) -> None:
        self.marker_buffer = ""
        self.marker_kind = MarkerKind.NONE

    def clear_stream_flags(self) -> None:
        self.is_streaming = False
        self.is_waiting_for_response = False

    def snapshot(self) -> "SessionSnapshot":
        return SessionSnapshot(
            conversation_id=self.conversation_id,
            is_streaming=self.is_streaming,
            is_waiting_for_response=self.is_waiting_for_response,
            active_stream_id=self.active_stream_id,
            captured_at=now_ts_ms(),
            state=copy.deepcopy(self),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "window_start": self.window_start,
            "total_turns": self.total_turns,
            "is_streaming": self.is_streaming,
            "is_waiting_for_response": self.is_waiting_for_response,
            "error": self.error,
            "checkpoints": [cp.model_dump(by_alias=True, exclude_none=True) for cp in self.checkpoints],
            "diff_phase": str(self.diff.phase),
            "turns": [_turn_to_dict(t) for t in self.turns],
        }


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """
    Immutable copy of a session parked behind an inactive tab.

    The flag fields are kept outside `state` so background events can update them
    without touching the copied session.
    """

    conversation_id: str
    is_streaming: bool
    is_waiting_for_response: bool
    active_stream_id: str | None
    captured_at: int
    state: ConversationSession = field(compare=False, repr=False)

    def with_flags(
        self,
        *,
        is_streaming: bool | None = None,
        is_waiting_for_response: bool | None = None,
        active_stream_id: str | None = None,
    ) -> "SessionSnapshot":
        return replace(
            self,
            is_streaming=self.is_streaming if is_streaming is None else is_streaming,
            is_waiting_for_response=(
                self.is_waiting_for_response if is_waiting_for_response is None else is_waiting_for_response
            ),
            active_stream_id=self.active_stream_id if active_stream_id is None else active_stream_id,
        )

    @property
    def awaiting_diff_review(self) -> bool:
        return self.state.diff.active

    def without_diff(self) -> "SessionSnapshot":
        state = copy.deepcopy(self.state)
        state.diff.clear()
        return replace(self, state=state)

    def restore(self) -> ConversationSession:
        session = copy.deepcopy(self.state)
        session.is_streaming = self.is_streaming
        session.is_waiting_for_response = self.is_waiting_for_response
        session.active_stream_id = self.active_stream_id
        return session


def _turn_to_dict(turn: Turn) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": turn.id,
        "role": str(turn.role),
        "index": turn.absolute_index,
        "content": turn.content,
        "parts": [part_to_wire(p) for p in turn.parts],
    }
    if turn.streaming:
        out["streaming"] = True
    if turn.is_function_response:
        out["is_function_response"] = True
    if turn.tools:
        out["tools"] = [
            {"id": t.id, "name": t.name, "status": str(t.status), "args": dict(t.args)} for t in turn.tools
        ]
    return out
