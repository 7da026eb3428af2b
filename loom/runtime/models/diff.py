from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class DiffPhase(StrEnum):
    IDLE = "idle"
    AWAITING_BACKEND_LIST = "awaiting-backend-list"
    USER_PROCESSING = "user-processing"
    RESOLVED = "resolved"


class DiffDecision(StrEnum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class PendingDiff:
    """A diff the applier still holds for review."""

    id: str
    file_path: str
    tool_id: str | None = None

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "PendingDiff | None":
        diff_id = raw.get("id")
        file_path = raw.get("filePath", raw.get("file_path"))
        if not isinstance(diff_id, str) or not diff_id or not isinstance(file_path, str) or not file_path:
            return None
        tool_id = raw.get("toolId", raw.get("tool_id"))
        return PendingDiff(id=diff_id, file_path=file_path, tool_id=tool_id if isinstance(tool_id, str) and tool_id else None)


@dataclass(slots=True)
class DiffBookkeeping:
    phase: DiffPhase = DiffPhase.IDLE
    # Tool ids the backend says need a decision; None until the backend list arrived.
    required_tool_ids: list[str] | None = None
    decisions: dict[str, DiffDecision] = field(default_factory=dict)
    # Result of the last successful poll; None until one succeeded.
    pending: list[PendingDiff] | None = None
    # Annotations the applier did not consume; sent with the resume call.
    annotations: list[str] = field(default_factory=list)
    # Diffs some poll has shown as pending; only these can vanish into a manual save.
    seen_tool_ids: set[str] = field(default_factory=set)
    seen_paths: set[str] = field(default_factory=set)

    @property
    def active(self) -> bool:
        return self.phase != DiffPhase.IDLE

    def undecided_tool_ids(self) -> list[str]:
        if self.required_tool_ids is None:
            return []
        return [t for t in self.required_tool_ids if t not in self.decisions]

    def is_satisfied(self) -> bool:
        """Both sources agree: every listed tool is decided and the applier holds nothing."""

        if self.required_tool_ids is None or self.pending is None:
            return False
        if self.undecided_tool_ids():
            return False
        return not self.pending

    def note_seen(self, items: list[PendingDiff]) -> None:
        for p in items:
            self.seen_paths.add(p.file_path)
            if p.tool_id:
                self.seen_tool_ids.add(p.tool_id)

    def was_seen(self, tool_id: str, file_path: str | None) -> bool:
        return tool_id in self.seen_tool_ids or (file_path is not None and file_path in self.seen_paths)

    def copy(self) -> "DiffBookkeeping":
        return DiffBookkeeping(
            phase=self.phase,
            required_tool_ids=list(self.required_tool_ids) if self.required_tool_ids is not None else None,
            decisions=dict(self.decisions),
            pending=list(self.pending) if self.pending is not None else None,
            annotations=list(self.annotations),
            seen_tool_ids=set(self.seen_tool_ids),
            seen_paths=set(self.seen_paths),
        )

    def restore(self, other: "DiffBookkeeping") -> None:
        saved = other.copy()
        self.phase = saved.phase
        self.required_tool_ids = saved.required_tool_ids
        self.decisions = saved.decisions
        self.pending = saved.pending
        self.annotations = saved.annotations
        self.seen_tool_ids = saved.seen_tool_ids
        self.seen_paths = saved.seen_paths

    def clear(self) -> None:
        self.phase = DiffPhase.IDLE
        self.required_tool_ids = None
        self.decisions.clear()
        self.pending = None
        self.annotations.clear()
        self.seen_tool_ids.clear()
        self.seen_paths.clear()
