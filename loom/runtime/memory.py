from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

from .ids import new_id
from .models.diff import PendingDiff


class RecordedBackend:
    """
    Chat backend that plays back prepared event scripts.

    Each streaming call pops the next script; an exception instance inside a script is
    raised at that point of the stream.
    """

    def __init__(self, scripts: Iterable[list[Any]] = (), *, delay_s: float = 0.0) -> None:
        self._scripts: list[list[Any]] = [list(s) for s in scripts]
        self._delay_s = delay_s
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.rejected: list[str] = []

    def add_script(self, events: list[Any]) -> None:
        self._scripts.append(list(events))

    @staticmethod
    def from_jsonl(path: Path) -> "RecordedBackend":
        events: list[Any] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            s = line.strip()
            if not s or s.startswith("#"):
                continue
            events.append(json.loads(s))
        return RecordedBackend([events])

    def stream_chat(self, *, conversation_id: str, message: str) -> AsyncIterator[dict[str, Any]]:
        self.calls.append(("chat", {"conversation_id": conversation_id, "message": message}))
        return self._play()

    def stream_tool_confirmation(
        self,
        *,
        conversation_id: str,
        decisions: dict[str, bool],
        annotation: str | None,
    ) -> AsyncIterator[dict[str, Any]]:
        self.calls.append(
            ("tool_confirmation", {"conversation_id": conversation_id, "decisions": dict(decisions), "annotation": annotation})
        )
        return self._play()

    def stream_continue_with_annotation(self, *, conversation_id: str, annotation: str) -> AsyncIterator[dict[str, Any]]:
        self.calls.append(("continue", {"conversation_id": conversation_id, "annotation": annotation}))
        return self._play()

    async def reject_pending_tool_calls(self, conversation_id: str) -> None:
        self.rejected.append(conversation_id)

    async def _play(self) -> AsyncIterator[dict[str, Any]]:
        script = self._scripts.pop(0) if self._scripts else []
        for item in script:
            if self._delay_s:
                await asyncio.sleep(self._delay_s)
            else:
                await asyncio.sleep(0)
            if isinstance(item, BaseException):
                raise item
            yield item


class InMemoryDiffApplier:
    """Diff applier keeping pending diffs in a dict; accepting or rejecting removes them."""

    def __init__(self) -> None:
        self._pending: dict[str, dict[str, PendingDiff]] = {}
        self.accepted: list[tuple[str, str | None]] = []
        self.rejected: list[tuple[str, str | None]] = []
        self.reverted: list[str] = []
        self.consume_annotations = False

    def add(self, conversation_id: str, file_path: str, *, tool_id: str | None = None) -> PendingDiff:
        diff = PendingDiff(id=new_id("diff"), file_path=file_path, tool_id=tool_id)
        self._pending.setdefault(conversation_id, {})[diff.id] = diff
        return diff

    def save_externally(self, conversation_id: str, file_path: str) -> None:
        pending = self._pending.get(conversation_id, {})
        for diff_id in [d.id for d in pending.values() if d.file_path == file_path]:
            del pending[diff_id]

    async def list_pending(self, conversation_id: str) -> list[PendingDiff]:
        return list(self._pending.get(conversation_id, {}).values())

    async def accept(self, diff_id: str, *, annotation: str | None = None) -> bool:
        self._drop(diff_id)
        self.accepted.append((diff_id, annotation))
        return self.consume_annotations and bool(annotation)

    async def reject(self, diff_id: str, *, annotation: str | None = None) -> bool:
        self._drop(diff_id)
        self.rejected.append((diff_id, annotation))
        return self.consume_annotations and bool(annotation)

    async def revert_pending(self, conversation_id: str) -> None:
        self._pending.pop(conversation_id, None)
        self.reverted.append(conversation_id)

    def _drop(self, diff_id: str) -> None:
        for pending in self._pending.values():
            pending.pop(diff_id, None)
