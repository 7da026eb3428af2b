from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class DiagnosticSink:
    """
    Session-scoped debug output.

    Keys already reported by this session are skipped, so a noisy condition shows up
    once per conversation instead of once per fragment.
    """

    __slots__ = ("_conversation_id", "_seen")

    def __init__(self, conversation_id: str | None = None) -> None:
        self._conversation_id = conversation_id
        self._seen: set[str] = set()

    def once(self, key: str, message: str, *args: Any) -> bool:
        if key in self._seen:
            return False
        self._seen.add(key)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[%s] " + message, self._conversation_id or "-", *args)
        return True

    def seen(self, key: str) -> bool:
        return key in self._seen

    def reset(self) -> None:
        self._seen.clear()

    def __deepcopy__(self, memo: dict[int, Any]) -> "DiagnosticSink":
        # Diagnostics never travel with a snapshot.
        return DiagnosticSink(self._conversation_id)
