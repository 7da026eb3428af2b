"""Surface protocol - the boundary between the runtime and whatever renders it.

Outbound messages are plain JSON-ready dicts: either one event envelope
(`{"conversationId", "type", ...}`), a batch (`{"batch": [envelope, ...]}`),
or a request reply (`{"type": "response", "requestId", "success", ...}`).
"""

from __future__ import annotations

from typing import Any, Callable, Protocol


class Surface(Protocol):
    """Port-agnostic surface interface."""

    def post(self, message: dict[str, Any]) -> None:
        """Deliver one outbound message, in order."""


class MemorySurface:
    """Keeps every posted message and optionally forwards it to a consumer."""

    def __init__(self, consumer: Callable[[dict[str, Any]], Any] | None = None) -> None:
        self.messages: list[dict[str, Any]] = []
        self._consumer = consumer

    def connect(self, consumer: Callable[[dict[str, Any]], Any]) -> None:
        self._consumer = consumer

    def post(self, message: dict[str, Any]) -> None:
        self.messages.append(message)
        if self._consumer is not None:
            self._consumer(message)

    def replies(self) -> list[dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == "response"]

    def envelopes(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for m in self.messages:
            if m.get("type") == "response":
                continue
            batch = m.get("batch")
            if isinstance(batch, list):
                out.extend(e for e in batch if isinstance(e, dict))
            else:
                out.append(m)
        return out
