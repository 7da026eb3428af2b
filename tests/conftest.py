"""
Shared pytest fixtures for the loom runtime tests.

Async code is driven with `asyncio.run(...)` from plain test functions.

Usage in tests:
    def test_something(session, ev):
        apply_event(session, ev.chunk("hello"))
"""

from __future__ import annotations

from typing import Any

import pytest

from loom.runtime.memory import InMemoryDiffApplier, RecordedBackend
from loom.runtime.models import parse_inbound_event
from loom.runtime.session import ConversationSession
from loom.runtime.surface import MemorySurface

CONV = "conv-1"


class EventFactory:
    """Builds raw wire events and validated inbound events for one conversation."""

    def __init__(self, conversation_id: str = CONV) -> None:
        self.conversation_id = conversation_id

    def raw(self, event_type: str, **fields: Any) -> dict[str, Any]:
        out: dict[str, Any] = {"conversationId": self.conversation_id, "type": event_type}
        out.update(fields)
        return out

    def parsed(self, event_type: str, **fields: Any):
        event = parse_inbound_event(self.raw(event_type, **fields))
        assert event is not None, f"invalid test event {event_type}: {fields}"
        return event

    def text(self, value: str, *, thought: bool = False) -> dict[str, Any]:
        part: dict[str, Any] = {"text": value}
        if thought:
            part["thought"] = True
        return part

    def call(self, **fc: Any) -> dict[str, Any]:
        return {"functionCall": fc}

    def chunk(self, *parts: dict[str, Any] | str, **fields: Any):
        delta = [self.text(p) if isinstance(p, str) else p for p in parts]
        return self.parsed("chunk", chunk={"delta": delta}, **fields)

    def raw_chunk(self, *parts: dict[str, Any] | str, **fields: Any) -> dict[str, Any]:
        delta = [self.text(p) if isinstance(p, str) else p for p in parts]
        return self.raw("chunk", chunk={"delta": delta}, **fields)

    def status(self, tool_id: str, status: str, **fields: Any):
        return self.parsed("toolStatus", toolId=tool_id, status=status, **fields)

    def content(self, *parts: dict[str, Any]) -> dict[str, Any]:
        return {"role": "model", "parts": list(parts)}


@pytest.fixture
def ev() -> EventFactory:
    return EventFactory()


@pytest.fixture
def session() -> ConversationSession:
    """A session with an open streaming assistant turn."""

    s = ConversationSession(conversation_id=CONV)
    s.begin_user_turn("hi")
    s.begin_assistant_turn()
    return s


@pytest.fixture
def surface() -> MemorySurface:
    return MemorySurface()


@pytest.fixture
def applier() -> InMemoryDiffApplier:
    return InMemoryDiffApplier()


@pytest.fixture
def backend() -> RecordedBackend:
    return RecordedBackend()
