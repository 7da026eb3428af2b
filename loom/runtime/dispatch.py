from __future__ import annotations

import asyncio
from typing import Any, Iterable

from pydantic import BaseModel

from .models.events import event_to_wire
from .surface import Surface

# Latency-sensitive kinds skip the end-of-tick wait.
IMMEDIATE_EVENT_TYPES: frozenset[str] = frozenset({"chunk", "error"})


def make_envelope(conversation_id: str, event_type: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    envelope: dict[str, Any] = dict(payload or {})
    envelope["conversationId"] = conversation_id
    envelope["type"] = event_type
    return envelope


class DispatchScheduler:
    """
    Coalesces outbound events into one message per event-loop tick.

    Events enqueued during the same tick leave in arrival order: a single event as a
    plain envelope, several wrapped as `{"batch": [...]}`. Enqueueing an immediate kind
    flushes the whole buffer right away so ordering is never broken.
    """

    def __init__(self, surface: Surface) -> None:
        self._surface = surface
        self._buffer: list[dict[str, Any]] = []
        self._flush_handle: asyncio.Handle | None = None

    @property
    def pending_count(self) -> int:
        return len(self._buffer)

    def enqueue(self, conversation_id: str, event_type: str, payload: dict[str, Any] | None = None) -> None:
        self._push(make_envelope(conversation_id, event_type, payload))

    def enqueue_event(self, event: BaseModel) -> None:
        self._push(event_to_wire(event))

    def _push(self, envelope: dict[str, Any]) -> None:
        self._buffer.append(envelope)
        if envelope.get("type") in IMMEDIATE_EVENT_TYPES:
            self.flush()
            return
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to defer to (synchronous caller): nothing else can join this tick.
            self.flush()
            return
        self._flush_handle = loop.call_soon(self.flush)

    def flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if not self._buffer:
            return
        pending, self._buffer = self._buffer, []
        if len(pending) == 1:
            self._surface.post(pending[0])
        else:
            self._surface.post({"batch": pending})


def iter_envelopes(message: dict[str, Any]) -> list[dict[str, Any]]:
    batch = message.get("batch")
    if isinstance(batch, list):
        return [e for e in batch if isinstance(e, dict)]
    return [message]


def collapse_status_runs(envelopes: Iterable[dict[str, Any]]) -> list[list[dict[str, Any]]]:
    """
    Group a batch for application.

    Consecutive `toolStatus` envelopes of the same conversation form one group so the
    consumer rebuilds state once per run; every other envelope is its own group.
    """

    groups: list[list[dict[str, Any]]] = []
    for env in envelopes:
        if env.get("type") == "toolStatus" and groups:
            prev = groups[-1]
            head = prev[0]
            if head.get("type") == "toolStatus" and head.get("conversationId") == env.get("conversationId"):
                prev.append(env)
                continue
        groups.append([env])
    return groups
