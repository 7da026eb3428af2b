from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import RuntimeConfig
from .dispatch import collapse_status_runs, iter_envelopes
from .ids import new_tab_id, now_ts_ms
from .models.events import InboundEvent, ToolStatusEvent, parse_inbound_event
from .session import ConversationSession, SessionSnapshot
from .stream.handlers import apply_event, apply_tool_status_batch

logger = logging.getLogger(__name__)

AppliedListener = Callable[[ConversationSession, InboundEvent], None]

_STOPS_STREAMING: frozenset[str] = frozenset({"complete", "error", "cancelled", "awaitingConfirmation"})
_KEEPS_STREAMING: frozenset[str] = frozenset({"chunk", "toolsExecuting", "toolStatus", "toolIteration"})


@dataclass(slots=True)
class TabSlot:
    id: str
    conversation_id: str | None = None
    title: str = "New Chat"
    is_streaming: bool = False
    created_at: int = field(default_factory=now_ts_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "title": self.title,
            "isStreaming": self.is_streaming,
            "createdAt": self.created_at,
        }


class TabManager:
    """
    Open conversations, one of them in the foreground.

    The active tab owns the live `session`. Inactive tabs are parked as immutable
    snapshots; events for their conversations are buffered and replayed, in arrival
    order, when the tab comes back to the foreground.
    """

    def __init__(self, *, config: RuntimeConfig | None = None) -> None:
        self._config = config or RuntimeConfig()
        self.tabs: list[TabSlot] = []
        self._snapshots: dict[str, SessionSnapshot] = {}
        self._background: dict[str, list[InboundEvent]] = {}
        # Latest stream per conversation; events from other streams are late leftovers.
        self._stream_ids: dict[str, str] = {}
        self._listeners: list[AppliedListener] = []

        first = TabSlot(id=new_tab_id(), title=self._config.default_tab_title)
        self.tabs.append(first)
        self.active_tab_id: str = first.id
        self.session: ConversationSession = self._new_session(None)

    # ---- queries ----

    @property
    def active_tab(self) -> TabSlot:
        tab = self.get_tab(self.active_tab_id)
        assert tab is not None
        return tab

    def get_tab(self, tab_id: str) -> TabSlot | None:
        for tab in self.tabs:
            if tab.id == tab_id:
                return tab
        return None

    def find_tab_by_conversation(self, conversation_id: str) -> TabSlot | None:
        if not conversation_id:
            return None
        if self.session.conversation_id == conversation_id:
            return self.active_tab
        for tab in self.tabs:
            if tab.conversation_id == conversation_id:
                return tab
        return None

    def active_session_for(self, conversation_id: str) -> ConversationSession | None:
        if conversation_id and self.session.conversation_id == conversation_id:
            return self.session
        return None

    def snapshot_for(self, tab_id: str) -> SessionSnapshot | None:
        return self._snapshots.get(tab_id)

    def background_events(self, conversation_id: str) -> list[InboundEvent]:
        return list(self._background.get(conversation_id, ()))

    def add_listener(self, listener: AppliedListener) -> None:
        self._listeners.append(listener)

    # ---- tab operations ----

    def create_tab(self, conversation_id: str | None = None, title: str | None = None) -> str | None:
        if conversation_id:
            existing = self.find_tab_by_conversation(conversation_id)
            if existing is not None:
                return existing.id
        if len(self.tabs) >= self._config.max_tabs:
            logger.warning("Tab limit reached (%d); not opening another tab.", self._config.max_tabs)
            return None
        tab = TabSlot(
            id=new_tab_id(),
            conversation_id=conversation_id or None,
            title=title or self._config.default_tab_title,
        )
        self.tabs.append(tab)
        return tab.id

    def open_conversation(self, conversation_id: str, title: str | None = None) -> str | None:
        tab_id = self.create_tab(conversation_id, title)
        if tab_id is not None and tab_id != self.active_tab_id:
            self.switch_tab(tab_id)
        return tab_id

    def close_tab(self, tab_id: str) -> bool:
        idx = next((i for i, t in enumerate(self.tabs) if t.id == tab_id), -1)
        if idx == -1:
            return False
        tab = self.tabs.pop(idx)
        was_active = tab.id == self.active_tab_id
        self._snapshots.pop(tab.id, None)
        conversation_id = self.session.conversation_id if was_active else tab.conversation_id
        if conversation_id and not any(t.conversation_id == conversation_id for t in self.tabs):
            self._background.pop(conversation_id, None)
            self._stream_ids.pop(conversation_id, None)

        if not self.tabs:
            fresh = TabSlot(id=new_tab_id(), title=self._config.default_tab_title)
            self.tabs.append(fresh)
            self.active_tab_id = fresh.id
            self.session = self._new_session(None)
            return True

        if was_active:
            neighbor = self.tabs[min(idx, len(self.tabs) - 1)]
            self._activate(neighbor)
        return True

    def switch_tab(self, tab_id: str) -> bool:
        if tab_id == self.active_tab_id:
            return False
        target = self.get_tab(tab_id)
        if target is None:
            return False

        current = self.active_tab
        current.conversation_id = self.session.conversation_id or None
        current.is_streaming = self.session.is_streaming
        self._snapshots[current.id] = self.session.snapshot()

        self._activate(target)
        return True

    def update_tab_title(self, tab_id: str, title: str) -> bool:
        tab = self.get_tab(tab_id)
        cleaned = title.strip() if isinstance(title, str) else ""
        if tab is None or not cleaned:
            return False
        tab.title = cleaned
        return True

    def reorder_tab(self, from_index: int, to_index: int) -> bool:
        n = len(self.tabs)
        if not (0 <= from_index < n and 0 <= to_index < n) or from_index == to_index:
            return False
        tab = self.tabs.pop(from_index)
        self.tabs.insert(to_index, tab)
        return True

    def bind_conversation(self, conversation_id: str, *, tab_id: str | None = None) -> None:
        """Attach a (newly created) conversation id to a tab, the active one by default."""

        tab = self.get_tab(tab_id) if tab_id else self.active_tab
        if tab is None:
            return
        tab.conversation_id = conversation_id
        if tab.id == self.active_tab_id:
            self.session.conversation_id = conversation_id

    def note_stream_started(self, conversation_id: str, stream_id: str | None) -> None:
        """Record the stream now feeding `conversation_id`; buffered leftovers of older streams are dropped."""

        if not stream_id:
            return
        self._stream_ids[conversation_id] = stream_id
        buffered = self._background.get(conversation_id)
        if buffered:
            self._background[conversation_id] = [e for e in buffered if not e.stream_id or e.stream_id == stream_id]
        if self.session.conversation_id == conversation_id:
            self.session.active_stream_id = stream_id
            return
        tab = self.find_tab_by_conversation(conversation_id)
        snap = self._snapshots.get(tab.id) if tab is not None else None
        if tab is not None and snap is not None:
            self._snapshots[tab.id] = snap.with_flags(active_stream_id=stream_id)

    # ---- inbound events ----

    def receive(self, message: dict[str, Any]) -> None:
        """Consume one outbound message (single envelope or batch) from the dispatcher."""

        if message.get("type") == "response":
            return
        for group in collapse_status_runs(iter_envelopes(message)):
            events = [e for e in (parse_inbound_event(raw) for raw in group) if e is not None]
            if not events:
                continue
            fresh = [e for e in events if not self._is_stale(e)]
            if not fresh:
                continue
            session = self.active_session_for(fresh[0].conversation_id)
            if session is None:
                for event in fresh:
                    self.buffer_background_event(event)
                continue
            if len(fresh) > 1 and all(isinstance(e, ToolStatusEvent) for e in fresh):
                apply_tool_status_batch(session, fresh)  # type: ignore[arg-type]
                for event in fresh:
                    self._notify(session, event)
            else:
                for event in fresh:
                    self._apply(session, event)
            self.update_tab_streaming_status(fresh[-1].conversation_id, fresh[-1].type)

    def buffer_background_event(self, event: InboundEvent) -> bool:
        tab = self.find_tab_by_conversation(event.conversation_id)
        if tab is None or tab.id == self.active_tab_id:
            logger.debug("Dropping %s for conversation %s with no open tab", event.type, event.conversation_id)
            return False
        if self._is_stale(event):
            return False
        self._background.setdefault(event.conversation_id, []).append(event)

        snap = self._snapshots.get(tab.id)
        if snap is not None:
            if event.type in {"complete", "error", "cancelled"}:
                snap = snap.with_flags(is_streaming=False, is_waiting_for_response=False)
            elif event.type == "awaitingConfirmation":
                snap = snap.with_flags(is_streaming=False, is_waiting_for_response=True)
            elif event.type in _KEEPS_STREAMING:
                snap = snap.with_flags(is_streaming=True, is_waiting_for_response=True)
            self._snapshots[tab.id] = snap
        self.update_tab_streaming_status(event.conversation_id, event.type)
        return True

    def reset_background_diff(self, conversation_id: str) -> bool:
        """Drop the diff review state of a conversation parked behind an inactive tab."""

        tab = self.find_tab_by_conversation(conversation_id)
        snap = self._snapshots.get(tab.id) if tab is not None else None
        if snap is None or not snap.awaiting_diff_review:
            return False
        self._snapshots[tab.id] = snap.without_diff()
        return True

    def update_tab_streaming_status(self, conversation_id: str, event_type: str) -> None:
        tab = self.find_tab_by_conversation(conversation_id)
        if tab is None:
            return
        if event_type in _STOPS_STREAMING:
            tab.is_streaming = False
        elif event_type in _KEEPS_STREAMING:
            tab.is_streaming = True

    # ---- internals ----

    def _is_stale(self, event: InboundEvent) -> bool:
        current = self._stream_ids.get(event.conversation_id)
        return bool(current and event.stream_id and event.stream_id != current)

    def _activate(self, target: TabSlot) -> None:
        snap = self._snapshots.pop(target.id, None)
        session = snap.restore() if snap is not None else self._new_session(target.conversation_id)
        self.session = session
        self.active_tab_id = target.id

        if session.conversation_id:
            for event in self._background.pop(session.conversation_id, []):
                self._apply(session, event)
        target.is_streaming = session.is_streaming

    def _apply(self, session: ConversationSession, event: InboundEvent) -> None:
        if apply_event(session, event):
            self._notify(session, event)

    def _notify(self, session: ConversationSession, event: InboundEvent) -> None:
        for listener in self._listeners:
            listener(session, event)

    def _new_session(self, conversation_id: str | None) -> ConversationSession:
        return ConversationSession(
            conversation_id=conversation_id or "",
            buffer_marker_prefixes=self._config.buffer_marker_prefixes,
        )
