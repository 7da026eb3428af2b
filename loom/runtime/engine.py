from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Protocol

from .config import RuntimeConfig
from .diff_coordinator import DiffApplier, DiffConfirmationCoordinator
from .dispatch import DispatchScheduler
from .error_codes import ErrorCode
from .errors import CancellationToken, RequestError, StreamCancelled, wrap_transport_exception
from .ids import new_id
from .models.events import (
    TERMINAL_EVENT_TYPES,
    CancelledEvent,
    CompleteEvent,
    ErrorEvent,
    InboundEvent,
    StreamErrorInfo,
    ToolIterationEvent,
    parse_inbound_event,
)
from .models.parts import Role, TextPart, Turn
from .models.tool_status import ToolStatus
from .router import PendingReply
from .session import ConversationSession
from .stream.handlers import ensure_rejection_responses
from .surface import MemorySurface, Surface
from .tabs import TabManager

logger = logging.getLogger(__name__)


class ChatBackend(Protocol):
    """The model-serving side. Every call returns the raw event stream of one request."""

    def stream_chat(self, *, conversation_id: str, message: str) -> AsyncIterator[dict[str, Any]]:
        ...

    def stream_tool_confirmation(
        self,
        *,
        conversation_id: str,
        decisions: dict[str, bool],
        annotation: str | None,
    ) -> AsyncIterator[dict[str, Any]]:
        ...

    def stream_continue_with_annotation(self, *, conversation_id: str, annotation: str) -> AsyncIterator[dict[str, Any]]:
        ...

    async def reject_pending_tool_calls(self, conversation_id: str) -> None:
        ...


@dataclass(slots=True)
class ActiveStream:
    conversation_id: str
    stream_id: str
    token: CancellationToken
    task: asyncio.Task[Any] | None = None


class ConversationEngine:
    """
    Runs backend streams for every open conversation.

    Inbound transport events are validated, tagged with their stream id and handed to
    the dispatcher; the dispatcher's output feeds the tab manager (state) and then the
    surface (rendering) in the same order.
    """

    def __init__(
        self,
        *,
        backend: ChatBackend,
        applier: DiffApplier,
        surface: Surface | None = None,
        config: RuntimeConfig | None = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.surface: Surface = surface if surface is not None else MemorySurface()
        self.tabs = TabManager(config=self.config)
        self.scheduler = DispatchScheduler(self)
        self.diffs = DiffConfirmationCoordinator(applier, self._resume_after_diffs)
        self._backend = backend
        self._applier = applier
        self._streams: dict[str, ActiveStream] = {}
        self._cancelled: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self.tabs.add_listener(self._on_applied)

    # Dispatcher sink: state first, then the surface.
    def post(self, message: dict[str, Any]) -> None:
        self.tabs.receive(message)
        self.surface.post(message)

    @property
    def session(self) -> ConversationSession:
        return self.tabs.session

    def is_streaming(self, conversation_id: str) -> bool:
        return conversation_id in self._streams

    # ---- background tasks ----

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait until every spawned task finished (tasks may spawn more)."""

        while self._tasks:
            await asyncio.wait(list(self._tasks))
        self.scheduler.flush()

    # ---- streams ----

    async def run_stream(
        self,
        conversation_id: str,
        events: AsyncIterator[dict[str, Any]],
        *,
        reply: PendingReply | None = None,
        stream_id: str | None = None,
    ) -> None:
        """
        Consume one backend stream to its end.

        A transport failure becomes exactly one `error` event (and fails `reply` if it
        is still open); an abort through `cancel` ends the stream quietly.
        """

        stream_id = stream_id or new_id("stream")
        previous = self._streams.get(conversation_id)
        if previous is not None:
            # Superseded: the older stream stops at its next await.
            previous.token.cancel()
            if previous.task is not None and previous.task is not asyncio.current_task() and not previous.task.done():
                previous.task.cancel()
        active = ActiveStream(
            conversation_id=conversation_id,
            stream_id=stream_id,
            token=CancellationToken(),
            task=asyncio.current_task(),
        )
        self._streams[conversation_id] = active
        self._cancelled.discard(conversation_id)
        self.tabs.note_stream_started(conversation_id, stream_id)

        saw_terminal = False
        failed = False
        try:
            async for raw in events:
                active.token.raise_if_cancelled()
                event = parse_inbound_event(raw, conversation_id=conversation_id)
                if event is None:
                    continue
                if event.stream_id is None:
                    event = event.model_copy(update={"stream_id": stream_id})
                if reply is not None:
                    reply.resolve({"started": True, "streamId": stream_id})
                self.scheduler.enqueue_event(event)
                if event.type in TERMINAL_EVENT_TYPES:
                    saw_terminal = True
                    failed = isinstance(event, ErrorEvent)
                    break
            active.token.raise_if_cancelled()
        except (StreamCancelled, asyncio.CancelledError):
            if not active.token.cancelled:
                raise
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                current.uncancel()
            logger.debug("Stream %s for %s aborted", stream_id, conversation_id)
            if reply is not None:
                reply.resolve({"started": False, "cancelled": True})
            return
        except Exception as e:
            if active.token.cancelled:
                # The transport broke because it was aborted.
                logger.debug("Stream %s for %s aborted: %s", stream_id, conversation_id, e)
                if reply is not None:
                    reply.resolve({"started": False, "cancelled": True})
                return
            err = wrap_transport_exception(e, operation="stream")
            logger.warning("Stream %s for %s failed: %s", stream_id, conversation_id, err)
            self.scheduler.enqueue_event(
                ErrorEvent(
                    conversation_id=conversation_id,
                    stream_id=stream_id,
                    error=StreamErrorInfo(code=str(err.code), message=str(err)),
                )
            )
            saw_terminal = True
            failed = True
            if reply is not None:
                reply.reject(err.code, str(err))
        else:
            if reply is not None:
                reply.resolve({"started": True, "streamId": stream_id})
            if not saw_terminal:
                # The backend closed the stream without saying so; close it here.
                self.scheduler.enqueue_event(CompleteEvent(conversation_id=conversation_id, stream_id=stream_id))
                saw_terminal = True
        finally:
            if self._streams.get(conversation_id) is active:
                del self._streams[conversation_id]
            await _close_quietly(events)
        if saw_terminal:
            self.diffs.release(
                conversation_id,
                failed_session=self.tabs.active_session_for(conversation_id) if failed else None,
            )

    async def cancel(self, conversation_id: str) -> bool:
        """
        Stop a conversation. Safe to call any number of times; only the first call
        after activity does anything.
        """

        if conversation_id in self._cancelled:
            return False
        active = self._streams.pop(conversation_id, None)
        if active is None and not self._looks_busy(conversation_id):
            return False
        self._cancelled.add(conversation_id)

        if active is not None:
            active.token.cancel()
            if active.task is not None and active.task is not asyncio.current_task() and not active.task.done():
                active.task.cancel()

        try:
            await self._applier.revert_pending(conversation_id)
        except Exception as e:
            logger.warning("Reverting pending diffs for %s failed: %s", conversation_id, e)
        try:
            await self._backend.reject_pending_tool_calls(conversation_id)
        except Exception as e:
            logger.warning("Rejecting pending tool calls for %s failed: %s", conversation_id, e)

        session = self.tabs.active_session_for(conversation_id)
        if session is not None:
            self.diffs.reset(session)
        else:
            self.tabs.reset_background_diff(conversation_id)
        self.diffs.release(conversation_id)
        self.scheduler.enqueue_event(
            CancelledEvent(conversation_id=conversation_id, stream_id=active.stream_id if active else None)
        )
        return True

    def _looks_busy(self, conversation_id: str) -> bool:
        session = self.tabs.active_session_for(conversation_id)
        if session is not None:
            return session.is_streaming or session.is_waiting_for_response or session.diff.active
        tab = self.tabs.find_tab_by_conversation(conversation_id)
        if tab is None:
            return False
        snap = self.tabs.snapshot_for(tab.id)
        if tab.is_streaming:
            return True
        return snap is not None and (snap.is_streaming or snap.is_waiting_for_response or snap.awaiting_diff_review)

    # ---- user actions ----

    async def send_message(
        self,
        message: str,
        *,
        conversation_id: str | None = None,
        reply: PendingReply | None = None,
    ) -> str:
        conversation_id = conversation_id or self.session.conversation_id or new_id("conv")
        if self.tabs.find_tab_by_conversation(conversation_id) is None:
            if self.session.conversation_id:
                if self.tabs.open_conversation(conversation_id) is None:
                    err = RequestError("Too many open tabs.", code=ErrorCode.TAB_LIMIT)
                    if reply is not None:
                        reply.reject(err.code, str(err))
                    raise err
            else:
                self.tabs.bind_conversation(conversation_id)
        session = self.tabs.active_session_for(conversation_id)
        if session is not None:
            self.diffs.reset(session)
            session.begin_user_turn(message)
            session.begin_assistant_turn()
        try:
            events = self._backend.stream_chat(conversation_id=conversation_id, message=message)
        except Exception as e:
            err = wrap_transport_exception(e, operation="stream_chat")
            if reply is not None:
                reply.reject(err.code, str(err))
            raise err
        await self.run_stream(conversation_id, events, reply=reply)
        return conversation_id

    async def confirm_tools(
        self,
        conversation_id: str,
        decisions: dict[str, bool],
        *,
        annotation: str | None = None,
        reply: PendingReply | None = None,
    ) -> None:
        session = self.tabs.active_session_for(conversation_id)
        if session is None:
            err = RequestError(f"Conversation is not open: {conversation_id}", code=ErrorCode.NOT_FOUND)
            if reply is not None:
                reply.reject(err.code, str(err))
            raise err

        rejected: list[str] = []
        for turn in session.turns:
            for inv in turn.tools:
                if inv.status != ToolStatus.PENDING or inv.id not in decisions:
                    continue
                if decisions[inv.id]:
                    inv.advance(ToolStatus.RUNNING)
                else:
                    inv.advance(ToolStatus.ERROR)
                    rejected.append(inv.id)
        if rejected:
            ensure_rejection_responses(session, rejected)
        if annotation:
            session.append_turn(Turn(id=new_id("turn"), role=Role.USER, parts=[TextPart(value=annotation)]))
        session.begin_assistant_turn()
        session.touch()

        events = self._backend.stream_tool_confirmation(
            conversation_id=conversation_id,
            decisions=dict(decisions),
            annotation=annotation,
        )
        await self.run_stream(conversation_id, events, reply=reply)

    async def accept_diff(self, conversation_id: str, target: str, *, annotation: str | None = None) -> bool:
        return await self.diffs.accept(self._require_active(conversation_id), target, annotation=annotation)

    async def reject_diff(self, conversation_id: str, target: str, *, annotation: str | None = None) -> bool:
        return await self.diffs.reject(self._require_active(conversation_id), target, annotation=annotation)

    async def poll_pending_diffs(self) -> bool:
        session = self.session
        if not session.conversation_id or not session.diff.active:
            return False
        if not await self.diffs.poll(session):
            return False
        return await self.diffs.evaluate(session)

    async def run_poll_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self.poll_pending_diffs()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.config.diff_poll_interval_s)
            except asyncio.TimeoutError:
                continue

    # ---- internals ----

    def _require_active(self, conversation_id: str) -> ConversationSession:
        session = self.tabs.active_session_for(conversation_id)
        if session is None:
            raise RequestError(f"Conversation is not open: {conversation_id}", code=ErrorCode.NOT_FOUND)
        return session

    def _on_applied(self, session: ConversationSession, event: InboundEvent) -> None:
        if isinstance(event, ToolIterationEvent) and event.need_annotation:
            if session.conversation_id in self._cancelled:
                # Replayed from a background buffer after the conversation was cancelled.
                return
            self.diffs.note_backend_list(session, event.pending_diff_tool_ids)
            self.spawn(self._poll_and_evaluate(session.conversation_id))

    async def _poll_and_evaluate(self, conversation_id: str) -> None:
        session = self.tabs.active_session_for(conversation_id)
        if session is None:
            return
        if await self.diffs.poll(session):
            await self.diffs.evaluate(session)

    async def _resume_after_diffs(self, conversation_id: str, annotation: str) -> None:
        session = self.tabs.active_session_for(conversation_id)
        if session is not None and session.streaming_turn() is None:
            session.begin_assistant_turn()
        events = self._backend.stream_continue_with_annotation(conversation_id=conversation_id, annotation=annotation)
        self.spawn(self.run_stream(conversation_id, events))


async def _close_quietly(events: AsyncIterator[dict[str, Any]]) -> None:
    aclose = getattr(events, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug("Closing stream iterator failed: %s", e)
