from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Protocol

from .models.diff import DiffBookkeeping, DiffDecision, DiffPhase, PendingDiff
from .models.parts import ToolInvocation
from .session import ConversationSession
from .tool_catalog import is_file_modifying, target_path_of

logger = logging.getLogger(__name__)

ResumeFn = Callable[[str, str], Awaitable[None]]


class DiffApplier(Protocol):
    """The component that owns pending file diffs (editor side)."""

    async def list_pending(self, conversation_id: str) -> list[PendingDiff]:
        """Diffs still waiting for review."""

    async def accept(self, diff_id: str, *, annotation: str | None = None) -> bool:
        """Apply a diff; returns True when the annotation was consumed."""

    async def reject(self, diff_id: str, *, annotation: str | None = None) -> bool:
        """Discard a diff; returns True when the annotation was consumed."""

    async def revert_pending(self, conversation_id: str) -> None:
        """Drop every unconfirmed diff of a conversation."""


class DiffConfirmationCoordinator:
    """
    Decides when a paused tool loop may continue after file-modifying tools ran.

    Two sources must agree before the single resume call goes out: the backend's
    list of tool ids that need a decision, and the applier's pending-diff set. The
    in-flight guard keeps one resume per conversation until that resumed stream
    ends (`release`).
    """

    def __init__(self, applier: DiffApplier, resume: ResumeFn) -> None:
        self._applier = applier
        self._resume = resume
        self._in_flight: set[str] = set()
        # Bookkeeping as it stood when the resume fired, kept until that resume ends.
        self._resolved: dict[str, DiffBookkeeping] = {}

    def in_flight(self, conversation_id: str) -> bool:
        return conversation_id in self._in_flight

    def release(self, conversation_id: str, *, failed_session: ConversationSession | None = None) -> None:
        """
        Drop the in-flight guard. When the resumed stream failed, pass its session so
        the decisions it consumed come back and the next evaluation can resume again.
        """

        self._in_flight.discard(conversation_id)
        resolved = self._resolved.pop(conversation_id, None)
        if failed_session is None or resolved is None or failed_session.diff.active:
            return
        failed_session.diff.restore(resolved)
        logger.info("Resume for %s failed; diff decisions restored for a retry", conversation_id)

    def reset(self, session: ConversationSession) -> None:
        self._resolved.pop(session.conversation_id, None)
        session.diff.clear()

    # ---- inputs ----

    def note_backend_list(self, session: ConversationSession, tool_ids: Iterable[str]) -> None:
        diff = session.diff
        required: list[str] = []
        for tool_id in tool_ids:
            if not isinstance(tool_id, str) or not tool_id or tool_id in required:
                continue
            inv = _find_tool(session, tool_id)
            if inv is not None and not is_file_modifying(inv.name):
                continue
            required.append(tool_id)
        if not required:
            if diff.phase == DiffPhase.IDLE:
                diff.phase = DiffPhase.AWAITING_BACKEND_LIST
            return
        diff.required_tool_ids = required
        diff.phase = DiffPhase.USER_PROCESSING

    def note_external_save(self, session: ConversationSession, file_path: str) -> list[str]:
        """The user saved (accepted) a diff outside the runtime."""

        return self._record(session, _tool_ids_for_path(session, file_path), DiffDecision.ACCEPTED)

    async def accept(self, session: ConversationSession, target: str, *, annotation: str | None = None) -> bool:
        return await self._decide(session, target, DiffDecision.ACCEPTED, annotation)

    async def reject(self, session: ConversationSession, target: str, *, annotation: str | None = None) -> bool:
        return await self._decide(session, target, DiffDecision.REJECTED, annotation)

    async def poll(self, session: ConversationSession) -> bool:
        """Refresh the pending set from the applier. Failures are logged and retried next time."""

        conversation_id = session.conversation_id
        try:
            items = await self._applier.list_pending(conversation_id)
        except Exception as e:
            logger.warning("Pending-diff poll failed for %s: %s", conversation_id, e)
            return False

        diff = session.diff
        diff.pending = list(items)
        diff.note_seen(diff.pending)
        if diff.required_tool_ids is not None:
            still_pending = {p.file_path for p in diff.pending}
            still_pending_tools = {p.tool_id for p in diff.pending if p.tool_id}
            for tool_id in diff.undecided_tool_ids():
                if tool_id in still_pending_tools:
                    continue
                inv = _find_tool(session, tool_id)
                path = target_path_of(inv.name, inv.args) if inv is not None else None
                if path is not None and path in still_pending:
                    continue
                if not diff.was_seen(tool_id, path):
                    # The applier has not registered this diff yet.
                    continue
                logger.debug("Diff for tool %s left the applier unreviewed; counting it as saved", tool_id)
                diff.decisions[tool_id] = DiffDecision.ACCEPTED
        return True

    # ---- resume ----

    async def evaluate(self, session: ConversationSession) -> bool:
        """Fire the resume call if, and only if, both sources agree. Returns whether it fired."""

        diff = session.diff
        if not diff.is_satisfied():
            return False
        conversation_id = session.conversation_id
        if conversation_id in self._in_flight:
            return False

        self._in_flight.add(conversation_id)
        self._resolved[conversation_id] = diff.copy()
        diff.phase = DiffPhase.RESOLVED
        annotation = "\n".join(a for a in diff.annotations if a.strip())
        diff.clear()
        try:
            await self._resume(conversation_id, annotation)
        except Exception:
            self.release(conversation_id, failed_session=session)
            raise
        return True

    # ---- internals ----

    async def _decide(
        self,
        session: ConversationSession,
        target: str,
        decision: DiffDecision,
        annotation: str | None,
    ) -> bool:
        diff = session.diff
        pending = _find_pending(diff.pending or [], target)
        if pending is None:
            await self.poll(session)
            pending = _find_pending(diff.pending or [], target)
        consumed = False
        if pending is not None:
            if decision == DiffDecision.ACCEPTED:
                consumed = await self._applier.accept(pending.id, annotation=annotation)
            else:
                consumed = await self._applier.reject(pending.id, annotation=annotation)
        if annotation and annotation.strip() and not consumed:
            diff.annotations.append(annotation.strip())

        if pending is not None and pending.tool_id:
            tool_ids = [pending.tool_id]
        else:
            tool_ids = _tool_ids_for_path(session, pending.file_path if pending is not None else target)
        self._record(session, tool_ids, decision)

        if await self.poll(session):
            return await self.evaluate(session)
        return False

    def _record(self, session: ConversationSession, tool_ids: list[str], decision: DiffDecision) -> list[str]:
        diff = session.diff
        for tool_id in tool_ids:
            diff.decisions.setdefault(tool_id, decision)
        if tool_ids:
            if diff.required_tool_ids is None:
                diff.phase = DiffPhase.AWAITING_BACKEND_LIST
            elif diff.phase == DiffPhase.IDLE:
                diff.phase = DiffPhase.USER_PROCESSING
        return tool_ids


def _find_tool(session: ConversationSession, tool_id: str) -> ToolInvocation | None:
    for turn in reversed(session.turns):
        inv = turn.tool(tool_id)
        if inv is not None:
            return inv
    return None


def _find_pending(pending: list[PendingDiff], target: str) -> PendingDiff | None:
    for p in pending:
        if p.id == target:
            return p
    for p in pending:
        if p.file_path == target:
            return p
    return None


def _tool_ids_for_path(session: ConversationSession, file_path: str) -> list[str]:
    required = session.diff.required_tool_ids
    out: list[str] = []
    for turn in session.turns:
        for inv in turn.tools:
            if required is not None and inv.id not in required:
                continue
            if target_path_of(inv.name, inv.args) == file_path:
                out.append(inv.id)
    return out
