from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .error_codes import ErrorCode
from .errors import RequestError
from .surface import Surface

if TYPE_CHECKING:
    from .engine import ConversationEngine

logger = logging.getLogger(__name__)


class PendingReply:
    """
    The answer to one request id. Exactly one of `resolve` / `reject` reaches the
    surface; later calls are ignored.
    """

    __slots__ = ("request_id", "_surface", "_answered", "_deferred")

    def __init__(self, surface: Surface, request_id: str | None) -> None:
        self.request_id = request_id
        self._surface = surface
        self._answered = False
        self._deferred = False

    @property
    def answered(self) -> bool:
        return self._answered

    @property
    def deferred(self) -> bool:
        return self._deferred

    def defer(self) -> None:
        """The handler hands the reply to background work that will answer it."""

        self._deferred = True

    def resolve(self, data: Any = None) -> bool:
        if self._answered:
            return False
        self._answered = True
        if self.request_id is not None:
            self._surface.post({"type": "response", "requestId": self.request_id, "success": True, "data": data})
        return True

    def reject(self, code: ErrorCode | str, message: str) -> bool:
        if self._answered:
            return False
        self._answered = True
        if self.request_id is not None:
            self._surface.post(
                {
                    "type": "response",
                    "requestId": self.request_id,
                    "success": False,
                    "error": {"code": str(code), "message": message},
                }
            )
        return True


Handler = Callable[[dict[str, Any], PendingReply], Awaitable[Any]]


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise RequestError(f"Missing required field: {key}", code=ErrorCode.BAD_REQUEST)
    return value.strip()


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value.strip() if isinstance(value, str) and value.strip() else None


class RequestRouter:
    """Maps surface requests onto engine operations and answers every request id."""

    def __init__(self, engine: ConversationEngine) -> None:
        self._engine = engine
        self._handlers: dict[str, Handler] = {
            "chatStream": self._chat_stream,
            "toolConfirmation": self._tool_confirmation,
            "cancelStream": self._cancel_stream,
            "acceptDiff": self._accept_diff,
            "rejectDiff": self._reject_diff,
            "createTab": self._create_tab,
            "closeTab": self._close_tab,
            "switchTab": self._switch_tab,
            "listTabs": self._list_tabs,
        }

    @property
    def request_types(self) -> list[str]:
        return sorted(self._handlers)

    async def route(self, request_type: str, data: dict[str, Any] | None, request_id: str | None) -> PendingReply:
        reply = PendingReply(self._engine.surface, request_id)
        handler = self._handlers.get(request_type)
        if handler is None:
            reply.reject(ErrorCode.UNKNOWN_REQUEST, f"Unknown request type: {request_type}")
            return reply
        try:
            result = await handler(data if isinstance(data, dict) else {}, reply)
        except RequestError as e:
            reply.reject(e.code, str(e))
            return reply
        except Exception as e:
            logger.exception("Request %s (%s) failed", request_type, request_id)
            reply.reject(ErrorCode.INTERNAL, str(e) or e.__class__.__name__)
            return reply
        if not reply.deferred:
            reply.resolve(result)
        return reply

    # ---- handlers ----

    async def _chat_stream(self, data: dict[str, Any], reply: PendingReply) -> None:
        message = _require_str(data, "message")
        reply.defer()
        self._engine.spawn(
            self._engine.send_message(message, conversation_id=_optional_str(data, "conversationId"), reply=reply)
        )

    async def _tool_confirmation(self, data: dict[str, Any], reply: PendingReply) -> None:
        conversation_id = _require_str(data, "conversationId")
        raw = data.get("decisions")
        if not isinstance(raw, list):
            raise RequestError("decisions must be a list", code=ErrorCode.BAD_REQUEST)
        decisions: dict[str, bool] = {}
        for item in raw:
            if isinstance(item, dict) and isinstance(item.get("id"), str):
                decisions[item["id"]] = bool(item.get("confirmed"))
        reply.defer()
        self._engine.spawn(
            self._engine.confirm_tools(
                conversation_id,
                decisions,
                annotation=_optional_str(data, "annotation"),
                reply=reply,
            )
        )

    async def _cancel_stream(self, data: dict[str, Any], reply: PendingReply) -> dict[str, Any]:
        conversation_id = _require_str(data, "conversationId")
        await self._engine.cancel(conversation_id)
        return {"cancelled": True}

    async def _accept_diff(self, data: dict[str, Any], reply: PendingReply) -> dict[str, Any]:
        return await self._decide_diff(data, accept=True)

    async def _reject_diff(self, data: dict[str, Any], reply: PendingReply) -> dict[str, Any]:
        return await self._decide_diff(data, accept=False)

    async def _decide_diff(self, data: dict[str, Any], *, accept: bool) -> dict[str, Any]:
        conversation_id = _require_str(data, "conversationId")
        target = _optional_str(data, "diffId") or _require_str(data, "filePath")
        annotation = _optional_str(data, "annotation")
        if accept:
            resumed = await self._engine.accept_diff(conversation_id, target, annotation=annotation)
        else:
            resumed = await self._engine.reject_diff(conversation_id, target, annotation=annotation)
        return {"resumed": resumed}

    async def _create_tab(self, data: dict[str, Any], reply: PendingReply) -> dict[str, Any]:
        tab_id = self._engine.tabs.create_tab(_optional_str(data, "conversationId"), _optional_str(data, "title"))
        if tab_id is None:
            raise RequestError("Too many open tabs.", code=ErrorCode.TAB_LIMIT)
        return {"tabId": tab_id}

    async def _close_tab(self, data: dict[str, Any], reply: PendingReply) -> dict[str, Any]:
        return {"closed": self._engine.tabs.close_tab(_require_str(data, "tabId"))}

    async def _switch_tab(self, data: dict[str, Any], reply: PendingReply) -> dict[str, Any]:
        return {"switched": self._engine.tabs.switch_tab(_require_str(data, "tabId"))}

    async def _list_tabs(self, data: dict[str, Any], reply: PendingReply) -> dict[str, Any]:
        tabs = self._engine.tabs
        return {"activeTabId": tabs.active_tab_id, "tabs": [t.to_dict() for t in tabs.tabs]}
