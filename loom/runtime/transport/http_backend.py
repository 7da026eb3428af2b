from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import httpx

from ..errors import wrap_transport_exception
from .sse import iter_sse_events

logger = logging.getLogger(__name__)


class HttpChatBackend:
    """
    Chat backend reached over HTTP; every streaming call is a POST answered with
    server-sent events. Retries are left to the server side.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        if client is None:
            timeout = httpx.Timeout(None) if timeout_s is None else httpx.Timeout(float(timeout_s), read=None)
            client = httpx.AsyncClient(timeout=timeout)
            self._owns_client = True
        else:
            self._owns_client = False
        self._client = client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def stream_chat(self, *, conversation_id: str, message: str) -> AsyncIterator[dict[str, Any]]:
        return self._stream("chat", {"conversationId": conversation_id, "message": message})

    def stream_tool_confirmation(
        self,
        *,
        conversation_id: str,
        decisions: dict[str, bool],
        annotation: str | None,
    ) -> AsyncIterator[dict[str, Any]]:
        payload: dict[str, Any] = {
            "conversationId": conversation_id,
            "toolResponses": [{"id": k, "confirmed": v} for k, v in decisions.items()],
        }
        if annotation:
            payload["annotation"] = annotation
        return self._stream("tool-confirmation", payload)

    def stream_continue_with_annotation(self, *, conversation_id: str, annotation: str) -> AsyncIterator[dict[str, Any]]:
        return self._stream("continue", {"conversationId": conversation_id, "annotation": annotation})

    async def reject_pending_tool_calls(self, conversation_id: str) -> None:
        url = f"{self._base_url}/reject-pending"
        try:
            resp = await self._client.post(url, headers=self._headers, json={"conversationId": conversation_id})
            resp.raise_for_status()
        except Exception as e:
            raise wrap_transport_exception(e, operation="reject_pending") from e

    async def _stream(self, path: str, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        url = f"{self._base_url}/{path}"
        headers = {"Accept": "text/event-stream", **self._headers}
        try:
            async with self._client.stream("POST", url, headers=headers, json=payload) as resp:
                resp.raise_for_status()
                async for event in iter_sse_events(resp.aiter_lines()):
                    yield event
        except httpx.HTTPError as e:
            logger.debug("POST %s failed: %s", url, e)
            raise wrap_transport_exception(e, operation=path) from e
