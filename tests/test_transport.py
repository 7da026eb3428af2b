"""
Tests for the SSE decoder and the HTTP chat backend (httpx MockTransport).
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from loom.runtime.error_codes import ErrorCode
from loom.runtime.errors import TransportError
from loom.runtime.transport import HttpChatBackend, SseDecoder, iter_sse_events


def _decode(lines: list[str]) -> list[dict]:
    decoder = SseDecoder()
    out = [e for e in (decoder.feed(line) for line in lines) if e is not None]
    last = decoder.finish()
    if last is not None:
        out.append(last)
    return out


class TestSseDecoder:
    def test_framed_events(self):
        lines = [
            "event: chunk",
            'data: {"conversationId": "c", "chunk": {"delta": []}}',
            "",
            ": keep-alive",
            'data: {"type": "complete", "conversationId": "c"}',
            "",
        ]

        events = _decode(lines)

        assert [e["type"] for e in events] == ["chunk", "complete"]

    def test_multiline_data_block(self):
        events = _decode(['data: {"type": "complete",', 'data:  "conversationId": "c"}', ""])

        assert events == [{"type": "complete", "conversationId": "c"}]

    def test_plain_json_lines(self):
        events = _decode(['{"type": "chunk"}', '{"type": "complete"}'])

        assert [e["type"] for e in events] == ["chunk", "complete"]

    def test_garbage_and_done_marker_are_skipped(self):
        events = _decode(["data: [DONE]", "", "data: not json", "", "data: [1, 2]", ""])

        assert events == []

    def test_unterminated_block_is_flushed_at_end(self):
        events = _decode(['data: {"type": "complete"}'])

        assert events == [{"type": "complete"}]

    def test_async_iteration(self):
        async def lines():
            for line in ['data: {"type": "a"}', "", 'data: {"type": "b"}']:
                yield line

        async def main() -> list[dict]:
            return [e async for e in iter_sse_events(lines())]

        assert [e["type"] for e in asyncio.run(main())] == ["a", "b"]


class TestHttpChatBackend:
    def _backend(self, handler) -> HttpChatBackend:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpChatBackend("http://backend/api/", client=client, headers={"X-Client": "tests"})

    def test_stream_chat(self):
        seen: list[httpx.Request] = []
        body = (
            'data: {"type": "chunk", "conversationId": "c1", "chunk": {"delta": [{"text": "hi"}]}}\n\n'
            'data: {"type": "complete", "conversationId": "c1"}\n\n'
        )

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        backend = self._backend(handler)

        async def main() -> list[dict]:
            return [e async for e in backend.stream_chat(conversation_id="c1", message="hello")]

        events = asyncio.run(main())

        assert [e["type"] for e in events] == ["chunk", "complete"]
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "http://backend/api/chat"
        assert request.headers["accept"] == "text/event-stream"
        assert request.headers["x-client"] == "tests"
        assert json.loads(request.content) == {"conversationId": "c1", "message": "hello"}

    def test_tool_confirmation_payload(self):
        payloads: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            payloads.append(json.loads(request.content))
            return httpx.Response(200, text="")

        backend = self._backend(handler)

        async def main() -> list[dict]:
            stream = backend.stream_tool_confirmation(conversation_id="c1", decisions={"t1": True, "t2": False}, annotation="ok")
            return [e async for e in stream]

        assert asyncio.run(main()) == []
        assert payloads == [
            {
                "conversationId": "c1",
                "toolResponses": [{"id": "t1", "confirmed": True}, {"id": "t2", "confirmed": False}],
                "annotation": "ok",
            }
        ]

    def test_server_error_is_classified(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="oops")

        backend = self._backend(handler)

        async def main() -> None:
            async for _ in backend.stream_continue_with_annotation(conversation_id="c1", annotation=""):
                pass

        with pytest.raises(TransportError) as exc_info:
            asyncio.run(main())
        assert exc_info.value.code == ErrorCode.SERVER_ERROR
        assert exc_info.value.status_code == 500

    def test_connection_failure_is_classified(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = self._backend(handler)

        async def main() -> None:
            await backend.reject_pending_tool_calls("c1")

        with pytest.raises(TransportError) as exc_info:
            asyncio.run(main())
        assert exc_info.value.code == ErrorCode.NETWORK_ERROR
