"""
End-to-end tests for the conversation engine and the request router, driven by a
recorded backend and the in-memory diff applier.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable

import httpx

from loom.runtime.config import RuntimeConfig
from loom.runtime.engine import ConversationEngine
from loom.runtime.memory import InMemoryDiffApplier, RecordedBackend
from loom.runtime.models import Role, ToolStatus
from loom.runtime.router import PendingReply, RequestRouter
from loom.runtime.surface import MemorySurface

CONV = "conv-1"


class HangingBackend(RecordedBackend):
    """Plays its chat script, then keeps the stream open until it is aborted."""

    def stream_chat(self, *, conversation_id: str, message: str) -> AsyncIterator[dict[str, Any]]:
        self.calls.append(("chat", {"conversation_id": conversation_id, "message": message}))
        return self._hang(self._scripts.pop(0))

    async def _hang(self, script: list[Any]) -> AsyncIterator[dict[str, Any]]:
        for item in script:
            await asyncio.sleep(0)
            yield item
        await asyncio.Event().wait()


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _types(surface: MemorySurface) -> list[str]:
    return [e["type"] for e in surface.envelopes()]


def _engine(backend, applier=None, **config: Any) -> tuple[ConversationEngine, MemorySurface]:
    surface = MemorySurface()
    engine = ConversationEngine(
        backend=backend,
        applier=applier or InMemoryDiffApplier(),
        surface=surface,
        config=RuntimeConfig(**config),
    )
    return engine, surface


class TestStreams:
    def test_full_stream(self, ev):
        backend = RecordedBackend([[ev.raw_chunk("Hel"), ev.raw_chunk("lo"), ev.raw("complete")]])
        engine, surface = _engine(backend)

        async def main() -> None:
            await engine.send_message("hi", conversation_id=CONV)
            await engine.drain()

        asyncio.run(main())

        session = engine.session
        assert session.conversation_id == CONV
        assert [t.role for t in session.turns] == [Role.USER, Role.ASSISTANT]
        assert session.turns[-1].content == "Hello"
        assert session.is_streaming is False
        assert _types(surface) == ["chunk", "chunk", "complete"]
        stream_ids = {e["streamId"] for e in surface.envelopes()}
        assert len(stream_ids) == 1
        assert backend.calls == [("chat", {"conversation_id": CONV, "message": "hi"})]

    def test_failure_before_first_event(self, ev):
        """One error event and one failed reply; the empty assistant turn goes away."""
        backend = RecordedBackend([[httpx.ConnectError("connection refused")]])
        engine, surface = _engine(backend)

        async def main() -> None:
            reply = PendingReply(surface, "r1")
            await engine.send_message("hi", conversation_id=CONV, reply=reply)
            await engine.drain()

        asyncio.run(main())

        assert _types(surface) == ["error"]
        assert surface.envelopes()[0]["error"]["code"] == "NETWORK_ERROR"
        replies = surface.replies()
        assert len(replies) == 1
        assert replies[0]["success"] is False
        assert replies[0]["error"]["code"] == "NETWORK_ERROR"
        assert len(engine.session.turns) == 1
        assert engine.session.error["code"] == "NETWORK_ERROR"

    def test_failure_mid_stream(self, ev):
        backend = RecordedBackend([[ev.raw_chunk("part"), RuntimeError("stream broke")]])
        engine, surface = _engine(backend)

        async def main() -> None:
            reply = PendingReply(surface, "r1")
            await engine.send_message("hi", conversation_id=CONV, reply=reply)
            await engine.drain()

        asyncio.run(main())

        assert _types(surface) == ["chunk", "error"]
        replies = surface.replies()
        assert len(replies) == 1
        assert replies[0]["success"] is True
        assert replies[0]["data"]["started"] is True
        assert engine.session.turns[-1].content == "part"

    def test_stream_without_terminal_event_completes(self, ev):
        backend = RecordedBackend([[ev.raw_chunk("x")]])
        engine, surface = _engine(backend)

        async def main() -> None:
            await engine.send_message("hi", conversation_id=CONV)
            await engine.drain()

        asyncio.run(main())

        assert _types(surface) == ["chunk", "complete"]
        assert engine.session.is_streaming is False
        assert engine.is_streaming(CONV) is False

    def test_unknown_event_kinds_are_skipped(self, ev):
        backend = RecordedBackend([[ev.raw("mystery", foo=1), ev.raw_chunk("ok"), ev.raw("complete")]])
        engine, surface = _engine(backend)

        async def main() -> None:
            await engine.send_message("hi", conversation_id=CONV)
            await engine.drain()

        asyncio.run(main())

        assert _types(surface) == ["chunk", "complete"]
        assert engine.session.turns[-1].content == "ok"


class TestCancel:
    def test_cancel_aborts_quietly_and_rejects_pending_tools(self, ev):
        content = ev.content(ev.text("Working"), ev.call(id="t1", name="execute_command", args={"command": "make"}))
        backend = HangingBackend(
            [[ev.raw_chunk("Working"), ev.raw("awaitingConfirmation", content=content, pendingToolCalls=[{"id": "t1"}])]]
        )
        applier = InMemoryDiffApplier()
        engine, surface = _engine(backend, applier)

        async def main() -> list[bool]:
            engine.spawn(engine.send_message("hi", conversation_id=CONV))
            await _until(lambda: "awaitingConfirmation" in _types(surface))
            out = [await engine.cancel(CONV), await engine.cancel(CONV)]
            await engine.drain()
            return out

        assert asyncio.run(main()) == [True, False]

        assert _types(surface) == ["chunk", "awaitingConfirmation", "cancelled"]
        session = engine.session
        assert session.turns[1].tool("t1").status == ToolStatus.ERROR
        last = session.turns[-1]
        assert last.is_function_response is True
        assert last.parts[0].response["rejected"] is True
        assert session.is_streaming is False
        assert session.is_waiting_for_response is False
        assert applier.reverted == [CONV]
        assert backend.rejected == [CONV]
        assert engine.is_streaming(CONV) is False

    def test_cancel_when_idle_does_nothing(self):
        engine, surface = _engine(RecordedBackend())

        assert asyncio.run(engine.cancel(CONV)) is False
        assert surface.messages == []

    def test_cancel_background_conversation_awaiting_diff_review(self, ev):
        content = ev.content(ev.call(id="t1", name="write_file", args={"path": "a.txt", "content": "A"}))
        backend = RecordedBackend(
            [
                [
                    ev.raw("toolsExecuting", content=content, pendingToolCalls=[{"id": "t1"}]),
                    ev.raw(
                        "toolIteration",
                        toolResults=[{"id": "t1", "name": "write_file", "result": {"success": True}}],
                        needAnnotation=True,
                        pendingDiffToolIds=["t1"],
                    ),
                    ev.raw("complete"),
                ]
            ]
        )
        applier = InMemoryDiffApplier()
        applier.add(CONV, "a.txt", tool_id="t1")
        engine, surface = _engine(backend, applier)

        async def main() -> list[bool]:
            await engine.send_message("write a", conversation_id=CONV)
            await engine.drain()
            first_tab = engine.tabs.active_tab_id
            engine.tabs.switch_tab(engine.tabs.create_tab(title="Other"))
            out = [await engine.cancel(CONV), await engine.cancel(CONV)]
            await engine.drain()
            engine.tabs.switch_tab(first_tab)
            return out

        assert asyncio.run(main()) == [True, False]

        assert applier.reverted == [CONV]
        assert backend.rejected == [CONV]
        assert _types(surface)[-1] == "cancelled"
        assert engine.session.conversation_id == CONV
        assert engine.session.diff.active is False

    def test_new_stream_rearms_cancel(self, ev):
        backend = RecordedBackend(
            [
                [ev.raw_chunk("one"), ev.raw("complete")],
                [ev.raw_chunk("two"), ev.raw("complete")],
            ]
        )
        engine, surface = _engine(backend)

        async def main() -> list[bool]:
            await engine.send_message("hi", conversation_id=CONV)
            engine.session.is_waiting_for_response = True
            first = await engine.cancel(CONV)
            await engine.drain()
            await engine.send_message("again", conversation_id=CONV)
            engine.session.is_waiting_for_response = True
            second = await engine.cancel(CONV)
            await engine.drain()
            return [first, second]

        assert asyncio.run(main()) == [True, True]
        assert _types(surface).count("cancelled") == 2


class TestToolFlows:
    def test_tool_confirmation_rejection(self, ev):
        content = ev.content(ev.call(id="t1", name="execute_command", args={"command": "rm -rf /"}))
        backend = RecordedBackend(
            [
                [ev.raw("awaitingConfirmation", content=content, pendingToolCalls=[{"id": "t1"}]), ev.raw("complete")],
                [ev.raw_chunk("Skipped it."), ev.raw("complete")],
            ]
        )
        engine, surface = _engine(backend)

        async def main() -> None:
            await engine.send_message("clean up", conversation_id=CONV)
            await engine.drain()
            assert engine.session.turns[1].tool("t1").status == ToolStatus.PENDING
            await engine.confirm_tools(CONV, {"t1": False}, annotation="not that")
            await engine.drain()

        asyncio.run(main())

        session = engine.session
        assert session.turns[1].tool("t1").status == ToolStatus.ERROR
        assert session.turns[2].is_function_response is True
        assert session.turns[3].content == "not that"
        assert session.turns[-1].content == "Skipped it."
        assert backend.calls[1] == (
            "tool_confirmation",
            {"conversation_id": CONV, "decisions": {"t1": False}, "annotation": "not that"},
        )

    def test_diff_review_resumes_once(self, ev):
        content = ev.content(ev.call(id="t1", name="write_file", args={"path": "a.txt", "content": "A"}))
        backend = RecordedBackend(
            [
                [
                    ev.raw("toolsExecuting", content=content, pendingToolCalls=[{"id": "t1"}]),
                    ev.raw(
                        "toolIteration",
                        toolResults=[{"id": "t1", "name": "write_file", "result": {"success": True}}],
                        needAnnotation=True,
                        pendingDiffToolIds=["t1"],
                    ),
                    ev.raw("complete"),
                ],
                [ev.raw_chunk("Applied."), ev.raw("complete")],
            ]
        )
        applier = InMemoryDiffApplier()
        applier.add(CONV, "a.txt", tool_id="t1")
        engine, surface = _engine(backend, applier)

        async def main() -> list[bool]:
            await engine.send_message("write a", conversation_id=CONV)
            await engine.drain()
            assert engine.session.diff.required_tool_ids == ["t1"]
            resumed = await engine.accept_diff(CONV, "a.txt", annotation="looks good")
            await engine.drain()
            again = await engine.poll_pending_diffs()
            return [resumed, again]

        assert asyncio.run(main()) == [True, False]

        assert [kind for kind, _ in backend.calls] == ["chat", "continue"]
        assert backend.calls[1][1]["annotation"] == "looks good"
        assert engine.session.turns[-1].content == "Applied."
        assert engine.diffs.in_flight(CONV) is False
        assert len(applier.accepted) == 1

    def test_failed_resumed_stream_is_retried_by_poll(self, ev):
        content = ev.content(ev.call(id="t1", name="write_file", args={"path": "a.txt", "content": "A"}))
        backend = RecordedBackend(
            [
                [
                    ev.raw("toolsExecuting", content=content, pendingToolCalls=[{"id": "t1"}]),
                    ev.raw("toolIteration", needAnnotation=True, pendingDiffToolIds=["t1"]),
                    ev.raw("complete"),
                ],
                [httpx.ConnectError("connection reset")],
                [ev.raw_chunk("Applied."), ev.raw("complete")],
            ]
        )
        applier = InMemoryDiffApplier()
        applier.add(CONV, "a.txt", tool_id="t1")
        engine, surface = _engine(backend, applier)

        async def main() -> list[bool]:
            await engine.send_message("write a", conversation_id=CONV)
            await engine.drain()
            first = await engine.accept_diff(CONV, "a.txt")
            await engine.drain()
            assert engine.session.diff.required_tool_ids == ["t1"]
            retried = await engine.poll_pending_diffs()
            await engine.drain()
            return [first, retried]

        assert asyncio.run(main()) == [True, True]

        assert [kind for kind, _ in backend.calls] == ["chat", "continue", "continue"]
        assert "error" in _types(surface)
        assert engine.session.turns[-1].content == "Applied."
        assert engine.session.diff.active is False


class TestRouter:
    def _router(self, backend=None, **config: Any) -> tuple[RequestRouter, ConversationEngine, MemorySurface]:
        engine, surface = _engine(backend or RecordedBackend(), **config)
        return RequestRouter(engine), engine, surface

    def test_unknown_request_type(self):
        router, _, surface = self._router()

        asyncio.run(router.route("launchRockets", {}, "r1"))

        assert surface.replies() == [
            {
                "type": "response",
                "requestId": "r1",
                "success": False,
                "error": {"code": "UNKNOWN_REQUEST", "message": "Unknown request type: launchRockets"},
            }
        ]

    def test_missing_field_is_bad_request(self):
        router, _, surface = self._router()

        asyncio.run(router.route("chatStream", {"message": "  "}, "r1"))

        assert surface.replies()[0]["error"]["code"] == "BAD_REQUEST"

    def test_unexpected_failure_is_internal(self, monkeypatch):
        router, engine, surface = self._router()

        def boom(*args, **kwargs):
            raise ValueError("corrupt tab state")

        monkeypatch.setattr(engine.tabs, "create_tab", boom)
        asyncio.run(router.route("createTab", {}, "r1"))

        reply = surface.replies()[0]
        assert reply["success"] is False
        assert reply["error"] == {"code": "INTERNAL", "message": "corrupt tab state"}

    def test_tab_limit(self):
        router, _, surface = self._router(max_tabs=2)

        async def main() -> None:
            await router.route("createTab", {"title": "Second"}, "r1")
            await router.route("createTab", {}, "r2")

        asyncio.run(main())

        first, second = surface.replies()
        assert first["success"] is True
        assert first["data"]["tabId"].startswith("tab_")
        assert second["error"]["code"] == "TAB_LIMIT"

    def test_chat_stream_answers_once(self, ev):
        backend = RecordedBackend([[ev.raw_chunk("a"), ev.raw_chunk("b"), ev.raw("complete")]])
        router, engine, surface = self._router(backend)

        async def main() -> None:
            reply = await router.route("chatStream", {"message": "hi", "conversationId": CONV}, "r1")
            assert reply.deferred is True
            await engine.drain()

        asyncio.run(main())

        replies = surface.replies()
        assert len(replies) == 1
        assert replies[0]["success"] is True
        assert replies[0]["data"]["started"] is True
        assert replies[0]["data"]["streamId"] == surface.envelopes()[0]["streamId"]

    def test_list_and_switch_tabs(self):
        router, engine, surface = self._router()
        new_tab = engine.tabs.create_tab(title="Other")

        async def main() -> None:
            await router.route("switchTab", {"tabId": new_tab}, "r1")
            await router.route("listTabs", None, "r2")

        asyncio.run(main())

        switched, listing = surface.replies()
        assert switched["data"] == {"switched": True}
        assert listing["data"]["activeTabId"] == new_tab
        assert [t["title"] for t in listing["data"]["tabs"]] == ["New Chat", "Other"]

    def test_cancel_request(self):
        router, _, surface = self._router()

        asyncio.run(router.route("cancelStream", {"conversationId": CONV}, "r1"))

        assert surface.replies()[0]["data"] == {"cancelled": True}


def test_poll_loop_stops():
    engine, _ = _engine(RecordedBackend(), diff_poll_interval_s=0.01)

    async def main() -> None:
        stop = asyncio.Event()
        loop_task = asyncio.ensure_future(engine.run_poll_loop(stop))
        await asyncio.sleep(0.03)
        stop.set()
        await asyncio.wait_for(loop_task, timeout=1.0)

    asyncio.run(main())
