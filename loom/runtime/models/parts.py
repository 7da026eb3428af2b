from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union

from ..ids import new_id, new_tool_call_id, now_ts_ms
from .tool_status import ToolStatus, can_transition_tool


class PartKind(StrEnum):
    TEXT = "text"
    FUNCTION_CALL = "functionCall"
    FUNCTION_RESPONSE = "functionResponse"
    INLINE_DATA = "inlineData"


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True)
class TextPart:
    value: str
    is_thought: bool = False

    kind = PartKind.TEXT


@dataclass(slots=True)
class FunctionCallPart:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    # Raw argument text accumulated across fragments; None once the call is complete.
    partial_args: str | None = None
    index: int | None = None

    kind = PartKind.FUNCTION_CALL


@dataclass(slots=True)
class FunctionResponsePart:
    id: str
    name: str
    response: dict[str, Any] = field(default_factory=dict)

    kind = PartKind.FUNCTION_RESPONSE


@dataclass(slots=True)
class InlineDataPart:
    mime_type: str
    data: str

    kind = PartKind.INLINE_DATA


Part = Union[TextPart, FunctionCallPart, FunctionResponsePart, InlineDataPart]


@dataclass(slots=True)
class ToolInvocation:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    partial_args: str | None = None
    status: ToolStatus = ToolStatus.QUEUED
    result: dict[str, Any] | None = None

    def advance(self, status: ToolStatus) -> bool:
        """Move to `status` when the transition table allows it; returns whether it moved."""

        if status == self.status:
            return False
        if not can_transition_tool(before=self.status, after=status):
            return False
        self.status = status
        return True


@dataclass(slots=True)
class Turn:
    id: str
    role: Role
    parts: list[Part] = field(default_factory=list)
    streaming: bool = False
    absolute_index: int | None = None
    tools: list[ToolInvocation] = field(default_factory=list)
    # Hidden turns carry function responses back to the model; they are not rendered.
    is_function_response: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ts_ms)

    @property
    def content(self) -> str:
        return "".join(p.value for p in self.parts if isinstance(p, TextPart) and not p.is_thought)

    @property
    def is_empty(self) -> bool:
        if self.tools:
            return False
        for part in self.parts:
            if isinstance(part, TextPart):
                if part.value.strip():
                    return False
                continue
            return False
        return True

    def tool(self, tool_id: str) -> ToolInvocation | None:
        for inv in self.tools:
            if inv.id == tool_id:
                return inv
        return None

    def function_calls(self) -> list[FunctionCallPart]:
        return [p for p in self.parts if isinstance(p, FunctionCallPart)]


def part_from_wire(raw: Any) -> Part | None:
    if not isinstance(raw, dict):
        return None

    text = raw.get("text")
    if isinstance(text, str):
        return TextPart(value=text, is_thought=bool(raw.get("thought")))

    fc = raw.get("functionCall")
    if isinstance(fc, dict):
        args = fc.get("args")
        partial = fc.get("partialArgs")
        index = fc.get("index")
        return FunctionCallPart(
            id=str(fc.get("id") or ""),
            name=str(fc.get("name") or ""),
            args=dict(args) if isinstance(args, dict) else {},
            partial_args=partial if isinstance(partial, str) else None,
            index=index if isinstance(index, int) and not isinstance(index, bool) else None,
        )

    fr = raw.get("functionResponse")
    if isinstance(fr, dict):
        response = fr.get("response")
        return FunctionResponsePart(
            id=str(fr.get("id") or ""),
            name=str(fr.get("name") or ""),
            response=dict(response) if isinstance(response, dict) else {},
        )

    inline = raw.get("inlineData")
    if isinstance(inline, dict):
        return InlineDataPart(mime_type=str(inline.get("mimeType") or ""), data=str(inline.get("data") or ""))

    return None


def part_to_wire(part: Part) -> dict[str, Any]:
    if isinstance(part, TextPart):
        out: dict[str, Any] = {"text": part.value}
        if part.is_thought:
            out["thought"] = True
        return out
    if isinstance(part, FunctionCallPart):
        fc: dict[str, Any] = {"id": part.id, "name": part.name, "args": dict(part.args)}
        if part.partial_args is not None:
            fc["partialArgs"] = part.partial_args
        if part.index is not None:
            fc["index"] = part.index
        return {"functionCall": fc}
    if isinstance(part, FunctionResponsePart):
        return {"functionResponse": {"id": part.id, "name": part.name, "response": dict(part.response)}}
    return {"inlineData": {"mimeType": part.mime_type, "data": part.data}}


def turn_from_content(
    content: dict[str, Any] | None,
    *,
    turn_id: str | None = None,
    streaming: bool = False,
    absolute_index: int | None = None,
) -> Turn:
    """
    Build a turn from a backend `Content` object (`{"role": "model"|"user", "parts": [...]}`).

    Every function call becomes a `queued` invocation; calls whose response is already
    marked `rejected` start out as `error`.
    """

    raw = content if isinstance(content, dict) else {}
    role = Role.USER if raw.get("role") == "user" else Role.ASSISTANT
    parts: list[Part] = []
    raw_parts = raw.get("parts")
    if isinstance(raw_parts, list):
        for item in raw_parts:
            part = part_from_wire(item)
            if part is None:
                continue
            last = parts[-1] if parts else None
            if isinstance(part, TextPart) and isinstance(last, TextPart) and last.is_thought == part.is_thought:
                last.value += part.value
                continue
            parts.append(part)

    rejected_ids = {
        p.id for p in parts if isinstance(p, FunctionResponsePart) and p.response.get("rejected") is True
    }
    tools: list[ToolInvocation] = []
    for part in parts:
        if not isinstance(part, FunctionCallPart):
            continue
        if not part.id:
            part.id = new_tool_call_id()
        tools.append(
            ToolInvocation(
                id=part.id,
                name=part.name,
                args=dict(part.args),
                status=ToolStatus.ERROR if part.id in rejected_ids else ToolStatus.QUEUED,
            )
        )

    is_function_response = bool(parts) and all(isinstance(p, FunctionResponsePart) for p in parts)
    return Turn(
        id=turn_id or new_id("turn"),
        role=role,
        parts=parts,
        streaming=streaming,
        absolute_index=absolute_index,
        tools=tools,
        is_function_response=is_function_response,
    )


def turn_to_content(turn: Turn) -> dict[str, Any]:
    return {
        "role": "user" if turn.role == Role.USER else "model",
        "parts": [part_to_wire(p) for p in turn.parts],
    }
