from __future__ import annotations

import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .checkpoint import CheckpointRecord
from .tool_status import ToolStatus

logger = logging.getLogger(__name__)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _EventBase(_WireModel):
    conversation_id: str = Field(alias="conversationId")
    # Identifies the backend stream that produced the event; late events from an
    # older stream of the same conversation are dropped while it sits in the background.
    stream_id: str | None = Field(default=None, alias="streamId")


class StreamChunk(_WireModel):
    delta: list[dict[str, Any]] = Field(default_factory=list)
    done: bool = False
    usage: dict[str, Any] | None = Field(default=None, alias="usageMetadata")


class PendingToolCall(_WireModel):
    id: str
    name: str = ""
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResult(_WireModel):
    id: str
    name: str = ""
    result: dict[str, Any] = Field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.result.get("cancelled") is True

    @property
    def rejected(self) -> bool:
        return self.result.get("rejected") is True


class StreamErrorInfo(_WireModel):
    code: str = "STREAM_ERROR"
    message: str = ""


class ChunkEvent(_EventBase):
    type: Literal["chunk"] = "chunk"
    chunk: StreamChunk = Field(default_factory=StreamChunk)


class ToolsExecutingEvent(_EventBase):
    type: Literal["toolsExecuting"] = "toolsExecuting"
    content: dict[str, Any] | None = None
    pending_tool_calls: list[PendingToolCall] = Field(default_factory=list, alias="pendingToolCalls")


class ToolStatusEvent(_EventBase):
    type: Literal["toolStatus"] = "toolStatus"
    tool_id: str = Field(alias="toolId")
    status: ToolStatus
    result: dict[str, Any] | None = None


class AwaitingConfirmationEvent(_EventBase):
    type: Literal["awaitingConfirmation"] = "awaitingConfirmation"
    content: dict[str, Any] | None = None
    pending_tool_calls: list[PendingToolCall] = Field(default_factory=list, alias="pendingToolCalls")


class ToolIterationEvent(_EventBase):
    type: Literal["toolIteration"] = "toolIteration"
    content: dict[str, Any] | None = None
    tool_results: list[ToolResult] = Field(default_factory=list, alias="toolResults")
    checkpoints: list[CheckpointRecord] = Field(default_factory=list)
    need_annotation: bool = Field(default=False, alias="needAnnotation")
    pending_diff_tool_ids: list[str] = Field(default_factory=list, alias="pendingDiffToolIds")


class CompleteEvent(_EventBase):
    type: Literal["complete"] = "complete"
    content: dict[str, Any] | None = None
    checkpoints: list[CheckpointRecord] = Field(default_factory=list)


class CheckpointsEvent(_EventBase):
    type: Literal["checkpoints"] = "checkpoints"
    checkpoints: list[CheckpointRecord] = Field(default_factory=list)


class CancelledEvent(_EventBase):
    type: Literal["cancelled"] = "cancelled"
    content: dict[str, Any] | None = None


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    error: StreamErrorInfo = Field(default_factory=StreamErrorInfo)


InboundEvent = Annotated[
    Union[
        ChunkEvent,
        ToolsExecutingEvent,
        ToolStatusEvent,
        AwaitingConfirmationEvent,
        ToolIterationEvent,
        CompleteEvent,
        CheckpointsEvent,
        CancelledEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES: frozenset[str] = frozenset({"complete", "cancelled", "error"})

_INBOUND_ADAPTER: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


def parse_inbound_event(raw: Any, *, conversation_id: str | None = None) -> InboundEvent | None:
    """
    Validate one raw transport event.

    Unknown kinds and malformed payloads are protocol violations: they are logged and
    ignored (None), never raised.
    """

    if not isinstance(raw, dict):
        logger.warning("Ignoring non-object stream event: %r", type(raw).__name__)
        return None
    data = dict(raw)
    if conversation_id and not data.get("conversationId") and not data.get("conversation_id"):
        data["conversationId"] = conversation_id
    try:
        return _INBOUND_ADAPTER.validate_python(data)
    except ValidationError as exc:
        logger.warning(
            "Ignoring invalid stream event type=%r conversation=%r: %s",
            data.get("type"),
            data.get("conversationId"),
            exc.errors(include_url=False)[:3],
        )
        return None


def event_to_wire(event: BaseModel) -> dict[str, Any]:
    return event.model_dump(by_alias=True, exclude_none=True, mode="json")
