from __future__ import annotations

from .checkpoint import CheckpointRecord
from .diff import DiffBookkeeping, DiffDecision, DiffPhase, PendingDiff
from .events import (
    TERMINAL_EVENT_TYPES,
    AwaitingConfirmationEvent,
    CancelledEvent,
    CheckpointsEvent,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    InboundEvent,
    PendingToolCall,
    StreamChunk,
    StreamErrorInfo,
    ToolIterationEvent,
    ToolResult,
    ToolsExecutingEvent,
    ToolStatusEvent,
    event_to_wire,
    parse_inbound_event,
)
from .parts import (
    FunctionCallPart,
    FunctionResponsePart,
    InlineDataPart,
    Part,
    PartKind,
    Role,
    TextPart,
    ToolInvocation,
    Turn,
    part_from_wire,
    part_to_wire,
    turn_from_content,
    turn_to_content,
)
from .tool_status import (
    INCOMPLETE_TOOL_STATUSES,
    ToolStatus,
    can_transition_tool,
    coerce_tool_status,
    is_terminal_tool_status,
    validate_tool_transition,
)

__all__ = [
    "AwaitingConfirmationEvent",
    "CancelledEvent",
    "CheckpointRecord",
    "CheckpointsEvent",
    "ChunkEvent",
    "CompleteEvent",
    "DiffBookkeeping",
    "DiffDecision",
    "DiffPhase",
    "ErrorEvent",
    "FunctionCallPart",
    "FunctionResponsePart",
    "INCOMPLETE_TOOL_STATUSES",
    "InboundEvent",
    "InlineDataPart",
    "Part",
    "PartKind",
    "PendingDiff",
    "PendingToolCall",
    "Role",
    "StreamChunk",
    "StreamErrorInfo",
    "TERMINAL_EVENT_TYPES",
    "TextPart",
    "ToolInvocation",
    "ToolIterationEvent",
    "ToolResult",
    "ToolStatus",
    "ToolStatusEvent",
    "ToolsExecutingEvent",
    "Turn",
    "can_transition_tool",
    "coerce_tool_status",
    "event_to_wire",
    "is_terminal_tool_status",
    "parse_inbound_event",
    "part_from_wire",
    "part_to_wire",
    "turn_from_content",
    "turn_to_content",
    "validate_tool_transition",
]
