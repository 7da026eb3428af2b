from __future__ import annotations

from .assembler import add_text, flush_marker_buffer, ingest
from .fragments import merge_function_call_delta
from .handlers import (
    apply_event,
    apply_tool_status_batch,
    ensure_rejection_responses,
    mark_incomplete_tools_as_error,
)
from .markers import MarkerKind, parse_json_tool_call, parse_xml_tool_call

__all__ = [
    "MarkerKind",
    "add_text",
    "apply_event",
    "apply_tool_status_batch",
    "ensure_rejection_responses",
    "flush_marker_buffer",
    "ingest",
    "mark_incomplete_tools_as_error",
    "merge_function_call_delta",
    "parse_json_tool_call",
    "parse_xml_tool_call",
]
