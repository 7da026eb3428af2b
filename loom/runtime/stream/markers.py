from __future__ import annotations

import json
import re
from enum import StrEnum
from typing import Any


class MarkerKind(StrEnum):
    NONE = "none"
    INLINE_XML = "inline-xml"
    INLINE_JSON = "inline-json"


XML_TOOL_START = "<tool_use>"
XML_TOOL_END = "</tool_use>"
JSON_TOOL_START = "<<<TOOL_CALL>>>"
JSON_TOOL_END = "<<<END_TOOL_CALL>>>"

START_MARKERS: dict[MarkerKind, str] = {
    MarkerKind.INLINE_XML: XML_TOOL_START,
    MarkerKind.INLINE_JSON: JSON_TOOL_START,
}
END_MARKERS: dict[MarkerKind, str] = {
    MarkerKind.INLINE_XML: XML_TOOL_END,
    MarkerKind.INLINE_JSON: JSON_TOOL_END,
}

_XML_NAME_RE = re.compile(r"<name>([\s\S]*?)</name>")
_XML_ARGS_RE = re.compile(r"<args>([\s\S]*?)</args>")


def find_start_marker(text: str) -> tuple[int, MarkerKind]:
    """Earliest start marker in `text` as `(index, kind)`; `(-1, NONE)` when absent."""

    best_idx = -1
    best_kind = MarkerKind.NONE
    for kind, marker in START_MARKERS.items():
        idx = text.find(marker)
        if idx == -1:
            continue
        if best_idx == -1 or idx < best_idx:
            best_idx = idx
            best_kind = kind
    return best_idx, best_kind


def held_prefix_length(text: str) -> int:
    """Length of the longest suffix of `text` that is a proper prefix of a start marker."""

    longest = 0
    for marker in START_MARKERS.values():
        upper = min(len(marker) - 1, len(text))
        for n in range(upper, longest, -1):
            if text.endswith(marker[:n]):
                longest = n
                break
    return longest


def parse_xml_tool_call(content: str) -> tuple[str, dict[str, Any]] | None:
    name_match = _XML_NAME_RE.search(content)
    args_match = _XML_ARGS_RE.search(content)
    if name_match is None or args_match is None:
        return None
    name = name_match.group(1).strip()
    try:
        args = json.loads(args_match.group(1).strip())
    except Exception:
        return None
    if not name or not isinstance(args, dict):
        return None
    return name, args


def parse_json_tool_call(content: str) -> tuple[str, dict[str, Any]] | None:
    try:
        parsed = json.loads(content.strip())
    except Exception:
        return None
    if not isinstance(parsed, dict):
        return None
    name = parsed.get("tool")
    args = parsed.get("parameters")
    if not isinstance(name, str) or not name.strip() or not isinstance(args, dict):
        return None
    return name.strip(), args


def parse_inline_tool_call(kind: MarkerKind, content: str) -> tuple[str, dict[str, Any]] | None:
    if kind == MarkerKind.INLINE_XML:
        return parse_xml_tool_call(content)
    if kind == MarkerKind.INLINE_JSON:
        return parse_json_tool_call(content)
    return None
