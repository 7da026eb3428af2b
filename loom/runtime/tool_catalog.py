from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Mapping


class ToolRenderer(StrEnum):
    GENERIC = "generic"
    FILE_WRITE = "file-write"
    DIFF = "diff"
    COMMAND = "command"
    READ = "read"
    SEARCH = "search"


@dataclass(frozen=True, slots=True)
class ToolCapability:
    name: str
    renderer: ToolRenderer = ToolRenderer.GENERIC
    # Needs an explicit user decision before it runs.
    confirmable: bool = False
    # Produces a pending diff the user reviews after it ran.
    has_diff_preview: bool = False

    @property
    def file_modifying(self) -> bool:
        return self.has_diff_preview


def _table(*caps: ToolCapability) -> Mapping[str, ToolCapability]:
    return MappingProxyType({c.name: c for c in caps})


TOOL_CAPABILITIES: Mapping[str, ToolCapability] = _table(
    ToolCapability("write_file", ToolRenderer.FILE_WRITE, confirmable=True, has_diff_preview=True),
    ToolCapability("apply_diff", ToolRenderer.DIFF, confirmable=True, has_diff_preview=True),
    ToolCapability("delete_file", ToolRenderer.GENERIC, confirmable=True),
    ToolCapability("execute_command", ToolRenderer.COMMAND, confirmable=True),
    ToolCapability("read_file", ToolRenderer.READ),
    ToolCapability("list_files", ToolRenderer.READ),
    ToolCapability("search_in_files", ToolRenderer.SEARCH),
    ToolCapability("find_files", ToolRenderer.SEARCH),
)

FILE_MODIFYING_TOOLS: frozenset[str] = frozenset(n for n, c in TOOL_CAPABILITIES.items() if c.file_modifying)


def capability_for(name: str) -> ToolCapability:
    cap = TOOL_CAPABILITIES.get(name)
    if cap is not None:
        return cap
    return ToolCapability(name=name)


def is_file_modifying(name: str) -> bool:
    return name in FILE_MODIFYING_TOOLS


def target_path_of(name: str, args: Mapping[str, object]) -> str | None:
    """File path a file-modifying call writes to, when its arguments name one."""

    if not is_file_modifying(name):
        return None
    for key in ("path", "file_path", "filePath"):
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
