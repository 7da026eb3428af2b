from __future__ import annotations

import secrets
import time
import uuid


def new_id(prefix: str) -> str:
    ts = time.time_ns()
    rand = uuid.uuid4().hex
    return f"{prefix}_{ts:016x}_{rand}"


def new_tool_call_id() -> str:
    """
    Generate an id for a function call the assistant emitted inline as text.

    Inline calls carry no backend id, so the id only has to be unique within the session.
    """

    # "call_" (5) + uuid4 hex (32) = 37 chars
    return f"call_{uuid.uuid4().hex}"


def new_tab_id() -> str:
    # tab_<ms>_<4 base36-ish chars>, short enough to show in debug output
    return f"tab_{now_ts_ms()}_{secrets.token_hex(2)}"


def now_ts_ms() -> int:
    return int(time.time() * 1000)
