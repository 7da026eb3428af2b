from __future__ import annotations

import json
from typing import Any, AsyncIterable, AsyncIterator


class SseDecoder:
    """
    Incremental decoder for an SSE-ish body.

    Supports:
    - standard SSE framing: `event: ...` / `data: {...}` blocks separated by blank lines
    - newline-delimited JSON objects (some servers omit SSE framing)
    """

    def __init__(self) -> None:
        self._buf: list[str] = []
        self._event: str | None = None

    def feed(self, line: str) -> dict[str, Any] | None:
        s = line.strip()
        if not s:
            out = self._flush()
            self._event = None
            return out
        if s.startswith(":"):
            return None
        if s.startswith("event:"):
            self._event = s[len("event:") :].strip() or None
            return None
        if s.startswith("data:"):
            self._buf.append(s[len("data:") :].lstrip())
            return None
        if not self._buf and s.startswith("{"):
            return _load_object(s, event=None)
        self._buf.append(s)
        return None

    def finish(self) -> dict[str, Any] | None:
        out = self._flush()
        self._event = None
        return out

    def _flush(self) -> dict[str, Any] | None:
        if not self._buf:
            return None
        raw = "\n".join(self._buf).strip()
        self._buf.clear()
        if not raw or raw == "[DONE]":
            return None
        return _load_object(raw, event=self._event)


def _load_object(raw: str, *, event: str | None) -> dict[str, Any] | None:
    try:
        data = json.loads(raw)
    except Exception:
        return None
    if not isinstance(data, dict):
        return None
    # `event: chunk` with a payload that omits `type`.
    if event and "type" not in data:
        data = dict(data)
        data["type"] = event
    return data


async def iter_sse_events(lines: AsyncIterable[str]) -> AsyncIterator[dict[str, Any]]:
    decoder = SseDecoder()
    async for line in lines:
        data = decoder.feed(line)
        if data is not None:
            yield data
    data = decoder.finish()
    if data is not None:
        yield data
