from __future__ import annotations

from .http_backend import HttpChatBackend
from .sse import SseDecoder, iter_sse_events

__all__ = ["HttpChatBackend", "SseDecoder", "iter_sse_events"]
