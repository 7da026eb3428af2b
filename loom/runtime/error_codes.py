from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    # stream / transport
    STREAM_ERROR = "STREAM_ERROR"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"

    # request handling
    TAB_LIMIT = "TAB_LIMIT"
    UNKNOWN_REQUEST = "UNKNOWN_REQUEST"
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"
    CONFIG = "CONFIG"
