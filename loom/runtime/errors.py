from __future__ import annotations

import asyncio
from typing import Any

import httpx

from .error_codes import ErrorCode


class ConfigError(ValueError):
    code = ErrorCode.CONFIG


class StreamCancelled(RuntimeError):
    """Raised inside a stream consumer once its session's abort signal fired."""


class CancellationToken:
    """Per-session abort signal. Cancelling twice is a no-op."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelled("Stream was cancelled.")

    async def wait(self) -> None:
        await self._event.wait()


class TransportError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.STREAM_ERROR,
        status_code: int | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details
        self.__cause__ = cause


class RequestError(RuntimeError):
    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.BAD_REQUEST) -> None:
        super().__init__(message)
        self.code = code


def is_retryable_error_code(code: ErrorCode) -> bool:
    return code in {
        ErrorCode.TIMEOUT,
        ErrorCode.RATE_LIMIT,
        ErrorCode.SERVER_ERROR,
        ErrorCode.NETWORK_ERROR,
    }


def classify_transport_exception(exc: BaseException) -> ErrorCode:
    if isinstance(exc, TransportError):
        return exc.code
    if isinstance(exc, httpx.TimeoutException):
        return ErrorCode.TIMEOUT
    if isinstance(exc, httpx.TransportError):
        return ErrorCode.NETWORK_ERROR

    status_code = _status_code_of(exc)
    if isinstance(status_code, int):
        if status_code == 404:
            return ErrorCode.NOT_FOUND
        if status_code == 429:
            return ErrorCode.RATE_LIMIT
        if 500 <= status_code <= 599:
            return ErrorCode.SERVER_ERROR
        if 400 <= status_code <= 499:
            return ErrorCode.BAD_REQUEST

    return ErrorCode.STREAM_ERROR


def wrap_transport_exception(exc: BaseException, *, operation: str) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    code = classify_transport_exception(exc)
    status_code = _status_code_of(exc)
    message = str(exc) or exc.__class__.__name__
    return TransportError(
        message,
        code=code,
        status_code=status_code,
        retryable=is_retryable_error_code(code),
        details={"operation": operation},
        cause=exc,
    )


def error_payload(exc: BaseException) -> dict[str, Any]:
    """Wire form of a failure: `{code, message}`."""

    code = exc.code if isinstance(exc, (TransportError, RequestError, ConfigError)) else ErrorCode.STREAM_ERROR
    return {"code": str(code), "message": str(exc) or exc.__class__.__name__}


def _status_code_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status_code = getattr(exc, "status_code", None)
    return status_code if isinstance(status_code, int) else None
