"""
Tests for runtime config loading and the error taxonomy.
"""

from __future__ import annotations

import json

import httpx
import pytest
from pydantic import ValidationError

from loom.runtime.config import RuntimeConfig, load_runtime_config, runtime_config_path
from loom.runtime.error_codes import ErrorCode
from loom.runtime.errors import (
    CancellationToken,
    ConfigError,
    StreamCancelled,
    TransportError,
    classify_transport_exception,
    error_payload,
    wrap_transport_exception,
)


def _write_config(root, data) -> None:
    path = runtime_config_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(data if isinstance(data, str) else json.dumps(data), encoding="utf-8")


class TestRuntimeConfig:
    def test_defaults_without_file(self, tmp_path):
        config = load_runtime_config(tmp_path, env={})

        assert config.max_tabs == 100
        assert config.default_tab_title == "New Chat"
        assert config.buffer_marker_prefixes is True
        assert config.log_level == "WARNING"

    def test_file_values_and_unknown_keys(self, tmp_path):
        _write_config(tmp_path, {"max_tabs": 5, "log_level": "debug", "theme": "dark"})

        config = load_runtime_config(tmp_path, env={})

        assert config.max_tabs == 5
        assert config.log_level == "DEBUG"

    def test_env_overrides_log_level(self, tmp_path):
        _write_config(tmp_path, {"log_level": "ERROR"})

        config = load_runtime_config(tmp_path, env={"LOOM_LOG_LEVEL": "info"})

        assert config.log_level == "INFO"

    @pytest.mark.parametrize(
        "content",
        ["{not json", "[1, 2]", json.dumps({"max_tabs": 0}), json.dumps({"log_level": "LOUD"})],
    )
    def test_bad_config_raises_config_error(self, tmp_path, content):
        _write_config(tmp_path, content)

        with pytest.raises(ConfigError):
            load_runtime_config(tmp_path, env={})

    def test_model_is_frozen(self):
        config = RuntimeConfig()
        with pytest.raises(ValidationError):
            config.max_tabs = 3


class TestErrors:
    def test_classification(self):
        request = httpx.Request("POST", "http://backend/chat")

        assert classify_transport_exception(httpx.ReadTimeout("slow", request=request)) == ErrorCode.TIMEOUT
        assert classify_transport_exception(httpx.ConnectError("down", request=request)) == ErrorCode.NETWORK_ERROR
        assert classify_transport_exception(ValueError("?")) == ErrorCode.STREAM_ERROR

    @pytest.mark.parametrize(
        ("status", "code"),
        [(404, ErrorCode.NOT_FOUND), (429, ErrorCode.RATE_LIMIT), (503, ErrorCode.SERVER_ERROR), (400, ErrorCode.BAD_REQUEST)],
    )
    def test_http_status_classification(self, status, code):
        request = httpx.Request("POST", "http://backend/chat")
        response = httpx.Response(status, request=request)
        exc = httpx.HTTPStatusError("failed", request=request, response=response)

        assert classify_transport_exception(exc) == code

    def test_wrap_keeps_cause_and_retryability(self):
        cause = httpx.ConnectError("down")

        err = wrap_transport_exception(cause, operation="stream")

        assert isinstance(err, TransportError)
        assert err.code == ErrorCode.NETWORK_ERROR
        assert err.retryable is True
        assert err.details == {"operation": "stream"}
        assert err.__cause__ is cause
        assert wrap_transport_exception(err, operation="other") is err

    def test_error_payload(self):
        assert error_payload(TransportError("bad gateway", code=ErrorCode.SERVER_ERROR)) == {
            "code": "SERVER_ERROR",
            "message": "bad gateway",
        }
        assert error_payload(KeyError())["code"] == "STREAM_ERROR"
        assert error_payload(ConfigError("bad file"))["code"] == "CONFIG"

    def test_cancellation_token(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel()
        token.cancel()

        assert token.cancelled is True
        with pytest.raises(StreamCancelled):
            token.raise_if_cancelled()
