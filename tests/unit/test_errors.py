from __future__ import annotations

import asyncio

import httpx
import pytest

from capbridge.errors import (
    ApiError,
    AuthError,
    NetworkError,
    OperationTimeoutError,
    UnknownToolError,
    ValidationError,
    classify_invocation_error,
    classify_registration_error,
    classify_registration_failure,
    is_retriable,
)


@pytest.mark.parametrize(
    "message",
    [
        "request timeout",
        "socket timed out",
        "connect ETIMEDOUT",
        "connect ECONNREFUSED",
        "read ECONNRESET",
        "network unreachable",
        "fetch failed",
        "Internal network failure",
        "Unexpected system error",
        "HTTP 500",
        "http 502 bad gateway",
        "HTTP 503",
        "HTTP 504",
        "Rate limit reached",
        "status 429",
        "code -500",
    ],
)
def test_retriable_messages(message: str) -> None:
    assert is_retriable(RuntimeError(message)) is True


@pytest.mark.parametrize(
    "exc",
    [
        AuthError("denied"),
        ValidationError("bad input"),
        UnknownToolError("nope"),
        RuntimeError("HTTP 401 timeout"),
        RuntimeError("auth token expired, network retry"),
        RuntimeError("tool says no"),
    ],
)
def test_non_retriable_failures(exc: Exception) -> None:
    assert is_retriable(exc) is False


def test_exception_types_are_retriable_without_markers() -> None:
    request = httpx.Request("POST", "http://x.local/mcp")
    assert is_retriable(asyncio.TimeoutError())
    assert is_retriable(httpx.ConnectError("boom", request=request))
    assert is_retriable(NetworkError("peer went away"))


def test_registration_classification() -> None:
    assert isinstance(classify_registration_error(RuntimeError("403")), AuthError)
    assert isinstance(classify_registration_error(RuntimeError("fetch failed")), NetworkError)
    timeout = classify_registration_error(asyncio.TimeoutError(), timeout_ms=1000)
    assert isinstance(timeout, OperationTimeoutError)
    assert timeout.timeout_ms == 1000
    assert str(timeout) == "Operation timed out after 1000ms"
    generic = classify_registration_error(ValueError("weird"))
    assert isinstance(generic, ApiError)
    assert str(generic) == "MCP initialization failed: weird"


def test_unsuccessful_registration_classification() -> None:
    auth = classify_registration_failure(["zai.search: http 403", "zai.vision: http 403"])
    assert isinstance(auth, AuthError)
    assert auth.code == 401
    assert "zai.vision: http 403" in str(auth)
    timeout = classify_registration_failure(["zai.reader: timeout contacting x"], timeout_ms=50)
    assert isinstance(timeout, OperationTimeoutError)
    assert timeout.timeout_ms == 50
    generic = classify_registration_failure(["zai.zread: Method not found (code -32601)"])
    assert isinstance(generic, ApiError)
    assert str(generic) == (
        "Failed to register MCP servers: zai.zread: Method not found (code -32601)"
    )


def test_invocation_classification_keeps_typed_errors() -> None:
    original = ValidationError("prompt required", code=400)

    assert classify_invocation_error(original) is original
    assert isinstance(classify_invocation_error(RuntimeError("ECONNREFUSED")), NetworkError)
    assert classify_invocation_error(RuntimeError("Unexpected system error")).code == -500
    assert classify_invocation_error(RuntimeError("boom")).code == 500
