"""Error taxonomy and failure classification for capability calls."""

from __future__ import annotations

from typing_extensions import TypeAliasType
import asyncio
from collections.abc import Sequence
from typing import Literal

import httpx

ErrorKind = TypeAliasType("ErrorKind", Literal["auth", "validation", "timeout", "network", "api", "unknown_tool"])

_AUTH_MARKERS = ("401", "403", "auth")
_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
_NETWORK_MARKERS = ("econnrefused", "econnreset", "network", "fetch")
_SYSTEM_ERROR_MARKERS = ("-500", "unexpected system error")
_RETRIABLE_MARKERS = (
    *_TIMEOUT_MARKERS,
    *_NETWORK_MARKERS,
    "internal network failure",
    "unexpected system error",
    "http 500",
    "http 502",
    "http 503",
    "http 504",
    "rate limit",
    "429",
    "-500",
)


class CapbridgeError(Exception):
    """Base class for classified capability client failures."""

    kind: ErrorKind = "api"

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class AuthError(CapbridgeError):
    """Credential or permission failure. Never retried."""

    kind = "auth"


class ValidationError(CapbridgeError):
    """Malformed input. Never retried."""

    kind = "validation"


class OperationTimeoutError(CapbridgeError):
    """Operation exceeded its deadline."""

    kind = "timeout"

    def __init__(self, message: str | None = None, *, timeout_ms: int | None = None) -> None:
        if message is None:
            message = (
                f"Operation timed out after {timeout_ms}ms"
                if timeout_ms is not None
                else "Operation timed out"
            )
        super().__init__(message)
        self.timeout_ms = timeout_ms


class NetworkError(CapbridgeError):
    """Connectivity failure."""

    kind = "network"


class ApiError(CapbridgeError):
    """Generic service-side failure, including rate limiting and 5xx."""

    kind = "api"


class UnknownToolError(CapbridgeError):
    """Capability name did not resolve, even after a forced catalog refresh."""

    kind = "unknown_tool"

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Unknown tool: {identifier}", code=400)
        self.identifier = identifier


def error_message(exc: BaseException) -> str:
    """Return a non-empty message for one exception."""
    text = str(exc)
    if text:
        return text
    return type(exc).__name__


def is_retriable(exc: BaseException) -> bool:
    """Whether a failed attempt may be retried within the budget."""
    if isinstance(exc, AuthError | ValidationError | UnknownToolError):
        return False
    normalized = error_message(exc).lower()
    if any(marker in normalized for marker in _AUTH_MARKERS):
        return False
    if isinstance(exc, OperationTimeoutError | NetworkError):
        return True
    if isinstance(exc, asyncio.TimeoutError | httpx.TimeoutException | httpx.TransportError):
        return True
    return any(marker in normalized for marker in _RETRIABLE_MARKERS)


def classify_registration_error(
    exc: BaseException,
    *,
    timeout_ms: int | None = None,
) -> CapbridgeError:
    """Map a session registration failure onto the error taxonomy."""
    if isinstance(exc, CapbridgeError):
        return exc
    message = error_message(exc)
    normalized = message.lower()
    if any(marker in normalized for marker in _AUTH_MARKERS):
        return AuthError(f"Authentication failed: {message}", code=401)
    if isinstance(exc, asyncio.TimeoutError | httpx.TimeoutException) or any(
        marker in normalized for marker in _TIMEOUT_MARKERS
    ):
        return OperationTimeoutError(timeout_ms=timeout_ms)
    if isinstance(exc, httpx.TransportError) or any(
        marker in normalized for marker in _NETWORK_MARKERS
    ):
        return NetworkError(message)
    return ApiError(f"MCP initialization failed: {message}", code=500)


def classify_registration_failure(
    errors: Sequence[str],
    *,
    timeout_ms: int | None = None,
) -> CapbridgeError:
    """Map the per-endpoint errors of an unsuccessful registration onto the taxonomy."""
    detail = ", ".join(errors)
    message = f"Failed to register MCP servers: {detail}"
    normalized = detail.lower()
    if any(marker in normalized for marker in _AUTH_MARKERS):
        return AuthError(f"Authentication failed: {message}", code=401)
    if any(marker in normalized for marker in _TIMEOUT_MARKERS):
        return OperationTimeoutError(timeout_ms=timeout_ms)
    if any(marker in normalized for marker in _NETWORK_MARKERS):
        return NetworkError(message)
    return ApiError(message, code=500)


def classify_invocation_error(
    exc: BaseException,
    *,
    timeout_ms: int | None = None,
) -> CapbridgeError:
    """Map a terminal capability call failure onto the error taxonomy."""
    if isinstance(exc, CapbridgeError):
        return exc
    message = error_message(exc)
    normalized = message.lower()
    if "401" in normalized or "403" in normalized:
        return AuthError(f"Authentication failed: {message}", code=401)
    if isinstance(exc, asyncio.TimeoutError | httpx.TimeoutException) or any(
        marker in normalized for marker in _TIMEOUT_MARKERS
    ):
        return OperationTimeoutError(timeout_ms=timeout_ms)
    if isinstance(exc, httpx.TransportError) or any(
        marker in normalized for marker in ("econnrefused", "econnreset", "network")
    ):
        return NetworkError(message)
    if any(marker in normalized for marker in _SYSTEM_ERROR_MARKERS):
        return ApiError(message, code=-500)
    return ApiError(f"MCP tool call failed: {message}", code=500)
