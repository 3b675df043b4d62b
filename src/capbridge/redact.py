"""Redact sensitive values from tool metadata before it is cached or displayed."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from capbridge.config import CREDENTIAL_ENV_VARS
from capbridge.models import CapabilityDescriptor

REDACTED = "[REDACTED]"
REDACT_KEYS = frozenset(
    {
        "authorization",
        "Authorization",
        "api_key",
        "apiKey",
        "access_token",
        "token",
        *CREDENTIAL_ENV_VARS,
    }
)
_BEARER = re.compile(r"Bearer\s+\S+")


def redact_string(value: str, credential: str | None = None) -> str:
    result = value
    if credential and credential in result:
        result = result.replace(credential, REDACTED)
    return _BEARER.sub(f"Bearer {REDACTED}", result)


def redact_secrets(value: Any, credential: str | None = None) -> Any:
    """Return a redacted deep copy of ``value``; the input is never mutated."""
    if isinstance(value, str):
        return redact_string(value, credential)
    if isinstance(value, Mapping):
        output: dict[Any, Any] = {}
        for key, child in value.items():
            if key in REDACT_KEYS:
                output[key] = REDACTED
                continue
            output[key] = redact_secrets(child, credential)
        return output
    if isinstance(value, list | tuple | set | frozenset):
        return [redact_secrets(item, credential) for item in value]
    return value


def redact_tool(
    descriptor: CapabilityDescriptor,
    credential: str | None = None,
) -> CapabilityDescriptor:
    """Redacted copy of one capability descriptor."""
    payload = redact_secrets(descriptor.to_wire(), credential)
    return CapabilityDescriptor.model_validate(payload)
