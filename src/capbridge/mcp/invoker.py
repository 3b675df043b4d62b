"""Bounded retry with exponential backoff around capability calls."""

from __future__ import annotations

from typing_extensions import TypeAliasType
import asyncio
import json
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from capbridge.config import RetryPolicy
from capbridge.errors import (
    ErrorKind,
    classify_invocation_error,
    error_message,
    is_retriable,
)
from capbridge.mcp.session import SessionHandle, SessionManager
from capbridge.models import JSONObject
from capbridge.redact import redact_string

logger = logging.getLogger(__name__)

Sleeper = TypeAliasType("Sleeper", Callable[[float], Awaitable[None]])


@dataclass(slots=True)
class InvocationAttempt:
    """One call attempt against the shared session."""

    name: str
    attempt: int
    success: bool
    generation: int | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    delay_ms: float | None = None


class RetryingInvoker:
    """Invoke resolved capabilities with classified retries."""

    def __init__(
        self,
        session: SessionManager,
        policy: RetryPolicy,
        *,
        timeout_ms: int | None = None,
        credential: str | None = None,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
        max_attempt_records: int = 500,
    ) -> None:
        self._session = session
        self._policy = policy
        self._timeout_ms = timeout_ms
        self._credential = credential
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._attempts: deque[InvocationAttempt] = deque(maxlen=max(1, max_attempt_records))

    def list_attempts(self, *, name: str | None = None) -> list[InvocationAttempt]:
        """Recorded attempts, oldest first, optionally for one capability."""
        return [item for item in self._attempts if name is None or item.name == name]

    async def invoke(self, name: str, args: JSONObject) -> Any:
        """Call ``name`` (already fully qualified) and return its parsed result."""
        budget = self._policy.retries_for(name)
        attempt = 0
        while True:
            generation: int | None = None
            try:
                handle = await self._session.ensure_ready()
                generation = handle.generation
                raw = await self._call(handle, name, args)
            except Exception as exc:  # noqa: BLE001
                attempt += 1
                message = redact_string(error_message(exc), self._credential)
                if attempt <= budget and is_retriable(exc):
                    delay_ms = self.delay_ms(attempt)
                    self._attempts.append(
                        InvocationAttempt(
                            name=name,
                            attempt=attempt,
                            success=False,
                            generation=generation,
                            error=message,
                            delay_ms=delay_ms,
                        )
                    )
                    logger.warning(
                        "Call to %s failed (attempt %s of %s), retrying in %.0fms: %s",
                        name,
                        attempt,
                        budget + 1,
                        delay_ms,
                        message,
                    )
                    if generation is not None:
                        await self._session.invalidate(generation)
                    await self._sleep(delay_ms / 1000)
                    continue

                classified = classify_invocation_error(exc, timeout_ms=self._timeout_ms)
                self._attempts.append(
                    InvocationAttempt(
                        name=name,
                        attempt=attempt,
                        success=False,
                        generation=generation,
                        error=message,
                        error_kind=classified.kind,
                    )
                )
                logger.error("Call to %s failed after %s attempt(s): %s", name, attempt, message)
                raise classified from exc

            self._attempts.append(
                InvocationAttempt(
                    name=name,
                    attempt=attempt + 1,
                    success=True,
                    generation=generation,
                )
            )
            return parse_result(raw)

    def delay_ms(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` including jitter."""
        jitter_max = self._policy.jitter_max_ms
        jitter = self._rng.uniform(0, jitter_max) if jitter_max > 0 else 0
        return self._policy.backoff_ms(attempt) + jitter

    async def _call(self, handle: SessionHandle, name: str, args: JSONObject) -> Any:
        call = handle.transport.invoke(name, args)
        if self._timeout_ms is None:
            return await call
        return await asyncio.wait_for(call, self._timeout_ms / 1000)


def parse_result(raw: Any) -> Any:
    """Decode string results that hold JSON; return everything else as is."""
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw
