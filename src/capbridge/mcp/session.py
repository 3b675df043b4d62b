"""Single shared transport session with a guarded state machine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from capbridge.errors import (
    classify_registration_error,
    classify_registration_failure,
    error_message,
)
from capbridge.mcp.transport import CapabilityTransport, TransportFactory
from capbridge.models import EndpointDescriptor

logger = logging.getLogger(__name__)

DEFAULT_TEARDOWN_TIMEOUT_MS = 2000


class SessionState(StrEnum):
    """Lifecycle state for the shared transport session."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


_ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNINITIALIZED: frozenset({SessionState.INITIALIZING}),
    SessionState.INITIALIZING: frozenset({SessionState.READY, SessionState.UNINITIALIZED}),
    SessionState.READY: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset({SessionState.INITIALIZING}),
}


@dataclass(frozen=True, slots=True)
class SessionHandle:
    """A ready transport tagged with the generation that created it."""

    generation: int
    transport: CapabilityTransport


class SessionManager:
    """Own exactly one transport session per client instance.

    Creation is single-flight: concurrent ``ensure_ready`` callers share one
    registration task. Every ready session carries a generation number, and
    ``invalidate`` only tears down the generation the caller observed, so a
    retry cannot destroy a session another caller already rebuilt.
    """

    def __init__(
        self,
        endpoints: Sequence[EndpointDescriptor],
        transport_factory: TransportFactory,
        *,
        timeout_ms: int | None = None,
        teardown_timeout_ms: int = DEFAULT_TEARDOWN_TIMEOUT_MS,
    ) -> None:
        self._endpoints = list(endpoints)
        self._transport_factory = transport_factory
        self._timeout_ms = timeout_ms
        self._teardown_timeout_ms = teardown_timeout_ms
        self._state = SessionState.UNINITIALIZED
        self._generation = 0
        self._handle: SessionHandle | None = None
        self._init_task: asyncio.Task[SessionHandle] | None = None
        self._registrations = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        """Generation of the current ready session, or of the last one."""
        return self._generation

    @property
    def registration_count(self) -> int:
        """Number of registration attempts started so far."""
        return self._registrations

    async def ensure_ready(self) -> SessionHandle:
        """Return the ready session, registering it first when needed."""
        if self._state is SessionState.READY and self._handle is not None:
            return self._handle
        task = self._init_task
        if task is None:
            self._transition(SessionState.INITIALIZING)
            task = asyncio.create_task(self._initialize())
            self._init_task = task
        return await asyncio.shield(task)

    async def invalidate(self, generation: int) -> bool:
        """Tear down the session only if it is still ``generation``."""
        handle = self._handle
        if handle is None or handle.generation != generation:
            logger.debug("Session generation %s already replaced", generation)
            return False
        await self.teardown()
        return True

    async def teardown(self, timeout_ms: int | None = None) -> None:
        """Close the session within a bounded time. Never raises."""
        timeout = self._teardown_timeout_ms if timeout_ms is None else timeout_ms
        task = self._init_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=max(0, timeout) / 1000)
            if self._init_task is task:
                # cancelled before the registration coroutine started
                self._init_task = None
                self._transition(SessionState.UNINITIALIZED)
            return

        handle = self._handle
        if handle is None:
            return
        self._handle = None
        self._transition(SessionState.CLOSED)
        close_task = asyncio.ensure_future(handle.transport.close())
        close_task.add_done_callback(_consume_close_result)
        done, _ = await asyncio.wait({close_task}, timeout=max(0, timeout) / 1000)
        if not done:
            logger.warning(
                "Session generation %s close did not finish within %sms",
                handle.generation,
                timeout,
            )
        logger.info("Session generation %s closed", handle.generation)

    async def _initialize(self) -> SessionHandle:
        self._registrations += 1
        transport: CapabilityTransport | None = None
        try:
            transport = self._transport_factory()
            registration = transport.register(self._endpoints)
            if self._timeout_ms is not None:
                result = await asyncio.wait_for(registration, self._timeout_ms / 1000)
            else:
                result = await registration
            if not result.success:
                raise classify_registration_failure(result.errors, timeout_ms=self._timeout_ms)
        except asyncio.CancelledError:
            self._abandon(transport)
            raise
        except Exception as exc:  # noqa: BLE001
            self._abandon(transport)
            classified = classify_registration_error(exc, timeout_ms=self._timeout_ms)
            logger.warning("Session registration failed: %s", error_message(classified))
            raise classified from exc

        self._generation += 1
        handle = SessionHandle(generation=self._generation, transport=transport)
        self._handle = handle
        self._init_task = None
        self._transition(SessionState.READY)
        logger.info(
            "Session generation %s ready with %s endpoint(s)",
            handle.generation,
            len(self._endpoints),
        )
        return handle

    def _abandon(self, transport: CapabilityTransport | None) -> None:
        self._init_task = None
        self._transition(SessionState.UNINITIALIZED)
        if transport is None:
            return
        close_task = asyncio.ensure_future(transport.close())
        close_task.add_done_callback(_consume_close_result)

    def _transition(self, target: SessionState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._state]:
            msg = f"Invalid session transition: {self._state} -> {target}"
            raise RuntimeError(msg)
        self._state = target


def _consume_close_result(task: asyncio.Future[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Ignoring session close failure: %s", error_message(exc))
