from __future__ import annotations

import asyncio
import time

import pytest

from capbridge.errors import ApiError, AuthError, NetworkError, OperationTimeoutError
from capbridge.mcp.session import SessionManager, SessionState
from tests.support.mcp_helpers import ENDPOINTS, FakeTransportHub


@pytest.mark.asyncio
async def test_ensure_ready_registers_once_and_is_idempotent() -> None:
    hub = FakeTransportHub()
    session = SessionManager(ENDPOINTS, hub)

    first = await session.ensure_ready()
    second = await session.ensure_ready()

    assert first is second
    assert first.generation == 1
    assert session.state is SessionState.READY
    assert hub.register_calls == 1
    assert hub.registered_endpoints == ENDPOINTS


@pytest.mark.asyncio
async def test_concurrent_callers_share_single_registration() -> None:
    hub = FakeTransportHub()
    hub.register_delay = 0.01
    session = SessionManager(ENDPOINTS, hub)

    handles = await asyncio.gather(*(session.ensure_ready() for _ in range(5)))

    assert hub.register_calls == 1
    assert len({id(handle) for handle in handles}) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("failure", "expected"),
    [
        (RuntimeError("HTTP 401 unauthorized"), AuthError),
        (RuntimeError("connect ETIMEDOUT"), OperationTimeoutError),
        (RuntimeError("ECONNREFUSED 127.0.0.1:443"), NetworkError),
        (RuntimeError("something odd"), ApiError),
        ("server exploded", ApiError),
        ("zai.search: http 401", AuthError),
        ("zai.search: timeout contacting http://search.local/mcp", OperationTimeoutError),
        ("zai.search: network error: connection reset", NetworkError),
    ],
)
async def test_registration_failure_is_classified_and_resets_state(
    failure: BaseException | str,
    expected: type[Exception],
) -> None:
    hub = FakeTransportHub(register_errors=[failure])
    session = SessionManager(ENDPOINTS, hub)

    with pytest.raises(expected):
        await session.ensure_ready()

    assert session.state is SessionState.UNINITIALIZED
    handle = await session.ensure_ready()
    assert handle.generation == 1
    assert hub.register_calls == 2


@pytest.mark.asyncio
async def test_unsuccessful_registration_lists_errors() -> None:
    hub = FakeTransportHub(register_errors=["vision: spawn failed"])
    session = SessionManager(ENDPOINTS, hub)

    with pytest.raises(ApiError, match="vision: spawn failed"):
        await session.ensure_ready()


@pytest.mark.asyncio
async def test_teardown_with_hung_close_is_bounded_and_silent() -> None:
    hub = FakeTransportHub()
    hub.hang_on_close = True
    session = SessionManager(ENDPOINTS, hub, teardown_timeout_ms=50)
    await session.ensure_ready()

    started = time.monotonic()
    await session.teardown()
    elapsed = time.monotonic() - started

    assert elapsed < 1.0
    assert session.state is SessionState.CLOSED
    assert hub.close_calls == 1


@pytest.mark.asyncio
async def test_teardown_swallows_close_errors_and_allows_reuse() -> None:
    hub = FakeTransportHub()
    hub.close_error = RuntimeError("socket already gone")
    session = SessionManager(ENDPOINTS, hub)
    await session.ensure_ready()

    await session.teardown()
    assert session.state is SessionState.CLOSED

    handle = await session.ensure_ready()
    assert handle.generation == 2
    assert session.state is SessionState.READY


@pytest.mark.asyncio
async def test_teardown_without_session_is_noop() -> None:
    session = SessionManager(ENDPOINTS, FakeTransportHub())

    await session.teardown()

    assert session.state is SessionState.UNINITIALIZED


@pytest.mark.asyncio
async def test_teardown_during_initialization_returns_to_uninitialized() -> None:
    hub = FakeTransportHub()
    hub.register_delay = 10
    session = SessionManager(ENDPOINTS, hub)
    pending = asyncio.create_task(session.ensure_ready())
    await asyncio.sleep(0)

    await session.teardown(timeout_ms=100)

    assert session.state is SessionState.UNINITIALIZED
    with pytest.raises(asyncio.CancelledError):
        await pending


@pytest.mark.asyncio
async def test_invalidate_only_tears_down_observed_generation() -> None:
    hub = FakeTransportHub()
    session = SessionManager(ENDPOINTS, hub)
    first = await session.ensure_ready()

    assert await session.invalidate(first.generation) is True
    second = await session.ensure_ready()
    assert await session.invalidate(first.generation) is False

    assert session.state is SessionState.READY
    assert second.generation == 2
    assert hub.close_calls == 1


@pytest.mark.asyncio
async def test_registration_timeout_is_classified() -> None:
    hub = FakeTransportHub()
    hub.register_delay = 1
    session = SessionManager(ENDPOINTS, hub, timeout_ms=10)

    with pytest.raises(OperationTimeoutError):
        await session.ensure_ready()
    assert session.state is SessionState.UNINITIALIZED
