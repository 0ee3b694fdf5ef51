"""RemoteCallExecutor のユニットテスト"""

import asyncio
from typing import Any

import pytest
from conftest import make_session
from energy_sync.auth import InMemoryAuthEndpoint
from energy_sync.backend import InMemoryRemoteBackend, RemoteCallError
from energy_sync.clock import ManualClock
from energy_sync.config import ExecutorSection, RetrySection
from energy_sync.connectivity import ConnectivityMonitor
from energy_sync.exceptions import (
    AuthRequiredError,
    ErrorKindCodes,
    NotFoundError,
    PermanentError,
    TransientError,
)
from energy_sync.executor import RemoteCallExecutor, fingerprint
from energy_sync.models import BatchCall, CallOptions
from energy_sync.refresh import RefreshCoordinator
from energy_sync.registry import OperationRegistry
from energy_sync.session_store import SessionStore
from pydantic import BaseModel

ZERO_ANALYTICS = {"total_kwh": 0, "total_spend": 0, "readings": []}


@pytest.fixture
async def signed_in(store: SessionStore) -> SessionStore:
    await store.set_session(make_session())
    return store


def gated(gate: asyncio.Event, value: Any):
    async def handler(args: dict[str, Any]) -> Any:
        await gate.wait()
        return value

    return handler


def flaky(failures: int, value: Any, error: RemoteCallError):
    remaining = failures

    def handler(args: dict[str, Any]) -> Any:
        nonlocal remaining
        if remaining > 0:
            remaining -= 1
            raise error
        return value

    return handler


def test_fingerprint_ignores_key_order() -> None:
    assert fingerprint("op", {"a": 1, "b": 2}) == fingerprint("op", {"b": 2, "a": 1})
    assert fingerprint("op", {"a": 1}) != fingerprint("other", {"a": 1})


async def test_concurrent_identical_calls_dispatch_once(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend, clock: ManualClock
) -> None:
    """同一キーの同時呼び出しはネットワーク呼び出し 1 回に集約されること。"""
    gate = asyncio.Event()
    backend.register("get_balance", gated(gate, {"units": 42}))

    calls = [asyncio.ensure_future(executor.call("get_balance", {"meter": "m-1"})) for _ in range(10)]
    await clock.advance(0)
    assert len(executor.pending_keys) == 1
    gate.set()
    results = await asyncio.gather(*calls)

    assert len(backend.calls) == 1
    assert all(r == {"units": 42} for r in results)
    results[0]["units"] = 0
    assert results[1] == {"units": 42}
    assert executor.pending_keys == []


async def test_dedupe_disabled_dispatches_each_call(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend
) -> None:
    backend.register("log_event", lambda args: None)
    options = CallOptions(dedupe=False)
    await asyncio.gather(*(executor.call("log_event", {"e": 1}, options) for _ in range(3)))
    assert len(backend.calls) == 3


async def test_cache_is_fresh_for_ttl_then_refetched(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend, clock: ManualClock
) -> None:
    backend.register("get_balance", lambda args: {"units": 42})
    options = CallOptions(cache_key="balance", cache_ttl_ms=30_000)

    assert await executor.call("get_balance", options=options) == {"units": 42}
    await clock.advance(29.0)
    assert await executor.call("get_balance", options=options) == {"units": 42}
    assert len(backend.calls) == 1

    await clock.advance(1.0)
    await executor.call("get_balance", options=options)
    assert len(backend.calls) == 2


async def test_cache_hit_needs_no_session(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend
) -> None:
    backend.register("get_balance", lambda args: {"units": 1})
    options = CallOptions(cache_key="balance")
    await executor.call("get_balance", options=options)
    await signed_in.set_session(None)

    assert await executor.call("get_balance", options=options) == {"units": 1}
    assert len(backend.calls) == 1


async def test_none_results_are_not_cached(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend
) -> None:
    backend.register("get_latest", lambda args: None)
    options = CallOptions(cache_key="latest")
    await executor.call("get_latest", options=options)
    await executor.call("get_latest", options=options)
    assert len(backend.calls) == 2


async def test_no_session_raises_auth_required(executor: RemoteCallExecutor, backend: InMemoryRemoteBackend) -> None:
    backend.register("get_balance", lambda args: 1)
    with pytest.raises(AuthRequiredError):
        await executor.call("get_balance")
    assert backend.calls == []


async def test_not_found_returns_call_fallback(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend
) -> None:
    result = await executor.call("get_analytics", options=CallOptions(fallback=ZERO_ANALYTICS))
    assert result == ZERO_ANALYTICS
    assert result is not ZERO_ANALYTICS


async def test_not_found_returns_registry_fallback(
    signed_in: SessionStore, executor: RemoteCallExecutor, registry: OperationRegistry
) -> None:
    registry.register("get_analytics", fallback=ZERO_ANALYTICS)
    assert await executor.call("get_analytics") == ZERO_ANALYTICS


async def test_not_found_without_fallback_raises(signed_in: SessionStore, executor: RemoteCallExecutor) -> None:
    with pytest.raises(NotFoundError):
        await executor.call("get_analytics")


async def test_transient_failures_are_retried(
    signed_in: SessionStore,
    executor: RemoteCallExecutor,
    backend: InMemoryRemoteBackend,
    connectivity: ConnectivityMonitor,
) -> None:
    lost = RemoteCallError(None, "network error", connection_lost=True)
    backend.register("get_balance", flaky(2, {"units": 5}, lost))
    transitions: list[bool] = []
    connectivity.add_listener(transitions.append)

    assert await executor.call("get_balance") == {"units": 5}
    assert len(backend.calls) == 3
    assert transitions == [False, True]
    assert connectivity.online


async def test_transient_exhaustion_raises_with_attempts(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend
) -> None:
    busy = RemoteCallError(None, "Service Unavailable", status=503)
    backend.register("get_balance", flaky(10, None, busy))

    with pytest.raises(TransientError) as exc_info:
        await executor.call("get_balance")
    assert exc_info.value.attempts == 3
    assert len(backend.calls) == 3


async def test_max_attempts_option_overrides_retry(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend
) -> None:
    busy = RemoteCallError(None, "Service Unavailable", status=503)
    backend.register("get_balance", flaky(10, None, busy))
    with pytest.raises(TransientError):
        await executor.call("get_balance", options=CallOptions(max_attempts=1))
    assert len(backend.calls) == 1


async def test_permanent_failure_is_not_retried(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend
) -> None:
    rejected = RemoteCallError("P0001", "Insufficient balance", status=400)
    backend.register("purchase_tokens", flaky(1, None, rejected))
    with pytest.raises(PermanentError) as exc_info:
        await executor.call("purchase_tokens", {"amount": 100})
    assert exc_info.value.__cause__ is rejected
    assert len(backend.calls) == 1


async def test_auth_error_triggers_one_refresh_and_redispatch(
    signed_in: SessionStore,
    executor: RemoteCallExecutor,
    backend: InMemoryRemoteBackend,
    auth: InMemoryAuthEndpoint,
) -> None:
    def handler(args: dict[str, Any]) -> Any:
        if backend.calls[-1].credential == "token-user-1":
            raise RemoteCallError("PGRST301", "JWT expired", status=401)
        return "ok"

    backend.register("get_balance", handler)
    assert await executor.call("get_balance") == "ok"
    assert auth.refresh_calls == 1
    assert [c.credential for c in backend.calls][0] == "token-user-1"
    assert backend.calls[1].credential != "token-user-1"


async def test_auth_error_after_refresh_raises(
    signed_in: SessionStore,
    executor: RemoteCallExecutor,
    backend: InMemoryRemoteBackend,
    auth: InMemoryAuthEndpoint,
) -> None:
    backend.register("get_balance", flaky(10, None, RemoteCallError(None, "Unauthorized", status=401)))
    with pytest.raises(AuthRequiredError):
        await executor.call("get_balance")
    assert auth.refresh_calls == 1
    assert len(backend.calls) == 2


async def test_abandoned_call_still_populates_cache(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend, clock: ManualClock
) -> None:
    gate = asyncio.Event()
    backend.register("get_balance", gated(gate, {"units": 9}))
    options = CallOptions(cache_key="balance")

    caller = asyncio.ensure_future(executor.call("get_balance", options=options))
    await clock.advance(0)
    caller.cancel()
    gate.set()
    await clock.advance(0)

    assert caller.cancelled()
    assert await executor.call("get_balance", options=options) == {"units": 9}
    assert len(backend.calls) == 1


async def test_invalidate_detaches_pending_calls(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend, clock: ManualClock
) -> None:
    gate = asyncio.Event()
    backend.register("get_balance", gated(gate, {"units": 3}))
    options = CallOptions(cache_key="balance")

    first = asyncio.ensure_future(executor.call("get_balance", options=options))
    await clock.advance(0)
    executor.invalidate()
    assert executor.pending_keys == []
    gate.set()
    assert await first == {"units": 3}

    await executor.call("get_balance", options=options)
    assert len(backend.calls) == 2


async def test_subject_param_is_injected(
    store: SessionStore,
    coordinator: RefreshCoordinator,
    backend: InMemoryRemoteBackend,
    clock: ManualClock,
) -> None:
    executor = RemoteCallExecutor(
        store,
        coordinator,
        backend,
        clock,
        config=ExecutorSection(subject_param="p_user_id", retry=RetrySection(initial_delay=0.0, jitter=False)),
    )
    await store.set_session(make_session("user-7"))
    backend.register("get_balance", lambda args: args)

    assert await executor.call("get_balance") == {"p_user_id": "user-7"}
    assert await executor.call("get_balance", {"p_user_id": "other"}) == {"p_user_id": "other"}


class Balance(BaseModel):
    units: float


async def test_results_are_validated(
    signed_in: SessionStore,
    executor: RemoteCallExecutor,
    backend: InMemoryRemoteBackend,
    registry: OperationRegistry,
) -> None:
    registry.register("get_balance", Balance)
    backend.register("get_balance", lambda args: {"units": "7.5"})
    assert await executor.call("get_balance") == Balance(units=7.5)

    backend.register("get_balance", lambda args: {"units": "n/a"})
    with pytest.raises(PermanentError) as exc_info:
        await executor.call("get_balance", {"retry": True})
    assert exc_info.value.code == ErrorKindCodes.INVALID_RESULT


async def test_batch_reports_each_call(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend
) -> None:
    backend.register("get_balance", lambda args: {"units": 1})
    backend.register("purchase_tokens", flaky(1, None, RemoteCallError("P0001", "Insufficient balance")))

    results = await executor.batch(
        [
            BatchCall("get_balance"),
            BatchCall("purchase_tokens", {"amount": 5}),
            BatchCall("get_analytics", options=CallOptions(fallback=ZERO_ANALYTICS)),
        ]
    )
    assert [r.success for r in results] == [True, False, True]
    assert results[0].value == {"units": 1}
    assert isinstance(results[1].error, PermanentError)
    assert results[2].value == ZERO_ANALYTICS


async def test_call_bound_to_another_subject_is_not_dispatched(
    signed_in: SessionStore, executor: RemoteCallExecutor, backend: InMemoryRemoteBackend
) -> None:
    """呼び出し時の利用者と現在のセッションが異なれば送信しないこと。"""
    backend.register("insertReading", lambda args: args)
    with pytest.raises(AuthRequiredError):
        await executor.call("insertReading", {"id": "1"}, CallOptions(subject_id="user-2"))
    assert backend.calls == []

    assert await executor.call("insertReading", {"id": "1"}, CallOptions(subject_id="user-1")) == {"id": "1"}
