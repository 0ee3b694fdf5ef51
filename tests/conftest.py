"""共通フィクスチャ"""

from __future__ import annotations

import pytest
from energy_sync.auth import InMemoryAuthEndpoint
from energy_sync.backend import InMemoryRemoteBackend
from energy_sync.clock import ManualClock
from energy_sync.config import ExecutorSection, RetrySection
from energy_sync.connectivity import ConnectivityMonitor
from energy_sync.executor import RemoteCallExecutor
from energy_sync.models import Session
from energy_sync.refresh import RefreshCoordinator
from energy_sync.registry import OperationRegistry
from energy_sync.session_store import SessionStore
from energy_sync.storage import InMemoryStorage

START = 1_000.0


def make_session(subject_id: str = "user-1", expires_in: float = 3600.0, **kwargs) -> Session:
    return Session(
        subject_id=subject_id,
        credential=kwargs.pop("credential", f"token-{subject_id}"),
        expires_at=START + expires_in,
        issued_at=START,
        refresh_token=kwargs.pop("refresh_token", "refresh-1"),
        **kwargs,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=START)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def store(storage: InMemoryStorage, clock: ManualClock) -> SessionStore:
    return SessionStore(storage, clock)


@pytest.fixture
def auth(clock: ManualClock) -> InMemoryAuthEndpoint:
    return InMemoryAuthEndpoint(ttl_seconds=3600.0, clock=clock)


@pytest.fixture
def coordinator(store: SessionStore, auth: InMemoryAuthEndpoint, clock: ManualClock) -> RefreshCoordinator:
    return RefreshCoordinator(store, auth, clock, threshold_seconds=300.0, min_interval_seconds=300.0)


@pytest.fixture
def backend() -> InMemoryRemoteBackend:
    return InMemoryRemoteBackend()


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor()


@pytest.fixture
def registry() -> OperationRegistry:
    return OperationRegistry()


@pytest.fixture
def executor_config() -> ExecutorSection:
    return ExecutorSection(retry=RetrySection(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=False))


@pytest.fixture
def executor(
    store: SessionStore,
    coordinator: RefreshCoordinator,
    backend: InMemoryRemoteBackend,
    clock: ManualClock,
    executor_config: ExecutorSection,
    registry: OperationRegistry,
    connectivity: ConnectivityMonitor,
) -> RemoteCallExecutor:
    return RemoteCallExecutor(
        store,
        coordinator,
        backend,
        clock,
        config=executor_config,
        registry=registry,
        connectivity=connectivity,
    )
