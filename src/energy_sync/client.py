"""SessionClient — the facade presentation code talks to."""

from __future__ import annotations

import asyncio
from typing import Any

from .auth import AuthEndpoint, AuthEndpointError, HttpAuthEndpoint
from .backend import HttpRemoteBackend, RemoteBackend
from .classify import ErrorClassifier
from .clock import Clock, SystemClock
from .collection import OrderedCollection
from .config.models import SyncConfig
from .connectivity import ConnectivityMonitor
from .exceptions import AuthRequiredError, TransientError
from .executor import RemoteCallExecutor
from .logger import get_logger, new_logger
from .models import (
    BatchCall,
    BatchResult,
    CallOptions,
    MutationKind,
    MutationOutcome,
    QueuedMutation,
    Session,
)
from .queue import FlushReport, OfflineMutationQueue, OperationResolver
from .reconciler import ChangeFeedReconciler
from .refresh import RefreshCoordinator
from .registry import OperationRegistry
from .session_store import SessionStore
from .storage import DurableStorage, InMemoryStorage
from .transport import ChangeFeedTransport

logger = get_logger(__name__)


class SessionClient:
    """Wires the session store, refresh coordinator, executor, reconcilers
    and offline queue together and keeps them scoped to the current subject.

    Example::

        client = SessionClient(auth=auth, backend=backend, transport=transport)
        async with client:
            balance = await client.call("get_balance", options=CallOptions(cache_key="balance"))
    """

    def __init__(
        self,
        *,
        auth: AuthEndpoint,
        backend: RemoteBackend,
        transport: ChangeFeedTransport | None = None,
        storage: DurableStorage | None = None,
        clock: Clock | None = None,
        config: SyncConfig | None = None,
        registry: OperationRegistry | None = None,
        classifier: ErrorClassifier | None = None,
        operation_resolver: OperationResolver | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.clock = clock or SystemClock()
        self.storage = storage or InMemoryStorage()
        self._auth = auth
        self._backend = backend
        self._transport = transport
        self.connectivity = ConnectivityMonitor()
        self.store = SessionStore(self.storage, self.clock)
        self.coordinator = RefreshCoordinator(
            self.store,
            auth,
            self.clock,
            threshold_seconds=self.config.session.refresh_threshold_seconds,
            min_interval_seconds=self.config.session.min_refresh_interval_seconds,
        )
        self.executor = RemoteCallExecutor(
            self.store,
            self.coordinator,
            backend,
            self.clock,
            config=self.config.executor,
            registry=registry,
            classifier=classifier,
            connectivity=self.connectivity,
        )
        self.queue = OfflineMutationQueue(
            self.executor,
            self.storage,
            self.clock,
            connectivity=self.connectivity,
            config=self.config.queue,
            operation_resolver=operation_resolver,
        )
        self._reconcilers: dict[str, ChangeFeedReconciler] = {}
        self._rebinds: list[asyncio.Task[None]] = []
        self._rebind_lock = asyncio.Lock()
        self._owned: list[Any] = []
        self._started = False
        self._remove_subject_listener = self.store.add_subject_listener(self._on_subject_change)

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        *,
        session: Session | None = None,
        transport: ChangeFeedTransport | None = None,
        storage: DurableStorage | None = None,
        registry: OperationRegistry | None = None,
    ) -> SessionClient:
        """Build a client talking HTTP to ``config.backend``.

        Also applies ``config.log`` to structlog.
        """
        new_logger(config.log.level, config.log.format)
        auth = HttpAuthEndpoint(
            config.backend.url,
            config.backend.api_key,
            session=session,
            timeout_seconds=config.backend.timeout_seconds,
        )
        backend = HttpRemoteBackend(
            config.backend.url,
            config.backend.api_key,
            timeout_seconds=config.backend.timeout_seconds,
        )
        client = cls(
            auth=auth,
            backend=backend,
            transport=transport,
            storage=storage,
            config=config,
            registry=registry,
        )
        client._owned.extend([auth, backend])
        return client

    async def __aenter__(self) -> SessionClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    @property
    def session(self) -> Session | None:
        return self.store.get_session()

    @property
    def subject_id(self) -> str | None:
        return self.store.subject_id

    async def start(self) -> Session | None:
        """Restore or obtain a session and start background work."""
        if self._started:
            return self.session
        self._started = True
        session = await self.store.restore()
        if session is None:
            issued = await self._auth.get_session()
            if issued is not None and SessionStore.is_valid(issued, self.clock.now()):
                await self.store.set_session(issued)
                session = issued
        await self._settle()
        self.coordinator.start_auto_refresh(self.config.session.check_interval_seconds)
        self.queue.start()
        logger.info("session client started", subject_id=self.subject_id)
        return session

    async def sign_in(self, session: Session) -> None:
        """Adopt an externally issued session."""
        self.coordinator.reset()
        await self.store.set_session(session)
        await self._settle()

    async def sign_out(self) -> None:
        session = self.store.get_session()
        if session is not None:
            try:
                await self._auth.sign_out(session)
            except AuthEndpointError as e:
                logger.warning("remote sign-out failed", error=str(e))
        await self.store.set_session(None)
        await self._settle()

    async def close(self) -> None:
        """Cancel timers and subscriptions. The session stays persisted."""
        self._remove_subject_listener()
        await self.coordinator.stop()
        await self.queue.stop()
        await self._settle()
        for reconciler in self._reconcilers.values():
            await reconciler.stop()
        for resource in self._owned:
            await resource.aclose()
        self._owned.clear()
        self._started = False
        logger.info("session client closed")

    # ------------------------------------------------------------------
    async def call(
        self,
        name: str,
        args: dict[str, Any] | None = None,
        options: CallOptions | None = None,
    ) -> Any:
        return await self.executor.call(name, args, options)

    async def batch(self, calls: list[BatchCall]) -> list[BatchResult]:
        return await self.executor.batch(calls)

    async def mutate(
        self,
        target_entity: str,
        kind: MutationKind | str,
        payload: dict[str, Any],
    ) -> MutationOutcome:
        """Apply a mutation now, or queue it when the backend is unreachable."""
        if self.queue.subject_id is None:
            raise AuthRequiredError()
        mutation = QueuedMutation(
            target_entity=target_entity,
            operation_kind=MutationKind(kind),
            payload=payload,
            enqueued_at=self.clock.now(),
        )
        if not self.connectivity.online:
            return MutationOutcome(queued=True, mutation=await self.queue.enqueue(target_entity, kind, payload))

        args = dict(payload)
        args.setdefault("id", mutation.natural_key)
        try:
            options = CallOptions(dedupe=False, subject_id=self.queue.subject_id)
            value = await self.executor.call(self.queue.operation_name(mutation), args, options)
        except TransientError:
            if self.connectivity.online:
                raise
            logger.info("backend unreachable; queueing mutation", mutation_id=mutation.id)
            queued = await self.queue.enqueue(target_entity, kind, payload)
            return MutationOutcome(queued=True, mutation=queued)
        return MutationOutcome(queued=False, value=value)

    async def flush(self) -> FlushReport:
        return await self.queue.flush()

    async def watch(self, table: str, collection: OrderedCollection | None = None) -> ChangeFeedReconciler:
        """Keep ``collection`` in sync with pushes on ``table`` for the current subject."""
        existing = self._reconcilers.get(table)
        if existing is not None:
            return existing
        if self._transport is None:
            raise RuntimeError("no change-feed transport configured")
        reconciler = ChangeFeedReconciler(
            self._transport,
            collection or OrderedCollection(self.config.reconciler.max_items),
            self.clock,
            table=table,
            config=self.config.reconciler,
        )
        self._reconcilers[table] = reconciler
        if self.subject_id is not None:
            await reconciler.start(self.subject_id)
        return reconciler

    async def unwatch(self, table: str) -> None:
        reconciler = self._reconcilers.pop(table, None)
        if reconciler is not None:
            await reconciler.stop()

    # ------------------------------------------------------------------
    def _on_subject_change(self, previous: str | None, current: str | None) -> None:
        logger.info("rebinding to new subject", previous=previous, current=current)
        self.executor.invalidate()
        self.queue.unbind()
        for reconciler in self._reconcilers.values():
            reconciler.collection.clear()
        self._rebinds.append(asyncio.ensure_future(self._rebind(current)))

    async def _rebind(self, subject_id: str | None) -> None:
        async with self._rebind_lock:
            if subject_id is None:
                for reconciler in self._reconcilers.values():
                    await reconciler.stop()
                return
            restored = await self.queue.load(subject_id)
            if restored:
                logger.info("restored offline mutations", subject_id=subject_id, count=restored)
            for reconciler in self._reconcilers.values():
                await reconciler.start(subject_id)

    async def _settle(self) -> None:
        while self._rebinds:
            tasks, self._rebinds = self._rebinds, []
            await asyncio.gather(*tasks)
