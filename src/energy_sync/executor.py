"""Remote call executor.

``call`` resolves a named remote operation through, in order: the result
cache, the refresh coordinator, the in-flight table and finally the backend,
with retry on transient failures and fallback values for missing operations.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
from functools import partial
from typing import Any

from .backend import RemoteBackend, RemoteCallError
from .cache import MISS, CacheStats, ResultCache
from .classify import ErrorClassifier
from .clock import Clock
from .config.models import ExecutorSection
from .connectivity import ConnectivityMonitor
from .exceptions import AuthRequiredError, NotFoundError, TransientError
from .logger import get_logger
from .metrics import cache_hits_total, remote_calls_total
from .models import NO_FALLBACK, BatchCall, BatchResult, CallOptions, canonical_json
from .refresh import RefreshCoordinator
from .registry import OperationRegistry
from .retry import RetryError, with_retry
from .session_store import SessionStore

logger = get_logger(__name__)


def fingerprint(name: str, args: dict[str, Any]) -> str:
    """Dedupe key for calls without an explicit cache key."""
    digest = hashlib.sha256(canonical_json(args).encode("utf-8")).hexdigest()
    return f"{name}:{digest[:16]}"


class RemoteCallExecutor:
    def __init__(
        self,
        store: SessionStore,
        coordinator: RefreshCoordinator,
        backend: RemoteBackend,
        clock: Clock,
        *,
        config: ExecutorSection | None = None,
        registry: OperationRegistry | None = None,
        classifier: ErrorClassifier | None = None,
        connectivity: ConnectivityMonitor | None = None,
    ) -> None:
        config = config or ExecutorSection()
        self._store = store
        self._coordinator = coordinator
        self._backend = backend
        self._clock = clock
        self._registry = registry or OperationRegistry()
        self._classifier = classifier or ErrorClassifier()
        self._connectivity = connectivity
        self._subject_param = config.subject_param
        self._retry = config.retry.to_retry_config()
        self._cache = ResultCache(clock, config.default_cache_ttl_ms, config.max_cache_ttl_ms)
        self._pending: dict[str, asyncio.Task[Any]] = {}
        self._generation = 0

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    @property
    def pending_keys(self) -> list[str]:
        return list(self._pending)

    async def call(
        self,
        name: str,
        args: dict[str, Any] | None = None,
        options: CallOptions | None = None,
    ) -> Any:
        """Invoke ``name`` and return its (validated) result.

        Raises:
            AuthRequiredError: no valid session could be obtained.
            TransientError: retries were exhausted.
            NotFoundError: the operation is missing and no fallback exists.
            PermanentError: the backend rejected the call.
        """
        options = options or CallOptions()
        args = dict(args or {})

        if options.cache_key is not None:
            cached = self._cache.get(options.cache_key)
            if cached is not MISS:
                cache_hits_total.add(1, {"operation": name})
                return cached

        session = await self._coordinator.ensure_fresh()
        if not SessionStore.is_valid(session, self._clock.now()):
            raise AuthRequiredError()
        if self._subject_param and self._subject_param not in args:
            args[self._subject_param] = session.subject_id

        try:
            if not options.dedupe:
                return await self._run(name, args, options, self._generation)
            return copy.deepcopy(await self._join(name, args, options))
        except NotFoundError:
            fallback = options.fallback
            if fallback is NO_FALLBACK:
                fallback = self._registry.fallback_for(name)
            if fallback is NO_FALLBACK:
                raise
            logger.info("remote operation missing; using fallback", operation=name)
            remote_calls_total.add(1, {"operation": name, "outcome": "fallback"})
            return copy.deepcopy(fallback)

    async def _join(self, name: str, args: dict[str, Any], options: CallOptions) -> Any:
        key = options.cache_key or fingerprint(name, args)
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(name, args, options, self._generation))
            self._pending[key] = task
            task.add_done_callback(partial(self._release, key))
        else:
            logger.debug("joining in-flight remote call", operation=name, key=key)
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        # abandoned by every caller: keep asyncio from reporting it as unretrieved
        if not task.cancelled():
            task.exception()

    async def _run(self, name: str, args: dict[str, Any], options: CallOptions, generation: int) -> Any:
        retry = self._retry.with_attempts(options.max_attempts)

        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "remote call failed; retrying",
                operation=name,
                attempt=attempt,
                delay=round(delay, 3),
                error=str(error),
            )

        try:
            value = await with_retry(
                retry,
                lambda: self._dispatch(name, args, options.subject_id),
                retry_on=(TransientError,),
                sleep=self._clock.sleep,
                on_retry=_on_retry,
            )
        except RetryError as e:
            last = e.last_error
            if not isinstance(last, TransientError):
                raise
            remote_calls_total.add(1, {"operation": name, "outcome": "exhausted"})
            raise TransientError(last.code, last.message, cause=last.__cause__, attempts=e.attempts) from last

        value = self._registry.validate(name, value)
        if options.cache_key is not None and value is not None:
            if generation == self._generation:
                descriptor = self._registry.get(name)
                ttl_ms = options.cache_ttl_ms
                if ttl_ms is None and descriptor is not None:
                    ttl_ms = descriptor.cache_ttl_ms
                self._cache.set(options.cache_key, value, ttl_ms)
            else:
                logger.debug("discarding result from detached call", operation=name)
        return value

    async def _dispatch(self, name: str, args: dict[str, Any], subject_id: str | None = None) -> Any:
        session = self._store.get_session()
        if session is None:
            raise AuthRequiredError()
        if subject_id is not None and session.subject_id != subject_id:
            logger.warning("session subject changed; call dropped", operation=name, expected=subject_id)
            raise AuthRequiredError(f"{name}: session no longer belongs to {subject_id}")
        try:
            return await self._invoke(name, args, session.credential)
        except AuthRequiredError as e:
            logger.info("credential rejected; forcing refresh", operation=name)
            refreshed = await self._coordinator.ensure_fresh(force=True)
            if (
                refreshed is None
                or refreshed.credential == session.credential
                or refreshed.subject_id != session.subject_id
            ):
                raise AuthRequiredError("Session expired. Please sign in again.", cause=e) from e
            return await self._invoke(name, args, refreshed.credential)

    async def _invoke(self, name: str, args: dict[str, Any], credential: str) -> Any:
        try:
            value = await self._backend.invoke(name, args, credential=credential)
        except RemoteCallError as e:
            if e.connection_lost and self._connectivity is not None:
                self._connectivity.mark_offline(e.message)
            error = self._classifier.classify(name, e)
            remote_calls_total.add(1, {"operation": name, "outcome": error.kind.value})
            raise error from e
        if self._connectivity is not None:
            self._connectivity.mark_online()
        remote_calls_total.add(1, {"operation": name, "outcome": "ok"})
        return value

    async def batch(self, calls: list[BatchCall]) -> list[BatchResult]:
        """Run independent calls concurrently; one failure does not affect the others."""
        results = await asyncio.gather(
            *(self.call(c.name, c.args, c.options) for c in calls),
            return_exceptions=True,
        )
        out: list[BatchResult] = []
        for c, result in zip(calls, results):
            if isinstance(result, Exception):
                out.append(BatchResult(name=c.name, success=False, error=result))
            elif isinstance(result, BaseException):
                raise result
            else:
                out.append(BatchResult(name=c.name, success=True, value=result))
        return out

    def evict(self, cache_key: str) -> bool:
        return self._cache.invalidate(cache_key)

    def invalidate(self) -> None:
        """Drop cached results and detach in-flight calls."""
        self._generation += 1
        self._cache.clear()
        self._pending.clear()
        logger.info("executor state invalidated", generation=self._generation)

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()
