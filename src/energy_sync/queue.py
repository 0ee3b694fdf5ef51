"""OfflineMutationQueue — 切断中のミューテーションを保持して再送する"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import json
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from .clock import Clock, TimerHandle
from .config.models import QueueSection
from .connectivity import ConnectivityMonitor
from .exceptions import (
    AuthRequiredError,
    ErrorKindCodes,
    NotFoundError,
    PermanentError,
    SyncError,
    TransientError,
)
from .executor import RemoteCallExecutor
from .logger import get_logger
from .metrics import offline_replays_total
from .models import CallOptions, MutationKind, QueuedMutation
from .storage import DurableStorage

logger = get_logger(__name__)

OperationResolver = Callable[[QueuedMutation], str]


def default_operation_name(mutation: QueuedMutation) -> str:
    """``insert`` + ``reading`` -> ``insertReading``."""
    words = mutation.entity_type.replace("-", "_").split("_")
    return mutation.operation_kind.value + "".join(w[:1].upper() + w[1:] for w in words if w)


def storage_key(subject_id: str) -> str:
    return f"offline_queue:{subject_id}"


@dataclass
class FailedMutation:
    mutation: QueuedMutation
    error: SyncError


@dataclass
class FlushReport:
    """Outcome of one replay pass."""

    applied: list[QueuedMutation] = field(default_factory=list)
    duplicates: list[QueuedMutation] = field(default_factory=list)
    failed: list[FailedMutation] = field(default_factory=list)
    abandoned: list[FailedMutation] = field(default_factory=list)
    pending: int = 0


class OfflineMutationQueue:
    """Durable, subject-scoped queue of mutations awaiting replay.

    Entries are identified by ``(entity type, natural key, kind)``: queueing
    the same logical row again replaces the earlier entry in place.
    """

    def __init__(
        self,
        executor: RemoteCallExecutor,
        storage: DurableStorage,
        clock: Clock,
        *,
        connectivity: ConnectivityMonitor | None = None,
        config: QueueSection | None = None,
        operation_resolver: OperationResolver | None = None,
    ) -> None:
        self._executor = executor
        self._storage = storage
        self._clock = clock
        self._connectivity = connectivity
        self._config = config or QueueSection()
        self._resolve = operation_resolver or default_operation_name
        self._entries: OrderedDict[str, QueuedMutation] = OrderedDict()
        self._subject_id: str | None = None
        self._flush_task: asyncio.Task[FlushReport] | None = None
        self._timer: TimerHandle | None = None
        self._remove_listener: Callable[[], None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def subject_id(self) -> str | None:
        return self._subject_id

    def __len__(self) -> int:
        return len(self._entries)

    def operation_name(self, mutation: QueuedMutation) -> str:
        return self._resolve(mutation)

    def entries(self) -> list[QueuedMutation]:
        """Queued mutations in replay order."""
        return [copy.deepcopy(m) for m in self._entries.values()]

    async def enqueue(
        self,
        target_entity: str,
        kind: MutationKind | str,
        payload: dict[str, Any],
    ) -> QueuedMutation:
        mutation = QueuedMutation(
            target_entity=target_entity,
            operation_kind=MutationKind(kind),
            payload=copy.deepcopy(payload),
            enqueued_at=self._clock.now(),
        )
        existing = self._entries.get(mutation.id)
        if existing is not None:
            mutation = replace(mutation, attempts=existing.attempts)
            logger.debug("replacing queued mutation", mutation_id=mutation.id)
        else:
            logger.info("mutation queued for replay", mutation_id=mutation.id)
        self._entries[mutation.id] = mutation
        # a replacement replays after everything queued before it
        self._entries.move_to_end(mutation.id)
        await self._persist()
        return copy.deepcopy(mutation)

    async def load(self, subject_id: str) -> int:
        """Bind to ``subject_id`` and restore its persisted entries."""
        self._subject_id = subject_id
        self._entries.clear()
        try:
            raw = await self._storage.get(storage_key(subject_id))
        except Exception as e:
            logger.warning("could not read offline queue", subject_id=subject_id, error=str(e))
            return 0
        if raw is None:
            return 0
        try:
            for item in json.loads(raw):
                mutation = QueuedMutation.from_dict(item)
                self._entries[mutation.id] = mutation
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("discarding malformed offline queue", subject_id=subject_id, error=str(e))
            self._entries.clear()
        return len(self._entries)

    def unbind(self) -> None:
        """Forget the current subject. Its entries stay persisted under its key."""
        self._subject_id = None
        self._entries.clear()

    async def _persist(self) -> None:
        if self._subject_id is None:
            return
        key = storage_key(self._subject_id)
        try:
            if self._entries:
                await self._storage.set(key, json.dumps([m.to_dict() for m in self._entries.values()]))
            else:
                await self._storage.remove(key)
        except Exception as e:
            logger.warning("offline queue persistence failed; continuing in memory", error=str(e))

    # ------------------------------------------------------------------
    async def flush(self) -> FlushReport:
        """Replay queued mutations. A call made during a pass joins it."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.ensure_future(self._flush_once())
        return await asyncio.shield(self._flush_task)

    async def _flush_once(self) -> FlushReport:
        report = FlushReport()
        if not self._entries:
            return report
        subject_id = self._subject_id
        groups: OrderedDict[str, list[QueuedMutation]] = OrderedDict()
        for mutation in self._entries.values():
            groups.setdefault(mutation.entity_key, []).append(mutation)
        logger.info("replaying offline mutations", count=len(self._entries), entities=len(groups))

        await asyncio.gather(*(self._replay_entity(group, report, subject_id) for group in groups.values()))

        if self._subject_id == subject_id:
            await self._persist()
        report.pending = len(self._entries)
        logger.info(
            "offline replay finished",
            applied=len(report.applied),
            duplicates=len(report.duplicates),
            failed=len(report.failed),
            abandoned=len(report.abandoned),
            pending=report.pending,
        )
        return report

    async def _replay_entity(
        self,
        group: list[QueuedMutation],
        report: FlushReport,
        subject_id: str | None,
    ) -> None:
        for mutation in group:
            if self._subject_id != subject_id:
                logger.info("subject changed; offline replay halted", subject_id=subject_id)
                return
            if not await self._replay(mutation, report, subject_id):
                return

    async def _replay(self, mutation: QueuedMutation, report: FlushReport, subject_id: str | None) -> bool:
        """Replay one entry. Returns False when the entity's later entries must wait."""
        name = self.operation_name(mutation)
        args = dict(mutation.payload)
        args.setdefault("id", mutation.natural_key)
        try:
            options = CallOptions(dedupe=True, max_attempts=1, subject_id=subject_id)
            await self._executor.call(name, args, options)
        except PermanentError as e:
            self._retire(mutation)
            if e.duplicate:
                logger.info("queued mutation already applied", mutation_id=mutation.id)
                offline_replays_total.add(1, {"outcome": "duplicate"})
                report.duplicates.append(mutation)
            else:
                logger.error("queued mutation rejected", mutation_id=mutation.id, error=str(e))
                offline_replays_total.add(1, {"outcome": "rejected"})
                report.failed.append(FailedMutation(mutation, e))
            return True
        except NotFoundError as e:
            self._retire(mutation)
            logger.error("queued mutation target operation missing", mutation_id=mutation.id, operation=name)
            offline_replays_total.add(1, {"outcome": "rejected"})
            report.failed.append(FailedMutation(mutation, e))
            return True
        except TransientError as e:
            mutation.attempts += 1
            if mutation.attempts >= self._config.max_attempts:
                self._retire(mutation)
                logger.error(
                    "queued mutation abandoned",
                    mutation_id=mutation.id,
                    attempts=mutation.attempts,
                    error=str(e),
                )
                offline_replays_total.add(1, {"outcome": "abandoned"})
                abandoned = TransientError(
                    ErrorKindCodes.REPLAY_ABANDONED,
                    f"{mutation.id}: gave up after {mutation.attempts} attempts",
                    cause=e,
                    attempts=mutation.attempts,
                )
                report.abandoned.append(FailedMutation(mutation, abandoned))
            else:
                logger.warning(
                    "queued mutation replay failed; will retry",
                    mutation_id=mutation.id,
                    attempts=mutation.attempts,
                    error=str(e),
                )
                offline_replays_total.add(1, {"outcome": "retry"})
            return False
        except AuthRequiredError:
            logger.info("offline replay waiting for a session", mutation_id=mutation.id)
            return False

        self._retire(mutation)
        offline_replays_total.add(1, {"outcome": "applied"})
        report.applied.append(mutation)
        return True

    def _retire(self, mutation: QueuedMutation) -> None:
        # a replacement enqueued during replay stays queued
        if self._entries.get(mutation.id) is mutation:
            del self._entries[mutation.id]

    # ------------------------------------------------------------------
    def start(self) -> None:
        """Flush on reconnect and periodically while online."""
        if self._connectivity is not None and self._remove_listener is None:
            self._remove_listener = self._connectivity.add_listener(self._on_connectivity)
        if self._timer is None:
            self._timer = self._clock.call_later(self._config.flush_interval_seconds, self._tick)

    def _on_connectivity(self, online: bool) -> None:
        if online and self._entries:
            logger.info("connectivity restored; flushing offline queue", count=len(self._entries))
            self._spawn_flush()

    def _tick(self) -> None:
        self._timer = self._clock.call_later(self._config.flush_interval_seconds, self._tick)
        online = self._connectivity is None or self._connectivity.online
        if online and self._entries:
            self._spawn_flush()

    def _spawn_flush(self) -> None:
        task = asyncio.ensure_future(self.flush())
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background offline flush failed", error=str(task.exception()))

    async def stop(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for task in list(self._background):
            task.cancel()
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
        self._flush_task = None
        self._background.clear()
