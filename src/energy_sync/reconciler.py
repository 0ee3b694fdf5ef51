"""Change-feed reconciler.

Subscribes to ``"{table}:{subject_id}"`` and folds the pushed events into an
:class:`OrderedCollection`. The first event after an idle period opens a
throttle window; everything that arrives inside it is coalesced per entity and
applied in one pass when the window closes.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .clock import Clock, TimerHandle
from .collection import OrderedCollection
from .config.models import ReconcilerSection
from .logger import get_logger
from .metrics import change_events_applied_total
from .models import ChangeEvent, ChangeKind
from .transport import ChangeFeedTransport, SubscriptionHandle, SubscriptionStatus

logger = get_logger(__name__)

_DROPPED = frozenset({SubscriptionStatus.CLOSED, SubscriptionStatus.CHANNEL_ERROR, SubscriptionStatus.TIMED_OUT})


@dataclass
class ReconcileUpdate:
    items: list[dict[str, Any]]
    counters: dict[str, int]
    applied: int


UpdateListener = Callable[[ReconcileUpdate], None]


class ChangeFeedReconciler:
    def __init__(
        self,
        transport: ChangeFeedTransport,
        collection: OrderedCollection,
        clock: Clock,
        *,
        table: str,
        config: ReconcilerSection | None = None,
    ) -> None:
        config = config or ReconcilerSection()
        self._transport = transport
        self._collection = collection
        self._clock = clock
        self.table = table
        self._window_seconds = config.throttle_window_ms / 1000.0
        self._resubscribe_initial = config.resubscribe_initial_delay
        self._resubscribe_max = config.resubscribe_max_delay
        self._resubscribe_max_attempts = config.resubscribe_max_attempts

        self._subject_id: str | None = None
        self._handle: SubscriptionHandle | None = None
        self._running = False
        self._buffer: OrderedDict[str, ChangeEvent] = OrderedDict()
        # held entities deleted and inserted again inside the window
        self._recreated: set[str] = set()
        self._window: TimerHandle | None = None
        self._retry_timer: TimerHandle | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._retry_attempts = 0
        self._listeners: list[UpdateListener] = []
        self.gave_up = False

    @property
    def collection(self) -> OrderedCollection:
        return self._collection

    @property
    def running(self) -> bool:
        return self._running

    @property
    def subscribed(self) -> bool:
        return self._handle is not None

    @property
    def topic(self) -> str | None:
        if self._subject_id is None:
            return None
        return f"{self.table}:{self._subject_id}"

    def add_listener(self, listener: UpdateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def start(self, subject_id: str) -> None:
        """Subscribe for ``subject_id``. Calling it again for the same subject is a no-op."""
        if self._running and self._subject_id == subject_id:
            return
        if self._running:
            await self.stop()
        self._subject_id = subject_id
        self._running = True
        self._retry_attempts = 0
        self.gave_up = False
        try:
            await self._subscribe()
        except Exception as e:
            logger.warning("change feed subscribe failed", topic=self.topic, error=str(e))
            self._schedule_resubscribe()

    async def stop(self) -> None:
        """Unsubscribe and cancel pending timers. Safe to call repeatedly."""
        self._running = False
        if self._window is not None:
            self._window.cancel()
            self._window = None
        self._buffer.clear()
        self._recreated.clear()
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._retry_task
        self._retry_task = None
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._transport.unsubscribe(handle)
            logger.info("change feed unsubscribed", topic=handle.topic)

    async def _subscribe(self) -> None:
        topic = self.topic
        if topic is None:
            return
        handle = await self._transport.subscribe(topic, self.handle_event, self._on_status)
        if not self._running:
            await self._transport.unsubscribe(handle)
            return
        self._handle = handle
        logger.info("change feed subscribed", topic=topic)

    # ------------------------------------------------------------------
    def _on_status(self, status: SubscriptionStatus) -> None:
        if status is SubscriptionStatus.SUBSCRIBED:
            self._retry_attempts = 0
            return
        if status in _DROPPED and self._running:
            logger.warning("change feed dropped", topic=self.topic, status=status.value)
            self._handle = None
            self._schedule_resubscribe()

    def _schedule_resubscribe(self) -> None:
        if not self._running or self._retry_timer is not None:
            return
        if self._retry_attempts >= self._resubscribe_max_attempts:
            self.gave_up = True
            logger.error(
                "change feed resubscribe gave up",
                topic=self.topic,
                attempts=self._retry_attempts,
            )
            return
        delay = min(self._resubscribe_initial * (2**self._retry_attempts), self._resubscribe_max)
        self._retry_attempts += 1
        self._retry_timer = self._clock.call_later(delay, self._fire_resubscribe)

    def _fire_resubscribe(self) -> None:
        self._retry_timer = None
        self._retry_task = asyncio.ensure_future(self._resubscribe())

    async def _resubscribe(self) -> None:
        if not self._running:
            return
        try:
            await self._subscribe()
        except Exception as e:
            logger.warning(
                "change feed resubscribe failed",
                topic=self.topic,
                attempt=self._retry_attempts,
                error=str(e),
            )
            self._schedule_resubscribe()

    # ------------------------------------------------------------------
    def handle_event(self, event: ChangeEvent) -> None:
        """Buffer ``event``; opens the throttle window when idle."""
        if not self._running:
            return
        self._coalesce(event)
        if self._window_seconds <= 0:
            self.flush()
        elif self._window is None:
            self._window = self._clock.call_later(self._window_seconds, self._close_window)

    def _coalesce(self, event: ChangeEvent) -> None:
        key = event.entity_id
        held = self._buffer.get(key)
        if held is None:
            self._buffer[key] = event
        elif held.kind is ChangeKind.INSERT and event.kind is ChangeKind.UPDATE:
            self._buffer[key] = ChangeEvent(key, ChangeKind.INSERT, event.payload, event.observed_at)
        elif held.kind is ChangeKind.INSERT and event.kind is ChangeKind.DELETE and key not in self._collection:
            del self._buffer[key]
        else:
            if held.kind is ChangeKind.DELETE and event.kind is ChangeKind.INSERT:
                self._recreated.add(key)
            elif event.kind is ChangeKind.DELETE:
                self._recreated.discard(key)
            self._buffer[key] = event

    def _close_window(self) -> None:
        self._window = None
        self.flush()

    def flush(self) -> int:
        """Apply the buffered events now. Returns the number that changed state."""
        if self._window is not None:
            self._window.cancel()
            self._window = None
        events = list(self._buffer.values())
        recreated, self._recreated = self._recreated, set()
        self._buffer.clear()
        applied = 0
        for event in events:
            if self._apply(event, event.entity_id in recreated):
                applied += 1
        if applied:
            change_events_applied_total.add(applied, {"table": self.table})
            logger.debug("change events applied", topic=self.topic, applied=applied, received=len(events))
            self._notify(applied)
        return applied

    def _apply(self, event: ChangeEvent, recreated: bool = False) -> bool:
        if event.kind is ChangeKind.DELETE:
            return self._collection.delete(event.entity_id)
        payload = dict(event.payload)
        payload.setdefault(self._collection.id_field, event.entity_id)
        if event.kind is ChangeKind.INSERT:
            if recreated:
                self._collection.delete(event.entity_id)
            return self._collection.insert(payload)
        return self._collection.update(payload)

    def _notify(self, applied: int) -> None:
        update = ReconcileUpdate(
            items=self._collection.snapshot(),
            counters=self._collection.counters,
            applied=applied,
        )
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("reconcile listener failed", topic=self.topic)
