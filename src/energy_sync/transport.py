"""Change-feed transport abstraction."""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from .models import ChangeEvent


class SubscriptionStatus(StrEnum):
    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"


EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[SubscriptionStatus], None]


class SubscriptionError(Exception):
    """The transport refused a subscription."""


@dataclass(frozen=True)
class SubscriptionHandle:
    topic: str
    id: int


class ChangeFeedTransport(ABC):
    """Abstract push channel delivering :class:`ChangeEvent` per topic."""

    @abstractmethod
    async def subscribe(
        self,
        topic: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> SubscriptionHandle: ...

    @abstractmethod
    async def unsubscribe(self, handle: SubscriptionHandle) -> None: ...


@dataclass
class _Subscription:
    handle: SubscriptionHandle
    on_event: EventCallback
    on_status: StatusCallback


class InMemoryChangeFeedTransport(ChangeFeedTransport):
    """テスト用インメモリトランスポート。"""

    def __init__(self) -> None:
        self._subs: dict[SubscriptionHandle, _Subscription] = {}
        self._ids = itertools.count(1)
        self._fail_next = 0
        self.subscribe_calls: list[str] = []

    def fail_next_subscribe(self, count: int = 1) -> None:
        self._fail_next += count

    async def subscribe(
        self,
        topic: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> SubscriptionHandle:
        self.subscribe_calls.append(topic)
        if self._fail_next > 0:
            self._fail_next -= 1
            raise SubscriptionError(f"subscribe to {topic} failed")
        handle = SubscriptionHandle(topic=topic, id=next(self._ids))
        self._subs[handle] = _Subscription(handle, on_event, on_status)
        on_status(SubscriptionStatus.SUBSCRIBED)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self._subs.pop(handle, None)

    def subscribers(self, topic: str) -> int:
        return sum(1 for h in self._subs if h.topic == topic)

    def emit(self, topic: str, event: ChangeEvent) -> None:
        for sub in list(self._subs.values()):
            if sub.handle.topic == topic:
                sub.on_event(event)

    def drop(self, topic: str, status: SubscriptionStatus = SubscriptionStatus.CHANNEL_ERROR) -> None:
        """Simulate the server closing every subscription on ``topic``."""
        for handle, sub in list(self._subs.items()):
            if handle.topic == topic:
                del self._subs[handle]
                sub.on_status(status)
