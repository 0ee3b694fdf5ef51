"""Bounded most-recent-first collection with derived counters."""

from __future__ import annotations

import copy
from collections import OrderedDict
from collections.abc import Callable, Iterable
from typing import Any

from .models import canonical_json

Item = dict[str, Any]
Predicate = Callable[[Item], bool]


class OrderedCollection:
    """Holds at most ``max_items`` entities keyed by ``id_field``.

    Inserts go to the front; the oldest entry is evicted past the bound.
    Counters are kept in step with every insert, update, delete and
    eviction instead of being recomputed.
    """

    def __init__(
        self,
        max_items: int = 100,
        *,
        id_field: str = "id",
        counters: dict[str, Predicate] | None = None,
    ) -> None:
        if max_items < 1:
            raise ValueError("max_items must be positive")
        self.max_items = max_items
        self.id_field = id_field
        self._predicates: dict[str, Predicate] = dict(counters or {})
        self._counts: dict[str, int] = {name: 0 for name in self._predicates}
        # oldest first, newest last
        self._items: OrderedDict[str, Item] = OrderedDict()

    def key_of(self, item: Item) -> str:
        raw = item.get(self.id_field)
        if raw is None:
            raise ValueError(f"item is missing {self.id_field!r}")
        return str(raw)

    def insert(self, item: Item) -> bool:
        """Prepend ``item``. An already held identity is treated as an update."""
        key = self.key_of(item)
        if key in self._items:
            return self.update(item)
        stored = copy.deepcopy(item)
        self._items[key] = stored
        self._count(stored, 1)
        while len(self._items) > self.max_items:
            _, evicted = self._items.popitem(last=False)
            self._count(evicted, -1)
        return True

    def update(self, item: Item) -> bool:
        """Replace a held entity in place. Returns False when nothing changed."""
        key = self.key_of(item)
        current = self._items.get(key)
        if current is None:
            return False
        if canonical_json(current) == canonical_json(item):
            return False
        stored = copy.deepcopy(item)
        self._count(current, -1)
        self._items[key] = stored
        self._count(stored, 1)
        return True

    def delete(self, key: str) -> bool:
        removed = self._items.pop(str(key), None)
        if removed is None:
            return False
        self._count(removed, -1)
        return True

    def replace_all(self, items: Iterable[Item]) -> None:
        """Seed from a fetched page given newest first."""
        self.clear()
        for item in reversed(list(items)):
            self.insert(item)

    def clear(self) -> None:
        self._items.clear()
        self._counts = {name: 0 for name in self._predicates}

    def get(self, key: str) -> Item | None:
        item = self._items.get(str(key))
        return copy.deepcopy(item) if item is not None else None

    def __contains__(self, key: object) -> bool:
        return str(key) in self._items

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> list[Item]:
        """Items newest first."""
        return [copy.deepcopy(item) for item in reversed(self._items.values())]

    @property
    def counters(self) -> dict[str, int]:
        return dict(self._counts)

    def _count(self, item: Item, delta: int) -> None:
        for name, predicate in self._predicates.items():
            if predicate(item):
                self._counts[name] += delta
