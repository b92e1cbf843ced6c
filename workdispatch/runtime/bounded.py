"""Size-bounded containers used by the dispatcher.

Both structures state their eviction policy as an invariant:

* ``BoundedIdSet``: never holds more than ``cap`` ids; when an insert
  would exceed ``cap``, only the ``keep`` most recently added ids survive.
* ``LRUMap``: never holds more than ``cap`` entries; when an insert would
  exceed ``cap``, the ``evict`` least recently used entries are removed.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Callable, Generic, Hashable, Iterator, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class BoundedIdSet:
    def __init__(self, cap: int = 10_000, keep: int = 5_000) -> None:
        if keep > cap:
            raise ValueError("keep must not exceed cap")
        self.cap = cap
        self.keep = keep
        self._ids: OrderedDict[str, None] = OrderedDict()

    def add(self, item: str) -> None:
        if item in self._ids:
            return
        self._ids[item] = None
        if len(self._ids) > self.cap:
            for _ in range(len(self._ids) - self.keep):
                self._ids.popitem(last=False)

    def __contains__(self, item: object) -> bool:
        return item in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def clear(self) -> None:
        self._ids.clear()


class LRUMap(Generic[K, V]):
    def __init__(self, cap: int = 100, evict: int = 20) -> None:
        if evict < 1 or evict > cap:
            raise ValueError("evict must be between 1 and cap")
        self.cap = cap
        self.evict = evict
        self._items: OrderedDict[K, V] = OrderedDict()

    def get(self, key: K) -> V | None:
        value = self._items.get(key)
        if value is not None:
            self._items.move_to_end(key)
        return value

    def get_or_create(self, key: K, factory: Callable[[], V]) -> V:
        value = self.get(key)
        if value is None:
            value = factory()
            self.put(key, value)
        return value

    def put(self, key: K, value: V) -> None:
        self._items[key] = value
        self._items.move_to_end(key)
        if len(self._items) > self.cap:
            for _ in range(self.evict):
                self._items.popitem(last=False)

    def pop(self, key: K) -> V | None:
        return self._items.pop(key, None)

    def keys(self) -> list[K]:
        return list(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)
