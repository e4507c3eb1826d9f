"""A fixed-capacity, thread-safe ring buffer with a change counter."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable
from typing import Generic, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Keeps the newest ``capacity`` items; the oldest are evicted first.

    The generation counter grows on every change so readers can notice
    updates even when the length stays the same.
    """

    def __init__(self, capacity: int) -> None:
        self.capacity = max(1, capacity)
        self._items: deque[T] = deque(maxlen=self.capacity)
        self._gen = 0
        self._lock = threading.Lock()

    def push(self, item: T) -> None:
        """Append one item."""
        with self._lock:
            self._items.append(item)
            self._gen += 1

    def push_many(self, items: Iterable[T]) -> None:
        """Append several items in order."""
        batch = list(items)
        if not batch:
            return
        with self._lock:
            self._items.extend(batch)
            self._gen += len(batch)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def generation(self) -> int:
        """Return the change counter."""
        with self._lock:
            return self._gen

    def snapshot(self) -> list[T]:
        """Return all items, oldest first, as a new list."""
        with self._lock:
            return list(self._items)

    def tail(self, n: int) -> list[T]:
        """Return the last ``n`` items, or all of them if there are fewer."""
        with self._lock:
            if n <= 0:
                return []
            items = list(self._items)
        return items[-n:]

    def clear(self) -> None:
        """Remove every item; counts as a change."""
        with self._lock:
            self._items.clear()
            self._gen += 1