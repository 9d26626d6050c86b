"""A small least-recently-used cache with a fixed capacity."""

from __future__ import annotations

from typing import Generic, Iterator, TypeVar

T = TypeVar("T")


class Lru(Generic[T]):
    """Ordered cache whose front is the most recently used entry.

    Pushing into a full cache evicts the entry at the back.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self.capacity = capacity
        self._items: list[T] = []

    def clear(self) -> None:
        """Drop every entry."""
        self._items.clear()

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def push_front(self, value: T) -> T | None:
        """Insert ``value`` at the front, evicting the oldest entry if full.

        Returns the inserted value, or ``None`` when the capacity is zero.
        """
        if self.capacity == 0:
            return None
        if len(self._items) == self.capacity:
            self._items.pop()
        self._items.insert(0, value)
        return self._items[0]

    def move_to_front(self, idx: int) -> T | None:
        """Move the entry at position ``idx`` to the front and return it.

        Returns ``None`` when ``idx`` is out of range.
        """
        if not 0 <= idx < len(self._items):
            return None
        value = self._items.pop(idx)
        self._items.insert(0, value)
        return value