"""A slab of values addressed by small integer keys whose slots are reused."""

from __future__ import annotations

from typing import Generic, Iterator, Optional, TypeVar

T = TypeVar("T")


class PointerSlab(Generic[T]):
    """Stores values under integer keys and reuses the slots of removed entries.

    Freed slots are handed out again most-recently-freed first.
    """

    def __init__(self) -> None:
        self._storage: list[Optional[T]] = []
        self._free_slots: list[int] = []

    def insert(self, value: T) -> int:
        """Store ``value`` and return the key it can be found under."""
        if value is None:
            raise ValueError("a slab cannot hold None")
        if self._free_slots:
            key = self._free_slots.pop()
            self._storage[key] = value
            return key
        self._storage.append(value)
        return len(self._storage) - 1

    def _live(self, key: int) -> T:
        if not 0 <= key < len(self._storage):
            raise KeyError(key)
        value = self._storage[key]
        if value is None:
            raise KeyError(key)
        return value

    def get(self, key: int) -> T:
        """Return the value stored under ``key``."""
        return self._live(key)

    def __setitem__(self, key: int, value: T) -> None:
        if value is None:
            raise ValueError("a slab cannot hold None")
        self._live(key)
        self._storage[key] = value

    def remove(self, key: int) -> T:
        """Free the slot of ``key`` and return the value it held."""
        value = self._live(key)
        self._storage[key] = None
        self._free_slots.append(key)
        return value

    def __iter__(self) -> Iterator[tuple[int, T]]:
        """Yield ``(key, value)`` for every occupied slot, in key order."""
        for key, value in enumerate(self._storage):
            if value is not None:
                yield key, value

    def __len__(self) -> int:
        return len(self._storage) - len(self._free_slots)