"""Heap objects with variable-sized layouts: strings and arrays."""

from __future__ import annotations

from typing import Any, Generic, Iterable, Iterator, TypeVar, Union

from .pointer import RawGcPointer
from .trace import POINTER_SIZE, HeapObject, TraceCallback, _layout, trace_value

T = TypeVar("T")

# Strings and arrays start with their length as an unsigned 32-bit word.
_LENGTH_SIZE = 4
_MAX_LENGTH = 0xFFFF_FFFF


def _align_up(value: int, alignment: int) -> int:
    return -(-value // alignment) * alignment


class SimpleGcString(HeapObject):
    """An immutable UTF-8 string whose bytes are stored right after its length."""

    def __init__(self, value: Union[str, bytes]) -> None:
        data = value.encode() if isinstance(value, str) else bytes(value)
        if len(data) > _MAX_LENGTH:
            raise ValueError("string too long for the heap")
        self._data = data

    @property
    def data(self) -> bytes:
        """The UTF-8 encoded contents."""
        return self._data

    def trace(self, callback: TraceCallback) -> None:
        """A string holds no pointers, so there is nothing to trace."""

    def allocation_size(self) -> int:
        return len(self._data) + _LENGTH_SIZE

    def allocation_alignment(self) -> int:
        return _LENGTH_SIZE

    def __str__(self) -> str:
        return self._data.decode()

    def __len__(self) -> int:
        """The length in UTF-8 bytes."""
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SimpleGcString):
            return self._data == other._data
        if isinstance(other, str):
            return str(self) == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(str(self))

    def __repr__(self) -> str:
        return f"SimpleGcString({str(self)!r})"


class Array(HeapObject, Generic[T]):
    """A fixed-length array whose elements are stored inline after its length."""

    def __init__(self, items: Iterable[T] = ()) -> None:
        self._items: list[T] = list(items)
        if len(self._items) > _MAX_LENGTH:
            raise ValueError("array too long for the heap")

    def _element_layout(self) -> tuple[int, int]:
        size, alignment = 0, 1
        for item in self._items:
            item_size, item_alignment = _layout(item)
            size = max(size, item_size)
            alignment = max(alignment, item_alignment)
        return _align_up(size, alignment), alignment

    def trace(self, callback: TraceCallback) -> None:
        for item in self._items:
            trace_value(item, callback)

    def allocation_size(self) -> int:
        stride, alignment = self._element_layout()
        padding = max(0, alignment - _LENGTH_SIZE)
        return _LENGTH_SIZE + padding + len(self._items) * stride

    def allocation_alignment(self) -> int:
        return max(_LENGTH_SIZE, self._element_layout()[1])

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def __getitem__(self, index: Any) -> Any:
        return self._items[index]

    def __repr__(self) -> str:
        return f"Array({self._items!r})"


class HeterogeneousArray(HeapObject):
    """An array of untyped pointers to other heap objects."""

    def __init__(self, pointers: Iterable[RawGcPointer] = ()) -> None:
        items = list(pointers)
        for pointer in items:
            if not isinstance(pointer, RawGcPointer):
                raise TypeError(
                    f"expected RawGcPointer, got {type(pointer).__name__}"
                )
        if len(items) > _MAX_LENGTH:
            raise ValueError("array too long for the heap")
        self._pointers = items

    def trace(self, callback: TraceCallback) -> None:
        for pointer in self._pointers:
            callback(pointer)

    def allocation_size(self) -> int:
        return len(self._pointers) * POINTER_SIZE + _LENGTH_SIZE

    def allocation_alignment(self) -> int:
        return POINTER_SIZE

    def __len__(self) -> int:
        return len(self._pointers)

    def __iter__(self) -> Iterator[RawGcPointer]:
        return iter(self._pointers)

    def __getitem__(self, index: Any) -> Any:
        return self._pointers[index]

    def __repr__(self) -> str:
        return f"HeterogeneousArray({self._pointers!r})"