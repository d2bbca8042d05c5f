"""Objects that can live on the GC heap and the tracing of their pointers."""

from __future__ import annotations

import abc
import dataclasses
import enum
from typing import Any, Callable

from .pointer import GcPointer, RawGcPointer

TraceCallback = Callable[[RawGcPointer], None]

# A pointer is stored as one 32-bit word.
POINTER_SIZE = 4
_WORD_SIZE = 8


class HeapObject(abc.ABC):
    """Something that can be placed on the GC heap."""

    @abc.abstractmethod
    def trace(self, callback: TraceCallback) -> None:
        """Call ``callback`` once for every GC pointer held by the object."""

    @abc.abstractmethod
    def allocation_size(self) -> int:
        """Size of the allocation in bytes, excluding the entry header."""

    @abc.abstractmethod
    def allocation_alignment(self) -> int:
        """Alignment the allocation requires."""


class Traced(HeapObject):
    """A heap object whose fields are traced and laid out automatically.

    Fields are the dataclass fields, or the instance attributes in
    definition order. Sizes follow a C-like struct layout.
    """

    def _field_values(self) -> list[Any]:
        if dataclasses.is_dataclass(self):
            return [getattr(self, field.name) for field in dataclasses.fields(self)]
        return list(vars(self).values())

    def trace(self, callback: TraceCallback) -> None:
        for value in self._field_values():
            trace_value(value, callback)

    def allocation_size(self) -> int:
        return _struct_layout(self._field_values())[0]

    def allocation_alignment(self) -> int:
        return _struct_layout(self._field_values())[1]


def _align_up(value: int, alignment: int) -> int:
    return -(-value // alignment) * alignment


def _struct_layout(values: Any) -> tuple[int, int]:
    offset = 0
    alignment = 1
    for value in values:
        size, field_alignment = _layout(value)
        offset = _align_up(offset, field_alignment) + size
        alignment = max(alignment, field_alignment)
    return _align_up(offset, alignment), alignment


def _layout(value: Any) -> tuple[int, int]:
    if isinstance(value, (RawGcPointer, GcPointer)):
        return POINTER_SIZE, POINTER_SIZE
    if isinstance(value, enum.Enum):
        return 1, 1
    if isinstance(value, bool):
        return 1, 1
    if isinstance(value, (int, float)):
        return _WORD_SIZE, _WORD_SIZE
    if value is None:
        return 0, 1
    if isinstance(value, str):
        return len(value.encode()), 1
    if isinstance(value, (bytes, bytearray)):
        return len(value), 1
    if isinstance(value, HeapObject):
        return value.allocation_size(), value.allocation_alignment()
    if isinstance(value, (list, tuple)):
        return _struct_layout(value)
    raise TypeError(f"cannot lay out a value of type {type(value).__name__}")


def trace_value(value: Any, callback: TraceCallback) -> None:
    """Call ``callback`` on every GC pointer reachable inside ``value``."""
    if isinstance(value, RawGcPointer):
        callback(value)
    elif isinstance(value, GcPointer):
        callback(value.as_raw())
    elif isinstance(value, HeapObject):
        value.trace(callback)
    elif isinstance(value, (list, tuple)):
        for item in value:
            trace_value(item, callback)
    elif value is None or isinstance(
        value, (bool, int, float, str, bytes, bytearray, enum.Enum)
    ):
        return
    else:
        raise TypeError(f"cannot trace a value of type {type(value).__name__}")