"""Compressed heap references, the per-thread root set and GC pointers."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, Optional, TypeVar, Union

from .slab import PointerSlab

U32_MAX = 0xFFFF_FFFF
ROOT_REF_BIT = 1 << 31
HEAP_ENTRY_ALIGN = 8
HEAP_ENTRY_SHIFT = HEAP_ENTRY_ALIGN.bit_length() - 1

T = TypeVar("T")


@dataclass(frozen=True)
class HeapRef:
    """A heap address compressed into 32 bits: the heap offset shifted right
    by the alignment of a heap entry header."""

    content: int

    def __post_init__(self) -> None:
        if not 0 <= self.content <= U32_MAX:
            raise ValueError(f"heap reference out of range: {self.content:#x}")

    @classmethod
    def from_addr(cls, addr: int) -> "HeapRef":
        """Build a reference from a heap address, keeping its lower 32 bits."""
        return cls((addr & U32_MAX) >> HEAP_ENTRY_SHIFT)

    def to_bits(self) -> int:
        return self.content

    def to_heap_offset(self) -> int:
        return self.content << HEAP_ENTRY_SHIFT

    def root(self) -> "RawGcPointer":
        """Register this reference in the current thread's root set."""
        return get_root_set().root(self)

    def __repr__(self) -> str:
        return f"HeapRef({self.content:#x})"


class RootSet:
    """The references held from outside the heap; the GC treats them as live."""

    def __init__(self) -> None:
        self._slab: PointerSlab[HeapRef] = PointerSlab()

    def root(self, heapref: HeapRef) -> "RawGcPointer":
        """Store ``heapref`` and return a rooted pointer to it."""
        key = self._slab.insert(heapref)
        if key >= ROOT_REF_BIT:
            raise OverflowError("root set is full")
        return RawGcPointer(key | ROOT_REF_BIT, self)

    def unroot(self, pointer: "RawGcPointer") -> None:
        """Turn a rooted pointer into a plain heap pointer, freeing its root."""
        if not pointer.is_root():
            return
        loaded = self._slab.remove(pointer.content & (ROOT_REF_BIT - 1))
        pointer.content = loaded.to_bits()
        pointer._roots = None

    def read(self, key: int) -> HeapRef:
        return self._slab.get(key)

    def replace(self, key: int, heapref: HeapRef) -> None:
        self._slab[key] = heapref

    def __iter__(self) -> Iterator[tuple[int, HeapRef]]:
        return iter(self._slab)


_thread_state = threading.local()


def get_root_set() -> RootSet:
    """Return the root set belonging to the calling thread."""
    roots = getattr(_thread_state, "roots", None)
    if roots is None:
        roots = RootSet()
        _thread_state.roots = roots
    return roots


def inspect_roots(func: Callable[[HeapRef], Optional[HeapRef]]) -> None:
    """Call ``func`` on every root of this thread.

    A returned reference replaces the root; ``None`` leaves it as it was.
    """
    roots = get_root_set()
    for key, heapref in list(roots):
        replacement = func(heapref)
        if replacement is not None:
            roots.replace(key, replacement)


class RawGcPointer:
    """An untyped 32-bit GC pointer.

    With bit 31 set the lower bits are a key into a root set; otherwise they
    are a :class:`HeapRef` stored directly, as pointers inside heap objects are.
    Dropping a rooted pointer frees its root.
    """

    __slots__ = ("content", "_roots", "__weakref__")

    def __init__(self, content: int, roots: Optional[RootSet] = None) -> None:
        if not 0 <= content <= U32_MAX:
            raise ValueError(f"pointer out of range: {content:#x}")
        self.content = content
        self._roots = roots

    def _root_set(self) -> RootSet:
        if self._roots is None:
            self._roots = get_root_set()
        return self._roots

    def is_root(self) -> bool:
        return bool(self.content & ROOT_REF_BIT)

    def decode(self) -> Union[HeapRef, int]:
        """Return the heap reference, or the root-set key for a rooted pointer."""
        if self.is_root():
            return self.content & (ROOT_REF_BIT - 1)
        return HeapRef(self.content)

    def heap_ref(self) -> HeapRef:
        """Return the heap reference this pointer designates."""
        decoded = self.decode()
        if isinstance(decoded, HeapRef):
            return decoded
        return self._root_set().read(decoded)

    def root(self) -> "RawGcPointer":
        """Return a new rooted pointer to the same object."""
        return get_root_set().root(self.heap_ref())

    def unroot(self) -> None:
        """Rewrite this pointer in place as a plain heap pointer."""
        if self.is_root():
            self._root_set().unroot(self)

    def release(self) -> None:
        """Give up the root this pointer holds, if any."""
        self.unroot()

    def __copy__(self) -> "RawGcPointer":
        return self.root()

    def __enter__(self) -> "RawGcPointer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __del__(self) -> None:
        try:
            self.release()
        except Exception:
            pass

    def __repr__(self) -> str:
        decoded = self.decode()
        if isinstance(decoded, HeapRef):
            return f"RawGcPointer(raw_value={decoded!r})"
        return f"RawGcPointer(root_reference={decoded})"


class GcPointer(Generic[T]):
    """A GC pointer to an object of type ``T``."""

    def __init__(self, raw: RawGcPointer) -> None:
        self._raw = raw

    def as_raw(self) -> RawGcPointer:
        return self._raw

    def root(self) -> "GcPointer[T]":
        """Return a new rooted pointer to the same object."""
        return GcPointer(self._raw.root())

    def release(self) -> None:
        self._raw.release()

    def __copy__(self) -> "GcPointer[T]":
        return self.root()

    def __enter__(self) -> "GcPointer[T]":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"GcPointer({self._raw!r})"