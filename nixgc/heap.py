"""The paged GC heap: generations, allocation counters and the page tracker."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .pointer import HeapRef

logger = logging.getLogger(__name__)

GC_PAGE_SIZE = 4096 * 128
GC_GEN_HIGHEST = 7
GC_NUM_GENERATIONS = GC_GEN_HIGHEST + 1

# The heap is one 4 GiB region aligned to its own size, so the lower 32 bits
# of an address are its offset into the heap.
HEAP_SIZE = 1 << 32
HEAP_BASE = 1 << 32

_UNASSIGNED_GENERATION = 0xFF


class GcError(Exception):
    """Base class of the errors raised by the garbage collector."""


class OutOfPagesError(GcError):
    def __init__(self) -> None:
        super().__init__("Ran out of free pages when allocating")


class ObjectBiggerThanPageError(GcError):
    def __init__(self) -> None:
        super().__init__("The requested object is too big")


class AccessOutOfRangeError(GcError):
    def __init__(self, detail: Optional[str] = None) -> None:
        message = "tried to access an object out of the valid range"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


@dataclass(frozen=True, order=True)
class Generation:
    """The age class of a heap page; higher generations are collected less often."""

    value: int

    def __post_init__(self) -> None:
        if not 0 <= self.value <= 0xFF:
            raise ValueError(f"generation out of range: {self.value}")

    def next_higher(self) -> "Generation":
        """The generation survivors of this one are promoted to."""
        return Generation(min((self.value + 1) & 0xFF, GC_GEN_HIGHEST))


@dataclass
class GenerationCounter:
    """Allocation statistics of one generation."""

    current_live_objects: int = 0
    current_size_bytes: int = 0
    lifetime_allocation_count: int = 0
    lifetime_allocation_bytes: int = 0
    collection_count: int = 0

    def record_allocation(self, size: int) -> None:
        self.current_size_bytes += size
        self.current_live_objects += 1
        self.lifetime_allocation_count += 1
        self.lifetime_allocation_bytes += size

    def mark_cleared(self) -> None:
        self.current_live_objects = 0
        self.current_size_bytes = 0


class GenerationAnalyzer:
    """Maps every heap page to the generation it currently belongs to."""

    def __init__(self, base: int, num_pages: int) -> None:
        self._base = base
        self._generations = [Generation(_UNASSIGNED_GENERATION)] * num_pages

    def get_generation(self, pointer: HeapRef) -> Generation:
        """The generation of the page ``pointer`` lies on."""
        page = pointer.to_heap_offset() // GC_PAGE_SIZE
        try:
            return self._generations[page]
        except IndexError:
            raise AccessOutOfRangeError(repr(pointer)) from None

    def set_generation(self, page_base: int, generation: Generation) -> None:
        """Record that the page starting at ``page_base`` holds ``generation``."""
        page = (page_base - self._base) // GC_PAGE_SIZE
        if not 0 <= page < len(self._generations):
            raise AccessOutOfRangeError(f"page at {page_base:#x}")
        self._generations[page] = generation


@dataclass(frozen=True)
class ZeroedPage:
    """A page of heap memory that holds no entries."""

    base: int


@dataclass
class PageTracker:
    """Hands out heap pages and holds the entries stored on them."""

    base: int
    size: int
    analyzer: GenerationAnalyzer = field(init=False)
    _next_free_base: int = field(init=False, repr=False)
    _free_pages: list[ZeroedPage] = field(init=False, default_factory=list, repr=False)
    _memory: dict[int, dict[int, Any]] = field(init=False, default_factory=dict, repr=False)
    _lock: threading.RLock = field(init=False, default_factory=threading.RLock, repr=False)

    def __post_init__(self) -> None:
        self.analyzer = GenerationAnalyzer(self.base, self.size // GC_PAGE_SIZE)
        self._next_free_base = self.base

    def get_page(self, generation: Generation) -> ZeroedPage:
        """Take a free page, or grow the heap, and assign it to ``generation``.

        Raises :class:`OutOfPagesError` when the heap is exhausted.
        """
        with self._lock:
            page = self._free_pages.pop() if self._free_pages else self._grow_heap()
            self.analyzer.set_generation(page.base, generation)
            return page

    def _grow_heap(self) -> ZeroedPage:
        page_base = self._next_free_base
        next_free = page_base + GC_PAGE_SIZE
        if next_free - self.base > self.size:
            raise OutOfPagesError()
        self._next_free_base = next_free
        self._zero(page_base)
        return ZeroedPage(page_base)

    def _zero(self, page_base: int) -> None:
        self._memory.pop(self._page_index(page_base), None)

    def _page_index(self, addr: int) -> int:
        return (addr - self.base) // GC_PAGE_SIZE

    def return_pages(self, pages: Iterable[Any]) -> None:
        """Take back pages (anything with a ``base`` address) for reuse, zeroing them."""
        with self._lock:
            for page in pages:
                self._zero(page.base)
                self._free_pages.append(ZeroedPage(page.base))

    def store(self, addr: int, entry: Any) -> None:
        """Place ``entry`` at heap address ``addr``."""
        if not self.base <= addr < self._next_free_base:
            raise AccessOutOfRangeError(f"address {addr:#x}")
        with self._lock:
            self._memory.setdefault(self._page_index(addr), {})[addr] = entry

    def resolve(self, heapref: HeapRef) -> Any:
        """Return the entry ``heapref`` points to."""
        addr = self.base + heapref.to_heap_offset()
        try:
            return self._memory[self._page_index(addr)][addr]
        except KeyError:
            raise AccessOutOfRangeError(repr(heapref)) from None


_global_lock = threading.Lock()
_global_tracker: Optional[PageTracker] = None


def get_global_tracker() -> PageTracker:
    """Return the process-wide page tracker, creating the heap on first use."""
    global _global_tracker
    with _global_lock:
        if _global_tracker is None:
            logger.debug("allocated heap at %#x", HEAP_BASE)
            _global_tracker = PageTracker(HEAP_BASE, HEAP_SIZE)
        return _global_tracker