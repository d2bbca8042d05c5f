"""The allocation handle: nursery allocation, collection and promotion."""

from __future__ import annotations

import copy
import dataclasses
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Optional, Sequence, TypeVar

from .heap import (
    GC_GEN_HIGHEST,
    GC_NUM_GENERATIONS,
    AccessOutOfRangeError,
    Generation,
    GenerationAnalyzer,
    GenerationCounter,
    ObjectBiggerThanPageError,
    PageTracker,
    get_global_tracker,
)
from .page import Page, promote_object, scavenge_heap_pointer
from .pointer import GcPointer, HeapRef, RawGcPointer, inspect_roots
from .trace import HeapObject
from .types import Array, SimpleGcString

logger = logging.getLogger(__name__)

R = TypeVar("R")

_NURSERY = Generation(0)


class AllocationPages:
    """The active allocation page and the pages in use for every generation."""

    def __init__(self, tracker: PageTracker) -> None:
        self.tracker = tracker
        self.generations: GenerationAnalyzer = tracker.analyzer
        self.active_pages: list[Page] = [
            Page(tracker.get_page(Generation(gen)), tracker)
            for gen in range(GC_NUM_GENERATIONS)
        ]
        self.alloc_counters = [GenerationCounter() for _ in range(GC_NUM_GENERATIONS)]
        self.used_pages_current: list[list[Page]] = [[page] for page in self.active_pages]

    def suggest_collection_target_generation(self) -> Generation:
        """The highest generation that is over its page budget and should be collected."""
        budget = 1
        for gen in range(1, GC_GEN_HIGHEST + 1):
            budget *= 4
            if len(self.used_pages_current[gen]) < budget:
                return Generation(gen - 1)
        return Generation(GC_GEN_HIGHEST)

    def refresh_allocation_page(self, generation: Generation) -> Page:
        """Start a fresh allocation page for ``generation`` and return it."""
        page = Page(self.tracker.get_page(generation), self.tracker)
        self.active_pages[generation.value] = page
        self.used_pages_current[generation.value].append(page)
        return page

    def get_allocation_page(
        self, generation: Generation
    ) -> tuple[Page, GenerationCounter]:
        return (
            self.active_pages[generation.value],
            self.alloc_counters[generation.value],
        )

    def heap_statistics(self) -> list[dict[str, int]]:
        """Per-generation statistics, up to the first generation never allocated in."""
        stats = []
        for gen, counter in enumerate(self.alloc_counters):
            stats.append(
                {
                    "generation": gen,
                    "collection_count": counter.collection_count,
                    "active_pages": len(self.used_pages_current[gen]),
                    "current_live_count": counter.current_live_objects,
                    "current_live_bytes": counter.current_size_bytes,
                    "total_alloc_count": counter.lifetime_allocation_count,
                    "total_alloc_bytes": counter.lifetime_allocation_bytes,
                }
            )
            if counter.lifetime_allocation_count == 0:
                break
        return stats


def _new_pending_set() -> list[Deque[Page]]:
    return [deque() for _ in range(GC_NUM_GENERATIONS)]


@dataclass
class CollectionHandle:
    """The page source used while a collection runs."""

    pages: AllocationPages
    scavenge_pending_set: list[Deque[Page]] = field(default_factory=_new_pending_set)

    @property
    def tracker(self) -> PageTracker:
        return self.pages.tracker

    def get_allocation_page(
        self, generation: Generation
    ) -> tuple[Page, GenerationCounter]:
        return self.pages.get_allocation_page(generation)

    def finish_allocation_page(self, generation: Generation) -> None:
        page = self.pages.refresh_allocation_page(generation)
        self.scavenge_pending_set[generation.value].append(page)

    def get_generation(self, pointer: HeapRef) -> Generation:
        return self.pages.generations.get_generation(pointer)


@dataclass
class PromotionHandle:
    """The page source used while an object is promoted to an older generation."""

    pages: AllocationPages
    scavenge_pending_set: Deque[Page] = field(default_factory=deque)

    @property
    def tracker(self) -> PageTracker:
        return self.pages.tracker

    def get_allocation_page(
        self, generation: Generation
    ) -> tuple[Page, GenerationCounter]:
        return self.pages.get_allocation_page(generation)

    def finish_allocation_page(self, generation: Generation) -> None:
        self.scavenge_pending_set.append(self.pages.refresh_allocation_page(generation))

    def get_generation(self, pointer: HeapRef) -> Generation:
        return self.pages.generations.get_generation(pointer)


def _clone(value: Any) -> Any:
    """Copy ``value``, giving every pointer inside it a root of its own."""
    if isinstance(value, (RawGcPointer, GcPointer)):
        return value.root()
    if isinstance(value, list):
        return [_clone(item) for item in value]
    if isinstance(value, tuple):
        items = [_clone(item) for item in value]
        return type(value)(*items) if hasattr(value, "_fields") else tuple(items)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        changes = {
            f.name: _clone(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if f.init
        }
        return dataclasses.replace(value, **changes)
    if isinstance(value, HeapObject) and hasattr(value, "__dict__"):
        twin = copy.copy(value)
        twin.__dict__.update({k: _clone(v) for k, v in vars(value).items()})
        return twin
    return value


class GcHandle:
    """Allocates on the GC heap and collects it.

    Roots belong to the calling thread; a handle collects every root of it.
    """

    def __init__(self, tracker: Optional[PageTracker] = None) -> None:
        self._pages = AllocationPages(
            tracker if tracker is not None else get_global_tracker()
        )

    @property
    def pages(self) -> AllocationPages:
        return self._pages

    @property
    def tracker(self) -> PageTracker:
        return self._pages.tracker

    def _run_gc(self) -> None:
        logger.debug("gc triggered!")
        pages = self._pages
        target = pages.suggest_collection_target_generation()
        pages.alloc_counters[target.value].collection_count += 1
        logger.debug("collecting gen %d", target.value)

        previous_pages: list[Page] = []
        for gen in range(target.value + 1):
            previous_pages.extend(pages.used_pages_current[gen])
            pages.used_pages_current[gen].clear()
            pages.refresh_allocation_page(Generation(gen))

        handle = CollectionHandle(pages)
        # Nothing is copied into the nursery, but survivors move up one generation.
        highest = target.next_higher().value
        for gen in range(1, highest + 1):
            handle.scavenge_pending_set[gen].append(pages.active_pages[gen])

        num_roots = 0

        def scavenge_root(root: HeapRef) -> HeapRef:
            nonlocal num_roots
            num_roots += 1
            return scavenge_heap_pointer(handle, root, target)

        inspect_roots(scavenge_root)
        logger.debug("traced %d roots", num_roots)

        while True:
            queue = next(
                (q for q in handle.scavenge_pending_set[1 : highest + 1] if q), None
            )
            if queue is None:
                break
            queue.popleft().scavenge_content(handle, target)

        self.tracker.return_pages(previous_pages)
        for counter in pages.alloc_counters[: target.value + 1]:
            counter.mark_cleared()

        logger.debug("gc done.")
        logger.debug("heap statistics: %s", pages.heap_statistics())

    def force_collect(self) -> None:
        """Run a garbage collection now."""
        self._run_gc()

    def _try_nursery(self, obj: HeapObject) -> Optional[HeapRef]:
        page, counter = self._pages.get_allocation_page(_NURSERY)
        return page.try_alloc(obj, counter)

    def _allocate(self, obj: HeapObject) -> GcPointer[Any]:
        if not isinstance(obj, HeapObject):
            raise TypeError(f"cannot place a {type(obj).__name__} on the heap")
        heapref = self._try_nursery(obj)
        if heapref is None:
            self._run_gc()
            heapref = self._try_nursery(obj)
            if heapref is None:
                raise ObjectBiggerThanPageError()
        return GcPointer(heapref.root())

    def alloc(self, data: HeapObject) -> GcPointer[Any]:
        """Move ``data`` onto the heap and return a rooted pointer to it."""
        return self._allocate(data)

    def alloc_slice(self, data: Sequence[Any]) -> GcPointer[Array[Any]]:
        """Allocate an array holding copies of the items of ``data``."""
        return self._allocate(Array(_clone(item) for item in data))

    def alloc_vec(self, data: list[Any]) -> GcPointer[Array[Any]]:
        """Move the items of ``data`` into a new array.

        On success ``data`` is left empty; on error it is left unchanged.
        """
        pointer = self._allocate(Array(data))
        data.clear()
        return pointer

    def _resolve(self, heapref: HeapRef) -> HeapObject:
        return self.tracker.resolve(heapref).load(self.tracker)

    def load_raw(self, pointer: RawGcPointer) -> HeapObject:
        """Return the object an untyped pointer refers to."""
        return self._resolve(pointer.heap_ref())

    def load(self, pointer: GcPointer[Any]) -> Any:
        """Return the object ``pointer`` refers to."""
        return self._resolve(pointer.as_raw().heap_ref())

    def replace(
        self, pointer: GcPointer[Any], new_value: GcPointer[Any]
    ) -> GcPointer[Any]:
        """Make ``pointer`` refer to ``new_value`` and return a pointer to it.

        A replacement younger than the replaced object is promoted first, so
        the object never outlives what it now refers to.
        """
        target_ref = pointer.as_raw().heap_ref()
        replacement_ref = new_value.as_raw().heap_ref()
        generations = self._pages.generations
        target_generation = generations.get_generation(target_ref)
        replacement_generation = generations.get_generation(replacement_ref)
        entry = self.tracker.resolve(target_ref)

        if replacement_generation >= target_generation:
            entry.forward_to(replacement_ref)
            return new_value

        handle = PromotionHandle(self._pages)
        promoted = promote_object(handle, replacement_ref, target_generation)
        entry.forward_to(promoted)
        return GcPointer(promoted.root())

    def reference_equals(
        self, pointer_a: GcPointer[Any], pointer_b: GcPointer[Any]
    ) -> bool:
        """Whether both pointers refer to the same object."""
        return self.load(pointer_a) is self.load(pointer_b)

    def alloc_string(self, text: str) -> GcPointer[SimpleGcString]:
        return self._allocate(SimpleGcString(text))

    def alloc_string_from_parts(self, pieces: Sequence[str]) -> GcPointer[SimpleGcString]:
        """Allocate the concatenation of ``pieces``."""
        return self._allocate(SimpleGcString("".join(pieces)))

    def alloc_substring(
        self, string: GcPointer[SimpleGcString], start: int, end: int
    ) -> GcPointer[SimpleGcString]:
        """Allocate the bytes ``start:end`` of a heap string.

        The whole string is not copied; a new pointer to it is returned.
        """
        source: SimpleGcString = self.load(string)
        length = len(source)
        if end > length or start < 0 or start > end:
            raise AccessOutOfRangeError(f"range {start}..{end} of length {length}")
        if start == 0 and end == length:
            return string.root()
        piece = source.data[start:end]
        try:
            piece.decode()
        except UnicodeDecodeError:
            raise AccessOutOfRangeError(
                f"range {start}..{end} splits a character"
            ) from None
        return self._allocate(SimpleGcString(piece))

    def alloc_string_concat(
        self, pieces: Sequence[GcPointer[SimpleGcString]]
    ) -> GcPointer[SimpleGcString]:
        """Allocate the concatenation of heap strings."""
        data = b"".join(self.load(piece).data for piece in pieces)
        return self._allocate(SimpleGcString(data))


def with_gc(action: Callable[[GcHandle], R]) -> R:
    """Run ``action`` with a fresh handle on the global heap and return its result."""
    return action(GcHandle())