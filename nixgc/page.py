"""Heap pages: entry headers, bump allocation, scavenging and promotion."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Deque, Optional, Protocol, Union

from .heap import (
    GC_PAGE_SIZE,
    AccessOutOfRangeError,
    Generation,
    GenerationCounter,
    ObjectBiggerThanPageError,
    PageTracker,
    ZeroedPage,
)
from .pointer import HEAP_ENTRY_ALIGN, HeapRef, RawGcPointer
from .trace import HeapObject

if TYPE_CHECKING:
    from .trace import TraceCallback

# The header in front of every allocation is one machine word.
HEAP_ENTRY_SIZE = 8


class PageSource(Protocol):
    """What scavenging needs from the collector driving it."""

    tracker: PageTracker

    def get_allocation_page(
        self, generation: Generation
    ) -> tuple["Page", GenerationCounter]: ...

    def finish_allocation_page(self, generation: Generation) -> None: ...

    def get_generation(self, pointer: HeapRef) -> Generation: ...


class PromotionSource(PageSource, Protocol):
    """A page source that also queues freshly started pages for scavenging."""

    scavenge_pending_set: Deque["Page"]


@dataclass(frozen=True)
class ForwardingPointer:
    """The contents of a heap entry whose object has moved elsewhere.

    ``fully_resolved`` is only set during garbage collection and means that
    ``pointer`` is the final destination of the object.
    """

    pointer: HeapRef
    fully_resolved: bool

    def follow_to_end(self, tracker: PageTracker) -> tuple[HeapRef, bool]:
        """Follow the chain of forwardings to an entry that holds an object.

        Returns that reference and whether it was reached through a
        fully resolved forwarding.
        """
        if self.fully_resolved:
            return self.pointer, True
        current = self
        while True:
            decoded = tracker.resolve(current.pointer).decode()
            if not isinstance(decoded, ForwardingPointer):
                return current.pointer, False
            if decoded.fully_resolved:
                return decoded.pointer, True
            current = decoded


class HeapEntry:
    """The header of a heap allocation: the object itself or a forwarding."""

    __slots__ = ("_object", "_forward")

    def __init__(self, obj: HeapObject) -> None:
        self._object: Optional[HeapObject] = obj
        self._forward: Optional[ForwardingPointer] = None

    def decode(self) -> Union[HeapObject, ForwardingPointer]:
        """Return the stored object, or the forwarding if it has moved."""
        if self._forward is not None:
            return self._forward
        assert self._object is not None
        return self._object

    def forward_to(self, other: HeapRef) -> None:
        """Mark this entry as moved to ``other``."""
        self._object = None
        self._forward = ForwardingPointer(other, False)

    def forward_to_final(self, other: HeapRef) -> None:
        """Mark this entry as moved to its final place during a collection."""
        self._object = None
        self._forward = ForwardingPointer(other, True)

    def load(self, tracker: PageTracker) -> HeapObject:
        """Return the object, following forwardings as far as needed."""
        entry = self
        while entry._forward is not None:
            entry = tracker.resolve(entry._forward.pointer)
        assert entry._object is not None
        return entry._object

    def __repr__(self) -> str:
        if self._forward is not None:
            return f"HeapEntry(forward={self._forward!r})"
        return f"HeapEntry(object={self._object!r})"


class Page:
    """One heap page, filled from its top downwards."""

    def __init__(self, page: ZeroedPage, tracker: PageTracker) -> None:
        if page.base % GC_PAGE_SIZE:
            raise ValueError(f"page base {page.base:#x} is not page aligned")
        self.base = page.base
        self.tracker = tracker
        self._free_top = page.base + GC_PAGE_SIZE
        # Everything from here up to the page end has been scavenged.
        self._scavenge_end = self._free_top
        self._entries: dict[int, HeapEntry] = {}

    @property
    def free_top(self) -> int:
        """The lowest address in use; everything below it is free."""
        return self._free_top

    def try_reserve(
        self,
        requested_space: int,
        requested_alignment: int,
        counter: GenerationCounter,
    ) -> Optional[tuple[int, int]]:
        """Reserve space for an allocation and its header.

        Returns ``(header_address, data_address)``, or ``None`` when the
        allocation does not fit on the page. The alignment must be a power of 2.
        """
        if requested_alignment <= 0 or requested_alignment & (requested_alignment - 1):
            raise ValueError(f"alignment must be a power of 2: {requested_alignment}")
        if requested_space < 0:
            raise ValueError(f"negative allocation size: {requested_space}")
        data_alignment = max(HEAP_ENTRY_ALIGN, requested_alignment)
        data_addr = (self._free_top - requested_space) // data_alignment * data_alignment
        header_addr = data_addr - HEAP_ENTRY_SIZE
        if self.base < header_addr:
            self._free_top = header_addr
            counter.record_allocation(requested_space)
            return header_addr, data_addr
        return None

    def place(self, addr: int, entry: HeapEntry) -> None:
        """Store ``entry`` at a reserved header address of this page."""
        if not self._free_top <= addr < self.base + GC_PAGE_SIZE or addr % HEAP_ENTRY_ALIGN:
            raise AccessOutOfRangeError(f"address {addr:#x} is not reserved on this page")
        self.tracker.store(addr, entry)
        self._entries[addr] = entry

    def try_alloc(self, obj: HeapObject, counter: GenerationCounter) -> Optional[HeapRef]:
        """Move ``obj`` onto this page; ``None`` if it does not fit.

        Pointers held by the object are unrooted, as they now live on the heap.
        """
        reserved = self.try_reserve(
            obj.allocation_size(), obj.allocation_alignment(), counter
        )
        if reserved is None:
            return None
        header_addr, _ = reserved
        obj.trace(lambda pointer: pointer.unroot())
        self.place(header_addr, HeapEntry(obj))
        return HeapRef.from_addr(header_addr)

    def resume_scavenge(self, callback: "TraceCallback") -> None:
        """Trace every object added since the last scavenge of this page.

        Objects allocated on the page while tracing are traced as well.
        """
        end = self._scavenge_end
        start = self._free_top
        while start < end:
            pending = sorted(addr for addr in self._entries if start <= addr < end)
            for addr in pending:
                self._entries[addr].load(self.tracker).trace(callback)
            end = start
            start = self._free_top
        self._scavenge_end = end

    def scavenge_content(self, handle: PageSource, max_generation: Generation) -> None:
        """Scavenge the pointers held by the unscavenged objects of this page."""

        def visit(pointer: RawGcPointer) -> None:
            moved = scavenge_heap_pointer(handle, _on_heap(pointer), max_generation)
            pointer.content = moved.to_bits()

        self.resume_scavenge(visit)

    def __repr__(self) -> str:
        return f"Page(base={self.base:#x}, free_top={self._free_top:#x})"


def _on_heap(pointer: RawGcPointer) -> HeapRef:
    decoded = pointer.decode()
    if not isinstance(decoded, HeapRef):
        raise ValueError(f"rooted pointer found on the heap: {pointer!r}")
    return decoded


def scavenge_heap_pointer(
    handle: PageSource, heap_ptr: HeapRef, max_generation: Generation
) -> HeapRef:
    """Return where ``heap_ptr`` points once the current collection is done.

    Objects in collected generations are copied into the next higher
    generation and their old entries forwarded to the copy.
    """
    tracker = handle.tracker
    generation = handle.get_generation(heap_ptr)
    if generation > max_generation:
        return heap_ptr
    header = tracker.resolve(heap_ptr)
    decoded = header.decode()
    if not isinstance(decoded, ForwardingPointer):
        copy = _copy_to_new_allocation(decoded, handle, generation.next_higher())
        header.forward_to_final(copy)
        return copy
    if decoded.fully_resolved:
        return decoded.pointer

    resolved, fully_resolved = decoded.follow_to_end(tracker)
    if fully_resolved:
        destination = resolved
    else:
        resolved_generation = handle.get_generation(resolved)
        if resolved_generation > max_generation:
            destination = resolved
        else:
            final_header = tracker.resolve(resolved)
            destination = _copy_to_new_allocation(
                final_header.load(tracker), handle, resolved_generation.next_higher()
            )
            final_header.forward_to_final(destination)
    header.forward_to_final(destination)
    return destination


def promote_object(
    handle: PromotionSource, heap_ptr: HeapRef, target_generation: Generation
) -> HeapRef:
    """Move an object and everything it reaches up to ``target_generation``.

    Returns the reference of the promoted object; its old entry is forwarded.
    """
    tracker = handle.tracker
    header = tracker.resolve(heap_ptr)
    promoted = _copy_to_new_allocation(header.load(tracker), handle, target_generation)
    header.forward_to(promoted)

    def visit(pointer: RawGcPointer) -> None:
        heapref = _on_heap(pointer)
        if handle.get_generation(heapref) >= target_generation:
            return
        entry = tracker.resolve(heapref)
        decoded = entry.decode()
        if isinstance(decoded, ForwardingPointer):
            final, _ = decoded.follow_to_end(tracker)
            if handle.get_generation(final) >= target_generation:
                new_value = final
            else:
                final_entry = tracker.resolve(final)
                new_value = _copy_to_new_allocation(
                    final_entry.load(tracker), handle, target_generation
                )
                final_entry.forward_to(new_value)
        else:
            new_value = _copy_to_new_allocation(decoded, handle, target_generation)
            entry.forward_to(new_value)
        pointer.content = new_value.to_bits()

    page, _ = handle.get_allocation_page(target_generation)
    while True:
        page.resume_scavenge(visit)
        if not handle.scavenge_pending_set:
            break
        page = handle.scavenge_pending_set.popleft()
    return promoted


def _copy_to_new_allocation(
    obj: HeapObject, handle: PageSource, target_generation: Generation
) -> HeapRef:
    size = obj.allocation_size()
    alignment = obj.allocation_alignment()
    fresh_page = False
    while True:
        page, counter = handle.get_allocation_page(target_generation)
        reserved = page.try_reserve(size, alignment, counter)
        if reserved is not None:
            header_addr, _ = reserved
            page.place(header_addr, HeapEntry(obj))
            return HeapRef.from_addr(header_addr)
        if fresh_page:
            raise ObjectBiggerThanPageError()
        handle.finish_allocation_page(target_generation)
        fresh_page = True


Visitor = Callable[[RawGcPointer], None]