from dataclasses import dataclass

import pytest

from nixgc.handle import AllocationPages, GcHandle, PromotionHandle, with_gc
from nixgc.heap import (
    GC_PAGE_SIZE,
    HEAP_BASE,
    AccessOutOfRangeError,
    Generation,
    ObjectBiggerThanPageError,
    OutOfPagesError,
    PageTracker,
)
from nixgc.pointer import GcPointer, RawGcPointer
from nixgc.trace import Traced


@dataclass
class Simple(Traced):
    f: list


@dataclass
class Referencing(Traced):
    raw: RawGcPointer
    other: GcPointer
    no_pointer: int


@dataclass
class Ref(Traced):
    inner: GcPointer


@pytest.fixture
def gc():
    return GcHandle()


def test_perform_work():
    def work(gc):
        value = gc.alloc(Simple([0xF0F1F2F3F4F5F6F7] * 256))
        cloned = value.root()
        gc.force_collect()

        text = gc.alloc_string("a test string")
        assert str(gc.load(text)) == "a test string"

        for _ in range(100):
            gc.alloc(Simple([1] * 256))
        gc.force_collect()

        refer = gc.alloc(Referencing(value.as_raw().root(), text.root(), 42))
        gc.force_collect()

        loaded = gc.load(refer)
        return (
            gc.load(value).f,
            gc.load(cloned).f,
            str(gc.load(text)),
            str(gc.load(loaded.other)),
            gc.load_raw(loaded.raw).f,
            loaded.no_pointer,
        )

    value_f, cloned_f, text, other, raw_f, no_pointer = with_gc(work)
    assert value_f == [0xF0F1F2F3F4F5F6F7] * 256
    assert cloned_f == value_f
    assert text == "a test string"
    assert other == "a test string"
    assert raw_f == value_f
    assert no_pointer == 42


def _ref_many(gc):
    stru = gc.alloc(Ref(gc.alloc_string("foobar")))
    gc.force_collect()

    new = gc.alloc(Ref(gc.alloc_string("new")))
    new = gc.replace(stru, new)
    gc.force_collect()

    return str(gc.load(gc.load(new).inner)), str(gc.load(gc.load(stru).inner))


def test_referencing_many():
    results = with_gc(lambda gc: [_ref_many(gc) for _ in range(100)])
    assert results == [("new", "new")] * 100


def test_with_gc_returns_result():
    assert with_gc(lambda gc: str(gc.load(gc.alloc_string("foo")))) == "foo"


def test_string_from_parts(gc):
    pointer = gc.alloc_string_from_parts(["foo", "", "bar"])
    assert str(gc.load(pointer)) == "foobar"


def test_string_concat(gc):
    pieces = [gc.alloc_string("foo"), gc.alloc_string("bar"), gc.alloc_string("baz")]
    pointer = gc.alloc_string_concat(pieces)
    assert str(gc.load(pointer)) == "foobarbaz"


def test_substring(gc):
    string = gc.alloc_string("nixos")
    assert str(gc.load(gc.alloc_substring(string, 0, 3))) == "nix"
    assert str(gc.load(gc.alloc_substring(string, 3, 5))) == "os"


def test_full_substring_reuses_string(gc):
    string = gc.alloc_string("nixos")
    whole = gc.alloc_substring(string, 0, 5)
    assert gc.reference_equals(whole, string)


def test_substring_out_of_range(gc):
    string = gc.alloc_string("nixos")
    with pytest.raises(AccessOutOfRangeError):
        gc.alloc_substring(string, 0, 6)
    with pytest.raises(AccessOutOfRangeError):
        gc.alloc_substring(string, 4, 2)


def test_distinct_allocations_are_not_reference_equal(gc):
    a = gc.alloc_string("same")
    b = gc.alloc_string("same")
    assert not gc.reference_equals(a, b)
    assert gc.reference_equals(a, a.root())


def test_object_bigger_than_page(gc):
    with pytest.raises(ObjectBiggerThanPageError):
        gc.alloc(Simple([0] * (GC_PAGE_SIZE // 8)))
    with pytest.raises(ObjectBiggerThanPageError):
        gc.alloc_string("x" * GC_PAGE_SIZE)


def test_alloc_rejects_plain_values(gc):
    with pytest.raises(TypeError):
        gc.alloc([1, 2, 3])


def test_values_survive_collection(gc):
    pointer = gc.alloc(Simple([5] * 4))
    before = pointer.as_raw().heap_ref()
    gc.force_collect()
    assert gc.load(pointer).f == [5] * 4
    assert pointer.as_raw().heap_ref() != before
    assert gc.pages.generations.get_generation(pointer.as_raw().heap_ref()) == Generation(1)


def test_alloc_slice_clones_items(gc):
    items = [gc.alloc_string("a"), gc.alloc_string("b")]
    array = gc.alloc_slice(items)
    gc.force_collect()
    assert [str(gc.load(p)) for p in gc.load(array)] == ["a", "b"]
    assert items[0].as_raw().is_root()
    assert [str(gc.load(p)) for p in items] == ["a", "b"]


def test_alloc_vec_moves_items(gc):
    entries = [gc.alloc_string("x"), gc.alloc_string("y")]
    array = gc.alloc_vec(entries)
    assert entries == []
    gc.force_collect()
    assert [str(gc.load(p)) for p in gc.load(array)] == ["x", "y"]


def test_replace_in_same_generation_forwards(gc):
    old = gc.alloc(Ref(gc.alloc_string("old")))
    new = gc.alloc(Ref(gc.alloc_string("new")))
    result = gc.replace(old, new)
    assert result is new
    assert str(gc.load(gc.load(old).inner)) == "new"
    gc.force_collect()
    assert gc.reference_equals(old, new)


def test_replace_promotes_younger_value(gc):
    old = gc.alloc(Ref(gc.alloc_string("old")))
    gc.force_collect()
    young = gc.alloc(Ref(gc.alloc_string("young")))
    promoted = gc.replace(old, young)
    generations = gc.pages.generations
    assert generations.get_generation(promoted.as_raw().heap_ref()) == Generation(1)
    inner = gc.load(promoted).inner
    assert generations.get_generation(inner.as_raw().heap_ref()) == Generation(1)
    assert str(gc.load(gc.load(old).inner)) == "young"


def test_heap_statistics(gc):
    gc.alloc_string("foo")
    stats = gc.pages.heap_statistics()
    assert len(stats) == 2
    assert stats[0]["total_alloc_count"] == 1
    assert stats[0]["current_live_count"] == 1
    gc.force_collect()
    stats = gc.pages.heap_statistics()
    assert stats[0]["collection_count"] == 1
    assert stats[0]["current_live_count"] == 0


def test_suggested_target_generation():
    pages = AllocationPages(PageTracker(HEAP_BASE, 16 * GC_PAGE_SIZE))
    assert pages.suggest_collection_target_generation() == Generation(0)
    for _ in range(3):
        pages.refresh_allocation_page(Generation(1))
    assert pages.suggest_collection_target_generation() == Generation(1)


def test_refresh_replaces_active_page():
    pages = AllocationPages(PageTracker(HEAP_BASE, 16 * GC_PAGE_SIZE))
    page = pages.refresh_allocation_page(Generation(2))
    active, counter = pages.get_allocation_page(Generation(2))
    assert active is page
    assert counter is pages.alloc_counters[2]
    assert pages.used_pages_current[2][-1] is page


def test_refresh_on_exhausted_heap():
    pages = AllocationPages(PageTracker(HEAP_BASE, 8 * GC_PAGE_SIZE))
    with pytest.raises(OutOfPagesError):
        pages.refresh_allocation_page(Generation(0))


def test_promotion_handle_queues_new_pages():
    pages = AllocationPages(PageTracker(HEAP_BASE, 16 * GC_PAGE_SIZE))
    handle = PromotionHandle(pages)
    handle.finish_allocation_page(Generation(3))
    assert list(handle.scavenge_pending_set) == [pages.active_pages[3]]
    assert handle.get_allocation_page(Generation(3))[0] is pages.active_pages[3]