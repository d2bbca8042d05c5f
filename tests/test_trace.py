from dataclasses import dataclass
from typing import Optional

import pytest

from nixgc.pointer import GcPointer, HeapRef, RawGcPointer, get_root_set
from nixgc.trace import HeapObject, Traced, trace_value


@dataclass
class Pair(Traced):
    first: RawGcPointer
    count: int
    second: GcPointer


@dataclass
class Words(Traced):
    a: int
    b: int
    c: int


@dataclass
class Word(Traced):
    a: int


@dataclass
class Mixed(Traced):
    flag: bool
    number: int
    pointer: RawGcPointer


@dataclass
class OnlyPointer(Traced):
    pointer: RawGcPointer


@dataclass
class Unit(Traced):
    pass


@dataclass
class Maybe(Traced):
    value: Optional[RawGcPointer]


class Custom(HeapObject):
    def __init__(self, pointers):
        self.pointers = pointers

    def trace(self, callback):
        for pointer in self.pointers:
            callback(pointer)

    def allocation_size(self):
        return 4 * len(self.pointers)

    def allocation_alignment(self):
        return 4


def _heap_pointer(addr):
    return RawGcPointer(HeapRef.from_addr(addr).to_bits())


def test_trace_visits_pointer_fields_in_order():
    first = _heap_pointer(8)
    second = GcPointer(_heap_pointer(16))
    seen = []
    Pair(first, 3, second).trace(seen.append)
    assert seen == [first, second.as_raw()]


def test_trace_walks_sequences_and_nested_objects():
    pointers = [_heap_pointer(a) for a in (8, 16, 24)]
    nested = Custom(pointers[1:])
    seen = []
    trace_value((pointers[0], [nested, 5, "text"]), seen.append)
    assert seen == pointers


def test_optional_none_is_not_traced():
    seen = []
    Maybe(None).trace(seen.append)
    assert seen == []
    pointer = _heap_pointer(8)
    Maybe(pointer).trace(seen.append)
    assert seen == [pointer]


def test_callback_can_rewrite_pointers_in_place():
    roots = get_root_set()
    before = len(list(roots))
    ref = HeapRef.from_addr(4096)
    obj = OnlyPointer(ref.root())
    assert len(list(roots)) == before + 1
    obj.trace(lambda pointer: pointer.unroot())
    assert len(list(roots)) == before
    assert not obj.pointer.is_root()
    assert obj.pointer.heap_ref() == ref


def test_pointer_field_takes_one_word():
    only = OnlyPointer(_heap_pointer(8))
    assert only.allocation_size() == 4
    assert only.allocation_alignment() == 4


def test_unit_object_is_zero_sized():
    unit = Unit()
    assert Traced.allocation_size(unit) == 0
    seen = []
    trace_value(unit, seen.append)
    assert seen == []


def test_word_fields_scale_linearly_and_align():
    three = Traced.allocation_size(Words(1, 2, 3))
    one = Traced.allocation_size(Word(1))
    assert three == 3 * one
    assert Traced.allocation_alignment(Words(1, 2, 3)) == 8


def test_layout_is_padded_to_alignment():
    mixed = Mixed(True, 1, _heap_pointer(8))
    size = mixed.allocation_size()
    alignment = mixed.allocation_alignment()
    assert size % alignment == 0
    assert alignment == Word(1).allocation_alignment()
    assert size > Word(1).allocation_size() + OnlyPointer(_heap_pointer(8)).allocation_size()


def test_array_field_layout_matches_repeated_fields():
    @dataclass
    class Arr(Traced):
        values: tuple

    assert Traced.allocation_size(Arr((1, 2, 3))) == Traced.allocation_size(
        Words(1, 2, 3)
    )


def test_untraceable_value_raises():
    with pytest.raises(TypeError):
        trace_value(object(), lambda pointer: None)

    @dataclass
    class Bad(Traced):
        thing: object

    with pytest.raises(TypeError):
        Bad(object()).allocation_size()


def test_heap_object_is_abstract():
    with pytest.raises(TypeError):
        HeapObject()


def test_plain_attribute_object_is_traced():
    class Plain(Traced):
        def __init__(self, pointer):
            self.number = 7
            self.pointer = pointer

    pointer = _heap_pointer(32)
    seen = []
    Plain(pointer).trace(seen.append)
    assert seen == [pointer]
    assert Plain(pointer).allocation_size() % Plain(pointer).allocation_alignment() == 0