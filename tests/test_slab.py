import pytest

from nixgc.slab import PointerSlab


def test_insert_and_get_round_trip():
    slab = PointerSlab()
    keys = [slab.insert(value) for value in ("a", "b", "c")]
    assert len(set(keys)) == 3
    assert [slab.get(key) for key in keys] == ["a", "b", "c"]


def test_remove_returns_previous_value():
    slab = PointerSlab()
    key = slab.insert("value")
    assert slab.remove(key) == "value"
    with pytest.raises(KeyError):
        slab.get(key)


def test_freed_slot_is_reused_last_freed_first():
    slab = PointerSlab()
    first, _, third = (slab.insert(v) for v in ("a", "b", "c"))
    slab.remove(first)
    slab.remove(third)
    assert slab.insert("d") == third
    assert slab.insert("e") == first
    assert slab.get(third) == "d"
    assert slab.get(first) == "e"


def test_iteration_skips_free_slots():
    slab = PointerSlab()
    keys = [slab.insert(v) for v in ("a", "b", "c")]
    slab.remove(keys[1])
    assert list(slab) == [(keys[0], "a"), (keys[2], "c")]


def test_len_counts_live_entries():
    slab = PointerSlab()
    keys = [slab.insert(v) for v in ("a", "b", "c")]
    slab.remove(keys[0])
    assert len(slab) == len(keys) - 1


def test_setitem_replaces_value_in_place():
    slab = PointerSlab()
    key = slab.insert("old")
    slab[key] = "new"
    assert slab.get(key) == "new"
    assert len(slab) == 1


def test_remove_twice_raises():
    slab = PointerSlab()
    key = slab.insert("x")
    slab.remove(key)
    with pytest.raises(KeyError):
        slab.remove(key)


def test_unknown_key_raises():
    slab = PointerSlab()
    with pytest.raises(KeyError):
        slab.get(5)


def test_none_is_rejected():
    slab = PointerSlab()
    with pytest.raises(ValueError):
        slab.insert(None)