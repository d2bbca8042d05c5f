from nixgc.bench import (
    Ref,
    Referencing,
    ReferencingTup,
    Simple,
    main,
    perform_work,
    ref_many,
)
from nixgc.handle import with_gc
from nixgc.pointer import GcPointer, RawGcPointer

import pytest


def test_main_workload():
    report = with_gc(perform_work)
    assert report["string"] == "a test string"
    assert report["simple_head"] == 0xF0_F1_F2_F3_F4_F5_F6_F7
    assert report["simple_tail"] == 0xF0_F1_F2_F3_F4_F5_F6_F7
    assert report["same_object"] is True
    assert report["other"] == "a test string"
    assert report["no_pointer"] == 42
    assert report["raw_matches"] is True


def test_referencing_many():
    results = with_gc(lambda gc: [ref_many(gc) for _ in range(100)])
    assert results == ["new"] * 100


def test_simple_layout_is_256_words():
    simple = Simple()
    assert simple.allocation_size() == 2048
    assert simple.allocation_alignment() == 8


def test_simple_rejects_wrong_length():
    with pytest.raises(ValueError):
        Simple([1, 2, 3])


def test_referencing_traces_both_pointers():
    raw = RawGcPointer(5)
    typed = GcPointer(RawGcPointer(8))
    seen = []
    Referencing(raw=raw, other=typed, no_pointer=3).trace(seen.append)
    assert [pointer.content for pointer in seen] == [5, 8]


def test_ref_traces_inner_pointer():
    inner = GcPointer(RawGcPointer(16))
    seen = []
    Ref(inner=inner).trace(seen.append)
    assert seen == [inner.as_raw()]


def test_referencing_chain_survives_collection():
    def work(gc):
        text = gc.alloc_string("chained")
        simple = gc.alloc(Simple([7] * 256))
        refer = gc.alloc(
            Referencing(raw=simple.as_raw().root(), other=text.root(), no_pointer=9)
        )
        tup = gc.alloc(ReferencingTup(number=3, target=refer.root()))
        gc.force_collect()
        gc.force_collect()
        loaded_tup = gc.load(tup)
        loaded_ref = gc.load(loaded_tup.target)
        return (
            loaded_tup.number,
            loaded_ref.no_pointer,
            str(gc.load(loaded_ref.other)),
            gc.load_raw(loaded_ref.raw).f[0],
        )

    assert with_gc(work) == (3, 9, "chained", 7)


def test_main_runs_and_reports(capsys):
    assert main(["--iterations", "3"]) == 0
    out = capsys.readouterr().out
    assert "string: a test string" in out
    assert "replacements: 3, mismatches: 0" in out


def test_main_rejects_negative_iterations():
    with pytest.raises(SystemExit):
        main(["--iterations", "-1"])