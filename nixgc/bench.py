"""A small workload that exercises allocation, collection and replacement."""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from .handle import GcHandle, with_gc
from .pointer import GcPointer, RawGcPointer
from .trace import Traced

logger = logging.getLogger(__name__)

_PATTERN = 0xF0_F1_F2_F3_F4_F5_F6_F7
_SIMPLE_LEN = 256
_FILLER_COUNT = 100


def _zeroes() -> list[int]:
    return [0] * _SIMPLE_LEN


@dataclass(eq=False)
class Simple(Traced):
    """A pointer-free object of 256 machine words."""

    f: list[int] = field(default_factory=_zeroes)

    def __post_init__(self) -> None:
        if len(self.f) != _SIMPLE_LEN:
            raise ValueError(f"Simple holds exactly {_SIMPLE_LEN} words")


@dataclass(eq=False)
class Referencing(Traced):
    """An object holding an untyped and a typed pointer next to plain data."""

    raw: RawGcPointer
    other: GcPointer[Any]
    no_pointer: int = 0


@dataclass(eq=False)
class ReferencingTup(Traced):
    """A number paired with a pointer to a :class:`Referencing`."""

    number: int
    target: GcPointer[Referencing]


@dataclass(eq=False)
class Ref(Traced):
    """An object holding a single pointer to a heap string."""

    inner: GcPointer[Any]


def perform_work(gc: GcHandle) -> dict[str, Any]:
    """Allocate, collect and reload a few objects; report what was read back."""
    logger.debug("initialized")
    value = gc.alloc(Simple([_PATTERN] * _SIMPLE_LEN))
    cloned = value.root()

    gc.force_collect()

    text = gc.alloc_string("a test string")
    logger.debug("str: %r, %s", text.as_raw(), gc.load(text))
    logger.debug("%r, %r", value.as_raw(), cloned.as_raw())

    for _ in range(_FILLER_COUNT):
        gc.alloc(Simple([1] * _SIMPLE_LEN))

    gc.force_collect()

    refer = gc.alloc(
        Referencing(raw=value.as_raw().root(), other=text.root(), no_pointer=42)
    )
    logger.debug("refer: %r", refer.as_raw())

    gc.force_collect()

    simple = gc.load(value)
    referencing = gc.load(refer)
    other = referencing.other
    return {
        "string": str(gc.load(text)),
        "simple_head": simple.f[0],
        "simple_tail": simple.f[-1],
        "same_object": gc.reference_equals(value, cloned),
        "other": str(gc.load(other)),
        "no_pointer": referencing.no_pointer,
        "raw_matches": gc.load_raw(referencing.raw) is simple,
    }


def ref_many(gc: GcHandle) -> str:
    """Replace an old object by a younger one and read it back after a collection."""
    text = gc.alloc_string("foobar")
    stru = gc.alloc(Ref(inner=text))

    gc.force_collect()

    other = gc.alloc_string("new")
    new = gc.alloc(Ref(inner=other))
    new = gc.replace(stru, new)
    gc.force_collect()

    return str(gc.load(gc.load(new).inner))


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="nixgc-bench", description="Exercise the garbage collected heap."
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=100,
        help="how often to run the replacement workload",
    )
    args = parser.parse_args(argv)
    if args.iterations < 0:
        parser.error("--iterations must not be negative")

    report = with_gc(perform_work)
    for key, value in report.items():
        print(f"{key}: {value}")

    results = with_gc(lambda gc: [ref_many(gc) for _ in range(args.iterations)])
    mismatches = sum(1 for result in results if result != "new")
    print(f"replacements: {len(results)}, mismatches: {mismatches}")
    return 0 if mismatches == 0 else 1