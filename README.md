# nixgc

A generational, copying garbage collector for interpreter values, and a JSON
reader and writer for the values of an expression language.

The collector places objects on pages grouped into eight generations. New
objects go to the nursery (generation 0). When the nursery page has no room
left, a collection copies every object still reachable from a root into the
next higher generation and hands the old pages back to the page tracker. When
older generations exceed their page budget, a collection reaches them too.

## Installing

```
pip install .
```

With the `test` extra the test suite can be run:

```
pip install ".[test]"
pytest
```

## Using the collector

All work with the heap goes through a `nixgc.handle.GcHandle`. `with_gc`
creates one on the process-wide heap, passes it to a callable and returns
what the callable returns:

```python
from nixgc.handle import with_gc

def work(gc):
    greeting = gc.alloc_string("hello")
    gc.force_collect()
    return str(gc.load(greeting))

print(with_gc(work))  # hello
```

Pointers handed out by the handle are *rooted*: they are entered in the
calling thread's root set (`nixgc.pointer.RootSet`), and the collector updates
them when it moves the objects they refer to. A `GcPointer` stays valid across
collections until `release()` is called on it (it can also be used as a
context manager, which releases it on exit). `root()` gives a second,
independent root for the same object. `load(pointer)` returns the object a
typed pointer refers to and `load_raw(pointer)` does the same for a
`RawGcPointer`.

### Strings

Heap strings are `nixgc.types.SimpleGcString` objects; `str()` gives their
text and `len()` their length in UTF-8 bytes.

- `alloc_string(text)` copies a Python string onto the heap.
- `alloc_string_from_parts(pieces)` joins several Python strings into one.
- `alloc_string_concat(pieces)` joins strings that are already on the heap.
- `alloc_substring(string, start, end)` copies the bytes `start:end` of a heap
  string. A range reaching past the end, a negative start, a start after the
  end or a range that splits a character raises `AccessOutOfRangeError`.
  Asking for the whole string returns a new root to the same object.

### Your own objects

Classes derived from `nixgc.trace.Traced` (typically dataclasses) can be
allocated with `GcHandle.alloc`. Their fields are traced automatically, so any
`GcPointer` or `RawGcPointer` they hold is kept alive and updated by the
collector. Classes with their own layout can derive from
`nixgc.trace.HeapObject` and implement `trace`, `allocation_size` and
`allocation_alignment`.

Sequences go on the heap as a `nixgc.types.Array`: `alloc_slice(data)` copies
the items (giving each pointer a root of its own), `alloc_vec(data)` moves the
items out of the list, leaving it empty on success and unchanged on error.
`nixgc.types.HeterogeneousArray` holds a list of untyped pointers.

`GcHandle.replace(pointer, new_value)` makes every holder of `pointer` see
`new_value` from then on, first promoting the new value (and what it reaches)
to the older generation when it is younger than the replaced object. It
returns a pointer to the value now in place. `reference_equals(a, b)` tells
whether two pointers refer to the same object.

`GcHandle.pages.heap_statistics()` returns per-generation counters
(collections, active pages, live and total allocations). Collections are
logged at debug level through the `logging` module.

### Errors

Failures raise subclasses of `nixgc.heap.GcError`: `OutOfPagesError` when
the heap has no pages left, `ObjectBiggerThanPageError` when an object does
not fit on a fresh page, and `AccessOutOfRangeError` for accesses outside a
valid range.

## JSON

`nixgc.nixjson.parse_json(data)` reads a JSON document from `str` or bytes
into Python values: `None`, `bool`, `int`, `float`, `str`, `list` and `dict`.
Objects come back as dicts with their keys in sorted order. Numbers have no
exponent form, and a number without a fraction stays an `int`. Bad input
raises a subclass of `JsonParseError`: `UnexpectedCharacterError` (its `char`
attribute holds the byte), `UnexpectedEofError`,
`UnexpectedTrailingDataError`, `DuplicateObjectKeysError` or
`InvalidEscapeSequenceError`.

`nixgc.nixjson.to_json(value)` writes a value as compact JSON text. Mappings
are written with sorted keys; a mapping with a callable `__toString` entry is
written as the string that call returns for it. Floats are written in plain
decimal form. Functions raise `FunctionSerializedError`, a structure that
contains itself raises `SelfRecursiveSerializedError`, and paths raise
`ToJsonError`.

## Benchmark

A small workload that allocates, collects and replaces objects comes with the
package:

```
nixgc-bench
nixgc-bench --iterations 10
```

It prints what was read back after several collections, then runs the
replacement workload `--iterations` times (100 by default) and prints how
many replacements did not read back as expected. The exit status is 0 when
there were none.

## What this package does not do

There is no evaluator for the expression language here: the JSON reader and
writer work on plain Python values, not on values stored on the collected
heap. The heap is simulated in Python; addresses are bookkeeping, not real
memory.