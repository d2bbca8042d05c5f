"""Generational copying garbage collector with rooted pointers, heap strings and arrays, and JSON reading and writing."""

__version__ = "0.1.0"

__all__ = ["__version__"]