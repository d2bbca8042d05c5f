"""Reading and writing JSON the way the expression language's builtins do."""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from decimal import Decimal
from pathlib import PurePath
from typing import Any, Union

_WHITESPACE = re.compile(rb"[ \t\r\n]*")
_DIGITS = re.compile(rb"[0-9]*")
_HEX_CODE = re.compile(r"\+?[0-9A-Fa-f]+")

_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\x08",
    "f": "\x0c",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}

_OUTPUT_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\x08": "\\b",
    "\x0c": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}
_NEEDS_ESCAPE = re.compile('[\\\\"\x08\x0c\n\r\t]')


class JsonParseError(ValueError):
    """Raised when JSON input cannot be parsed."""


class UnexpectedTrailingDataError(JsonParseError):
    def __init__(self) -> None:
        super().__init__("Found unexpected trailing data")


class UnexpectedEofError(JsonParseError):
    def __init__(self) -> None:
        super().__init__("Unexpected end of data")


class UnexpectedCharacterError(JsonParseError):
    def __init__(self, char: int) -> None:
        self.char = char
        super().__init__(f"Unexpected character: {char}")


class DuplicateObjectKeysError(JsonParseError):
    def __init__(self) -> None:
        super().__init__("Found duplicate object keys")


class InvalidEscapeSequenceError(JsonParseError):
    def __init__(self) -> None:
        super().__init__("found an invalid escape sequence")


class JsonParser:
    """Parses one JSON document into Python values.

    Objects become dicts whose keys are kept in sorted order, as in an
    attribute set. Numbers have no exponent form; integers stay integers.
    """

    def __init__(self, data: Union[str, bytes, bytearray]) -> None:
        self._data = data.encode() if isinstance(data, str) else bytes(data)
        self._pos = 0

    def parse(self) -> Any:
        """Parse the whole input; trailing non-whitespace is an error."""
        self._pos = 0
        result = self._value()
        self._skip_whitespace()
        if self._pos != len(self._data):
            raise UnexpectedTrailingDataError()
        return result

    def _peek(self) -> int:
        if self._pos >= len(self._data):
            raise UnexpectedEofError()
        return self._data[self._pos]

    def _skip_whitespace(self) -> None:
        match = _WHITESPACE.match(self._data, self._pos)
        assert match is not None
        self._pos = match.end()

    def _expect(self, char: str) -> None:
        found = self._peek()
        if found != ord(char):
            raise UnexpectedCharacterError(found)
        self._pos += 1

    def _value(self) -> Any:
        self._skip_whitespace()
        char = self._peek()
        if char in b"0123456789-":
            return self._number()
        if char == ord("n"):
            self._keyword(b"null")
            return None
        if char == ord("t"):
            self._keyword(b"true")
            return True
        if char == ord("f"):
            self._keyword(b"false")
            return False
        if char == ord("{"):
            return self._object()
        if char == ord("["):
            return self._list()
        if char == ord('"'):
            return self._string()
        raise UnexpectedCharacterError(char)

    def _keyword(self, keyword: bytes) -> None:
        end = self._pos + len(keyword)
        if end > len(self._data):
            raise UnexpectedEofError()
        found = self._data[self._pos : end]
        if found != keyword:
            raise UnexpectedCharacterError(found[0])
        self._pos = end

    def _digits(self) -> bytes:
        match = _DIGITS.match(self._data, self._pos)
        assert match is not None
        self._pos = match.end()
        return match.group()

    @staticmethod
    def _digits_value(digits: bytes) -> int:
        if not digits:
            raise UnexpectedEofError()
        return int(digits)

    def _number(self) -> Union[int, float]:
        negative = self._peek() == ord("-")
        if negative:
            self._pos += 1
        whole = self._digits_value(self._digits())
        if self._pos < len(self._data) and self._data[self._pos] == ord("."):
            self._pos += 1
            fraction_digits = self._digits()
            fraction = self._digits_value(fraction_digits)
            result = float(whole) + float(fraction) / float(10 ** len(fraction_digits))
            return -result if negative else result
        return -whole if negative else whole

    def _object_entry(self) -> tuple[str, Any]:
        key = self._string()
        self._skip_whitespace()
        self._expect(":")
        return key, self._value()

    def _object(self) -> dict[str, Any]:
        self._expect("{")
        entries = []
        self._skip_whitespace()
        if self._peek() != ord("}"):
            entries.append(self._object_entry())
        while True:
            self._skip_whitespace()
            if self._peek() == ord("}"):
                self._pos += 1
                break
            self._expect(",")
            self._skip_whitespace()
            entries.append(self._object_entry())

        if len({key for key, _ in entries}) != len(entries):
            raise DuplicateObjectKeysError()
        return dict(sorted(entries, key=lambda entry: entry[0]))

    def _list(self) -> list[Any]:
        self._expect("[")
        entries = []
        self._skip_whitespace()
        if self._peek() != ord("]"):
            entries.append(self._value())
        while True:
            self._skip_whitespace()
            char = self._peek()
            if char == ord("]"):
                self._pos += 1
                break
            if char != ord(","):
                raise UnexpectedCharacterError(char)
            self._pos += 1
            entries.append(self._value())
        return entries

    def _string_end(self) -> int:
        start = self._pos
        quote = self._data.find(b'"', start)
        while quote != -1:
            backslashes = 0
            while quote - backslashes - 1 >= start and self._data[quote - backslashes - 1] == ord("\\"):
                backslashes += 1
            if backslashes % 2 == 0:
                return quote
            quote = self._data.find(b'"', quote + 1)
        raise UnexpectedEofError()

    def _string(self) -> str:
        self._expect('"')
        end = self._string_end()
        raw = self._data[self._pos : end]
        self._pos = end + 1
        try:
            text = raw.decode()
        except UnicodeDecodeError as error:
            raise JsonParseError("could not convert to str") from error

        if "\\" not in text:
            return text
        pieces = []
        rest = text
        while (index := rest.find("\\")) != -1:
            pieces.append(rest[:index])
            decoded, rest = _decode_escape(rest[index + 1 :])
            pieces.append(decoded)
        pieces.append(rest)
        return "".join(pieces)


def _decode_escape(text: str) -> tuple[str, str]:
    """Decode the escape at the start of ``text`` (after its backslash).

    Returns the decoded text and what follows the escape.
    """
    if not text:
        raise InvalidEscapeSequenceError()
    kind = text[0]
    if kind in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[kind], text[1:]
    if kind != "u":
        raise InvalidEscapeSequenceError()
    code = text[1:5]
    if len(code) != 4 or not _HEX_CODE.fullmatch(code):
        raise InvalidEscapeSequenceError()
    codepoint = int(code, 16)
    if 0xD800 <= codepoint <= 0xDFFF:
        raise InvalidEscapeSequenceError()
    return chr(codepoint), text[5:]


def parse_json(data: Union[str, bytes, bytearray]) -> Any:
    """Parse a JSON document into Python values."""
    return JsonParser(data).parse()


class ToJsonError(ValueError):
    """Raised when a value cannot be written as JSON."""


class SelfRecursiveSerializedError(ToJsonError):
    def __init__(self) -> None:
        super().__init__("tried to serialize self referential datastructure")


class FunctionSerializedError(ToJsonError):
    def __init__(self) -> None:
        super().__init__("cannot convert a function to JSON")


def _format_float(value: float) -> str:
    """Shortest round-trip digits, never in exponent form."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return format(Decimal(repr(value)).normalize(), "f")


class JsonWriter:
    """Writes Python values as compact JSON.

    Mappings are written with sorted keys, as attribute sets; a mapping with
    a callable ``__toString`` is written as the string that call returns.
    """

    def __init__(self) -> None:
        self._output: list[str] = []
        self._seen: list[Any] = []

    def serialize(self, value: Any) -> str:
        """Return the JSON text of ``value``."""
        self._output = []
        self._seen = []
        self._write(value)
        return "".join(self._output)

    def _write(self, value: Any) -> None:
        if any(parent is value for parent in self._seen):
            raise SelfRecursiveSerializedError()
        container = isinstance(value, (list, tuple, Mapping))
        if container:
            self._seen.append(value)
        self._write_value(value)
        if container:
            self._seen.pop()

    def _write_value(self, value: Any) -> None:
        if value is None:
            self._output.append("null")
        elif isinstance(value, bool):
            self._output.append("true" if value else "false")
        elif isinstance(value, int):
            self._output.append(str(value))
        elif isinstance(value, float):
            self._output.append(_format_float(value))
        elif isinstance(value, str):
            self._write_string(value)
        elif isinstance(value, PurePath):
            raise ToJsonError("cannot convert a path to JSON")
        elif isinstance(value, Mapping):
            self._write_object(value)
        elif isinstance(value, (list, tuple)):
            self._write_list(value)
        elif callable(value):
            raise FunctionSerializedError()
        else:
            raise TypeError(f"cannot convert a {type(value).__name__} to JSON")

    def _write_object(self, value: Mapping[str, Any]) -> None:
        if "__toString" in value:
            to_string = value["__toString"]
            if not callable(to_string):
                raise TypeError("__toString must be a function")
            text = to_string(value)
            if not isinstance(text, str):
                raise TypeError("__toString must return a string")
            self._write_string(text)
            return

        for name in value:
            if not isinstance(name, str):
                raise TypeError(f"attribute names must be strings, not {type(name).__name__}")
        self._output.append("{")
        for position, name in enumerate(sorted(value)):
            if position:
                self._output.append(",")
            self._write_string(name)
            self._output.append(":")
            self._write(value[name])
        self._output.append("}")

    def _write_list(self, value: Union[list[Any], tuple[Any, ...]]) -> None:
        self._output.append("[")
        for position, item in enumerate(value):
            if position:
                self._output.append(",")
            self._write(item)
        self._output.append("]")

    def _write_string(self, text: str) -> None:
        escaped = _NEEDS_ESCAPE.sub(lambda match: _OUTPUT_ESCAPES[match.group()], text)
        self._output.append(f'"{escaped}"')


def to_json(value: Any) -> str:
    """Return the JSON text of ``value``."""
    return JsonWriter().serialize(value)