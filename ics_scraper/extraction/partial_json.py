"""Tolerant JSON parsing for possibly-truncated LLM output.

A strict parser discards a whole response when the model hits its output cap
half-way through an event. ``parse_partial_json`` instead recovers every
complete leading value:

- array elements are kept only when they are complete
- object members are kept when their value is complete, or when the value is
  itself a partially-recovered container
- incomplete scalars (cut-off strings, numbers, literals) are dropped

Example:
    >>> parse_partial_json('{"events": [{"title": "A"}, {"title": "B", "loc').value
    {'events': [{'title': 'A'}]}
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json|JSON)?\s*\n?")
_WS = " \t\n\r"
_NUMBER = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_LITERALS = {"true": True, "false": False, "null": None}
_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}


@dataclass
class PartialParse:
    """Recovered value and whether the source document was complete."""

    value: Any
    complete: bool


class _Incomplete(Exception):
    """Input ended before the current value was closed."""


class _Malformed(Exception):
    """Input is not JSON at this position."""


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text).replace("```", "")


def _first_delimiter(text: str) -> int:
    positions = [p for p in (text.find("{"), text.find("[")) if p != -1]
    return min(positions) if positions else -1


def has_json_content(text: str) -> bool:
    """True when the text contains at least one JSON structural delimiter."""
    return _first_delimiter(text) != -1


class _PartialParser:
    def __init__(self, text: str, pos: int) -> None:
        self.text = text
        self.pos = pos

    def _skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos] in _WS:
            self.pos += 1

    def _peek(self) -> str:
        self._skip_ws()
        if self.pos >= len(self.text):
            raise _Incomplete()
        return self.text[self.pos]

    def parse_value(self) -> tuple[Any, bool]:
        char = self._peek()
        if char == "{":
            return self._parse_object()
        if char == "[":
            return self._parse_array()
        if char == '"':
            return self._parse_string(), True
        return self._parse_scalar(), True

    def _parse_object(self) -> tuple[dict[str, Any], bool]:
        result: dict[str, Any] = {}
        self.pos += 1
        while True:
            try:
                char = self._peek()
            except _Incomplete:
                return result, False
            if char == "}":
                self.pos += 1
                return result, True
            if char == ",":
                self.pos += 1
                continue
            if char != '"':
                raise _Malformed(f"expected object key at {self.pos}")

            try:
                key = self._parse_string()
                if self._peek() != ":":
                    raise _Malformed(f"expected ':' at {self.pos}")
                self.pos += 1
                value, complete = self.parse_value()
            except _Incomplete:
                return result, False

            if complete:
                result[key] = value
                continue
            if isinstance(value, (dict, list)):
                result[key] = value
            return result, False

    def _parse_array(self) -> tuple[list[Any], bool]:
        result: list[Any] = []
        self.pos += 1
        while True:
            try:
                char = self._peek()
            except _Incomplete:
                return result, False
            if char == "]":
                self.pos += 1
                return result, True
            if char == ",":
                self.pos += 1
                continue
            try:
                value, complete = self.parse_value()
            except _Incomplete:
                return result, False
            if not complete:
                return result, False
            result.append(value)

    def _parse_string(self) -> str:
        # Opening quote
        self.pos += 1
        chars: list[str] = []
        text = self.text
        while self.pos < len(text):
            char = text[self.pos]
            if char == '"':
                self.pos += 1
                return "".join(chars)
            if char == "\\":
                if self.pos + 1 >= len(text):
                    raise _Incomplete()
                escape = text[self.pos + 1]
                if escape == "u":
                    hex_digits = text[self.pos + 2 : self.pos + 6]
                    if len(hex_digits) < 4:
                        raise _Incomplete()
                    try:
                        chars.append(chr(int(hex_digits, 16)))
                    except ValueError as e:
                        raise _Malformed(f"bad unicode escape at {self.pos}") from e
                    self.pos += 6
                    continue
                chars.append(_ESCAPES.get(escape, escape))
                self.pos += 2
                continue
            chars.append(char)
            self.pos += 1
        raise _Incomplete()

    def _parse_scalar(self) -> Any:
        rest = self.text[self.pos :]
        for literal, value in _LITERALS.items():
            if rest.startswith(literal):
                self.pos += len(literal)
                return value
            if literal.startswith(rest):
                raise _Incomplete()

        match = _NUMBER.match(rest)
        if not match:
            raise _Malformed(f"unexpected character {rest[:1]!r} at {self.pos}")
        end = self.pos + match.end()
        # A number touching the end of input may have been cut off
        if end >= len(self.text):
            raise _Incomplete()
        self.pos = end
        number = match.group(0)
        if any(c in number for c in ".eE"):
            return float(number)
        return int(number)


def parse_partial_json(text: str) -> Optional[PartialParse]:
    """Parse the first JSON value in ``text``, recovering from truncation.

    Returns None when the text has no JSON delimiter or is not JSON at all.
    """
    if not text:
        return None
    cleaned = strip_code_fences(text)
    start = _first_delimiter(cleaned)
    if start == -1:
        return None

    try:
        value, _ = json.JSONDecoder().raw_decode(cleaned, start)
        return PartialParse(value=value, complete=True)
    except ValueError:
        pass

    try:
        value, complete = _PartialParser(cleaned, start).parse_value()
    except _Malformed as e:
        logger.debug("Unrecoverable JSON fragment: %s", e)
        return None
    except _Incomplete:
        return None
    return PartialParse(value=value, complete=complete)
