"""Placeholder resolution for follow-up requests built from a fetched item.

Templates use mustache-style delimiters. ``{{payload}}`` always refers to the
whole fetched payload; any other ``{{name}}`` refers to a field of the fetched
record, with dotted paths (``{{user.id}}``, ``{{rows.0.id}}``) reaching into
nested data. When a source produced no record, named fields are looked up in
the payload parsed as JSON.

Two modes are supported:

- positional parameters (:func:`resolve_params`), where each parameter is
  replaced by a raw value and passed to the backend next to the query text;
- whole strings (:func:`resolve_string`), where every placeholder is replaced
  by its textual form inside one request string.

Unknown keys resolve to an empty value. Pass ``strict=True`` to raise
:class:`~pullexec.errors.TemplateError` instead.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from pullexec.errors import TemplateError

PAYLOAD_KEY = "payload"
OPEN_DELIMITER = "{{"
CLOSE_DELIMITER = "}}"
PAYLOAD_TOKEN = f"{OPEN_DELIMITER}{PAYLOAD_KEY}{CLOSE_DELIMITER}"


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass(frozen=True, slots=True)
class Placeholder:
    """One ``{{key}}`` occurrence inside a template."""

    start: int
    end: int
    key: str

    @property
    def is_payload(self) -> bool:
        return self.key == PAYLOAD_KEY


def scan_placeholders(text: str) -> list[Placeholder]:
    """Return placeholders in order of appearance.

    The scanner looks for the next ``{{``, then the next ``}}`` after it. When
    another ``{{`` sits between the two, the innermost one opens the
    placeholder, so ``{{a{{b}}`` refers to ``b`` and ``{{a`` stays literal.
    An unterminated ``{{`` is literal text.
    """

    placeholders: list[Placeholder] = []
    position = 0
    while True:
        open_index = text.find(OPEN_DELIMITER, position)
        if open_index < 0:
            break
        close_index = text.find(CLOSE_DELIMITER, open_index + len(OPEN_DELIMITER))
        if close_index < 0:
            break
        start = text.rfind(OPEN_DELIMITER, open_index, close_index)
        end = close_index + len(CLOSE_DELIMITER)
        key = text[start + len(OPEN_DELIMITER) : close_index].strip()
        placeholders.append(Placeholder(start=start, end=end, key=key))
        position = end
    return placeholders


def has_placeholders(text: str) -> bool:
    return bool(scan_placeholders(text))


def extract_key(text: str) -> str | None:
    """Key of the first placeholder in ``text``, or ``None`` when there is none."""

    placeholders = scan_placeholders(text)
    if not placeholders:
        return None
    return placeholders[0].key


def extract_keys(text: str) -> list[str]:
    """Distinct placeholder keys in order of first appearance."""

    keys: list[str] = []
    for placeholder in scan_placeholders(text):
        if placeholder.key not in keys:
            keys.append(placeholder.key)
    return keys


def lookup(source: Any, key: str) -> Any:
    """Find ``key`` in nested mappings/sequences, returning ``MISSING`` on a miss.

    An exact top-level key wins over a dotted path, so a column literally named
    ``a.b`` is still reachable.
    """

    if isinstance(source, Mapping) and key in source:
        return source[key]
    if not key:
        return MISSING

    current = source
    for part in key.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes, bytearray)):
            try:
                index = int(part)
            except ValueError:
                return MISSING
            if index < 0 or index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def stringify(value: Any) -> str:
    """Textual form of a record value for whole-string substitution."""

    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (Mapping, list, tuple)):
        return _dump_json(value)
    return str(value)


def encode_record(record: Mapping[str, Any]) -> bytes:
    """Deterministic compact JSON for a structured record."""

    try:
        return _dump_json(record).encode("utf-8")
    except (TypeError, ValueError) as error:
        raise TemplateError(f"Record cannot be serialized as JSON: {error}") from error


def resolve_params(
    params: Iterable[Any],
    *,
    payload: bytes | str,
    record: Mapping[str, Any] | None = None,
    strict: bool = False,
) -> list[Any]:
    """Resolve a positional parameter list into a new list.

    A parameter exactly equal to ``{{payload}}`` becomes the raw payload bytes.
    Any other string parameter holding a placeholder becomes the raw value at
    the first placeholder's key (an empty string when the key is unknown), so
    ``"tag-{{payload}}"`` reads a ``payload`` field. Everything else is copied
    unchanged.
    """

    resolution = _Resolution(payload=_as_bytes(payload), record=record, strict=strict)
    resolved: list[Any] = []
    for param in params:
        if not isinstance(param, str):
            resolved.append(param)
            continue
        if param == PAYLOAD_TOKEN:
            resolved.append(resolution.payload)
            continue
        key = extract_key(param)
        if key is None:
            resolved.append(param)
        else:
            value = resolution.value(key)
            resolved.append("" if value is MISSING else value)
    return resolved


def resolve_string(
    template: str,
    *,
    payload: bytes | str,
    record: Mapping[str, Any] | None = None,
    strict: bool = False,
) -> str:
    """Resolve every placeholder of ``template`` in a single pass.

    ``{{payload}}`` becomes the payload text and named placeholders become
    ``stringify(record[key])``. Substituted text is never scanned again, so
    payload content that happens to contain ``{{...}}`` is passed through
    verbatim; keys are therefore taken from the template, not from the string
    after payload substitution.
    """

    placeholders = scan_placeholders(template)
    if not placeholders:
        return template

    resolution = _Resolution(payload=_as_bytes(payload), record=record, strict=strict)
    parts: list[str] = []
    position = 0
    for placeholder in placeholders:
        parts.append(template[position : placeholder.start])
        if placeholder.is_payload:
            parts.append(resolution.payload_text())
        else:
            parts.append(stringify(resolution.value(placeholder.key)))
        position = placeholder.end
    parts.append(template[position:])
    return "".join(parts)


@dataclass(slots=True)
class _Resolution:
    payload: bytes
    record: Mapping[str, Any] | None
    strict: bool
    _fields: Any = MISSING

    def payload_text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")

    def fields(self) -> Any:
        if self.record is not None:
            return self.record
        if self._fields is MISSING:
            self._fields = _parse_payload(self.payload, strict=self.strict)
        return self._fields

    def value(self, key: str) -> Any:
        found = lookup(self.fields(), key)
        if found is MISSING and self.strict:
            raise TemplateError(f"Template key {key!r} is not present in the fetched item.")
        return found


def _parse_payload(payload: bytes, *, strict: bool) -> Any:
    try:
        return json.loads(payload)
    except ValueError as error:
        if strict:
            raise TemplateError(f"Payload is not valid JSON: {error}") from error
        return None


def _as_bytes(payload: bytes | str) -> bytes:
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return bytes(payload)


def _dump_json(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        if value.is_finite() and value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)
