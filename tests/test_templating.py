from __future__ import annotations

from datetime import date
from decimal import Decimal

import allure
import pytest

from pullexec.errors import TemplateError
from pullexec.templating import (
    MISSING,
    PAYLOAD_TOKEN,
    encode_record,
    extract_key,
    extract_keys,
    has_placeholders,
    lookup,
    resolve_params,
    resolve_string,
    scan_placeholders,
    stringify,
)

pytestmark = [
    allure.epic("Work Pulling"),
    allure.feature("Template Resolution"),
]


def test_whole_string_substitutes_record_field() -> None:
    resolved = resolve_string(
        "DELETE FROM t WHERE id = {{id}}",
        payload=b"ignored",
        record={"id": "42"},
    )

    assert resolved == "DELETE FROM t WHERE id = 42"


def test_payload_token_returns_payload_unchanged_in_whole_string_mode() -> None:
    assert resolve_string("{{payload}}", payload=b'{"a":1}') == '{"a":1}'


def test_positional_params_resolve_to_raw_record_values() -> None:
    assert resolve_params(["{{name}}"], payload=b"", record={"name": "bob"}) == ["bob"]


def test_missing_key_resolves_to_empty_string() -> None:
    assert resolve_string("{{missing}}", payload=b"", record={}) == ""
    assert resolve_params(["{{missing}}"], payload=b"", record={}) == [""]


def test_strict_mode_raises_for_missing_key() -> None:
    with pytest.raises(TemplateError, match="missing"):
        resolve_string("{{missing}}", payload=b"", record={}, strict=True)
    with pytest.raises(TemplateError):
        resolve_params(["{{missing}}"], payload=b"", record={"id": 1}, strict=True)


def test_resolution_is_idempotent() -> None:
    record = {"id": 7, "user": {"name": "ann"}, "tags": ["x", "y"]}
    template = "id={{id}} user={{user.name}} first={{tags.0}} all={{payload}}"

    first = resolve_string(template, payload=b"raw", record=record)
    second = resolve_string(template, payload=b"raw", record=record)

    assert first == second
    assert first == "id=7 user=ann first=x all=raw"


def test_known_keys_leave_no_delimiters_behind() -> None:
    record = {"a": "1", "b": 2, "c": None}

    resolved = resolve_string("{{a}}-{{ b }}-{{c}}-{{payload}}", payload=b"p", record=record)

    assert "{{" not in resolved
    assert "}}" not in resolved


def test_payload_token_round_trips_bytes_in_positional_mode() -> None:
    payload = b"\x00\xffbinary"

    assert resolve_params([PAYLOAD_TOKEN], payload=payload) == [payload]


def test_only_exact_payload_token_is_replaced_by_payload_in_positional_mode() -> None:
    resolved = resolve_params(["tag-{{payload}}", " {{payload}}"], payload=b"RAW", record={"payload": "field"})

    assert resolved == ["field", "field"]


def test_payload_content_with_delimiters_is_not_rescanned() -> None:
    payload = b"hello {{id}}"

    assert resolve_string("{{payload}}", payload=payload) == "hello {{id}}"


def test_fields_come_from_json_payload_without_record() -> None:
    resolved = resolve_string("/items/{{id}}/{{meta.kind}}", payload=b'{"id": 3, "meta": {"kind": "a"}}')

    assert resolved == "/items/3/a"


def test_non_json_payload_without_record_yields_empty_fields() -> None:
    assert resolve_string("x{{id}}x", payload=b"not json") == "xx"
    with pytest.raises(TemplateError, match="not valid JSON"):
        resolve_string("x{{id}}x", payload=b"not json", strict=True)


def test_positional_params_keep_non_placeholder_values() -> None:
    params = ["literal", 5, None, "{{id}}", "{{payload}}"]

    resolved = resolve_params(params, payload=b"body", record={"id": 10})

    assert resolved == ["literal", 5, None, 10, b"body"]
    assert params == ["literal", 5, None, "{{id}}", "{{payload}}"]


def test_scanner_uses_innermost_open_delimiter() -> None:
    placeholders = scan_placeholders("{{a{{b}} and {{c")

    assert [placeholder.key for placeholder in placeholders] == ["b"]
    assert resolve_string("{{a{{b}} and {{c", payload=b"", record={"b": "B"}) == "{{aB and {{c"


def test_extract_helpers() -> None:
    assert extract_key("no placeholders") is None
    assert extract_key("x {{ first }} {{second}}") == "first"
    assert extract_keys("{{a}} {{b}} {{a}}") == ["a", "b"]
    assert has_placeholders("{{x}}")
    assert not has_placeholders("{{x")


def test_lookup_prefers_exact_key_over_dotted_path() -> None:
    record = {"a.b": "flat", "a": {"b": "nested"}}

    assert lookup(record, "a.b") == "flat"
    assert lookup({"a": {"b": "nested"}}, "a.b") == "nested"
    assert lookup({"rows": [{"id": 1}]}, "rows.0.id") == 1
    assert lookup({"rows": []}, "rows.0") is MISSING
    assert lookup({"rows": [1]}, "rows.-1") is MISSING


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, ""),
        (True, "true"),
        (3.0, "3"),
        (2.5, "2.5"),
        (Decimal("1.10"), "1.10"),
        (b"bytes", "bytes"),
        (date(2024, 1, 2), "2024-01-02"),
        ({"b": 1, "a": [1, 2]}, '{"a":[1,2],"b":1}'),
    ],
)
def test_stringify(value: object, expected: str) -> None:
    assert stringify(value) == expected


def test_encode_record_is_sorted_and_compact() -> None:
    encoded = encode_record({"b": Decimal("2"), "a": date(2024, 5, 6), "c": "é"})

    assert encoded == '{"a":"2024-05-06","b":2,"c":"é"}'.encode()
