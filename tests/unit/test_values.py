from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from binlog_relay.cdc.values import (
    normalize_row,
    normalize_value,
    value_to_text,
    values_equal,
)


@pytest.mark.unit
def test_scalars_pass_through_unchanged():
    assert normalize_value(None) is None
    assert normalize_value(True) is True
    assert normalize_value(7) == 7
    assert normalize_value(1.5) == 1.5
    assert normalize_value("abc") == "abc"


@pytest.mark.unit
def test_bytes_decode_as_utf8_with_replacement():
    assert normalize_value(b"caf\xc3\xa9") == "café"
    assert normalize_value(bytearray(b"ok")) == "ok"
    assert normalize_value(b"\xff") == "\ufffd"


@pytest.mark.unit
def test_decimal_and_temporal_values_render_as_text():
    assert normalize_value(Decimal("19.90")) == "19.90"
    assert normalize_value(date(2024, 1, 2)) == "2024-01-02"
    assert normalize_value(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05"
    assert normalize_value(time(13, 30)) == "13:30:00"
    assert normalize_value(timedelta(hours=1, minutes=2)) == "1:02:00"


@pytest.mark.unit
def test_sets_are_sorted_for_stable_output():
    assert normalize_value({"b", "a", "c"}) == ["a", "b", "c"]


@pytest.mark.unit
def test_nested_json_documents_are_normalized_recursively():
    value = {"tags": ("x", b"y"), 1: Decimal("2.5")}

    assert normalize_value(value) == {"tags": ["x", "y"], "1": "2.5"}


@pytest.mark.unit
def test_values_equal_compares_normalized_forms():
    assert values_equal(b"paid", "paid")
    assert values_equal(Decimal("1.0"), Decimal("1.0"))
    assert not values_equal("1", 1)
    assert not values_equal(None, "")


@pytest.mark.unit
def test_value_to_text_is_canonical():
    assert value_to_text(None) == "null"
    assert value_to_text(False) == "false"
    assert value_to_text(42) == "42"
    assert value_to_text(b"raw") == "raw"
    assert value_to_text({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


@pytest.mark.unit
def test_normalize_row_preserves_order():
    assert normalize_row([1, b"x", None]) == [1, "x", None]
