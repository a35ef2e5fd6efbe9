import hashlib

import pytest

from binlog_relay.cdc.identity import (
    RowIdStrategy,
    column_names,
    content_hash,
    identify,
    primary_key_value,
)
from binlog_relay.cdc.schema import TableSchema


@pytest.mark.unit
def test_single_column_primary_key_identifies_row(orders_schema):
    identity = identify(orders_schema, (42, "pending", "19.90"))

    assert identity.strategy is RowIdStrategy.PRIMARY_KEY
    assert identity.key == 42
    assert identity.value == "42"
    assert identity.columns == ("id",)


@pytest.mark.unit
def test_composite_primary_key_yields_mapping():
    schema = TableSchema(
        database="shop",
        table="order_items",
        columns=("order_id", "line", "sku"),
        primary_key=("order_id", "line"),
    )

    identity = identify(schema, (42, 3, b"SKU-1"))

    assert identity.strategy is RowIdStrategy.PRIMARY_KEY
    assert identity.key == {"order_id": 42, "line": 3}
    assert identity.value == '{"line":3,"order_id":42}'


@pytest.mark.unit
def test_missing_schema_falls_back_to_content_hash():
    row = (1, "a", None)

    identity = identify(None, row)

    expected = hashlib.sha256("1|a|null".encode("utf-8")).digest()[:8].hex()
    assert identity.strategy is RowIdStrategy.CONTENT_HASH
    assert identity.value == expected
    assert identity.key == expected
    assert identity.columns == ("col_1", "col_2", "col_3")


@pytest.mark.unit
def test_arity_mismatch_disables_primary_key(orders_schema):
    row = (42, "pending", "19.90", "extra")

    assert primary_key_value(orders_schema, row) is None
    identity = identify(orders_schema, row)
    assert identity.strategy is RowIdStrategy.CONTENT_HASH
    assert column_names(orders_schema, row) == ["col_1", "col_2", "col_3", "col_4"]


@pytest.mark.unit
def test_table_without_primary_key_uses_schema_columns_for_hash():
    schema = TableSchema(database="logs", table="audit", columns=("who", "what"))

    identity = identify(schema, ("alice", "login"))

    assert identity.strategy is RowIdStrategy.CONTENT_HASH
    assert identity.columns == ("who", "what")


@pytest.mark.unit
def test_content_hash_is_deterministic_and_collides_on_equal_content():
    first = content_hash(("alice", "login"))
    second = content_hash(("alice", "login"))
    other = content_hash(("alice", "logout"))

    assert first == second
    assert first != other
    assert len(first) == 16
