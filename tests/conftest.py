"""Shared pytest fixtures for the binlog relay unit tests."""

from __future__ import annotations

import logging

import pytest

from binlog_relay.cdc.schema import TableSchema


@pytest.fixture
def orders_schema() -> TableSchema:
    return TableSchema(
        database="shop",
        table="orders",
        columns=("id", "status", "total"),
        primary_key=("id",),
    )


@pytest.fixture(autouse=True)
def _reset_dispatch_loggers():
    yield
    # FileHandlers attached by HttpDispatcher outlive a test's tmp_path.
    manager = logging.Logger.manager
    for name in list(manager.loggerDict):
        if not name.startswith("binlog_relay.dispatch"):
            continue
        target = logging.getLogger(name)
        for handler in list(target.handlers):
            target.removeHandler(handler)
            handler.close()
