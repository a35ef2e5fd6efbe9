import pytest

from binlog_relay.errors import ConfigurationError
from binlog_relay.subscriber.config import (
    env_files_list,
    load_env_files,
    load_subscriber_config,
    load_subscriber_configs,
)


@pytest.mark.unit
def test_subscriber_config_defaults():
    config = load_subscriber_config({}, default_name="fallback")

    assert config.name == "fallback"
    assert config.console_mode
    assert not config.debounce_enabled
    assert config.filter.unrestricted
    assert config.transport.destination == "binlog:all"
    assert config.api_timeout == 10.0


@pytest.mark.unit
def test_subscriber_config_reads_filters_and_delivery_options():
    config = load_subscriber_config(
        {
            "SUBSCRIBER_NAME": "orders-hook",
            "FILTER_DBS": "shop, crm",
            "FILTER_TABLES": "orders",
            "FILTER_IDS": "42,43",
            "FILTER_OPS": "Update,DELETE",
            "FILTER_CHANGE_ANY": "status",
            "FILTER_CHANGE_ALL": "status,total",
            "EXCLUDE_DBS": "mysql",
            "EXCLUDE_TABLES": "secrets",
            "DEBOUNCE_SECONDS": "750ms",
            "DEBOUNCE_MAX_PENDING": "50",
            "DISPATCH_WORKERS": "2",
            "API_URL": "https://hooks.example.test/orders",
            "API_TIMEOUT": "3s",
            "API_LOG_FILE": "logs/api.log",
            "PRETTY_PRINT": "true",
            "UNSET": None,
        }
    )

    spec = config.filter
    assert config.name == "orders-hook"
    assert spec.dbs == frozenset({"shop", "crm"})
    assert spec.ids == frozenset({"42", "43"})
    assert spec.ops == frozenset({"update", "delete"})
    assert spec.change_all == frozenset({"status", "total"})
    assert spec.exclude_tables == frozenset({"secrets"})
    assert config.debounce_seconds == 0.75
    assert config.debounce_enabled
    assert config.debounce_max_pending == 50
    assert config.dispatch_workers == 2
    assert not config.console_mode
    assert config.api_timeout == 3.0
    assert config.api_log_file == "logs/api.log"
    assert config.pretty_print


@pytest.mark.unit
@pytest.mark.parametrize(
    "env",
    [
        {"DEBOUNCE_MAX_PENDING": "0"},
        {"DISPATCH_WORKERS": "-1"},
        {"API_TIMEOUT": "0"},
        {"DEBOUNCE_SECONDS": "a while"},
    ],
)
def test_invalid_subscriber_values_are_rejected(env):
    with pytest.raises(ConfigurationError):
        load_subscriber_config(env)


@pytest.mark.unit
def test_env_files_list_prefers_env_files():
    assert env_files_list({"ENV_FILES": "a.env, b.env", "ENV_FILE": "c.env"}) == [
        "a.env",
        "b.env",
    ]
    assert env_files_list({"ENV_FILE": "c.env"}) == ["c.env"]
    assert env_files_list({}) == []


@pytest.mark.unit
def test_load_env_files_merges_in_order(tmp_path):
    first = tmp_path / "base.env"
    first.write_text("FILTER_DBS=shop\nAPI_TIMEOUT=5\n")
    second = tmp_path / "override.env"
    second.write_text("API_TIMEOUT=7\n")

    merged = load_env_files([str(first), str(second)])

    assert merged["FILTER_DBS"] == "shop"
    assert merged["API_TIMEOUT"] == "7"


@pytest.mark.unit
def test_each_env_file_becomes_one_subscriber(tmp_path):
    orders = tmp_path / "orders.env"
    orders.write_text("FILTER_TABLES=orders\nAPI_URL=http://localhost/orders\n")
    audit = tmp_path / "audit.env"
    audit.write_text("SUBSCRIBER_NAME=auditor\nEXCLUDE_TABLES=secrets\n")

    configs = load_subscriber_configs([str(orders), str(audit)])

    assert [config.name for config in configs] == ["orders", "auditor"]
    assert configs[0].filter.tables == frozenset({"orders"})
    assert configs[1].console_mode


@pytest.mark.unit
def test_missing_or_invalid_env_file_names_the_path(tmp_path):
    with pytest.raises(ConfigurationError, match="does not exist"):
        load_subscriber_configs([str(tmp_path / "nope.env")])

    broken = tmp_path / "broken.env"
    broken.write_text("DISPATCH_WORKERS=0\n")
    with pytest.raises(ConfigurationError, match="broken.env"):
        load_subscriber_configs([str(broken)])
