from threading import Event

import pytest

from binlog_relay import service
from binlog_relay.__main__ import main
from binlog_relay.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _no_signal_handlers(monkeypatch):
    monkeypatch.setattr(service, "install_signal_handlers", lambda _on_signal: None)


@pytest.mark.unit
def test_emit_command_passes_env_file(monkeypatch):
    calls = []
    monkeypatch.setattr(service, "run_emitter", lambda env_file: calls.append(env_file))

    assert main(["emit", "--env-file", "prod.env"]) == 0
    assert calls == ["prod.env"]


@pytest.mark.unit
def test_subscribe_command_collects_repeated_env_files(monkeypatch):
    calls = []
    monkeypatch.setattr(
        service, "run_subscriber_fleet", lambda env_files: calls.append(env_files)
    )

    assert main(["subscribe", "--env-file", "a.env", "--env-file", "b.env"]) == 0
    assert calls == [["a.env", "b.env"]]


@pytest.mark.unit
def test_configuration_errors_exit_with_status_two(monkeypatch, capsys):
    def fail(env_file):
        raise ConfigurationError("DB_HOST is required")

    monkeypatch.setattr(service, "run_emitter", fail)

    assert main(["emit"]) == 2
    assert "configuration error: DB_HOST is required" in capsys.readouterr().err


@pytest.mark.unit
def test_missing_command_is_a_usage_error():
    with pytest.raises(SystemExit) as excinfo:
        main([])

    assert excinfo.value.code == 2


@pytest.mark.unit
def test_load_configs_prefers_env_files(tmp_path, monkeypatch):
    env_file = tmp_path / "orders.env"
    env_file.write_text("FILTER_TABLES=orders\n")
    monkeypatch.setenv("ENV_FILES", str(env_file))

    configs = service.load_configs([])

    assert [config.name for config in configs] == ["orders"]


@pytest.mark.unit
def test_load_configs_falls_back_to_process_environment(monkeypatch):
    monkeypatch.delenv("ENV_FILES", raising=False)
    monkeypatch.delenv("ENV_FILE", raising=False)
    monkeypatch.delenv("SUBSCRIBER_NAME", raising=False)
    monkeypatch.setattr(service, "load_dotenv", lambda *_args, **_kwargs: True)
    monkeypatch.setenv("EXCLUDE_TABLES", "secrets")

    (config,) = service.load_configs([])

    assert config.name == "subscriber"
    assert config.filter.exclude_tables == frozenset({"secrets"})


class _Pipeline:
    def __init__(self, error=None):
        self.stop_event = Event()
        self.ran = False
        self._error = error

    def run_forever(self):
        self.ran = True
        if self._error is not None:
            raise self._error

    def stop(self):
        self.stop_event.set()


@pytest.mark.unit
def test_emitter_runtime_runs_pipeline_on_worker_thread():
    pipeline = _Pipeline()

    service.EmitterRuntime(settings=None, pipeline=pipeline).run()

    assert pipeline.ran


@pytest.mark.unit
def test_emitter_runtime_logs_unrecoverable_errors(caplog):
    pipeline = _Pipeline(error=RuntimeError("binlog purged"))

    service.EmitterRuntime(settings=None, pipeline=pipeline).run()

    assert pipeline.stop_event.is_set()
    assert "unrecoverable error" in caplog.text


@pytest.mark.unit
def test_subscriber_runtime_requires_configs():
    with pytest.raises(ValueError):
        service.SubscriberRuntime([])
