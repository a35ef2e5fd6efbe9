"""Process runtimes for the emitter and the subscriber fleet."""

from __future__ import annotations

import logging
import os
import signal
import threading
from threading import Event
from typing import Callable, List, Optional, Sequence

from dotenv import load_dotenv

from .cdc.service import Pipeline, build_pipeline
from .config import Settings, load_settings
from .subscriber.config import (
    SubscriberConfig,
    env_files_list,
    load_subscriber_config,
    load_subscriber_configs,
)
from .subscriber.runner import run_subscribers

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    else:
        logging.getLogger().setLevel(level)


def install_signal_handlers(on_signal: Callable[[], None]) -> None:
    """Route SIGINT/SIGTERM to ``on_signal``; only possible on the main thread."""
    if threading.current_thread() is not threading.main_thread():
        return

    def _handler(signum, _frame) -> None:
        logger.info("received %s - shutting down", signal.Signals(signum).name)
        on_signal()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


class EmitterRuntime:
    """Runs the binlog pipeline on a worker thread until a stop is requested."""

    def __init__(self, settings: Settings, pipeline: Optional[Pipeline] = None) -> None:
        self.settings = settings
        self.stop_event = pipeline.stop_event if pipeline else Event()
        self.pipeline = pipeline or build_pipeline(settings, stop_event=self.stop_event)
        self._thread: Optional[threading.Thread] = None

    def run(self) -> None:
        install_signal_handlers(self.stop)
        self._thread = threading.Thread(
            target=self._run_pipeline, name="binlog-emitter", daemon=True
        )
        self._thread.start()
        try:
            while self._thread.is_alive():
                self._thread.join(timeout=0.5)
        except KeyboardInterrupt:
            logger.info("shutdown requested (KeyboardInterrupt)")
            self.stop()
            self._thread.join(timeout=10)

    def stop(self) -> None:
        self.pipeline.stop()

    def _run_pipeline(self) -> None:
        try:
            self.pipeline.run_forever()
        except Exception:  # noqa: BLE001
            logger.exception("emitter encountered an unrecoverable error")
            self.stop_event.set()


class SubscriberRuntime:
    """Runs one thread per subscriber config until a stop is requested."""

    def __init__(self, configs: Sequence[SubscriberConfig]) -> None:
        if not configs:
            raise ValueError("at least one subscriber config is required")
        self.configs = list(configs)
        self.stop_event = Event()

    def run(self) -> None:
        install_signal_handlers(self.stop)
        names = ", ".join(config.name or "<unnamed>" for config in self.configs)
        logger.info("starting %d subscriber(s): %s", len(self.configs), names)
        run_subscribers(self.configs, self.stop_event)

    def stop(self) -> None:
        self.stop_event.set()


def load_configs(env_files: Sequence[str]) -> List[SubscriberConfig]:
    """Subscriber configs from env files, or from the process environment."""
    paths = list(env_files) or env_files_list()
    if paths:
        return load_subscriber_configs(paths)
    load_dotenv()
    return [load_subscriber_config(os.environ, default_name="subscriber")]


def run_emitter(env_file: Optional[str] = None) -> None:
    settings = load_settings(env_file=env_file)
    configure_logging(settings.log_level)
    EmitterRuntime(settings).run()


def run_subscriber_fleet(env_files: Sequence[str] = ()) -> None:
    configs = load_configs(env_files)
    configure_logging()
    SubscriberRuntime(configs).run()


__all__ = [
    "EmitterRuntime",
    "LOG_FORMAT",
    "SubscriberRuntime",
    "configure_logging",
    "load_configs",
    "run_emitter",
    "run_subscriber_fleet",
]
