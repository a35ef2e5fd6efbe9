"""Per-instance subscriber configuration loaded from env files."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from dotenv import dotenv_values

from ..config import (
    TransportSettings,
    _as_bool,
    _as_duration,
    _as_int,
    _split_csv,
    load_transport_settings,
)
from ..errors import ConfigurationError
from .filter import FilterSpec


@dataclass(frozen=True)
class SubscriberConfig:
    """Immutable container for one subscriber instance."""

    name: str
    transport: TransportSettings = field(default_factory=TransportSettings)
    filter: FilterSpec = field(default_factory=FilterSpec)
    pretty_print: bool = False
    debounce_seconds: float = 0.0
    debounce_max_pending: int = 10000
    dispatch_workers: int = 4
    api_url: str = ""
    api_timeout: float = 10.0
    api_log_file: str = ""

    @property
    def console_mode(self) -> bool:
        return not self.api_url

    @property
    def debounce_enabled(self) -> bool:
        return self.debounce_seconds > 0


def load_subscriber_config(
    env: Mapping[str, Optional[str]], *, default_name: str = ""
) -> SubscriberConfig:
    """Build a :class:`SubscriberConfig` from one env mapping."""
    values: Dict[str, str] = {k: v for k, v in env.items() if v is not None}
    debounce_seconds = _as_duration(values, "DEBOUNCE_SECONDS", 0.0)
    max_pending = _as_int(values, "DEBOUNCE_MAX_PENDING", 10000)
    if max_pending <= 0:
        raise ConfigurationError("DEBOUNCE_MAX_PENDING must be positive")
    workers = _as_int(values, "DISPATCH_WORKERS", 4)
    if workers <= 0:
        raise ConfigurationError("DISPATCH_WORKERS must be positive")
    api_timeout = _as_duration(values, "API_TIMEOUT", 10.0)
    if api_timeout <= 0:
        raise ConfigurationError("API_TIMEOUT must be positive")
    return SubscriberConfig(
        name=(values.get("SUBSCRIBER_NAME") or "").strip() or default_name,
        transport=load_transport_settings(values),
        filter=FilterSpec.from_lists(
            dbs=_split_csv(values.get("FILTER_DBS")),
            tables=_split_csv(values.get("FILTER_TABLES")),
            ids=_split_csv(values.get("FILTER_IDS")),
            ops=_split_csv(values.get("FILTER_OPS")),
            change_any=_split_csv(values.get("FILTER_CHANGE_ANY")),
            change_all=_split_csv(values.get("FILTER_CHANGE_ALL")),
            exclude_dbs=_split_csv(values.get("EXCLUDE_DBS")),
            exclude_tables=_split_csv(values.get("EXCLUDE_TABLES")),
        ),
        pretty_print=_as_bool(values.get("PRETTY_PRINT"), False),
        debounce_seconds=debounce_seconds,
        debounce_max_pending=max_pending,
        dispatch_workers=workers,
        api_url=(values.get("API_URL") or "").strip(),
        api_timeout=api_timeout,
        api_log_file=(values.get("API_LOG_FILE") or "").strip(),
    )


def env_files_list(environ: Optional[Mapping[str, str]] = None) -> List[str]:
    """Env files named by ``ENV_FILES``, falling back to ``ENV_FILE``."""
    env = os.environ if environ is None else environ
    raw = env.get("ENV_FILES") or ""
    if not raw.strip():
        raw = env.get("ENV_FILE") or ""
    return list(_split_csv(raw))


def load_env_files(paths: Sequence[str]) -> Dict[str, Optional[str]]:
    """Merge several dotenv files in order; later files win."""
    combined: Dict[str, Optional[str]] = {}
    for path in paths:
        if not Path(path).is_file():
            raise ConfigurationError(f"env file {path} does not exist")
        combined.update(dotenv_values(path))
    return combined


def load_subscriber_configs(paths: Sequence[str]) -> List[SubscriberConfig]:
    """One subscriber per env file, named after the file stem by default."""
    configs = []
    for path in paths:
        try:
            config = load_subscriber_config(
                load_env_files([path]), default_name=Path(path).stem
            )
        except ConfigurationError as exc:
            raise ConfigurationError(f"{path}: {exc}") from exc
        configs.append(config)
    return configs


__all__ = [
    "SubscriberConfig",
    "env_files_list",
    "load_env_files",
    "load_subscriber_config",
    "load_subscriber_configs",
]
