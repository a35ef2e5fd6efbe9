"""Runtime configuration helpers for the binlog relay emitter."""

from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_TIMEZONE = "Asia/Kolkata"
DEFAULT_CHANNEL = "binlog:all"
DEFAULT_MQTT_TOPIC = "binlog/all"

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass(frozen=True)
class TransportSettings:
    """Bus connection settings shared by the emitter and subscribers."""

    kind: str = "redis"
    redis_host: str = "127.0.0.1"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0
    redis_mode: str = "pubsub"
    redis_stream_maxlen: int = 0
    channel: str = DEFAULT_CHANNEL
    mqtt_host: str = ""
    mqtt_port: int = 1883
    mqtt_user: str = ""
    mqtt_password: str = ""
    mqtt_topic: str = DEFAULT_MQTT_TOPIC
    mqtt_client_id: str = ""
    mqtt_tls: bool = False
    mqtt_qos: int = 1

    @property
    def destination(self) -> str:
        return self.mqtt_topic if self.kind == "mqtt" else self.channel


@dataclass(frozen=True)
class Settings:
    """Immutable container for emitter configuration."""

    db_user: str
    db_password: str
    db_host: str
    db_port: int
    db_name: str
    replication_host: str
    replication_port: int
    server_id: int
    use_gtid: bool
    reconnect_delay: float
    reconnect_max_delay: float
    message_log_file: str
    event_timezone: str
    checkpoint_backend: str
    checkpoint_path: Path
    checkpoint_fsync: bool
    checkpoint_name: str
    checkpoint_interval: int
    table_map_retention: float
    table_map_sweep_interval: float
    log_level: str
    transport: TransportSettings

    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.event_timezone)


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans; unknown words keep the default."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    return default


def _as_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(entry.strip() for entry in value.split(",") if entry.strip())


def parse_duration(value: str) -> float:
    """Parse ``500ms``, ``5s``, ``1m``, ``1h``, ``1m30s`` or plain seconds."""
    text = value.strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0 or not math.isfinite(seconds):
            raise ValueError(f"invalid duration {value!r}")
        return seconds
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


def _as_duration(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return parse_duration(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name}: {exc}") from exc


def _split_addr(value: str, default_port: int, name: str) -> Tuple[str, int]:
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        return value.strip(), default_port
    try:
        return host, int(port)
    except ValueError as exc:
        raise ConfigurationError(f"{name} has an invalid port: {value!r}") from exc


def _require(env: Mapping[str, str], name: str) -> str:
    value = (env.get(name) or "").strip()
    if not value:
        raise ConfigurationError(f"{name} is required")
    return value


def load_transport_settings(env: Mapping[str, str]) -> TransportSettings:
    """Read the bus settings shared by both processes from ``env``."""
    kind = (env.get("TRANSPORT") or "redis").strip().lower()
    if kind not in {"redis", "mqtt"}:
        raise ConfigurationError(f"TRANSPORT must be 'redis' or 'mqtt', got {kind!r}")
    redis_mode = (env.get("REDIS_MODE") or "pubsub").strip().lower()
    if redis_mode not in {"pubsub", "stream"}:
        raise ConfigurationError(
            f"REDIS_MODE must be 'pubsub' or 'stream', got {redis_mode!r}"
        )
    redis_host, redis_port = _split_addr(
        env.get("REDIS_ADDR") or "127.0.0.1:6379", 6379, "REDIS_ADDR"
    )
    channel = (
        (env.get("REDIS_CHANNEL") or "").strip()
        or (env.get("REDIS_STREAM") or "").strip()
        or DEFAULT_CHANNEL
    )
    qos = _as_int(env, "MQTT_QOS", 1)
    if qos not in (0, 1, 2):
        raise ConfigurationError(f"MQTT_QOS must be 0, 1 or 2, got {qos}")
    transport = TransportSettings(
        kind=kind,
        redis_host=redis_host,
        redis_port=redis_port,
        redis_password=env.get("REDIS_PASS", ""),
        redis_db=_as_int(env, "REDIS_DB", 0),
        redis_mode=redis_mode,
        redis_stream_maxlen=_as_int(env, "REDIS_STREAM_MAXLEN", 0),
        channel=channel,
        mqtt_host=env.get("MQTT_HOST", ""),
        mqtt_port=_as_int(env, "MQTT_PORT", 1883),
        mqtt_user=env.get("MQTT_USER", ""),
        mqtt_password=env.get("MQTT_PASSWORD", ""),
        mqtt_topic=(env.get("MQTT_TOPIC") or DEFAULT_MQTT_TOPIC).strip(),
        mqtt_client_id=env.get("MQTT_CLIENT_ID", ""),
        mqtt_tls=_as_bool(env.get("MQTT_TLS"), False),
        mqtt_qos=qos,
    )
    if transport.kind == "mqtt" and not transport.mqtt_host:
        raise ConfigurationError("MQTT_HOST is required when TRANSPORT=mqtt")
    return transport


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    *,
    env_file: Optional[str] = None,
) -> Settings:
    """Load emitter configuration from the environment (and `.env`).

    Passing ``environ`` skips the dotenv lookup and reads only the mapping.
    """
    if environ is None:
        load_dotenv(env_file)
        environ = os.environ
    env = environ

    db_user = _require(env, "DB_USER")
    db_host = _require(env, "DB_HOST")
    db_name = _require(env, "DB_NAME")
    db_port = _as_int(env, "DB_PORT", 3306)
    addr = (env.get("ADDR") or "").strip()
    if addr:
        replication_host, replication_port = _split_addr(addr, db_port, "ADDR")
    else:
        replication_host, replication_port = db_host, db_port

    server_id = _as_int(env, "SERVER_ID", 100)
    if server_id <= 0:
        raise ConfigurationError("SERVER_ID must be a positive integer")

    reconnect_delay = _as_duration(env, "RECONNECT_DELAY", 5.0)
    if reconnect_delay <= 0:
        raise ConfigurationError("RECONNECT_DELAY must be positive")
    reconnect_max_delay = max(
        reconnect_delay, _as_duration(env, "RECONNECT_MAX_DELAY", reconnect_delay)
    )

    event_timezone = (env.get("EVENT_TIMEZONE") or DEFAULT_TIMEZONE).strip()
    try:
        ZoneInfo(event_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(
            f"EVENT_TIMEZONE {event_timezone!r} is not a known zone"
        ) from exc

    checkpoint_backend = (env.get("CHECKPOINT_BACKEND") or "file").strip().lower()
    if checkpoint_backend not in {"file", "memory"}:
        raise ConfigurationError(
            f"CHECKPOINT_BACKEND must be 'file' or 'memory', got {checkpoint_backend!r}"
        )

    return Settings(
        db_user=db_user,
        db_password=env.get("DB_PASS", ""),
        db_host=db_host,
        db_port=db_port,
        db_name=db_name,
        replication_host=replication_host,
        replication_port=replication_port,
        server_id=server_id,
        use_gtid=_as_bool(env.get("USE_GTID"), False),
        reconnect_delay=reconnect_delay,
        reconnect_max_delay=reconnect_max_delay,
        message_log_file=(env.get("MESSAGE_LOG_FILE") or "").strip(),
        event_timezone=event_timezone,
        checkpoint_backend=checkpoint_backend,
        checkpoint_path=Path(env.get("CHECKPOINT_PATH") or "binlog_checkpoint.json"),
        checkpoint_fsync=_as_bool(env.get("CHECKPOINT_FSYNC"), False),
        checkpoint_name=(env.get("CHECKPOINT_NAME") or f"emitter-{server_id}").strip(),
        checkpoint_interval=max(1, _as_int(env, "CHECKPOINT_INTERVAL", 50)),
        table_map_retention=_as_duration(env, "TABLE_MAP_RETENTION", 3600.0),
        table_map_sweep_interval=_as_duration(env, "TABLE_MAP_SWEEP_INTERVAL", 300.0),
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        transport=load_transport_settings(env),
    )


__all__ = [
    "DEFAULT_CHANNEL",
    "DEFAULT_TIMEZONE",
    "Settings",
    "TransportSettings",
    "load_settings",
    "load_transport_settings",
    "parse_duration",
]
