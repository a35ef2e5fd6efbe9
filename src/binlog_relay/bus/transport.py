"""Bus transports: Redis pub/sub, Redis streams and MQTT."""

from __future__ import annotations

import logging
import queue
import uuid
from threading import Event, Lock
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol, Set

import paho.mqtt.client as mqtt
import redis

from ..config import TransportSettings
from ..errors import TransportError

logger = logging.getLogger(__name__)

POLL_TIMEOUT_SECONDS = 1.0
SOCKET_TIMEOUT_SECONDS = 10.0
STREAM_READ_COUNT = 100
MQTT_QUEUE_CAPACITY = 10000


class Transport(Protocol):
    """Pub/sub seam between the emitter and subscribers."""

    def publish(
        self, destination: str, payload: bytes, attributes: Mapping[str, str]
    ) -> None: ...

    def subscribe(self, destination: str, stop_event: Event) -> Iterator[bytes]: ...

    def close(self) -> None: ...


def _as_bytes(data: Any) -> bytes:
    if isinstance(data, bytes):
        return data
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def redis_client(settings: TransportSettings) -> redis.Redis:
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        password=settings.redis_password or None,
        socket_connect_timeout=SOCKET_TIMEOUT_SECONDS,
        socket_timeout=SOCKET_TIMEOUT_SECONDS,
        health_check_interval=30,
    )


class RedisPubSubTransport:
    """PUBLISH/SUBSCRIBE; messages published while nobody listens are lost."""

    def __init__(
        self, client: redis.Redis, *, poll_timeout: float = POLL_TIMEOUT_SECONDS
    ) -> None:
        self._client = client
        self._poll_timeout = poll_timeout

    def publish(
        self, destination: str, payload: bytes, attributes: Mapping[str, str]
    ) -> None:
        try:
            self._client.publish(destination, payload)
        except redis.RedisError as exc:
            raise TransportError(f"redis PUBLISH to {destination} failed: {exc}") from exc

    def subscribe(self, destination: str, stop_event: Event) -> Iterator[bytes]:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(destination)
        logger.info("subscribed to redis channel %s", destination)
        try:
            while not stop_event.is_set():
                message = pubsub.get_message(timeout=self._poll_timeout)
                if message is None or message.get("type") != "message":
                    continue
                yield _as_bytes(message["data"])
        finally:
            pubsub.close()

    def close(self) -> None:
        self._client.close()


class RedisStreamTransport:
    """XADD/XREAD; readers start from entries added after they connect."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        maxlen: int = 0,
        poll_timeout: float = POLL_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._maxlen = maxlen
        self._poll_timeout = poll_timeout

    def publish(
        self, destination: str, payload: bytes, attributes: Mapping[str, str]
    ) -> None:
        fields: Dict[str, Any] = {"payload": payload}
        fields.update(attributes)
        try:
            if self._maxlen > 0:
                self._client.xadd(
                    destination, fields, maxlen=self._maxlen, approximate=True
                )
            else:
                self._client.xadd(destination, fields)
        except redis.RedisError as exc:
            raise TransportError(f"redis XADD to {destination} failed: {exc}") from exc

    def subscribe(self, destination: str, stop_event: Event) -> Iterator[bytes]:
        last_id: Any = "$"
        block_ms = max(1, int(self._poll_timeout * 1000))
        logger.info("reading redis stream %s", destination)
        while not stop_event.is_set():
            response = self._client.xread(
                {destination: last_id}, count=STREAM_READ_COUNT, block=block_ms
            )
            for _stream, entries in response or ():
                for entry_id, fields in entries:
                    last_id = entry_id
                    payload = fields.get(b"payload", fields.get("payload"))
                    if payload is None:
                        logger.warning(
                            "stream entry %s on %s has no payload field",
                            entry_id,
                            destination,
                        )
                        continue
                    yield _as_bytes(payload)

    def close(self) -> None:
        self._client.close()


class MqttTransport:
    """paho-mqtt client running its network loop on a background thread."""

    def __init__(
        self,
        settings: TransportSettings,
        client: Optional[mqtt.Client] = None,
        *,
        poll_timeout: float = POLL_TIMEOUT_SECONDS,
    ) -> None:
        self._settings = settings
        self._qos = settings.mqtt_qos
        self._poll_timeout = poll_timeout
        self._messages: "queue.Queue[bytes]" = queue.Queue(maxsize=MQTT_QUEUE_CAPACITY)
        self._subscriptions: Set[str] = set()
        self._connected = Event()
        self._lock = Lock()
        self._started = False
        self._client = client or self._build_client()
        self._client.on_connect = self.on_connect
        self._client.on_disconnect = self.on_disconnect
        self._client.on_message = self.on_message

    def _build_client(self) -> mqtt.Client:
        client_id = self._settings.mqtt_client_id or f"binlog-relay-{uuid.uuid4().hex[:8]}"
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
        )
        if self._settings.mqtt_user or self._settings.mqtt_password:
            client.username_pw_set(self._settings.mqtt_user, self._settings.mqtt_password)
        if self._settings.mqtt_tls:
            client.tls_set_context()
        return client

    def _ensure_started(self) -> None:
        with self._lock:
            if self._started:
                return
            try:
                self._client.connect(
                    self._settings.mqtt_host, self._settings.mqtt_port, keepalive=60
                )
            except OSError as exc:
                raise TransportError(
                    f"mqtt connect to {self._settings.mqtt_host}:"
                    f"{self._settings.mqtt_port} failed: {exc}"
                ) from exc
            self._client.loop_start()
            self._started = True

    def publish(
        self, destination: str, payload: bytes, attributes: Mapping[str, str]
    ) -> None:
        self._ensure_started()
        info = self._client.publish(destination, payload, qos=self._qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(
                f"mqtt publish to {destination} failed: {mqtt.error_string(info.rc)}"
            )

    def subscribe(self, destination: str, stop_event: Event) -> Iterator[bytes]:
        with self._lock:
            self._subscriptions.add(destination)
        self._ensure_started()
        if self._connected.is_set():
            self._client.subscribe(destination, qos=self._qos)
        while not stop_event.is_set():
            try:
                yield self._messages.get(timeout=self._poll_timeout)
            except queue.Empty:
                continue

    def close(self) -> None:
        with self._lock:
            started, self._started = self._started, False
        if not started:
            return
        self._client.disconnect()
        self._client.loop_stop()

    # MQTT callbacks -----------------------------------------------------
    def on_connect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = getattr(reason_code, "value", reason_code)
        if rc != 0:
            logger.error("mqtt connect failed - rc: %s (%s)", rc, reason_code)
            return
        self._connected.set()
        with self._lock:
            topics = sorted(self._subscriptions)
        for topic in topics:
            client.subscribe(topic, qos=self._qos)
        logger.info(
            "mqtt connected to %s:%s%s",
            self._settings.mqtt_host,
            self._settings.mqtt_port,
            f" - subscribed to {', '.join(topics)}" if topics else "",
        )

    def on_disconnect(
        self,
        client: mqtt.Client,
        userdata,
        disconnect_flags,
        reason_code,
        properties=None,
    ) -> None:
        self._connected.clear()
        rc = getattr(reason_code, "value", reason_code)
        logger.warning("mqtt disconnected: rc=%s (%s)", rc, reason_code)

    def on_message(self, client: mqtt.Client, userdata, msg) -> None:
        try:
            self._messages.put_nowait(bytes(msg.payload))
        except queue.Full:
            logger.warning("mqtt receive queue full - dropping message on %s", msg.topic)


def build_transport(settings: TransportSettings) -> Transport:
    """Select the transport implementation named by ``settings.kind``."""
    if settings.kind == "mqtt":
        return MqttTransport(settings)
    client = redis_client(settings)
    if settings.redis_mode == "stream":
        return RedisStreamTransport(client, maxlen=settings.redis_stream_maxlen)
    return RedisPubSubTransport(client)


__all__ = [
    "MqttTransport",
    "RedisPubSubTransport",
    "RedisStreamTransport",
    "Transport",
    "build_transport",
    "redis_client",
]
