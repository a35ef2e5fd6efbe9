"""Publishing side of the bus plus the transports both processes share."""

from .audit import AuditLog, open_audit_log
from .publisher import BusPublisher
from .transport import (
    MqttTransport,
    RedisPubSubTransport,
    RedisStreamTransport,
    Transport,
    build_transport,
)

__all__ = [
    "AuditLog",
    "BusPublisher",
    "MqttTransport",
    "RedisPubSubTransport",
    "RedisStreamTransport",
    "Transport",
    "build_transport",
    "open_audit_log",
]
