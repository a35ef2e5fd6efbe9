"""Exception types shared by the emitter and subscriber pipelines."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when a required setting is missing or malformed."""


class SchemaLoadError(RuntimeError):
    """Raised when table metadata cannot be read from the catalog."""

    def __init__(self, database: str, table: str, reason: object) -> None:
        super().__init__(f"unable to load schema for {database}.{table}: {reason}")
        self.database = database
        self.table = table


class RowFormatError(ValueError):
    """Raised when row images do not have the expected shape."""


class EventSerializationError(ValueError):
    """Raised when a change event cannot be encoded."""


class TransportError(RuntimeError):
    """Raised when the bus refuses or fails to accept a payload."""


class MalformedEventError(ValueError):
    """Raised when a received payload is not a valid change-event document."""


__all__ = [
    "ConfigurationError",
    "EventSerializationError",
    "MalformedEventError",
    "RowFormatError",
    "SchemaLoadError",
    "TransportError",
]
