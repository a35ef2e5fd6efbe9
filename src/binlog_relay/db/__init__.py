"""PyMySQL helpers: connections and the information_schema catalog."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

import pymysql
from pymysql.connections import Connection

from ..cdc.checkpoint import BinlogPosition
from ..cdc.schema import TableSchema
from ..errors import SchemaLoadError

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from binlog_relay.config import Settings

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 10
READ_TIMEOUT_SECONDS = 90

_COLUMNS_SQL = (
    "SELECT COLUMN_NAME FROM information_schema.COLUMNS "
    "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s "
    "ORDER BY ORDINAL_POSITION"
)
_PRIMARY_KEY_SQL = (
    "SELECT COLUMN_NAME FROM information_schema.KEY_COLUMN_USAGE "
    "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s AND CONSTRAINT_NAME = 'PRIMARY' "
    "ORDER BY ORDINAL_POSITION"
)
# MySQL 8.4 dropped SHOW MASTER STATUS in favour of SHOW BINARY LOG STATUS.
_HEAD_POSITION_SQL = ("SHOW MASTER STATUS", "SHOW BINARY LOG STATUS")


def connection_kwargs(settings: "Settings") -> Dict[str, Any]:
    """Catalog connection arguments understood by :func:`pymysql.connect`."""
    return {
        "host": settings.db_host,
        "port": settings.db_port,
        "user": settings.db_user,
        "password": settings.db_password,
        "database": settings.db_name,
        "connect_timeout": CONNECT_TIMEOUT_SECONDS,
        "read_timeout": READ_TIMEOUT_SECONDS,
        "charset": "utf8mb4",
        "autocommit": True,
    }


def replication_kwargs(settings: "Settings") -> Dict[str, Any]:
    """Connection settings for the binlog reader's replication socket."""
    return {
        "host": settings.replication_host,
        "port": settings.replication_port,
        "user": settings.db_user,
        "passwd": settings.db_password,
        "connect_timeout": CONNECT_TIMEOUT_SECONDS,
        "read_timeout": READ_TIMEOUT_SECONDS,
    }


class MySQLCatalog:
    """Metadata connection used for start positions and table schemas.

    The connection is opened once per replication session and reopened on
    demand if a schema lookup finds it closed.
    """

    def __init__(
        self,
        conn_kwargs: Dict[str, Any],
        connect: Callable[..., Connection] = pymysql.connect,
    ) -> None:
        self._conn_kwargs = dict(conn_kwargs)
        self._connect = connect
        self._conn: Optional[Connection] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "MySQLCatalog":
        return cls(connection_kwargs(settings))

    def connect(self) -> None:
        self.close()
        self._conn = self._connect(**self._conn_kwargs)
        logger.debug(
            "catalog connected to %s:%s",
            self._conn_kwargs.get("host"),
            self._conn_kwargs.get("port"),
        )

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.close()
        except pymysql.err.Error as exc:
            logger.debug("catalog connection close failed: %s", exc)

    def _ensure_conn(self) -> Connection:
        if self._conn is None or not self._conn.open:
            self.connect()
        assert self._conn is not None
        return self._conn

    def head_position(self) -> BinlogPosition:
        conn = self._ensure_conn()
        last_error: Optional[Exception] = None
        for statement in _HEAD_POSITION_SQL:
            try:
                with conn.cursor() as cur:
                    cur.execute(statement)
                    row = cur.fetchone()
            except pymysql.err.ProgrammingError as exc:
                last_error = exc
                continue
            if not row:
                raise RuntimeError(
                    "binary logging appears disabled: binlog status returned no rows"
                )
            return BinlogPosition(log_file=str(row[0]), log_pos=int(row[1]))
        raise RuntimeError(f"unable to read binlog head position: {last_error}")

    def executed_gtid_set(self) -> str:
        conn = self._ensure_conn()
        with conn.cursor() as cur:
            cur.execute("SELECT @@GLOBAL.gtid_executed")
            row = cur.fetchone()
        if not row or row[0] is None:
            return ""
        return str(row[0]).replace("\n", "")

    def load_schema(self, database: str, table: str) -> TableSchema:
        try:
            conn = self._ensure_conn()
            with conn.cursor() as cur:
                cur.execute(_COLUMNS_SQL, (database, table))
                columns = tuple(str(row[0]) for row in cur.fetchall())
                cur.execute(_PRIMARY_KEY_SQL, (database, table))
                primary_key = tuple(str(row[0]) for row in cur.fetchall())
        except pymysql.err.Error as exc:
            raise SchemaLoadError(database, table, exc) from exc
        if not columns:
            raise SchemaLoadError(database, table, "table not found in catalog")
        return TableSchema(
            database=database, table=table, columns=columns, primary_key=primary_key
        )


__all__ = [
    "MySQLCatalog",
    "connection_kwargs",
    "replication_kwargs",
]
