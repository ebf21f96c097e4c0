"""Database access for synced objects, resource types and clusters."""

from __future__ import annotations

import contextlib
import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from .models import (
    DEFAULT_CLUSTER_TTL,
    ClusterModel,
    ObjectModel,
    ResourceTypeModel,
)

_DRIVERS = ("sqlite", "postgres")


class StoreError(Exception):
    """A database operation failed."""


class NotFoundError(StoreError, LookupError):
    """The requested record does not exist."""


class UnsupportedDriverError(StoreError, ValueError):
    """The configured database driver is not known."""

    def __init__(self, driver: str) -> None:
        super().__init__(f"unsupported database driver: {driver}")
        self.driver = driver


@dataclass
class StoreConfig:
    """Connection settings.

    ``driver`` is ``"sqlite"`` or ``"postgres"``. For PostgreSQL, ``connect``
    is a DB-API connect function that is called with ``dsn``.
    """

    driver: str
    dsn: str
    connect: Optional[Callable[[str], Any]] = None


_TYPES = {
    "sqlite": {"json": "TEXT", "uuid": "TEXT", "ts": "TEXT", "bool": "INTEGER"},
    "postgres": {"json": "jsonb", "uuid": "uuid", "ts": "timestamptz", "bool": "boolean"},
}

_CORE_DDL = (
    """CREATE TABLE IF NOT EXISTS objects (
        id {uuid} PRIMARY KEY,
        uid varchar(256) NOT NULL,
        cluster varchar(256) NOT NULL,
        api_group varchar(256) NOT NULL DEFAULT '',
        api_version varchar(64) NOT NULL,
        kind varchar(256) NOT NULL,
        resource varchar(256) NOT NULL,
        namespace varchar(256) NOT NULL DEFAULT '',
        name varchar(256) NOT NULL,
        labels {json},
        annotations {json},
        owner_refs {json},
        conditions {json},
        creation_ts {ts},
        resource_version varchar(64),
        object {json} NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_obj_uid ON objects (uid)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_obj_unique "
    "ON objects (cluster, api_group, kind, namespace, name)",
    "CREATE INDEX IF NOT EXISTS idx_obj_cluster_gvk ON objects (cluster, api_group, kind)",
    "CREATE INDEX IF NOT EXISTS idx_obj_cluster_ns_name ON objects (kind, namespace, name)",
    "CREATE INDEX IF NOT EXISTS idx_obj_name ON objects (name)",
    "CREATE INDEX IF NOT EXISTS idx_obj_creation_ts ON objects (creation_ts)",
    """CREATE TABLE IF NOT EXISTS resource_types (
        cluster varchar(256) NOT NULL,
        api_group varchar(256) NOT NULL DEFAULT '',
        api_version varchar(64) NOT NULL,
        kind varchar(256) NOT NULL,
        singular varchar(256),
        resource varchar(256) NOT NULL,
        short_names {json},
        categories {json},
        namespaced {bool} NOT NULL,
        subresources {json},
        identity varchar(256) NOT NULL DEFAULT '',
        PRIMARY KEY (cluster, api_group, resource, identity)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_rt_kind ON resource_types (cluster, kind)",
    "CREATE INDEX IF NOT EXISTS idx_rt_resource ON resource_types (cluster, resource)",
    """CREATE TABLE IF NOT EXISTS clusters (
        name varchar(256) PRIMARY KEY,
        status varchar(64) NOT NULL,
        last_seen {ts} NOT NULL,
        engaged_at {ts},
        labels {json},
        ttl bigint DEFAULT 3600
    )""",
)

_SQLITE_DDL = (
    """CREATE TABLE IF NOT EXISTS object_labels (
        object_id TEXT NOT NULL,
        key varchar(256) NOT NULL,
        value varchar(256) NOT NULL,
        PRIMARY KEY (object_id, key)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_labels_kv ON object_labels (key, value)",
)

_POSTGRES_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_obj_labels_gin ON objects USING GIN(labels)",
    "CREATE INDEX IF NOT EXISTS idx_obj_owner_refs_gin ON objects USING GIN(owner_refs)",
    "CREATE INDEX IF NOT EXISTS idx_obj_conditions_gin ON objects USING GIN(conditions)",
    "CREATE INDEX IF NOT EXISTS idx_rt_categories_gin ON resource_types USING GIN(categories)",
    "CREATE INDEX IF NOT EXISTS idx_rt_short_names_gin ON resource_types USING GIN(short_names)",
)

_OBJECT_COLUMNS = (
    "id", "uid", "cluster", "api_group", "api_version", "kind", "resource",
    "namespace", "name", "labels", "annotations", "owner_refs", "conditions",
    "creation_ts", "resource_version", "object",
)
_OBJECT_UPDATES = (
    "uid", "api_version", "resource", "labels", "annotations",
    "owner_refs", "conditions", "creation_ts", "resource_version", "object",
)
_RT_COLUMNS = (
    "cluster", "api_group", "api_version", "kind", "singular", "resource",
    "short_names", "categories", "namespaced", "subresources", "identity",
)
_RT_UPDATES = (
    "api_version", "kind", "singular", "short_names",
    "categories", "namespaced", "subresources",
)
_CLUSTER_COLUMNS = ("name", "status", "last_seen", "engaged_at", "labels", "ttl")
_CLUSTER_UPDATES = ("status", "last_seen", "engaged_at", "labels", "ttl")


def _upsert_sql(table: str, columns: tuple, conflict: tuple, updates: tuple) -> str:
    placeholders = ", ".join("?" for _ in columns)
    assignments = ", ".join(f"{c} = excluded.{c}" for c in updates)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT ({', '.join(conflict)}) DO UPDATE SET {assignments}"
    )


def _decode_json(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode()
    if isinstance(value, str):
        return json.loads(value)
    return value


def _decode_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class Store:
    """Reads and writes the kuery tables over a DB-API connection."""

    def __init__(self, connection: Any, driver: str) -> None:
        if driver not in _DRIVERS:
            raise UnsupportedDriverError(driver)
        self._conn = connection
        self._driver = driver
        self._lock = threading.RLock()
        self._db_error = getattr(connection, "Error", Exception)

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # -- encoding -------------------------------------------------------

    def _time(self, value: Optional[datetime]) -> Any:
        if value is None:
            return None
        utc = value.astimezone(timezone.utc)
        if self._driver == "postgres":
            return utc
        return utc.isoformat(timespec="microseconds")

    @staticmethod
    def _json(value: Any) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, separators=(",", ":"))

    # -- execution ------------------------------------------------------

    @contextlib.contextmanager
    def _cursor(self, context: str) -> Iterator[Any]:
        with self._lock:
            try:
                cursor = self._conn.cursor()
            except self._db_error as exc:
                raise StoreError(f"{context}: {exc}") from exc
            try:
                yield cursor
                self._conn.commit()
            except self._db_error as exc:
                with contextlib.suppress(self._db_error):
                    self._conn.rollback()
                raise StoreError(f"{context}: {exc}") from exc
            finally:
                with contextlib.suppress(self._db_error):
                    cursor.close()

    def _sql(self, sql: str) -> str:
        return sql.replace("?", "%s") if self._driver == "postgres" else sql

    def _exec(self, context: str, sql: str, params: tuple = ()) -> None:
        with self._cursor(context) as cursor:
            cursor.execute(self._sql(sql), params)

    def _query(self, context: str, sql: str, params: tuple = ()) -> list:
        with self._cursor(context) as cursor:
            cursor.execute(self._sql(sql), params)
            return list(cursor.fetchall())

    # -- schema ---------------------------------------------------------

    def auto_migrate(self) -> None:
        """Create the tables and indexes if they are missing."""
        types = _TYPES[self._driver]
        for statement in _CORE_DDL:
            self._exec("auto-migrate core tables", statement.format(**types))
        if self._driver == "sqlite":
            for statement in _SQLITE_DDL:
                self._exec("sqlite-specific migration", statement)
        else:
            for statement in _POSTGRES_DDL:
                self._exec("postgres-specific migration", statement)

    # -- objects --------------------------------------------------------

    def upsert_object(self, obj: ObjectModel) -> None:
        """Insert an object, or update the one with the same identity key."""
        params = (
            str(obj.id), obj.uid, obj.cluster, obj.api_group, obj.api_version,
            obj.kind, obj.resource, obj.namespace, obj.name,
            self._json(obj.labels), self._json(obj.annotations),
            self._json(obj.owner_refs), self._json(obj.conditions),
            self._time(obj.creation_ts), obj.resource_version, self._json(obj.object),
        )
        sql = _upsert_sql(
            "objects", _OBJECT_COLUMNS,
            ("cluster", "api_group", "kind", "namespace", "name"), _OBJECT_UPDATES,
        )
        self._exec("upsert object", sql, params)

    def delete_object(self, cluster: str, api_group: str, kind: str,
                      namespace: str, name: str) -> None:
        """Delete the object with the given identity key, if any."""
        self._exec(
            "delete object",
            "DELETE FROM objects WHERE cluster = ? AND api_group = ? AND kind = ? "
            "AND namespace = ? AND name = ?",
            (cluster, api_group, kind, namespace, name),
        )

    def get_object(self, object_id: uuid.UUID) -> ObjectModel:
        """Return the object with the given id or raise NotFoundError."""
        rows = self._query(
            "get object",
            f"SELECT {', '.join(_OBJECT_COLUMNS)} FROM objects WHERE id = ? LIMIT 1",
            (str(object_id),),
        )
        if not rows:
            raise NotFoundError(f"object {object_id} not found")
        row = dict(zip(_OBJECT_COLUMNS, rows[0]))
        for key in ("labels", "annotations", "owner_refs", "conditions", "object"):
            row[key] = _decode_json(row[key])
        row["id"] = uuid.UUID(str(row["id"]))
        row["creation_ts"] = _decode_time(row["creation_ts"])
        row["resource_version"] = row["resource_version"] or ""
        return ObjectModel(**row)

    # -- resource types -------------------------------------------------

    def upsert_resource_type(self, rt: ResourceTypeModel) -> None:
        """Insert a resource type, or update the one with the same key."""
        params = (
            rt.cluster, rt.api_group, rt.api_version, rt.kind, rt.singular,
            rt.resource, self._json(rt.short_names), self._json(rt.categories),
            bool(rt.namespaced), self._json(rt.subresources), rt.identity,
        )
        sql = _upsert_sql(
            "resource_types", _RT_COLUMNS,
            ("cluster", "api_group", "resource", "identity"), _RT_UPDATES,
        )
        self._exec("upsert resource type", sql, params)

    def delete_resource_types_for_cluster(self, cluster: str) -> None:
        """Delete every resource type recorded for a cluster."""
        self._exec(
            "delete resource types",
            "DELETE FROM resource_types WHERE cluster = ?",
            (cluster,),
        )

    # -- clusters -------------------------------------------------------

    def upsert_cluster(self, cluster: ClusterModel) -> None:
        """Insert a cluster record, or update the one with the same name."""
        params = (
            cluster.name, cluster.status, self._time(cluster.last_seen),
            self._time(cluster.engaged_at), self._json(cluster.labels),
            cluster.ttl or DEFAULT_CLUSTER_TTL,
        )
        sql = _upsert_sql("clusters", _CLUSTER_COLUMNS, ("name",), _CLUSTER_UPDATES)
        self._exec("upsert cluster", sql, params)

    @staticmethod
    def _cluster_from_row(row: tuple) -> ClusterModel:
        name, status, last_seen, engaged_at, labels, ttl = row
        return ClusterModel(
            name=name,
            status=status,
            last_seen=_decode_time(last_seen),
            engaged_at=_decode_time(engaged_at),
            labels=_decode_json(labels),
            ttl=int(ttl) if ttl is not None else DEFAULT_CLUSTER_TTL,
        )

    def get_cluster(self, name: str) -> ClusterModel:
        """Return the named cluster or raise NotFoundError."""
        rows = self._query(
            "get cluster",
            f"SELECT {', '.join(_CLUSTER_COLUMNS)} FROM clusters WHERE name = ? LIMIT 1",
            (name,),
        )
        if not rows:
            raise NotFoundError(f"cluster {name} not found")
        return self._cluster_from_row(rows[0])

    def list_stale_clusters(self, expired_before: datetime) -> list[ClusterModel]:
        """Return stale clusters last seen before the given time."""
        rows = self._query(
            "list stale clusters",
            f"SELECT {', '.join(_CLUSTER_COLUMNS)} FROM clusters "
            "WHERE status = ? AND last_seen < ?",
            ("stale", self._time(expired_before)),
        )
        return [self._cluster_from_row(row) for row in rows]

    def delete_cluster(self, name: str) -> None:
        """Delete a cluster record."""
        self._exec("delete cluster", "DELETE FROM clusters WHERE name = ?", (name,))

    def delete_objects_for_cluster(self, cluster: str) -> None:
        """Delete every object synced from a cluster."""
        self._exec(
            "delete objects for cluster",
            "DELETE FROM objects WHERE cluster = ?",
            (cluster,),
        )

    # -- misc -----------------------------------------------------------

    def raw_db(self) -> Any:
        """Return the underlying DB-API connection."""
        return self._conn

    def driver(self) -> str:
        """Return the driver name, ``"sqlite"`` or ``"postgres"``."""
        return self._driver

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            try:
                self._conn.close()
            except self._db_error as exc:
                raise StoreError(f"close: {exc}") from exc


def _open_sqlite(dsn: str) -> sqlite3.Connection:
    connection = sqlite3.connect(dsn, check_same_thread=False)
    for pragma in ("PRAGMA journal_mode=WAL", "PRAGMA foreign_keys=ON"):
        with contextlib.suppress(sqlite3.Error):
            connection.execute(pragma)
    return connection


def open_store(config: StoreConfig) -> Store:
    """Open a Store for the configured driver."""
    if config.driver not in _DRIVERS:
        raise UnsupportedDriverError(config.driver)
    try:
        if config.driver == "sqlite":
            connection = _open_sqlite(config.dsn)
        else:
            if config.connect is None:
                raise StoreError("no postgres connect function configured")
            connection = config.connect(config.dsn)
    except Exception as exc:
        raise StoreError(f"failed to open database: {exc}") from exc
    return Store(connection, config.driver)