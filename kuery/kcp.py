"""kcp-specific discovery that records APIExport identities on resource types."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

from .blacklist import GroupVersionResource
from .discovery import DiscoveredResource
from .store import Store, StoreError

logger = logging.getLogger(__name__)

KCP_API_EXPORT_GVR = GroupVersionResource("apis.kcp.io", "v1alpha1", "apiexports")
"""Resource of kcp APIExport objects."""

REFS_ANNOTATION = "kuery.io/refs"
"""Annotation that holds custom reference paths as JSON."""


class _DynamicClient(Protocol):
    def list_resources(self, gvr: GroupVersionResource) -> Iterable[Mapping[str, Any]]:
        ...


@dataclass
class DiscoveredResourceWithIdentity:
    """A discovered resource together with its kcp identity, if any."""

    resource: DiscoveredResource
    identity: str = ""

    @property
    def gvr(self) -> GroupVersionResource:
        return self.resource.gvr

    @property
    def kind(self) -> str:
        return self.resource.kind


def _run(store: Store, sql: str, params: tuple, fetch: bool = False) -> list:
    connection = store.raw_db()
    if store.driver() == "postgres":
        sql = sql.replace("?", "%s")
    db_error = getattr(connection, "Error", Exception)
    cursor = connection.cursor()
    try:
        cursor.execute(sql, params)
        rows = list(cursor.fetchall()) if fetch else []
        connection.commit()
        return rows
    except db_error as exc:
        with contextlib.suppress(db_error):
            connection.rollback()
        raise StoreError(str(exc)) from exc
    finally:
        with contextlib.suppress(db_error):
            cursor.close()


def _nested(obj: Mapping[str, Any], *keys: str) -> Any:
    value: Any = obj
    for key in keys:
        if not isinstance(value, Mapping) or key not in value:
            return None
        value = value[key]
    return value


def _split_schema_name(schema_name: str) -> Optional[tuple[str, str]]:
    """Return ``(group, resource)`` of a ``<version>.<resource>.<group>`` name."""
    parts = schema_name.split(".", 2)
    if len(parts) < 2:
        return None
    resource = parts[1]
    group = parts[2] if len(parts) == 3 else ""
    return group, resource


def run_kcp_discovery(cluster_name: str, dynamic_client: _DynamicClient, store: Store) -> None:
    """Record the identity of every resource type provided by a kcp APIExport.

    A cluster that does not serve APIExports is not a kcp cluster and is
    skipped silently.
    """
    try:
        exports = list(dynamic_client.list_resources(KCP_API_EXPORT_GVR))
    except Exception as exc:
        logger.debug("kcp APIExports not available for cluster %s, skipping: %s",
                     cluster_name, exc)
        return

    for export in exports:
        if not isinstance(export, Mapping):
            continue
        identity = _nested(export, "status", "identityHash")
        if not isinstance(identity, str) or not identity:
            continue
        schemas = _nested(export, "spec", "latestResourceSchemas")
        if not isinstance(schemas, list):
            continue

        for schema_name in schemas:
            if not isinstance(schema_name, str):
                continue
            split = _split_schema_name(schema_name)
            if split is None:
                continue
            group, resource = split
            try:
                update_resource_type_identity(store, cluster_name, group, resource, identity)
            except StoreError as exc:
                logger.debug("failed to update identity of %s in group %r: %s",
                             resource, group, exc)

        logger.debug("processed APIExport %s with identity %s",
                     _nested(export, "metadata", "name"), identity)


def update_resource_type_identity(store: Store, cluster_name: str, api_group: str,
                                  resource: str, identity: str) -> None:
    """Set the identity of a cluster's resource type."""
    _run(
        store,
        "UPDATE resource_types SET identity = ? "
        "WHERE cluster = ? AND api_group = ? AND resource = ?",
        (identity, cluster_name, api_group, resource),
    )


def get_identity_for_resource(store: Store, cluster_name: str, api_group: str,
                              resource: str) -> str:
    """Return the kcp identity of a resource, or an empty string."""
    try:
        rows = _run(
            store,
            "SELECT identity FROM resource_types "
            "WHERE cluster = ? AND api_group = ? AND resource = ? AND identity != '' "
            "LIMIT 1",
            (cluster_name, api_group, resource),
            fetch=True,
        )
    except StoreError:
        return ""
    return rows[0][0] if rows else ""


def enrich_with_kcp_identity(store: Store, cluster_name: str,
                             resources: Sequence[DiscoveredResource]
                             ) -> list[DiscoveredResourceWithIdentity]:
    """Pair each discovered resource with the identity recorded for it."""
    return [
        DiscoveredResourceWithIdentity(
            resource=res,
            identity=get_identity_for_resource(
                store, cluster_name, res.gvr.group, res.gvr.resource),
        )
        for res in resources
    ]


def parse_kcp_refs_annotation(annotations: Mapping[str, str]) -> Optional[str]:
    """Return the ``kuery.io/refs`` annotation if it holds valid JSON, else None."""
    value = annotations.get(REFS_ANNOTATION)
    if not value:
        return None
    try:
        json.loads(value)
    except (TypeError, ValueError):
        return None
    return value