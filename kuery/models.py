"""Row models for synced objects, resource types, clusters and object labels."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Optional

DEFAULT_CLUSTER_TTL = 3600
"""Seconds a stale cluster is kept before garbage collection (one hour)."""


@dataclass(kw_only=True)
class ObjectModel:
    """One synced Kubernetes object.

    JSON columns hold decoded Python values; ``None`` stands for SQL NULL.
    """

    TABLE_NAME: ClassVar[str] = "objects"

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    uid: str = ""
    cluster: str = ""
    api_group: str = ""
    api_version: str = ""
    kind: str = ""
    resource: str = ""
    namespace: str = ""
    name: str = ""
    labels: Any = None
    annotations: Any = None
    owner_refs: Any = None
    conditions: Any = None
    creation_ts: Optional[datetime] = None
    resource_version: str = ""
    object: Any = field(default_factory=dict)


@dataclass(kw_only=True)
class ResourceTypeModel:
    """A flattened REST mapping entry populated from cluster discovery."""

    TABLE_NAME: ClassVar[str] = "resource_types"

    cluster: str = ""
    api_group: str = ""
    api_version: str = ""
    kind: str = ""
    singular: str = ""
    resource: str = ""
    short_names: Any = None
    categories: Any = None
    namespaced: bool = False
    subresources: Any = None
    identity: str = ""


@dataclass
class ClusterModel:
    """Health and lifecycle record of one cluster."""

    TABLE_NAME: ClassVar[str] = "clusters"

    name: str
    status: str
    last_seen: datetime
    engaged_at: Optional[datetime] = None
    labels: Any = None
    ttl: int = DEFAULT_CLUSTER_TTL


@dataclass
class ObjectLabelModel:
    """One label of an object, kept in a side table for label lookups."""

    TABLE_NAME: ClassVar[str] = "object_labels"

    object_id: uuid.UUID
    key: str
    value: str