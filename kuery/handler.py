"""Informer event handling that mirrors Kubernetes objects into the store."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .blacklist import GroupVersionResource
from .models import ObjectModel
from .store import Store, StoreError

logger = logging.getLogger(__name__)

OBJECT_ID_NAMESPACE = uuid.UUID("a1b2c3d4-e5f6-4a7b-8c9d-0e1f2a3b4c5d")
"""Namespace for deterministic object ids."""


def object_id(cluster: str, api_group: str, kind: str, namespace: str, name: str) -> uuid.UUID:
    """Return the deterministic UUIDv5 of an object's identity key."""
    key = f"{cluster}/{api_group}/{kind}/{namespace}/{name}"
    return uuid.uuid5(OBJECT_ID_NAMESPACE, key)


@dataclass
class DeletedFinalStateUnknown:
    """Tombstone for an object whose final state was missed."""

    key: str
    obj: Any


def _as_object(obj: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(obj, DeletedFinalStateUnknown):
        obj = obj.obj
    return obj if isinstance(obj, Mapping) else None


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    meta = obj.get("metadata")
    return meta if isinstance(meta, Mapping) else {}


def _string(meta: Mapping[str, Any], key: str) -> str:
    value = meta.get(key)
    return value if isinstance(value, str) else ""


def _string_map(meta: Mapping[str, Any], key: str) -> Optional[dict[str, str]]:
    value = meta.get(key)
    if not isinstance(value, Mapping):
        return None
    return {k: v for k, v in value.items() if isinstance(v, str)}


def _owner_refs(meta: Mapping[str, Any]) -> Optional[list[dict[str, Any]]]:
    value = meta.get("ownerReferences")
    if not isinstance(value, list):
        return None
    refs = []
    for item in value:
        if not isinstance(item, Mapping):
            continue
        ref: dict[str, Any] = {
            key: _string(item, key) for key in ("apiVersion", "kind", "name", "uid")
        }
        for flag in ("controller", "blockOwnerDeletion"):
            if isinstance(item.get(flag), bool):
                ref[flag] = item[flag]
        refs.append(ref)
    return refs


def _creation_time(meta: Mapping[str, Any]) -> Optional[datetime]:
    value = meta.get("creationTimestamp")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def extract_conditions(obj: Mapping[str, Any]) -> Any:
    """Return ``status.conditions`` of an object, or an empty list."""
    status = obj.get("status")
    if not isinstance(status, Mapping) or "conditions" not in status:
        return []
    try:
        return json.loads(json.dumps(status["conditions"]))
    except (TypeError, ValueError):
        return []


@dataclass
class EventHandler:
    """Writes informer add, update and delete events of one resource to the store."""

    store: Store
    cluster_name: str
    gvr: GroupVersionResource
    kind: str

    def on_add(self, obj: Any, is_in_initial_list: bool) -> None:
        self._upsert(obj)

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        self._upsert(new_obj)

    def on_delete(self, obj: Any) -> None:
        item = _as_object(obj)
        if item is None:
            return
        meta = _metadata(item)
        namespace, name = _string(meta, "namespace"), _string(meta, "name")
        try:
            self.store.delete_object(self.cluster_name, self.gvr.group, self.kind,
                                     namespace, name)
        except StoreError:
            logger.exception("failed to delete object cluster=%s kind=%s namespace=%s name=%s",
                             self.cluster_name, self.kind, namespace, name)

    def _upsert(self, obj: Any) -> None:
        item = _as_object(obj)
        if item is None:
            return
        meta = _metadata(item)
        namespace, name = _string(meta, "namespace"), _string(meta, "name")
        try:
            model = self.to_object_model(item)
        except ValueError:
            logger.exception("failed to convert object cluster=%s kind=%s namespace=%s name=%s",
                             self.cluster_name, self.kind, namespace, name)
            return
        try:
            self.store.upsert_object(model)
        except StoreError:
            logger.exception("failed to upsert object cluster=%s kind=%s namespace=%s name=%s",
                             self.cluster_name, self.kind, namespace, name)

    def to_object_model(self, obj: Mapping[str, Any]) -> ObjectModel:
        """Build the stored row for an object; raises ValueError if it is not JSON."""
        try:
            document = json.loads(json.dumps(obj))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"marshal object: {exc}") from exc

        meta = _metadata(obj)
        namespace, name = _string(meta, "namespace"), _string(meta, "name")
        return ObjectModel(
            id=object_id(self.cluster_name, self.gvr.group, self.kind, namespace, name),
            uid=_string(meta, "uid"),
            cluster=self.cluster_name,
            api_group=self.gvr.group,
            api_version=self.gvr.version,
            kind=self.kind,
            resource=self.gvr.resource,
            namespace=namespace,
            name=name,
            labels=_string_map(meta, "labels"),
            annotations=_string_map(meta, "annotations"),
            owner_refs=_owner_refs(meta),
            conditions=extract_conditions(obj),
            creation_ts=_creation_time(meta),
            resource_version=_string(meta, "resourceVersion"),
            object=document,
        )