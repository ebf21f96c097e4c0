import uuid
from datetime import datetime, timezone

import pytest

from kuery.blacklist import GroupVersionResource
from kuery.handler import (
    DeletedFinalStateUnknown,
    EventHandler,
    extract_conditions,
    object_id,
)
from kuery.store import StoreConfig, open_store


@pytest.fixture
def store():
    s = open_store(StoreConfig(driver="sqlite", dsn=":memory:"))
    s.auto_migrate()
    yield s
    s.close()


@pytest.fixture
def handler(store):
    return EventHandler(
        store=store,
        cluster_name="test-cluster",
        gvr=GroupVersionResource("apps", "v1", "deployments"),
        kind="Deployment",
    )


def deployment(name, namespace):
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": "uid-" + name,
            "resourceVersion": "100",
            "creationTimestamp": "2025-06-01T00:00:00Z",
            "labels": {"app": name},
        },
        "spec": {"replicas": 3},
        "status": {"conditions": [{"type": "Available", "status": "True"}]},
    }


def count(store, name):
    return store.raw_db().execute(
        "SELECT COUNT(*) FROM objects WHERE name = ? AND cluster = ?",
        (name, "test-cluster"),
    ).fetchone()[0]


def fetch(store, name):
    row = store.raw_db().execute(
        "SELECT id FROM objects WHERE name = ? AND cluster = ?", (name, "test-cluster"),
    ).fetchone()
    return store.get_object(uuid.UUID(row[0]))


def test_on_add(store, handler):
    handler.on_add(deployment("nginx", "default"), True)
    assert count(store, "nginx") == 1

    stored = fetch(store, "nginx")
    assert stored.uid == "uid-nginx"
    assert stored.kind == "Deployment"
    assert stored.namespace == "default"
    assert stored.api_group == "apps"
    assert stored.api_version == "v1"
    assert stored.resource == "deployments"
    assert stored.labels["app"] == "nginx"
    assert len(stored.conditions) == 1
    assert stored.conditions[0]["type"] == "Available"
    assert stored.creation_ts == datetime(2025, 6, 1, tzinfo=timezone.utc)
    assert stored.object["spec"]["replicas"] == 3


def test_on_update(store, handler):
    obj = deployment("nginx", "default")
    handler.on_add(obj, True)

    updated = deployment("nginx", "default")
    updated["metadata"]["resourceVersion"] = "200"
    updated["spec"]["replicas"] = 5
    handler.on_update(obj, updated)

    stored = fetch(store, "nginx")
    assert stored.resource_version == "200"
    assert stored.object["spec"]["replicas"] == 5
    assert count(store, "nginx") == 1


def test_on_delete(store, handler):
    obj = deployment("nginx", "default")
    handler.on_add(obj, True)
    handler.on_delete(obj)
    assert count(store, "nginx") == 0


def test_on_delete_final_state_unknown(store, handler):
    obj = deployment("nginx", "default")
    handler.on_add(obj, True)
    handler.on_delete(DeletedFinalStateUnknown(key="default/nginx", obj=obj))
    assert count(store, "nginx") == 0


def test_deterministic_id(store, handler):
    obj = deployment("nginx", "default")
    handler.on_add(obj, True)
    first = fetch(store, "nginx").id

    handler.on_delete(obj)
    handler.on_add(obj, False)
    second = fetch(store, "nginx").id

    assert first == second
    assert first == object_id("test-cluster", "apps", "Deployment", "default", "nginx")


def test_object_id_properties():
    a = object_id("c", "apps", "Deployment", "default", "nginx")
    assert a.version == 5
    assert a == object_id("c", "apps", "Deployment", "default", "nginx")
    assert a != object_id("c", "apps", "Deployment", "default", "other")


def test_owner_refs(store):
    handler = EventHandler(
        store=store,
        cluster_name="test-cluster",
        gvr=GroupVersionResource("apps", "v1", "replicasets"),
        kind="ReplicaSet",
    )
    obj = {
        "apiVersion": "apps/v1",
        "kind": "ReplicaSet",
        "metadata": {
            "name": "nginx-abc123",
            "namespace": "default",
            "uid": "rs-uid",
            "resourceVersion": "50",
            "ownerReferences": [{
                "apiVersion": "apps/v1",
                "kind": "Deployment",
                "name": "nginx",
                "uid": "deploy-uid",
            }],
        },
    }
    handler.on_add(obj, True)

    stored = fetch(store, "nginx-abc123")
    assert len(stored.owner_refs) == 1
    assert stored.owner_refs[0]["uid"] == "deploy-uid"
    assert stored.owner_refs[0]["kind"] == "Deployment"
    assert stored.creation_ts is None
    assert stored.conditions == []


def test_non_object_ignored(store, handler):
    handler.on_add("not an object", True)
    handler.on_delete(42)
    assert store.raw_db().execute("SELECT COUNT(*) FROM objects").fetchone()[0] == 0


def test_to_object_model_rejects_unserialisable(handler):
    obj = deployment("nginx", "default")
    obj["spec"]["bad"] = object()
    with pytest.raises(ValueError, match="marshal object"):
        handler.to_object_model(obj)


def test_to_object_model_without_labels(handler):
    obj = deployment("nginx", "default")
    del obj["metadata"]["labels"]
    model = handler.to_object_model(obj)
    assert model.labels is None
    assert model.annotations is None
    assert model.owner_refs is None


@pytest.mark.parametrize("obj, expected", [
    ({}, []),
    ({"status": "broken"}, []),
    ({"status": {}}, []),
    ({"status": {"conditions": [{"type": "Ready"}]}}, [{"type": "Ready"}]),
])
def test_extract_conditions(obj, expected):
    assert extract_conditions(obj) == expected