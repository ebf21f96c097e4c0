import json

import pytest

from kuery.blacklist import DEFAULT_BLACKLIST, Blacklist
from kuery.discovery import (
    APIResource,
    APIResourceList,
    DiscoveryError,
    PartialDiscoveryError,
    parse_group_version,
    run_discovery,
)
from kuery.models import ResourceTypeModel
from kuery.store import StoreConfig, open_store

ALL_VERBS = ["get", "list", "watch", "create", "delete"]


class FakeDiscovery:
    def __init__(self, lists=None, error=None):
        self.lists = lists or []
        self.error = error

    def server_groups_and_resources(self):
        if self.error is not None:
            raise self.error
        return self.lists


@pytest.fixture
def store():
    s = open_store(StoreConfig(driver="sqlite", dsn=":memory:"))
    s.auto_migrate()
    yield s
    s.close()


def count_types(store, cluster, resource=None):
    sql = "SELECT COUNT(*) FROM resource_types WHERE cluster = ?"
    params = [cluster]
    if resource is not None:
        sql += " AND resource = ?"
        params.append(resource)
    return store.raw_db().execute(sql, params).fetchone()[0]


def sample_lists():
    return [
        APIResourceList("v1", [
            APIResource("pods", "Pod", True, list(ALL_VERBS),
                        short_names=["po"], categories=["all"]),
            APIResource("pods/status", "Pod", True, ["get", "patch", "update"]),
            APIResource("secrets", "Secret", True, list(ALL_VERBS)),
            APIResource("configmaps", "ConfigMap", True, list(ALL_VERBS)),
            APIResource("namespaces", "Namespace", False, list(ALL_VERBS)),
        ]),
        APIResourceList("apps/v1", [
            APIResource("deployments", "Deployment", True,
                        ALL_VERBS + ["update", "patch"], singular_name="deployment",
                        short_names=["deploy"], categories=["all"]),
        ]),
    ]


def test_run_discovery(store):
    watchable = run_discovery("test-cluster", FakeDiscovery(sample_lists()), store,
                              Blacklist(DEFAULT_BLACKLIST))

    assert len(watchable) == 4
    assert all(w.gvr.resource != "secrets" for w in watchable)
    assert sorted(w.gvr.resource for w in watchable) == [
        "configmaps", "deployments", "namespaces", "pods"]
    assert count_types(store, "test-cluster") == 4

    row = store.raw_db().execute(
        "SELECT kind, namespaced, api_group, api_version FROM resource_types "
        "WHERE cluster = ? AND resource = ?", ("test-cluster", "deployments"),
    ).fetchone()
    assert row[0] == "Deployment"
    assert row[1] == 1
    assert row[2:] == ("apps", "v1")


def test_run_discovery_records_subresources(store):
    run_discovery("test-cluster", FakeDiscovery(sample_lists()), store,
                  Blacklist(DEFAULT_BLACKLIST))
    row = store.raw_db().execute(
        "SELECT subresources, short_names FROM resource_types "
        "WHERE cluster = ? AND resource = ?", ("test-cluster", "pods"),
    ).fetchone()
    assert json.loads(row[0]) == ["status"]
    assert json.loads(row[1]) == ["po"]


def test_run_discovery_clears_old_entries(store):
    store.upsert_resource_type(ResourceTypeModel(
        cluster="test-cluster", api_group="old.group", api_version="v1",
        kind="OldResource", resource="oldresources",
    ))
    client = FakeDiscovery([APIResourceList("v1", [
        APIResource("configmaps", "ConfigMap", True, ["get", "list", "watch"]),
    ])])
    run_discovery("test-cluster", client, store, Blacklist(None))
    assert count_types(store, "test-cluster", "oldresources") == 0
    assert count_types(store, "test-cluster", "configmaps") == 1


def test_non_watchable_recorded_but_not_returned(store):
    client = FakeDiscovery([APIResourceList("v1", [
        APIResource("bindings", "Binding", True, ["create"]),
    ])])
    watchable = run_discovery("c", client, store, Blacklist(None))
    assert watchable == []
    assert count_types(store, "c", "bindings") == 1


def test_discovered_resource_fields(store):
    client = FakeDiscovery(sample_lists())
    watchable = run_discovery("c", client, store, Blacklist(DEFAULT_BLACKLIST))
    deploy = next(w for w in watchable if w.gvr.resource == "deployments")
    assert deploy.kind == "Deployment"
    assert deploy.singular == "deployment"
    assert deploy.short_names == ["deploy"]
    assert deploy.gvr.group == "apps"
    assert deploy.namespaced is True


def test_partial_error_uses_partial_results(store):
    lists = [None, APIResourceList("v1", [
        APIResource("configmaps", "ConfigMap", True, ["list", "watch"]),
    ])]
    client = FakeDiscovery(error=PartialDiscoveryError("group failed", lists))
    watchable = run_discovery("c", client, store, Blacklist(None))
    assert [w.gvr.resource for w in watchable] == ["configmaps"]


def test_partial_error_without_results_fails(store):
    client = FakeDiscovery(error=PartialDiscoveryError("all failed", []))
    with pytest.raises(DiscoveryError):
        run_discovery("c", client, store, Blacklist(None))


def test_client_error_fails(store):
    client = FakeDiscovery(error=RuntimeError("boom"))
    with pytest.raises(DiscoveryError, match="boom"):
        run_discovery("c", client, store, Blacklist(None))


def test_unparseable_group_version_skipped(store):
    client = FakeDiscovery([
        APIResourceList("a/b/c", [APIResource("things", "Thing", True, ["list", "watch"])]),
        APIResourceList("v1", [APIResource("pods", "Pod", True, ["list", "watch"])]),
    ])
    watchable = run_discovery("c", client, store, Blacklist(None))
    assert [w.gvr.resource for w in watchable] == ["pods"]


@pytest.mark.parametrize("text, expected", [
    ("v1", ("", "v1")),
    ("apps/v1", ("apps", "v1")),
    ("", ("", "")),
    ("/", ("", "")),
])
def test_parse_group_version(text, expected):
    assert parse_group_version(text) == expected


def test_parse_group_version_invalid():
    with pytest.raises(ValueError):
        parse_group_version("a/b/c")