# kuery

kuery keeps an inventory of Kubernetes-style objects from many clusters in a
single relational database. Discovery fills a flattened table of resource types
per cluster, event handlers write objects as they are added, updated and
deleted, and cluster health is tracked so that stale clusters can be found
later. It has no dependencies outside the standard library.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Opening a store

```python
from kuery.store import StoreConfig, open_store

with open_store(StoreConfig(driver="sqlite", dsn=":memory:")) as store:
    store.auto_migrate()
    ...
```

The `sqlite` driver opens the database with the standard `sqlite3` module. The
`postgres` driver needs a DB-API connect function, passed as
`StoreConfig(driver="postgres", dsn=..., connect=...)`; it is called with the
DSN. Any other driver raises `UnsupportedDriverError`.

`auto_migrate()` creates the `objects`, `resource_types` and `clusters` tables
with their indexes. On SQLite it also creates the `object_labels` table; on
PostgreSQL it adds GIN indexes on the JSON columns.

`Store` offers:

- `upsert_object`, `get_object`, `delete_object`, `delete_objects_for_cluster`
  for `ObjectModel` rows, unique by cluster, API group, kind, namespace and name;
- `upsert_resource_type`, `delete_resource_types_for_cluster` for
  `ResourceTypeModel` rows;
- `upsert_cluster`, `get_cluster`, `list_stale_clusters(expired_before)`,
  `delete_cluster` for `ClusterModel` rows;
- `raw_db()`, `driver()` and `close()`.

A missing object or cluster raises `NotFoundError`; database failures raise
`StoreError`. The row models live in `kuery.models`.

## Discovery

`run_discovery(cluster_name, client, store, blacklist)` calls
`client.server_groups_and_resources()` for a sequence of `APIResourceList`s. It
then clears the cluster's old resource types, records every top-level resource
that is not blacklisted (subresources such as `pods/status` are stored in their
parent's `subresources` list), and returns the `DiscoveredResource`s that
support both `list` and `watch`. A client may raise `PartialDiscoveryError`
carrying the lists it did get; discovery goes on with those, and fails with
`DiscoveryError` only when nothing was returned.

```python
from kuery.blacklist import Blacklist, DEFAULT_BLACKLIST, GroupResource
from kuery.discovery import run_discovery

blacklist = Blacklist(DEFAULT_BLACKLIST)  # secrets and events
assert blacklist.is_blacklisted(GroupResource("", "secrets"))

watchable = run_discovery("cluster-a", client, store, blacklist)
```

## Syncing objects

An `EventHandler` turns plain object dictionaries into `ObjectModel` rows,
pulling out labels, annotations, owner references, `status.conditions`, the
creation timestamp and the resource version. The row id is a UUIDv5 of
cluster, group, kind, namespace and name (`object_id()`), so deleting and
re-adding an object keeps the same id. `on_delete` also accepts a
`DeletedFinalStateUnknown` tombstone.

```python
from kuery.blacklist import GroupVersionResource
from kuery.handler import EventHandler

handler = EventHandler(store, "cluster-a",
                       GroupVersionResource("apps", "v1", "deployments"), "Deployment")
handler.on_add(deployment, True)
handler.on_update(deployment, updated_deployment)
handler.on_delete(updated_deployment)
```

## Clusters

`SyncController(SyncConfig(store=store))` tracks which clusters are engaged;
the blacklist defaults to `DEFAULT_BLACKLIST` and the resync period to ten
minutes. `engage(cluster_name, cluster)` marks the cluster active, runs
discovery, and starts background threads that register an `EventHandler` for
each watchable resource and refresh discovery when custom resource definitions
change (at most every 30 seconds). `disengage(cluster_name)` stops those
threads and marks the cluster `stale`. `is_engaged(cluster_name)` reports
whether a cluster is running.

The `cluster` object must provide `discovery_client()` and
`informer_factory(resync_period)`; the factory must provide
`add_event_handler(gvr, handler)`, `start(stop_event)` and
`wait_for_cache_sync(stop_event)`.

## kcp identities

`run_kcp_discovery(cluster_name, dynamic_client, store)` reads APIExports
through `dynamic_client.list_resources(gvr)` and stores each export's identity
hash on the matching resource types; a cluster without APIExports is skipped.
`get_identity_for_resource()` and `enrich_with_kcp_identity()` read them back.
`parse_kcp_refs_annotation()` returns the `kuery.io/refs` annotation when it
holds valid JSON, and `None` otherwise.

## What it does not do

kuery does not talk to Kubernetes itself: the discovery client, the informer
factory and the dynamic client are supplied by the caller. It has no query
language or API for searching the inventory beyond the `Store` methods above,
no server, and no command-line tool. Stale clusters are only found by
`list_stale_clusters`; removing them and their objects is left to the caller.