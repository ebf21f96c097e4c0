"""Per-cluster sync lifecycle: discovery, informers and CRD-driven refresh."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from .blacklist import DEFAULT_BLACKLIST, Blacklist, GroupVersionResource
from .discovery import DiscoveredResource, DiscoveryClient, DiscoveryError, run_discovery
from .handler import EventHandler
from .models import ClusterModel
from .store import Store, StoreError

logger = logging.getLogger(__name__)

DEFAULT_RESYNC_PERIOD = timedelta(minutes=10)
"""Default informer resync interval."""

CRD_RESYNC_PERIOD = timedelta(minutes=5)
"""Resync interval of the CRD watch."""

CRD_REFRESH_INTERVAL = timedelta(seconds=30)
"""Minimum time between two discovery refreshes caused by CRD changes."""

CRD_GVR = GroupVersionResource("apiextensions.k8s.io", "v1", "customresourcedefinitions")


class _InformerFactory(Protocol):
    def add_event_handler(self, gvr: GroupVersionResource, handler: Any) -> None:
        ...

    def start(self, stop: threading.Event) -> None:
        ...

    def wait_for_cache_sync(self, stop: threading.Event) -> None:
        ...


class _Cluster(Protocol):
    def discovery_client(self) -> DiscoveryClient:
        ...

    def informer_factory(self, resync_period: timedelta) -> _InformerFactory:
        ...


@dataclass
class SyncConfig:
    """Settings of a SyncController; unset values get defaults."""

    store: Store
    blacklist: Optional[Blacklist] = None
    resync_period: timedelta = timedelta(0)


@dataclass
class _ClusterState:
    stop: threading.Event
    threads: list[threading.Thread] = field(default_factory=list)


class _CRDRefreshHandler:
    """Calls ``refresh`` on any CRD change, at most once per interval."""

    def __init__(self, refresh: Callable[[], None], interval: timedelta) -> None:
        self._refresh = refresh
        self._interval = interval.total_seconds()
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def _trigger(self) -> None:
        with self._lock:
            now = time.monotonic()
            if self._last is not None and now - self._last < self._interval:
                return
            self._last = now
        self._refresh()

    def on_add(self, obj: Any, is_in_initial_list: bool) -> None:
        self._trigger()

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        self._trigger()

    def on_delete(self, obj: Any) -> None:
        self._trigger()


class SyncController:
    """Runs informers per engaged cluster that mirror its objects into the store."""

    def __init__(self, config: SyncConfig) -> None:
        self._config = replace(
            config,
            resync_period=config.resync_period or DEFAULT_RESYNC_PERIOD,
            blacklist=(config.blacklist if config.blacklist is not None
                       else Blacklist(DEFAULT_BLACKLIST)),
        )
        self._lock = threading.Lock()
        self._clusters: dict[str, _ClusterState] = {}

    @property
    def config(self) -> SyncConfig:
        return self._config

    def is_engaged(self, cluster_name: str) -> bool:
        """Return True while the cluster's informers are running."""
        with self._lock:
            return cluster_name in self._clusters

    def _stop(self, cluster_name: str) -> None:
        with self._lock:
            state = self._clusters.pop(cluster_name, None)
        if state is not None:
            state.stop.set()

    def engage(self, cluster_name: str, cluster: _Cluster) -> None:
        """Discover a cluster's resources, mark it active and start syncing it."""
        logger.info("engaging cluster %s", cluster_name)
        self._stop(cluster_name)

        now = datetime.now(timezone.utc)
        try:
            self._config.store.upsert_cluster(ClusterModel(
                name=cluster_name, status="active", last_seen=now,
                engaged_at=now, ttl=3600,
            ))
        except StoreError as exc:
            raise StoreError(f"failed to upsert cluster {cluster_name}: {exc}") from exc

        try:
            discovery_client = cluster.discovery_client()
        except Exception as exc:
            raise DiscoveryError(
                f"failed to create discovery client for {cluster_name}: {exc}") from exc

        try:
            watchable = run_discovery(cluster_name, discovery_client,
                                      self._config.store, self._config.blacklist)
        except DiscoveryError as exc:
            raise DiscoveryError(f"discovery failed for cluster {cluster_name}: {exc}") from exc

        stop = threading.Event()
        state = _ClusterState(stop=stop, threads=[
            threading.Thread(
                target=self._run_informers,
                args=(stop, cluster_name, cluster, watchable),
                name=f"kuery-informers-{cluster_name}", daemon=True,
            ),
            threading.Thread(
                target=self._watch_crds,
                args=(stop, cluster_name, cluster, discovery_client),
                name=f"kuery-crds-{cluster_name}", daemon=True,
            ),
        ])
        with self._lock:
            previous = self._clusters.get(cluster_name)
            self._clusters[cluster_name] = state
        if previous is not None:
            previous.stop.set()
        for thread in state.threads:
            thread.start()

        logger.info("cluster %s engaged with %d watchable resources",
                    cluster_name, len(watchable))

    def disengage(self, cluster_name: str) -> None:
        """Stop syncing a cluster and mark it stale."""
        logger.info("disengaging cluster %s", cluster_name)
        self._stop(cluster_name)
        try:
            self._config.store.upsert_cluster(ClusterModel(
                name=cluster_name, status="stale",
                last_seen=datetime.now(timezone.utc),
            ))
        except StoreError:
            logger.exception("failed to mark cluster %s as stale", cluster_name)
            raise
        logger.info("cluster %s disengaged", cluster_name)

    def _run_informers(self, stop: threading.Event, cluster_name: str, cluster: _Cluster,
                       watchable: list[DiscoveredResource]) -> None:
        try:
            factory = cluster.informer_factory(self._config.resync_period)
        except Exception:
            logger.exception("failed to create informer factory for cluster %s", cluster_name)
            return

        for res in watchable:
            handler = EventHandler(
                store=self._config.store,
                cluster_name=cluster_name,
                gvr=res.gvr,
                kind=res.kind,
            )
            try:
                factory.add_event_handler(res.gvr, handler)
            except Exception:
                logger.exception("failed to add event handler for %s in cluster %s",
                                 res.gvr, cluster_name)

        try:
            factory.start(stop)
            factory.wait_for_cache_sync(stop)
        except Exception:
            logger.exception("informers failed for cluster %s", cluster_name)
            return

        logger.info("all informers synced for cluster %s: %d", cluster_name, len(watchable))
        stop.wait()
        logger.info("informers stopped for cluster %s", cluster_name)

    def _watch_crds(self, stop: threading.Event, cluster_name: str, cluster: _Cluster,
                    discovery_client: DiscoveryClient) -> None:
        def refresh() -> None:
            if stop.is_set():
                return
            logger.info("CRD change detected in cluster %s, refreshing discovery",
                        cluster_name)
            try:
                run_discovery(cluster_name, discovery_client,
                              self._config.store, self._config.blacklist)
            except DiscoveryError:
                logger.exception("discovery refresh failed for cluster %s", cluster_name)

        try:
            factory = cluster.informer_factory(CRD_RESYNC_PERIOD)
            factory.add_event_handler(CRD_GVR, _CRDRefreshHandler(refresh, CRD_REFRESH_INTERVAL))
            factory.start(stop)
        except Exception:
            logger.exception("failed to watch CRDs of cluster %s", cluster_name)
            return
        stop.wait()