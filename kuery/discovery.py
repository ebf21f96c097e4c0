"""Cluster API discovery that fills the resource_types table."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

from .blacklist import Blacklist, GroupResource, GroupVersionResource
from .models import ResourceTypeModel
from .store import Store, StoreError

logger = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """Discovery of a cluster's API resources failed."""


class PartialDiscoveryError(DiscoveryError):
    """Discovery failed for some groups; ``resource_lists`` holds what was found."""

    def __init__(self, message: str,
                 resource_lists: Sequence[Optional["APIResourceList"]] = ()) -> None:
        super().__init__(message)
        self.resource_lists = list(resource_lists)


@dataclass
class APIResource:
    """One resource as reported by API discovery."""

    name: str
    kind: str
    namespaced: bool = False
    verbs: list[str] = field(default_factory=list)
    singular_name: str = ""
    short_names: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)


@dataclass
class APIResourceList:
    """The resources served under one group version."""

    group_version: str
    api_resources: list[APIResource] = field(default_factory=list)


@dataclass
class DiscoveredResource:
    """A watchable resource found by discovery."""

    gvr: GroupVersionResource
    kind: str
    singular: str = ""
    short_names: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    namespaced: bool = False


class DiscoveryClient(Protocol):
    def server_groups_and_resources(self) -> Sequence[Optional[APIResourceList]]:
        ...


def parse_group_version(group_version: str) -> tuple[str, str]:
    """Split ``"group/version"`` (or ``"version"``) into ``(group, version)``."""
    if group_version in ("", "/"):
        return "", ""
    parts = group_version.split("/")
    if len(parts) == 1:
        return "", group_version
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected GroupVersion string: {group_version}")


def _has_verbs(verbs: Sequence[str], *required: str) -> bool:
    available = set(verbs)
    return all(verb in available for verb in required)


def _fetch_lists(cluster_name: str,
                 client: DiscoveryClient) -> list[Optional[APIResourceList]]:
    try:
        return list(client.server_groups_and_resources())
    except PartialDiscoveryError as exc:
        if not exc.resource_lists:
            raise DiscoveryError(
                f"discovery failed for cluster {cluster_name}: {exc}") from exc
        logger.debug("partial discovery error for cluster %s: %s", cluster_name, exc)
        return exc.resource_lists
    except Exception as exc:
        raise DiscoveryError(
            f"discovery failed for cluster {cluster_name}: {exc}") from exc


def run_discovery(cluster_name: str, client: DiscoveryClient, store: Store,
                  blacklist: Blacklist) -> list[DiscoveredResource]:
    """Record a cluster's resource types and return those that can be listed and watched."""
    resource_lists = _fetch_lists(cluster_name, client)

    try:
        store.delete_resource_types_for_cluster(cluster_name)
    except StoreError as exc:
        raise DiscoveryError(
            f"failed to clear resource_types for cluster {cluster_name}: {exc}") from exc

    watchable: list[DiscoveredResource] = []
    for resource_list in resource_lists:
        if resource_list is None:
            continue
        try:
            group, version = parse_group_version(resource_list.group_version)
        except ValueError as exc:
            logger.debug("skipping unparseable group version %r: %s",
                         resource_list.group_version, exc)
            continue

        for resource in resource_list.api_resources:
            if "/" in resource.name:
                continue
            if blacklist.is_blacklisted(GroupResource(group, resource.name)):
                logger.debug("skipping blacklisted resource %s in group %r of cluster %s",
                             resource.name, group, cluster_name)
                continue

            prefix = resource.name + "/"
            subresources = [
                sub.name[len(prefix):]
                for sub in resource_list.api_resources
                if sub.name.startswith(prefix)
            ]
            rt = ResourceTypeModel(
                cluster=cluster_name,
                api_group=group,
                api_version=version,
                kind=resource.kind,
                singular=resource.singular_name,
                resource=resource.name,
                short_names=list(resource.short_names),
                categories=list(resource.categories),
                namespaced=resource.namespaced,
                subresources=subresources,
            )
            try:
                store.upsert_resource_type(rt)
            except StoreError:
                logger.exception("failed to upsert resource type %s for cluster %s",
                                 resource.name, cluster_name)
                continue

            if _has_verbs(resource.verbs, "list", "watch"):
                watchable.append(DiscoveredResource(
                    gvr=GroupVersionResource(group, version, resource.name),
                    kind=resource.kind,
                    singular=resource.singular_name,
                    short_names=list(resource.short_names),
                    categories=list(resource.categories),
                    namespaced=resource.namespaced,
                ))

    logger.info("discovery complete for cluster %s: %d watchable",
                cluster_name, len(watchable))
    return watchable