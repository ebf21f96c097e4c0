"""Resources that are never synced into the store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class GroupResource:
    """An API group together with a resource name."""

    group: str
    resource: str

    def __str__(self) -> str:
        return self.resource if not self.group else f"{self.resource}.{self.group}"


@dataclass(frozen=True)
class GroupVersionResource:
    """An API group, version and resource name."""

    group: str
    version: str
    resource: str

    def group_resource(self) -> GroupResource:
        """Return the group and resource without the version."""
        return GroupResource(self.group, self.resource)

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Resource={self.resource}"


DEFAULT_BLACKLIST: tuple[GroupVersionResource, ...] = (
    GroupVersionResource("", "v1", "secrets"),
    GroupVersionResource("", "v1", "events"),
    GroupVersionResource("events.k8s.io", "v1", "events"),
)
"""Skipped by default: too sensitive (Secrets) or too high-volume (Events)."""


class Blacklist:
    """Decides which group-resources are excluded from syncing."""

    def __init__(self, gvrs: Optional[Iterable[GroupVersionResource]]) -> None:
        self._entries = frozenset(gvr.group_resource() for gvr in gvrs or ())

    def is_blacklisted(self, gr: GroupResource) -> bool:
        """Return True if the group-resource should be skipped."""
        return gr in self._entries

    def __contains__(self, gr: object) -> bool:
        return gr in self._entries

    def __len__(self) -> int:
        return len(self._entries)