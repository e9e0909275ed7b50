# ABOUTME: Value types shared by the resource sync pipeline
# ABOUTME: Defines GVR, ResourceIdentifier, ResourceData, ResourceChange and tombstones

"""
Value types flowing through discover -> watch -> classify -> debounce -> ship.

Kubernetes objects themselves stay plain dicts (the JSON the API server
returns). Resource types are not known until runtime - they come from
discovery and from CRDs - so there is no typed model per kind. Only the
small projections the pipeline produces get their own classes here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Namespace sentinel for cluster-scoped resources (Nodes, ClusterRoles, ...).
CLUSTER_SCOPE = "_cluster"


class ChangeAction(str, Enum):
    """What the downstream index should do with a resource."""

    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True, order=True)
class GVR:
    """Group/Version/Resource of one watchable resource type."""

    group: str
    version: str
    resource: str

    @property
    def api_version(self) -> str:
        """apiVersion string as it appears on objects ("v1", "apps/v1")."""
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @property
    def api_path(self) -> str:
        """Collection path on the API server for cluster-wide list/watch."""
        if not self.group:
            return f"/api/{self.version}/{self.resource}"
        return f"/apis/{self.group}/{self.version}/{self.resource}"

    def __str__(self) -> str:
        return f"{self.api_version}/{self.resource}"


# CustomResourceDefinitions are watched by a dedicated informer.
CRD_GVR = GVR("apiextensions.k8s.io", "v1", "customresourcedefinitions")


@dataclass(frozen=True)
class ResourceIdentifier:
    """The four fields that identify a resource in the downstream index."""

    namespace: str
    api_version: str
    kind: str
    name: str

    def to_dict(self) -> dict[str, str]:
        return {
            "namespace": self.namespace,
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
        }


@dataclass(frozen=True)
class ResourceData:
    """
    Snapshot of one resource at observation time.

    Built fresh on every relevant add/update, consumed once by the debounce
    buffer, then discarded. `labels` and `annotations` are copies owned by
    this snapshot, never the dicts of the watched object.
    """

    name: str
    namespace: str
    kind: str
    api_version: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Wire representation used in sync request bodies."""
        return {
            "name": self.name,
            "namespace": self.namespace,
            "kind": self.kind,
            "apiVersion": self.api_version,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class ResourceChange:
    """
    One pending mutation for the debounce buffer.

    Upserts carry `data`, deletes carry `delete_identifier`. Use the
    `upsert()` / `delete()` constructors rather than filling fields by hand.
    """

    action: ChangeAction
    id: str
    data: ResourceData | None = None
    delete_identifier: ResourceIdentifier | None = None

    @classmethod
    def upsert(cls, resource_id: str, data: ResourceData) -> ResourceChange:
        return cls(action=ChangeAction.UPSERT, id=resource_id, data=data)

    @classmethod
    def delete(cls, resource_id: str, identifier: ResourceIdentifier) -> ResourceChange:
        return cls(action=ChangeAction.DELETE, id=resource_id, delete_identifier=identifier)

    @property
    def is_delete(self) -> bool:
        return self.action is ChangeAction.DELETE


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """
    Tombstone for an object that disappeared while the watch was down.

    When an informer re-lists after losing its watch, objects present in the
    cache but missing from the new list were deleted at some unknown point.
    `obj` is the last state the cache had seen.
    """

    key: str
    obj: dict[str, Any]
