# ABOUTME: Resource identity and change classification for the sync pipeline
# ABOUTME: Builds stable resource IDs and decides which mutations are worth syncing

"""
Pure functions that turn raw Kubernetes objects into pipeline values.

=============================================================================
RESOURCE IDs
=============================================================================

Every resource gets one string key used everywhere downstream: as the
debounce buffer's map key, as the delete reference and as the MCP index's
primary key.

    "{namespace}:{apiVersion}:{kind}:{name}"

    default:apps/v1:Deployment:nginx
    _cluster:v1:Node:worker-1          <- cluster-scoped, no namespace

Namespaces, kinds and names cannot contain ":", so the mapping is injective.
apiVersion can contain "/" but never ":".

=============================================================================
WHAT COUNTS AS A RELEVANT CHANGE?
=============================================================================

The index tracks identity and labels. It does NOT track live status, so:

    labels added / removed / changed      -> relevant
    status changed                        -> ignored
    resourceVersion / generation bumped   -> ignored
    annotations changed                   -> ignored

Status is the highest-churn part of most objects (pods report readiness,
controllers write observedGeneration), and syncing it would turn every
heartbeat into an HTTP call.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from resource_sync.models import (
    CLUSTER_SCOPE,
    ResourceData,
    ResourceIdentifier,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

# =============================================================================
# FILTER TABLES
# =============================================================================

# High-volume or controller-internal types that are never watched.
SKIPPED_RESOURCES = frozenset(
    [
        ("", "events"),
        ("events.k8s.io", "events"),
        ("coordination.k8s.io", "leases"),
        ("discovery.k8s.io", "endpointslices"),
    ]
)

# Annotations that are large or only describe how the object was applied.
EXCLUDED_ANNOTATIONS = frozenset(["kubectl.kubernetes.io/last-applied-configuration"])
EXCLUDED_ANNOTATION_PREFIXES = ("meta.helm.sh/",)

# Annotations that carry human-written meaning and are worth indexing.
ALLOWED_ANNOTATIONS = frozenset(["description"])
ALLOWED_ANNOTATION_SUFFIXES = ("/description",)


def _now() -> datetime:
    return datetime.now(UTC)


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


# =============================================================================
# IDENTITY
# =============================================================================


def identifier_from_object(obj: Mapping[str, Any]) -> ResourceIdentifier:
    """Read the identifier fields of an object; no namespace means `_cluster`."""
    metadata = _metadata(obj)
    return ResourceIdentifier(
        namespace=metadata.get("namespace") or CLUSTER_SCOPE,
        api_version=obj.get("apiVersion", ""),
        kind=obj.get("kind", ""),
        name=metadata.get("name", ""),
    )


def build_id(identifier: ResourceIdentifier) -> str:
    """Serialize an identifier into its canonical ID string."""
    namespace = identifier.namespace or CLUSTER_SCOPE
    return f"{namespace}:{identifier.api_version}:{identifier.kind}:{identifier.name}"


def build_resource_id(obj: Mapping[str, Any]) -> str:
    """Shortcut for `build_id(identifier_from_object(obj))`."""
    return build_id(identifier_from_object(obj))


# =============================================================================
# SNAPSHOTS
# =============================================================================


def filter_annotations(annotations: Mapping[str, Any] | None) -> dict[str, str]:
    """Keep only description-like annotations, never apply/package metadata."""
    result: dict[str, str] = {}
    for key, value in (annotations or {}).items():
        if key in EXCLUDED_ANNOTATIONS or key.startswith(EXCLUDED_ANNOTATION_PREFIXES):
            continue
        if key in ALLOWED_ANNOTATIONS or key.endswith(ALLOWED_ANNOTATION_SUFFIXES):
            result[key] = str(value)
    return result


def extract_data(
    obj: Mapping[str, Any],
    now: Callable[[], datetime] = _now,
) -> ResourceData:
    """
    Build a ResourceData snapshot from a raw object.

    Labels are copied into a new dict, so callers may mutate the result
    without touching the informer's cached object.

    Args:
        obj: Object as returned by the API server
        now: Clock used for the observation timestamp
    """
    identifier = identifier_from_object(obj)
    labels = _metadata(obj).get("labels") or {}
    return ResourceData(
        name=identifier.name,
        namespace=identifier.namespace,
        kind=identifier.kind,
        api_version=identifier.api_version,
        labels={str(k): str(v) for k, v in labels.items()},
        annotations=filter_annotations(_metadata(obj).get("annotations")),
        updated_at=now(),
    )


# =============================================================================
# CLASSIFICATION
# =============================================================================


def is_relevant_change(old: Mapping[str, Any], new: Mapping[str, Any]) -> bool:
    """
    Return True when an update should produce an upsert.

    Only the label set is compared. A missing `labels` key and an empty map
    are the same thing, so `None -> {}` is not a change but `None -> {"a": "b"}`
    is.
    """
    old_labels = _metadata(old).get("labels") or {}
    new_labels = _metadata(new).get("labels") or {}
    return dict(old_labels) != dict(new_labels)


def should_skip_resource(group: str, resource: str) -> bool:
    """Return True for resource types that are never watched."""
    return (group, resource) in SKIPPED_RESOURCES
