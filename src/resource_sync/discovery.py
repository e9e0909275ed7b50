# ABOUTME: Discovery of watchable resource types for the sync pipeline
# ABOUTME: Combines API group discovery with one GVR per installed CustomResourceDefinition

"""
Resource type discovery.

=============================================================================
WHAT GETS WATCHED?
=============================================================================

    /api/v1                      core types (pods, services, ...)
    /apis -> preferred versions  every API group (apps/v1, batch/v1, ...)
    CRDs                         one GVR per CRD: storage version, else
                                 the first served version

Dropped along the way:

    pods/log, deployments/scale  subresources ("/" in the name)
    bindings, tokenreviews, ...  no list or watch verb
    events, leases, ...          skip list (see identity.SKIPPED_RESOURCES)

A group that fails to answer (an aggregated API whose backing service is
down, for example) is logged and skipped; the rest of the cluster is still
discovered.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from kubernetes.client.rest import ApiException

from resource_sync.identity import should_skip_resource
from resource_sync.models import CRD_GVR, GVR

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from resource_sync.utils.kube import KubeApi

logger = structlog.get_logger(__name__)

REQUIRED_VERBS = frozenset(["list", "watch"])


class DiscoveryError(Exception):
    """A resource type description is unusable."""

    def __init__(self, resource: str, reason: str) -> None:
        self.resource = resource
        self.reason = reason
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"cannot watch '{self.resource}': {self.reason}"


def gvr_from_crd(crd: Mapping[str, Any]) -> GVR:
    """
    Return the GVR to watch for a CustomResourceDefinition.

    Only served versions count. The storage version wins; without one the
    first served version is used.

    Raises:
        DiscoveryError: spec.group, spec.names.plural, spec.versions or a
            served version is missing
    """
    name = (crd.get("metadata") or {}).get("name", "")
    spec = crd.get("spec") or {}

    group = spec.get("group")
    if not group:
        raise DiscoveryError(name, "spec.group not found")

    plural = (spec.get("names") or {}).get("plural")
    if not plural:
        raise DiscoveryError(name, "spec.names.plural not found")

    versions = spec.get("versions") or []
    if not versions:
        raise DiscoveryError(name, "spec.versions not found or empty")

    version = ""
    for entry in versions:
        if not isinstance(entry, dict) or not entry.get("served") or not entry.get("name"):
            continue
        if entry.get("storage"):
            version = entry["name"]
            break
        if not version:
            version = entry["name"]

    if not version:
        raise DiscoveryError(name, "no served version found")

    return GVR(group=group, version=version, resource=plural)


def _watchable(group: str, version: str, resource_list: Mapping[str, Any]) -> Iterator[GVR]:
    for resource in resource_list.get("resources") or []:
        name = resource.get("name", "")
        if not name or "/" in name:
            continue
        if not REQUIRED_VERBS.issubset(resource.get("verbs") or []):
            continue
        if should_skip_resource(group, name):
            logger.debug("Skipping resource", group=group, resource=name)
            continue
        yield GVR(group=group, version=version, resource=name)


def _preferred_group_versions(api: KubeApi) -> Iterator[tuple[str, str]]:
    for group in api.get_json("/apis").get("groups") or []:
        name = group.get("name", "")
        preferred = (group.get("preferredVersion") or {}).get("version")
        if not preferred:
            versions = group.get("versions") or []
            if not versions:
                continue
            preferred = versions[0].get("version")
        if name and preferred:
            yield name, preferred


def discover_resources(api: KubeApi) -> list[GVR]:
    """
    Return every watchable GVR of the cluster, sorted.

    Raises:
        ApiException: The core API or the group list cannot be read
    """
    found: dict[tuple[str, str], GVR] = {}

    for gvr in _watchable("", "v1", api.get_json("/api/v1")):
        found[(gvr.group, gvr.resource)] = gvr

    for group, version in _preferred_group_versions(api):
        try:
            resource_list = api.get_json(f"/apis/{group}/{version}")
        except ApiException as e:
            logger.warning(
                "Partial discovery failure, skipping API group",
                group=group,
                version=version,
                status=e.status,
                reason=e.reason,
            )
            continue
        for gvr in _watchable(group, version, resource_list):
            found[(gvr.group, gvr.resource)] = gvr

    # CRD-owned types are pinned to the version gvr_from_crd picks.
    try:
        crds = api.get_json(CRD_GVR.api_path).get("items") or []
    except ApiException as e:
        logger.warning("Cannot list CustomResourceDefinitions", status=e.status, reason=e.reason)
        crds = []

    for crd in crds:
        try:
            gvr = gvr_from_crd(crd)
        except DiscoveryError as e:
            logger.info("Skipping CustomResourceDefinition", crd=e.resource, reason=e.reason)
            continue
        if should_skip_resource(gvr.group, gvr.resource):
            continue
        found[(gvr.group, gvr.resource)] = gvr

    gvrs = sorted(found.values())
    logger.info("Discovered resource types", count=len(gvrs))
    return gvrs
