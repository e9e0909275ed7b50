# ABOUTME: Pytest fixtures and configuration for Resource Sync controller tests
# ABOUTME: Provides sample Kubernetes objects, settings and fake informers shared by unit tests

from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import pytest

from resource_sync.config import ControllerSettings, ResourceSyncConfig
from resource_sync.identity import build_resource_id, extract_data, identifier_from_object
from resource_sync.models import ResourceChange, ResourceData

FIXED_TIME = datetime(2025, 1, 1, 10, 0, 0, tzinfo=UTC)


def make_pod(
    name: str = "web-1",
    namespace: str | None = "default",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    resource_version: str = "1",
    status: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a Pod as the API server returns it in watch events."""
    metadata: dict[str, Any] = {"name": name, "resourceVersion": resource_version}
    if namespace:
        metadata["namespace"] = namespace
    if labels is not None:
        metadata["labels"] = labels
    if annotations is not None:
        metadata["annotations"] = annotations
    obj: dict[str, Any] = {"apiVersion": "v1", "kind": "Pod", "metadata": metadata}
    if status is not None:
        obj["status"] = status
    return obj


def make_upsert(name: str = "web-1", labels: dict[str, str] | None = None) -> ResourceChange:
    """Build an upsert change for a Pod."""
    pod = make_pod(name=name, labels=labels or {})
    return ResourceChange.upsert(build_resource_id(pod), extract_data(pod, now=lambda: FIXED_TIME))


def make_delete(name: str = "web-1") -> ResourceChange:
    """Build a delete change for a Pod."""
    identifier = identifier_from_object(make_pod(name=name))
    return ResourceChange.delete(build_resource_id(make_pod(name=name)), identifier)


def make_crd(
    group: str = "example.com",
    plural: str = "widgets",
    versions: list[dict[str, Any]] | None = None,
    name: str | None = None,
) -> dict[str, Any]:
    """Build a CustomResourceDefinition object."""
    if versions is None:
        versions = [{"name": "v1", "served": True, "storage": True}]
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": name or f"{plural}.{group}"},
        "spec": {"group": group, "names": {"plural": plural}, "versions": versions},
    }


class FakeInformer:
    """In-memory stand-in for Informer: no threads, no API calls."""

    def __init__(self, api: Any, gvr: Any, handlers: Any, watch_timeout: int = 1800) -> None:
        self.api = api
        self.gvr = gvr
        self.handlers = handlers
        self.watch_timeout = watch_timeout
        self.objects: list[dict[str, Any]] = []
        self.started = False
        self.stopped = False
        self.join_timeouts: list[float | None] = []

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout: float | None = None) -> None:
        self.join_timeouts.append(timeout)

    def is_alive(self) -> bool:
        return False

    def list_cached(self) -> list[dict[str, Any]]:
        return list(self.objects)


@pytest.fixture
def settings() -> ControllerSettings:
    """Controller settings with fast retries for tests."""
    return ControllerSettings(
        queue_size=100,
        requeue_seconds=30.0,
        max_retries=0,
        initial_backoff=0.01,
        max_backoff=0.05,
        shutdown_flush_timeout=1.0,
    )


@pytest.fixture
def sync_config_object() -> dict[str, Any]:
    """A ResourceSyncConfig custom object as returned by the API."""
    return {
        "apiVersion": "dot-ai.devopstoolkit.live/v1alpha1",
        "kind": "ResourceSyncConfig",
        "metadata": {
            "name": "default-sync",
            "namespace": "dot-ai",
            "uid": "1234",
            "resourceVersion": "42",
            "generation": 1,
        },
        "spec": {
            "mcpEndpoint": "http://mcp.dot-ai.svc:3456",
            "debounceWindowSeconds": 10,
            "resyncIntervalMinutes": 60,
        },
    }


@pytest.fixture
def sync_config(sync_config_object: dict[str, Any]) -> ResourceSyncConfig:
    """Parsed ResourceSyncConfig."""
    return ResourceSyncConfig.from_object(sync_config_object)


@pytest.fixture
def resource_data() -> ResourceData:
    """A ResourceData snapshot of a labeled Pod."""
    return ResourceData(
        name="web-1",
        namespace="default",
        kind="Pod",
        api_version="v1",
        labels={"app": "web"},
        annotations={},
        updated_at=FIXED_TIME,
    )


@pytest.fixture
def mock_core_api() -> MagicMock:
    """Mock CoreV1Api."""
    return MagicMock()


@pytest.fixture
def mock_custom_api(sync_config_object: dict[str, Any]) -> MagicMock:
    """Mock CustomObjectsApi returning the sample ResourceSyncConfig."""
    api = MagicMock()
    api.get_namespaced_custom_object.return_value = sync_config_object
    return api


@pytest.fixture
def pod_factory():
    """Factory for Pod objects."""
    return make_pod


@pytest.fixture
def upsert_factory():
    """Factory for Pod upsert changes."""
    return make_upsert


@pytest.fixture
def delete_factory():
    """Factory for Pod delete changes."""
    return make_delete


@pytest.fixture
def crd_factory():
    """Factory for CustomResourceDefinition objects."""
    return make_crd


@pytest.fixture
def fake_informer_cls() -> type[FakeInformer]:
    """Informer replacement for reconciler tests."""
    return FakeInformer
