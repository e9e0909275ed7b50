# ABOUTME: Unit tests for resource identity and change classification
# ABOUTME: Tests resource IDs, snapshot extraction, annotation filtering and relevance rules

import copy
from datetime import UTC, datetime

import pytest

from resource_sync.identity import (
    build_id,
    build_resource_id,
    extract_data,
    filter_annotations,
    identifier_from_object,
    is_relevant_change,
    should_skip_resource,
)
from resource_sync.models import CLUSTER_SCOPE, ResourceIdentifier


@pytest.mark.unit
class TestBuildId:
    """Tests for resource ID construction."""

    def test_namespaced_resource(self):
        """Test ID layout for a namespaced resource."""
        identifier = ResourceIdentifier("default", "apps/v1", "Deployment", "nginx")
        assert build_id(identifier) == "default:apps/v1:Deployment:nginx"

    def test_cluster_scoped_object(self, pod_factory):
        """Test that a missing namespace maps to _cluster."""
        node = {"apiVersion": "v1", "kind": "Node", "metadata": {"name": "worker-1"}}
        assert build_resource_id(node) == "_cluster:v1:Node:worker-1"

    def test_empty_namespace_maps_to_cluster(self):
        """Test that an empty namespace string is treated as cluster scope."""
        obj = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "a", "namespace": ""}}
        assert identifier_from_object(obj).namespace == CLUSTER_SCOPE

    def test_injective_over_identifier_fields(self):
        """Test that distinct identifiers never share an ID."""
        identifiers = [
            ResourceIdentifier(ns, api, kind, name)
            for ns in ("default", "prod", CLUSTER_SCOPE)
            for api in ("v1", "apps/v1")
            for kind in ("Pod", "Deployment")
            for name in ("a", "b")
        ]
        ids = {build_id(i) for i in identifiers}
        assert len(ids) == len(identifiers)

    def test_deterministic(self, pod_factory):
        """Test that the same object always yields the same ID."""
        pod = pod_factory(name="web-1")
        assert build_resource_id(pod) == build_resource_id(copy.deepcopy(pod))


@pytest.mark.unit
class TestExtractData:
    """Tests for ResourceData extraction."""

    def test_extracts_identity_and_labels(self, pod_factory):
        """Test that identity fields and labels are copied."""
        pod = pod_factory(name="web-1", labels={"app": "web"})

        data = extract_data(pod)

        assert data.name == "web-1"
        assert data.namespace == "default"
        assert data.kind == "Pod"
        assert data.api_version == "v1"
        assert data.labels == {"app": "web"}
        assert data.updated_at is not None

    def test_labels_are_copied(self, pod_factory):
        """Test that mutating the snapshot never touches the source object."""
        pod = pod_factory(labels={"app": "web"})

        data = extract_data(pod)
        data.labels["app"] = "changed"

        assert pod["metadata"]["labels"]["app"] == "web"

    def test_uses_injected_clock(self, pod_factory):
        """Test that the observation time comes from the clock argument."""
        moment = datetime(2024, 5, 1, tzinfo=UTC)
        data = extract_data(pod_factory(), now=lambda: moment)
        assert data.updated_at == moment

    def test_missing_labels_become_empty(self, pod_factory):
        """Test that an object without labels gets an empty label map."""
        data = extract_data(pod_factory())
        assert data.labels == {}

    def test_wire_format(self, resource_data):
        """Test the camelCase wire representation."""
        wire = resource_data.to_dict()

        assert wire["apiVersion"] == "v1"
        assert wire["updatedAt"] == "2025-01-01T10:00:00+00:00"
        assert wire["labels"] == {"app": "web"}


@pytest.mark.unit
class TestFilterAnnotations:
    """Tests for the annotation allow/deny filter."""

    def test_keeps_description(self):
        """Test that a plain description annotation is kept."""
        assert filter_annotations({"description": "Web tier"}) == {"description": "Web tier"}

    def test_keeps_prefixed_description(self):
        """Test that keys ending in /description are kept."""
        result = filter_annotations({"example.com/description": "Cache"})
        assert result == {"example.com/description": "Cache"}

    def test_drops_last_applied_configuration(self):
        """Test that kubectl's last-applied annotation is dropped."""
        result = filter_annotations(
            {"kubectl.kubernetes.io/last-applied-configuration": "{...}"}
        )
        assert result == {}

    def test_drops_helm_metadata(self):
        """Test that meta.helm.sh annotations are dropped, even description-like ones."""
        result = filter_annotations(
            {"meta.helm.sh/release-name": "web", "meta.helm.sh/description": "x"}
        )
        assert result == {}

    def test_drops_unlisted_keys(self):
        """Test that annotations outside the allow-list are dropped."""
        assert filter_annotations({"team": "platform"}) == {}

    def test_none(self):
        """Test that missing annotations produce an empty map."""
        assert filter_annotations(None) == {}

    def test_extract_data_applies_filter(self, pod_factory):
        """Test that extract_data runs the filter."""
        pod = pod_factory(annotations={"description": "d", "other": "x"})
        assert extract_data(pod).annotations == {"description": "d"}


@pytest.mark.unit
class TestIsRelevantChange:
    """Tests for change relevance."""

    def test_status_only_change_is_irrelevant(self, pod_factory):
        """Test that a status update does not produce a sync."""
        old = pod_factory(labels={"app": "web"}, status={"phase": "Pending"})
        new = pod_factory(labels={"app": "web"}, status={"phase": "Running"})
        assert is_relevant_change(old, new) is False

    def test_resource_version_only_change_is_irrelevant(self, pod_factory):
        """Test that a resourceVersion bump does not produce a sync."""
        old = pod_factory(labels={"app": "web"}, resource_version="1")
        new = pod_factory(labels={"app": "web"}, resource_version="2")
        assert is_relevant_change(old, new) is False

    def test_annotation_only_change_is_irrelevant(self, pod_factory):
        """Test that annotation changes do not produce a sync."""
        old = pod_factory(labels={"app": "web"}, annotations={"description": "a"})
        new = pod_factory(labels={"app": "web"}, annotations={"description": "b"})
        assert is_relevant_change(old, new) is False

    def test_label_added(self, pod_factory):
        """Test that adding a label is relevant."""
        old = pod_factory(labels={"app": "web"})
        new = pod_factory(labels={"app": "web", "tier": "frontend"})
        assert is_relevant_change(old, new) is True

    def test_label_removed(self, pod_factory):
        """Test that removing a label is relevant."""
        old = pod_factory(labels={"app": "web", "tier": "frontend"})
        new = pod_factory(labels={"app": "web"})
        assert is_relevant_change(old, new) is True

    def test_label_value_changed(self, pod_factory):
        """Test that changing a label value is relevant."""
        old = pod_factory(labels={"app": "web"})
        new = pod_factory(labels={"app": "api"})
        assert is_relevant_change(old, new) is True

    def test_no_labels_to_some_labels(self, pod_factory):
        """Test the transition from no labels to some labels."""
        assert is_relevant_change(pod_factory(), pod_factory(labels={"app": "web"})) is True

    def test_missing_labels_equals_empty_labels(self, pod_factory):
        """Test that a missing label map and an empty one are the same."""
        assert is_relevant_change(pod_factory(), pod_factory(labels={})) is False


@pytest.mark.unit
class TestShouldSkipResource:
    """Tests for the skip list."""

    @pytest.mark.parametrize(
        ("group", "resource"),
        [
            ("", "events"),
            ("events.k8s.io", "events"),
            ("coordination.k8s.io", "leases"),
            ("discovery.k8s.io", "endpointslices"),
        ],
    )
    def test_skipped(self, group, resource):
        """Test that the fixed skip list is honored."""
        assert should_skip_resource(group, resource) is True

    @pytest.mark.parametrize(
        ("group", "resource"),
        [("", "pods"), ("apps", "deployments"), ("", "endpoints"), ("example.com", "events")],
    )
    def test_not_skipped(self, group, resource):
        """Test that other group/resource pairs are eligible."""
        assert should_skip_resource(group, resource) is False
