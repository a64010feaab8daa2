"""Tests for the compare-and-patch applier and the in-memory cluster API."""

import pytest

from appspine.core.errors import DispatchError, ResourceConflictError
from appspine.dispatch.cluster import (
    LAST_APPLIED_ANNOTATION,
    InMemoryFleet,
    PatchingApplier,
)
from appspine.dispatch.results import ResourceOutcome
from appspine.render.output import resource_key


def deployment(image: str = "nginx:1.27", replicas: int = 1) -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "frontend", "namespace": "default"},
        "spec": {
            "replicas": replicas,
            "template": {"spec": {"containers": [{"name": "frontend", "image": image}]}},
        },
    }


KEY = resource_key(deployment())


@pytest.fixture
def cluster_setup():
    fleet = InMemoryFleet()
    client = fleet.add_cluster("prod")
    return fleet.clusters["prod"], client, PatchingApplier(fleet.client_for, conflict_retries=2)


class TestApply:
    def test_create_then_unchanged(self, cluster_setup):
        cluster, client, applier = cluster_setup
        assert applier.apply(cluster, deployment()) == ResourceOutcome.CREATED
        assert applier.apply(cluster, deployment()) == ResourceOutcome.UNCHANGED
        assert client.writes == [("create", KEY)]

    def test_fingerprint_annotation(self, cluster_setup):
        cluster, client, applier = cluster_setup
        applier.apply(cluster, deployment())
        live = client.get(KEY)
        assert LAST_APPLIED_ANNOTATION in live["metadata"]["annotations"]
        assert live["metadata"]["resourceVersion"] == "1"

    def test_changed_desired_state_is_configured(self, cluster_setup):
        cluster, client, applier = cluster_setup
        applier.apply(cluster, deployment())
        assert applier.apply(cluster, deployment("nginx:1.28")) == ResourceOutcome.CONFIGURED
        live = client.get(KEY)
        assert live["spec"]["template"]["spec"]["containers"][0]["image"] == "nginx:1.28"
        assert client.writes[-1] == ("patch", KEY)

    def test_external_edit_is_drift(self, cluster_setup):
        cluster, client, applier = cluster_setup
        applier.apply(cluster, deployment())
        client.patch(KEY, {"spec": {"replicas": 5}})
        assert applier.apply(cluster, deployment()) == ResourceOutcome.DRIFT_CORRECTED
        assert client.get(KEY)["spec"]["replicas"] == 1

    def test_unmanaged_fields_survive(self, cluster_setup):
        cluster, client, applier = cluster_setup
        applier.apply(cluster, deployment())
        client.patch(KEY, {"status": {"readyReplicas": 1}, "metadata": {"labels": {"team": "x"}}})
        assert applier.apply(cluster, deployment()) == ResourceOutcome.UNCHANGED
        live = client.get(KEY)
        assert live["status"] == {"readyReplicas": 1}
        assert live["metadata"]["labels"] == {"team": "x"}


class TestConflicts:
    def test_retries_after_stale_resource_version(self, cluster_setup):
        cluster, client, applier = cluster_setup
        applier.apply(cluster, deployment())
        client.fail_on(ResourceConflictError("stale"), operation="patch", times=1)
        assert applier.apply(cluster, deployment("nginx:2")) == ResourceOutcome.CONFIGURED

    def test_gives_up_after_retries(self, cluster_setup):
        cluster, client, applier = cluster_setup
        applier.apply(cluster, deployment())
        client.fail_on(ResourceConflictError("stale"), operation="patch")
        with pytest.raises(ResourceConflictError, match="gave up after 3 attempts") as exc_info:
            applier.apply(cluster, deployment("nginx:2"))
        assert exc_info.value.context.cluster == "prod"

    def test_created_concurrently_then_patched(self, cluster_setup):
        cluster, client, applier = cluster_setup
        client.fail_on(ResourceConflictError("exists"), operation="create", times=1)
        # The retry reads nothing live again and creates.
        assert applier.apply(cluster, deployment()) == ResourceOutcome.CREATED

    def test_client_error_propagates(self, cluster_setup):
        cluster, client, applier = cluster_setup
        client.fail_on(DispatchError("quota exceeded", reason="Forbidden"), kind="Deployment")
        with pytest.raises(DispatchError) as exc_info:
            applier.apply(cluster, deployment())
        assert exc_info.value.reason == "Forbidden"


class TestInMemoryCluster:
    def test_stale_patch_rejected(self):
        client = InMemoryFleet().add_cluster("a")
        client.create(deployment())
        client.patch(KEY, {"spec": {"replicas": 2}})
        with pytest.raises(ResourceConflictError):
            client.patch(KEY, {"spec": {"replicas": 3}}, resource_version="1")

    def test_patch_missing(self):
        client = InMemoryFleet().add_cluster("a")
        with pytest.raises(DispatchError, match="not found"):
            client.patch(KEY, {})

    def test_delete(self):
        client = InMemoryFleet().add_cluster("a")
        client.create(deployment())
        assert client.delete(KEY)
        assert not client.delete(KEY)
        assert client.keys() == set()

    def test_fault_count(self):
        client = InMemoryFleet().add_cluster("a")
        client.fail_on(RuntimeError("boom"), operation="get", times=2)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                client.get(KEY)
        assert client.get(KEY) is None

    def test_unknown_cluster_unreachable(self):
        fleet = InMemoryFleet()
        fleet.add_cluster("a")
        registry = fleet.registry(default="a")
        cluster = registry.get("a")
        del fleet.clients["a"]
        with pytest.raises(DispatchError) as exc_info:
            fleet.client_for(cluster)
        assert exc_info.value.reason == "ClusterUnreachable"
