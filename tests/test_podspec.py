import copy

import pytest

from oamcatalog.api import (
    RECONCILE_WAIT_RESULT,
    ConflictError,
    NotFoundError,
    ObjectMeta,
    PodSpecWorkload,
    PodSpecWorkloadSpec,
    Result,
)
from oamcatalog.podspec import (
    LABEL_NAME_KEY,
    PodSpecWorkloadReconciler,
    check_container_ports_specified,
    render_deployment,
    render_service,
)


def make_workload(ports=None, replicas=3, labels=None):
    container = {"name": "web", "image": "nginx"}
    if ports is not None:
        container["ports"] = ports
    return PodSpecWorkload(
        metadata=ObjectMeta(
            name="app", namespace="default", uid="uid-app", labels=dict(labels or {})
        ),
        spec=PodSpecWorkloadSpec(replicas=replicas, pod_spec={"containers": [container]}),
    )


class FakeClient:
    def __init__(self, workload=None, fail_apply=None, conflicts=0):
        self.stored = workload.to_dict() if workload is not None else None
        self.applied = []
        self.status_updates = []
        self.fail_apply = fail_apply
        self.conflicts = conflicts

    def get(self, api_version, kind, namespace, name):
        if self.stored is None:
            raise NotFoundError(name)
        return copy.deepcopy(self.stored)

    def apply(self, obj, field_owner):
        if self.fail_apply == obj["kind"]:
            raise RuntimeError("boom")
        result = copy.deepcopy(obj)
        result["metadata"]["uid"] = "uid-" + obj["kind"].lower()
        self.applied.append((result, field_owner))
        return result

    def update_status(self, obj):
        if self.conflicts:
            self.conflicts -= 1
            raise ConflictError("conflict")
        self.status_updates.append(copy.deepcopy(obj))
        self.stored = obj.to_dict()


def test_render_deployment_defaults_protocol_to_tcp():
    workload = make_workload(ports=[{"containerPort": 80}, {"containerPort": 53, "protocol": "UDP"}])
    deployment = render_deployment(workload)
    ports = deployment["spec"]["template"]["spec"]["containers"][0]["ports"]
    assert [p["protocol"] for p in ports] == ["TCP", "UDP"]
    # the workload itself is left untouched
    assert "protocol" not in workload.spec.pod_spec["containers"][0]["ports"][0]


def test_render_deployment_identity_and_selector():
    deployment = render_deployment(make_workload())
    assert deployment["apiVersion"] == "apps/v1"
    assert deployment["kind"] == "Deployment"
    assert deployment["metadata"]["name"] == "app"
    assert deployment["metadata"]["namespace"] == "default"
    assert deployment["spec"]["replicas"] == 3
    assert deployment["spec"]["selector"]["matchLabels"] == {LABEL_NAME_KEY: "app"}
    assert deployment["spec"]["template"]["metadata"]["labels"][LABEL_NAME_KEY] == "app"


def test_render_deployment_owner_and_labels():
    deployment = render_deployment(make_workload(labels={"team": "a"}))
    owner = deployment["metadata"]["ownerReferences"][0]
    assert owner["uid"] == "uid-app"
    assert owner["kind"] == PodSpecWorkload.KIND
    assert owner["controller"] is True
    assert deployment["metadata"]["labels"] == {"team": "a"}
    assert deployment["spec"]["template"]["metadata"]["labels"] == {
        LABEL_NAME_KEY: "app",
        "team": "a",
    }


def test_render_deployment_without_replicas_omits_them():
    deployment = render_deployment(make_workload(replicas=None))
    assert "replicas" not in deployment["spec"]


def test_render_service_numbers_ports_from_8080():
    workload = make_workload(
        ports=[{"name": "http", "containerPort": 80, "protocol": "TCP"}, {"containerPort": 443}]
    )
    service = render_service(workload)
    ports = service["spec"]["ports"]
    assert [p["port"] for p in ports] == [8080, 8081]
    assert [p["targetPort"] for p in ports] == [80, 443]
    assert ports[0]["name"] == "http"
    assert service["spec"]["type"] == "ClusterIP"
    assert service["spec"]["selector"] == {LABEL_NAME_KEY: "app"}
    assert service["kind"] == "Service"


def test_check_container_ports_specified():
    assert check_container_ports_specified(None) is False
    assert check_container_ports_specified(make_workload()) is False
    assert check_container_ports_specified(make_workload(ports=[{"containerPort": 80}])) is True


def test_reconcile_missing_workload_returns_empty_result():
    reconciler = PodSpecWorkloadReconciler(FakeClient())
    assert reconciler.reconcile("default", "app") == Result()


def test_reconcile_with_ports_applies_deployment_and_service():
    client = FakeClient(make_workload(ports=[{"containerPort": 80}]))
    events = []
    reconciler = PodSpecWorkloadReconciler(
        client, recorder=lambda obj, kind, reason, msg: events.append((kind, reason))
    )
    assert reconciler.reconcile("default", "app") == Result()
    assert [obj["kind"] for obj, _ in client.applied] == ["Deployment", "Service"]
    assert all(owner == "uid-app" for _, owner in client.applied)
    final = PodSpecWorkload.from_dict(client.stored)
    assert [(r.kind, r.uid) for r in final.status.resources] == [
        ("Deployment", "uid-deployment"),
        ("Service", "uid-service"),
    ]
    assert final.get_condition("Synced").status == "True"
    assert events == [("Normal", "Deployment created"), ("Normal", "Service created")]


def test_reconcile_without_ports_applies_only_deployment():
    client = FakeClient(make_workload())
    PodSpecWorkloadReconciler(client).reconcile("default", "app")
    assert [obj["kind"] for obj, _ in client.applied] == ["Deployment"]
    final = PodSpecWorkload.from_dict(client.stored)
    assert [r.api_version for r in final.status.resources] == ["apps/v1"]


def test_reconcile_apply_failure_sets_error_condition():
    client = FakeClient(make_workload(), fail_apply="Deployment")
    events = []
    reconciler = PodSpecWorkloadReconciler(
        client, recorder=lambda obj, kind, reason, msg: events.append((kind, reason))
    )
    assert reconciler.reconcile("default", "app") == RECONCILE_WAIT_RESULT
    condition = client.status_updates[-1].get_condition("Synced")
    assert condition.status == "False"
    assert "cannot apply the deployment" in condition.message
    assert events == [("Warning", "cannot apply the deployment")]


def test_reconcile_service_failure_reports_service_error():
    client = FakeClient(make_workload(ports=[{"containerPort": 80}]), fail_apply="Service")
    result = PodSpecWorkloadReconciler(client).reconcile("default", "app")
    assert result == RECONCILE_WAIT_RESULT
    assert "cannot apply the service" in client.status_updates[-1].get_condition("Synced").message


def test_update_status_retries_on_conflict():
    workload = make_workload()
    client = FakeClient(workload, conflicts=2)
    workload.status.resources = []
    workload.spec.replicas = 99
    PodSpecWorkloadReconciler(client).update_status(workload)
    assert len(client.status_updates) == 1
    # spec is refreshed from the stored object, status kept from the caller
    assert workload.spec.replicas == 3


def test_update_status_gives_up_after_repeated_conflicts():
    workload = make_workload()
    client = FakeClient(workload, conflicts=10)
    with pytest.raises(ConflictError):
        PodSpecWorkloadReconciler(client).update_status(workload)
    assert client.status_updates == []