import copy

import pytest

from oamcatalog.api import (
    RECONCILE_WAIT_RESULT,
    NotFoundError,
    Result,
    SidecarTrait,
)
from oamcatalog.sidecar import (
    ERR_FETCH_CHILD_RESOURCES,
    ERR_LOCATE_WORKLOAD,
    ERR_PATCH_TO_BE_SIDECAR_RESOURCE,
    ERR_SIDECAR_RESOURCE,
    SidecarTraitReconciler,
    combine_containers,
    combine_volumes,
    locate_containers_field,
    locate_field,
    locate_volumes_field,
)

SCHEMA = {
    ("Pod", ("spec", "containers")): "array",
    ("Pod", ("spec", "volumes")): "array",
    ("Deployment", ("spec", "template", "spec", "containers")): "array",
    ("Deployment", ("spec", "template", "spec", "volumes")): "array",
    ("Service", ("spec", "containers")): "object",
}


def lookup(api_version, kind, path):
    return SCHEMA.get((kind, tuple(path)))


class FakeClient:
    def __init__(self, objects=None, fail_patch=False):
        self.objects = objects or {}
        self.patches = []
        self.status_updates = []
        self.fail_patch = fail_patch

    def get(self, api_version, kind, namespace, name):
        key = (api_version, kind, namespace, name)
        if key not in self.objects:
            raise NotFoundError(name)
        return copy.deepcopy(self.objects[key])

    def patch(self, resource, patch, field_owner):
        if self.fail_patch:
            raise RuntimeError("boom")
        self.patches.append((copy.deepcopy(resource), patch, field_owner))

    def update_status(self, obj):
        self.status_updates.append(copy.deepcopy(obj.status.conditions))


def deployment():
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "namespace": "default"},
        "spec": {"template": {"spec": {"containers": [{"name": "app", "image": "app:1"}]}}},
    }


def trait_dict(workload_kind="Deployment", workload_api="apps/v1", volumes=None):
    return {
        "metadata": {"name": "side", "namespace": "default", "uid": "trait-uid"},
        "spec": {
            "container": {"name": "logger", "image": "logger:1"},
            "volumes": volumes or [],
            "workloadRef": {"apiVersion": workload_api, "kind": workload_kind, "name": "web"},
        },
    }


def make_client(workload=None, **kwargs):
    objects = {
        (SidecarTrait.API_VERSION, SidecarTrait.KIND, "default", "side"): trait_dict(
            workload_kind=(workload or deployment())["kind"],
            workload_api=(workload or deployment())["apiVersion"],
            volumes=kwargs.pop("volumes", None),
        ),
    }
    if workload is not False:
        wl = workload or deployment()
        objects[(wl["apiVersion"], wl["kind"], "default", "web")] = wl
    return FakeClient(objects, **kwargs)


def test_combine_containers_appends_new_name():
    result = combine_containers([{"name": "app"}], {"name": "logger", "image": "x"})
    assert result == [{"name": "app"}, {"name": "logger", "image": "x"}]


def test_combine_containers_replaces_same_name_in_place():
    existing = [{"name": "a"}, {"name": "logger", "image": "old"}, {"name": "b"}]
    result = combine_containers(existing, {"name": "logger", "image": "new"})
    assert result == [{"name": "a"}, {"name": "logger", "image": "new"}, {"name": "b"}]
    assert existing[1]["image"] == "old"


def test_combine_containers_with_none_list():
    assert combine_containers(None, {"name": "logger"}) == [{"name": "logger"}]


def test_combine_volumes_without_volumes_keeps_input():
    existing = [{"name": "data"}]
    assert combine_volumes(existing, []) == existing


def test_combine_volumes_replaces_and_appends():
    existing = [{"name": "data", "emptyDir": {}}]
    volumes = [{"name": "data", "hostPath": {"path": "/tmp"}}, {"name": "logs", "emptyDir": {}}]
    result = combine_volumes(existing, volumes)
    assert result == volumes
    assert existing == [{"name": "data", "emptyDir": {}}]


def test_locate_containers_field_for_pod_and_deployment():
    pod = {"apiVersion": "v1", "kind": "Pod"}
    assert locate_containers_field(lookup, pod) == (True, ["spec", "containers"])
    assert locate_containers_field(lookup, deployment()) == (
        True,
        ["spec", "template", "spec", "containers"],
    )


def test_locate_volumes_field_for_deployment():
    assert locate_volumes_field(lookup, deployment()) == (
        True,
        ["spec", "template", "spec", "volumes"],
    )


def test_locate_field_stops_at_first_found_even_if_not_array():
    service = {"apiVersion": "v1", "kind": "Service"}
    assert locate_containers_field(lookup, service) == (False, ["spec", "containers"])


def test_locate_field_unknown_kind():
    assert locate_field(lookup, {"apiVersion": "v1", "kind": "ConfigMap"}, [["spec"]]) == (
        False,
        None,
    )


def test_locate_field_passes_api_version_and_kind():
    calls = []

    def recording(api_version, kind, path):
        calls.append((api_version, kind, tuple(path)))
        return None

    result = locate_field(recording, deployment(), [["a", "b"]])
    assert result == (False, None)
    assert calls == [("apps/v1", "Deployment", ("a", "b"))]


def test_reconcile_missing_trait_returns_empty_result():
    reconciler = SidecarTraitReconciler(FakeClient(), lookup)
    assert reconciler.reconcile("default", "absent") == Result()


def test_reconcile_injects_sidecar_into_workload():
    client = make_client()
    events = []
    reconciler = SidecarTraitReconciler(
        client, lookup, recorder=lambda *args: events.append(args)
    )
    assert reconciler.reconcile("default", "side") == Result()
    assert len(client.patches) == 1
    resource, patch, owner = client.patches[0]
    containers = resource["spec"]["template"]["spec"]["containers"]
    assert [c["name"] for c in containers] == ["app", "logger"]
    assert patch["spec"]["template"]["spec"]["containers"] == containers
    assert owner == "trait-uid"
    assert client.status_updates[-1][0].reason == "ReconcileSuccess"
    assert events[-1][1:3] == ("Normal", "Sidecar containers applied")


def test_reconcile_adds_volumes():
    client = make_client(volumes=[{"name": "logs", "emptyDir": {}}])
    SidecarTraitReconciler(client, lookup).reconcile("default", "side")
    resource = client.patches[0][0]
    assert resource["spec"]["template"]["spec"]["volumes"] == [{"name": "logs", "emptyDir": {}}]


def test_reconcile_uses_child_resources_when_given():
    client = make_client()
    pod = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": "p"},
        "spec": {"containers": []},
    }
    reconciler = SidecarTraitReconciler(client, lookup, child_resources=lambda wl: [pod])
    reconciler.reconcile("default", "side")
    assert len(client.patches) == 1
    assert client.patches[0][0]["kind"] == "Pod"
    assert client.patches[0][0]["spec"]["containers"] == [
        {"name": "logger", "image": "logger:1"}
    ]


def test_reconcile_child_resources_error_waits():
    client = make_client()

    def broken(workload):
        raise RuntimeError("no definition")

    reconciler = SidecarTraitReconciler(client, lookup, child_resources=broken)
    assert reconciler.reconcile("default", "side") == RECONCILE_WAIT_RESULT
    assert client.status_updates[-1][0].message == ERR_FETCH_CHILD_RESOURCES
    assert client.patches == []


def test_reconcile_missing_workload_raises_and_warns():
    client = make_client(workload=False)
    events = []
    reconciler = SidecarTraitReconciler(
        client, lookup, recorder=lambda *args: events.append(args)
    )
    with pytest.raises(NotFoundError):
        reconciler.reconcile("default", "side")
    assert events[0][1:3] == ("Warning", ERR_LOCATE_WORKLOAD)


def test_reconcile_without_locatable_field_records_error_first():
    config_map = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "web"}}
    client = make_client(workload=config_map)
    SidecarTraitReconciler(client, lookup).reconcile("default", "side")
    assert client.patches == []
    assert client.status_updates[0][0].message == ERR_SIDECAR_RESOURCE


def test_sidecar_resources_missing_containers_value():
    client = make_client()
    trait = SidecarTrait.from_dict(trait_dict())
    pod = {"apiVersion": "v1", "kind": "Pod", "spec": {}}
    result = SidecarTraitReconciler(client, lookup).sidecar_resources(trait, [pod])
    assert result == RECONCILE_WAIT_RESULT
    assert client.status_updates[-1][0].message == ERR_PATCH_TO_BE_SIDECAR_RESOURCE


def test_sidecar_resources_patch_failure():
    client = make_client(fail_patch=True)
    trait = SidecarTrait.from_dict(trait_dict())
    result = SidecarTraitReconciler(client, lookup).sidecar_resources(trait, [deployment()])
    assert result == RECONCILE_WAIT_RESULT
    assert client.status_updates[-1][0].message.startswith(ERR_SIDECAR_RESOURCE)
    assert client.status_updates[-1][0].reason == "ReconcileError"


def test_sidecar_resources_lookup_failure_reports_openapi():
    client = make_client()
    trait = SidecarTrait.from_dict(trait_dict())

    def failing(api_version, kind, path):
        raise RuntimeError("unreachable")

    result = SidecarTraitReconciler(client, failing).sidecar_resources(trait, [deployment()])
    assert result == RECONCILE_WAIT_RESULT
    assert client.status_updates[-1][0].message.startswith("failed to query openAPI")