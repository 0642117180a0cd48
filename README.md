# oamcatalog

This package holds the reconciliation logic for a small catalog of Open
Application Model (OAM) extensions: a sidecar trait, a simple rollout trait and
a PodSpec workload, plus admission webhook handlers for the workload. Objects
are handled as dataclasses and plain dictionaries. The package never talks to a
cluster itself. Every read and write goes through a client object that you pass
in, so the package has no runtime dependencies.

## Modules

### `oamcatalog.api`

This module defines the resource types `SidecarTrait`, `SimpleRolloutTrait` and
`PodSpecWorkload`, together with their specs and statuses. Each of them has
`from_dict`, `get_condition` and `set_conditions`. `PodSpecWorkload` also has
`to_dict`.

It also defines the shared pieces:

- `GroupVersion`. `str()` of it gives `group/version`.
- `TypedReference`, with `is_empty`, `to_dict` and `from_dict`.
- `Condition`.
- `ConditionedStatus`, which keeps at most one condition per type.
- `ObjectMeta`.
- `Result`, which says whether to requeue and after how many seconds.

`reconcile_success()` and `reconcile_error(error)` build the `Synced`
conditions. Clients raise `NotFoundError` when an object is missing and
`ConflictError` when an update conflicts.

### `oamcatalog.sidecar`

This module adds a sidecar container and its volumes to the resources of a
workload. Standalone helpers:

- `combine_containers(res_containers, container)` adds the container. If a
  container with the same name exists, it is replaced.
- `combine_volumes(res_volumes, volumes)` adds the volumes. Any volume with the
  same name is replaced.
- `locate_field`, `locate_containers_field` and `locate_volumes_field` find the
  containers or volumes list of a pod or of a pod template. They use a schema
  lookup that you supply. It is a callable
  `(api_version, kind, path) -> type name or None`.

`SidecarTraitReconciler(client, lookup_schema, *, child_resources=None,
locate_parent=None, recorder=None)` does the work:

- `reconcile(namespace, name)` applies the trait.
- `sidecar_resources(trait, resources)` merges the sidecar into the given
  resources.

The client needs three methods:

- `get(api_version, kind, namespace, name)`
- `patch(resource, patch, field_owner)`, which receives a JSON merge patch
- `update_status(obj)`

### `oamcatalog.rollout`

This module moves replicas from the current workload to the desired one in
batches. It scales the new deployments up by `spec.batch` and the old ones down
by `spec.maxUnavailable`. When both sides are ready, it deletes the old workload
and records the controller revision in the rollout history.

Helpers:

- `determine_workload_type`
- `is_newly_created_rollout_trait`
- `is_under_rollout`
- `is_scale_up_ready`
- `is_scale_down_ready`

`SimpleRolloutTraitReconciler(client)` has these methods:

- `reconcile`
- `fetch_workload`
- `scale_up_gradually`
- `scale_down_gradually`
- `underlying_deployments`
- `controller_revision`

The client needs `get`, `update(obj, field_owner="")`, `delete(obj)`,
`update_status(obj)` and `workload_child_resources(workload)`.

### `oamcatalog.podspec`

This module turns a `PodSpecWorkload` into resources:

- `render_deployment(workload)` builds a Deployment. Any port without a protocol
  gets TCP.
- `render_service(workload)` builds a ClusterIP Service with one port per
  container port, numbered from 8080.
- `check_container_ports_specified(workload)` says whether a Service is needed.

`PodSpecWorkloadReconciler(client, *, locate_parent=None, recorder=None)`
applies both resources and records them in the workload status. Its
`update_status` retries when it gets a `ConflictError`. The client needs `get`,
`apply(obj, field_owner)` and `update_status(obj)`.

### `oamcatalog.webhook`

This module validates and defaults `PodSpecWorkload` objects:

- `default_pod_spec_workload(obj)` sets replicas to 1 when they are unset.
- `validate_create`, `validate_update` and `validate_delete` return a list of
  `FieldError`.
- `to_aggregate(errors)` turns that list into a `ValidationFailed` exception,
  or `None` when the list is empty.

`MutatingHandler.handle(request)` and `ValidatingHandler.handle(request)` take
a mapping with `operation`, `object` and, for updates, `oldObject`. Each
returns an `AdmissionResponse`. The mutating handler's response carries JSON
patches. `register(server)` calls `server.register(path, handler)` for both
handlers.

## Example

```python
from oamcatalog.api import PodSpecWorkload
from oamcatalog.podspec import render_deployment
from oamcatalog.webhook import default_pod_spec_workload, validate_create, to_aggregate

workload = PodSpecWorkload.from_dict({
    "metadata": {"name": "web", "namespace": "default"},
    "spec": {"podSpec": {"containers": [{"name": "web", "image": "nginx"}]}},
})
default_pod_spec_workload(workload)   # replicas defaults to 1
assert to_aggregate(validate_create(workload)) is None
deployment = render_deployment(workload)
```

## What this package does not do

The package has no command and no long-running controller process. It does not
watch the cluster or queue requests. It has no Kubernetes client, no OpenAPI
schema fetching and no HTTP server for the webhooks. You supply the client, the
schema lookup and the webhook server. You call `reconcile` and `handle`
yourself, and you act on the `Result` they return.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```