"""Running a PodSpecWorkload as a Deployment, plus a Service when it exposes ports."""

from __future__ import annotations

import copy
import logging
import time
from typing import Any, Callable, Optional, Protocol

from .api import (
    RECONCILE_WAIT_RESULT,
    Condition,
    ConflictError,
    NotFoundError,
    PodSpecWorkload,
    Result,
    TypedReference,
    reconcile_error,
    reconcile_success,
)

log = logging.getLogger(__name__)

ERR_RENDER_DEPLOYMENT = "cannot render deployment"
ERR_RENDER_SERVICE = "cannot render service"
ERR_APPLY_DEPLOYMENT = "cannot apply the deployment"
ERR_APPLY_SERVICE = "cannot apply the service"

DEPLOYMENT_KIND = "Deployment"
DEPLOYMENT_API_VERSION = "apps/v1"
SERVICE_KIND = "Service"
SERVICE_API_VERSION = "v1"

LABEL_NAME_KEY = "component.oam.dev/name"
PROTOCOL_TCP = "TCP"
SERVICE_TYPE_CLUSTER_IP = "ClusterIP"
FIRST_SERVICE_PORT = 8080

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

# Delays between attempts when a status update meets a conflict.
_STATUS_RETRY_DELAYS = (0.01, 0.05, 0.25)

Recorder = Callable[[Any, str, str, str], None]


class Client(Protocol):
    """The cluster operations the PodSpecWorkload reconciler needs."""

    def get(self, api_version: str, kind: str, namespace: str, name: str) -> dict[str, Any]:
        ...

    def apply(self, obj: dict[str, Any], field_owner: str) -> Optional[dict[str, Any]]:
        ...

    def update_status(self, obj: PodSpecWorkload) -> None:
        ...


def _merged(base: dict[str, str], overrides: dict[str, str]) -> dict[str, str]:
    return {**base, **overrides}


def _pass_label_and_annotation(workload: PodSpecWorkload, metadata: dict[str, Any]) -> None:
    """Copy the workload's labels and annotations onto ``metadata``; the workload's win."""
    labels = _merged(metadata.get("labels") or {}, workload.metadata.labels)
    annotations = _merged(metadata.get("annotations") or {}, workload.metadata.annotations)
    if labels:
        metadata["labels"] = labels
    if annotations:
        metadata["annotations"] = annotations


def _controller_reference(workload: PodSpecWorkload) -> dict[str, Any]:
    return {
        "apiVersion": workload.API_VERSION,
        "kind": workload.KIND,
        "name": workload.metadata.name,
        "uid": workload.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def _containers(workload: PodSpecWorkload) -> list[dict[str, Any]]:
    return list(workload.spec.pod_spec.get("containers") or [])


def render_deployment(workload: PodSpecWorkload) -> dict[str, Any]:
    """Build the Deployment that runs the workload's pod spec."""
    name = workload.metadata.name
    pod_spec = copy.deepcopy(workload.spec.pod_spec)
    # server-side apply rejects ports without a protocol
    for container in pod_spec.get("containers") or []:
        for port in container.get("ports") or []:
            if not port.get("protocol"):
                port["protocol"] = PROTOCOL_TCP

    spec: dict[str, Any] = {
        "selector": {"matchLabels": {LABEL_NAME_KEY: name}},
        "template": {
            "metadata": {"labels": {LABEL_NAME_KEY: name}},
            "spec": pod_spec,
        },
    }
    if workload.spec.replicas is not None:
        spec["replicas"] = workload.spec.replicas

    metadata: dict[str, Any] = {"name": name, "namespace": workload.metadata.namespace}
    deployment = {
        "apiVersion": DEPLOYMENT_API_VERSION,
        "kind": DEPLOYMENT_KIND,
        "metadata": metadata,
        "spec": spec,
    }
    _pass_label_and_annotation(workload, metadata)
    _pass_label_and_annotation(workload, spec["template"]["metadata"])
    metadata["ownerReferences"] = [_controller_reference(workload)]
    log.info("rendered a deployment for %s", name)
    return deployment


def check_container_ports_specified(workload: Optional[PodSpecWorkload]) -> bool:
    """Whether any container of the workload declares a port."""
    if workload is None:
        return False
    return any(container.get("ports") for container in _containers(workload))


def render_service(workload: PodSpecWorkload) -> dict[str, Any]:
    """Build a ClusterIP Service with one port per container port, numbered from 8080."""
    name = workload.metadata.name
    ports: list[dict[str, Any]] = []
    container_ports = (
        port for container in _containers(workload) for port in container.get("ports") or []
    )
    for service_port, port in enumerate(container_ports, start=FIRST_SERVICE_PORT):
        entry: dict[str, Any] = {}
        if port.get("name"):
            entry["name"] = port["name"]
        if port.get("protocol"):
            entry["protocol"] = port["protocol"]
        entry["port"] = service_port
        entry["targetPort"] = int(port.get("containerPort", 0))
        ports.append(entry)

    return {
        "apiVersion": SERVICE_API_VERSION,
        "kind": SERVICE_KIND,
        "metadata": {
            "name": name,
            "namespace": workload.metadata.namespace,
            "labels": {LABEL_NAME_KEY: name},
            "ownerReferences": [_controller_reference(workload)],
        },
        "spec": {
            "selector": {LABEL_NAME_KEY: name},
            "ports": ports,
            "type": SERVICE_TYPE_CLUSTER_IP,
        },
    }


def _reference_to(obj: dict[str, Any]) -> TypedReference:
    metadata = obj.get("metadata") or {}
    return TypedReference(
        api_version=obj.get("apiVersion", ""),
        kind=obj.get("kind", ""),
        name=metadata.get("name", ""),
        uid=metadata.get("uid", ""),
    )


class PodSpecWorkloadReconciler:
    """Keeps the Deployment and Service of each PodSpecWorkload in line with its spec."""

    def __init__(
        self,
        client: Client,
        *,
        locate_parent: Optional[Callable[[PodSpecWorkload], Any]] = None,
        recorder: Optional[Recorder] = None,
    ) -> None:
        self.client = client
        self._locate_parent = locate_parent
        self._recorder = recorder

    def _event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        if self._recorder is not None:
            self._recorder(obj, event_type, reason, message)

    def _patch_condition(self, workload: PodSpecWorkload, condition: Condition) -> None:
        workload.set_conditions(condition)
        self.client.update_status(workload)

    def _fail(self, workload: PodSpecWorkload, message: str) -> Result:
        self._patch_condition(workload, reconcile_error(message))
        return RECONCILE_WAIT_RESULT

    def _event_target(self, workload: PodSpecWorkload) -> Any:
        if self._locate_parent is not None:
            try:
                parent = self._locate_parent(workload)
            except Exception:  # noqa: BLE001 - fall back to the workload itself
                log.exception("Failed to find the parent of workload %s", workload.metadata.name)
                parent = None
            if parent is not None:
                return parent
        return workload

    def reconcile(self, namespace: str, name: str) -> Result:
        """Apply the Deployment, and the Service if needed, for the named workload."""
        log.info("Reconcile podspecworkload %s/%s", namespace, name)
        try:
            data = self.client.get(
                PodSpecWorkload.API_VERSION, PodSpecWorkload.KIND, namespace, name
            )
        except NotFoundError:
            log.info("Podspec workload is deleted")
            return Result()
        workload = PodSpecWorkload.from_dict(data)
        workload.metadata.namespace = workload.metadata.namespace or namespace
        workload.metadata.name = workload.metadata.name or name

        event_obj = self._event_target(workload)
        owner = workload.metadata.uid

        try:
            deployment = render_deployment(workload)
        except Exception as err:  # noqa: BLE001
            log.error("Failed to render a deployment: %s", err)
            self._event(event_obj, EVENT_WARNING, ERR_RENDER_DEPLOYMENT, str(err))
            return self._fail(workload, f"{ERR_RENDER_DEPLOYMENT}: {err}")
        try:
            applied = self.client.apply(deployment, owner) or deployment
        except Exception as err:  # noqa: BLE001
            log.error("Failed to apply a deployment: %s", err)
            self._event(event_obj, EVENT_WARNING, ERR_APPLY_DEPLOYMENT, str(err))
            return self._fail(workload, f"{ERR_APPLY_DEPLOYMENT}: {err}")
        self._event(
            event_obj,
            EVENT_NORMAL,
            "Deployment created",
            f"Workload `{workload.metadata.name}` successfully patched a deployment "
            f"`{deployment['metadata']['name']}`",
        )
        workload.status.resources = [_reference_to(applied)]

        if check_container_ports_specified(workload):
            try:
                service = render_service(workload)
            except Exception as err:  # noqa: BLE001
                log.error("Failed to render a service: %s", err)
                self._event(event_obj, EVENT_WARNING, ERR_RENDER_SERVICE, str(err))
                return self._fail(workload, f"{ERR_RENDER_SERVICE}: {err}")
            try:
                applied_service = self.client.apply(service, owner) or service
            except Exception as err:  # noqa: BLE001
                log.error("Failed to apply a service: %s", err)
                self._event(event_obj, EVENT_WARNING, ERR_APPLY_DEPLOYMENT, str(err))
                return self._fail(workload, f"{ERR_APPLY_SERVICE}: {err}")
            self._event(
                event_obj,
                EVENT_NORMAL,
                "Service created",
                f"Workload `{workload.metadata.name}` successfully server side patched a "
                f"service `{service['metadata']['name']}`",
            )
            workload.status.resources.append(_reference_to(applied_service))

        self.update_status(workload)
        self._patch_condition(workload, reconcile_success())
        return Result()

    def update_status(self, workload: PodSpecWorkload) -> None:
        """Write the workload's status onto its latest version, retrying on conflicts."""
        status = copy.deepcopy(workload.status)
        namespace, name = workload.metadata.namespace, workload.metadata.name
        attempts = len(_STATUS_RETRY_DELAYS) + 1
        for attempt in range(attempts):
            fresh = PodSpecWorkload.from_dict(
                self.client.get(PodSpecWorkload.API_VERSION, PodSpecWorkload.KIND, namespace, name)
            )
            workload.metadata = fresh.metadata
            workload.spec = fresh.spec
            workload.status = copy.deepcopy(status)
            try:
                self.client.update_status(workload)
                return
            except ConflictError:
                if attempt == attempts - 1:
                    raise
                time.sleep(_STATUS_RETRY_DELAYS[attempt])