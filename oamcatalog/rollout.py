"""Rolling a workload over to a new revision by scaling deployments in batches."""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from typing import Any, Iterable, Optional, Protocol

from .api import (
    RECONCILE_WAIT_RESULT,
    Condition,
    IntOrString,
    NotFoundError,
    Result,
    RolloutHistory,
    SimpleRolloutTrait,
    reconcile_error,
    reconcile_success,
)

log = logging.getLogger(__name__)

ERR_LOCATE_WORKLOAD = "cannot find workload"
ERR_LOCATE_RESOURCES = "cannot find resources"
ERR_LOCATE_AVAILABLE_RESOURCES = "cannot find available resources"
ERR_MARSHAL_DEPLOYMENT = "cannot unmarshal deployment"
ERR_FAIL_UPDATE_DEPLOYMENT = "failed to update deployment"
ERR_FAIL_DELETE_LEGACY_WORKLOAD = "failed to delete wrokload"
ERR_FAIL_SCALE_UP = "failed to scale up new workload"
ERR_FAIL_SCALE_DOWN = "failed to scale down new workload"
ERR_FAIL_UPDATE_STATUS = "fail to update rollout status"
ERR_FAIL_GET_CONTROLLER_REVISION = "fail to get controller revision"

OAM_API_VERSION = "core.oam.dev/v1alpha2"
APPS_API_VERSION = "apps/v1"

KIND_DEPLOYMENT = "Deployment"
KIND_STATEFUL_SET = "StatefulSet"
KIND_CONTROLLER_REVISION = "ControllerRevision"

GVK_DEPLOYMENT = "apps/v1, Kind=Deployment"
GVK_STATEFUL_SET = "apps/v1, Kind=StatefulSet"

RECONCILE_WAIT_WORKLOAD_INIT = Result(requeue_after=5.0)
RECONCILE_WAIT_WORKLOAD_SCALE = Result(requeue_after=5.0)


class Client(Protocol):
    """The cluster operations the rollout reconciler needs."""

    def get(self, api_version: str, kind: str, namespace: str, name: str) -> dict[str, Any]:
        ...

    def update(self, obj: dict[str, Any], field_owner: str = "") -> None:
        ...

    def delete(self, obj: dict[str, Any]) -> None:
        ...

    def update_status(self, obj: Any) -> None:
        ...

    def workload_child_resources(self, workload: dict[str, Any]) -> Iterable[dict[str, Any]]:
        ...


def _gvk(resource: dict[str, Any]) -> str:
    return f"{resource.get('apiVersion', '')}, Kind={resource.get('kind', '')}"


def _spec_replicas(deployment: dict[str, Any]) -> int:
    # Kubernetes defaults an unset replica count to 1.
    replicas = (deployment.get("spec") or {}).get("replicas")
    return 1 if replicas is None else replicas


def _set_spec_replicas(deployment: dict[str, Any], replicas: int) -> None:
    deployment.setdefault("spec", {})["replicas"] = replicas


def _status_count(deployment: dict[str, Any], key: str) -> int:
    return (deployment.get("status") or {}).get(key) or 0


def _int_val(value: Optional[IntOrString]) -> int:
    return value if isinstance(value, int) else 0


def _name(resource: dict[str, Any]) -> str:
    return (resource.get("metadata") or {}).get("name", "")


def determine_workload_type(client: Client, workload: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the resources behind a workload: its children for OAM workloads, itself for native ones."""
    api_version = workload.get("apiVersion", "")
    if api_version == OAM_API_VERSION:
        return list(client.workload_child_resources(workload))
    if api_version == APPS_API_VERSION:
        log.info("workload is K8S native resources, APIVersion %s", api_version)
        return [workload]
    if api_version == "":
        raise ValueError("failed to get the workload APIVersion")
    raise ValueError("This trait doesn't support this APIVersion" + api_version)


def is_newly_created_rollout_trait(trait: SimpleRolloutTrait) -> bool:
    """A trait that has never recorded a current workload is new."""
    return trait.status.current_workload_reference.is_empty()


def is_under_rollout(trait: SimpleRolloutTrait) -> bool:
    """A rollout is running while the desired and current workloads differ."""
    return trait.status.current_workload_reference != trait.spec.workload_reference


def is_scale_up_ready(deployments: list[dict[str, Any]], target_replicas: int) -> bool:
    """All deployments have exactly the target number of ready replicas."""
    if not deployments:
        return False
    return all(_status_count(d, "readyReplicas") == target_replicas for d in deployments)


def is_scale_down_ready(deployments: list[dict[str, Any]]) -> bool:
    """All deployments are scaled to zero with no ready replicas left."""
    if not deployments:
        return False
    return all(
        _spec_replicas(d) == 0 and _status_count(d, "readyReplicas") == 0 for d in deployments
    )


class SimpleRolloutTraitReconciler:
    """Moves replicas from the current workload to the desired one in batches."""

    def __init__(self, client: Client) -> None:
        self.client = client

    def _patch_condition(self, trait: SimpleRolloutTrait, condition: Condition) -> None:
        trait.set_conditions(condition)
        self.client.update_status(trait)

    def _fail(self, trait: SimpleRolloutTrait, message: str) -> Result:
        self._patch_condition(trait, reconcile_error(message))
        return RECONCILE_WAIT_RESULT

    def fetch_workload(self, trait: SimpleRolloutTrait) -> Optional[dict[str, Any]]:
        """Fetch the workload the trait points to; None (with an error condition) if it is missing."""
        ref = trait.workload_reference
        try:
            workload = self.client.get(ref.api_version, ref.kind, trait.metadata.namespace, ref.name)
        except Exception as err:  # noqa: BLE001
            log.error("Workload not found: kind %s name %s: %s", ref.kind, ref.name, err)
            self._fail(trait, f"{ERR_LOCATE_WORKLOAD}: {err}")
            return None
        log.info(
            "Get the workload the trait is pointing to: %s %s %s",
            ref.name,
            workload.get("apiVersion"),
            workload.get("kind"),
        )
        return workload

    def scale_up_gradually(
        self, deployments: list[dict[str, Any]], target_replica: int, batch: int
    ) -> None:
        """Raise each settled deployment by one batch, stopping at the target."""
        for deployment in deployments:
            replicas = _spec_replicas(deployment)
            if replicas != _status_count(deployment, "readyReplicas"):
                continue
            if replicas == target_replica:
                log.info("Scale up is ready")
                continue
            _set_spec_replicas(deployment, min(replicas + batch, target_replica)
                               if replicas + batch >= target_replica else replicas + batch)
            self.client.update(deployment)
            log.info("Successfully update deployment for scaling up: %s", _name(deployment))

    def scale_down_gradually(
        self, deployments: list[dict[str, Any]], target_replica: int, batch: int
    ) -> None:
        """Lower each settled deployment by one batch, stopping at the target."""
        for deployment in deployments:
            replicas = _spec_replicas(deployment)
            if replicas == 0:
                continue
            if replicas != _status_count(deployment, "readyReplicas"):
                continue
            if replicas == target_replica:
                log.info("Scale down is ready")
                continue
            if replicas - batch <= target_replica:
                _set_spec_replicas(deployment, target_replica)
            else:
                _set_spec_replicas(deployment, replicas - batch)
            self.client.update(deployment)
            log.info("Successfully update deployment for scaling down: %s", _name(deployment))

    def underlying_deployments(self, workload: dict[str, Any]) -> list[dict[str, Any]]:
        """The deployments that make up a workload."""
        resources = determine_workload_type(self.client, workload)
        log.info("Get underlying resources: %d", len(resources))
        return [copy.deepcopy(res) for res in resources if _gvk(res) == GVK_DEPLOYMENT]

    def controller_revision(self, trait: SimpleRolloutTrait) -> dict[str, Any]:
        """The controller revision named like the trait's workload reference."""
        ref = trait.workload_reference
        return self.client.get(
            APPS_API_VERSION, KIND_CONTROLLER_REVISION, trait.metadata.namespace, ref.name
        )

    def _record_revision(self, trait: SimpleRolloutTrait, *, append: bool) -> Result:
        try:
            revision = self.controller_revision(trait)
        except Exception as err:  # noqa: BLE001
            log.error("Failed to get ControllerRevision %s: %s", trait.spec.workload_reference.name, err)
            return self._fail(trait, f"{ERR_FAIL_GET_CONTROLLER_REVISION}: {err}")

        entry = RolloutHistory(
            revision=revision.get("revision", 0),
            history_data=copy.deepcopy(revision.get("data")),
        )
        if append:
            trait.status.rollout_history.append(entry)
        else:
            trait.status.rollout_history = [entry]
        trait.status.current_workload_reference = replace(trait.spec.workload_reference)

        try:
            self.client.update_status(trait)
        except Exception as err:  # noqa: BLE001
            log.error("Failed to update rollouttrait status: %s", err)
            return self._fail(trait, f"{ERR_FAIL_UPDATE_STATUS}: {err}")
        self._patch_condition(trait, reconcile_success())
        return Result()

    @staticmethod
    def _target_replica(trait: SimpleRolloutTrait) -> int:
        if trait.spec.replica is None:
            raise ValueError("spec.replica is required")
        return trait.spec.replica

    def reconcile(self, namespace: str, name: str) -> Result:
        """Advance the rollout of the named trait by one step."""
        log.info("Reconcile SimpleRolloutTrait %s/%s", namespace, name)
        try:
            data = self.client.get(
                SimpleRolloutTrait.API_VERSION, SimpleRolloutTrait.KIND, namespace, name
            )
        except NotFoundError:
            return Result()
        trait = SimpleRolloutTrait.from_dict(data)
        trait.metadata.namespace = trait.metadata.namespace or namespace
        trait.metadata.name = trait.metadata.name or name

        if is_newly_created_rollout_trait(trait):
            return self._initialise(trait)
        if is_under_rollout(trait):
            return self._advance(trait)
        return Result()

    def _initialise(self, trait: SimpleRolloutTrait) -> Result:
        workload = self.fetch_workload(trait)
        if workload is None:
            return RECONCILE_WAIT_RESULT
        try:
            deployments = self.underlying_deployments(workload)
        except Exception as err:  # noqa: BLE001
            log.error("Cannot find the workload child resources: %s", err)
            return self._fail(trait, ERR_LOCATE_RESOURCES)
        if not deployments:
            return RECONCILE_WAIT_WORKLOAD_INIT

        for deployment in deployments:
            available = _status_count(deployment, "availableReplicas")
            if available != _spec_replicas(deployment):
                # updating before the initial setup finishes makes the runtime fail
                return RECONCILE_WAIT_WORKLOAD_INIT
            target = self._target_replica(trait)
            if available == target:
                continue
            _set_spec_replicas(deployment, target)
            log.info("Going to update Deployment %s", _name(deployment))
            try:
                self.client.update(deployment, field_owner=trait.spec.workload_reference.uid)
            except Exception as err:  # noqa: BLE001
                log.error("Failed to apply a deployment: %s", err)
                return self._fail(trait, f"{ERR_FAIL_UPDATE_DEPLOYMENT}: {err}")

        return self._record_revision(trait, append=False)

    def _advance(self, trait: SimpleRolloutTrait) -> Result:
        new_workload = self.fetch_workload(trait)
        if new_workload is None:
            return RECONCILE_WAIT_RESULT
        try:
            new_deployments = self.underlying_deployments(new_workload)
        except Exception as err:  # noqa: BLE001
            log.error("Cannot find the workload child resources: %s", err)
            return self._fail(trait, ERR_LOCATE_RESOURCES)
        if not new_deployments:
            # the workload exists but its deployments do not yet
            return RECONCILE_WAIT_RESULT

        current = trait.status.current_workload_reference
        old_workload = self.client.get(
            current.api_version, current.kind, trait.metadata.namespace, current.name
        )
        try:
            old_deployments = self.underlying_deployments(old_workload)
        except Exception as err:  # noqa: BLE001
            log.error("Cannot find the workload child resources: %s", err)
            return self._fail(trait, ERR_LOCATE_RESOURCES)

        target = self._target_replica(trait)
        if is_scale_up_ready(new_deployments, target) and is_scale_down_ready(old_deployments):
            try:
                self.client.delete(old_workload)
            except Exception as err:  # noqa: BLE001
                log.error("Failed to delete old workload instance %s: %s", old_workload.get("kind"), err)
                return self._fail(trait, ERR_FAIL_DELETE_LEGACY_WORKLOAD)
            log.info("Deleted old workload instance successfully: %s", old_workload.get("kind"))
            return self._record_revision(trait, append=True)

        try:
            self.scale_up_gradually(new_deployments, target, _int_val(trait.spec.batch))
        except Exception as err:  # noqa: BLE001
            log.error("Failed to scale up new workload: %s", err)
            return self._fail(trait, f"{ERR_FAIL_SCALE_UP}: {err}")
        try:
            self.scale_down_gradually(old_deployments, 0, _int_val(trait.spec.max_unavailable))
        except Exception as err:  # noqa: BLE001
            log.error("Failed to scale down old workload: %s", err)
            return self._fail(trait, f"{ERR_FAIL_SCALE_DOWN}: {err}")
        return RECONCILE_WAIT_WORKLOAD_SCALE