"""Resource types for the sidecar trait, the simple rollout trait and the PodSpec workload."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

IntOrString = Union[int, str]

CONDITION_SYNCED = "Synced"
STATUS_TRUE = "True"
STATUS_FALSE = "False"
STATUS_UNKNOWN = "Unknown"
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_RECONCILE_ERROR = "ReconcileError"


@dataclass(frozen=True)
class GroupVersion:
    """An API group together with its version."""

    group: str
    version: str

    def __str__(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"


SIDECAR_GROUP_VERSION = GroupVersion("core.oam.dev", "v1alpha2")
ROLLOUT_GROUP_VERSION = GroupVersion("extend.oam.dev", "v1alpha2")
PODSPEC_GROUP_VERSION = GroupVersion("standard.oam.dev", "v1alpha1")


@dataclass
class TypedReference:
    """A reference to an object by API version, kind, name and UID."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""

    def is_empty(self) -> bool:
        return self == TypedReference()

    def to_dict(self) -> dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "TypedReference":
        data = data or {}
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
        )


@dataclass
class Condition:
    """An observed condition; the transition time is ignored in comparisons."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = field(default="", compare=False)

    def to_dict(self) -> dict[str, str]:
        out = {
            "type": self.type,
            "status": self.status,
            "lastTransitionTime": self.last_transition_time,
            "reason": self.reason,
        }
        if self.message:
            out["message"] = self.message
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", ""),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
        )


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def reconcile_success() -> Condition:
    """A condition saying the last reconcile succeeded."""
    return Condition(
        type=CONDITION_SYNCED,
        status=STATUS_TRUE,
        reason=REASON_RECONCILE_SUCCESS,
        last_transition_time=_now(),
    )


def reconcile_error(error: BaseException | str) -> Condition:
    """A condition saying the last reconcile failed with ``error``."""
    return Condition(
        type=CONDITION_SYNCED,
        status=STATUS_FALSE,
        reason=REASON_RECONCILE_ERROR,
        message=str(error),
        last_transition_time=_now(),
    )


@dataclass
class ConditionedStatus:
    """A status holding a set of conditions, at most one per type."""

    conditions: list[Condition] = field(default_factory=list)

    def get_condition(self, condition_type: str) -> Condition:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return Condition(type=condition_type, status=STATUS_UNKNOWN)

    def set_conditions(self, *args: Condition) -> None:
        for new in args:
            for position, existing in enumerate(self.conditions):
                if existing.type == new.type:
                    if existing != new:
                        self.conditions[position] = new
                    break
            else:
                self.conditions.append(new)

    def _conditions_to_dict(self) -> dict[str, Any]:
        if not self.conditions:
            return {}
        return {"conditions": [c.to_dict() for c in self.conditions]}


def _conditions_from(data: dict[str, Any]) -> list[Condition]:
    return [Condition.from_dict(c) for c in data.get("conditions") or []]


@dataclass
class ObjectMeta:
    """The identifying metadata of an object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in (
            ("name", self.name),
            ("namespace", self.namespace),
            ("uid", self.uid),
            ("labels", dict(self.labels)),
            ("annotations", dict(self.annotations)),
        ):
            if value:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ObjectMeta":
        data = data or {}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            uid=data.get("uid", ""),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
        )


@dataclass(frozen=True)
class Result:
    """What a reconcile asks of its caller: nothing, or to come back later."""

    requeue: bool = False
    requeue_after: float = 0.0


RECONCILE_WAIT_RESULT = Result(requeue_after=30.0)


class NotFoundError(LookupError):
    """The requested object does not exist."""


class ConflictError(RuntimeError):
    """The object was changed by someone else since it was read."""


class _Trait:
    """Shared access to the workload a trait points at."""

    metadata: ObjectMeta

    @property
    def workload_reference(self) -> TypedReference:
        return self.spec.workload_reference  # type: ignore[attr-defined]

    @workload_reference.setter
    def workload_reference(self, reference: TypedReference) -> None:
        self.spec.workload_reference = reference  # type: ignore[attr-defined]


@dataclass
class SidecarTraitSpec:
    """The sidecar container and volumes to inject into a workload's resources."""

    container: dict[str, Any] = field(default_factory=dict)
    volumes: list[dict[str, Any]] = field(default_factory=list)
    workload_reference: TypedReference = field(default_factory=TypedReference)


@dataclass
class SidecarTrait(_Trait):
    """A trait that adds a sidecar container to a workload."""

    API_VERSION = str(SIDECAR_GROUP_VERSION)
    KIND = "SidecarTrait"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SidecarTraitSpec = field(default_factory=SidecarTraitSpec)
    status: ConditionedStatus = field(default_factory=ConditionedStatus)

    def get_condition(self, condition_type: str) -> Condition:
        return self.status.get_condition(condition_type)

    def set_conditions(self, *args: Condition) -> None:
        self.status.set_conditions(*args)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SidecarTrait":
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=SidecarTraitSpec(
                container=copy.deepcopy(spec.get("container") or {}),
                volumes=copy.deepcopy(spec.get("volumes") or []),
                workload_reference=TypedReference.from_dict(spec.get("workloadRef")),
            ),
            status=ConditionedStatus(conditions=_conditions_from(status)),
        )


@dataclass
class RolloutHistory:
    """One revision a rollout went through, with its recorded data."""

    revision: int = 0
    history_data: Any = None


@dataclass
class SimpleRolloutTraitSpec:
    """The target replicas and step sizes of a rollout."""

    replica: Optional[int] = None
    batch: Optional[IntOrString] = None
    max_unavailable: Optional[IntOrString] = None
    workload_reference: TypedReference = field(default_factory=TypedReference)


@dataclass
class SimpleRolloutTraitStatus(ConditionedStatus):
    """Conditions, history and the workload currently rolled out."""

    rollout_history: list[RolloutHistory] = field(default_factory=list)
    current_workload_reference: TypedReference = field(default_factory=TypedReference)


@dataclass
class SimpleRolloutTrait(_Trait):
    """A trait that moves replicas from one workload revision to the next in batches."""

    API_VERSION = str(ROLLOUT_GROUP_VERSION)
    KIND = "SimpleRolloutTrait"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SimpleRolloutTraitSpec = field(default_factory=SimpleRolloutTraitSpec)
    status: SimpleRolloutTraitStatus = field(default_factory=SimpleRolloutTraitStatus)

    def get_condition(self, condition_type: str) -> Condition:
        return self.status.get_condition(condition_type)

    def set_conditions(self, *args: Condition) -> None:
        self.status.set_conditions(*args)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SimpleRolloutTrait":
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        history = [
            RolloutHistory(
                revision=entry.get("revision", 0),
                history_data=copy.deepcopy(entry.get("historyData")),
            )
            for entry in status.get("rolloutiHistory") or []
        ]
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=SimpleRolloutTraitSpec(
                replica=spec.get("replica"),
                batch=spec.get("batch"),
                max_unavailable=spec.get("maxUnavailable"),
                workload_reference=TypedReference.from_dict(spec.get("workloadRef")),
            ),
            status=SimpleRolloutTraitStatus(
                conditions=_conditions_from(status),
                rollout_history=history,
                current_workload_reference=TypedReference.from_dict(
                    status.get("currentWorkloadRef")
                ),
            ),
        )


@dataclass
class PodSpecWorkloadSpec:
    """Desired replicas and the pod spec they run."""

    replicas: Optional[int] = None
    pod_spec: dict[str, Any] = field(default_factory=dict)


@dataclass
class PodSpecWorkloadStatus(ConditionedStatus):
    """Conditions and the resources a PodSpec workload manages."""

    resources: list[TypedReference] = field(default_factory=list)


@dataclass
class PodSpecWorkload:
    """A workload described by a pod spec and a replica count."""

    API_VERSION = str(PODSPEC_GROUP_VERSION)
    KIND = "PodSpecWorkload"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: PodSpecWorkloadSpec = field(default_factory=PodSpecWorkloadSpec)
    status: PodSpecWorkloadStatus = field(default_factory=PodSpecWorkloadStatus)

    def get_condition(self, condition_type: str) -> Condition:
        return self.status.get_condition(condition_type)

    def set_conditions(self, *args: Condition) -> None:
        self.status.set_conditions(*args)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PodSpecWorkload":
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=PodSpecWorkloadSpec(
                replicas=spec.get("replicas"),
                pod_spec=copy.deepcopy(spec.get("podSpec") or {}),
            ),
            status=PodSpecWorkloadStatus(
                conditions=_conditions_from(status),
                resources=[
                    TypedReference.from_dict(r) for r in status.get("resources") or []
                ],
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        spec: dict[str, Any] = {"podSpec": copy.deepcopy(self.spec.pod_spec)}
        if self.spec.replicas is not None:
            spec["replicas"] = self.spec.replicas
        out: dict[str, Any] = {
            "apiVersion": self.API_VERSION,
            "kind": self.KIND,
            "metadata": self.metadata.to_dict(),
            "spec": spec,
        }
        status = self.status._conditions_to_dict()
        if self.status.resources:
            status["resources"] = [r.to_dict() for r in self.status.resources]
        if status:
            out["status"] = status
        return out