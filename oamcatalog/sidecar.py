"""Injecting a sidecar container and its volumes into a workload's resources."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

from .api import (
    RECONCILE_WAIT_RESULT,
    Condition,
    NotFoundError,
    Result,
    SidecarTrait,
    reconcile_error,
    reconcile_success,
)

log = logging.getLogger(__name__)

ERR_SIDECAR_CONTAINER_NAME_DUPLICATE = "cannot deploy sidecar container, duplicate name"
ERR_SIDECAR_VOLUME_NAME_DUPLICATE = "cannot deploy sidecar volume, duplicate name"
ERR_PATCH_TO_BE_SIDECAR_RESOURCE = "cannot patch the resource for containers"
ERR_SIDECAR_RESOURCE = "cannot sidecar the resourc"
ERR_QUERY_OPENAPI = "failed to query openAPI"
ERR_LOCATE_WORKLOAD = "cannot find the workload"
ERR_FETCH_CHILD_RESOURCES = "cannot fetch the child resources of the workload"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

CONTAINERS_FIELD_PATHS: tuple[tuple[str, ...], ...] = (
    ("spec", "containers"),
    ("spec", "template", "spec", "containers"),
)
VOLUMES_FIELD_PATHS: tuple[tuple[str, ...], ...] = (
    ("spec", "volumes"),
    ("spec", "template", "spec", "volumes"),
)

# Given an object's apiVersion, its kind and a field path, return the schema
# type name of that field ("array", "object", ...) or None if it has none.
SchemaLookup = Callable[[str, str, Sequence[str]], Optional[str]]
Recorder = Callable[[Any, str, str, str], None]


class Client(Protocol):
    """The cluster operations the reconciler needs."""

    def get(self, api_version: str, kind: str, namespace: str, name: str) -> dict[str, Any]:
        ...

    def patch(self, resource: dict[str, Any], patch: dict[str, Any], field_owner: str) -> None:
        ...

    def update_status(self, obj: Any) -> None:
        ...


def _merge_by_name(existing: Iterable[Any], item: dict[str, Any]) -> list[Any]:
    merged = list(existing)
    name = item.get("name", "")
    replacement = copy.deepcopy(item)
    for position, current in enumerate(merged):
        if isinstance(current, dict) and current.get("name") == name:
            merged[position] = replacement
            break
    else:
        merged.append(replacement)
    return merged


def combine_containers(res_containers: Optional[list[Any]], container: dict[str, Any]) -> list[Any]:
    """Add the sidecar container, replacing one of the same name if present."""
    return _merge_by_name(res_containers or [], container)


def combine_volumes(
    res_volumes: Optional[list[Any]], volumes: Optional[list[dict[str, Any]]]
) -> list[Any]:
    """Add each volume, replacing any existing volume of the same name."""
    combined = list(res_volumes or [])
    for volume in volumes or []:
        if any(
            isinstance(v, dict) and v.get("name") == volume.get("name", "") for v in combined
        ):
            log.info("Volume was discarded because of duplicate names: %s", volume.get("name"))
        combined = _merge_by_name(combined, volume)
    return combined


def locate_field(
    lookup_schema: SchemaLookup,
    resource: dict[str, Any],
    field_paths: Iterable[Sequence[str]],
) -> tuple[bool, Optional[list[str]]]:
    """Find the first of ``field_paths`` the resource's schema defines.

    Returns whether that field is an array, and its path; ``(False, None)``
    when the schema defines none of them.
    """
    api_version = resource.get("apiVersion", "")
    kind = resource.get("kind", "")
    for path in field_paths:
        field_type = lookup_schema(api_version, kind, tuple(path))
        if field_type is not None:
            return field_type == "array", list(path)
    return False, None


def locate_containers_field(
    lookup_schema: SchemaLookup, resource: dict[str, Any]
) -> tuple[bool, Optional[list[str]]]:
    """Locate the containers list of a pod or of a pod template."""
    return locate_field(lookup_schema, resource, CONTAINERS_FIELD_PATHS)


def locate_volumes_field(
    lookup_schema: SchemaLookup, resource: dict[str, Any]
) -> tuple[bool, Optional[list[str]]]:
    """Locate the volumes list of a pod or of a pod template."""
    return locate_field(lookup_schema, resource, VOLUMES_FIELD_PATHS)


class _FieldTypeError(ValueError):
    pass


def _nested_list(obj: dict[str, Any], path: Sequence[str]) -> tuple[Optional[list[Any]], bool]:
    current: Any = obj
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return None, False
        current = current[key]
    if current is None:
        return None, False
    if not isinstance(current, list):
        raise _FieldTypeError(f"{'.'.join(path)} accessor error: {current!r} is not a list")
    return copy.deepcopy(current), True


def _set_nested(obj: dict[str, Any], path: Sequence[str], value: Any) -> None:
    current = obj
    for key in path[:-1]:
        child = current.get(key)
        if child is None:
            child = current[key] = {}
        elif not isinstance(child, dict):
            raise _FieldTypeError(f"value cannot be set because {key} is not a map")
        current = child
    current[path[-1]] = value


def _merge_patch(original: Any, modified: Any) -> Any:
    if not isinstance(original, dict) or not isinstance(modified, dict):
        return copy.deepcopy(modified)
    patch: dict[str, Any] = {}
    for key, value in modified.items():
        if key not in original:
            patch[key] = copy.deepcopy(value)
        elif original[key] != value:
            patch[key] = _merge_patch(original[key], value)
    for key in original:
        if key not in modified:
            patch[key] = None
    return patch


class SidecarTraitReconciler:
    """Applies a SidecarTrait to the resources of the workload it references."""

    def __init__(
        self,
        client: Client,
        lookup_schema: SchemaLookup,
        *,
        child_resources: Optional[Callable[[dict[str, Any]], Iterable[dict[str, Any]]]] = None,
        locate_parent: Optional[Callable[[SidecarTrait], Any]] = None,
        recorder: Optional[Recorder] = None,
    ) -> None:
        self.client = client
        self.lookup_schema = lookup_schema
        self._child_resources = child_resources
        self._locate_parent = locate_parent
        self._recorder = recorder

    def _event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        if self._recorder is not None:
            self._recorder(obj, event_type, reason, message)

    def _patch_condition(self, trait: SidecarTrait, condition: Condition) -> None:
        trait.set_conditions(condition)
        self.client.update_status(trait)

    def _fail(self, trait: SidecarTrait, message: str) -> Result:
        self._patch_condition(trait, reconcile_error(message))
        return RECONCILE_WAIT_RESULT

    def _event_target(self, trait: SidecarTrait) -> Any:
        if self._locate_parent is not None:
            try:
                parent = self._locate_parent(trait)
            except Exception:  # noqa: BLE001 - fall back to the trait itself
                log.exception("Failed to find the parent resource of %s", trait.metadata.name)
                parent = None
            if parent is not None:
                return parent
        return trait

    def _fetch_workload(self, trait: SidecarTrait) -> dict[str, Any]:
        ref = trait.workload_reference
        return self.client.get(ref.api_version, ref.kind, trait.metadata.namespace, ref.name)

    def reconcile(self, namespace: str, name: str) -> Result:
        """Inject the sidecar of the named trait into its workload."""
        try:
            data = self.client.get(SidecarTrait.API_VERSION, SidecarTrait.KIND, namespace, name)
        except NotFoundError:
            return Result()
        trait = SidecarTrait.from_dict(data)
        trait.metadata.namespace = trait.metadata.namespace or namespace
        trait.metadata.name = trait.metadata.name or name
        log.info("Get the Sidecar trait %s/%s", namespace, name)

        event_obj = self._event_target(trait)

        try:
            workload = self._fetch_workload(trait)
        except Exception as err:
            self._event(event_obj, EVENT_WARNING, ERR_LOCATE_WORKLOAD, str(err))
            raise

        try:
            resources = list(self._child_resources(workload)) if self._child_resources else []
        except Exception as err:  # noqa: BLE001
            log.error("Error while fetching the workload child resources: %s", err)
            self._event(event_obj, EVENT_WARNING, ERR_FETCH_CHILD_RESOURCES, str(err))
            return self._fail(trait, ERR_FETCH_CHILD_RESOURCES)

        if not resources:
            resources = [workload]

        try:
            self.sidecar_resources(trait, resources)
        except Exception as err:
            self._event(event_obj, EVENT_WARNING, ERR_SIDECAR_RESOURCE, str(err))
            raise

        self._event(
            event_obj,
            EVENT_NORMAL,
            "Sidecar containers applied",
            f"Trait `{trait.metadata.name}` successfully sidecar a resource to",
        )
        self._patch_condition(trait, reconcile_success())
        return Result()

    def sidecar_resources(self, trait: SidecarTrait, resources: Iterable[dict[str, Any]]) -> Result:
        """Merge the sidecar container and volumes into every resource that has them."""
        resources = list(resources)
        found = False
        for res in resources:
            log.info("Resource the trait is going to modify: %s", res.get("metadata", {}).get("name"))
            original = copy.deepcopy(res)
            combined = False

            try:
                is_array, path = locate_containers_field(self.lookup_schema, res)
            except Exception as err:  # noqa: BLE001
                return self._fail(trait, f"{ERR_QUERY_OPENAPI}: {err}")
            if is_array and path:
                try:
                    containers, present = _nested_list(res, path)
                except _FieldTypeError as err:
                    return self._fail(trait, f"{ERR_PATCH_TO_BE_SIDECAR_RESOURCE}: {err}")
                if not present:
                    log.error("Failed to patch a resource for containers")
                    return self._fail(trait, ERR_PATCH_TO_BE_SIDECAR_RESOURCE)
                try:
                    _set_nested(res, path, combine_containers(containers, trait.spec.container))
                except _FieldTypeError as err:
                    return self._fail(trait, f"{ERR_PATCH_TO_BE_SIDECAR_RESOURCE}: {err}")
                found = combined = True

            try:
                is_array, path = locate_volumes_field(self.lookup_schema, res)
            except Exception as err:  # noqa: BLE001
                return self._fail(trait, f"{ERR_QUERY_OPENAPI}: {err}")
            if is_array and path:
                try:
                    volumes, _ = _nested_list(res, path)
                    _set_nested(res, path, combine_volumes(volumes, trait.spec.volumes))
                except _FieldTypeError as err:
                    return self._fail(trait, f"{ERR_PATCH_TO_BE_SIDECAR_RESOURCE}: {err}")
                found = combined = True

            if combined:
                try:
                    self.client.patch(res, _merge_patch(original, res), trait.metadata.uid)
                except Exception as err:  # noqa: BLE001
                    log.error("Failed to deploy sidecar to resource: %s", err)
                    return self._fail(trait, f"{ERR_SIDECAR_RESOURCE}: {err}")

        if not found:
            log.info("Cannot locate any resource among %d", len(resources))
            return self._fail(trait, ERR_SIDECAR_RESOURCE)
        return Result()