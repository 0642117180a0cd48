"""Admission webhooks that default and validate PodSpecWorkload objects."""

from __future__ import annotations

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from typing import Any, Iterable, Mapping, Optional, Protocol

from .api import PodSpecWorkload

mutatelog = logging.getLogger(__name__ + ".mutate")
validatelog = logging.getLogger(__name__ + ".validate")

VALIDATE_PATH = "/validate-standard-oam-dev-v1alpha1-podspecworkload"
MUTATE_PATH = "/mutate-standard-oam-dev-v1alpha1-podspecworkload"

DEFAULT_REPLICAS = 1

_DNS1123_LABEL = r"[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS1123_SUBDOMAIN = rf"{_DNS1123_LABEL}(\.{_DNS1123_LABEL})*"
_QUALIFIED_NAME = r"([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]"
_DNS1123_LABEL_RE = re.compile(rf"^{_DNS1123_LABEL}$")
_DNS1123_SUBDOMAIN_RE = re.compile(rf"^{_DNS1123_SUBDOMAIN}$")
_QUALIFIED_NAME_RE = re.compile(rf"^{_QUALIFIED_NAME}$")
_LABEL_VALUE_RE = re.compile(rf"^({_QUALIFIED_NAME})?$")

_DNS1123_LABEL_MAX = 63
_DNS1123_SUBDOMAIN_MAX = 253
_QUALIFIED_NAME_MAX = 63
_LABEL_VALUE_MAX = 63
_TOTAL_ANNOTATION_SIZE_LIMIT = 256 * 1024


class ErrorType(str, Enum):
    """The kinds of field validation error."""

    REQUIRED = "Required value"
    INVALID = "Invalid value"
    TOO_LONG = "Too long"
    FORBIDDEN = "Forbidden"


class Operation(str, Enum):
    """Operations an admission request can carry."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


_NO_VALUE = object()


@dataclass
class FieldError:
    """A validation error on one field of an object."""

    type: ErrorType
    field: str
    bad_value: Any = None
    detail: str = ""

    def __str__(self) -> str:
        if self.type in (ErrorType.REQUIRED, ErrorType.FORBIDDEN, ErrorType.TOO_LONG):
            body = self.type.value
        else:
            body = f"{self.type.value}: {json.dumps(self.bad_value, default=str)}"
        if self.detail:
            body += f": {self.detail}"
        return f"{self.field}: {body}"


class ValidationFailed(ValueError):
    """One or more field errors, reported together."""

    def __init__(self, errors: Iterable[FieldError]) -> None:
        self.errors = list(errors)
        messages = list(dict.fromkeys(str(e) for e in self.errors))
        text = messages[0] if len(messages) == 1 else "[" + ", ".join(messages) + "]"
        super().__init__(text)


def to_aggregate(errors: Iterable[FieldError]) -> Optional[ValidationFailed]:
    """Combine field errors into one exception, or None when there are none."""
    errors = list(errors)
    if not errors:
        return None
    return ValidationFailed(errors)


@dataclass
class AdmissionResponse:
    """The answer to an admission request."""

    allowed: bool
    code: int = HTTPStatus.OK
    message: str = ""
    patches: list[dict[str, Any]] = field(default_factory=list)

    @property
    def patch_type(self) -> Optional[str]:
        return "JSONPatch" if self.patches else None


def _errored(code: HTTPStatus, error: BaseException) -> AdmissionResponse:
    return AdmissionResponse(allowed=False, code=int(code), message=str(error))


def _validation_response(allowed: bool, reason: str = "") -> AdmissionResponse:
    code = HTTPStatus.OK if allowed else HTTPStatus.FORBIDDEN
    return AdmissionResponse(allowed=allowed, code=int(code), message=reason)


def _dns1123_subdomain_errors(value: str) -> list[str]:
    messages = []
    if len(value) > _DNS1123_SUBDOMAIN_MAX:
        messages.append(f"must be no more than {_DNS1123_SUBDOMAIN_MAX} characters")
    if not _DNS1123_SUBDOMAIN_RE.match(value):
        messages.append(
            "a lowercase RFC 1123 subdomain must consist of lower case alphanumeric "
            "characters, '-' or '.', and must start and end with an alphanumeric character"
        )
    return messages


def _dns1123_label_errors(value: str) -> list[str]:
    messages = []
    if len(value) > _DNS1123_LABEL_MAX:
        messages.append(f"must be no more than {_DNS1123_LABEL_MAX} characters")
    if not _DNS1123_LABEL_RE.match(value):
        messages.append(
            "a lowercase RFC 1123 label must consist of lower case alphanumeric "
            "characters or '-', and must start and end with an alphanumeric character"
        )
    return messages


def _qualified_name_errors(value: str) -> list[str]:
    prefix, _, name = value.rpartition("/")
    if value.count("/") > 1:
        return ["a qualified name must consist of an optional prefix and a name separated by '/'"]
    messages = []
    if "/" in value:
        if not prefix:
            messages.append("prefix part must be non-empty")
        else:
            messages.extend(f"prefix part {m}" for m in _dns1123_subdomain_errors(prefix))
    if not name:
        messages.append("name part must be non-empty")
    else:
        if len(name) > _QUALIFIED_NAME_MAX:
            messages.append(f"name part must be no more than {_QUALIFIED_NAME_MAX} characters")
        if not _QUALIFIED_NAME_RE.match(name):
            messages.append(
                "name part must consist of alphanumeric characters, '-', '_' or '.', "
                "and must start and end with an alphanumeric character"
            )
    return messages


def _label_value_errors(value: str) -> list[str]:
    messages = []
    if len(value) > _LABEL_VALUE_MAX:
        messages.append(f"must be no more than {_LABEL_VALUE_MAX} characters")
    if not _LABEL_VALUE_RE.match(value):
        messages.append(
            "a valid label must be an empty string or consist of alphanumeric characters, "
            "'-', '_' or '.', and must start and end with an alphanumeric character"
        )
    return messages


def _validate_object_meta(obj: PodSpecWorkload, path: str) -> list[FieldError]:
    meta = obj.metadata
    errors: list[FieldError] = []
    if not meta.name:
        errors.append(
            FieldError(ErrorType.REQUIRED, f"{path}.name", detail="name or generateName is required")
        )
    else:
        errors.extend(
            FieldError(ErrorType.INVALID, f"{path}.name", meta.name, msg)
            for msg in _dns1123_subdomain_errors(meta.name)
        )
    if not meta.namespace:
        errors.append(FieldError(ErrorType.REQUIRED, f"{path}.namespace"))
    else:
        errors.extend(
            FieldError(ErrorType.INVALID, f"{path}.namespace", meta.namespace, msg)
            for msg in _dns1123_label_errors(meta.namespace)
        )
    for key, value in meta.labels.items():
        errors.extend(
            FieldError(ErrorType.INVALID, f"{path}.labels", key, msg)
            for msg in _qualified_name_errors(key)
        )
        errors.extend(
            FieldError(ErrorType.INVALID, f"{path}.labels", value, msg)
            for msg in _label_value_errors(value)
        )
    total = 0
    for key, value in meta.annotations.items():
        errors.extend(
            FieldError(ErrorType.INVALID, f"{path}.annotations", key, msg)
            for msg in _qualified_name_errors(key.lower())
        )
        total += len(key) + len(value)
    if total > _TOTAL_ANNOTATION_SIZE_LIMIT:
        errors.append(
            FieldError(
                ErrorType.TOO_LONG,
                f"{path}.annotations",
                detail=f"must have at most {_TOTAL_ANNOTATION_SIZE_LIMIT} bytes",
            )
        )
    return errors


def default_pod_spec_workload(obj: PodSpecWorkload) -> None:
    """Fill in the defaults of a PodSpecWorkload: one replica if none is given."""
    mutatelog.info("default %s", obj.metadata.name)
    if obj.spec.replicas is None:
        mutatelog.info("default replicas as %d", DEFAULT_REPLICAS)
        obj.spec.replicas = DEFAULT_REPLICAS


def validate_create(obj: PodSpecWorkload) -> list[FieldError]:
    """Check a PodSpecWorkload being created; returns every problem found."""
    validatelog.info("validate create %s", obj.metadata.name)
    errors = _validate_object_meta(obj, "metadata")
    if obj.spec.replicas is None:
        raise ValueError("spec.replicas must be set before validation")
    if obj.spec.replicas < 0:
        errors.append(
            FieldError(
                ErrorType.INVALID,
                "spec.Replicas",
                obj.spec.replicas,
                "must be greater than or equal to 0",
            )
        )
    containers = obj.spec.pod_spec.get("containers") or []
    if not containers:
        errors.append(
            FieldError(
                ErrorType.INVALID,
                "spec.podSpec.Containers",
                containers,
                "You need at least one container",
            )
        )
    return errors


def validate_update(obj: PodSpecWorkload, old: Optional[PodSpecWorkload]) -> list[FieldError]:
    """Check a PodSpecWorkload being updated; the old object is not consulted."""
    validatelog.info("validate update %s", obj.metadata.name)
    return validate_create(obj)


def validate_delete(obj: PodSpecWorkload) -> list[FieldError]:
    """Deleting a PodSpecWorkload is always allowed."""
    validatelog.info("validate delete %s", obj.metadata.name)
    return []


def _decode(raw: Any) -> tuple[dict[str, Any], PodSpecWorkload]:
    if isinstance(raw, (bytes, bytearray, str)):
        data = json.loads(raw)
    else:
        data = copy.deepcopy(raw)
    if not isinstance(data, dict):
        raise ValueError("the admission object is not a JSON object")
    return data, PodSpecWorkload.from_dict(data)


def _overlay(base: Any, top: Any) -> Any:
    if isinstance(base, dict) and isinstance(top, dict):
        merged = dict(base)
        for key, value in top.items():
            merged[key] = _overlay(base.get(key), value) if key in base else copy.deepcopy(value)
        return merged
    return copy.deepcopy(top)


def _escape(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")


def _json_patch(old: Any, new: Any, path: str = "") -> list[dict[str, Any]]:
    if isinstance(old, dict) and isinstance(new, dict):
        ops: list[dict[str, Any]] = []
        for key in old:
            if key not in new:
                ops.append({"op": "remove", "path": f"{path}/{_escape(key)}"})
        for key, value in new.items():
            child = f"{path}/{_escape(key)}"
            if key not in old:
                ops.append({"op": "add", "path": child, "value": copy.deepcopy(value)})
            else:
                ops.extend(_json_patch(old[key], value, child))
        return ops
    if old == new and type(old) is type(new):
        return []
    return [{"op": "replace", "path": path, "value": copy.deepcopy(new)}]


@dataclass
class MutatingHandler:
    """Applies defaults to PodSpecWorkloads passing through admission."""

    client: Any = None

    def handle(self, request: Mapping[str, Any]) -> AdmissionResponse:
        """Answer with the JSON patch that fills in the object's defaults."""
        try:
            raw, obj = _decode(request.get("object"))
        except (ValueError, TypeError) as err:
            return _errored(HTTPStatus.BAD_REQUEST, err)
        default_pod_spec_workload(obj)
        try:
            mutated = json.loads(json.dumps(_overlay(raw, obj.to_dict())))
        except (TypeError, ValueError) as err:
            return _errored(HTTPStatus.INTERNAL_SERVER_ERROR, err)
        patches = _json_patch(raw, mutated)
        if patches:
            mutatelog.debug(
                "Admit PodSpecWorkload %s/%s patches: %s",
                obj.metadata.namespace,
                obj.metadata.name,
                json.dumps(patches),
            )
        return AdmissionResponse(allowed=True, patches=patches)


@dataclass
class ValidatingHandler:
    """Rejects invalid PodSpecWorkloads on create and update."""

    client: Any = None

    def handle(self, request: Mapping[str, Any]) -> AdmissionResponse:
        """Allow the request unless the object fails validation."""
        operation = request.get("operation")
        try:
            _, obj = _decode(request.get("object"))
        except (ValueError, TypeError) as err:
            validatelog.error("decoder failed, operation %s: %s", operation, err)
            return _errored(HTTPStatus.BAD_REQUEST, err)

        if operation == Operation.CREATE:
            failure = to_aggregate(validate_create(obj))
            if failure is not None:
                return _errored(HTTPStatus.UNPROCESSABLE_ENTITY, failure)
        elif operation == Operation.UPDATE:
            try:
                _, old = _decode(request.get("oldObject"))
            except (ValueError, TypeError) as err:
                return _errored(HTTPStatus.BAD_REQUEST, err)
            failure = to_aggregate(validate_update(obj, old))
            if failure is not None:
                return _errored(HTTPStatus.UNPROCESSABLE_ENTITY, failure)
        return _validation_response(True)


class WebhookServer(Protocol):
    """Anything that can serve a handler under a path."""

    def register(self, path: str, handler: Any) -> None:
        ...


def register(server: WebhookServer) -> None:
    """Serve the validating and mutating handlers on their paths."""
    server.register(VALIDATE_PATH, ValidatingHandler())
    server.register(MUTATE_PATH, MutatingHandler())