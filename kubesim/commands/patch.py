"""Merge patches for ``kubectl patch``.

A patch is a nested mapping applied with JSON merge patch rules: mappings
merge key by key, ``null`` removes a key and any other value replaces the
current one. Container lists are matched positionally, so only the first
container's image can change.

Only fields kubesim models can be patched. Any other key raises
CommandError naming its path; the interpreter then discards the working
copy, so a rejected patch leaves nothing behind.
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Any

import yaml

from kubesim.controllers.job import parse_schedule
from kubesim.errors import CommandError
from kubesim.models.resources import (
    ConfigMap,
    CronJob,
    DaemonSet,
    Deployment,
    HorizontalPodAutoscaler,
    Node,
    PodTemplate,
    ReplicaSet,
    Secret,
    Service,
    StatefulSet,
)
from kubesim.store.cluster import labels_match

_SERVICE_TYPES = ("ClusterIP", "NodePort", "LoadBalancer")


def load_patch(body: str) -> dict[str, Any]:
    try:
        document = yaml.safe_load(body)
    except yaml.YAMLError as exc:
        raise CommandError(f"invalid patch: {exc}") from exc
    if not isinstance(document, dict):
        raise CommandError("patch must be a JSON or YAML object")
    return document


# ---------------------------------------------------------------------------
# Value checks
# ---------------------------------------------------------------------------


def _mapping(value: Any, path: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise CommandError(f"{path}: expected an object")
    return value


def _reject_unknown(patch: dict[str, Any], allowed: tuple[str, ...], path: str) -> None:
    for key in patch:
        if key not in allowed:
            field_path = f"{path}.{key}" if path else str(key)
            raise CommandError(f'field "{field_path}" cannot be patched')


def _int(value: Any, path: str, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise CommandError(f"{path}: expected an integer >= {minimum}, got {value!r}")
    return value


def _bool(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise CommandError(f"{path}: expected true or false, got {value!r}")
    return value


def _str(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value:
        raise CommandError(f"{path}: expected a non-empty string, got {value!r}")
    return value


def merge_strings(current: dict[str, str], patch: Any, path: str) -> dict[str, str]:
    """Merge ``patch`` into a copy of ``current``; a null value drops the key."""
    merged = dict(current)
    for key, value in _mapping(patch, path).items():
        if value is None:
            merged.pop(str(key), None)
        else:
            merged[str(key)] = str(value)
    return merged


# ---------------------------------------------------------------------------
# Spec patchers
# ---------------------------------------------------------------------------


def _patch_template(template: PodTemplate, patch: Any, path: str) -> None:
    patch = _mapping(patch, path)
    _reject_unknown(patch, ("metadata", "spec"), path)
    if "metadata" in patch:
        meta = _mapping(patch["metadata"], f"{path}.metadata")
        _reject_unknown(meta, ("labels", "annotations"), f"{path}.metadata")
        if "labels" in meta:
            template.labels = merge_strings(template.labels, meta["labels"], f"{path}.metadata.labels")
        if "annotations" in meta:
            template.annotations = merge_strings(
                template.annotations, meta["annotations"], f"{path}.metadata.annotations"
            )
    if "spec" in patch:
        spec = _mapping(patch["spec"], f"{path}.spec")
        _reject_unknown(spec, ("containers",), f"{path}.spec")
        if "containers" in spec:
            containers = spec["containers"]
            if not isinstance(containers, list) or not containers:
                raise CommandError(f"{path}.spec.containers: expected a non-empty list")
            first = _mapping(containers[0], f"{path}.spec.containers[0]")
            _reject_unknown(first, ("name", "image"), f"{path}.spec.containers[0]")
            if "image" in first:
                template.spec.image = _str(first["image"], f"{path}.spec.containers[0].image")


def _patch_workload(obj: Any, spec: dict[str, Any], replicated: bool) -> None:
    allowed = ("replicas", "template") if replicated else ("template",)
    _reject_unknown(spec, allowed, "spec")
    if "replicas" in spec:
        obj.spec.replicas = _int(spec["replicas"], "spec.replicas")
    if "template" in spec:
        _patch_template(obj.spec.template, spec["template"], "spec.template")
        if not labels_match(obj.spec.selector, obj.spec.template.labels):
            raise CommandError("spec.template.metadata.labels: selector does not match template labels")


def _patch_replicated(obj: Any, spec: dict[str, Any]) -> None:
    _patch_workload(obj, spec, replicated=True)


def _patch_daemon_set(obj: DaemonSet, spec: dict[str, Any]) -> None:
    _patch_workload(obj, spec, replicated=False)


def _patch_service(obj: Service, spec: dict[str, Any]) -> None:
    _reject_unknown(spec, ("selector", "ports", "type"), "spec")
    if "selector" in spec:
        obj.spec.selector = merge_strings(obj.spec.selector, spec["selector"], "spec.selector")
    if "ports" in spec:
        ports = spec["ports"]
        if not isinstance(ports, list) or not ports:
            raise CommandError("spec.ports: expected a non-empty list")
        first = _mapping(ports[0], "spec.ports[0]")
        _reject_unknown(first, ("name", "port", "protocol"), "spec.ports[0]")
        if "port" in first:
            obj.spec.port = _int(first["port"], "spec.ports[0].port", minimum=1)
    if "type" in spec:
        if spec["type"] not in _SERVICE_TYPES:
            raise CommandError(f"spec.type: expected one of {', '.join(_SERVICE_TYPES)}, got {spec['type']!r}")
        obj.spec.type = spec["type"]


def _patch_node(obj: Node, spec: dict[str, Any]) -> None:
    _reject_unknown(spec, ("unschedulable",), "spec")
    if "unschedulable" in spec:
        obj.spec.unschedulable = _bool(spec["unschedulable"], "spec.unschedulable")


def _patch_cron_job(obj: CronJob, spec: dict[str, Any]) -> None:
    _reject_unknown(spec, ("suspend", "schedule"), "spec")
    if "suspend" in spec:
        obj.spec.suspend = _bool(spec["suspend"], "spec.suspend")
    if "schedule" in spec:
        schedule = _str(spec["schedule"], "spec.schedule")
        if parse_schedule(schedule, default=0) == 0:
            raise CommandError(f"spec.schedule: unsupported schedule {schedule!r}")
        obj.spec.schedule = schedule


def _patch_hpa(obj: HorizontalPodAutoscaler, spec: dict[str, Any]) -> None:
    _reject_unknown(spec, ("minReplicas", "maxReplicas", "targetCPUUtilizationPercentage"), "spec")
    if "minReplicas" in spec:
        obj.spec.min_replicas = _int(spec["minReplicas"], "spec.minReplicas", minimum=1)
    if "maxReplicas" in spec:
        obj.spec.max_replicas = _int(spec["maxReplicas"], "spec.maxReplicas", minimum=1)
    if "targetCPUUtilizationPercentage" in spec:
        obj.spec.target_cpu_utilization_percentage = _int(
            spec["targetCPUUtilizationPercentage"], "spec.targetCPUUtilizationPercentage", minimum=1
        )
    if obj.spec.max_replicas < obj.spec.min_replicas:
        raise CommandError("spec.maxReplicas: must be >= minReplicas")


_SPEC_PATCHERS: dict[type, Callable[[Any, dict[str, Any]], None]] = {
    Deployment: _patch_replicated,
    ReplicaSet: _patch_replicated,
    StatefulSet: _patch_replicated,
    DaemonSet: _patch_daemon_set,
    Service: _patch_service,
    Node: _patch_node,
    CronJob: _patch_cron_job,
    HorizontalPodAutoscaler: _patch_hpa,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def apply_patch(obj: Any, patch: dict[str, Any]) -> bool:
    """Apply ``patch`` to ``obj`` in place and return whether anything changed."""
    before = copy.deepcopy(obj)
    is_data = isinstance(obj, ConfigMap | Secret)
    spec_patcher = _SPEC_PATCHERS.get(type(obj))
    allowed = ["metadata"]
    if is_data:
        allowed.append("data")
    if spec_patcher is not None:
        allowed.append("spec")
    _reject_unknown(patch, tuple(allowed), "")

    if "metadata" in patch:
        meta = _mapping(patch["metadata"], "metadata")
        _reject_unknown(meta, ("labels", "annotations"), "metadata")
        if "labels" in meta:
            obj.metadata.labels = merge_strings(obj.metadata.labels, meta["labels"], "metadata.labels")
        if "annotations" in meta:
            annotations = merge_strings(obj.metadata.annotations, meta["annotations"], "metadata.annotations")
            obj.metadata.annotations = annotations
    if "data" in patch:
        obj.data = merge_strings(obj.data, patch["data"], "data")
    if "spec" in patch and spec_patcher is not None:
        spec_patcher(obj, _mapping(patch["spec"], "spec"))
    return obj != before
