"""Command interpreter: applies a parsed Command to a cluster snapshot.

``apply_command`` is pure. It clones the snapshot, runs the handler for the
command's action on the clone and returns the clone with the output text.
A failing handler raises CommandError (or ManifestError); the clone is then
discarded so a failed command never half-applies, and only the command tag
is recorded.

Commands change desired state only. Nothing reconciles until the next tick.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubesim.commands.manifest import build_entity, build_spec, load_manifest
from kubesim.commands.parser import Command
from kubesim.commands.patch import apply_patch, load_patch
from kubesim.commands.render import render_describe, render_get, render_rollout_status
from kubesim.errors import CommandError, ManifestError
from kubesim.models.events import EventType, SimEvent
from kubesim.models.resources import (
    RESTARTED_AT_ANNOTATION,
    ConcurrencyPolicy,
    ConfigMap,
    CronJob,
    CronJobSpec,
    DaemonSet,
    DaemonSetSpec,
    EnvFromSource,
    HorizontalPodAutoscaler,
    HPASpec,
    Ingress,
    IngressRule,
    Job,
    JobSpec,
    Namespace,
    Node,
    PersistentVolume,
    PersistentVolumeClaim,
    Pod,
    PodSpec,
    PodTemplate,
    RestartPolicy,
    ScaleTargetRef,
    Secret,
    Service,
    ServiceSpec,
    StatefulSet,
    StorageClass,
    StrategyType,
    Taint,
)
from kubesim.observability.logging import get_logger
from kubesim.observability.metrics import commands_total
from kubesim.store.builders import build_deployment, build_pod
from kubesim.store.cluster import CLUSTER_SCOPED_KINDS, ClusterState

_logger = get_logger("command_interpreter")

_DEFAULT_IMAGE = "nginx"

# kubectl-style display prefix per kind.
_DISPLAY: dict[str, str] = {
    "Deployment": "deployment.apps",
    "ReplicaSet": "replicaset.apps",
    "DaemonSet": "daemonset.apps",
    "StatefulSet": "statefulset.apps",
    "Job": "job.batch",
    "CronJob": "cronjob.batch",
    "HorizontalPodAutoscaler": "horizontalpodautoscaler.autoscaling",
    "Ingress": "ingress.networking.k8s.io",
    "StorageClass": "storageclass.storage.k8s.io",
}

_TAINT_EFFECTS = frozenset({"NoSchedule", "PreferNoSchedule", "NoExecute"})


@dataclass
class CommandResult:
    state: ClusterState
    events: list[SimEvent] = field(default_factory=list)
    output: str = ""
    ok: bool = True


def _display(kind: str) -> str:
    return _DISPLAY.get(kind, kind.lower())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_namespace(state: ClusterState, namespace: str) -> None:
    if not state.namespace_exists(namespace):
        raise CommandError(f'namespaces "{namespace}" not found')


def _require_absent(state: ClusterState, kind: str, name: str, namespace: str) -> None:
    if state.find(kind, name, namespace) is not None:
        raise CommandError(f'{kind.lower()} "{name}" already exists')


def _lookup(state: ClusterState, cmd: Command, allowed: tuple[str, ...] | None = None) -> Any:
    kind = cmd.entity_kind
    if kind is None or (allowed is not None and cmd.resource not in allowed):
        raise CommandError(f'cannot {cmd.action.replace("-", " ")} resource type "{cmd.resource}"')
    obj = state.find(kind, cmd.name, cmd.namespace)
    if obj is None or obj.metadata.terminating:
        raise CommandError(f'{cmd.resource} "{cmd.name}" not found')
    return obj


def _pairs(values: list[str], what: str) -> dict[str, str]:
    """Parse ``k=v`` items (comma separated or repeated) into a dict."""
    result: dict[str, str] = {}
    for value in values:
        for item in value.split(","):
            if not item:
                continue
            key, sep, val = item.partition("=")
            if not sep or not key:
                raise CommandError(f"invalid {what} {item!r}, expected key=value")
            result[key] = val
    return result


def _int_flag(cmd: Command, name: str, default: int) -> int:
    return int(cmd.flag(name) or default)


def _restart_policy(cmd: Command, default: RestartPolicy) -> RestartPolicy:
    value = cmd.flag("restart")
    if value is None:
        return default
    try:
        return RestartPolicy(value)
    except ValueError:
        raise CommandError(f"invalid --restart {value!r}; expected Always, OnFailure or Never") from None


def _env_from(cmd: Command) -> list[EnvFromSource]:
    sources: list[EnvFromSource] = []
    for value in cmd.flag_values("env-from"):
        for item in value.split(","):
            kind, sep, name = item.partition("/")
            kinds = {"configmap": "ConfigMap", "cm": "ConfigMap", "secret": "Secret"}
            if not sep or kind.lower() not in kinds or not name:
                raise CommandError(f"invalid --env-from {item!r}, expected configmap/NAME or secret/NAME")
            sources.append(EnvFromSource(kind=kinds[kind.lower()], name=name))
    return sources


def _created(state: ClusterState, obj: Any) -> str:
    state.add(obj)
    state.record_event(
        EventType.NORMAL, "Created", obj.kind, obj.metadata.name, f'Created {obj.kind.lower()} "{obj.metadata.name}"'
    )
    return f"{_display(obj.kind)}/{obj.metadata.name} created"


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


def _create_pod(state: ClusterState, cmd: Command) -> str:
    template = PodTemplate(
        labels=_pairs(cmd.flag_values("labels"), "label"),
        spec=PodSpec(
            image=cmd.flag("image", _DEFAULT_IMAGE) or _DEFAULT_IMAGE,
            env_from=_env_from(cmd),
            restart_policy=_restart_policy(cmd, RestartPolicy.ALWAYS),
        ),
    )
    return _created(state, build_pod(state, cmd.name, template, namespace=cmd.namespace))


def _create_deployment(state: ClusterState, cmd: Command) -> str:
    dep = build_deployment(
        state,
        cmd.name,
        cmd.flag("image", _DEFAULT_IMAGE) or _DEFAULT_IMAGE,
        _int_flag(cmd, "replicas", 1),
        namespace=cmd.namespace,
    )
    dep.spec.template.spec.env_from = _env_from(cmd)
    return _created(state, dep)


def _create_data(state: ClusterState, cmd: Command) -> str:
    data = _pairs(cmd.flag_values("from-literal"), "literal")
    meta = state.new_meta(cmd.entity_kind or "", cmd.name, cmd.namespace)
    obj: ConfigMap | Secret = (
        ConfigMap(metadata=meta, data=data) if cmd.resource == "configmap" else Secret(metadata=meta, data=data)
    )
    return _created(state, obj)


def _create_namespace(state: ClusterState, cmd: Command) -> str:
    return _created(state, Namespace(metadata=state.new_meta("Namespace", cmd.name, "")))


def _create_daemonset(state: ClusterState, cmd: Command) -> str:
    selector = {"app": cmd.name}
    image = cmd.flag("image", _DEFAULT_IMAGE) or _DEFAULT_IMAGE
    template = PodTemplate(labels=dict(selector), spec=PodSpec(image=image))
    ds = DaemonSet(
        metadata=state.new_meta("DaemonSet", cmd.name, cmd.namespace, selector),
        spec=DaemonSetSpec(selector=selector, template=template),
    )
    return _created(state, ds)


def _job_spec(cmd: Command) -> JobSpec:
    restart = _restart_policy(cmd, RestartPolicy.NEVER)
    if restart == RestartPolicy.ALWAYS:
        raise CommandError("jobs require --restart=Never or --restart=OnFailure")
    return JobSpec(
        template=PodTemplate(spec=PodSpec(image=cmd.flag("image", "busybox") or "busybox")),
        completions=max(1, _int_flag(cmd, "completions", 1)),
        parallelism=max(1, _int_flag(cmd, "parallelism", 1)),
        backoff_limit=_int_flag(cmd, "backoff-limit", 6),
        restart_policy=restart,
        completion_ticks=max(1, _int_flag(cmd, "completion-ticks", 2)),
    )


def _create_job(state: ClusterState, cmd: Command) -> str:
    job = Job(metadata=state.new_meta("Job", cmd.name, cmd.namespace), spec=_job_spec(cmd))
    return _created(state, job)


def _create_cronjob(state: ClusterState, cmd: Command) -> str:
    schedule = cmd.flag("schedule")
    if not schedule:
        raise CommandError("--schedule is required")
    policy_value = cmd.flag("concurrency-policy", ConcurrencyPolicy.ALLOW.value) or ConcurrencyPolicy.ALLOW.value
    try:
        policy = ConcurrencyPolicy(policy_value)
    except ValueError:
        raise CommandError(f"invalid --concurrency-policy {policy_value!r}") from None
    cj = CronJob(
        metadata=state.new_meta("CronJob", cmd.name, cmd.namespace),
        spec=CronJobSpec(schedule=schedule, job_template=_job_spec(cmd), concurrency_policy=policy),
    )
    return _created(state, cj)


def _create_service(state: ClusterState, cmd: Command) -> str:
    selector = _pairs(cmd.flag_values("selector"), "selector")
    if not selector:
        raise CommandError("--selector is required, e.g. --selector=app=web")
    svc = Service(
        metadata=state.new_meta("Service", cmd.name, cmd.namespace),
        spec=ServiceSpec(
            selector=selector,
            port=_int_flag(cmd, "port", 80),
            type=cmd.flag("type", "ClusterIP") or "ClusterIP",
        ),
    )
    return _created(state, svc)


def _ingress_rule(spec: str) -> IngressRule:
    """Parse kubectl's ``host/path=service:port`` rule syntax."""
    target, sep, backend = spec.partition("=")
    if not sep or not backend:
        raise CommandError(f"invalid --rule {spec!r}, expected host/path=service:port")
    host, _, path = target.partition("/")
    service, _, port = backend.partition(":")
    if port and not port.isdigit():
        raise CommandError(f"invalid port in --rule {spec!r}")
    return IngressRule(host=host, path=f"/{path}", service_name=service, service_port=int(port or 80))


def _create_ingress(state: ClusterState, cmd: Command) -> str:
    rules = [_ingress_rule(r) for r in cmd.flag_values("rule")]
    if not rules:
        raise CommandError("at least one --rule is required")
    return _created(state, Ingress(metadata=state.new_meta("Ingress", cmd.name, cmd.namespace), rules=rules))


_CREATORS: dict[str, Callable[[ClusterState, Command], str]] = {
    "pod": _create_pod,
    "deployment": _create_deployment,
    "configmap": _create_data,
    "secret": _create_data,
    "namespace": _create_namespace,
    "daemonset": _create_daemonset,
    "job": _create_job,
    "cronjob": _create_cronjob,
    "service": _create_service,
    "ingress": _create_ingress,
}


def _create(state: ClusterState, cmd: Command) -> str:
    creator = _CREATORS.get(cmd.resource)
    if creator is None:
        raise CommandError(f'cannot create resource type "{cmd.resource}". Supported: {", ".join(_CREATORS)}')
    kind = cmd.entity_kind or ""
    if kind not in CLUSTER_SCOPED_KINDS:
        _require_namespace(state, cmd.namespace)
    _require_absent(state, kind, cmd.name, cmd.namespace)
    return creator(state, cmd)


# ---------------------------------------------------------------------------
# Mutating verbs
# ---------------------------------------------------------------------------


def _scale(state: ClusterState, cmd: Command) -> str:
    obj = _lookup(state, cmd, ("deployment", "replicaset", "statefulset"))
    obj.spec.replicas = _int_flag(cmd, "replicas", obj.spec.replicas)
    return f"{_display(obj.kind)}/{obj.metadata.name} scaled"


def _label(state: ClusterState, cmd: Command) -> str:
    obj = _lookup(state, cmd)
    labels = obj.metadata.labels
    overwrite = cmd.has_flag("overwrite")
    removed_only = True
    for arg in cmd.args:
        if "=" not in arg and arg.endswith("-"):
            labels.pop(arg[:-1], None)
            continue
        key, sep, value = arg.partition("=")
        if not sep or not key:
            raise CommandError(f"invalid label spec: {arg}")
        if key in labels and labels[key] != value and not overwrite:
            raise CommandError(f"'{key}' already has a value ({labels[key]}), and --overwrite is false")
        labels[key] = value
        removed_only = False
    verb = "unlabeled" if removed_only else "labeled"
    return f"{_display(obj.kind)}/{obj.metadata.name} {verb}"


def _update_existing(existing: Any, obj: Any) -> bool:
    """Copy desired state from a manifest object onto ``existing``; return whether anything changed."""
    changed = False
    if existing.metadata.labels != obj.metadata.labels:
        existing.metadata.labels = dict(obj.metadata.labels)
        changed = True
    if existing.metadata.annotations != obj.metadata.annotations:
        existing.metadata.annotations = dict(obj.metadata.annotations)
        changed = True
    desired = build_spec(obj)
    if isinstance(existing, Namespace):
        return changed
    if isinstance(existing, ConfigMap | Secret):
        if existing.data != desired:
            existing.data = desired
            changed = True
        return changed
    if isinstance(existing, Ingress):
        if existing.rules != desired:
            existing.rules = desired
            changed = True
        return changed
    if isinstance(existing, StorageClass):
        for key, value in desired.items():
            if getattr(existing, key) != value:
                setattr(existing, key, value)
                changed = True
        return changed
    # Binding is owned by the volume controller.
    if isinstance(existing, PersistentVolumeClaim):
        desired.volume_name = existing.spec.volume_name
    if isinstance(existing, PersistentVolume):
        desired.claim_ref = existing.spec.claim_ref
    if isinstance(existing, Pod):
        # Only the image of a running pod may change.
        if existing.spec.image != desired.image:
            existing.spec.image = desired.image
            changed = True
        return changed
    if existing.spec != desired:
        existing.spec = desired
        changed = True
    return changed


def _apply(state: ClusterState, cmd: Command) -> str:
    if not cmd.manifest.strip():
        raise CommandError("no manifest provided; use apply -f FILE")
    objects = load_manifest(cmd.manifest)

    declared = {o.metadata.name for o in objects if o.kind == "Namespace"}
    for obj in objects:
        if obj.kind not in CLUSTER_SCOPED_KINDS and obj.metadata.namespace not in declared:
            _require_namespace(state, obj.metadata.namespace)

    lines = []
    for obj in objects:
        namespace = "" if obj.kind in CLUSTER_SCOPED_KINDS else obj.metadata.namespace
        existing = state.find(obj.kind, obj.metadata.name, namespace)
        if existing is not None and existing.metadata.terminating:
            raise CommandError(f'{obj.kind.lower()} "{obj.metadata.name}" is being deleted')
        if existing is None:
            entity = build_entity(obj, state)
            state.add(entity)
            message = f'Applied {obj.kind.lower()} "{obj.metadata.name}"'
            state.record_event(EventType.NORMAL, "Created", obj.kind, obj.metadata.name, message)
            lines.append(f"{_display(obj.kind)}/{obj.metadata.name} created")
        elif _update_existing(existing, obj):
            lines.append(f"{_display(obj.kind)}/{obj.metadata.name} configured")
        else:
            lines.append(f"{_display(obj.kind)}/{obj.metadata.name} unchanged")
    return "\n".join(lines)


def _delete(state: ClusterState, cmd: Command) -> str:
    obj = _lookup(state, cmd)
    if isinstance(obj, Namespace):
        if obj.metadata.name == "default":
            raise CommandError('namespaces "default" cannot be deleted')
        for other in state.all_objects():
            if other.kind not in CLUSTER_SCOPED_KINDS and other.metadata.namespace == obj.metadata.name:
                state.mark_deleted(other)
    state.mark_deleted(obj)
    if isinstance(obj, Pod):
        state.record_event(EventType.NORMAL, "Killing", "Pod", obj.metadata.name, f'Deleted pod "{obj.metadata.name}"')
    return f'{_display(obj.kind)} "{obj.metadata.name}" deleted'


def _rollout_restart(state: ClusterState, cmd: Command) -> str:
    obj = _lookup(state, cmd, ("deployment", "daemonset", "statefulset"))
    obj.spec.template.annotations[RESTARTED_AT_ANNOTATION] = f"tick-{state.tick}-{state.next_timestamp()}"
    return f"{_display(obj.kind)}/{obj.metadata.name} restarted"


def _autoscale(state: ClusterState, cmd: Command) -> str:
    target = _lookup(state, cmd, ("deployment", "replicaset", "statefulset"))
    if cmd.flag("max") is None:
        raise CommandError("--max=MAXPODS is required")
    minimum = _int_flag(cmd, "min", 1)
    maximum = _int_flag(cmd, "max", 1)
    if minimum < 1 or maximum < minimum:
        raise CommandError(f"invalid bounds: --min={minimum} --max={maximum}")
    _require_absent(state, "HorizontalPodAutoscaler", target.metadata.name, cmd.namespace)
    hpa = HorizontalPodAutoscaler(
        metadata=state.new_meta("HorizontalPodAutoscaler", target.metadata.name, cmd.namespace),
        spec=HPASpec(
            scale_target_ref=ScaleTargetRef(kind=target.kind, name=target.metadata.name),
            min_replicas=minimum,
            max_replicas=maximum,
            target_cpu_utilization_percentage=_int_flag(cmd, "cpu-percent", 80),
        ),
    )
    state.add(hpa)
    return f"{_display(hpa.kind)}/{hpa.metadata.name} autoscaled"


def _set_image(state: ClusterState, cmd: Command) -> str:
    obj = _lookup(state, cmd, ("deployment", "daemonset", "statefulset", "replicaset", "cronjob", "pod"))
    image = cmd.flag("image") or ""
    if isinstance(obj, Pod):
        obj.spec.image = image
    elif isinstance(obj, CronJob):
        obj.spec.job_template.template.spec.image = image
    else:
        obj.spec.template.spec.image = image
    return f"{_display(obj.kind)}/{obj.metadata.name} image updated"


def _patch(state: ClusterState, cmd: Command) -> str:
    obj = _lookup(state, cmd)
    changed = apply_patch(obj, load_patch(cmd.flag("patch") or ""))
    return f"{_display(obj.kind)}/{obj.metadata.name} {'patched' if changed else 'patched (no change)'}"


def _cordon(state: ClusterState, cmd: Command) -> str:
    node: Node = _lookup(state, cmd)
    unschedulable = cmd.action != "uncordon"
    if node.spec.unschedulable == unschedulable:
        return f"node/{node.metadata.name} already {cmd.action}ed"
    node.spec.unschedulable = unschedulable
    return f"node/{node.metadata.name} {cmd.action}ed"


def _drain(state: ClusterState, cmd: Command) -> str:
    node: Node = _lookup(state, cmd)
    node.spec.unschedulable = True
    lines = [f"node/{node.metadata.name} cordoned"]
    for pod in state.pods:
        if pod.spec.node_name != node.metadata.name or not pod.live:
            continue
        owner = pod.metadata.owner_reference
        if owner is not None and owner.kind == "DaemonSet":
            continue
        state.mark_deleted(pod)
        state.record_event(
            EventType.NORMAL, "Evicted", "Pod", pod.metadata.name, f"Evicted from node {node.metadata.name} (drain)"
        )
        lines.append(f'evicting pod {pod.metadata.namespace}/{pod.metadata.name}')
    lines.append(f"node/{node.metadata.name} drained")
    return "\n".join(lines)


def _taint(state: ClusterState, cmd: Command) -> str:
    node: Node = _lookup(state, cmd)
    added = False
    for spec in cmd.args:
        if spec.endswith("-"):
            body = spec[:-1]
            key, _, effect = body.partition(":")
            key = key.split("=", 1)[0]
            node.spec.taints = [
                t for t in node.spec.taints if not (t.key == key and (not effect or t.effect == effect))
            ]
            continue
        kv, sep, effect = spec.partition(":")
        if not sep or effect not in _TAINT_EFFECTS:
            raise CommandError(f"invalid taint spec {spec!r}, expected key=value:NoSchedule|PreferNoSchedule|NoExecute")
        key, _, value = kv.partition("=")
        node.spec.taints = [t for t in node.spec.taints if not (t.key == key and t.effect == effect)]
        node.spec.taints.append(Taint(key=key, value=value, effect=effect))
        added = True
    return f"node/{node.metadata.name} {'tainted' if added else 'untainted'}"


# ---------------------------------------------------------------------------
# Read-only verbs
# ---------------------------------------------------------------------------


def _get(state: ClusterState, cmd: Command) -> str:
    found, text = render_get(state, cmd.resource, cmd.name, cmd.namespace, cmd.has_flag("all-namespaces"))
    if not found:
        raise CommandError(text)
    return text


def _describe(state: ClusterState, cmd: Command) -> str:
    return render_describe(state, _lookup(state, cmd))


def _stateful_set_rollout_status(sts: StatefulSet) -> str:
    if sts.spec.update_strategy.type == StrategyType.ON_DELETE:
        raise CommandError("rollout status is only available for RollingUpdate strategy type")
    st = sts.status
    revision = f"{sts.metadata.name}-{st.update_revision}"
    if st.ready_replicas < sts.spec.replicas:
        return f"Waiting for {sts.spec.replicas - st.ready_replicas} pods to be ready..."
    progress = f"{st.current_replicas} pods at revision {revision}..."
    if st.current_replicas < sts.spec.replicas or st.replicas > sts.spec.replicas:
        return f"waiting for statefulset rolling update to complete {progress}"
    return f"statefulset rolling update complete {progress}"


def _rollout_status(state: ClusterState, cmd: Command) -> str:
    obj = _lookup(state, cmd, ("deployment", "daemonset", "statefulset"))
    if isinstance(obj, DaemonSet):
        st = obj.status
        if st.updated_number_scheduled == st.desired_number_scheduled == st.number_ready:
            return f'daemon set "{obj.metadata.name}" successfully rolled out'
        return (
            f'Waiting for daemon set "{obj.metadata.name}" rollout to finish: '
            f"{st.updated_number_scheduled} out of {st.desired_number_scheduled} new pods have been updated..."
        )
    if isinstance(obj, StatefulSet):
        return _stateful_set_rollout_status(obj)
    return render_rollout_status(obj)


def _logs(state: ClusterState, cmd: Command) -> str:
    pod: Pod = _lookup(state, cmd)
    lines = pod.spec.logs
    tail = cmd.flag("tail")
    if tail is not None:
        lines = lines[-int(tail) :] if int(tail) > 0 else []
    return "\n".join(lines)


_HANDLERS: dict[str, Callable[[ClusterState, Command], str]] = {
    "create": _create,
    "scale": _scale,
    "label": _label,
    "apply": _apply,
    "delete": _delete,
    "rollout-restart": _rollout_restart,
    "rollout-status": _rollout_status,
    "autoscale": _autoscale,
    "set-image": _set_image,
    "patch": _patch,
    "cordon": _cordon,
    "uncordon": _cordon,
    "drain": _drain,
    "taint": _taint,
    "get": _get,
    "describe": _describe,
    "logs": _logs,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def apply_command(command: Command, state: ClusterState) -> CommandResult:
    """Apply ``command`` to a copy of ``state``.

    The returned state always carries the command's tag in
    ``commands_used``, whether the command succeeded or not.
    """
    working = state.clone()
    working.commands_used.append(command.kind)
    first_event = len(working.events)

    handler = _HANDLERS.get(command.action)
    try:
        if handler is None:
            raise CommandError(f'unsupported action "{command.action}"')
        output = handler(working, command)
    except (CommandError, ManifestError) as exc:
        failed = state.clone()
        failed.commands_used.append(command.kind)
        commands_total.labels(kind=command.kind, outcome="error").inc()
        _logger.info("command_failed", kind=command.kind, name=command.name, error=str(exc))
        return CommandResult(state=failed, output=f"Error: {exc}", ok=False)

    commands_total.labels(kind=command.kind, outcome="ok").inc()
    _logger.info("command_applied", kind=command.kind, name=command.name, namespace=command.namespace)
    return CommandResult(state=working, events=working.events[first_event:], output=output, ok=True)
