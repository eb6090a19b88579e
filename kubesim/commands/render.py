"""Plain-text views of the cluster for ``get``, ``describe`` and ``rollout status``.

Everything here is read-only: functions take a ClusterState and return
strings. Styling (colour) is the CLI's business.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from kubesim.controllers.endpoints import pod_ip
from kubesim.models.resources import (
    CronJob,
    DaemonSet,
    Deployment,
    HorizontalPodAutoscaler,
    Job,
    Node,
    PersistentVolume,
    PersistentVolumeClaim,
    Pod,
    StatefulSet,
    StorageClass,
)
from kubesim.store.cluster import ClusterState

_RECENT_EVENTS = 20


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    """Left-aligned columns separated by three spaces, kubectl style."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    lines = []
    for row in [list(headers), *rows]:
        lines.append("   ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    return "\n".join(lines)


def _selector(labels: dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in labels.items()) or "<none>"


def pod_status(pod: Pod) -> str:
    if pod.metadata.terminating:
        return "Terminating"
    return pod.status.reason or pod.status.phase.value


def node_status(node: Node) -> str:
    status = "Ready" if node.ready else "NotReady"
    if node.spec.unschedulable:
        status += ",SchedulingDisabled"
    return status


# ---------------------------------------------------------------------------
# get
# ---------------------------------------------------------------------------


def _pod_rows(items: list[Pod]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            p.metadata.name,
            "1/1" if p.is_ready else "0/1",
            pod_status(p),
            str(p.status.restart_count),
            p.spec.node_name or "<none>",
            p.spec.image,
        ]
        for p in items
    ]
    return ["NAME", "READY", "STATUS", "RESTARTS", "NODE", "IMAGE"], rows


def _deployment_rows(items: list[Deployment]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            d.metadata.name,
            f"{d.status.ready_replicas}/{d.spec.replicas}",
            str(d.status.updated_replicas),
            str(d.status.available_replicas),
            d.spec.template.spec.image,
        ]
        for d in items
    ]
    return ["NAME", "READY", "UP-TO-DATE", "AVAILABLE", "IMAGE"], rows


def _replica_set_rows(items: list[Any]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            rs.metadata.name,
            str(rs.spec.replicas),
            str(rs.status.replicas),
            str(rs.status.ready_replicas),
            rs.spec.template.spec.image,
        ]
        for rs in items
    ]
    return ["NAME", "DESIRED", "CURRENT", "READY", "IMAGE"], rows


def _daemon_set_rows(items: list[DaemonSet]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            ds.metadata.name,
            str(ds.status.desired_number_scheduled),
            str(ds.status.current_number_scheduled),
            str(ds.status.number_ready),
            str(ds.status.updated_number_scheduled),
            ds.spec.template.spec.image,
        ]
        for ds in items
    ]
    return ["NAME", "DESIRED", "CURRENT", "READY", "UP-TO-DATE", "IMAGE"], rows


def _stateful_set_rows(items: list[StatefulSet]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [s.metadata.name, f"{s.status.ready_replicas}/{s.spec.replicas}", s.spec.template.spec.image] for s in items
    ]
    return ["NAME", "READY", "IMAGE"], rows


def _job_rows(items: list[Job]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            j.metadata.name,
            f"{j.status.succeeded}/{j.spec.completions}",
            str(j.status.active),
            str(j.status.failed),
            j.status.phase.value,
        ]
        for j in items
    ]
    return ["NAME", "COMPLETIONS", "ACTIVE", "FAILED", "STATUS"], rows


def _cron_job_rows(items: list[CronJob]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            cj.metadata.name,
            cj.spec.schedule,
            str(cj.spec.suspend),
            str(len(cj.status.active)),
            "<none>" if cj.status.last_schedule_tick is None else f"tick {cj.status.last_schedule_tick}",
        ]
        for cj in items
    ]
    return ["NAME", "SCHEDULE", "SUSPEND", "ACTIVE", "LAST SCHEDULE"], rows


def _hpa_rows(items: list[HorizontalPodAutoscaler]) -> tuple[list[str], list[list[str]]]:
    rows = []
    for h in items:
        current = h.status.current_cpu_utilization_percentage
        rows.append(
            [
                h.metadata.name,
                f"{h.spec.scale_target_ref.kind}/{h.spec.scale_target_ref.name}",
                f"{'<unknown>' if current is None else f'{current}%'}/{h.spec.target_cpu_utilization_percentage}%",
                str(h.spec.min_replicas),
                str(h.spec.max_replicas),
                str(h.status.current_replicas),
            ]
        )
    return ["NAME", "REFERENCE", "TARGETS", "MINPODS", "MAXPODS", "REPLICAS"], rows


def _node_rows(items: list[Node]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [n.metadata.name, node_status(n), str(n.spec.capacity_pods), str(n.status.allocated_pods)] for n in items
    ]
    return ["NAME", "STATUS", "CAPACITY", "ALLOCATED"], rows


def _namespace_rows(items: list[Any]) -> tuple[list[str], list[list[str]]]:
    rows = [[ns.metadata.name, "Terminating" if ns.metadata.terminating else "Active"] for ns in items]
    return ["NAME", "STATUS"], rows


def _data_rows(items: list[Any]) -> tuple[list[str], list[list[str]]]:
    return ["NAME", "DATA"], [[o.metadata.name, str(len(o.data))] for o in items]


def _service_rows(items: list[Any]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            s.metadata.name,
            s.spec.type,
            _selector(s.spec.selector),
            str(s.spec.port),
            f"{len(s.status.endpoints)} ready" if s.status.endpoints else "<none>",
        ]
        for s in items
    ]
    return ["NAME", "TYPE", "SELECTOR", "PORT", "ENDPOINTS"], rows


def _endpoint_rows(items: list[Any]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [s.metadata.name, ",".join(f"{ip}:{s.spec.port}" for ip in s.status.endpoints) or "<none>"] for s in items
    ]
    return ["NAME", "ENDPOINTS"], rows


def _ingress_rows(items: list[Any]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            i.metadata.name,
            ",".join(sorted({r.host or "*" for r in i.rules})) or "*",
            ",".join(f"{r.path}->{r.service_name}:{r.service_port}" for r in i.rules) or "<none>",
        ]
        for i in items
    ]
    return ["NAME", "HOSTS", "RULES"], rows


def _volume_rows(items: list[PersistentVolume]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            pv.metadata.name,
            pv.spec.capacity,
            pv.spec.reclaim_policy.value,
            pv.status.phase.value,
            pv.spec.claim_ref or "",
            pv.spec.storage_class_name,
        ]
        for pv in items
    ]
    return ["NAME", "CAPACITY", "RECLAIM POLICY", "STATUS", "CLAIM", "STORAGECLASS"], rows


def _claim_rows(items: list[PersistentVolumeClaim]) -> tuple[list[str], list[list[str]]]:
    rows = [
        [
            c.metadata.name,
            c.status.phase.value,
            c.spec.volume_name or "",
            c.spec.storage if c.bound else "",
            c.spec.storage_class_name,
        ]
        for c in items
    ]
    return ["NAME", "STATUS", "VOLUME", "CAPACITY", "STORAGECLASS"], rows


def _storage_class_rows(items: list[StorageClass]) -> tuple[list[str], list[list[str]]]:
    rows = [[sc.metadata.name, sc.provisioner, sc.reclaim_policy.value] for sc in items]
    return ["NAME", "PROVISIONER", "RECLAIMPOLICY"], rows


_TABLES: dict[str, tuple[str, Callable[[list[Any]], tuple[list[str], list[list[str]]]]]] = {
    "pod": ("Pod", _pod_rows),
    "deployment": ("Deployment", _deployment_rows),
    "replicaset": ("ReplicaSet", _replica_set_rows),
    "daemonset": ("DaemonSet", _daemon_set_rows),
    "statefulset": ("StatefulSet", _stateful_set_rows),
    "job": ("Job", _job_rows),
    "cronjob": ("CronJob", _cron_job_rows),
    "hpa": ("HorizontalPodAutoscaler", _hpa_rows),
    "node": ("Node", _node_rows),
    "namespace": ("Namespace", _namespace_rows),
    "configmap": ("ConfigMap", _data_rows),
    "secret": ("Secret", _data_rows),
    "service": ("Service", _service_rows),
    "endpoints": ("Service", _endpoint_rows),
    "ingress": ("Ingress", _ingress_rows),
    "pv": ("PersistentVolume", _volume_rows),
    "pvc": ("PersistentVolumeClaim", _claim_rows),
    "storageclass": ("StorageClass", _storage_class_rows),
}

_CLUSTER_SCOPED = frozenset({"node", "namespace", "pv", "storageclass"})


def render_events(state: ClusterState, limit: int = _RECENT_EVENTS) -> str:
    events = state.events[-limit:]
    if not events:
        return "No events found."
    rows = [
        [str(e.tick), e.type.value, e.reason, f"{e.object_kind}/{e.object_name}", e.message] for e in events
    ]
    return render_table(["TICK", "TYPE", "REASON", "OBJECT", "MESSAGE"], rows)


def render_get(
    state: ClusterState, resource: str, name: str = "", namespace: str = "default", all_namespaces: bool = False
) -> tuple[bool, str]:
    """Table for ``kubectl get RESOURCE [NAME]``; returns ``(found, text)``."""
    if resource == "event":
        return True, render_events(state)
    if resource not in _TABLES:
        return False, f'the server doesn\'t have a resource type "{resource}"'

    kind, rows_for = _TABLES[resource]
    items = [
        o
        for o in state.collection(kind)
        if (all_namespaces or resource in _CLUSTER_SCOPED or o.metadata.namespace == namespace)
        and (not name or o.metadata.name == name)
    ]
    if resource != "pod":
        items = [o for o in items if name or not o.metadata.terminating]
    if name and not items:
        return False, f'{resource} "{name}" not found'
    if not items:
        scope = "" if resource in _CLUSTER_SCOPED else f" in {namespace} namespace"
        return True, f"No resources found{scope}."
    headers, rows = rows_for(items)
    if all_namespaces and resource not in _CLUSTER_SCOPED:
        headers = ["NAMESPACE", *headers]
        rows = [[o.metadata.namespace, *row] for o, row in zip(items, rows, strict=True)]
    return True, render_table(headers, rows)


# ---------------------------------------------------------------------------
# describe
# ---------------------------------------------------------------------------


def _spec_lines(obj: Any) -> list[str]:
    if isinstance(obj, Pod):
        lines = [
            f"Node:           {obj.spec.node_name or '<none>'}",
            f"Status:         {pod_status(obj)}",
            f"IP:             {pod_ip(obj) if obj.is_ready else '<none>'}",
            f"Image:          {obj.spec.image}",
            f"Restart Count:  {obj.status.restart_count}",
        ]
        if obj.status.message:
            lines.append(f"Message:        {obj.status.message}")
        if obj.spec.env_from:
            refs = ", ".join(f"{r.kind}/{r.name}" for r in obj.spec.env_from)
            lines.append(f"Env From:       {refs}")
        if obj.spec.volumes:
            claims = ", ".join(f"{v.name} (claim {v.claim_name})" for v in obj.spec.volumes)
            lines.append(f"Volumes:        {claims}")
        if obj.metadata.owner_reference is not None:
            ref = obj.metadata.owner_reference
            lines.append(f"Controlled By:  {ref.kind}/{ref.name}")
        return lines
    if isinstance(obj, Deployment):
        lines = [
            f"Selector:       {_selector(obj.spec.selector)}",
            f"Replicas:       {obj.spec.replicas} desired | {obj.status.updated_replicas} updated | "
            f"{obj.status.replicas} total | {obj.status.available_replicas} available",
            f"Strategy:       {obj.spec.strategy.type.value}",
            f"Image:          {obj.spec.template.spec.image}",
        ]
        lines.extend(f"Condition:      {c.type}={c.status} ({c.reason})" for c in obj.status.conditions)
        return lines
    if isinstance(obj, StatefulSet):
        lines = [
            f"Selector:       {_selector(obj.spec.selector)}",
            f"Replicas:       {obj.spec.replicas} desired | {obj.status.replicas} total | "
            f"{obj.status.ready_replicas} ready | {obj.status.current_replicas} updated",
            f"Update Strategy: {obj.spec.update_strategy.type.value}",
            f"Image:          {obj.spec.template.spec.image}",
        ]
        lines.extend(
            f"Volume Claims:  {t.name} ({t.spec.storage}, class {t.spec.storage_class_name or '<none>'})"
            for t in obj.spec.volume_claim_templates
        )
        return lines
    if isinstance(obj, PersistentVolume):
        return [
            f"StorageClass:   {obj.spec.storage_class_name or '<none>'}",
            f"Status:         {obj.status.phase.value}",
            f"Claim:          {obj.spec.claim_ref or '<none>'}",
            f"Reclaim Policy: {obj.spec.reclaim_policy.value}",
            f"Capacity:       {obj.spec.capacity}",
        ]
    if isinstance(obj, PersistentVolumeClaim):
        lines = [
            f"StorageClass:   {obj.spec.storage_class_name or '<none>'}",
            f"Status:         {obj.status.phase.value}",
            f"Volume:         {obj.spec.volume_name or '<none>'}",
            f"Capacity:       {obj.spec.storage}",
        ]
        if obj.status.message:
            lines.append(f"Message:        {obj.status.message}")
        return lines
    if isinstance(obj, StorageClass):
        return [f"Provisioner:    {obj.provisioner}", f"Reclaim Policy: {obj.reclaim_policy.value}"]
    if isinstance(obj, Node):
        return [
            f"Status:         {node_status(obj)}",
            f"Capacity:       pods: {obj.spec.capacity_pods}",
            f"Allocated:      pods: {obj.status.allocated_pods}",
            "Taints:         " + (", ".join(f"{t.key}={t.value}:{t.effect}" for t in obj.spec.taints) or "<none>"),
        ]
    if isinstance(obj, Job):
        return [
            f"Completions:    {obj.spec.completions}",
            f"Parallelism:    {obj.spec.parallelism}",
            f"Pods Statuses:  {obj.status.active} Active / {obj.status.succeeded} Succeeded / "
            f"{obj.status.failed} Failed",
            f"Status:         {obj.status.phase.value}",
        ]
    if isinstance(obj, HorizontalPodAutoscaler):
        current = obj.status.current_cpu_utilization_percentage
        return [
            f"Reference:      {obj.spec.scale_target_ref.kind}/{obj.spec.scale_target_ref.name}",
            f"Target CPU:     {obj.spec.target_cpu_utilization_percentage}%",
            f"Current CPU:    {'<unknown>' if current is None else f'{current}%'}",
            f"Min/Max:        {obj.spec.min_replicas}/{obj.spec.max_replicas}",
            f"Replicas:       {obj.status.current_replicas} current / {obj.status.desired_replicas} desired",
        ]
    spec = getattr(obj, "spec", None)
    lines = []
    if spec is not None and hasattr(spec, "selector"):
        lines.append(f"Selector:       {_selector(spec.selector)}")
    if spec is not None and hasattr(spec, "replicas"):
        lines.append(f"Replicas:       {spec.replicas}")
    if hasattr(obj, "data"):
        lines.append(f"Data:           {', '.join(sorted(obj.data)) or '<none>'}")
    return lines


def render_describe(state: ClusterState, obj: Any) -> str:
    meta = obj.metadata
    lines = [f"Name:           {meta.name}"]
    if meta.namespace:
        lines.append(f"Namespace:      {meta.namespace}")
    lines.append(f"Labels:         {_selector(meta.labels)}")
    if meta.annotations:
        lines.append(f"Annotations:    {_selector(meta.annotations)}")
    lines.extend(_spec_lines(obj))

    related = [e for e in state.events if e.object_kind == obj.kind and e.object_name == meta.name]
    lines.append("Events:")
    if not related:
        lines.append("  <none>")
    for e in related[-_RECENT_EVENTS:]:
        lines.append(f"  {e.type.value:<8} {e.reason:<20} tick {e.tick}: {e.message}")
    return "\n".join(lines)


def render_rollout_status(dep: Deployment) -> str:
    name = dep.metadata.name
    if dep.condition("Available") is not None:
        return f'deployment "{name}" successfully rolled out'
    progressing = dep.condition("Progressing")
    if progressing is not None and progressing.message:
        return f'deployment "{name}": {progressing.message}'
    if dep.status.updated_replicas < dep.spec.replicas:
        return (
            f'Waiting for deployment "{name}" rollout to finish: '
            f"{dep.status.updated_replicas} out of {dep.spec.replicas} new replicas have been updated..."
        )
    if dep.status.replicas > dep.status.updated_replicas:
        old = dep.status.replicas - dep.status.updated_replicas
        return f'Waiting for deployment "{name}" rollout to finish: {old} old replicas are pending termination...'
    return (
        f'Waiting for deployment "{name}" rollout to finish: '
        f"{dep.status.available_replicas} of {dep.spec.replicas} updated replicas are available..."
    )
