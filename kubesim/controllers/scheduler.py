"""Scheduler: binds unassigned pods to nodes.

First-fit in node order over Ready, schedulable nodes whose NoSchedule /
NoExecute taints the pod tolerates, whose labels satisfy the pod's node
selector and which still have pod capacity. Nodes carrying an untolerated
PreferNoSchedule taint are only used when nothing else fits. A pod whose
PersistentVolumeClaims are not all bound stays Pending.
"""

from __future__ import annotations

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.controllers.storage import unbound_claim
from kubesim.models.resources import Node, Pod, PodPhase, PodReason, Taint, Toleration
from kubesim.observability.logging import get_logger
from kubesim.store.cluster import ClusterState

_logger = get_logger("scheduler")

_HARD_EFFECTS = frozenset({"NoSchedule", "NoExecute"})


def tolerates(tolerations: list[Toleration], taint: Taint) -> bool:
    for t in tolerations:
        if t.operator == "Exists" and (not t.key or t.key == taint.key):
            return True
        if t.key == taint.key and t.value == taint.value and (not t.effect or t.effect == taint.effect):
            return True
    return False


def tolerates_hard_taints(tolerations: list[Toleration], node: Node) -> bool:
    return all(tolerates(tolerations, taint) for taint in node.spec.taints if taint.effect in _HARD_EFFECTS)


def node_selector_matches(selector: dict[str, str], node: Node) -> bool:
    return all(node.metadata.labels.get(k) == v for k, v in selector.items())


def _soft_penalty(pod: Pod, node: Node) -> int:
    return sum(
        1
        for taint in node.spec.taints
        if taint.effect == "PreferNoSchedule" and not tolerates(pod.spec.tolerations, taint)
    )


def _needs_scheduling(pod: Pod) -> bool:
    return (
        pod.status.phase == PodPhase.PENDING
        and not pod.spec.node_name
        and not pod.metadata.terminating
        and pod.status.reason in (None, PodReason.UNSCHEDULABLE)
    )


class Scheduler(Controller):
    name = "scheduler"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        # Node-less scenarios run pods unbound.
        if not state.nodes:
            return

        state.refresh_node_allocations()
        pending = sorted((p for p in state.pods if _needs_scheduling(p)), key=lambda p: p.metadata.creation_timestamp)

        for pod in pending:
            waiting = unbound_claim(state, pod)
            if waiting is not None:
                self._mark_unschedulable(state, pod, waiting)
                continue
            node = self._pick_node(pod, state.nodes)
            if node is not None:
                self._bind(state, pod, node)
            else:
                self._mark_unschedulable(state, pod, _failure_message(pod, state.nodes))

    def _pick_node(self, pod: Pod, nodes: list[Node]) -> Node | None:
        candidates = [
            n
            for n in nodes
            if n.ready
            and not n.spec.unschedulable
            and tolerates_hard_taints(pod.spec.tolerations, n)
            and node_selector_matches(pod.spec.node_selector, n)
            and n.status.allocated_pods < n.spec.capacity_pods
        ]
        if not candidates:
            return None
        # min() is stable, so first-fit order is kept among equal penalties.
        return min(candidates, key=lambda n: _soft_penalty(pod, n))

    def _bind(self, state: ClusterState, pod: Pod, node: Node) -> None:
        pod.spec.node_name = node.metadata.name
        pod.status.reason = None
        pod.status.message = None
        node.status.allocated_pods += 1
        self._updated(pod)
        self._normal(state, "Scheduled", pod, f"Successfully assigned {pod.metadata.name} to {node.metadata.name}")
        _logger.debug("pod_bound", pod=pod.metadata.name, node=node.metadata.name)

    def _mark_unschedulable(self, state: ClusterState, pod: Pod, message: str) -> None:
        if pod.status.reason == PodReason.UNSCHEDULABLE and pod.status.message == message:
            return
        pod.status.reason = PodReason.UNSCHEDULABLE
        pod.status.message = message
        self._warning(state, "FailedScheduling", pod, message)
        _logger.info("pod_unschedulable", pod=pod.metadata.name, message=message)


def _failure_message(pod: Pod, nodes: list[Node]) -> str:
    """Describe why no node fits, in the shape kube-scheduler uses."""
    unready = [n for n in nodes if not n.ready or n.spec.unschedulable]
    usable = [n for n in nodes if n.ready and not n.spec.unschedulable]
    tainted = [n for n in usable if not tolerates_hard_taints(pod.spec.tolerations, n)]
    tolerated = [n for n in usable if tolerates_hard_taints(pod.spec.tolerations, n)]
    mismatched = [n for n in tolerated if not node_selector_matches(pod.spec.node_selector, n)]
    full = [
        n
        for n in tolerated
        if node_selector_matches(pod.spec.node_selector, n) and n.status.allocated_pods >= n.spec.capacity_pods
    ]

    parts: list[str] = []
    if tainted:
        parts.append(f"{len(tainted)} node(s) had taints that the pod didn't tolerate")
    if mismatched:
        parts.append(f"{len(mismatched)} node(s) didn't match Pod's node affinity/selector")
    if full:
        parts.append(f"{len(full)} node(s) had insufficient capacity")
    if unready:
        parts.append(f"{len(unready)} node(s) were not ready or unschedulable")
    if not parts:
        parts.append("no nodes have sufficient capacity")
    return f"0/{len(nodes)} nodes are available: {', '.join(parts)}"
