"""DaemonSet controller: one pod per eligible node.

Placement is decided here, not by the scheduler: pods are created with
``node_name`` already set. A node is eligible when it is Ready, every
NoSchedule/NoExecute taint on it is tolerated by the pod template and it
satisfies the template's node selector. Cordoning does not evict daemons.

Template changes are tracked through a ``controller-revision-hash`` label.
RollingUpdate replaces outdated pods while no more than ``maxUnavailable``
eligible nodes lack a ready pod; OnDelete waits for pods to be deleted by
hand.
"""

from __future__ import annotations

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.controllers.scheduler import node_selector_matches, tolerates_hard_taints
from kubesim.models.resources import CONTROLLER_REVISION_LABEL, DaemonSet, Node, Pod, StrategyType
from kubesim.observability.logging import get_logger
from kubesim.store.builders import build_pod
from kubesim.store.cluster import ClusterState, template_hash

_logger = get_logger("daemonset_controller")


def eligible_nodes(ds: DaemonSet, nodes: list[Node]) -> list[Node]:
    spec = ds.spec.template.spec
    return [
        n
        for n in nodes
        if n.ready and tolerates_hard_taints(spec.tolerations, n) and node_selector_matches(spec.node_selector, n)
    ]


class DaemonSetController(Controller):
    name = "daemonset_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for ds in state.daemon_sets:
            owned = state.live_matching_pods(ds.spec.selector, ds.metadata.namespace)
            if ds.metadata.terminating:
                for pod in owned:
                    self._deleted(state, pod)
                continue
            self._sync(state, ds, owned)

    def _sync(self, state: ClusterState, ds: DaemonSet, owned: list[Pod]) -> None:
        revision = template_hash(ds.spec.template)
        eligible = eligible_nodes(ds, state.nodes)
        eligible_names = {n.metadata.name for n in eligible}

        by_node: dict[str, list[Pod]] = {}
        for pod in owned:
            if pod.spec.node_name:
                by_node.setdefault(pod.spec.node_name, []).append(pod)

        # Evict from nodes that dropped out of the desired set.
        for node_name, pods in by_node.items():
            if node_name in eligible_names:
                continue
            node = state.find_node(node_name)
            for pod in pods:
                self._deleted(state, pod)
                if node is None or not node.ready:
                    self._warning(
                        state, "NodeNotReady", pod, f"Deleting pod {pod.metadata.name} from unready node {node_name}"
                    )
                else:
                    self._normal(state, "SuccessfulDelete", ds, f"Deleted pod: {pod.metadata.name}")
            _logger.info("ds_node_ineligible", daemonset=ds.metadata.name, node=node_name, pods=len(pods))

        # Exactly one pod per eligible node.
        for node in eligible:
            pods = sorted(by_node.get(node.metadata.name, []), key=lambda p: p.metadata.creation_timestamp)
            for extra in pods[1:]:
                self._deleted(state, extra)
                self._normal(state, "SuccessfulDelete", ds, f"Deleted pod: {extra.metadata.name}")
            if not pods:
                self._create_pod(state, ds, node, revision)

        if ds.spec.update_strategy.type == StrategyType.ROLLING_UPDATE:
            self._rolling_update(state, ds, eligible, revision)

        self._refresh_status(state, ds, eligible_names, revision)

    def _create_pod(self, state: ClusterState, ds: DaemonSet, node: Node, revision: str) -> None:
        name = f"{ds.metadata.name}-{node.metadata.name}"
        if state.find("Pod", name, ds.metadata.namespace) is not None:
            name = state.generate_name("Pod", name, ds.metadata.namespace)
        pod = build_pod(
            state,
            name,
            ds.spec.template,
            namespace=ds.metadata.namespace,
            labels={**ds.spec.selector, CONTROLLER_REVISION_LABEL: revision},
            owner=ds,
            node_name=node.metadata.name,
        )
        self._created(state, pod)
        self._normal(state, "SuccessfulCreate", ds, f"Created pod: {name} on node {node.metadata.name}")
        _logger.info("ds_pod_created", daemonset=ds.metadata.name, node=node.metadata.name, pod=name)

    def _rolling_update(self, state: ClusterState, ds: DaemonSet, eligible: list[Node], revision: str) -> None:
        live = state.live_matching_pods(ds.spec.selector, ds.metadata.namespace)
        on_node = {p.spec.node_name: p for p in live if p.spec.node_name}
        ready_nodes = {name for name, p in on_node.items() if p.is_ready}
        unavailable = sum(1 for n in eligible if n.metadata.name not in ready_nodes)
        allowed = ds.spec.update_strategy.max_unavailable - unavailable

        outdated = [
            on_node[n.metadata.name]
            for n in eligible
            if n.metadata.name in on_node
            and on_node[n.metadata.name].metadata.labels.get(CONTROLLER_REVISION_LABEL) != revision
        ]
        # Not-ready outdated pods are already unavailable, so replacing them is free.
        for pod in outdated:
            if pod.is_ready:
                continue
            self._replace(state, ds, pod)
        for pod in outdated:
            if allowed <= 0:
                break
            if not pod.is_ready:
                continue
            self._replace(state, ds, pod)
            allowed -= 1

    def _replace(self, state: ClusterState, ds: DaemonSet, pod: Pod) -> None:
        self._deleted(state, pod)
        self._normal(state, "SuccessfulDelete", ds, f"Deleted pod: {pod.metadata.name}")
        _logger.info("ds_pod_outdated", daemonset=ds.metadata.name, pod=pod.metadata.name, node=pod.spec.node_name)

    @staticmethod
    def _refresh_status(state: ClusterState, ds: DaemonSet, eligible_names: set[str], revision: str) -> None:
        scheduled = [
            p
            for p in state.live_matching_pods(ds.spec.selector, ds.metadata.namespace)
            if p.spec.node_name in eligible_names
        ]
        ds.status.desired_number_scheduled = len(eligible_names)
        ds.status.current_number_scheduled = len(scheduled)
        ds.status.number_ready = sum(1 for p in scheduled if p.is_ready)
        ds.status.updated_number_scheduled = sum(
            1 for p in scheduled if p.metadata.labels.get(CONTROLLER_REVISION_LABEL) == revision
        )
