"""ReplicaSet controller: diff-based pod count reconciliation.

Ownership for counting is the label selector alone. Any live pod whose
labels satisfy the selector counts, including pods created by hand, and an
adopted pod can be the one removed when the set is over its replica count.
"""

from __future__ import annotations

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.models.resources import OwnerReference, Pod, ReplicaSet, RestartPolicy
from kubesim.observability.logging import get_logger
from kubesim.store.builders import build_pod
from kubesim.store.cluster import ClusterState

_logger = get_logger("replicaset_controller")


def deletion_order(pods: list[Pod]) -> list[Pod]:
    """Pods to remove first when over count: not-ready before ready, newest first."""
    return sorted(pods, key=lambda p: (p.is_ready, -p.metadata.creation_timestamp))


class ReplicaSetController(Controller):
    name = "replicaset_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for rs in list(state.replica_sets):
            if rs.metadata.terminating:
                self._drain(state, rs)
                continue
            self._adopt_orphans(state, rs)
            self._sync_count(state, rs)
            self._refresh_status(state, rs)

    def _drain(self, state: ClusterState, rs: ReplicaSet) -> None:
        for pod in state.matching_pods(rs.spec.selector, rs.metadata.namespace):
            if pod.metadata.terminating:
                continue
            self._delete_pod(state, rs, pod, "ReplicaSet is being deleted")

    def _adopt_orphans(self, state: ClusterState, rs: ReplicaSet) -> None:
        for pod in state.live_matching_pods(rs.spec.selector, rs.metadata.namespace):
            if pod.metadata.owner_reference is not None:
                continue
            pod.metadata.owner_reference = OwnerReference(kind=rs.kind, name=rs.metadata.name, uid=rs.metadata.uid)
            self._normal(state, "Adopted", rs, f'Adopted pod "{pod.metadata.name}" with matching labels')
            _logger.info("pod_adopted", replicaset=rs.metadata.name, pod=pod.metadata.name)

    def _sync_count(self, state: ClusterState, rs: ReplicaSet) -> None:
        owned = state.live_matching_pods(rs.spec.selector, rs.metadata.namespace)
        desired = rs.spec.replicas
        current = len(owned)

        if current < desired:
            for _ in range(desired - current):
                name = state.generate_name("Pod", rs.metadata.name, rs.metadata.namespace)
                pod = build_pod(
                    state,
                    name,
                    rs.spec.template,
                    namespace=rs.metadata.namespace,
                    labels=rs.spec.selector,
                    owner=rs,
                    restart_policy=RestartPolicy.ALWAYS,
                )
                self._created(state, pod)
                self._normal(state, "SuccessfulCreate", rs, f"Created pod: {name}")
            _logger.info("rs_scale_up", replicaset=rs.metadata.name, current=current, desired=desired)

        elif current > desired:
            for pod in deletion_order(owned)[: current - desired]:
                self._delete_pod(state, rs, pod, f"scaling down to {desired}")
            _logger.info("rs_scale_down", replicaset=rs.metadata.name, current=current, desired=desired)

    def _delete_pod(self, state: ClusterState, rs: ReplicaSet, pod: Pod, why: str) -> None:
        self._deleted(state, pod)
        self._normal(state, "SuccessfulDelete", rs, f"Deleted pod: {pod.metadata.name}")
        _logger.debug("rs_pod_deleted", replicaset=rs.metadata.name, pod=pod.metadata.name, why=why)

    @staticmethod
    def _refresh_status(state: ClusterState, rs: ReplicaSet) -> None:
        owned = state.live_matching_pods(rs.spec.selector, rs.metadata.namespace)
        rs.status.replicas = len(owned)
        rs.status.ready_replicas = sum(1 for p in owned if p.is_ready)
