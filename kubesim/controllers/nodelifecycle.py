"""Node lifecycle controller: evicts pods from NotReady or removed nodes.

Long-running pods are deleted so their controller replaces them. Job pods
are left Failed so the Job controller counts the attempt against its
backoff limit before anything removes them.
"""

from __future__ import annotations

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.models.resources import PodPhase, PodReason, RestartPolicy
from kubesim.observability.logging import get_logger
from kubesim.store.cluster import ClusterState

_logger = get_logger("node_lifecycle_controller")


class NodeLifecycleController(Controller):
    name = "node_lifecycle_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        healthy = {n.metadata.name for n in state.nodes if n.ready and not n.metadata.terminating}

        for pod in state.pods:
            node_name = pod.spec.node_name
            if not node_name or node_name in healthy or not pod.live:
                continue
            pod.status.phase = PodPhase.FAILED
            pod.status.reason = PodReason.NODE_NOT_READY
            pod.status.message = f"Node {node_name} is not ready"
            pod.status.ready = False
            if pod.spec.restart_policy == RestartPolicy.ALWAYS:
                self._deleted(state, pod)
            else:
                self._updated(pod)
            self._warning(state, "NodeNotReady", pod, f"Pod evicted from node {node_name} (node is not ready)")
            _logger.info("pod_evicted", pod=pod.metadata.name, node=node_name)
