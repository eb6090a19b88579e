"""Autoscaling scenarios: node provisioning and horizontal pod autoscaling."""

from __future__ import annotations

from kubesim.engine.scenario import Goal, SimpleScenario, StateCheck
from kubesim.models.events import EventType
from kubesim.models.resources import PodPhase, PodReason
from kubesim.observability.logging import get_logger
from kubesim.scenarios.fixtures import running_pods, seed_deployment, seed_nodes
from kubesim.store.builders import build_node
from kubesim.store.cluster import ClusterState

_logger = get_logger("scenarios")

KARPENTER_LABEL = "karpenter.sh/provisioned"

_WEB = {"app": "web"}


# ---------------------------------------------------------------------------
# cluster-autoscaling
# ---------------------------------------------------------------------------


def _cluster_autoscaling_state() -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 2, capacity=2)
    seed_deployment(state, "web", "web-app:1.0", 2)
    return state


def provision_nodes(tick: int, state: ClusterState) -> ClusterState | None:
    """Stand-in for Karpenter: one fresh node whenever pods are Unschedulable."""
    stuck = [
        p
        for p in state.pods
        if p.status.phase == PodPhase.PENDING
        and p.status.reason == PodReason.UNSCHEDULABLE
        and not p.metadata.terminating
    ]
    if not stuck:
        return None
    name = f"karpenter-node-{len(state.nodes) + 1}"
    if state.find_node(name) is not None:
        return None
    state.nodes.append(build_node(state, name, 4, labels={KARPENTER_LABEL: "true"}))
    state.record_event(
        EventType.NORMAL,
        "NodeProvisioned",
        "Node",
        name,
        f"Karpenter provisioned node {name} for {len(stuck)} unschedulable pod(s)",
    )
    _logger.info("node_provisioned", tick=tick, node=name, pending=len(stuck))
    return state


def _web_replicas_at_least(n: int) -> StateCheck:
    def check(state: ClusterState) -> bool:
        dep = state.find("Deployment", "web")
        return dep is not None and dep.spec.replicas >= n

    return check


def cluster_autoscaling() -> SimpleScenario:
    return SimpleScenario(
        name="cluster-autoscaling",
        description=(
            'Two small nodes are full. Scale "web" to 5 replicas and watch a node '
            "provisioner add capacity for the pods the scheduler cannot place."
        ),
        build=_cluster_autoscaling_state,
        hook=provision_nodes,
        goals=[
            Goal('Scale "web" to 5 replicas', _web_replicas_at_least(5)),
            Goal("Karpenter provisions a new node", lambda s: len(s.nodes) > 2),
            Goal('All 5 "web" pods Running', lambda s: len(running_pods(s, _WEB)) >= 5),
        ],
    )


# ---------------------------------------------------------------------------
# hpa
# ---------------------------------------------------------------------------

HPA_MANIFEST = """\
apiVersion: autoscaling/v1
kind: HorizontalPodAutoscaler
metadata:
  name: web
spec:
  scaleTargetRef:
    kind: Deployment
    name: web
  minReplicas: 2
  maxReplicas: 8
  targetCPUUtilizationPercentage: 50
"""

_HIGH_CPU = 85.0
_LOW_CPU = 30.0


def _hpa_state() -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 3)
    seed_deployment(state, "web", "web-app:1.0", 2, cpu_usage=_HIGH_CPU)
    return state


def cpu_load(tick: int, state: ClusterState) -> ClusterState | None:
    """Load script: busy for the first ticks, quiet after tick 5."""
    if tick <= 3:
        usage = _HIGH_CPU
    elif tick > 5:
        usage = _LOW_CPU
    else:
        return None
    for pod in running_pods(state, _WEB):
        pod.status.cpu_usage = usage
    return state


def hpa() -> SimpleScenario:
    return SimpleScenario(
        name="hpa",
        description='Pods of "web" are running hot. Add a HorizontalPodAutoscaler and let it scale out.',
        build=_hpa_state,
        hook=cpu_load,
        manifest_template=HPA_MANIFEST,
        goals=[
            Goal(
                'Create an HPA for the "web" Deployment (min=2, max=8, cpu=50%)',
                lambda s: any(h.spec.scale_target_ref.name == "web" for h in s.hpas),
            ),
            Goal("HPA scales the deployment beyond 2 replicas", _web_replicas_at_least(3)),
            Goal('More than 2 "web" pods Running', lambda s: len(running_pods(s, _WEB)) > 2),
        ],
    )
