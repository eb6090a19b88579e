"""Seeding helpers for scenario initial states.

Seeded objects look like the controllers produced them on an earlier run:
a deployment owns a replica set carrying the pod-template-hash label, and
its pods are already bound and Running, so tick 0 starts converged.
"""

from __future__ import annotations

from kubesim.models.resources import (
    DEFAULT_NAMESPACE,
    POD_TEMPLATE_HASH_LABEL,
    Condition,
    Deployment,
    EnvFromSource,
    Node,
    Pod,
    PodPhase,
    PodTemplate,
    ReplicaSet,
)
from kubesim.store.builders import build_deployment, build_node, build_pod, build_replica_set
from kubesim.store.cluster import ClusterState, template_hash


def seed_nodes(state: ClusterState, count: int, capacity: int = 4, prefix: str = "node") -> list[Node]:
    nodes = [build_node(state, f"{prefix}-{i}", capacity) for i in range(1, count + 1)]
    state.nodes.extend(nodes)
    return nodes


def run_pod(pod: Pod, node_name: str | None, cpu_usage: float | None = None) -> Pod:
    """Mark ``pod`` as bound, started and ready at tick 0."""
    pod.spec.node_name = node_name
    pod.status.phase = PodPhase.RUNNING
    pod.status.ready = True
    pod.status.start_tick = 0
    pod.status.cpu_usage = cpu_usage
    pod.spec.logs.append(f"[startup] Container started with image {pod.spec.image}")
    return pod


def seed_replica_set(
    state: ClusterState,
    name: str,
    template: PodTemplate,
    replicas: int,
    selector: dict[str, str],
    *,
    owner: Deployment | None = None,
    namespace: str = DEFAULT_NAMESPACE,
    running: bool = True,
    cpu_usage: float | None = None,
) -> tuple[ReplicaSet, list[Pod]]:
    """Add a replica set and ``replicas`` pods spread round-robin over the nodes.

    With ``running=False`` the pods are left Pending and unbound, as if the
    scheduler had not yet seen them.
    """
    rs = build_replica_set(state, name, template, replicas, selector, namespace=namespace, owner=owner)
    state.add(rs)
    node_names = [n.metadata.name for n in state.nodes if n.ready]
    pods: list[Pod] = []
    for i in range(replicas):
        pod = build_pod(
            state,
            state.generate_name("Pod", name, namespace),
            template,
            namespace=namespace,
            labels=selector,
            owner=rs,
        )
        if running and node_names:
            run_pod(pod, node_names[i % len(node_names)], cpu_usage)
        state.add(pod)
        pods.append(pod)
    rs.status.replicas = replicas
    rs.status.ready_replicas = sum(1 for p in pods if p.is_ready)
    state.refresh_node_allocations()
    return rs, pods


def seed_deployment(
    state: ClusterState,
    name: str,
    image: str,
    replicas: int,
    *,
    namespace: str = DEFAULT_NAMESPACE,
    env_from: list[EnvFromSource] | None = None,
    running: bool = True,
    cpu_usage: float | None = None,
) -> Deployment:
    """Deployment plus its current replica set and pods."""
    dep = build_deployment(state, name, image, replicas, namespace=namespace)
    dep.spec.template.spec.env_from = list(env_from or [])
    state.add(dep)

    current_hash = template_hash(dep.spec.template)
    template = PodTemplate(
        labels={**dep.spec.template.labels, POD_TEMPLATE_HASH_LABEL: current_hash},
        spec=dep.spec.template.spec,
    )
    selector = {**dep.spec.selector, POD_TEMPLATE_HASH_LABEL: current_hash}
    _, pods = seed_replica_set(
        state,
        f"{name}-{current_hash}",
        template,
        replicas,
        selector,
        owner=dep,
        namespace=namespace,
        running=running,
        cpu_usage=cpu_usage,
    )

    ready = sum(1 for p in pods if p.is_ready)
    dep.status.observed_template_hash = current_hash
    dep.status.replicas = replicas
    dep.status.updated_replicas = replicas
    dep.status.ready_replicas = ready
    dep.status.available_replicas = ready
    if ready >= replicas:
        dep.status.conditions = [
            Condition("Available", "True", "MinimumReplicasAvailable"),
        ]
    return dep


def running_pods(state: ClusterState, selector: dict[str, str], namespace: str = DEFAULT_NAMESPACE) -> list[Pod]:
    return [p for p in state.live_matching_pods(selector, namespace) if p.status.phase == PodPhase.RUNNING]
