"""Constructors for entities, shared by controllers, commands and scenarios.

Builders allocate metadata from the store (UID, creation timestamp) but do
not insert the object; callers decide when it becomes visible.
"""

from __future__ import annotations

import copy
from typing import Any

from kubesim.models.resources import (
    DEFAULT_NAMESPACE,
    Condition,
    Deployment,
    DeploymentSpec,
    DeploymentStrategy,
    Node,
    NodeSpec,
    NodeStatus,
    PersistentVolumeClaimTemplate,
    Pod,
    PodSpec,
    PodStatus,
    PodTemplate,
    ReplicaSet,
    ReplicaSetSpec,
    RestartPolicy,
    StatefulSet,
    StatefulSetSpec,
    StrategyType,
    Taint,
)
from kubesim.store.cluster import ClusterState


def build_pod(
    state: ClusterState,
    name: str,
    template: PodTemplate,
    *,
    namespace: str = DEFAULT_NAMESPACE,
    labels: dict[str, str] | None = None,
    owner: Any = None,
    node_name: str | None = None,
    restart_policy: RestartPolicy | None = None,
    completion_ticks: int | None = None,
) -> Pod:
    """Instantiate a pod from ``template``.

    Pod labels are the template labels overlaid with ``labels`` (normally the
    owning controller's selector), so a selector key always wins.
    """
    spec = copy.deepcopy(template.spec)
    spec.node_name = node_name
    if restart_policy is not None:
        spec.restart_policy = restart_policy
    if completion_ticks is not None:
        spec.completion_ticks = completion_ticks

    meta = state.new_meta("Pod", name, namespace, {**template.labels, **(labels or {})}, owner)
    meta.annotations = dict(template.annotations)
    return Pod(metadata=meta, spec=spec, status=PodStatus(tick_created=state.tick))


def build_node(
    state: ClusterState,
    name: str,
    capacity: int = 4,
    *,
    labels: dict[str, str] | None = None,
    taints: list[Taint] | None = None,
    ready: bool = True,
) -> Node:
    node_labels = {"kubernetes.io/hostname": name, **(labels or {})}
    meta = state.new_meta("Node", name, "", node_labels)
    return Node(
        metadata=meta,
        spec=NodeSpec(capacity_pods=capacity, taints=list(taints or [])),
        status=NodeStatus(conditions=[Condition(type="Ready", status="True" if ready else "False")]),
    )


def build_deployment(
    state: ClusterState,
    name: str,
    image: str,
    replicas: int = 1,
    *,
    namespace: str = DEFAULT_NAMESPACE,
    labels: dict[str, str] | None = None,
    strategy: StrategyType = StrategyType.ROLLING_UPDATE,
    max_surge: int | str = 1,
    max_unavailable: int | str = 1,
) -> Deployment:
    """Deployment selecting ``app=<name>`` unless ``labels`` say otherwise."""
    selector = dict(labels or {"app": name})
    return Deployment(
        metadata=state.new_meta("Deployment", name, namespace, selector),
        spec=DeploymentSpec(
            replicas=replicas,
            selector=selector,
            template=PodTemplate(labels=dict(selector), spec=PodSpec(image=image)),
            strategy=DeploymentStrategy(type=strategy, max_surge=max_surge, max_unavailable=max_unavailable),
        ),
    )


def build_replica_set(
    state: ClusterState,
    name: str,
    template: PodTemplate,
    replicas: int,
    selector: dict[str, str],
    *,
    namespace: str = DEFAULT_NAMESPACE,
    owner: Any = None,
) -> ReplicaSet:
    return ReplicaSet(
        metadata=state.new_meta("ReplicaSet", name, namespace, {**template.labels, **selector}, owner),
        spec=ReplicaSetSpec(replicas=replicas, selector=dict(selector), template=copy.deepcopy(template)),
    )


def build_stateful_set(
    state: ClusterState,
    name: str,
    image: str,
    replicas: int = 1,
    *,
    namespace: str = DEFAULT_NAMESPACE,
    claim_templates: list[PersistentVolumeClaimTemplate] | None = None,
) -> StatefulSet:
    selector = {"app": name}
    return StatefulSet(
        metadata=state.new_meta("StatefulSet", name, namespace, selector),
        spec=StatefulSetSpec(
            replicas=replicas,
            selector=selector,
            template=PodTemplate(labels=dict(selector), spec=PodSpec(image=image)),
            service_name=name,
            volume_claim_templates=list(claim_templates or []),
        ),
    )
