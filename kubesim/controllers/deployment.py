"""Deployment controller: template-hashed ReplicaSets and rolling updates.

A Deployment owns every non-terminating ReplicaSet that carries a
``pod-template-hash`` label and whose labels satisfy the Deployment's
selector, unless the set's owner reference names a different Deployment,
so overlapping selectors never let one Deployment scale down another's
sets. The set whose hash equals the live template's hash is "new"; every
other owned set is "old".

RollingUpdate moves replicas from old to new sets in bounded steps:

* the sum of ``spec.replicas`` over all owned sets never exceeds
  ``replicas + maxSurge``;
* old replicas are only removed while at least ``replicas - maxUnavailable``
  pods stay ready. Not-ready old replicas may be cleaned up first, as long
  as the new set's own unavailability leaves room for it.

There is no automatic rollback; a rollout whose new pods never become ready
stays Progressing.
"""

from __future__ import annotations

import math

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.models.resources import (
    POD_TEMPLATE_HASH_LABEL,
    Condition,
    Deployment,
    PodTemplate,
    ReplicaSet,
    StrategyType,
)
from kubesim.observability.logging import get_logger
from kubesim.store.builders import build_replica_set
from kubesim.store.cluster import ClusterState, labels_match, template_hash

_logger = get_logger("deployment_controller")

_STALLED_MESSAGE = "Rollout stalled - new pods are not becoming ready"


def resolve_bound(value: int | str, replicas: int, round_up: bool) -> int:
    """Turn an absolute or percentage surge/unavailable value into a count."""
    if isinstance(value, int):
        return max(0, value)
    text = str(value).strip()
    if text.endswith("%"):
        scaled = replicas * float(text[:-1]) / 100
        return max(0, math.ceil(scaled) if round_up else math.floor(scaled))
    return max(0, int(text))


def rollout_bounds(dep: Deployment) -> tuple[int, int]:
    """Return ``(max_surge, max_unavailable)`` for ``dep``."""
    replicas = dep.spec.replicas
    surge = resolve_bound(dep.spec.strategy.max_surge, replicas, round_up=True)
    unavailable = resolve_bound(dep.spec.strategy.max_unavailable, replicas, round_up=False)
    if surge == 0 and unavailable == 0:
        unavailable = 1
    return surge, unavailable


def controlled_by(rs: ReplicaSet, dep: Deployment) -> bool:
    """Whether ``rs`` belongs to ``dep``, terminating or not."""
    if rs.metadata.namespace != dep.metadata.namespace or POD_TEMPLATE_HASH_LABEL not in rs.metadata.labels:
        return False
    owner = rs.metadata.owner_reference
    if owner is not None and owner.kind == dep.kind and owner.uid != dep.metadata.uid:
        return False
    return labels_match(dep.spec.selector, rs.metadata.labels)


def owned_replica_sets(state: ClusterState, dep: Deployment) -> list[ReplicaSet]:
    """Owned sets, oldest first."""
    owned = [rs for rs in state.replica_sets if not rs.metadata.terminating and controlled_by(rs, dep)]
    return sorted(owned, key=lambda rs: rs.metadata.creation_timestamp)


class DeploymentController(Controller):
    name = "deployment_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for dep in state.deployments:
            if dep.metadata.terminating:
                for rs in owned_replica_sets(state, dep):
                    self._deleted(state, rs)
                continue
            self._sync(state, dep)

    def _sync(self, state: ClusterState, dep: Deployment) -> None:
        current_hash = template_hash(dep.spec.template)
        owned = owned_replica_sets(state, dep)
        new_rs = next((rs for rs in owned if rs.metadata.labels[POD_TEMPLATE_HASH_LABEL] == current_hash), None)
        if new_rs is None:
            new_rs = self._create_replica_set(state, dep, current_hash)
            owned.append(new_rs)
        old = [rs for rs in owned if rs is not new_rs]
        dep.status.observed_template_hash = current_hash

        if not old:
            self._scale(state, dep, new_rs, dep.spec.replicas)
        elif dep.spec.strategy.type == StrategyType.RECREATE:
            self._recreate(state, dep, new_rs, old)
        else:
            self._rolling_update(state, dep, new_rs, old)

        self._cleanup_old(state, dep, old)
        self._refresh_status(state, dep, new_rs, old)

    # -----------------------------------------------------------------------
    # Replica set management
    # -----------------------------------------------------------------------

    def _create_replica_set(self, state: ClusterState, dep: Deployment, current_hash: str) -> ReplicaSet:
        name = f"{dep.metadata.name}-{current_hash}"
        if state.find("ReplicaSet", name, dep.metadata.namespace) is not None:
            name = state.generate_name("ReplicaSet", name, dep.metadata.namespace)
        selector = {**dep.spec.selector, POD_TEMPLATE_HASH_LABEL: current_hash}
        template = PodTemplate(
            labels={**dep.spec.template.labels, POD_TEMPLATE_HASH_LABEL: current_hash},
            annotations=dict(dep.spec.template.annotations),
            spec=dep.spec.template.spec,
        )
        rs = build_replica_set(state, name, template, 0, selector, namespace=dep.metadata.namespace, owner=dep)
        self._created(state, rs)
        self._normal(state, "ScalingReplicaSet", dep, f'Created new replica set "{name}"')
        _logger.info("rs_created", deployment=dep.metadata.name, replicaset=name, image=dep.spec.template.spec.image)
        return rs

    def _scale(self, state: ClusterState, dep: Deployment, rs: ReplicaSet, replicas: int) -> None:
        if rs.spec.replicas == replicas:
            return
        direction = "up" if replicas > rs.spec.replicas else "down"
        rs.spec.replicas = replicas
        self._scaled(rs)
        message = f'Scaled {direction} replica set "{rs.metadata.name}" to {replicas}'
        self._normal(state, "ScalingReplicaSet", dep, message)
        _logger.info("rs_scaled", deployment=dep.metadata.name, replicaset=rs.metadata.name, replicas=replicas)

    def _recreate(self, state: ClusterState, dep: Deployment, new_rs: ReplicaSet, old: list[ReplicaSet]) -> None:
        for rs in old:
            self._scale(state, dep, rs, 0)
        if any(state.live_matching_pods(rs.spec.selector, rs.metadata.namespace) for rs in old):
            self._scale(state, dep, new_rs, 0)
            return
        self._scale(state, dep, new_rs, dep.spec.replicas)

    def _rolling_update(self, state: ClusterState, dep: Deployment, new_rs: ReplicaSet, old: list[ReplicaSet]) -> None:
        desired = dep.spec.replicas
        surge, unavailable = rollout_bounds(dep)
        min_available = desired - unavailable

        # Scale up the new set within the surge allowance.
        if new_rs.spec.replicas > desired:
            self._scale(state, dep, new_rs, desired)
        elif new_rs.spec.replicas < desired:
            total = new_rs.spec.replicas + sum(rs.spec.replicas for rs in old)
            room = desired + surge - total
            if room > 0:
                self._scale(state, dep, new_rs, min(desired, new_rs.spec.replicas + room))

        new_ready = self._ready_count(state, new_rs)
        new_unavailable = max(0, new_rs.spec.replicas - new_ready)

        # Clean up not-ready old replicas first; they cost no availability.
        cleanup = new_rs.spec.replicas + sum(rs.spec.replicas for rs in old) - min_available - new_unavailable
        for rs in old:
            if cleanup <= 0:
                break
            unhealthy = max(0, rs.spec.replicas - self._ready_count(state, rs))
            step = min(cleanup, unhealthy)
            if step > 0:
                self._scale(state, dep, rs, rs.spec.replicas - step)
                cleanup -= step

        # Then scale down ready old replicas while availability allows.
        ready_total = new_ready + sum(min(rs.spec.replicas, self._ready_count(state, rs)) for rs in old)
        budget = ready_total - min_available
        for rs in old:
            if budget <= 0:
                break
            step = min(budget, rs.spec.replicas)
            if step > 0:
                self._scale(state, dep, rs, rs.spec.replicas - step)
                budget -= step

    def _cleanup_old(self, state: ClusterState, dep: Deployment, old: list[ReplicaSet]) -> None:
        for rs in old:
            if rs.spec.replicas == 0 and not state.live_matching_pods(rs.spec.selector, rs.metadata.namespace):
                self._deleted(state, rs)
                _logger.info("rs_cleaned_up", deployment=dep.metadata.name, replicaset=rs.metadata.name)

    @staticmethod
    def _ready_count(state: ClusterState, rs: ReplicaSet) -> int:
        return sum(1 for p in state.live_matching_pods(rs.spec.selector, rs.metadata.namespace) if p.is_ready)

    # -----------------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------------

    def _refresh_status(self, state: ClusterState, dep: Deployment, new_rs: ReplicaSet, old: list[ReplicaSet]) -> None:
        ns = dep.metadata.namespace
        new_pods = state.live_matching_pods(new_rs.spec.selector, ns)
        old_pods = [p for rs in old for p in state.live_matching_pods(rs.spec.selector, ns)]
        all_pods = new_pods + old_pods
        ready = sum(1 for p in all_pods if p.is_ready)
        desired = dep.spec.replicas

        dep.status.replicas = len(all_pods)
        dep.status.updated_replicas = len(new_pods)
        dep.status.ready_replicas = ready
        dep.status.available_replicas = ready

        complete = len(new_pods) == desired and not old_pods and ready == desired
        was_complete = dep.condition("Available") is not None
        if complete:
            dep.status.conditions = [Condition("Available", "True", "MinimumReplicasAvailable")]
            if not was_complete:
                self._normal(state, "RolloutComplete", dep, f'Deployment "{dep.metadata.name}" successfully rolled out')
                _logger.info("rollout_complete", deployment=dep.metadata.name, replicas=desired)
            return

        new_ready = sum(1 for p in new_pods if p.is_ready)
        failing = [p for p in new_pods if p.status.reason]
        if old and failing and new_ready == 0:
            previous = dep.condition("Progressing")
            if previous is None or previous.message != _STALLED_MESSAGE:
                self._warning(state, "RolloutStalled", dep, _STALLED_MESSAGE)
                _logger.warning("rollout_stalled", deployment=dep.metadata.name, reason=failing[0].status.reason)
            dep.status.conditions = [Condition("Progressing", "True", "ReplicaSetUpdated", _STALLED_MESSAGE)]
        else:
            dep.status.conditions = [Condition("Progressing", "True", "ReplicaSetUpdated")]
