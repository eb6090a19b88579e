"""StatefulSet controller: ordered pods with stable names and storage.

Pod ``i`` of StatefulSet ``web`` is always named ``web-i``. A live pod
belongs to the set when the set's selector matches it and its name carries
an ordinal. The controller makes at most one change per set per pass:

* scale down removes the highest ordinal first;
* scale up creates the lowest missing ordinal, and only once every lower
  ordinal is Running and ready;
* a name is reused only after the previous pod of that name has left the
  store, so a deleted pod comes back under the same name a tick later;
* RollingUpdate replaces outdated pods highest ordinal first, one at a time,
  while the whole set is ready. OnDelete waits for pods to be deleted by
  hand.

Each ``volumeClaimTemplates`` entry yields one claim per ordinal, named
``<template>-<set>-<ordinal>``. Claims outlive the pods and the set, so a
recreated pod gets its old volume back.
"""

from __future__ import annotations

import copy

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.models.resources import (
    CONTROLLER_REVISION_LABEL,
    STATEFULSET_POD_NAME_LABEL,
    PersistentVolumeClaim,
    PersistentVolumeClaimTemplate,
    Pod,
    RestartPolicy,
    StatefulSet,
    StrategyType,
    Volume,
)
from kubesim.observability.logging import get_logger
from kubesim.store.builders import build_pod
from kubesim.store.cluster import ClusterState, template_hash

_logger = get_logger("statefulset_controller")


def pod_ordinal(sts: StatefulSet, pod: Pod) -> int | None:
    suffix = pod.metadata.name.removeprefix(f"{sts.metadata.name}-")
    if suffix == pod.metadata.name or not suffix.isdigit():
        return None
    return int(suffix)


def claim_name(template: PersistentVolumeClaimTemplate, pod_name: str) -> str:
    return f"{template.name}-{pod_name}"


def pods_by_ordinal(state: ClusterState, sts: StatefulSet) -> dict[int, Pod]:
    """Live pods of ``sts`` keyed by ordinal; the oldest wins a duplicate."""
    owned: dict[int, Pod] = {}
    pods = sorted(
        state.live_matching_pods(sts.spec.selector, sts.metadata.namespace),
        key=lambda p: p.metadata.creation_timestamp,
    )
    for pod in pods:
        ordinal = pod_ordinal(sts, pod)
        if ordinal is not None and ordinal not in owned:
            owned[ordinal] = pod
    return owned


class StatefulSetController(Controller):
    name = "statefulset_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for sts in state.stateful_sets:
            pods = pods_by_ordinal(state, sts)
            if sts.metadata.terminating:
                for ordinal in sorted(pods, reverse=True):
                    self._delete_pod(state, sts, pods[ordinal])
                continue
            self._sync(state, sts, pods)
            self._refresh_status(state, sts)

    def _sync(self, state: ClusterState, sts: StatefulSet, pods: dict[int, Pod]) -> None:
        replicas = sts.spec.replicas
        revision = template_hash(sts.spec.template)

        excess = sorted((o for o in pods if o >= replicas), reverse=True)
        if excess:
            self._delete_pod(state, sts, pods[excess[0]])
            _logger.info("sts_scale_down", statefulset=sts.metadata.name, ordinal=excess[0], desired=replicas)
            return

        for ordinal in range(replicas):
            pod = pods.get(ordinal)
            if pod is None:
                self._create_ordinal(state, sts, ordinal, revision)
                return
            if not pod.is_ready:
                return

        if sts.spec.update_strategy.type == StrategyType.ON_DELETE:
            return
        for ordinal in sorted(pods, reverse=True):
            pod = pods[ordinal]
            if pod.metadata.labels.get(CONTROLLER_REVISION_LABEL) != revision:
                self._delete_pod(state, sts, pod)
                _logger.info("sts_pod_outdated", statefulset=sts.metadata.name, pod=pod.metadata.name)
                return

    def _create_ordinal(self, state: ClusterState, sts: StatefulSet, ordinal: int, revision: str) -> None:
        namespace = sts.metadata.namespace
        name = f"{sts.metadata.name}-{ordinal}"
        for existing in state.pods:
            if existing.metadata.name != name or existing.metadata.namespace != namespace:
                continue
            # Wait for the old pod to be removed before reusing its name.
            if not existing.metadata.terminating:
                self._deleted(state, existing)
            return

        for template in sts.spec.volume_claim_templates:
            self._ensure_claim(state, sts, template, name)

        labels = {**sts.spec.selector, CONTROLLER_REVISION_LABEL: revision, STATEFULSET_POD_NAME_LABEL: name}
        pod = build_pod(
            state,
            name,
            sts.spec.template,
            namespace=namespace,
            labels=labels,
            owner=sts,
            restart_policy=RestartPolicy.ALWAYS,
        )
        claims = [Volume(name=t.name, claim_name=claim_name(t, name)) for t in sts.spec.volume_claim_templates]
        claimed = {v.name for v in claims}
        pod.spec.volumes = [v for v in pod.spec.volumes if v.name not in claimed] + claims
        self._created(state, pod)
        self._normal(state, "SuccessfulCreate", sts, f"create Pod {name} in StatefulSet {sts.metadata.name} successful")
        _logger.info("sts_pod_created", statefulset=sts.metadata.name, pod=name, ordinal=ordinal)

    def _ensure_claim(
        self, state: ClusterState, sts: StatefulSet, template: PersistentVolumeClaimTemplate, pod_name: str
    ) -> None:
        name = claim_name(template, pod_name)
        if state.find("PersistentVolumeClaim", name, sts.metadata.namespace) is not None:
            return
        spec = copy.deepcopy(template.spec)
        spec.volume_name = None
        claim = PersistentVolumeClaim(
            metadata=state.new_meta("PersistentVolumeClaim", name, sts.metadata.namespace, sts.spec.selector, sts),
            spec=spec,
        )
        self._created(state, claim)
        self._normal(
            state,
            "SuccessfulCreate",
            sts,
            f"create Claim {name} Pod {pod_name} in StatefulSet {sts.metadata.name} success",
        )

    def _delete_pod(self, state: ClusterState, sts: StatefulSet, pod: Pod) -> None:
        self._deleted(state, pod)
        message = f"delete Pod {pod.metadata.name} in StatefulSet {sts.metadata.name} successful"
        self._normal(state, "SuccessfulDelete", sts, message)

    @staticmethod
    def _refresh_status(state: ClusterState, sts: StatefulSet) -> None:
        revision = template_hash(sts.spec.template)
        pods = pods_by_ordinal(state, sts).values()
        sts.status.replicas = len(pods)
        sts.status.ready_replicas = sum(1 for p in pods if p.is_ready)
        sts.status.current_replicas = sum(
            1 for p in pods if p.metadata.labels.get(CONTROLLER_REVISION_LABEL) == revision
        )
        sts.status.update_revision = revision
