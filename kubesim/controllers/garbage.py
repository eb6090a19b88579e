"""Garbage collector: removes terminating objects once nothing depends on them."""

from __future__ import annotations

from typing import Any

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.controllers.deployment import controlled_by
from kubesim.controllers.job import job_selector
from kubesim.models.resources import CRONJOB_NAME_LABEL, PersistentVolumeClaim
from kubesim.observability.logging import get_logger
from kubesim.store.cluster import ClusterState

_logger = get_logger("garbage_collector")

_INDEPENDENT_KINDS = (
    "Namespace",
    "Service",
    "Ingress",
    "ConfigMap",
    "Secret",
    "HorizontalPodAutoscaler",
    "Node",
    "StorageClass",
    "PersistentVolume",
)


def _claim_in_use(state: ClusterState, claim: PersistentVolumeClaim) -> bool:
    return any(
        p.live and p.metadata.namespace == claim.metadata.namespace and v.claim_name == claim.metadata.name
        for p in state.pods
        for v in p.spec.volumes
    )


class GarbageCollector(Controller):
    name = "garbage_collector"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        grace = ctx.config.engine.termination_grace_ticks

        for pod in list(state.pods):
            deleted_at = pod.metadata.deletion_timestamp
            if deleted_at is not None and state.tick - deleted_at >= grace:
                self._purge(state, pod)

        for rs in list(state.replica_sets):
            if rs.metadata.terminating and not state.matching_pods(rs.spec.selector, rs.metadata.namespace):
                self._purge(state, rs)

        for job in list(state.jobs):
            if job.metadata.terminating and not state.matching_pods(job_selector(job), job.metadata.namespace):
                self._purge(state, job)

        for ds in list(state.daemon_sets):
            if ds.metadata.terminating and not state.matching_pods(ds.spec.selector, ds.metadata.namespace):
                self._purge(state, ds)

        for sts in list(state.stateful_sets):
            if sts.metadata.terminating and not state.matching_pods(sts.spec.selector, sts.metadata.namespace):
                self._purge(state, sts)

        # A claim stays while a live pod still mounts it.
        for claim in list(state.persistent_volume_claims):
            if claim.metadata.terminating and not _claim_in_use(state, claim):
                self._purge(state, claim)

        for dep in list(state.deployments):
            if dep.metadata.terminating and not any(controlled_by(rs, dep) for rs in state.replica_sets):
                self._purge(state, dep)

        for cj in list(state.cron_jobs):
            if cj.metadata.terminating and not any(
                j.metadata.labels.get(CRONJOB_NAME_LABEL) == cj.metadata.name for j in state.jobs
            ):
                self._purge(state, cj)

        # Namespaces, services, config and storage objects have no dependents to wait for.
        for kind in _INDEPENDENT_KINDS:
            for obj in list(state.collection(kind)):
                if obj.metadata.terminating:
                    self._purge(state, obj)

        state.refresh_node_allocations()

    def _purge(self, state: ClusterState, obj: Any) -> None:
        state.remove(obj)
        _logger.debug("object_removed", kind=obj.kind, name=obj.metadata.name)
