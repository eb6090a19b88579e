"""Endpoints controller: keeps Service endpoint lists in sync with ready pods."""

from __future__ import annotations

import hashlib

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.models.resources import Pod
from kubesim.observability.logging import get_logger
from kubesim.store.cluster import ClusterState

_logger = get_logger("endpoints_controller")


def pod_ip(pod: Pod) -> str:
    """Deterministic cluster IP for a pod, derived from its UID."""
    digest = hashlib.sha256(pod.metadata.uid.encode()).digest()
    return f"10.244.{digest[0]}.{digest[1] or 1}"


class EndpointsController(Controller):
    name = "endpoints_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for svc in state.services:
            ready = [
                p for p in state.live_matching_pods(svc.spec.selector, svc.metadata.namespace) if p.is_ready
            ]
            endpoints = sorted(pod_ip(p) for p in ready)
            previous = svc.status.endpoints
            if endpoints == previous:
                continue

            added = [ep for ep in endpoints if ep not in previous]
            removed = [ep for ep in previous if ep not in endpoints]
            svc.status.endpoints = endpoints
            self._updated(svc)
            if added:
                self._normal(state, "EndpointsAdded", svc, f"Added endpoints: {', '.join(added)}")
            if removed:
                self._warning(state, "EndpointsRemoved", svc, f"Removed endpoints: {', '.join(removed)}")
            _logger.debug("endpoints_updated", service=svc.metadata.name, count=len(endpoints))
