"""HorizontalPodAutoscaler controller.

Each evaluation averages ``cpu_usage`` over the target's live, running pods
and computes::

    desired = clamp(ceil(current * avg / target), min, max)

Recommendations are kept in the HPA status. Scale-up takes the lowest of the
last ``up_window + 1`` recommendations (immediate with a zero window); scale-down
waits until the down window is full and then goes no lower than the highest
recommendation it holds, so a short dip never shrinks the workload.
"""

from __future__ import annotations

import math

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.models.config import HPAConfig
from kubesim.models.resources import Deployment, HorizontalPodAutoscaler, PodPhase, ReplicaSet, StatefulSet
from kubesim.observability.logging import get_logger
from kubesim.store.cluster import ClusterState

_logger = get_logger("hpa_controller")

_SCALABLE_KINDS = ("Deployment", "ReplicaSet", "StatefulSet")


def desired_replicas(current: int, average: float, target: int, minimum: int, maximum: int) -> int:
    """The raw autoscaling formula, clamped to ``[minimum, maximum]``."""
    # Round before ceil: 3.0000000001 must stay 3.
    raw = math.ceil(round(current * average / target, 6))
    return max(minimum, min(maximum, raw))


def stabilize(current: int, recommendations: list[int], config: HPAConfig) -> int:
    """Apply the scale-up / scale-down windows to the newest recommendation."""
    latest = recommendations[-1]
    if latest > current:
        window = recommendations[-(config.upscale_window + 1) :]
        return max(current, min(window))
    if latest < current:
        if config.downscale_window == 0:
            return latest
        if len(recommendations) < config.downscale_window:
            return current
        window = recommendations[-config.downscale_window :]
        return min(current, max(window))
    return current


class HPAController(Controller):
    name = "hpa_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for hpa in state.hpas:
            if hpa.metadata.terminating:
                continue
            self._evaluate(state, ctx, hpa)

    def _evaluate(self, state: ClusterState, ctx: ReconcileContext, hpa: HorizontalPodAutoscaler) -> None:
        ref = hpa.spec.scale_target_ref
        target: Deployment | ReplicaSet | StatefulSet | None = None
        if ref.kind in _SCALABLE_KINDS:
            target = state.find(ref.kind, ref.name, hpa.metadata.namespace)
        if target is None or target.metadata.terminating:
            if hpa.status.able_to_scale:
                hpa.status.able_to_scale = False
                self._warning(state, "FailedGetScale", hpa, f'Unable to find target {ref.kind} "{ref.name}"')
                _logger.warning("hpa_target_missing", hpa=hpa.metadata.name, kind=ref.kind, target=ref.name)
            return
        hpa.status.able_to_scale = True

        current = target.spec.replicas
        hpa.status.current_replicas = current
        samples = [
            p.status.cpu_usage
            for p in state.live_matching_pods(target.spec.selector, target.metadata.namespace)
            if p.status.phase == PodPhase.RUNNING and p.status.cpu_usage is not None
        ]
        if not samples or hpa.spec.target_cpu_utilization_percentage <= 0:
            hpa.status.current_cpu_utilization_percentage = None
            return

        average = sum(samples) / len(samples)
        desired = desired_replicas(
            current,
            average,
            hpa.spec.target_cpu_utilization_percentage,
            hpa.spec.min_replicas,
            hpa.spec.max_replicas,
        )
        hpa.status.current_cpu_utilization_percentage = round(average)
        hpa.status.desired_replicas = desired

        config = ctx.config.hpa
        history = max(config.upscale_window + 1, config.downscale_window, 1)
        hpa.status.recommendations = (hpa.status.recommendations + [desired])[-history:]

        new_size = stabilize(current, hpa.status.recommendations, config)
        if new_size == current:
            return

        target.spec.replicas = new_size
        hpa.status.last_scale_tick = state.tick
        self._scaled(target)
        direction = "above" if new_size > current else "below"
        self._normal(
            state,
            "SuccessfulRescale",
            hpa,
            f"New size: {new_size}; reason: cpu resource utilization (percentage of request) {direction} target",
        )
        _logger.info(
            "hpa_rescale",
            hpa=hpa.metadata.name,
            target=ref.name,
            current=current,
            new_size=new_size,
            avg_cpu=round(average, 1),
        )
