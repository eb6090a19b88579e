"""Pod lifecycle, the node agent's half of the control loop.

Advances pods through Pending -> Running -> Succeeded/Failed once they are
bound, resolves ConfigMap/Secret references at admission and simulates the
scenario-injected failure classes. Failures are written to ``status.reason``
and surfaced as Warning events; nothing here raises.
"""

from __future__ import annotations

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.models.events import EventType
from kubesim.models.resources import FailureMode, Pod, PodPhase, PodReason, RestartPolicy
from kubesim.observability.logging import get_logger
from kubesim.store.cluster import ClusterState

_logger = get_logger("kubelet")

_MAX_CRASH_BACKOFF_TICKS = 4


# ---------------------------------------------------------------------------
# Failure transitions
# ---------------------------------------------------------------------------


def _fail_image_pull(state: ClusterState, pod: Pod) -> None:
    pod.status.phase = PodPhase.PENDING
    pod.status.reason = PodReason.IMAGE_PULL_ERROR
    pod.status.message = f'Failed to pull image "{pod.spec.image}"'
    pod.status.ready = False
    pod.spec.logs.append(f'[error] Failed to pull image "{pod.spec.image}": image not found')
    state.record_event(
        EventType.WARNING,
        "Failed",
        pod.kind,
        pod.metadata.name,
        f'Error: ImagePullError - image "{pod.spec.image}" not found',
    )


def _crash(state: ClusterState, pod: Pod) -> None:
    pod.status.phase = PodPhase.RUNNING
    pod.status.reason = PodReason.CRASH_LOOP_BACK_OFF
    pod.status.message = "Back-off restarting failed container"
    pod.status.ready = False
    pod.status.restart_count += 1
    pod.status.last_crash_tick = state.tick
    pod.spec.logs.extend(["[fatal] Process exited with code 1", "[error] Back-off restarting failed container"])
    state.record_event(
        EventType.WARNING,
        "BackOff",
        pod.kind,
        pod.metadata.name,
        f"Back-off restarting failed container (restart count: {pod.status.restart_count})",
    )


def _terminate(state: ClusterState, pod: Pod, reason: PodReason, message: str) -> None:
    pod.status.phase = PodPhase.FAILED
    pod.status.reason = reason
    pod.status.message = message
    pod.status.ready = False
    pod.status.restart_count += 1
    state.record_event(EventType.WARNING, reason.value, pod.kind, pod.metadata.name, message)
    # Long-running pods are evicted so their controller replaces them; job pods
    # stay for the job controller to account for.
    if pod.spec.restart_policy == RestartPolicy.ALWAYS:
        state.mark_deleted(pod)


def _oom_kill(state: ClusterState, pod: Pod) -> None:
    pod.spec.logs.append("[fatal] Container killed: OOMKilled, memory limit exceeded")
    _terminate(state, pod, PodReason.OOM_KILLED, "Container exceeded memory limit")


def _error_exit(state: ClusterState, pod: Pod) -> None:
    pod.spec.logs.append("[fatal] Process exited with code 1")
    _terminate(state, pod, PodReason.ERROR, "Container exited with code 1")


def inject_failure(state: ClusterState, pod: Pod, mode: FailureMode) -> None:
    """Push ``pod`` into a failure class, whatever phase it is in now.

    Scenario hooks call this to stage debugging exercises. The pod keeps the
    failure mode, so later ticks continue to simulate it.
    """
    pod.spec.failure_mode = mode
    if mode == FailureMode.IMAGE_PULL_ERROR:
        _fail_image_pull(state, pod)
    elif mode == FailureMode.CRASH_LOOP_BACK_OFF:
        _crash(state, pod)
    elif mode == FailureMode.OOM_KILLED:
        _oom_kill(state, pod)
    else:
        _error_exit(state, pod)
    _logger.info("failure_injected", pod=pod.metadata.name, mode=mode.value)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class Kubelet(Controller):
    name = "kubelet"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        node_less = not state.nodes
        for pod in state.pods:
            if pod.metadata.terminating or pod.finished:
                continue
            if pod.status.phase == PodPhase.PENDING and pod.spec.failure_mode is None:
                rule = ctx.failure_rules.get(pod.spec.image)
                if rule is not None:
                    pod.spec.failure_mode = FailureMode(rule)
            if not pod.spec.node_name and not node_less:
                continue
            self._sync_pod(state, pod)

    def _sync_pod(self, state: ClusterState, pod: Pod) -> None:
        tick = state.tick
        started_long_enough = tick > pod.status.tick_created

        if pod.status.phase == PodPhase.PENDING and pod.spec.failure_mode is None:
            missing = self._missing_reference(state, pod)
            if missing is not None:
                if pod.status.reason != PodReason.CREATE_CONTAINER_CONFIG_ERROR:
                    pod.status.reason = PodReason.CREATE_CONTAINER_CONFIG_ERROR
                    pod.status.message = missing
                    pod.spec.logs.append(f"[error] {missing}")
                    self._warning(state, "Failed", pod, f"CreateContainerConfigError: {missing}")
                    _logger.info("pod_config_error", pod=pod.metadata.name, missing=missing)
                return
            if pod.status.reason == PodReason.CREATE_CONTAINER_CONFIG_ERROR:
                pod.status.reason = None
                pod.status.message = None
                pod.spec.logs.append("[info] Dependencies resolved, starting container")

        mode = pod.spec.failure_mode
        if mode == FailureMode.IMAGE_PULL_ERROR:
            if pod.status.reason != PodReason.IMAGE_PULL_ERROR:
                _fail_image_pull(state, pod)
            return

        if mode is not None:
            if pod.status.phase == PodPhase.PENDING:
                if started_long_enough:
                    pod.status.phase = PodPhase.RUNNING
                    pod.status.reason = None
                    pod.status.start_tick = tick
                    pod.spec.logs.append(f"[startup] Container started with image {pod.spec.image}")
                return
            if mode == FailureMode.CRASH_LOOP_BACK_OFF:
                self._crash_loop(state, pod)
            elif mode == FailureMode.OOM_KILLED:
                _oom_kill(state, pod)
            else:
                _error_exit(state, pod)
            return

        if pod.status.phase == PodPhase.RUNNING and pod.spec.completion_ticks is not None:
            if tick - pod.status.tick_created >= pod.spec.completion_ticks:
                pod.status.phase = PodPhase.SUCCEEDED
                pod.status.reason = PodReason.COMPLETED
                pod.status.ready = False
                pod.spec.logs.append("[info] Task completed successfully, exit code 0")
                self._normal(state, "Completed", pod, "Pod completed successfully")
            return

        if pod.status.phase == PodPhase.PENDING and pod.status.reason is None and started_long_enough:
            pod.status.phase = PodPhase.RUNNING
            pod.status.ready = True
            pod.status.start_tick = tick
            pod.spec.logs.extend(
                [f"[startup] Container started with image {pod.spec.image}", "[info] Listening on port 8080"]
            )
            self._normal(state, "Started", pod, f'Started container with image "{pod.spec.image}"')
            _logger.debug("pod_started", pod=pod.metadata.name, node=pod.spec.node_name)

    def _crash_loop(self, state: ClusterState, pod: Pod) -> None:
        if pod.status.reason != PodReason.CRASH_LOOP_BACK_OFF:
            _crash(state, pod)
            return
        backoff = min(max(pod.status.restart_count, 1), _MAX_CRASH_BACKOFF_TICKS)
        last_crash = pod.status.last_crash_tick if pod.status.last_crash_tick is not None else state.tick
        if state.tick - last_crash >= backoff:
            pod.status.reason = None
            pod.status.message = None
            pod.spec.logs.append(f"[startup] Container restarted with image {pod.spec.image}")

    @staticmethod
    def _missing_reference(state: ClusterState, pod: Pod) -> str | None:
        for ref in pod.spec.env_from:
            if state.find(ref.kind, ref.name, pod.metadata.namespace) is None:
                return f'{ref.kind.lower()} "{ref.name}" not found'
        return None
