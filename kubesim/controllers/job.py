"""Job and CronJob controllers.

A Job keeps up to ``parallelism`` pods active until ``completions`` pods
have succeeded. Every finished attempt is recorded by identity in the Job's
status, so a pod is never counted twice no matter how many ticks it stays
around. Reaching ``backoffLimit`` failures first makes the Job terminally
Failed; successes recorded so far are kept.

A CronJob stamps out Jobs on a tick-based schedule, honouring its
concurrency policy and pruning finished Jobs beyond its history limits.
"""

from __future__ import annotations

import copy
import re

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.models.resources import (
    CRONJOB_NAME_LABEL,
    JOB_NAME_LABEL,
    ConcurrencyPolicy,
    CronJob,
    Job,
    JobPhase,
    Pod,
    PodPhase,
    PodReason,
    RestartPolicy,
)
from kubesim.observability.logging import get_logger
from kubesim.store.builders import build_pod
from kubesim.store.cluster import ClusterState

_logger = get_logger("job_controller")

_LEGACY_SCHEDULE = re.compile(r"^every-(\d+)-ticks?$")
_STEP_FIELD = re.compile(r"^\*/(\d+)$")


def parse_schedule(schedule: str, default: int = 5) -> int:
    """Return the firing interval, in ticks, for a schedule string.

    Only the first (minute) field of a cron expression is honoured: ``*``
    fires every tick, ``*/N`` and a bare ``N`` every N ticks. The legacy
    ``every-N-ticks`` form is also accepted. Anything else falls back to
    ``default``.
    """
    text = schedule.strip()
    legacy = _LEGACY_SCHEDULE.match(text)
    if legacy:
        return max(1, int(legacy.group(1)))
    fields = text.split()
    if fields:
        minute = fields[0]
        if minute == "*":
            return 1
        step = _STEP_FIELD.match(minute)
        if step:
            return max(1, int(step.group(1)))
        if minute.isdigit() and int(minute) > 0:
            return int(minute)
    return default


def job_selector(job: Job) -> dict[str, str]:
    return {JOB_NAME_LABEL: job.metadata.name}


def backoff_ticks(failures: int, base: int, maximum: int) -> int:
    if failures <= 0:
        return 0
    return min(base * 2 ** (failures - 1), maximum)


class JobController(Controller):
    name = "job_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for job in state.jobs:
            pods = state.matching_pods(job_selector(job), job.metadata.namespace)
            if job.metadata.terminating:
                for pod in pods:
                    if not pod.metadata.terminating:
                        self._deleted(state, pod)
                continue
            if job.finished:
                continue
            self._sync(state, ctx, job, pods)

    def _sync(self, state: ClusterState, ctx: ReconcileContext, job: Job, pods: list[Pod]) -> None:
        status = job.status
        if status.start_tick is None:
            status.start_tick = state.tick

        new_failures = self._account(state, job, pods)
        status.succeeded = len(status.succeeded_pods)
        status.failed = len(status.failed_pods)

        if status.succeeded >= job.spec.completions:
            self._finish(state, job, pods, JobPhase.COMPLETE)
            self._normal(state, "Completed", job, f"Job completed: {status.succeeded}/{job.spec.completions} succeeded")
            _logger.info("job_complete", job=job.metadata.name, succeeded=status.succeeded, failed=status.failed)
            return

        if status.failed > 0 and status.failed >= job.spec.backoff_limit:
            self._finish(state, job, pods, JobPhase.FAILED)
            self._warning(
                state,
                "BackoffLimitExceeded",
                job,
                f"Job has reached the specified backoff limit ({job.spec.backoff_limit})",
            )
            _logger.warning("job_failed", job=job.metadata.name, succeeded=status.succeeded, failed=status.failed)
            return

        if new_failures:
            delay = backoff_ticks(status.failed, ctx.config.job.backoff_base_ticks, ctx.config.job.backoff_max_ticks)
            status.next_attempt_tick = state.tick + delay
            _logger.info("job_backoff", job=job.metadata.name, failed=status.failed, retry_at=status.next_attempt_tick)

        active = [p for p in pods if p.live]
        wanted = min(job.spec.parallelism, job.spec.completions - status.succeeded)
        if len(active) < wanted and state.tick >= status.next_attempt_tick:
            for _ in range(wanted - len(active)):
                self._create_pod(state, job)

        status.active = sum(1 for p in state.matching_pods(job_selector(job), job.metadata.namespace) if p.live)

    def _account(self, state: ClusterState, job: Job, pods: list[Pod]) -> int:
        """Record newly finished attempts; return how many failed."""
        status = job.status
        failures = 0
        for pod in pods:
            if pod.status.phase == PodPhase.SUCCEEDED and pod.metadata.uid not in status.succeeded_pods:
                status.succeeded_pods.append(pod.metadata.uid)
            elif pod.status.phase == PodPhase.FAILED:
                attempt = f"{pod.metadata.uid}:{pod.status.restart_count}"
                if attempt in status.failed_pods:
                    continue
                status.failed_pods.append(attempt)
                failures += 1
                if pod.spec.restart_policy != RestartPolicy.ON_FAILURE or pod.metadata.terminating:
                    continue
                # An evicted pod cannot restart on its node; it is replaced instead.
                if pod.status.reason == PodReason.NODE_NOT_READY:
                    self._deleted(state, pod)
                else:
                    self._restart_in_place(state, pod)
        return failures

    def _restart_in_place(self, state: ClusterState, pod: Pod) -> None:
        pod.status.phase = PodPhase.PENDING
        pod.status.reason = None
        pod.status.message = None
        pod.status.ready = False
        pod.status.tick_created = state.tick
        pod.spec.logs.append(f"[info] Restarting container (restart count: {pod.status.restart_count})")
        self._updated(pod)

    def _finish(self, state: ClusterState, job: Job, pods: list[Pod], phase: JobPhase) -> None:
        job.status.phase = phase
        job.status.completion_tick = state.tick
        for pod in pods:
            if pod.live:
                self._deleted(state, pod)
        job.status.active = 0

    def _create_pod(self, state: ClusterState, job: Job) -> None:
        name = state.generate_name("Pod", job.metadata.name, job.metadata.namespace)
        pod = build_pod(
            state,
            name,
            job.spec.template,
            namespace=job.metadata.namespace,
            labels=job_selector(job),
            owner=job,
            restart_policy=job.spec.restart_policy,
            completion_ticks=job.spec.completion_ticks,
        )
        self._created(state, pod)
        self._normal(state, "SuccessfulCreate", job, f"Created pod: {name}")
        _logger.debug("job_pod_created", job=job.metadata.name, pod=name)


class CronJobController(Controller):
    name = "cronjob_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for cj in state.cron_jobs:
            owned = self._owned_jobs(state, cj)
            if cj.metadata.terminating:
                for job in owned:
                    self._deleted(state, job)
                continue

            interval = parse_schedule(cj.spec.schedule, ctx.config.job.cronjob_default_interval)
            due = state.tick > 0 and state.tick % interval == 0 and cj.status.last_schedule_tick != state.tick
            if due and not cj.spec.suspend:
                self._fire(state, cj, owned)

            self._prune_history(state, cj)
            cj.status.active = [j.metadata.name for j in self._owned_jobs(state, cj) if not j.finished]

    @staticmethod
    def _owned_jobs(state: ClusterState, cj: CronJob) -> list[Job]:
        return [
            j
            for j in state.jobs
            if j.metadata.namespace == cj.metadata.namespace
            and j.metadata.labels.get(CRONJOB_NAME_LABEL) == cj.metadata.name
            and not j.metadata.terminating
        ]

    def _fire(self, state: ClusterState, cj: CronJob, owned: list[Job]) -> None:
        running = [j for j in owned if not j.finished]
        if running and cj.spec.concurrency_policy == ConcurrencyPolicy.FORBID:
            _logger.debug("cronjob_skipped", cronjob=cj.metadata.name, running=len(running))
            return
        if running and cj.spec.concurrency_policy == ConcurrencyPolicy.REPLACE:
            for job in running:
                self._deleted(state, job)
                self._normal(state, "SuccessfulDelete", cj, f"Deleted job: {job.metadata.name}")

        name = f"{cj.metadata.name}-{state.tick}"
        labels = {**cj.spec.job_template.template.labels, CRONJOB_NAME_LABEL: cj.metadata.name}
        job = Job(
            metadata=state.new_meta("Job", name, cj.metadata.namespace, labels, cj),
            spec=copy.deepcopy(cj.spec.job_template),
        )
        self._created(state, job)
        cj.status.last_schedule_tick = state.tick
        self._normal(state, "SuccessfulCreate", cj, f"Created job: {name}")
        _logger.info("cronjob_fired", cronjob=cj.metadata.name, job=name, tick=state.tick)

    def _prune_history(self, state: ClusterState, cj: CronJob) -> None:
        finished = sorted(
            (j for j in self._owned_jobs(state, cj) if j.finished),
            key=lambda j: j.metadata.creation_timestamp,
        )
        succeeded = [j for j in finished if j.status.phase == JobPhase.COMPLETE]
        failed = [j for j in finished if j.status.phase == JobPhase.FAILED]
        for jobs, limit in (
            (succeeded, cj.spec.successful_jobs_history_limit),
            (failed, cj.spec.failed_jobs_history_limit),
        ):
            excess = len(jobs) - max(0, limit)
            for job in jobs[: max(0, excess)]:
                self._deleted(state, job)
                _logger.debug("cronjob_history_pruned", cronjob=cj.metadata.name, job=job.metadata.name)
