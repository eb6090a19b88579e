"""Tests for kubesim.controllers.job: Job and CronJob reconciliation."""

from __future__ import annotations

import pytest

from kubesim.controllers.job import (
    CronJobController,
    JobController,
    backoff_ticks,
    job_selector,
    parse_schedule,
)
from kubesim.models.resources import (
    CRONJOB_NAME_LABEL,
    JOB_NAME_LABEL,
    ConcurrencyPolicy,
    CronJob,
    CronJobSpec,
    Job,
    JobPhase,
    JobSpec,
    Pod,
    PodPhase,
    PodReason,
    PodSpec,
    PodTemplate,
    RestartPolicy,
)
from kubesim.store.builders import build_pod
from kubesim.store.cluster import ClusterState

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _job_spec(**kwargs: object) -> JobSpec:
    return JobSpec(template=PodTemplate(spec=PodSpec(image="busybox")), **kwargs)  # type: ignore[arg-type]


def _state_with_job(**kwargs: object) -> ClusterState:
    state = ClusterState()
    state.add(Job(metadata=state.new_meta("Job", "batch"), spec=_job_spec(**kwargs)))
    return state


def _job(state: ClusterState) -> Job:
    return state.jobs[0]


def _pods(state: ClusterState) -> list[Pod]:
    return state.matching_pods({JOB_NAME_LABEL: "batch"})


def _finish_live(state: ClusterState, phase: PodPhase, count: int = 1) -> None:
    for pod in [p for p in _pods(state) if p.live][:count]:
        pod.status.phase = phase


def _cron_state(schedule: str = "*/2 * * * *", **kwargs: object) -> ClusterState:
    state = ClusterState()
    spec = CronJobSpec(schedule=schedule, job_template=_job_spec(), **kwargs)  # type: ignore[arg-type]
    state.add(CronJob(metadata=state.new_meta("CronJob", "backup"), spec=spec))
    return state


def _cron_job(state: ClusterState, name: str, phase: JobPhase = JobPhase.RUNNING) -> Job:
    job = Job(metadata=state.new_meta("Job", name, labels={CRONJOB_NAME_LABEL: "backup"}), spec=_job_spec())
    job.status.phase = phase
    state.add(job)
    return job


def _live_job_names(state: ClusterState) -> list[str]:
    return [j.metadata.name for j in state.jobs if not j.metadata.terminating]


# ---------------------------------------------------------------------------
# Schedules and backoff
# ---------------------------------------------------------------------------


class TestParseSchedule:
    @pytest.mark.parametrize(
        ("schedule", "expected"),
        [
            ("*/3 * * * *", 3),
            ("* * * * *", 1),
            ("4 * * * *", 4),
            ("every-4-ticks", 4),
            ("every-1-tick", 1),
        ],
    )
    def test_supported_forms(self, schedule: str, expected: int) -> None:
        assert parse_schedule(schedule) == expected

    def test_unparseable_falls_back_to_default(self) -> None:
        assert parse_schedule("@hourly", default=7) == 7

    def test_zero_minute_falls_back_to_default(self) -> None:
        assert parse_schedule("0 * * * *") == 5


class TestBackoffTicks:
    def test_no_failures_no_delay(self) -> None:
        assert backoff_ticks(0, 1, 6) == 0

    def test_doubles_per_failure(self) -> None:
        assert [backoff_ticks(n, 1, 6) for n in (1, 2, 3)] == [1, 2, 4]

    def test_capped(self) -> None:
        assert backoff_ticks(5, 1, 6) == 6


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


class TestJobController:
    def test_creates_parallelism_pods(self) -> None:
        out = JobController().run(_state_with_job(completions=3, parallelism=2)).state
        pods = _pods(out)
        assert len(pods) == 2
        assert all(p.spec.restart_policy == RestartPolicy.NEVER for p in pods)
        assert all(p.metadata.labels == job_selector(_job(out)) for p in pods)
        assert _job(out).status.active == 2
        assert _job(out).status.start_tick == 0

    def test_never_exceeds_remaining_completions(self) -> None:
        out = JobController().run(_state_with_job(completions=1, parallelism=4)).state
        assert len(_pods(out)) == 1

    def test_success_counted_once_and_refilled(self) -> None:
        state = JobController().run(_state_with_job(completions=3, parallelism=2)).state
        _finish_live(state, PodPhase.SUCCEEDED)
        state = JobController().run(state).state
        state = JobController().run(state).state
        job = _job(state)
        assert job.status.succeeded == 1
        assert job.status.active == 2

    def test_completes_after_enough_successes(self) -> None:
        state = JobController().run(_state_with_job(completions=2, parallelism=2)).state
        _finish_live(state, PodPhase.SUCCEEDED, count=2)
        result = JobController().run(state)
        job = _job(result.state)
        assert job.status.phase == JobPhase.COMPLETE
        assert job.status.completion_tick == 0
        assert "Completed" in [e.reason for e in result.events]

    def test_backoff_limit_fails_job(self) -> None:
        state = _state_with_job(backoff_limit=1)
        state = JobController().run(state).state
        _finish_live(state, PodPhase.FAILED)
        result = JobController().run(state)
        assert _job(result.state).status.phase == JobPhase.FAILED
        assert "BackoffLimitExceeded" in [e.reason for e in result.events]

    def test_zero_backoff_limit_waits_for_a_failure(self) -> None:
        result = JobController().run(_state_with_job(backoff_limit=0))
        assert not _job(result.state).finished
        assert "BackoffLimitExceeded" not in [e.reason for e in result.events]
        assert len(_pods(result.state)) == 1

        state = result.state
        _finish_live(state, PodPhase.FAILED)
        result = JobController().run(state)
        job = _job(result.state)
        assert job.status.phase == JobPhase.FAILED
        assert job.status.failed == 1
        assert "BackoffLimitExceeded" in [e.reason for e in result.events]

    def test_completion_wins_over_failure_in_same_pass(self) -> None:
        state = _state_with_job(completions=1, backoff_limit=1)
        template = _job(state).spec.template
        for name, phase in (("ok", PodPhase.SUCCEEDED), ("bad", PodPhase.FAILED)):
            pod = build_pod(state, name, template, labels={JOB_NAME_LABEL: "batch"})
            pod.status.phase = phase
            state.add(pod)
        assert _job(JobController().run(state).state).status.phase == JobPhase.COMPLETE

    def test_failure_delays_replacement(self) -> None:
        state = JobController().run(_state_with_job(backoff_limit=6)).state
        _finish_live(state, PodPhase.FAILED)
        state = JobController().run(state).state
        assert _job(state).status.next_attempt_tick == 1
        assert [p for p in _pods(state) if p.live] == []
        state.tick = 1
        state = JobController().run(state).state
        assert len([p for p in _pods(state) if p.live]) == 1

    def test_on_failure_restarts_in_place(self) -> None:
        state = JobController().run(_state_with_job(restart_policy=RestartPolicy.ON_FAILURE)).state
        _finish_live(state, PodPhase.FAILED)
        state = JobController().run(state).state
        [pod] = _pods(state)
        assert pod.status.phase == PodPhase.PENDING
        assert _job(state).status.failed == 1

    def test_evicted_on_failure_pod_is_deleted(self) -> None:
        state = JobController().run(_state_with_job(restart_policy=RestartPolicy.ON_FAILURE)).state
        [pod] = _pods(state)
        pod.status.phase = PodPhase.FAILED
        pod.status.reason = PodReason.NODE_NOT_READY
        state = JobController().run(state).state
        [evicted] = _pods(state)
        assert evicted.metadata.terminating
        assert _job(state).status.failed == 1

    def test_finished_job_is_left_alone(self) -> None:
        state = _state_with_job()
        _job(state).status.phase = JobPhase.COMPLETE
        assert JobController().run(state).mutations == []

    def test_deleted_job_removes_pods(self) -> None:
        state = JobController().run(_state_with_job(parallelism=2, completions=2)).state
        state.mark_deleted(_job(state))
        out = JobController().run(state).state
        assert all(p.metadata.terminating for p in _pods(out))


# ---------------------------------------------------------------------------
# CronJob
# ---------------------------------------------------------------------------


class TestCronJobController:
    def test_does_not_fire_at_tick_zero(self) -> None:
        assert CronJobController().run(_cron_state()).state.jobs == []

    def test_fires_on_interval(self) -> None:
        state = _cron_state()
        state.tick = 2
        result = CronJobController().run(state)
        [job] = result.state.jobs
        assert job.metadata.name == "backup-2"
        assert job.metadata.labels[CRONJOB_NAME_LABEL] == "backup"
        assert result.state.cron_jobs[0].status.last_schedule_tick == 2
        assert result.state.cron_jobs[0].status.active == ["backup-2"]

    def test_off_interval_tick_is_quiet(self) -> None:
        state = _cron_state()
        state.tick = 3
        assert CronJobController().run(state).state.jobs == []

    def test_forbid_skips_while_running(self) -> None:
        state = _cron_state(concurrency_policy=ConcurrencyPolicy.FORBID)
        _cron_job(state, "backup-2")
        state.tick = 4
        assert _live_job_names(CronJobController().run(state).state) == ["backup-2"]

    def test_allow_runs_concurrently(self) -> None:
        state = _cron_state()
        _cron_job(state, "backup-2")
        state.tick = 4
        assert _live_job_names(CronJobController().run(state).state) == ["backup-2", "backup-4"]

    def test_replace_deletes_running_job(self) -> None:
        state = _cron_state(concurrency_policy=ConcurrencyPolicy.REPLACE)
        _cron_job(state, "backup-2")
        state.tick = 4
        assert _live_job_names(CronJobController().run(state).state) == ["backup-4"]

    def test_suspended_never_fires(self) -> None:
        state = _cron_state(suspend=True)
        state.tick = 2
        assert CronJobController().run(state).state.jobs == []

    def test_history_pruned_to_limit(self) -> None:
        state = _cron_state(successful_jobs_history_limit=1)
        _cron_job(state, "backup-2", JobPhase.COMPLETE)
        _cron_job(state, "backup-4", JobPhase.COMPLETE)
        state.tick = 5
        assert _live_job_names(CronJobController().run(state).state) == ["backup-4"]
