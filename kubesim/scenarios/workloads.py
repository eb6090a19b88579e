"""Workload scenarios: replica sets, rollouts, daemon sets and jobs."""

from __future__ import annotations

from kubesim.engine.scenario import Goal, SimpleScenario, StateCheck
from kubesim.models.resources import JOB_NAME_LABEL, PodPhase, PodReason, PodSpec, PodTemplate
from kubesim.observability.logging import get_logger
from kubesim.scenarios.fixtures import running_pods, seed_deployment, seed_nodes, seed_replica_set
from kubesim.store.cluster import ClusterState

_logger = get_logger("scenarios")


def _used(command: str) -> StateCheck:
    return lambda s: command in s.commands_used


# ---------------------------------------------------------------------------
# replicasets
# ---------------------------------------------------------------------------


def _replicasets_state() -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 3)
    seed_deployment(state, "my-app", "nginx:1.0", 3)
    return state


def _scaled_back_down(state: ClusterState) -> bool:
    dep = state.find("Deployment", "my-app")
    if dep is None or dep.spec.replicas != 2:
        return False
    return len(running_pods(state, dep.spec.selector)) == 2


def replicasets() -> SimpleScenario:
    return SimpleScenario(
        name="replicasets",
        description='Scale the "my-app" Deployment up to 5 replicas and back down to 2.',
        build=_replicasets_state,
        goals=[
            Goal('Use "kubectl scale" to change replica count', _used("scale")),
            Goal(
                'Scale "my-app" up to 5 replicas',
                lambda s: any(d.metadata.name == "my-app" and d.spec.replicas >= 5 for d in s.deployments),
            ),
            Goal('Scale "my-app" back down to 2 replicas', _scaled_back_down),
        ],
    )


def _adoption_state() -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 2)
    selector = {"app": "web-app"}
    template = PodTemplate(labels=dict(selector), spec=PodSpec(image="nginx:1.0"))
    seed_replica_set(state, "web-app", template, 2, selector)
    return state


def _trimmed_to_two(state: ClusterState) -> bool:
    selector = {"app": "web-app"}
    return len(state.live_matching_pods(selector)) == 2 and len(running_pods(state, selector)) == 2


def replicaset_adoption() -> SimpleScenario:
    return SimpleScenario(
        name="replicaset-adoption",
        description=(
            'A ReplicaSet selects app=web-app. Create a standalone pod, give it the same '
            "label and watch the ReplicaSet adopt it and trim the excess."
        ),
        build=_adoption_state,
        goals=[
            Goal('Use "kubectl get pods" to see the current pods', _used("get-pods")),
            Goal('Create a standalone pod named "extra"', _used("create-pod")),
            Goal('Label the pod with "kubectl label pod extra app=web-app"', _used("label")),
            Goal("ReplicaSet trims back to 2 Running pods", _trimmed_to_two),
        ],
    )


# ---------------------------------------------------------------------------
# rolling-update
# ---------------------------------------------------------------------------

_NEW_IMAGE = "web-app:2.0"


def _rolling_update_state() -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 3)
    seed_deployment(state, "web", "web-app:1.0", 3)
    return state


def _rolled_out(state: ClusterState) -> bool:
    dep = state.find("Deployment", "web")
    if dep is None or dep.spec.template.spec.image != _NEW_IMAGE:
        return False
    pods = state.live_matching_pods(dep.spec.selector)
    return (
        len(pods) == dep.spec.replicas
        and all(p.spec.image == _NEW_IMAGE and p.status.phase == PodPhase.RUNNING for p in pods)
    )


def rolling_update() -> SimpleScenario:
    return SimpleScenario(
        name="rolling-update",
        description=f'Roll the "web" Deployment forward to {_NEW_IMAGE} without dropping below capacity.',
        build=_rolling_update_state,
        goals=[
            Goal(
                f'Set the "web" image to {_NEW_IMAGE}',
                lambda s: any(
                    d.metadata.name == "web" and d.spec.template.spec.image == _NEW_IMAGE for d in s.deployments
                ),
            ),
            Goal(f'Every "web" pod Running {_NEW_IMAGE}', _rolled_out),
        ],
    )


# ---------------------------------------------------------------------------
# daemonsets
# ---------------------------------------------------------------------------


def _daemonsets_state() -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 3)
    return state


def _one_pod_per_node(state: ClusterState) -> bool:
    ds = state.find("DaemonSet", "log-collector")
    if ds is None:
        return False
    ready_nodes = [n for n in state.nodes if n.ready and not n.metadata.terminating]
    if not ready_nodes:
        return False
    pods = running_pods(state, ds.spec.selector, ds.metadata.namespace)
    placed = [p.spec.node_name for p in pods]
    return all(placed.count(n.metadata.name) == 1 for n in ready_nodes)


def daemonsets() -> SimpleScenario:
    return SimpleScenario(
        name="daemonsets",
        description='Run a "log-collector" DaemonSet so every node gets exactly one collector pod.',
        build=_daemonsets_state,
        goals=[
            Goal(
                'Use "kubectl create daemonset" or "kubectl apply" to create the DaemonSet',
                lambda s: "create-daemonset" in s.commands_used or "apply" in s.commands_used,
            ),
            Goal(
                'Create a DaemonSet named "log-collector"',
                lambda s: s.find("DaemonSet", "log-collector") is not None,
            ),
            Goal("One Running pod on every Ready node", _one_pod_per_node),
        ],
    )


# ---------------------------------------------------------------------------
# jobs
# ---------------------------------------------------------------------------

_JOB_NAME = "data-migration"


def _jobs_state() -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 2, capacity=5)
    return state


def fail_one_job_pod(tick: int, state: ClusterState) -> ClusterState | None:
    """At tick 2 one running migration pod dies, exercising job retries."""
    if tick != 2:
        return None
    victims = [
        p
        for p in state.pods
        if p.metadata.labels.get(JOB_NAME_LABEL) == _JOB_NAME
        and p.status.phase == PodPhase.RUNNING
        and not p.metadata.terminating
    ]
    if not victims:
        return None
    victim = victims[0]
    victim.status.phase = PodPhase.FAILED
    victim.status.reason = PodReason.ERROR
    victim.status.ready = False
    victim.spec.logs.extend(["[error] Connection reset by peer", "[fatal] Process exited with code 1"])
    _logger.info("job_pod_failed", tick=tick, pod=victim.metadata.name)
    return state


def _job_succeeded(state: ClusterState) -> bool:
    job = state.find("Job", _JOB_NAME)
    return job is not None and job.status.succeeded >= 3


def jobs() -> SimpleScenario:
    return SimpleScenario(
        name="jobs",
        description=f'Run the "{_JOB_NAME}" Job to 3 successful completions, surviving a pod failure.',
        build=_jobs_state,
        hook=fail_one_job_pod,
        goals=[
            Goal(
                'Use "kubectl create job" or "kubectl apply" to create the Job',
                lambda s: "create-job" in s.commands_used or "apply" in s.commands_used,
            ),
            Goal(
                f'Create a Job named "{_JOB_NAME}" with 3 completions',
                lambda s: any(j.metadata.name == _JOB_NAME and j.spec.completions == 3 for j in s.jobs),
            ),
            Goal("Job reaches 3/3 successful completions", _job_succeeded),
        ],
    )
