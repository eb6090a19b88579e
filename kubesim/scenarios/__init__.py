"""Built-in scenarios, looked up by name."""

from __future__ import annotations

from collections.abc import Callable

from kubesim.engine.scenario import Scenario
from kubesim.errors import ScenarioNotFoundError
from kubesim.scenarios.autoscaling import cluster_autoscaling, hpa
from kubesim.scenarios.configuration import configmaps
from kubesim.scenarios.storage import statefulsets
from kubesim.scenarios.workloads import daemonsets, jobs, replicaset_adoption, replicasets, rolling_update

SCENARIOS: dict[str, Callable[[], Scenario]] = {
    "cluster-autoscaling": cluster_autoscaling,
    "configmaps": configmaps,
    "daemonsets": daemonsets,
    "hpa": hpa,
    "jobs": jobs,
    "replicaset-adoption": replicaset_adoption,
    "replicasets": replicasets,
    "rolling-update": rolling_update,
    "statefulsets": statefulsets,
}


def get_scenario(name: str) -> Scenario:
    """Return a fresh instance of the named scenario."""
    try:
        factory = SCENARIOS[name]
    except KeyError:
        raise ScenarioNotFoundError(name, sorted(SCENARIOS)) from None
    return factory()


def list_scenarios() -> list[Scenario]:
    return [SCENARIOS[name]() for name in sorted(SCENARIOS)]
