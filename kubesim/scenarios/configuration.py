"""Configuration scenarios: pods blocked on a missing ConfigMap."""

from __future__ import annotations

from kubesim.engine.scenario import Goal, SimpleScenario
from kubesim.models.resources import EnvFromSource
from kubesim.scenarios.fixtures import running_pods, seed_deployment, seed_nodes
from kubesim.store.cluster import ClusterState

_CONFIG_NAME = "app-config"


def _configmaps_state() -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 2)
    seed_deployment(
        state,
        "web",
        "web-app:1.0",
        2,
        env_from=[EnvFromSource(kind="ConfigMap", name=_CONFIG_NAME)],
        running=False,
    )
    return state


def _has_log_level(state: ClusterState) -> bool:
    cm = state.find("ConfigMap", _CONFIG_NAME)
    return cm is not None and cm.data.get("LOG_LEVEL") == "info"


def configmaps() -> SimpleScenario:
    return SimpleScenario(
        name="configmaps",
        description=(
            f'The "web" pods read their environment from ConfigMap "{_CONFIG_NAME}", which does not exist. '
            "Create it and the pods start."
        ),
        build=_configmaps_state,
        goals=[
            Goal("Create the missing ConfigMap", lambda s: "create-configmap" in s.commands_used),
            Goal(f'ConfigMap "{_CONFIG_NAME}" has key LOG_LEVEL=info', _has_log_level),
            Goal('All "web" pods Running (no longer stuck)', lambda s: len(running_pods(s, {"app": "web"})) >= 2),
        ],
    )
