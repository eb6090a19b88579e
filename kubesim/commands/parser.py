"""kubectl-like command parsing.

``parse_command`` turns one line of text into a Command. The grammar is the
familiar subset of kubectl::

    [kubectl] ACTION [TYPE[/NAME] | TYPE NAME] [ARGS...] [--flag=value | --flag value | -n NS]

Resource types accept the usual plural forms and short aliases (``po``,
``deploy``, ``rs``, ``svc``, ...). Errors raise CommandParseError; nothing
here touches the cluster.
"""

from __future__ import annotations

import dataclasses
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from kubesim.errors import CommandParseError
from kubesim.models.resources import DEFAULT_NAMESPACE

RESOURCE_ALIASES: dict[str, str] = {
    "pod": "pod",
    "pods": "pod",
    "po": "pod",
    "replicaset": "replicaset",
    "replicasets": "replicaset",
    "rs": "replicaset",
    "deployment": "deployment",
    "deployments": "deployment",
    "deploy": "deployment",
    "daemonset": "daemonset",
    "daemonsets": "daemonset",
    "ds": "daemonset",
    "statefulset": "statefulset",
    "statefulsets": "statefulset",
    "sts": "statefulset",
    "job": "job",
    "jobs": "job",
    "cronjob": "cronjob",
    "cronjobs": "cronjob",
    "cj": "cronjob",
    "horizontalpodautoscaler": "hpa",
    "horizontalpodautoscalers": "hpa",
    "hpa": "hpa",
    "hpas": "hpa",
    "node": "node",
    "nodes": "node",
    "no": "node",
    "namespace": "namespace",
    "namespaces": "namespace",
    "ns": "namespace",
    "configmap": "configmap",
    "configmaps": "configmap",
    "cm": "configmap",
    "secret": "secret",
    "secrets": "secret",
    "service": "service",
    "services": "service",
    "svc": "service",
    "ingress": "ingress",
    "ingresses": "ingress",
    "ing": "ingress",
    "event": "event",
    "events": "event",
    "ev": "event",
    "endpoints": "endpoints",
    "endpoint": "endpoints",
    "ep": "endpoints",
    "persistentvolume": "pv",
    "persistentvolumes": "pv",
    "pv": "pv",
    "pvs": "pv",
    "persistentvolumeclaim": "pvc",
    "persistentvolumeclaims": "pvc",
    "pvc": "pvc",
    "pvcs": "pvc",
    "storageclass": "storageclass",
    "storageclasses": "storageclass",
    "sc": "storageclass",
}

# Canonical resource name -> entity kind stored in ClusterState.
RESOURCE_KINDS: dict[str, str] = {
    "pod": "Pod",
    "replicaset": "ReplicaSet",
    "deployment": "Deployment",
    "daemonset": "DaemonSet",
    "statefulset": "StatefulSet",
    "job": "Job",
    "cronjob": "CronJob",
    "hpa": "HorizontalPodAutoscaler",
    "node": "Node",
    "namespace": "Namespace",
    "configmap": "ConfigMap",
    "secret": "Secret",
    "service": "Service",
    "ingress": "Ingress",
    "pv": "PersistentVolume",
    "pvc": "PersistentVolumeClaim",
    "storageclass": "StorageClass",
}

_PLURALS: dict[str, str] = {
    "pod": "pods",
    "replicaset": "replicasets",
    "deployment": "deployments",
    "daemonset": "daemonsets",
    "statefulset": "statefulsets",
    "job": "jobs",
    "cronjob": "cronjobs",
    "hpa": "hpa",
    "node": "nodes",
    "namespace": "namespaces",
    "configmap": "configmaps",
    "secret": "secrets",
    "service": "services",
    "ingress": "ingresses",
    "event": "events",
    "endpoints": "endpoints",
    "pv": "pv",
    "pvc": "pvc",
    "storageclass": "storageclasses",
}

_RESOURCE_ACTIONS = frozenset({"create", "get", "delete", "scale", "describe"})

# Actions whose first positional names a node directly.
_NODE_ACTIONS = frozenset({"cordon", "uncordon", "drain"})

_SERVICE_TYPES = {"clusterip": "ClusterIP", "nodeport": "NodePort", "loadbalancer": "LoadBalancer"}

_INT_FLAGS = (
    "replicas",
    "min",
    "max",
    "cpu-percent",
    "port",
    "completions",
    "parallelism",
    "backoff-limit",
    "completion-ticks",
    "tail",
)

# Flags that never take a separate value token.
_BOOLEAN_FLAGS = frozenset({"overwrite", "all-namespaces", "force", "ignore-daemonsets"})

_UNSUPPORTED: dict[str, str] = {
    "exec": '"kubectl exec" is not supported. Use "kubectl logs <pod>" to inspect pod output.',
    "port-forward": '"kubectl port-forward" is not supported. Use "kubectl get endpoints" to see service connectivity.',
    "edit": (
        '"kubectl edit" is not supported. '
        'Use "kubectl apply", "kubectl patch" or "kubectl set image" to modify resources.'
    ),
    "attach": '"kubectl attach" is not supported.',
    "cp": '"kubectl cp" is not supported.',
    "proxy": '"kubectl proxy" is not supported.',
    "wait": '"kubectl wait" is not supported. Advance the cluster with "tick" instead.',
    "expose": '"kubectl expose" is not supported. Use "kubectl create service <name> --selector=<sel>" instead.',
}

SUPPORTED_ACTIONS = (
    "create, run, get, delete, scale, describe, apply, label, rollout, autoscale, "
    "set image, patch, cordon, uncordon, drain, taint, logs"
)


@dataclass(frozen=True)
class Command:
    """A parsed command.

    ``flags`` maps a flag name (without dashes) to every value it was given,
    in order; use ``flag`` for the last value. ``args`` holds positional
    tokens after the resource name (label pairs, taint specs, images).
    """

    action: str
    resource: str = ""
    name: str = ""
    namespace: str = DEFAULT_NAMESPACE
    flags: dict[str, list[str]] = field(default_factory=dict)
    args: tuple[str, ...] = ()
    manifest: str = ""

    @property
    def kind(self) -> str:
        """Tag recorded in ``ClusterState.commands_used``."""
        if self.action == "create":
            return f"create-{self.resource}"
        if self.action == "get":
            return f"get-{_PLURALS.get(self.resource, self.resource)}"
        return self.action

    @property
    def entity_kind(self) -> str | None:
        return RESOURCE_KINDS.get(self.resource)

    def flag(self, name: str, default: str | None = None) -> str | None:
        values = self.flags.get(name)
        if not values:
            return default
        return values[-1]

    def flag_values(self, name: str) -> list[str]:
        return list(self.flags.get(name, []))

    def has_flag(self, name: str) -> bool:
        return name in self.flags

    def with_manifest(self, manifest: str) -> Command:
        return dataclasses.replace(self, manifest=manifest)


# ---------------------------------------------------------------------------
# Tokenising helpers
# ---------------------------------------------------------------------------


def normalize_resource(token: str) -> str:
    resource = RESOURCE_ALIASES.get(token.lower())
    if resource is None:
        raise CommandParseError(
            f'Unknown resource type: "{token}". Available: deployment (deploy), replicaset (rs), pod (po), '
            "node (no), service (svc), endpoints (ep), event (ev), namespace (ns), configmap (cm), secret, "
            "ingress (ing), daemonset (ds), statefulset (sts), job, cronjob (cj), hpa, persistentvolume (pv), "
            "persistentvolumeclaim (pvc), storageclass (sc)"
        )
    return resource


def _split_flags(tokens: list[str]) -> tuple[list[str], dict[str, list[str]]]:
    """Separate positional tokens from flags.

    ``--key=value`` and ``--key value`` both set ``key``; a ``--key`` followed
    by another flag (or nothing) is a boolean ``"true"``. Short flags ``-n``,
    ``-o``, ``-f``, ``-l`` and ``-p`` always take a value; ``-A`` is boolean.
    """
    positional: list[str] = []
    flags: dict[str, list[str]] = {}
    short = {"-n": "namespace", "-o": "output", "-f": "filename", "-l": "selector", "-p": "patch"}
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token.startswith("--") and len(token) > 2:
            body = token[2:]
            if "=" in body:
                key, value = body.split("=", 1)
            elif body not in _BOOLEAN_FLAGS and i + 1 < len(tokens) and not tokens[i + 1].startswith("-"):
                key, value = body, tokens[i + 1]
                i += 1
            else:
                key, value = body, "true"
            flags.setdefault(key, []).append(value)
        elif token in short:
            if i + 1 >= len(tokens):
                raise CommandParseError(f"Flag {token} needs a value")
            flags.setdefault(short[token], []).append(tokens[i + 1])
            i += 1
        elif token == "-A":
            flags.setdefault("all-namespaces", []).append("true")
        else:
            positional.append(token)
        i += 1
    return positional, flags


def _target(positional: list[str], action: str) -> tuple[str, str, list[str]]:
    """Read ``TYPE/NAME`` or ``TYPE NAME`` from the front of ``positional``."""
    if not positional:
        raise CommandParseError(f"Usage: kubectl {action} <resource-type> <name>")
    head = positional[0]
    if "/" in head:
        type_token, name = head.split("/", 1)
        return normalize_resource(type_token), name, positional[1:]
    resource = normalize_resource(head)
    if len(positional) < 2:
        return resource, "", []
    return resource, positional[1], positional[2:]


def _int_flag(flags: dict[str, list[str]], name: str) -> None:
    values = flags.get(name)
    if not values:
        return
    value = values[-1]
    if not value.isdigit():
        raise CommandParseError(f"--{name} must be a non-negative integer, got {value!r}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse_command(text: str) -> Command:
    """Parse one command line into a Command."""
    try:
        tokens = shlex.split(text.strip())
    except ValueError as exc:
        raise CommandParseError(f"Could not tokenise command: {exc}", text) from exc
    if tokens and tokens[0] == "kubectl":
        tokens = tokens[1:]
    if not tokens:
        raise CommandParseError("No command entered.", text)

    action = tokens[0].lower()
    if action in _UNSUPPORTED:
        raise CommandParseError(_UNSUPPORTED[action], text)

    positional, flags = _split_flags(tokens[1:])
    namespace = flags.pop("namespace", [DEFAULT_NAMESPACE])[-1]
    for name in _INT_FLAGS:
        _int_flag(flags, name)

    if action == "run":
        if not positional:
            raise CommandParseError("Usage: kubectl run <name> --image=<image>", text)
        return Command("create", "pod", positional[0], namespace, flags)

    if action == "apply":
        return _parse_apply(flags, namespace, text)

    if action == "set":
        return _parse_set(positional, flags, namespace, text)

    if action == "patch":
        return _parse_patch(positional, flags, namespace, text)

    if action == "rollout":
        if not positional or positional[0].lower() not in ("restart", "status"):
            raise CommandParseError("Unknown rollout subcommand. Supported: rollout status, rollout restart", text)
        sub = positional[0].lower()
        resource, name, _ = _target(positional[1:], f"rollout {sub}")
        if not name:
            raise CommandParseError("Missing resource name.", text)
        return Command(f"rollout-{sub}", resource, name, namespace, flags)

    if action == "logs":
        if not positional:
            raise CommandParseError("Usage: kubectl logs <pod-name> [--tail=N]", text)
        name = positional[0].split("/", 1)[1] if positional[0].startswith(("pod/", "po/")) else positional[0]
        return Command("logs", "pod", name, namespace, flags)

    if action in _NODE_ACTIONS:
        if not positional:
            raise CommandParseError(f"Usage: kubectl {action} <node-name>", text)
        return Command(action, "node", positional[0], namespace, flags)

    if action == "taint":
        rest = positional
        if rest and rest[0].lower() in ("node", "nodes", "no"):
            rest = rest[1:]
        if len(rest) < 2:
            raise CommandParseError("Usage: kubectl taint node <name> key=value:Effect [key:Effect-]", text)
        return Command("taint", "node", rest[0], namespace, flags, tuple(rest[1:]))

    if action in ("label", "autoscale"):
        resource, name, rest = _target(positional, action)
        if not name:
            raise CommandParseError("Missing resource name.", text)
        if action == "label" and not rest:
            raise CommandParseError("Usage: kubectl label <resource-type> <name> key=value [key-]", text)
        return Command(action, resource, name, namespace, flags, tuple(rest))

    if action not in _RESOURCE_ACTIONS:
        raise CommandParseError(f'Unknown command: "{action}". Supported: {SUPPORTED_ACTIONS}', text)

    if action == "create" and positional:
        positional, service_type = _strip_create_subtype(positional)
        if service_type:
            flags.setdefault("type", []).append(service_type)

    if not positional:
        raise CommandParseError(f"Usage: kubectl {action} <resource-type> [name]", text)
    resource, name, rest = _target(positional, action)
    if action != "get" and not name:
        raise CommandParseError(f"Missing resource name. Usage: kubectl {action} {resource} <name>", text)
    if action == "scale" and "replicas" not in flags:
        raise CommandParseError("Usage: kubectl scale <resource-type> <name> --replicas=N", text)
    return Command(action, resource, name, namespace, flags, tuple(rest))


def _strip_create_subtype(positional: list[str]) -> tuple[list[str], str | None]:
    """Drop kubectl's create sub-types (``secret generic``, ``service clusterip``).

    Returns the remaining positionals and the service type, if one was named.
    """
    if len(positional) >= 3:
        head, sub = positional[0].lower(), positional[1].lower()
        if RESOURCE_ALIASES.get(head) == "secret" and sub == "generic":
            return [positional[0], *positional[2:]], None
        if RESOURCE_ALIASES.get(head) == "service" and sub in _SERVICE_TYPES:
            return [positional[0], *positional[2:]], _SERVICE_TYPES[sub]
    return positional, None


def _parse_apply(flags: dict[str, list[str]], namespace: str, text: str) -> Command:
    filename = flags.get("filename", [""])[-1]
    manifest = ""
    if filename and filename != "-":
        try:
            manifest = Path(filename).read_text(encoding="utf-8")
        except OSError as exc:
            raise CommandParseError(f"Cannot read manifest {filename}: {exc.strerror}", text) from exc
    return Command("apply", "", "", namespace, flags, manifest=manifest)


def _parse_set(positional: list[str], flags: dict[str, list[str]], namespace: str, text: str) -> Command:
    if not positional or positional[0].lower() != "image":
        raise CommandParseError("Unknown set subcommand. Supported: set image", text)
    resource, name, rest = _target(positional[1:], "set image")
    if not name:
        raise CommandParseError("Missing resource name.", text)
    if not rest:
        raise CommandParseError("Missing image specification.", text)
    image = rest[0].split("=", 1)[1] if "=" in rest[0] else rest[0]
    return Command("set-image", resource, name, namespace, {**flags, "image": [image]})


_PATCH_TYPES = frozenset({"merge", "strategic"})


def _parse_patch(positional: list[str], flags: dict[str, list[str]], namespace: str, text: str) -> Command:
    """``patch TYPE NAME -p '<json or yaml>' [--type merge|strategic]``.

    Both supported types are applied as a JSON merge patch. The body is
    checked here so a malformed patch never reaches the cluster.
    """
    usage = "Usage: kubectl patch <resource-type> <name> -p '<patch>'"
    if not positional:
        raise CommandParseError(usage, text)
    resource, name, _ = _target(positional, "patch")
    if not name:
        raise CommandParseError(f"Missing resource name. {usage}", text)
    patch_type = flags.get("type", ["strategic"])[-1].lower()
    if patch_type not in _PATCH_TYPES:
        raise CommandParseError(f'Unsupported patch type "{patch_type}". Supported: merge, strategic', text)
    body = flags.get("patch", [""])[-1]
    if not body:
        raise CommandParseError(f"Missing patch. {usage}", text)
    try:
        document = yaml.safe_load(body)
    except yaml.YAMLError as exc:
        raise CommandParseError(f"Invalid patch: {exc}", text) from exc
    if not isinstance(document, dict):
        raise CommandParseError("Patch must be a JSON or YAML object.", text)
    return Command("patch", resource, name, namespace, flags)
