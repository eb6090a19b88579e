"""Exceptions raised at the edges of kubesim (parsing, manifests, scenario lookup).

Reconciliation itself never raises: pod and job failures are status reasons
and unknown command targets are logged no-ops.
"""

from __future__ import annotations


class KubesimError(Exception):
    """Base class for every kubesim error."""


class CommandParseError(KubesimError):
    """Raised when a command line cannot be turned into a Command."""

    def __init__(self, message: str, text: str = "") -> None:
        super().__init__(message)
        self.text = text


class CommandError(KubesimError):
    """Raised by a command handler when the command cannot be carried out."""


class ManifestError(KubesimError):
    """Raised when a YAML manifest is malformed or fails validation."""

    def __init__(self, message: str, document: int | None = None) -> None:
        super().__init__(message)
        self.document = document


class ScenarioNotFoundError(KubesimError):
    """Raised when a scenario name is not in the registry."""

    def __init__(self, name: str, available: list[str]) -> None:
        super().__init__(f"Unknown scenario {name!r}. Available: {', '.join(available)}")
        self.name = name
        self.available = available
