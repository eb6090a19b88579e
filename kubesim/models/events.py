"""Audit events and controller mutations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class EventType(StrEnum):
    NORMAL = "Normal"
    WARNING = "Warning"


class MutationOp(StrEnum):
    CREATE = "create"
    DELETE = "delete"
    SCALE = "scale"
    UPDATE = "update"


@dataclass(frozen=True)
class SimEvent:
    """Append-only audit record. Never mutated, never removed from the store.

    ``timestamp`` is the store's logical clock value at emission, so events
    order totally even when several share a tick.
    """

    timestamp: int
    tick: int
    type: EventType
    reason: str
    object_kind: str
    object_name: str
    message: str


@dataclass(frozen=True)
class Mutation:
    """A create/delete/scale decision taken by one controller in one tick.

    Not stored; returned by the tick driver for property checks and metrics.
    """

    controller: str
    op: MutationOp
    kind: str
    name: str
