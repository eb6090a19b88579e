"""Controller base class.

Every reconciliation loop inherits from Controller. ``run`` is a template
method: it clones the incoming snapshot, lets the subclass reconcile the
clone in place through ``_reconcile`` and packages the new events and the
mutations it recorded. The snapshot passed in is never modified, so each
controller behaves as a pure ``(state) -> (state', events, mutations)``.

The tick driver clones once per tick and passes ``in_place=True``, so the
controllers of one tick share a working copy that nobody else holds.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from kubesim.models.config import KubesimConfig
from kubesim.models.events import EventType, Mutation, MutationOp, SimEvent
from kubesim.models.resources import FailureMode
from kubesim.observability.metrics import mutations_total
from kubesim.store.cluster import ClusterState


@dataclass
class ReconcileContext:
    """Per-tick inputs shared by every controller."""

    config: KubesimConfig = field(default_factory=KubesimConfig)
    failure_rules: dict[str, FailureMode] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    state: ClusterState
    events: list[SimEvent] = field(default_factory=list)
    mutations: list[Mutation] = field(default_factory=list)


class Controller(ABC):
    """Abstract base class for all reconciliation loops.

    Subclasses MUST define ``name`` and implement ``_reconcile``, which
    mutates the (already cloned) state it is given and reports object-level
    changes through ``_created`` / ``_deleted`` / ``_scaled``.
    """

    name: str

    def __init__(self) -> None:
        self._mutations: list[Mutation] = []

    def run(
        self, state: ClusterState, ctx: ReconcileContext | None = None, *, in_place: bool = False
    ) -> ReconcileResult:
        working = state if in_place else state.clone()
        first_event = len(working.events)
        self._mutations = []
        self._reconcile(working, ctx or ReconcileContext())
        mutations, self._mutations = self._mutations, []
        for m in mutations:
            mutations_total.labels(controller=self.name, op=m.op.value).inc()
        return ReconcileResult(state=working, events=working.events[first_event:], mutations=mutations)

    @abstractmethod
    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        """Drive ``state`` one step toward this controller's desired state."""

    # -----------------------------------------------------------------------
    # Mutation bookkeeping
    # -----------------------------------------------------------------------

    def _record(self, op: MutationOp, obj: Any) -> None:
        self._mutations.append(Mutation(controller=self.name, op=op, kind=obj.kind, name=obj.metadata.name))

    def _created(self, state: ClusterState, obj: Any) -> None:
        state.add(obj)
        self._record(MutationOp.CREATE, obj)

    def _deleted(self, state: ClusterState, obj: Any) -> None:
        state.mark_deleted(obj)
        self._record(MutationOp.DELETE, obj)

    def _scaled(self, obj: Any) -> None:
        self._record(MutationOp.SCALE, obj)

    def _updated(self, obj: Any) -> None:
        self._record(MutationOp.UPDATE, obj)

    @staticmethod
    def _normal(state: ClusterState, reason: str, obj: Any, message: str) -> None:
        state.record_event(EventType.NORMAL, reason, obj.kind, obj.metadata.name, message)

    @staticmethod
    def _warning(state: ClusterState, reason: str, obj: Any, message: str) -> None:
        state.record_event(EventType.WARNING, reason, obj.kind, obj.metadata.name, message)
