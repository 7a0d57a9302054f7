from __future__ import annotations

from typing import NamedTuple

from phasegate.checklist import ChecklistTracker
from phasegate.errors import GateUnsatisfied
from phasegate.registry import ArtifactRegistry
from phasegate.workflow import WorkflowDefinition


class GateResult(NamedTuple):
    ok: bool
    missing: list[str]


class PhaseStateInferencer:
    """Entry and exit gates computed from the registry and the checklist.

    Entry: every artifact the phase declares exists. Exit: every required
    checklist item holds. Nothing here spawns processes or writes state.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        registry: ArtifactRegistry,
        tracker: ChecklistTracker,
    ) -> None:
        self.definition = definition
        self.registry = registry
        self.tracker = tracker

    def entry_satisfied(self, phase_id: str) -> GateResult:
        phase = self.definition.phase(phase_id)
        missing = [role for role in phase.entry_artifacts if not self.registry.exists(role)]
        return GateResult(not missing, missing)

    def exit_satisfied(self, phase_id: str) -> GateResult:
        ok, missing = self.tracker.all_required_satisfied(phase_id)
        return GateResult(ok, missing)

    def require_entry(self, phase_id: str) -> None:
        result = self.entry_satisfied(phase_id)
        if not result.ok:
            raise GateUnsatisfied(phase_id, "entry", result.missing)

    def require_exit(self, phase_id: str) -> None:
        result = self.exit_satisfied(phase_id)
        if not result.ok:
            raise GateUnsatisfied(phase_id, "exit", result.missing)

    def current_phase(self) -> str:
        """First phase, in declaration order, whose exit gate does not hold yet."""
        for phase in self.definition.phases:
            if not self.exit_satisfied(phase.id).ok:
                return phase.id
        return self.definition.phases[-1].id

    def satisfied_gates(self) -> set[str]:
        gates: set[str] = set()
        for phase in self.definition.phases:
            if self.entry_satisfied(phase.id).ok:
                gates.add(f"{phase.id}:entry")
            if self.exit_satisfied(phase.id).ok:
                gates.add(f"{phase.id}:exit")
        return gates

    def earliest_producer(self, missing_roles: list[str], fallback: str) -> str:
        """Phase that has to run first to produce the missing artifacts."""
        candidates = [
            phase for role in missing_roles if (phase := self.definition.producer_of(role))
        ]
        if not candidates:
            return fallback
        return min(candidates, key=lambda phase: self.definition.order(phase.id)).id
