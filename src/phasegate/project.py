from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from phasegate.checklist import ChecklistTracker
from phasegate.errors import ArtifactConflict
from phasegate.findings import FindingLedger
from phasegate.inference import PhaseStateInferencer
from phasegate.policy import SeverityPolicyEngine, counts_as_open
from phasegate.registry import ArtifactRegistry
from phasegate.state import ApprovalBook, StateStore
from phasegate.workflow import WorkflowDefinition, default_workflow

logger = logging.getLogger(__name__)


class ProjectState:
    """Aggregate root for one project.

    Everything here is derived: the artifact set comes from the disk, checklist
    status from evidence predicates, and findings and approvals from the state
    store. Dropping an instance and calling ``reconstruct`` again yields the
    same current phase and the same satisfied gates.
    """

    def __init__(
        self,
        root: Path,
        definition: WorkflowDefinition,
        store: StateStore,
    ) -> None:
        self.root = root.resolve()
        self.definition = definition
        self.store = store
        self.registry = ArtifactRegistry(self.root, definition.artifacts, store=store)
        self.approvals = ApprovalBook(store)
        self.findings = FindingLedger(store)
        self.policy = SeverityPolicyEngine(definition.severity_policy)
        self.tracker = ChecklistTracker(definition, self)
        self.inferencer = PhaseStateInferencer(definition, self.registry, self.tracker)
        self.present_roles: set[str] = set()
        self.current_phase_id: str = definition.first_phase.id

    @classmethod
    def reconstruct(
        cls,
        root: Path,
        definition: WorkflowDefinition | None = None,
        *,
        store: StateStore | None = None,
        state_dir: str = ".phasegate/state",
    ) -> ProjectState:
        state = cls(
            root,
            definition or default_workflow(),
            store or StateStore(root, state_dir=state_dir),
        )
        state.refresh()
        return state

    def refresh(self) -> str:
        """Rescan artifacts and recompute the current phase."""
        self.present_roles = self.registry.scan()
        self.current_phase_id = self.inferencer.current_phase()
        logger.debug("project %s is in phase %s", self.root, self.current_phase_id)
        return self.current_phase_id

    @property
    def conflicts(self) -> list[ArtifactConflict]:
        return list(self.registry.last_conflicts)

    def satisfied_gates(self) -> set[str]:
        return self.inferencer.satisfied_gates()

    def phase_summary(self) -> list[dict[str, Any]]:
        summary: list[dict[str, Any]] = []
        for phase in self.definition.phases:
            entry = self.inferencer.entry_satisfied(phase.id)
            exit_ = self.inferencer.exit_satisfied(phase.id)
            summary.append(
                {
                    "id": phase.id,
                    "name": phase.name,
                    "classification": phase.classification,
                    "entry_ok": entry.ok,
                    "entry_missing": entry.missing,
                    "exit_ok": exit_.ok,
                    "exit_missing": exit_.missing,
                    "checklist": [item.to_dict() for item in self.tracker.items(phase.id)],
                }
            )
        return summary

    def open_findings(self) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self.findings.active() if counts_as_open(item)]
