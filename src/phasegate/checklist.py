from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from phasegate.errors import EvidenceStale
from phasegate.evidence import EvidencePredicate, evidence_from_spec
from phasegate.workflow import ChecklistSpec, WorkflowDefinition

if TYPE_CHECKING:
    from phasegate.project import ProjectState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChecklistItem:
    id: str
    phase_id: str
    evidence: EvidencePredicate
    description: str = ""
    required: bool = True
    status: bool | None = None
    verified_at: str | None = None

    @classmethod
    def from_spec(cls, spec: ChecklistSpec) -> ChecklistItem:
        return cls(
            id=spec.id,
            phase_id=spec.phase_id,
            evidence=evidence_from_spec(spec.evidence),
            description=spec.description,
            required=spec.required,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "phase_id": self.phase_id,
            "description": self.description,
            "required": self.required,
            "evidence": self.evidence.describe(),
            "status": self.status,
            "verified_at": self.verified_at,
        }


class ChecklistTracker:
    """Per-phase checklist items whose status is always recomputed on query.

    ``status``/``verified_at`` on each item are a display cache. Gate decisions
    go through ``verify``, and a cache that disagrees with the fresh result is
    recorded as ``EvidenceStale`` and overwritten.
    """

    def __init__(self, definition: WorkflowDefinition, state: ProjectState) -> None:
        self.definition = definition
        self.state = state
        self._items: dict[str, list[ChecklistItem]] = {
            phase.id: [
                ChecklistItem.from_spec(spec) for spec in definition.checklist_for(phase.id)
            ]
            for phase in definition.phases
        }
        self.stale_events: list[EvidenceStale] = []

    def items(self, phase_id: str) -> list[ChecklistItem]:
        self.definition.phase(phase_id)
        return list(self._items.get(phase_id, []))

    def item(self, item_id: str) -> ChecklistItem | None:
        for items in self._items.values():
            for item in items:
                if item.id == item_id:
                    return item
        return None

    def add(self, item: ChecklistItem) -> None:
        """Attach an item built in code, e.g. with a ``Custom`` predicate."""
        self.definition.phase(item.phase_id)
        self._items.setdefault(item.phase_id, []).append(item)

    def verify(self, item: ChecklistItem) -> bool:
        try:
            result = bool(item.evidence(self.state))
        except OSError as exc:
            logger.warning("evidence for %s could not be read: %s", item.id, exc)
            result = False
        if item.status is not None and item.status != result:
            stale = EvidenceStale(item.id, cached=item.status, actual=result)
            self.stale_events.append(stale)
            self.stale_events = self.stale_events[-100:]
            logger.info("%s", stale)
        item.status = result
        item.verified_at = datetime.now(UTC).isoformat()
        return result

    def all_required_satisfied(self, phase_id: str) -> tuple[bool, list[str]]:
        missing = [
            item.id for item in self.items(phase_id) if item.required and not self.verify(item)
        ]
        return (not missing, missing)
