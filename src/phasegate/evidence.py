"""Evidence predicates backing checklist items.

Each predicate is a pure callable over the project state. Predicates read the
artifact registry, the approval book, or the findings ledger and never write.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from phasegate.errors import WorkflowDefinitionError
from phasegate.state.store import StateStoreError

if TYPE_CHECKING:
    from phasegate.project import ProjectState


class EvidencePredicate(Protocol):
    kind: str

    def __call__(self, state: ProjectState) -> bool: ...

    def describe(self) -> str: ...


@dataclass(frozen=True, slots=True)
class ArtifactExists:
    role: str
    kind: str = "artifact"

    def __call__(self, state: ProjectState) -> bool:
        return state.registry.exists(self.role)

    def describe(self) -> str:
        return f"artifact '{self.role}' exists"


@dataclass(frozen=True, slots=True)
class ArtifactFresh:
    role: str
    kind: str = "fresh"

    def __call__(self, state: ProjectState) -> bool:
        return state.registry.is_fresh(self.role)

    def describe(self) -> str:
        return f"artifact '{self.role}' is current"


@dataclass(frozen=True, slots=True)
class ExplicitApproval:
    """Satisfied only by a recorded confirmation action."""

    key: str
    kind: str = "approval"

    def __call__(self, state: ProjectState) -> bool:
        return state.approvals.is_approved(self.key)

    def describe(self) -> str:
        return f"explicit approval '{self.key}' recorded"


@dataclass(frozen=True, slots=True)
class FindingsClear:
    transition: str
    phase_id: str | None = None
    kind: str = "findings_clear"

    def __call__(self, state: ProjectState) -> bool:
        try:
            findings = state.findings.active()
        except StateStoreError:
            return False
        if self.phase_id is not None:
            findings = [item for item in findings if item.phase_id == self.phase_id]
        return state.policy.transition_permitted(self.transition, findings)

    def describe(self) -> str:
        scope = f" from phase '{self.phase_id}'" if self.phase_id else ""
        return f"no finding{scope} blocks '{self.transition}'"


@dataclass(frozen=True, slots=True)
class AllOf:
    predicates: tuple[EvidencePredicate, ...]
    kind: str = "all_of"

    def __call__(self, state: ProjectState) -> bool:
        return all(predicate(state) for predicate in self.predicates)

    def describe(self) -> str:
        return " and ".join(predicate.describe() for predicate in self.predicates)


@dataclass(frozen=True, slots=True)
class Custom:
    name: str
    check: Callable[[ProjectState], bool]
    kind: str = "custom"

    def __call__(self, state: ProjectState) -> bool:
        return bool(self.check(state))

    def describe(self) -> str:
        return self.name


def evidence_from_spec(spec: dict[str, Any]) -> EvidencePredicate:
    try:
        return _build(spec)
    except KeyError as exc:
        raise WorkflowDefinitionError(f"Evidence spec {spec!r} is missing field {exc}") from exc


def _build(spec: dict[str, Any]) -> EvidencePredicate:
    kind = str(spec.get("kind", "")).strip()
    if kind == "artifact":
        return ArtifactExists(str(spec["role"]))
    if kind == "fresh":
        return ArtifactFresh(str(spec["role"]))
    if kind == "approval":
        return ExplicitApproval(str(spec["key"]))
    if kind == "findings_clear":
        return FindingsClear(str(spec["transition"]), spec.get("phase"))
    if kind == "all_of":
        return AllOf(tuple(_build(item) for item in spec.get("of", [])))
    raise WorkflowDefinitionError(f"Unsupported evidence kind: {kind or '<missing>'}")
