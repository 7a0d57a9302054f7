from __future__ import annotations


class PhaseGateError(RuntimeError):
    """Base class for engine errors."""


class WorkflowDefinitionError(PhaseGateError):
    """Raised when a workflow definition is internally inconsistent."""


class UnknownPhase(PhaseGateError):
    def __init__(self, phase_id: str) -> None:
        super().__init__(f"Unknown phase: {phase_id}")
        self.phase_id = phase_id


class RoutingAmbiguous(PhaseGateError):
    """No phase cleared the confidence floor and no explicit invocation was given."""

    def __init__(self, text: str, *, floor: float) -> None:
        super().__init__(f"No gate applies to request (confidence floor {floor:.2f}).")
        self.text = text
        self.floor = floor


class GateUnsatisfied(PhaseGateError):
    def __init__(self, phase_id: str, gate: str, missing: list[str]) -> None:
        super().__init__(
            f"{gate} gate for phase '{phase_id}' is unsatisfied; missing: {', '.join(missing)}"
        )
        self.phase_id = phase_id
        self.gate = gate
        self.missing = list(missing)


class AnalyzerFailure(PhaseGateError):
    """A dispatched analyzer errored, timed out, or could not start."""

    def __init__(
        self,
        message: str,
        *,
        kind: str = "error",
        phase_id: str | None = None,
        target: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.phase_id = phase_id
        self.target = target


class EvidenceStale(PhaseGateError):
    """A cached checklist status disagreed with a fresh recomputation."""

    def __init__(self, item_id: str, *, cached: bool, actual: bool) -> None:
        super().__init__(
            f"Checklist item '{item_id}' cache said {cached}, evidence now says {actual}."
        )
        self.item_id = item_id
        self.cached = cached
        self.actual = actual


class ArtifactConflict(PhaseGateError):
    """Two artifact roles resolved to the same physical resource."""

    def __init__(self, roles: tuple[str, str], path: str) -> None:
        super().__init__(f"Artifact roles {roles[0]!r} and {roles[1]!r} both resolve to {path}")
        self.roles = roles
        self.path = path


class FindingTransitionError(PhaseGateError):
    """Raised when a finding status change lacks its required evidence."""
