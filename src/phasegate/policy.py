from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from phasegate.findings import Finding, FindingStatus
from phasegate.workflow import SeverityPolicy

SEVERITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3, "informational": 4}


@dataclass(slots=True)
class TransitionDecision:
    kind: str
    permitted: bool
    blocking_finding_ids: list[str] = field(default_factory=list)
    reason: str = ""
    missing_items: list[str] = field(default_factory=list)
    analyzer_failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "permitted": self.permitted,
            "blocking_finding_ids": list(self.blocking_finding_ids),
            "reason": self.reason,
            "missing_items": list(self.missing_items),
            "analyzer_failures": list(self.analyzer_failures),
        }


def counts_as_open(finding: Finding) -> bool:
    """Whether a finding still carries blocking weight.

    Fixed needs a regression-evidence reference and accepted risk needs a
    justification; a record missing either is treated as open.
    """
    if finding.superseded:
        return False
    if finding.status is FindingStatus.OPEN:
        return True
    if finding.status is FindingStatus.FIXED:
        return not finding.regression_evidence.strip()
    if finding.status is FindingStatus.ACCEPTED_RISK:
        return not finding.justification.strip()
    return True


class SeverityPolicyEngine:
    def __init__(self, policy: SeverityPolicy | None = None) -> None:
        self.policy = policy or SeverityPolicy.default()

    def blocking(self, kind: str, findings: Iterable[Finding]) -> list[Finding]:
        blockers = [
            finding
            for finding in findings
            if counts_as_open(finding) and self.policy.blocks(finding.severity.value, kind)
        ]
        blockers.sort(key=lambda item: (SEVERITY_RANK[item.severity.value], item.id))
        return blockers

    def transition_permitted(self, kind: str, findings: Iterable[Finding]) -> bool:
        return not self.blocking(kind, findings)

    def evaluate(self, kind: str, findings: Iterable[Finding]) -> TransitionDecision:
        blockers = self.blocking(kind, findings)
        if not blockers:
            return TransitionDecision(kind=kind, permitted=True)
        listed = ", ".join(
            f"{item.id} ({item.severity.value}: {item.title})" for item in blockers[:10]
        )
        if len(blockers) > 10:
            listed += f", and {len(blockers) - 10} more"
        return TransitionDecision(
            kind=kind,
            permitted=False,
            blocking_finding_ids=[item.id for item in blockers],
            reason=f"Transition '{kind}' blocked by open finding(s): {listed}",
        )
