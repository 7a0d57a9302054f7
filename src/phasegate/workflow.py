from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from phasegate.errors import UnknownPhase, WorkflowDefinitionError

Classification = Literal["process", "implementation"]
MUTATING_ACTIONS = ("write", "edit", "create", "delete", "move")
SEVERITIES = ("critical", "high", "medium", "low", "informational")
ALL_TRANSITIONS = "*"


@dataclass(frozen=True, slots=True)
class Phase:
    id: str
    name: str
    classification: Classification = "implementation"
    successors: tuple[str, ...] = ()
    entry_artifacts: tuple[str, ...] = ()
    checklist: tuple[str, ...] = ()
    produces: tuple[str, ...] = ()
    transition_kind: str = "advance"
    analyzers: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ArtifactSpec:
    role: str
    locator: str
    fresh_after: str | None = None
    description: str = ""


@dataclass(frozen=True, slots=True)
class ChecklistSpec:
    id: str
    phase_id: str
    description: str
    evidence: dict[str, Any] = field(default_factory=dict, hash=False)
    required: bool = True


@dataclass(frozen=True, slots=True)
class TriggerPattern:
    phase_id: str
    keywords: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()
    weight: float = 1.0


@dataclass(frozen=True, slots=True)
class ResourceRule:
    pattern: str
    phase_id: str
    actions: tuple[str, ...] = MUTATING_ACTIONS


@dataclass(frozen=True, slots=True)
class SeverityPolicy:
    """Severity -> transition kinds it blocks while a finding is open."""

    blocked: dict[str, frozenset[str]] = field(hash=False)

    @classmethod
    def default(cls) -> SeverityPolicy:
        return cls(
            blocked={
                "critical": frozenset({ALL_TRANSITIONS}),
                "high": frozenset({ALL_TRANSITIONS}),
                "medium": frozenset({"ready"}),
                "low": frozenset(),
                "informational": frozenset(),
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SeverityPolicy:
        blocked = dict(cls.default().blocked)
        for severity, kinds in data.items():
            normalized = str(severity).lower()
            if normalized not in SEVERITIES:
                raise WorkflowDefinitionError(f"Unknown severity in policy: {severity}")
            blocked[normalized] = frozenset(str(kind) for kind in kinds)
        return cls(blocked=blocked)

    def blocks(self, severity: str, kind: str) -> bool:
        kinds = self.blocked.get(severity, frozenset())
        return ALL_TRANSITIONS in kinds or kind in kinds

    def to_dict(self) -> dict[str, list[str]]:
        return {severity: sorted(self.blocked.get(severity, ())) for severity in SEVERITIES}


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    phases: tuple[Phase, ...]
    artifacts: tuple[ArtifactSpec, ...] = ()
    checklist: tuple[ChecklistSpec, ...] = ()
    triggers: tuple[TriggerPattern, ...] = ()
    resource_rules: tuple[ResourceRule, ...] = ()
    severity_policy: SeverityPolicy = field(default_factory=SeverityPolicy.default, hash=False)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not self.phases:
            raise WorkflowDefinitionError("Workflow must declare at least one phase.")
        phase_ids = [phase.id for phase in self.phases]
        duplicates = sorted({pid for pid in phase_ids if phase_ids.count(pid) > 1})
        if duplicates:
            raise WorkflowDefinitionError(f"Duplicate phase ids: {duplicates}")
        known_phases = set(phase_ids)
        roles = {spec.role for spec in self.artifacts}
        item_ids = {item.id for item in self.checklist}

        for phase in self.phases:
            for successor in phase.successors:
                if successor not in known_phases:
                    raise WorkflowDefinitionError(
                        f"Phase '{phase.id}' names unknown successor '{successor}'."
                    )
            for role in (*phase.entry_artifacts, *phase.produces):
                if role not in roles:
                    raise WorkflowDefinitionError(
                        f"Phase '{phase.id}' references undeclared artifact role '{role}'."
                    )
            for item_id in phase.checklist:
                if item_id not in item_ids:
                    raise WorkflowDefinitionError(
                        f"Phase '{phase.id}' references undeclared checklist item '{item_id}'."
                    )
        for spec in self.artifacts:
            if spec.fresh_after and spec.fresh_after not in roles:
                raise WorkflowDefinitionError(
                    f"Artifact '{spec.role}' is fresh_after undeclared role '{spec.fresh_after}'."
                )
        for item in self.checklist:
            if item.phase_id not in known_phases:
                raise WorkflowDefinitionError(
                    f"Checklist item '{item.id}' belongs to unknown phase '{item.phase_id}'."
                )
        for owner in (*self.triggers, *self.resource_rules):
            if owner.phase_id not in known_phases:
                raise WorkflowDefinitionError(
                    f"{type(owner).__name__} references unknown phase '{owner.phase_id}'."
                )

    @property
    def first_phase(self) -> Phase:
        return self.phases[0]

    def phase(self, phase_id: str) -> Phase:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise UnknownPhase(phase_id)

    def order(self, phase_id: str) -> int:
        for index, phase in enumerate(self.phases):
            if phase.id == phase_id:
                return index
        raise UnknownPhase(phase_id)

    def artifact(self, role: str) -> ArtifactSpec | None:
        for spec in self.artifacts:
            if spec.role == role:
                return spec
        return None

    def checklist_for(self, phase_id: str) -> list[ChecklistSpec]:
        phase = self.phase(phase_id)
        by_id = {item.id: item for item in self.checklist}
        return [by_id[item_id] for item_id in phase.checklist]

    def producer_of(self, role: str) -> Phase | None:
        for phase in self.phases:
            if role in phase.produces:
                return phase
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDefinition:
        try:
            phases = tuple(
                Phase(
                    id=str(item["id"]),
                    name=str(item.get("name") or item["id"]),
                    classification=item.get("classification", "implementation"),
                    successors=tuple(item.get("successors", ())),
                    entry_artifacts=tuple(item.get("entry_artifacts", ())),
                    checklist=tuple(item.get("checklist", ())),
                    produces=tuple(item.get("produces", ())),
                    transition_kind=str(item.get("transition_kind", "advance")),
                    analyzers=tuple(item.get("analyzers", ())),
                )
                for item in data.get("phases", [])
            )
            artifacts = tuple(
                ArtifactSpec(
                    role=str(item["role"]),
                    locator=str(item["locator"]),
                    fresh_after=item.get("fresh_after"),
                    description=str(item.get("description", "")),
                )
                for item in data.get("artifacts", [])
            )
            checklist = tuple(
                ChecklistSpec(
                    id=str(item["id"]),
                    phase_id=str(item["phase"]),
                    description=str(item.get("description", "")),
                    evidence=dict(item.get("evidence", {})),
                    required=bool(item.get("required", True)),
                )
                for item in data.get("checklist", [])
            )
            triggers = tuple(
                TriggerPattern(
                    phase_id=str(item["phase"]),
                    keywords=tuple(str(word) for word in item.get("keywords", ())),
                    patterns=tuple(str(regex) for regex in item.get("patterns", ())),
                    weight=float(item.get("weight", 1.0)),
                )
                for item in data.get("triggers", [])
            )
            rules = tuple(
                ResourceRule(
                    pattern=str(item["pattern"]),
                    phase_id=str(item["phase"]),
                    actions=tuple(item.get("actions", MUTATING_ACTIONS)),
                )
                for item in data.get("resource_rules", [])
            )
        except KeyError as exc:
            raise WorkflowDefinitionError(f"Workflow entry is missing field {exc}") from exc
        for phase in phases:
            if phase.classification not in ("process", "implementation"):
                raise WorkflowDefinitionError(
                    f"Phase '{phase.id}' has unknown classification '{phase.classification}'."
                )
        return cls(
            phases=phases,
            artifacts=artifacts,
            checklist=checklist,
            triggers=triggers,
            resource_rules=rules,
            severity_policy=SeverityPolicy.from_dict(data.get("severity_policy", {})),
        )


def load_workflow(path: Path | None) -> WorkflowDefinition:
    if path is None or not path.exists():
        return default_workflow()
    return WorkflowDefinition.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def default_workflow() -> WorkflowDefinition:
    """Smart-contract delivery: design, build, test, optimize, document, ship, audit."""
    artifacts = (
        ArtifactSpec("design_doc", "docs/designs/*.md", description="Approved design document"),
        ArtifactSpec("interface_spec", "docs/interfaces/*", description="Public interface sketch"),
        ArtifactSpec("production_source", "src/**/*.sol", description="Contract sources"),
        ArtifactSpec("test_suite", "test/**/*.t.sol", fresh_after="production_source"),
        ArtifactSpec("gas_report", ".gas-snapshot", fresh_after="production_source"),
        ArtifactSpec("documentation", "docs/reference/*.md"),
        ArtifactSpec("deployment_script", "script/**/*.s.sol"),
        ArtifactSpec("audit_report", "docs/audits/*.md", fresh_after="production_source"),
    )
    checklist = (
        ChecklistSpec(
            "design-doc-written",
            "design",
            "A design document exists under docs/designs.",
            {"kind": "artifact", "role": "design_doc"},
        ),
        ChecklistSpec(
            "design-interfaces-declared",
            "design",
            "Public interfaces are sketched before implementation.",
            {"kind": "artifact", "role": "interface_spec"},
        ),
        ChecklistSpec(
            "design-approved",
            "design",
            "The user explicitly approved the design.",
            {"kind": "approval", "key": "design"},
        ),
        ChecklistSpec(
            "build-sources-present",
            "build",
            "Contract sources exist.",
            {"kind": "artifact", "role": "production_source"},
        ),
        ChecklistSpec(
            "build-no-blocking-findings",
            "build",
            "No open finding blocks advancing past build.",
            {"kind": "findings_clear", "transition": "advance", "phase": "build"},
        ),
        ChecklistSpec(
            "test-suite-present",
            "test",
            "Tests exist for the contracts.",
            {"kind": "artifact", "role": "test_suite"},
        ),
        ChecklistSpec(
            "test-suite-current",
            "test",
            "Tests were touched after the last source change.",
            {"kind": "fresh", "role": "test_suite"},
        ),
        ChecklistSpec(
            "optimize-gas-snapshot-current",
            "optimize",
            "Gas snapshot reflects the current sources.",
            {"kind": "fresh", "role": "gas_report"},
        ),
        ChecklistSpec(
            "document-reference-written",
            "document",
            "Reference documentation exists.",
            {"kind": "artifact", "role": "documentation"},
        ),
        ChecklistSpec(
            "ship-script-present",
            "ship",
            "A deployment script exists.",
            {"kind": "artifact", "role": "deployment_script"},
        ),
        ChecklistSpec(
            "ship-deploy-approved",
            "ship",
            "The user explicitly approved the deployment.",
            {"kind": "approval", "key": "deploy"},
        ),
        ChecklistSpec(
            "audit-report-current",
            "audit",
            "An audit report covers the current sources.",
            {"kind": "fresh", "role": "audit_report"},
        ),
        ChecklistSpec(
            "audit-findings-resolved",
            "audit",
            "No finding blocks the ready transition.",
            {"kind": "findings_clear", "transition": "ready"},
        ),
    )
    phases = (
        Phase(
            "design",
            "Design",
            "process",
            successors=("build",),
            checklist=("design-doc-written", "design-interfaces-declared", "design-approved"),
            produces=("design_doc", "interface_spec"),
        ),
        Phase(
            "build",
            "Build",
            "implementation",
            successors=("test",),
            entry_artifacts=("design_doc", "interface_spec"),
            checklist=("build-sources-present", "build-no-blocking-findings"),
            produces=("production_source",),
            analyzers=("security",),
        ),
        Phase(
            "test",
            "Test",
            "implementation",
            successors=("optimize",),
            entry_artifacts=("design_doc", "production_source"),
            checklist=("test-suite-present", "test-suite-current"),
            produces=("test_suite",),
        ),
        Phase(
            "optimize",
            "Optimize",
            "implementation",
            successors=("document",),
            entry_artifacts=("production_source", "test_suite"),
            checklist=("optimize-gas-snapshot-current",),
            produces=("gas_report",),
            transition_kind="ready",
            analyzers=("performance",),
        ),
        Phase(
            "document",
            "Document",
            "process",
            successors=("ship",),
            entry_artifacts=("production_source", "test_suite"),
            checklist=("document-reference-written",),
            produces=("documentation",),
        ),
        Phase(
            "ship",
            "Ship",
            "implementation",
            successors=("audit",),
            entry_artifacts=("test_suite", "documentation"),
            checklist=("ship-script-present", "ship-deploy-approved"),
            produces=("deployment_script",),
            transition_kind="deploy",
            analyzers=("security",),
        ),
        Phase(
            "audit",
            "Audit",
            "process",
            entry_artifacts=("deployment_script",),
            checklist=("audit-report-current", "audit-findings-resolved"),
            produces=("audit_report",),
            transition_kind="ready",
            analyzers=("security",),
        ),
    )
    triggers = (
        TriggerPattern(
            "design",
            keywords=(
                "design", "plan", "architecture", "spec", "token", "contract",
                "protocol", "new", "idea", "brainstorm",
            ),
        ),
        TriggerPattern(
            "build",
            keywords=("implement", "build", "code", "write", "function", "add", "feature", "fix"),
        ),
        TriggerPattern(
            "test",
            keywords=("test", "tests", "fuzz", "invariant", "coverage", "failing"),
        ),
        TriggerPattern(
            "optimize",
            keywords=("optimize", "gas", "cheaper", "efficient", "performance", "storage packing"),
        ),
        TriggerPattern(
            "document",
            keywords=("document", "docs", "natspec", "readme", "documentation"),
        ),
        TriggerPattern(
            "ship",
            keywords=("deploy", "ship", "release", "mainnet", "testnet", "broadcast"),
        ),
        TriggerPattern(
            "audit",
            keywords=("audit", "security review", "vulnerability", "exploit", "reentrancy"),
            patterns=(r"\bsecur\w*\b",),
        ),
    )
    rules = (
        ResourceRule("docs/designs/**", "design"),
        ResourceRule("docs/interfaces/**", "design"),
        ResourceRule("src/**/*.sol", "build"),
        ResourceRule("test/**/*.sol", "test"),
        ResourceRule(".gas-snapshot", "optimize"),
        ResourceRule("docs/reference/**", "document"),
        ResourceRule("script/**/*.sol", "ship"),
        ResourceRule("docs/audits/**", "audit"),
    )
    return WorkflowDefinition(
        phases=phases,
        artifacts=artifacts,
        checklist=checklist,
        triggers=triggers,
        resource_rules=rules,
    )
