from pathlib import Path

import pytest

from phasegate.errors import UnknownPhase, WorkflowDefinitionError
from phasegate.workflow import (
    ArtifactSpec,
    Phase,
    SeverityPolicy,
    WorkflowDefinition,
    default_workflow,
    load_workflow,
)


def test_default_workflow_declares_gated_phases() -> None:
    definition = default_workflow()

    assert definition.first_phase.id == "design"
    assert definition.phase("build").entry_artifacts == ("design_doc", "interface_spec")
    assert definition.phase("ship").transition_kind == "deploy"
    assert definition.producer_of("production_source").id == "build"
    assert [item.id for item in definition.checklist_for("design")] == [
        "design-doc-written",
        "design-interfaces-declared",
        "design-approved",
    ]


def test_unknown_phase_lookup_raises() -> None:
    with pytest.raises(UnknownPhase, match="deploy"):
        default_workflow().phase("deploy")


def test_validation_rejects_undeclared_artifact_roles() -> None:
    with pytest.raises(WorkflowDefinitionError, match="undeclared artifact role 'spec'"):
        WorkflowDefinition(phases=(Phase("build", "Build", entry_artifacts=("spec",)),))


def test_validation_rejects_unknown_successor() -> None:
    with pytest.raises(WorkflowDefinitionError, match="unknown successor"):
        WorkflowDefinition(
            phases=(Phase("design", "Design", successors=("ship",)),),
            artifacts=(ArtifactSpec("doc", "docs/*.md"),),
        )


def test_from_dict_requires_phase_ids() -> None:
    with pytest.raises(WorkflowDefinitionError, match="missing field"):
        WorkflowDefinition.from_dict({"phases": [{"name": "Nameless"}]})


def test_from_dict_rejects_unknown_classification() -> None:
    with pytest.raises(WorkflowDefinitionError, match="unknown classification"):
        WorkflowDefinition.from_dict({"phases": [{"id": "x", "classification": "ritual"}]})


def test_severity_policy_defaults_and_overrides() -> None:
    policy = SeverityPolicy.default()

    assert policy.blocks("critical", "advance") is True
    assert policy.blocks("high", "deploy") is True
    assert policy.blocks("medium", "ready") is True
    assert policy.blocks("medium", "deploy") is False
    assert policy.blocks("low", "ready") is False

    relaxed = SeverityPolicy.from_dict({"high": ["deploy"]})
    assert relaxed.blocks("high", "advance") is False
    assert relaxed.blocks("high", "deploy") is True
    assert relaxed.to_dict()["critical"] == ["*"]


def test_severity_policy_rejects_unknown_severity() -> None:
    with pytest.raises(WorkflowDefinitionError, match="Unknown severity"):
        SeverityPolicy.from_dict({"catastrophic": ["*"]})


def test_load_workflow_reads_toml(tmp_path: Path) -> None:
    path = tmp_path / "workflow.toml"
    path.write_text(
        """
[[phases]]
id = "plan"
name = "Plan"
classification = "process"
successors = ["code"]
checklist = ["plan-written"]
produces = ["plan_doc"]

[[phases]]
id = "code"
entry_artifacts = ["plan_doc"]

[[artifacts]]
role = "plan_doc"
locator = "PLAN.md"

[[checklist]]
id = "plan-written"
phase = "plan"
description = "Plan exists"
evidence = { kind = "artifact", role = "plan_doc" }

[[triggers]]
phase = "plan"
keywords = ["plan"]

[[resource_rules]]
pattern = "lib/**"
phase = "code"
actions = ["write"]

[severity_policy]
medium = ["advance"]
""".strip(),
        encoding="utf-8",
    )

    definition = load_workflow(path)

    assert definition.phase("plan").classification == "process"
    assert definition.checklist_for("plan")[0].evidence == {"kind": "artifact", "role": "plan_doc"}
    assert definition.triggers[0].keywords == ("plan",)
    assert definition.resource_rules[0].actions == ("write",)
    assert definition.severity_policy.blocks("medium", "advance") is True
