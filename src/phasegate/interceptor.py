from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from phasegate.inference import PhaseStateInferencer
from phasegate.registry import glob_match
from phasegate.workflow import ResourceRule, WorkflowDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Allow:
    resource_path: str = ""
    phase_id: str | None = None

    @property
    def allowed(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {"decision": "allow", "resource_path": self.resource_path, "phase": self.phase_id}


@dataclass(frozen=True, slots=True)
class Block:
    reason: str
    required_phase: str
    missing_artifact_roles: list[str] = field(default_factory=list, hash=False)
    target_phase: str = ""
    resource_path: str = ""

    @property
    def allowed(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": "block",
            "reason": self.reason,
            "required_phase": self.required_phase,
            "missing_artifact_roles": list(self.missing_artifact_roles),
            "target_phase": self.target_phase,
            "resource_path": self.resource_path,
        }


class GateInterceptor:
    """Synchronous pre-mutation check.

    Routing is expected to have steered the request already; this layer
    re-checks the concrete write against the entry gate of whichever phase owns
    the path, using only local existence checks.
    """

    def __init__(
        self,
        root: Path,
        definition: WorkflowDefinition,
        inferencer: PhaseStateInferencer,
    ) -> None:
        self.root = root.resolve()
        self.definition = definition
        self.inferencer = inferencer

    def normalize(self, resource_path: str) -> str | None:
        """Project-relative POSIX path, or None when it points outside the root."""
        raw = resource_path.strip().replace("\\", "/")
        if not raw:
            return None
        candidate = Path(raw)
        if candidate.is_absolute():
            try:
                candidate = Path(os.path.normpath(candidate)).relative_to(self.root)
            except ValueError:
                return None
        normalized = PurePosixPath(os.path.normpath(candidate.as_posix())).as_posix()
        if normalized == ".." or normalized.startswith("../"):
            return None
        return normalized

    def classify(self, action_kind: str, relative_path: str) -> ResourceRule | None:
        action = action_kind.strip().lower()
        for rule in self.definition.resource_rules:
            if action in rule.actions and glob_match(relative_path, rule.pattern):
                return rule
        return None

    def evaluate(self, action_kind: str, resource_path: str) -> Allow | Block:
        relative = self.normalize(resource_path)
        if relative is None:
            return Allow(resource_path=resource_path)
        rule = self.classify(action_kind, relative)
        if rule is None:
            return Allow(resource_path=relative)

        gate = self.inferencer.entry_satisfied(rule.phase_id)
        if gate.ok:
            return Allow(resource_path=relative, phase_id=rule.phase_id)

        target = self.definition.phase(rule.phase_id)
        required_id = self.inferencer.earliest_producer(gate.missing, rule.phase_id)
        required = self.definition.phase(required_id)
        reason = (
            f"{action_kind} on {relative} belongs to the {target.name} phase, whose entry gate "
            f"is unsatisfied (missing: {', '.join(gate.missing)}). "
            f"Complete the {required.name} phase first."
        )
        logger.info("blocked %s %s: missing %s", action_kind, relative, gate.missing)
        return Block(
            reason=reason,
            required_phase=required_id,
            missing_artifact_roles=list(gate.missing),
            target_phase=rule.phase_id,
            resource_path=relative,
        )

    def hook_payload(self, tool_input: dict[str, Any], *, action_kind: str = "write") -> dict:
        """Answer a pre-write hook: extra context on block, empty object otherwise."""
        nested = tool_input.get("tool_input")
        source = nested if isinstance(nested, dict) else tool_input
        file_path = source.get("file_path") or source.get("path") or ""
        if not isinstance(file_path, str) or not file_path:
            return {}
        decision = self.evaluate(action_kind, file_path)
        if decision.allowed:
            return {}
        return {
            "additionalContext": (
                "<HARD-GATE>\n"
                f"{decision.reason}\n"
                f"You MUST engage the '{decision.required_phase}' phase before writing "
                f"{decision.resource_path}.\n"
                "No exceptions.\n"
                "</HARD-GATE>"
            )
        }
