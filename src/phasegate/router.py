from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from phasegate.errors import RoutingAmbiguous
from phasegate.workflow import TriggerPattern, WorkflowDefinition

if TYPE_CHECKING:
    from phasegate.project import ProjectState

NON_WORD_PATTERN = re.compile(r"[^a-z0-9]+")
EXPLICIT_PATTERN = re.compile(r"^\s*/(?P<name>[A-Za-z0-9_-]+)(?:\s+(?P<payload>.*))?$", re.DOTALL)


def normalize_text(text: str) -> str:
    return NON_WORD_PATTERN.sub(" ", text.lower()).strip()


@lru_cache(maxsize=512)
def _compiled(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


@dataclass(slots=True)
class Intent:
    text: str = ""
    explicit_phase: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RouteDecision:
    phase_id: str | None
    explicit: bool = False
    scores: dict[str, float] = field(default_factory=dict)
    candidates: list[str] = field(default_factory=list)
    reason: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    error: RoutingAmbiguous | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase_id,
            "explicit": self.explicit,
            "scores": dict(self.scores),
            "candidates": list(self.candidates),
            "reason": self.reason,
            "payload": dict(self.payload),
            "no_gate_applies": self.error is not None,
        }


class IntentRouter:
    """Maps a request onto one phase.

    Scores are keyword/pattern overlap against each phase's trigger patterns,
    cut at a deliberately low floor. Ties between a process phase and an
    implementation phase go to the process phase until its exit gate holds;
    remaining ties go to the higher score, then to declaration order.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        *,
        confidence_floor: float = 0.15,
        saturation: int = 2,
    ) -> None:
        self.definition = definition
        self.confidence_floor = confidence_floor
        self.saturation = max(1, int(saturation))

    def _lookup_phase(self, name: str) -> str | None:
        wanted = name.strip().lower()
        for phase in self.definition.phases:
            if wanted in {phase.id.lower(), phase.name.lower()}:
                return phase.id
        return None

    def _pattern_hits(self, trigger: TriggerPattern, normalized: str) -> int:
        padded = f" {normalized} "
        hits = 0
        for keyword in trigger.keywords:
            phrase = normalize_text(keyword)
            if phrase and f" {phrase} " in padded:
                hits += 1
        for pattern in trigger.patterns:
            if _compiled(pattern).search(normalized):
                hits += 1
        return hits

    def score(self, text: str) -> dict[str, float]:
        normalized = normalize_text(text)
        scores: dict[str, float] = {}
        if not normalized:
            return scores
        for trigger in self.definition.triggers:
            hits = self._pattern_hits(trigger, normalized)
            if not hits:
                continue
            confidence = min(1.0, trigger.weight * hits / self.saturation)
            scores[trigger.phase_id] = max(scores.get(trigger.phase_id, 0.0), confidence)
        return scores

    def _explicit(self, intent: Intent | str) -> tuple[str, dict[str, Any]] | None:
        if isinstance(intent, Intent):
            if intent.explicit_phase:
                return intent.explicit_phase, dict(intent.payload)
            text = intent.text
        else:
            text = intent
        match = EXPLICIT_PATTERN.match(text or "")
        if match is None:
            return None
        payload: dict[str, Any] = {}
        if match.group("payload"):
            payload["argument"] = match.group("payload").strip()
        return match.group("name"), payload

    def resolve(self, intent: Intent | str, state: ProjectState) -> RouteDecision:
        explicit = self._explicit(intent)
        if explicit is not None:
            name, payload = explicit
            phase_id = self._lookup_phase(name)
            if phase_id is None:
                return RouteDecision(
                    phase_id=None,
                    explicit=True,
                    reason=f"Unknown phase '{name}' in explicit invocation.",
                    payload=payload,
                )
            return RouteDecision(
                phase_id=phase_id,
                explicit=True,
                reason=f"Explicit invocation of '{phase_id}'.",
                payload=payload,
            )

        text = intent.text if isinstance(intent, Intent) else intent
        scores = self.score(text)
        candidates = [
            phase.id
            for phase in self.definition.phases
            if scores.get(phase.id, 0.0) >= self.confidence_floor and scores.get(phase.id, 0.0) > 0
        ]
        if not candidates:
            error = RoutingAmbiguous(text, floor=self.confidence_floor)
            return RouteDecision(
                phase_id=None, scores=scores, reason=str(error), error=error
            )

        pool = candidates
        reason = "highest score"
        process = [pid for pid in candidates if self._classification(pid) == "process"]
        implementation = [pid for pid in candidates if pid not in process]
        if process and implementation:
            open_process = [pid for pid in process if not state.inferencer.exit_satisfied(pid).ok]
            if open_process:
                pool = open_process
                reason = "process phase preferred while its exit gate is open"
            else:
                pool = implementation
                reason = "process phases already satisfied"

        chosen = min(
            pool,
            key=lambda pid: (-scores[pid], self.definition.order(pid)),
        )
        return RouteDecision(
            phase_id=chosen,
            scores=scores,
            candidates=candidates,
            reason=reason,
        )

    def route(self, intent: Intent | str, state: ProjectState) -> str | None:
        return self.resolve(intent, state).phase_id

    def _classification(self, phase_id: str) -> str:
        return self.definition.phase(phase_id).classification
