from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from phasegate.analyzers import Analyzer, AnalyzerDispatcher, Failure, FindingsBatch
from phasegate.interceptor import Allow, Block, GateInterceptor
from phasegate.policy import TransitionDecision
from phasegate.project import ProjectState
from phasegate.router import Intent, IntentRouter, RouteDecision
from phasegate.state import StateStoreError

logger = logging.getLogger(__name__)

PhaseHandler = Callable[[ProjectState, RouteDecision], Any]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Outcome:
    status: str
    phase_id: str | None = None
    missing: list[str] = field(default_factory=list)
    recommended_phase: str | None = None
    decision: RouteDecision | None = None
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "phase": self.phase_id,
            "missing": list(self.missing),
            "recommended_phase": self.recommended_phase,
        }
        if self.decision is not None:
            payload["route"] = self.decision.to_dict()
        if isinstance(self.result, (str, int, float, bool, dict, list)):
            payload["result"] = self.result
        return payload


@dataclass(slots=True)
class CompletionReport:
    phase_id: str
    status: str = "completed"
    missing: list[str] = field(default_factory=list)
    recommended_phase: str | None = None
    registered: list[str] = field(default_factory=list)
    checklist: list[dict[str, object]] = field(default_factory=list)
    analyzer_outcomes: list[FindingsBatch | Failure] = field(default_factory=list)
    decision: TransitionDecision | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase_id,
            "status": self.status,
            "missing": list(self.missing),
            "recommended_phase": self.recommended_phase,
            "registered": list(self.registered),
            "checklist": list(self.checklist),
            "analyzers": [outcome.to_dict() for outcome in self.analyzer_outcomes],
            "transition": self.decision.to_dict() if self.decision else None,
        }


class Engine:
    """Request pipeline over one project.

    Route, check the entry gate, engage the phase handler; on completion
    register artifacts, re-verify the checklist, dispatch analyzers and evaluate
    the phase's transition. Mutating calls are serialized by one lock, so a
    project sees its requests strictly one after another.
    """

    def __init__(
        self,
        state: ProjectState,
        *,
        router: IntentRouter | None = None,
        analyzers: dict[str, Analyzer] | None = None,
        handlers: dict[str, PhaseHandler] | None = None,
        timeout_seconds: float = 300.0,
        lease_ttl_seconds: float | None = None,
    ) -> None:
        self.state = state
        self.definition = state.definition
        self.router = router or IntentRouter(state.definition)
        self.interceptor = GateInterceptor(state.root, state.definition, state.inferencer)
        self.dispatcher = AnalyzerDispatcher(
            state.definition,
            state.registry,
            state.findings,
            state.store,
            analyzers,
            timeout_seconds=timeout_seconds,
            lease_ttl_seconds=lease_ttl_seconds,
        )
        self.handlers: dict[str, PhaseHandler] = dict(handlers or {})
        self._lock = asyncio.Lock()

    def register_handler(self, phase_id: str, handler: PhaseHandler) -> None:
        self.definition.phase(phase_id)
        self.handlers[phase_id] = handler

    def _record(self, key: str, event: dict[str, Any]) -> None:
        self.state.store.append_event(key, {**event, "at": _utcnow_iso()})

    def _engage(self, phase_id: str, decision: RouteDecision) -> Outcome:
        gate = self.state.inferencer.entry_satisfied(phase_id)
        if not gate.ok:
            recommended = self.state.inferencer.earliest_producer(gate.missing, phase_id)
            logger.info(
                "redirecting %s request to %s (missing %s)", phase_id, recommended, gate.missing
            )
            self._record(
                "gate_results",
                {"phase": phase_id, "gate": "entry", "passed": False, "missing": gate.missing},
            )
            return Outcome(
                status="redirected",
                phase_id=phase_id,
                missing=list(gate.missing),
                recommended_phase=recommended,
                decision=decision,
            )

        handler = self.handlers.get(phase_id)
        result = handler(self.state, decision) if handler is not None else None
        self._record("gate_results", {"phase": phase_id, "gate": "entry", "passed": True})
        return Outcome(status="engaged", phase_id=phase_id, decision=decision, result=result)

    async def handle(
        self, request: Intent | str, payload: dict[str, Any] | None = None
    ) -> Outcome:
        async with self._lock:
            self.state.refresh()
            if isinstance(request, str) and payload:
                request = Intent(text=request, payload=dict(payload))
            decision = self.router.resolve(request, self.state)
            if payload:
                decision.payload = {**decision.payload, **payload}
            if decision.phase_id is None:
                logger.debug("no gate applies: %s", decision.reason)
                return Outcome(status="no_gate", decision=decision)
            return self._engage(decision.phase_id, decision)

    async def invoke(self, phase_id: str, payload: dict[str, Any] | None = None) -> Outcome:
        """Explicit invocation: skip scoring, keep the entry gate."""
        async with self._lock:
            self.definition.phase(phase_id)
            self.state.refresh()
            decision = RouteDecision(
                phase_id=phase_id,
                explicit=True,
                reason=f"Explicit invocation of '{phase_id}'.",
                payload=dict(payload or {}),
            )
            return self._engage(decision.phase_id, decision)

    def guard(self, action_kind: str, resource_path: str) -> Allow | Block:
        decision = self.interceptor.evaluate(action_kind, resource_path)
        if not decision.allowed:
            self._record("blocked_actions", decision.to_dict())
        return decision

    def _analysis_blockers(self, phase_id: str) -> list[str]:
        """Reasons the phase's analyzer results cannot be trusted yet.

        A phase that declares analyzers needs, for every target it was
        analyzed on, a latest run that landed findings from all of them. No run
        at all counts as unanalyzed, never as clean.
        """
        phase = self.definition.phase(phase_id)
        if not phase.analyzers:
            return []
        blockers: list[str] = []
        in_flight = self.dispatcher.leases_held(phase_id)
        if in_flight:
            blockers.append(f"analyzer run in flight on {', '.join(in_flight)}")
        runs = self.dispatcher.latest_runs(phase_id)
        if not runs and not in_flight:
            blockers.append(
                f"not analyzed: no {', '.join(phase.analyzers)} run recorded for '{phase_id}'"
            )
        for target, run in sorted(runs.items()):
            if run.get("outcome") != "findings":
                blockers.append(f"{target}: {run.get('kind')}: {run.get('reason')}")
                continue
            skipped = [role for role in phase.analyzers if role not in run.get("analyzers", [])]
            if skipped:
                blockers.append(f"{target}: not analyzed by {', '.join(skipped)}")
        return blockers

    def _transition_decision(self, phase_id: str) -> TransitionDecision:
        phase = self.definition.phase(phase_id)
        exit_gate = self.state.inferencer.exit_satisfied(phase_id)
        try:
            decision = self.state.policy.evaluate(
                phase.transition_kind, self.state.findings.active()
            )
        except StateStoreError as exc:
            decision = TransitionDecision(
                kind=phase.transition_kind,
                permitted=False,
                reason=f"Findings ledger unreadable, refusing '{phase.transition_kind}': {exc}",
            )
        try:
            blockers = self._analysis_blockers(phase_id)
        except StateStoreError as exc:
            blockers = [f"analyzer run record unreadable: {exc}"]
        decision.missing_items = list(exit_gate.missing)
        decision.analyzer_failures = blockers
        reasons = [decision.reason] if decision.reason else []
        if exit_gate.missing:
            reasons.insert(
                0,
                f"Exit gate of '{phase_id}' unsatisfied; missing: {', '.join(exit_gate.missing)}",
            )
        if blockers:
            reasons.append(f"Analysis of '{phase_id}' incomplete: " + "; ".join(blockers))
        decision.permitted = decision.permitted and exit_gate.ok and not blockers
        decision.reason = ". ".join(reasons)
        return decision

    def _evaluate_transition(self, phase_id: str) -> TransitionDecision:
        self.state.refresh()
        decision = self._transition_decision(phase_id)
        self._record("transitions", {"phase": phase_id, **decision.to_dict()})
        if not decision.permitted:
            logger.info("transition out of %s refused: %s", phase_id, decision.reason)
        return decision

    async def request_transition(self, phase_id: str) -> TransitionDecision:
        async with self._lock:
            return self._evaluate_transition(phase_id)

    async def analyze(
        self,
        phase_id: str,
        *,
        target: str = "project",
        payload: dict[str, Any] | None = None,
    ) -> FindingsBatch | Failure:
        """Run the phase's analyzers without completing it."""
        async with self._lock:
            self.definition.phase(phase_id)
            self.state.refresh()
            bundle = self.dispatcher.assemble_context(phase_id, target, payload)
            return await self.dispatcher.run(phase_id, bundle)

    async def complete_phase(
        self,
        phase_id: str,
        artifacts: dict[str, str] | None = None,
        *,
        target: str = "project",
        payload: dict[str, Any] | None = None,
    ) -> CompletionReport:
        async with self._lock:
            phase = self.definition.phase(phase_id)
            self.state.refresh()
            gate = self.state.inferencer.entry_satisfied(phase_id)
            if not gate.ok:
                recommended = self.state.inferencer.earliest_producer(gate.missing, phase_id)
                self._record(
                    "gate_results",
                    {"phase": phase_id, "gate": "entry", "passed": False, "missing": gate.missing},
                )
                return CompletionReport(
                    phase_id=phase_id,
                    status="redirected",
                    missing=list(gate.missing),
                    recommended_phase=recommended,
                )

            report = CompletionReport(phase_id=phase_id)
            for role, locator in (artifacts or {}).items():
                spec = self.definition.artifact(role)
                self.state.registry.register(
                    role, locator, fresh_after=spec.fresh_after if spec else None
                )
                report.registered.append(role)
            self.state.refresh()
            for item in self.state.tracker.items(phase_id):
                self.state.tracker.verify(item)
                report.checklist.append(item.to_dict())

            if phase.analyzers:
                bundle = self.dispatcher.assemble_context(phase_id, target, payload)
                report.analyzer_outcomes.append(await self.dispatcher.run(phase_id, bundle))

            report.decision = self._evaluate_transition(phase_id)
            return report

    async def approve(self, key: str, *, by: str, note: str = "") -> dict[str, Any]:
        async with self._lock:
            record = self.state.approvals.approve(key, by=by, note=note)
            self._record("approvals", {"key": key, "action": "approve", "by": by})
            return record

    async def revoke(self, key: str) -> bool:
        async with self._lock:
            revoked = self.state.approvals.revoke(key)
            if revoked:
                self._record("approvals", {"key": key, "action": "revoke"})
            return revoked

    def next_action(self) -> str:
        phase_id = self.state.current_phase_id
        entry = self.state.inferencer.entry_satisfied(phase_id)
        if not entry.ok:
            producer = self.state.inferencer.earliest_producer(entry.missing, phase_id)
            return f"Run the '{producer}' phase to produce: {', '.join(entry.missing)}"
        exit_gate = self.state.inferencer.exit_satisfied(phase_id)
        if not exit_gate.ok:
            return f"Finish '{phase_id}': {', '.join(exit_gate.missing)}"
        return f"'{phase_id}' is complete."

    def status(self) -> dict[str, Any]:
        self.state.refresh()
        return {
            "project": str(self.state.root),
            "current_phase": self.state.current_phase_id,
            "satisfied_gates": sorted(self.state.satisfied_gates()),
            "phases": self.state.phase_summary(),
            "artifacts": sorted(self.state.present_roles),
            "conflicts": [
                {"roles": list(conflict.roles), "path": conflict.path}
                for conflict in self.state.conflicts
            ],
            "open_findings": self.state.open_findings(),
            "approvals": sorted(self.state.approvals.all()),
            "next_action": self.next_action(),
        }
