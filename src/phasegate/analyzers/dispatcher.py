from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from phasegate.analyzers.base import Analyzer, ContextBundle
from phasegate.errors import AnalyzerFailure
from phasegate.findings import FindingLedger, ReportedFinding
from phasegate.registry import ArtifactRegistry
from phasegate.state.store import StateStore, StateStoreError
from phasegate.workflow import WorkflowDefinition

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


def _lease_key(phase_id: str, target: str) -> str:
    return f"{phase_id}::{target}"


@dataclass(slots=True)
class FindingsBatch:
    phase_id: str
    target: str
    run_id: str
    analyzers: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    repeated: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": "findings",
            "phase": self.phase_id,
            "target": self.target,
            "run_id": self.run_id,
            "analyzers": list(self.analyzers),
            "created": list(self.created),
            "repeated": list(self.repeated),
            "resolved": list(self.resolved),
        }


@dataclass(slots=True)
class Failure:
    phase_id: str
    target: str
    kind: str
    reason: str
    run_id: str = ""
    analyzer: str = ""

    @property
    def ok(self) -> bool:
        return False

    @property
    def error(self) -> AnalyzerFailure:
        return AnalyzerFailure(
            self.reason, kind=self.kind, phase_id=self.phase_id, target=self.target
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": "failure",
            "phase": self.phase_id,
            "target": self.target,
            "kind": self.kind,
            "reason": self.reason,
            "run_id": self.run_id,
            "analyzer": self.analyzer,
        }


class AnalyzerDispatcher:
    """Runs a phase's analyzers against one target and folds the reports into the ledger.

    At most one run per ``(phase, target)`` is in flight. The lease lives both in
    this process and in the store so that a second engine on the same project
    sees it too. Every analyzer of a run reports before anything is written; the
    ledger then receives the whole run in a single update, or nothing at all.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        registry: ArtifactRegistry,
        ledger: FindingLedger,
        store: StateStore,
        analyzers: dict[str, Analyzer] | None = None,
        *,
        timeout_seconds: float = 300.0,
        lease_ttl_seconds: float | None = None,
    ) -> None:
        self.definition = definition
        self.registry = registry
        self.ledger = ledger
        self.store = store
        self.analyzers: dict[str, Analyzer] = dict(analyzers or {})
        self.timeout_seconds = float(timeout_seconds)
        self.lease_ttl_seconds = (
            float(lease_ttl_seconds)
            if lease_ttl_seconds
            else max(30.0, self.timeout_seconds * 2.0)
        )
        self._inflight: set[str] = set()

    def register(self, analyzer: Analyzer) -> None:
        self.analyzers[analyzer.role] = analyzer

    def assemble_context(
        self,
        phase_id: str,
        target: str = "project",
        payload: dict[str, Any] | None = None,
    ) -> ContextBundle:
        phase = self.definition.phase(phase_id)
        artifacts: dict[str, list[str]] = {}
        for role in (*phase.entry_artifacts, *phase.produces):
            if role in artifacts:
                continue
            artifacts[role] = [
                path.relative_to(self.registry.root).as_posix()
                for path in self.registry.resolve(role)
            ]
        return ContextBundle(
            phase_id=phase_id,
            target=target,
            artifacts=artifacts,
            payload=dict(payload or {}),
        )

    def _acquire_lease(self, key: str, run_id: str) -> bool:
        if key in self._inflight:
            return False
        now_epoch = time.time()
        expires_epoch = now_epoch + self.lease_ttl_seconds

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get(key)
            if isinstance(active, dict):
                active_run = str(active.get("run_id", ""))
                active_expiry = float(active.get("expires_epoch", 0))
                if active_run and active_run != run_id and active_expiry > now_epoch:
                    raise StateStoreError(f"Analyzer lease for {key} is held by {active_run}.")
            leases[key] = {
                "run_id": run_id,
                "acquired_at": _utcnow_iso(),
                "expires_epoch": expires_epoch,
            }
            return leases

        try:
            self.store.update_json("leases", _updater, default={})
        except StateStoreError as exc:
            logger.info("%s", exc)
            return False
        self._inflight.add(key)
        return True

    def _release_lease(self, key: str, run_id: str) -> None:
        self._inflight.discard(key)

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get(key)
            if isinstance(active, dict) and str(active.get("run_id", "")) == run_id:
                leases.pop(key, None)
            return leases

        self.store.update_json("leases", _updater, default={})

    def _selected(self, phase_id: str, analyzers: list[str] | None) -> list[Analyzer]:
        roles = analyzers if analyzers is not None else list(self.definition.phase(phase_id).analyzers)
        missing = [role for role in roles if role not in self.analyzers]
        if missing:
            raise AnalyzerFailure(
                f"No analyzer registered for role(s): {', '.join(missing)}",
                kind="unavailable",
                phase_id=phase_id,
            )
        return [self.analyzers[role] for role in roles]

    async def _collect(
        self, selected: list[Analyzer], bundle: ContextBundle
    ) -> list[ReportedFinding]:
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(analyzer.analyze(bundle)) for analyzer in selected]
        except ExceptionGroup as errors:
            raise errors.exceptions[0] from None
        reports: list[ReportedFinding] = []
        for analyzer, task in zip(selected, tasks):
            for report in task.result():
                report.analyzer = report.analyzer or analyzer.role
                reports.append(report)
        return reports

    def _record(self, outcome: FindingsBatch | Failure, *, latest: bool = True) -> None:
        record = {**outcome.to_dict(), "at": _utcnow_iso()}
        self.store.append_event("analyzer_runs", record, keep=100)
        if not latest:
            return

        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            runs[_lease_key(outcome.phase_id, outcome.target)] = record
            return runs

        self.store.update_json("runs", _updater, default={})

    def latest_runs(self, phase_id: str) -> dict[str, dict[str, Any]]:
        """Most recent run outcome per target of ``phase_id``, never trimmed."""
        runs = self.store.get_json("runs", default={})
        if not isinstance(runs, dict):
            raise StateStoreError("Analyzer run record has an unexpected shape.")
        prefix = _lease_key(phase_id, "")
        return {
            key[len(prefix) :]: record
            for key, record in runs.items()
            if key.startswith(prefix) and isinstance(record, dict)
        }

    def leases_held(self, phase_id: str) -> list[str]:
        """Targets of ``phase_id`` with a run in flight here or in another process."""
        prefix = _lease_key(phase_id, "")
        held = {key[len(prefix) :] for key in self._inflight if key.startswith(prefix)}
        leases = self.store.get_json("leases", default={})
        now_epoch = time.time()
        for key, lease in (leases.items() if isinstance(leases, dict) else ()):
            if (
                key.startswith(prefix)
                and isinstance(lease, dict)
                and float(lease.get("expires_epoch", 0)) > now_epoch
            ):
                held.add(key[len(prefix) :])
        return sorted(held)

    async def run(
        self,
        phase_id: str,
        bundle: ContextBundle | None = None,
        *,
        target: str = "project",
        analyzers: list[str] | None = None,
    ) -> FindingsBatch | Failure:
        if bundle is None:
            bundle = self.assemble_context(phase_id, target)
        else:
            target = bundle.target
        run_id = _new_run_id()

        try:
            selected = self._selected(phase_id, analyzers)
        except AnalyzerFailure as exc:
            failure = Failure(phase_id, target, exc.kind, str(exc), run_id=run_id)
            self._record(failure)
            return failure

        key = _lease_key(phase_id, target)
        if not self._acquire_lease(key, run_id):
            failure = Failure(
                phase_id,
                target,
                "lease_held",
                f"An analyzer run for phase '{phase_id}' on '{target}' is already in flight.",
                run_id=run_id,
            )
            self._record(failure, latest=False)
            return failure

        outcome: FindingsBatch | Failure
        try:
            try:
                reports = await asyncio.wait_for(
                    self._collect(selected, bundle), timeout=self.timeout_seconds
                )
            except TimeoutError:
                outcome = Failure(
                    phase_id,
                    target,
                    "timeout",
                    f"Analyzers for phase '{phase_id}' exceeded {self.timeout_seconds:.0f}s.",
                    run_id=run_id,
                )
            except AnalyzerFailure as exc:
                outcome = Failure(phase_id, target, exc.kind, str(exc), run_id=run_id)
            except Exception as exc:  # noqa: BLE001
                outcome = Failure(
                    phase_id,
                    target,
                    "error",
                    f"{type(exc).__name__}: {exc}",
                    run_id=run_id,
                )
            else:
                outcome = self._commit(reports, selected, phase_id, target, run_id)
        finally:
            self._release_lease(key, run_id)

        if isinstance(outcome, Failure):
            logger.warning("analyzer run %s failed (%s): %s", run_id, outcome.kind, outcome.reason)
        else:
            logger.info(
                "analyzer run %s: %d new, %d repeated, %d resolved",
                run_id,
                len(outcome.created),
                len(outcome.repeated),
                len(outcome.resolved),
            )
        self._record(outcome)
        return outcome

    def _commit(
        self,
        reports: list[ReportedFinding],
        selected: list[Analyzer],
        phase_id: str,
        target: str,
        run_id: str,
    ) -> FindingsBatch | Failure:
        try:
            result = self.ledger.append_batch(
                reports,
                phase_id=phase_id,
                target=target,
                analyzer="+".join(analyzer.role for analyzer in selected),
                run_id=run_id,
            )
        except StateStoreError as exc:
            return Failure(phase_id, target, "ledger_unreadable", str(exc), run_id=run_id)
        return FindingsBatch(
            phase_id=phase_id,
            target=target,
            run_id=run_id,
            analyzers=[analyzer.role for analyzer in selected],
            created=[item.id for item in result.created],
            repeated=[item.id for item in result.repeated],
            resolved=[item.id for item in result.resolved],
        )
