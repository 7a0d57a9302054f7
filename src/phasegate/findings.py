from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from phasegate.errors import FindingTransitionError
from phasegate.state.store import StateStore, StateStoreError


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"

    @classmethod
    def parse(cls, value: str) -> Severity:
        normalized = str(value).strip().lower()
        aliases = {
            "blocker": "critical",
            "major": "high",
            "minor": "medium",
            "warning": "medium",
            "suggestion": "informational",
            "info": "informational",
            "note": "informational",
        }
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Unknown severity: {value}") from exc


class FindingStatus(str, Enum):
    OPEN = "open"
    FIXED = "fixed"
    ACCEPTED_RISK = "accepted_risk"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def signature(title: str, location: str) -> tuple[str, str]:
    return (" ".join(title.lower().split()), location.strip().replace("\\", "/"))


@dataclass(slots=True)
class Finding:
    id: str
    severity: Severity
    title: str
    location: str
    description: str = ""
    status: FindingStatus = FindingStatus.OPEN
    regression_evidence: str = ""
    justification: str = ""
    phase_id: str | None = None
    target: str | None = None
    analyzer: str | None = None
    run_id: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    superseded_by: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def signature(self) -> tuple[str, str]:
        return signature(self.title, self.location)

    @property
    def superseded(self) -> bool:
        return self.superseded_by is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "title": self.title,
            "location": self.location,
            "description": self.description,
            "status": self.status.value,
            "regression_evidence": self.regression_evidence,
            "justification": self.justification,
            "phase_id": self.phase_id,
            "target": self.target,
            "analyzer": self.analyzer,
            "run_id": self.run_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "superseded_by": self.superseded_by,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Finding:
        return cls(
            id=str(payload["id"]),
            severity=Severity.parse(payload["severity"]),
            title=str(payload["title"]),
            location=str(payload.get("location", "")),
            description=str(payload.get("description", "")),
            status=FindingStatus(payload.get("status", "open")),
            regression_evidence=str(payload.get("regression_evidence") or ""),
            justification=str(payload.get("justification") or ""),
            phase_id=payload.get("phase_id"),
            target=payload.get("target"),
            analyzer=payload.get("analyzer"),
            run_id=payload.get("run_id"),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            updated_at=str(payload.get("updated_at") or _utcnow_iso()),
            superseded_by=payload.get("superseded_by"),
            history=list(payload.get("history", [])),
        )


@dataclass(slots=True)
class ReportedFinding:
    """One entry of a findings batch as an analyzer reports it."""

    title: str
    severity: Severity
    location: str = ""
    description: str = ""
    resolved: bool = False
    regression_evidence: str = ""
    analyzer: str = ""

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ReportedFinding:
        title = str(payload.get("title", "")).strip()
        if not title:
            raise ValueError("Reported finding must have a title.")
        return cls(
            title=title,
            severity=Severity.parse(payload.get("severity", "informational")),
            location=str(payload.get("location", "")).strip(),
            description=str(payload.get("description", "")).strip(),
            resolved=bool(payload.get("resolved", False))
            or str(payload.get("status", "")).lower() in {"fixed", "resolved"},
            regression_evidence=str(payload.get("regression_evidence") or "").strip(),
        )


@dataclass(slots=True)
class BatchResult:
    created: list[Finding] = field(default_factory=list)
    repeated: list[Finding] = field(default_factory=list)
    resolved: list[Finding] = field(default_factory=list)


def _load(payload: Any) -> list[Finding]:
    """Parse the ledger; any record that does not parse fails the whole read."""
    if payload is None:
        return []
    if not isinstance(payload, dict) or not isinstance(payload.get("findings", []), list):
        raise StateStoreError("Findings ledger has an unexpected shape.")
    findings: list[Finding] = []
    for index, record in enumerate(payload.get("findings", [])):
        if not isinstance(record, dict):
            raise StateStoreError(f"Findings ledger record {index} is not an object.")
        try:
            findings.append(Finding.from_dict(record))
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(
                f"Findings ledger record {index} ({record.get('id', '?')}) is unreadable: {exc}"
            ) from exc
    return findings


def _next_seq(payload: Any, findings: list[Finding]) -> int:
    if isinstance(payload, dict) and payload.get("next_seq"):
        return int(payload["next_seq"])
    return len(findings) + 1


def _dump(findings: list[Finding], next_seq: int) -> dict[str, Any]:
    return {"next_seq": next_seq, "findings": [item.to_dict() for item in findings]}


class FindingLedger:
    """Append-only record of analyzer findings.

    Findings are never removed. Status moves only through the explicit
    transition methods below, and every batch lands in one store update.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def all(self) -> list[Finding]:
        return _load(self.store.get_json("findings", default={"findings": []}))

    def active(self) -> list[Finding]:
        return [item for item in self.all() if not item.superseded]

    def open(self) -> list[Finding]:
        return [item for item in self.active() if item.status is FindingStatus.OPEN]

    def get(self, finding_id: str) -> Finding | None:
        for item in self.all():
            if item.id == finding_id:
                return item
        return None

    def __len__(self) -> int:
        return len(self.all())

    def append_batch(
        self,
        reports: list[ReportedFinding],
        *,
        phase_id: str,
        target: str,
        analyzer: str,
        run_id: str,
    ) -> BatchResult:
        """Reconcile a run's reports by (title, location) and commit them at once."""
        result = BatchResult()

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal result
            result = BatchResult()
            findings = _load(payload)
            next_seq = _next_seq(payload, findings)
            by_signature = {
                item.signature: item for item in findings if not item.superseded
            }
            seen: set[tuple[str, str]] = set()
            now = _utcnow_iso()
            for report in reports:
                key = signature(report.title, report.location)
                if key in seen:
                    continue
                seen.add(key)
                existing = by_signature.get(key)
                if existing is None:
                    if report.resolved:
                        continue
                    finding = Finding(
                        id=f"F-{next_seq:04d}",
                        severity=report.severity,
                        title=report.title,
                        location=report.location,
                        description=report.description,
                        phase_id=phase_id,
                        target=target,
                        analyzer=report.analyzer or analyzer,
                        run_id=run_id,
                        created_at=now,
                        updated_at=now,
                        history=[{"status": "open", "at": now, "run_id": run_id}],
                    )
                    next_seq += 1
                    findings.append(finding)
                    by_signature[key] = finding
                    result.created.append(finding)
                    continue
                if report.resolved and existing.status is not FindingStatus.FIXED:
                    reporter = report.analyzer or analyzer
                    existing.status = FindingStatus.FIXED
                    existing.regression_evidence = (
                        report.regression_evidence or f"{reporter}:{run_id}"
                    )
                    existing.updated_at = now
                    existing.history.append(
                        {"status": "fixed", "at": now, "run_id": run_id, "by": reporter}
                    )
                    result.resolved.append(existing)
                else:
                    result.repeated.append(existing)
            return _dump(findings, next_seq)

        self.store.update_json("findings", _updater, default={"findings": []})
        return result

    def _transition(
        self, finding_id: str, mutate: Callable[[Finding, list[Finding]], None]
    ) -> Finding:
        changed: Finding | None = None

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal changed
            findings = _load(payload)
            next_seq = _next_seq(payload, findings)
            for item in findings:
                if item.id == finding_id:
                    mutate(item, findings)
                    item.updated_at = _utcnow_iso()
                    changed = item
                    break
            else:
                raise FindingTransitionError(f"Finding not found: {finding_id}")
            return _dump(findings, next_seq)

        self.store.update_json("findings", _updater, default={"findings": []})
        if changed is None:
            raise FindingTransitionError(f"Finding not found: {finding_id}")
        return changed

    def mark_fixed(self, finding_id: str, regression_evidence: str, *, by: str = "user") -> Finding:
        evidence = regression_evidence.strip()
        if not evidence:
            raise FindingTransitionError(
                f"Finding {finding_id} cannot be marked fixed without regression evidence."
            )

        def _mutate(item: Finding, _findings: list[Finding]) -> None:
            item.status = FindingStatus.FIXED
            item.regression_evidence = evidence
            item.history.append({"status": "fixed", "at": _utcnow_iso(), "by": by})

        return self._transition(finding_id, _mutate)

    def accept_risk(self, finding_id: str, justification: str, *, by: str = "user") -> Finding:
        reason = justification.strip()
        if not reason:
            raise FindingTransitionError(
                f"Finding {finding_id} cannot be accepted as a risk without a justification."
            )

        def _mutate(item: Finding, _findings: list[Finding]) -> None:
            if item.status is FindingStatus.FIXED:
                raise FindingTransitionError(f"Finding {finding_id} is already fixed.")
            item.status = FindingStatus.ACCEPTED_RISK
            item.justification = reason
            item.history.append({"status": "accepted_risk", "at": _utcnow_iso(), "by": by})

        return self._transition(finding_id, _mutate)

    def reopen(self, finding_id: str, reason: str, *, by: str = "user") -> Finding:
        def _mutate(item: Finding, _findings: list[Finding]) -> None:
            item.status = FindingStatus.OPEN
            item.history.append(
                {"status": "open", "at": _utcnow_iso(), "by": by, "reason": reason}
            )

        return self._transition(finding_id, _mutate)

    def supersede(self, finding_id: str, replacement_id: str) -> Finding:
        if finding_id == replacement_id:
            raise FindingTransitionError("A finding cannot supersede itself.")

        def _mutate(item: Finding, findings: list[Finding]) -> None:
            if not any(other.id == replacement_id for other in findings):
                raise FindingTransitionError(f"Replacement finding not found: {replacement_id}")
            item.superseded_by = replacement_id
            item.history.append(
                {"superseded_by": replacement_id, "at": _utcnow_iso()}
            )

        return self._transition(finding_id, _mutate)
