from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from phasegate.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from phasegate.errors import AnalyzerFailure
from phasegate.findings import ReportedFinding

READ_ONLY_TOOLS = {"read_file", "search"}
SEVERITY_LINE_PATTERN = re.compile(
    r"^\s*[-*]?\s*\[?(?P<severity>CRITICAL|HIGH|MEDIUM|LOW|INFORMATIONAL|INFO|"
    r"BLOCKER|MAJOR|MINOR|SUGGESTION)\]?\s*[:\-]\s*(?P<title>.+?)"
    r"(?:\s+@\s+(?P<location>\S+))?\s*$",
    re.IGNORECASE,
)
CLEAN_REPORT_PATTERN = re.compile(r"^\s*(NO FINDINGS|CLEAN)\b", re.IGNORECASE | re.MULTILINE)


@dataclass(slots=True)
class ContextBundle:
    phase_id: str
    target: str
    artifacts: dict[str, list[str]] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "target": self.target,
            "artifacts": {role: list(paths) for role, paths in self.artifacts.items()},
            "payload": dict(self.payload),
        }


class Analyzer(ABC):
    role: str = "analyzer"

    @abstractmethod
    async def analyze(self, bundle: ContextBundle) -> list[ReportedFinding]:
        """Return findings for the bundle, or raise ``AnalyzerFailure``."""


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def parse_report(content: str) -> list[ReportedFinding] | None:
    """Findings from JSON lines or ``SEVERITY: title @ location`` lines.

    Returns None when the text is neither an explicit clean report nor
    contains any recognizable finding, and also when any structured finding
    fails to parse: a report that lost an entry is not a clean report.
    """
    findings: list[ReportedFinding] = []
    structured = False
    for payload in extract_json_objects(content):
        items = payload.get("findings")
        if isinstance(items, list):
            candidates = items
        elif "title" in payload and "severity" in payload:
            candidates = [payload]
        else:
            continue
        structured = True
        for item in candidates:
            if not isinstance(item, dict):
                return None
            try:
                findings.append(ReportedFinding.from_dict(item))
            except (KeyError, TypeError, ValueError):
                return None
    if structured:
        return findings

    for raw_line in content.splitlines():
        match = SEVERITY_LINE_PATTERN.match(raw_line)
        if match is None:
            continue
        findings.append(
            ReportedFinding.from_dict(
                {
                    "title": match.group("title"),
                    "severity": match.group("severity"),
                    "location": match.group("location") or "",
                }
            )
        )
    if findings:
        return findings
    if CLEAN_REPORT_PATTERN.search(content):
        return []
    return None


class AgentAnalyzer(Analyzer):
    """Analyzer that asks an ``AgentBackend`` for a review and parses the reply."""

    prompt_file: str | None = None
    fallback_prompt: str = "You are a code reviewer."

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("phasegate.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def instruction(self, bundle: ContextBundle) -> str:
        lines = [f"Review target '{bundle.target}' for the {bundle.phase_id} phase."]
        for role, paths in sorted(bundle.artifacts.items()):
            if paths:
                lines.append(f"{role}: {', '.join(paths[:50])}")
        diff = bundle.payload.get("diff")
        if isinstance(diff, str) and diff.strip():
            lines.extend(["", "Diff:", diff[:8000]])
        return "\n".join(lines)

    async def analyze(self, bundle: ContextBundle) -> list[ReportedFinding]:
        context = {"bundle": bundle.to_dict(), "role": self.role}
        if self.model:
            context["model"] = self.model
        chunks: list[str] = []
        try:
            async for chunk in self.backend.execute(
                system_prompt=self.system_prompt,
                user_prompt=self.instruction(bundle),
                context=context,
                tools=sorted(READ_ONLY_TOOLS),
            ):
                chunks.append(chunk)
        except BackendTimeoutError as exc:
            raise AnalyzerFailure(
                f"{self.role} backend timed out: {exc}",
                kind="timeout",
                phase_id=bundle.phase_id,
                target=bundle.target,
            ) from exc
        except BackendExecutionError as exc:
            raise AnalyzerFailure(
                f"{self.role} backend failed: {exc}",
                kind="backend",
                phase_id=bundle.phase_id,
                target=bundle.target,
            ) from exc
        content = "".join(chunks).strip()
        if not content:
            raise AnalyzerFailure(
                f"{self.role} returned an empty report.",
                phase_id=bundle.phase_id,
                target=bundle.target,
            )
        findings = parse_report(content)
        if findings is None:
            raise AnalyzerFailure(
                f"{self.role} report contained no findings and no explicit clean verdict.",
                kind="unparseable",
                phase_id=bundle.phase_id,
                target=bundle.target,
            )
        return findings
