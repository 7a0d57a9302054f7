from __future__ import annotations

from pathlib import Path

from phasegate.analyzers.base import Analyzer, ContextBundle, parse_report
from phasegate.errors import AnalyzerFailure
from phasegate.findings import ReportedFinding


class ReportFileAnalyzer(Analyzer):
    """Replays a review that an external reviewer wrote to a file.

    The file uses the same format an agent reply does: JSON finding lines, or
    ``SEVERITY: title @ location`` lines, or ``NO FINDINGS``.
    """

    def __init__(self, role: str, path: Path) -> None:
        self.role = role
        self.path = path

    async def analyze(self, bundle: ContextBundle) -> list[ReportedFinding]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise AnalyzerFailure(
                f"{self.role} report {self.path} is unreadable: {exc}",
                kind="unavailable",
                phase_id=bundle.phase_id,
                target=bundle.target,
            ) from exc
        findings = parse_report(content)
        if findings is None:
            raise AnalyzerFailure(
                f"{self.role} report {self.path} has no findings and no clean verdict.",
                kind="unparseable",
                phase_id=bundle.phase_id,
                target=bundle.target,
            )
        return findings
