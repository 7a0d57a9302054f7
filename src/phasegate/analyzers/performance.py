from __future__ import annotations

from phasegate.analyzers.base import AgentAnalyzer


class PerformanceReviewer(AgentAnalyzer):
    role = "performance"
    prompt_file = "performance.md"
    fallback_prompt = """
You are the performance reviewer.
Report gas and runtime regressions as HIGH, MEDIUM, LOW, or INFORMATIONAL.
One finding per line: SEVERITY: title @ path:line. Reply NO FINDINGS when clean.
""".strip()
