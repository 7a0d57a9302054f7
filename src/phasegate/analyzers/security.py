from __future__ import annotations

from phasegate.analyzers.base import AgentAnalyzer


class SecurityReviewer(AgentAnalyzer):
    role = "security"
    prompt_file = "security.md"
    fallback_prompt = """
You are the security reviewer.
Report exploitable issues as CRITICAL, HIGH, MEDIUM, LOW, or INFORMATIONAL.
One finding per line: SEVERITY: title @ path:line. Reply NO FINDINGS when clean.
""".strip()
