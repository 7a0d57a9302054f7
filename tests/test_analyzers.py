import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from phasegate.analyzers import (
    AnalyzerDispatcher,
    ContextBundle,
    Failure,
    FindingsBatch,
    PerformanceReviewer,
    ReportFileAnalyzer,
    SecurityReviewer,
    parse_report,
)
from phasegate.backends import AgentBackend, BackendExecutionError, BackendTimeoutError
from phasegate.errors import AnalyzerFailure
from phasegate.findings import Severity
from phasegate.project import ProjectState


class FakeBackend(AgentBackend):
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "context": context,
                "tools": tools,
            }
        )
        for index in range(0, len(self.reply), 16):
            yield self.reply[index : index + 16]


class FailingBackend(AgentBackend):
    def __init__(self, error: Exception) -> None:
        self.error = error

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        yield "partial "
        raise self.error


def _bundle(**payload: Any) -> ContextBundle:
    return ContextBundle(
        phase_id="build",
        target="Vault",
        artifacts={"production_source": ["src/Vault.sol"]},
        payload=payload,
    )


def test_parse_report_reads_json_lines() -> None:
    findings = parse_report(
        'Summary first.\n'
        '{"title": "Reentrancy in withdraw", "severity": "critical", "location": "src/Vault.sol:40"}\n'
        '{"title": "Missing event", "severity": "minor"}\n'
    )

    assert [(item.title, item.severity) for item in findings] == [
        ("Reentrancy in withdraw", Severity.CRITICAL),
        ("Missing event", Severity.MEDIUM),
    ]


def test_parse_report_reads_findings_envelope() -> None:
    assert parse_report('{"findings": []}') == []
    findings = parse_report('{"findings": [{"title": "Tx.origin auth", "severity": "high"}]}')
    assert findings[0].title == "Tx.origin auth"


def test_parse_report_reads_severity_lines() -> None:
    findings = parse_report(
        "- HIGH: Unchecked call return @ src/Vault.sol:8\n[LOW] - Magic number\nprose line\n"
    )

    assert [(item.severity, item.title, item.location) for item in findings] == [
        (Severity.HIGH, "Unchecked call return", "src/Vault.sol:8"),
        (Severity.LOW, "Magic number", ""),
    ]


def test_parse_report_distinguishes_clean_from_unreadable() -> None:
    assert parse_report("NO FINDINGS") == []
    assert parse_report("Looks fine to me, ship it.") is None


@pytest.mark.parametrize(
    "content",
    [
        '{"title": "Reentrancy in withdraw", "severity": "severe", "location": "src/Vault.sol:40"}',
        '{"title": "  ", "severity": "critical"}',
        '{"findings": [{"title": "Tx.origin auth", "severity": "high"}, "reentrancy"]}',
        '{"findings": [{"title": "Ok", "severity": "low"}, {"title": "Bad", "severity": "urgent"}]}',
    ],
)
def test_malformed_structured_finding_makes_the_report_unreadable(content: str) -> None:
    assert parse_report(content) is None


def test_security_reviewer_streams_prompt_and_parses_reply() -> None:
    backend = FakeBackend("CRITICAL: Reentrancy in withdraw @ src/Vault.sol:40")
    reviewer = SecurityReviewer(backend, model="review-model")

    findings = asyncio.run(reviewer.analyze(_bundle(diff="+ call{value: amount}")))

    assert findings[0].severity is Severity.CRITICAL
    call = backend.calls[0]
    assert call["system_prompt"].startswith("You are the security reviewer")
    assert "Review target 'Vault' for the build phase." in call["user_prompt"]
    assert "production_source: src/Vault.sol" in call["user_prompt"]
    assert "+ call{value: amount}" in call["user_prompt"]
    assert call["context"]["model"] == "review-model"
    assert call["context"]["role"] == "security"
    assert call["tools"] == ["read_file", "search"]


def test_performance_reviewer_has_its_own_role() -> None:
    reviewer = PerformanceReviewer(FakeBackend("NO FINDINGS"))

    assert reviewer.role == "performance"
    assert reviewer.system_prompt.startswith("You are the performance reviewer")
    assert asyncio.run(reviewer.analyze(_bundle())) == []


def test_empty_reply_is_an_analyzer_failure() -> None:
    reviewer = SecurityReviewer(FakeBackend("   "))

    with pytest.raises(AnalyzerFailure) as excinfo:
        asyncio.run(reviewer.analyze(_bundle()))

    assert excinfo.value.kind == "error"
    assert excinfo.value.target == "Vault"


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (BackendTimeoutError("no reply in 60s", backend="fake"), "timeout"),
        (BackendExecutionError("exit 2", backend="fake", exit_code=2), "backend"),
    ],
)
def test_backend_errors_become_analyzer_failures(error: Exception, kind: str) -> None:
    reviewer = SecurityReviewer(FailingBackend(error))

    with pytest.raises(AnalyzerFailure) as excinfo:
        asyncio.run(reviewer.analyze(_bundle()))

    assert excinfo.value.kind == kind
    assert excinfo.value.__cause__ is error


def test_unparseable_reply_fails_the_dispatch(tmp_path: Path) -> None:
    state = ProjectState.reconstruct(tmp_path)
    dispatcher = AnalyzerDispatcher(
        state.definition,
        state.registry,
        state.findings,
        state.store,
        {"security": SecurityReviewer(FakeBackend("I could not finish the review."))},
    )

    outcome = asyncio.run(dispatcher.run("build"))

    assert isinstance(outcome, Failure)
    assert outcome.kind == "unparseable"
    assert len(state.findings) == 0


def test_reviewer_resolution_flows_into_ledger(tmp_path: Path) -> None:
    state = ProjectState.reconstruct(tmp_path)
    backend = FakeBackend(
        '{"title": "Unchecked call", "severity": "high", "location": "src/Vault.sol:8"}'
    )
    dispatcher = AnalyzerDispatcher(
        state.definition,
        state.registry,
        state.findings,
        state.store,
        {"security": SecurityReviewer(backend)},
    )
    asyncio.run(dispatcher.run("build"))

    backend.reply = (
        '{"title": "Unchecked call", "severity": "high", "location": "src/Vault.sol:8", '
        '"resolved": true, "regression_evidence": "test/Vault.t.sol::testCallFails"}'
    )
    outcome = asyncio.run(dispatcher.run("build"))

    assert isinstance(outcome, FindingsBatch)
    assert outcome.resolved == ["F-0001"]
    assert state.findings.get("F-0001").regression_evidence == "test/Vault.t.sol::testCallFails"


def test_report_file_analyzer_replays_external_review(tmp_path: Path) -> None:
    report = tmp_path / "security-review.txt"
    report.write_text("HIGH: Unchecked call @ src/Vault.sol:8\n", encoding="utf-8")
    analyzer = ReportFileAnalyzer("security", report)

    findings = asyncio.run(analyzer.analyze(_bundle()))

    assert [(item.title, item.severity) for item in findings] == [
        ("Unchecked call", Severity.HIGH)
    ]


def test_report_file_analyzer_fails_on_missing_or_unreadable_file(tmp_path: Path) -> None:
    missing = ReportFileAnalyzer("security", tmp_path / "absent.txt")
    garbled = tmp_path / "garbled.txt"
    garbled.write_text('{"title": "Reentrancy", "severity": "severe"}\n', encoding="utf-8")

    with pytest.raises(AnalyzerFailure) as absent:
        asyncio.run(missing.analyze(_bundle()))
    with pytest.raises(AnalyzerFailure) as unreadable:
        asyncio.run(ReportFileAnalyzer("security", garbled).analyze(_bundle()))

    assert absent.value.kind == "unavailable"
    assert unreadable.value.kind == "unparseable"
