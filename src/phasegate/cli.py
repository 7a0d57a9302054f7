from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import click

from phasegate import __version__
from phasegate.analyzers import ReportFileAnalyzer
from phasegate.config import PhaseGateConfig, configure_logging, load_config, save_config
from phasegate.engine import Engine
from phasegate.errors import FindingTransitionError, PhaseGateError
from phasegate.project import ProjectState
from phasegate.router import IntentRouter
from phasegate.state import StateStore, StateStoreError

logger = logging.getLogger(__name__)

CONFIG_OPTION_DEFAULT = "phasegate.toml"
MISSING_GUIDANCE_WARNING = (
    "WARNING: phase guidance not found. Phase routing may not trigger correctly."
)


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: PhaseGateConfig
    state: ProjectState
    engine: Engine


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _load_runtime(project_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    configure_logging(config.logging.level)
    try:
        definition = config.workflow(project_root)
        store = StateStore(project_root, state_dir=config.state.state_dir)
        state = ProjectState.reconstruct(project_root, definition, store=store)
    except (PhaseGateError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    engine = Engine(
        state,
        router=IntentRouter(
            definition,
            confidence_floor=config.router.confidence_floor,
            saturation=config.router.saturation,
        ),
        timeout_seconds=config.dispatch.timeout_seconds,
        lease_ttl_seconds=config.dispatch.lease_ttl_seconds or None,
    )
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        state=state,
        engine=engine,
    )


def _runtime(config_value: str) -> Runtime:
    project_root = Path.cwd().resolve()
    return _load_runtime(project_root, _resolve_config_path(project_root, config_value))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _read_guidance(runtime: Runtime) -> str | None:
    configured = runtime.config.project.guidance_path
    if configured:
        path = runtime.project_root / configured
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8").strip()
    try:
        bundled = resources.files("phasegate.prompts").joinpath("guidance.md")
        return bundled.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        return None


@click.group()
@click.version_option(__version__, prog_name="phasegate")
def cli() -> None:
    """Phase-gated workflow enforcement."""


@cli.command("init")
@click.option("--name", default=None)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def init_command(name: str | None, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    config = load_config(config_path)
    if name:
        config.project.name = name
    save_config(config_path, config)

    try:
        definition = config.workflow(project_root)
    except PhaseGateError as exc:
        raise click.ClickException(str(exc)) from exc
    store = StateStore(project_root, state_dir=config.state.state_dir)
    state = ProjectState.reconstruct(project_root, definition, store=store)

    click.echo(f"Initialized phasegate in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {store.state_dir}")
    click.echo(f"Current phase: {state.current_phase_id}")


@cli.command("status")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        _echo_json(runtime.engine.status())
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("route")
@click.argument("text")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def route_command(text: str, config_value: str) -> None:
    """Route a request (free text or `/phase argument`) and check its entry gate."""
    runtime = _runtime(config_value)
    outcome = asyncio.run(runtime.engine.handle(text))
    _echo_json(outcome.to_dict())


@cli.command("check")
@click.argument("action_kind")
@click.argument("resource_path")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
@click.pass_context
def check_command(
    ctx: click.Context, action_kind: str, resource_path: str, config_value: str
) -> None:
    runtime = _runtime(config_value)
    decision = runtime.engine.guard(action_kind, resource_path)
    _echo_json(decision.to_dict())
    if not decision.allowed:
        ctx.exit(1)


@cli.group("hook")
def hook_group() -> None:
    """Entry points for editor and agent hooks; each prints one JSON object."""


@hook_group.command("pre-write")
@click.option("--action", "action_kind", default="write", show_default=True)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def pre_write_hook(action_kind: str, config_value: str) -> None:
    raw = click.get_text_stream("stdin").read()
    try:
        tool_input = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        logger.warning("pre-write hook received non-JSON input")
        tool_input = {}
    if not isinstance(tool_input, dict):
        tool_input = {}
    runtime = _runtime(config_value)
    payload = runtime.engine.interceptor.hook_payload(tool_input, action_kind=action_kind)
    click.echo(json.dumps(payload, ensure_ascii=False))


@hook_group.command("session-start")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def session_start_hook(config_value: str) -> None:
    runtime = _runtime(config_value)
    guidance = _read_guidance(runtime)
    if guidance is None:
        click.echo(json.dumps({"additionalContext": MISSING_GUIDANCE_WARNING}))
        return
    try:
        status = runtime.engine.status()
    except StateStoreError as exc:
        click.echo(
            json.dumps(
                {"additionalContext": f"{guidance}\n\nWARNING: phase state unreadable: {exc}"},
                ensure_ascii=False,
            )
        )
        return
    summary = (
        f"Current phase: {status['current_phase']}. "
        f"Next: {status['next_action']}. "
        f"Open findings: {len(status['open_findings'])}."
    )
    click.echo(
        json.dumps({"additionalContext": f"{guidance}\n\n{summary}"}, ensure_ascii=False)
    )


@cli.command("approve")
@click.argument("key")
@click.option("--by", "approved_by", default="", help="Who confirmed it; required unless revoking.")
@click.option("--note", default="")
@click.option("--revoke", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def approve_command(
    key: str, approved_by: str, note: str, revoke: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    if revoke:
        if asyncio.run(runtime.engine.revoke(key)):
            click.echo(f"Revoked approval '{key}'.")
        else:
            click.echo(f"No approval '{key}' to revoke.")
        return
    try:
        asyncio.run(runtime.engine.approve(key, by=approved_by, note=note))
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Approved '{key}' by {approved_by}.")


@cli.command("analyze")
@click.argument("phase_id")
@click.option(
    "--report",
    "reports",
    multiple=True,
    metavar="ROLE=PATH",
    help="Review written by an external reviewer for one analyzer role.",
)
@click.option("--target", default="project", show_default=True)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
@click.pass_context
def analyze_command(
    ctx: click.Context, phase_id: str, reports: tuple[str, ...], target: str, config_value: str
) -> None:
    """Record an analyzer run for a phase from review files."""
    runtime = _runtime(config_value)
    for item in reports:
        role, separator, path = item.partition("=")
        if not separator or not role.strip() or not path.strip():
            raise click.BadParameter(f"Expected ROLE=PATH, got {item!r}.", param_hint="--report")
        report_path = Path(path.strip())
        if not report_path.is_absolute():
            report_path = runtime.project_root / report_path
        runtime.engine.dispatcher.register(ReportFileAnalyzer(role.strip(), report_path))
    try:
        outcome = asyncio.run(runtime.engine.analyze(phase_id, target=target))
    except (PhaseGateError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(outcome.to_dict())
    if not outcome.ok:
        ctx.exit(1)


@cli.command("transition")
@click.argument("phase_id")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
@click.pass_context
def transition_command(ctx: click.Context, phase_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        decision = asyncio.run(runtime.engine.request_transition(phase_id))
    except PhaseGateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(decision.to_dict())
    if not decision.permitted:
        ctx.exit(1)


@cli.group("findings")
def findings_group() -> None:
    """Inspect and resolve analyzer findings."""


@findings_group.command("list")
@click.option("--all", "include_all", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def findings_list(include_all: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    ledger = runtime.state.findings
    try:
        findings = ledger.all() if include_all else ledger.active()
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    if not findings:
        click.echo("No findings.")
        return
    for item in findings:
        location = f" @ {item.location}" if item.location else ""
        click.echo(
            f"{item.id} {item.severity.value:<13} {item.status.value:<13} {item.title}{location}"
        )


def _finding_transition(config_value: str, action: str, finding_id: str, *args: str) -> None:
    runtime = _runtime(config_value)
    ledger = runtime.state.findings
    try:
        finding = getattr(ledger, action)(finding_id, *args)
    except (FindingTransitionError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{finding.id} is now {finding.status.value}.")


@findings_group.command("fix")
@click.argument("finding_id")
@click.option("--evidence", required=True, help="Test or commit proving the fix.")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def findings_fix(finding_id: str, evidence: str, config_value: str) -> None:
    _finding_transition(config_value, "mark_fixed", finding_id, evidence)


@findings_group.command("accept")
@click.argument("finding_id")
@click.option("--justification", required=True)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def findings_accept(finding_id: str, justification: str, config_value: str) -> None:
    _finding_transition(config_value, "accept_risk", finding_id, justification)


@findings_group.command("reopen")
@click.argument("finding_id")
@click.option("--reason", required=True)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def findings_reopen(finding_id: str, reason: str, config_value: str) -> None:
    _finding_transition(config_value, "reopen", finding_id, reason)


@findings_group.command("supersede")
@click.argument("finding_id")
@click.argument("replacement_id")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def findings_supersede(finding_id: str, replacement_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.state.findings.supersede(finding_id, replacement_id)
    except (FindingTransitionError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{finding_id} superseded by {replacement_id}.")
