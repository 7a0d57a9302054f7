from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from phasegate.errors import WorkflowDefinitionError
from phasegate.workflow import WorkflowDefinition, default_workflow, load_workflow

LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-protocol"
    workflow_path: str = ""
    guidance_path: str = ""


@dataclass(slots=True)
class RouterConfig:
    confidence_floor: float = 0.15
    saturation: int = 2


@dataclass(slots=True)
class DispatchConfig:
    timeout_seconds: float = 300.0
    lease_ttl_seconds: float = 0.0


@dataclass(slots=True)
class StateConfig:
    state_dir: str = ".phasegate/state"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "WARNING"


@dataclass(slots=True)
class PhaseGateConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PhaseGateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PhaseGateConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            router=RouterConfig(**data.get("router", {})),
            dispatch=DispatchConfig(**data.get("dispatch", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "workflow_path": self.project.workflow_path,
                "guidance_path": self.project.guidance_path,
            },
            "router": {
                "confidence_floor": self.router.confidence_floor,
                "saturation": self.router.saturation,
            },
            "dispatch": {
                "timeout_seconds": self.dispatch.timeout_seconds,
                "lease_ttl_seconds": self.dispatch.lease_ttl_seconds,
            },
            "state": {
                "state_dir": self.state.state_dir,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def workflow(self, root: Path) -> WorkflowDefinition:
        """The configured workflow, resolved against ``root``, or the bundled default."""
        if not self.project.workflow_path:
            return default_workflow()
        path = root / self.project.workflow_path
        if not path.exists():
            raise WorkflowDefinitionError(f"Workflow file not found: {path}")
        return load_workflow(path)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PhaseGateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "router", "dispatch", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PhaseGateConfig:
    if not path.exists():
        return PhaseGateConfig.default()
    return PhaseGateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PhaseGateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def configure_logging(level: str = "WARNING") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)
