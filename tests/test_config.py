import tomllib
from pathlib import Path

import pytest

from phasegate import __version__
from phasegate.config import PhaseGateConfig, dumps_toml, load_config, save_config
from phasegate.errors import WorkflowDefinitionError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "phasegate.toml"
    config = PhaseGateConfig.default()
    config.project.name = "vault"
    config.project.guidance_path = "GUIDE.md"
    config.router.confidence_floor = 0.3
    config.router.saturation = 3
    config.dispatch.timeout_seconds = 45.0
    config.state.state_dir = ".gate"
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "vault"
    assert loaded.project.guidance_path == "GUIDE.md"
    assert loaded.router.confidence_floor == 0.3
    assert loaded.router.saturation == 3
    assert loaded.dispatch.timeout_seconds == 45.0
    assert loaded.dispatch.lease_ttl_seconds == 0.0
    assert loaded.state.state_dir == ".gate"
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == PhaseGateConfig.default()
    assert loaded.router.confidence_floor == 0.15


def test_dumps_toml_is_valid_toml() -> None:
    rendered = dumps_toml(PhaseGateConfig.default())
    parsed = tomllib.loads(rendered)

    assert list(parsed) == ["project", "router", "dispatch", "state", "logging"]
    assert parsed["dispatch"]["timeout_seconds"] == 300.0
    assert isinstance(parsed["dispatch"]["lease_ttl_seconds"], float)


def test_workflow_defaults_to_bundled_definition(tmp_path: Path) -> None:
    definition = PhaseGateConfig.default().workflow(tmp_path)

    assert [phase.id for phase in definition.phases] == [
        "design",
        "build",
        "test",
        "optimize",
        "document",
        "ship",
        "audit",
    ]


def test_workflow_path_that_does_not_exist_is_rejected(tmp_path: Path) -> None:
    config = PhaseGateConfig.default()
    config.project.workflow_path = "missing-workflow.toml"

    with pytest.raises(WorkflowDefinitionError, match="not found"):
        config.workflow(tmp_path)


def test_workflow_loaded_from_configured_file(tmp_path: Path) -> None:
    (tmp_path / "flow.toml").write_text(
        """
[[phases]]
id = "draft"
classification = "process"
produces = ["notes"]

[[phases]]
id = "write"
entry_artifacts = ["notes"]

[[artifacts]]
role = "notes"
locator = "notes/*.md"
""".strip(),
        encoding="utf-8",
    )
    config = PhaseGateConfig.default()
    config.project.workflow_path = "flow.toml"

    definition = config.workflow(tmp_path)

    assert [phase.id for phase in definition.phases] == ["draft", "write"]
    assert definition.producer_of("notes").id == "draft"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
