from pathlib import Path

from phasegate.interceptor import Allow, Block, GateInterceptor
from phasegate.project import ProjectState


def _write(root: Path, relative: str, text: str = "x\n") -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _interceptor(root: Path) -> GateInterceptor:
    state = ProjectState.reconstruct(root)
    return GateInterceptor(root, state.definition, state.inferencer)


def test_source_write_without_design_is_blocked(tmp_path: Path) -> None:
    decision = _interceptor(tmp_path).evaluate("write", "src/Vault.sol")

    assert isinstance(decision, Block)
    assert decision.allowed is False
    assert decision.required_phase == "design"
    assert decision.target_phase == "build"
    assert decision.missing_artifact_roles == ["design_doc", "interface_spec"]
    assert "design_doc" in decision.reason


def test_source_write_after_design_is_allowed(tmp_path: Path) -> None:
    _write(tmp_path, "docs/designs/vault.md")
    _write(tmp_path, "docs/interfaces/IVault.sol")

    decision = _interceptor(tmp_path).evaluate("edit", str(tmp_path / "src" / "Vault.sol"))

    assert decision == Allow(resource_path="src/Vault.sol", phase_id="build")


def test_gate_ignores_approvals_and_reads_only_artifacts(tmp_path: Path) -> None:
    _write(tmp_path, "docs/designs/vault.md")
    interceptor = _interceptor(tmp_path)

    decision = interceptor.evaluate("write", "src/Vault.sol")

    assert isinstance(decision, Block)
    assert decision.missing_artifact_roles == ["interface_spec"]


def test_unclassified_and_outside_paths_pass(tmp_path: Path) -> None:
    interceptor = _interceptor(tmp_path)

    assert interceptor.evaluate("write", "README.md").allowed is True
    assert interceptor.evaluate("write", "/etc/hosts").allowed is True
    assert interceptor.evaluate("write", "../elsewhere/src/Vault.sol").allowed is True


def test_non_mutating_actions_pass(tmp_path: Path) -> None:
    assert _interceptor(tmp_path).evaluate("read", "src/Vault.sol").allowed is True


def test_design_documents_are_always_writable(tmp_path: Path) -> None:
    decision = _interceptor(tmp_path).evaluate("create", "docs/designs/vault.md")

    assert decision == Allow(resource_path="docs/designs/vault.md", phase_id="design")


def test_test_writes_point_at_the_earliest_missing_producer(tmp_path: Path) -> None:
    _write(tmp_path, "docs/designs/vault.md")
    _write(tmp_path, "docs/interfaces/IVault.sol")

    decision = _interceptor(tmp_path).evaluate("write", "test/Vault.t.sol")

    assert isinstance(decision, Block)
    assert decision.required_phase == "build"
    assert decision.missing_artifact_roles == ["production_source"]


def test_hook_payload_emits_hard_gate(tmp_path: Path) -> None:
    interceptor = _interceptor(tmp_path)

    payload = interceptor.hook_payload({"tool_input": {"file_path": "src/Vault.sol"}})

    context = payload["additionalContext"]
    assert context.startswith("<HARD-GATE>\n")
    assert "You MUST engage the 'design' phase before writing src/Vault.sol." in context
    assert context.endswith("No exceptions.\n</HARD-GATE>")


def test_hook_payload_is_empty_when_allowed_or_pathless(tmp_path: Path) -> None:
    interceptor = _interceptor(tmp_path)

    assert interceptor.hook_payload({"file_path": "README.md"}) == {}
    assert interceptor.hook_payload({"command": "forge build"}) == {}
