from pathlib import Path

from phasegate.errors import RoutingAmbiguous
from phasegate.project import ProjectState
from phasegate.router import Intent, IntentRouter, normalize_text
from phasegate.workflow import default_workflow


def _write(root: Path, relative: str, text: str = "x\n") -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _router() -> IntentRouter:
    return IntentRouter(default_workflow())


def test_normalize_text_strips_punctuation() -> None:
    assert normalize_text("  Implement the `deposit()` function! ") == (
        "implement the deposit function"
    )


def test_scores_saturate_at_one() -> None:
    scores = _router().score("design the token contract protocol")

    assert scores["design"] == 1.0


def test_new_token_request_on_empty_project_routes_to_design(tmp_path: Path) -> None:
    state = ProjectState.reconstruct(tmp_path)

    decision = _router().resolve("implement a token contract", state)

    assert decision.phase_id == "design"
    assert set(decision.candidates) == {"design", "build"}
    assert decision.reason == "process phase preferred while its exit gate is open"


def test_implementation_request_after_design_routes_to_build(tmp_path: Path) -> None:
    _write(tmp_path, "docs/designs/vault.md")
    _write(tmp_path, "docs/interfaces/IVault.sol")
    state = ProjectState.reconstruct(tmp_path)

    assert _router().route("implement deposit function", state) == "build"


def test_satisfied_process_phase_yields_to_implementation(tmp_path: Path) -> None:
    _write(tmp_path, "docs/designs/vault.md")
    _write(tmp_path, "docs/interfaces/IVault.sol")
    state = ProjectState.reconstruct(tmp_path)
    state.approvals.approve("design", by="alice")

    decision = _router().resolve("implement a token contract", state)

    assert decision.phase_id == "build"
    assert decision.reason == "process phases already satisfied"


def test_equal_scores_fall_back_to_declaration_order(tmp_path: Path) -> None:
    state = ProjectState.reconstruct(tmp_path)

    decision = _router().resolve("test gas", state)

    assert decision.scores == {"test": 0.5, "optimize": 0.5}
    assert decision.phase_id == "test"


def test_pattern_triggers_count_as_hits(tmp_path: Path) -> None:
    state = ProjectState.reconstruct(tmp_path)

    assert _router().route("is this secure against reentrancy", state) == "audit"


def test_no_match_means_no_gate_applies(tmp_path: Path) -> None:
    state = ProjectState.reconstruct(tmp_path)

    decision = _router().resolve("what's the weather like", state)

    assert decision.phase_id is None
    assert isinstance(decision.error, RoutingAmbiguous)
    assert decision.to_dict()["no_gate_applies"] is True


def test_confidence_floor_filters_weak_matches(tmp_path: Path) -> None:
    state = ProjectState.reconstruct(tmp_path)
    strict = IntentRouter(default_workflow(), confidence_floor=0.75)

    assert strict.route("fix it", state) is None
    assert _router().route("fix it", state) == "build"


def test_explicit_invocation_bypasses_scoring(tmp_path: Path) -> None:
    state = ProjectState.reconstruct(tmp_path)

    decision = _router().resolve("/audit Vault.sol", state)

    assert decision.phase_id == "audit"
    assert decision.explicit is True
    assert decision.payload == {"argument": "Vault.sol"}
    assert decision.scores == {}


def test_explicit_intent_object_and_unknown_phase(tmp_path: Path) -> None:
    state = ProjectState.reconstruct(tmp_path)
    router = _router()

    chosen = router.resolve(Intent(explicit_phase="Ship", payload={"network": "sepolia"}), state)
    unknown = router.resolve("/celebrate", state)

    assert chosen.phase_id == "ship"
    assert chosen.payload == {"network": "sepolia"}
    assert unknown.phase_id is None
    assert "celebrate" in unknown.reason
