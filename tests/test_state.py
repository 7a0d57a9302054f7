import json
from pathlib import Path

import pytest

from phasegate.state import ApprovalBook, RevisionConflict, StateStore, StateStoreError


def test_state_store_roundtrip_with_envelope(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("approvals", {"design": {"approved_by": "alice"}})

    raw = json.loads((tmp_path / ".phasegate/state/approvals.json").read_text(encoding="utf-8"))
    assert raw["schema_version"] == 1
    assert raw["revision"] == 2
    assert raw["data"] == {"design": {"approved_by": "alice"}}
    assert store.get_json("approvals") == {"design": {"approved_by": "alice"}}


def test_state_store_rejects_unknown_namespace(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    with pytest.raises(StateStoreError, match="Unsupported namespace"):
        store.set_json("context", {})


def test_state_store_detects_stale_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("metrics", {"runs": 1})
    revision = store.get_envelope("metrics")["revision"]
    store.set_json("metrics", {"runs": 2})

    with pytest.raises(RevisionConflict, match="expected revision 2, found 3"):
        store.set_json("metrics", {"runs": 3}, expected_revision=revision)
    assert store.get_json("metrics") == {"runs": 2}


def test_update_json_applies_updater_against_latest_data(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    for _ in range(3):
        store.update_json("metrics", lambda payload: {"count": payload.get("count", 0) + 1})

    assert store.get_json("metrics") == {"count": 3}
    assert store.get_envelope("metrics")["revision"] == 4


def test_append_event_caps_history(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    for index in range(5):
        store.append_event("transitions", {"index": index}, keep=3)

    history = store.get_metrics()["transitions"]
    assert [item["index"] for item in history] == [2, 3, 4]
    assert all(item["at"] for item in history)


def test_corrupt_metrics_file_reads_as_default(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    (store.state_dir / "metrics.json").write_text("{not json", encoding="utf-8")

    assert store.get_metrics() == {}


@pytest.mark.parametrize("namespace", ["findings", "runs"])
def test_corrupt_audit_file_refuses_reads_and_writes(tmp_path: Path, namespace: str) -> None:
    store = StateStore(tmp_path)
    path = store.state_dir / f"{namespace}.json"
    path.write_text('{"schema_version": 1, "revision": 3, "da', encoding="utf-8")

    with pytest.raises(StateStoreError, match="unreadable"):
        store.get_json(namespace)
    with pytest.raises(StateStoreError, match="unreadable"):
        store.update_json(namespace, lambda payload: {}, default={})

    assert path.read_text(encoding="utf-8") == '{"schema_version": 1, "revision": 3, "da'


def test_stale_lock_from_dead_process_is_broken(tmp_path: Path, monkeypatch) -> None:
    store = StateStore(tmp_path)
    store.lock_file.write_text("424242", encoding="utf-8")
    monkeypatch.setattr(StateStore, "_pid_alive", staticmethod(lambda pid: False))

    store.set_json("approvals", {"design": {"approved_by": "alice"}})

    assert store.get_json("approvals") == {"design": {"approved_by": "alice"}}
    assert not store.lock_file.exists()


def test_live_lock_holder_times_out(tmp_path: Path, monkeypatch) -> None:
    store = StateStore(tmp_path)
    store.lock_file.write_text("424242", encoding="utf-8")
    monkeypatch.setattr(StateStore, "_pid_alive", staticmethod(lambda pid: True))

    with pytest.raises(StateStoreError, match="held by pid 424242"):
        with store._state_lock(timeout_seconds=0.05):
            pass

    assert store.lock_file.exists()


def test_approval_book_records_and_revokes(tmp_path: Path) -> None:
    book = ApprovalBook(StateStore(tmp_path))

    assert book.is_approved("design") is False
    record = book.approve("design", by="alice", note="looks good")

    assert record["approved_by"] == "alice"
    assert book.is_approved("design") is True
    assert book.get("design")["note"] == "looks good"
    assert book.revoke("design") is True
    assert book.revoke("design") is False
    assert book.is_approved("design") is False


def test_approval_requires_a_named_approver(tmp_path: Path) -> None:
    book = ApprovalBook(StateStore(tmp_path))

    with pytest.raises(StateStoreError, match="must name who confirmed"):
        book.approve("deploy", by="  ")
    assert book.all() == {}


def test_update_json_retries_when_another_writer_wins(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    calls = []

    def bump(payload: dict) -> dict:
        calls.append(payload.get("count", 0))
        if len(calls) == 1:
            store.set_json("metrics", {"count": 10})
        return {"count": payload.get("count", 0) + 1}

    assert store.update_json("metrics", bump) == {"count": 11}
    assert calls == [0, 10]
