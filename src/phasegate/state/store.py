from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StateStoreError(RuntimeError):
    """A state file could not be read, written or locked."""


class RevisionConflict(StateStoreError):
    """The namespace moved on between read and write."""


def _stamp() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class StateStore:
    """Revisioned JSON namespaces on local disk.

    Every namespace is one file holding an envelope
    ``{"schema_version", "revision", "updated_at", "data"}``. Writes go through
    an exclusive lock file and an optimistic revision check, so a batch written
    with ``update_json`` becomes visible all at once.
    """

    NAMESPACES = {"findings", "runs", "approvals", "leases", "artifacts", "metrics"}
    # Unreadable files in these namespaces raise instead of reading as empty.
    FAIL_CLOSED = {"findings", "runs"}
    SCHEMA_VERSION = 1
    UPDATE_ATTEMPTS = 4

    def __init__(self, root: Path, *, state_dir: str = ".phasegate/state") -> None:
        self.root = root.resolve()
        self.state_dir = self.root / state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    def _path(self, namespace: str) -> Path:
        if namespace not in self.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")
        return self.state_dir / f"{namespace}.json"

    # -- locking -----------------------------------------------------------

    def _lock_holder(self) -> int | None:
        try:
            return int(self.lock_file.read_text(encoding="utf-8").strip() or 0) or None
        except (FileNotFoundError, ValueError):
            return None

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _break_stale_lock(self) -> bool:
        """Remove a lock left by a process that no longer exists."""
        holder = self._lock_holder()
        if holder is None or holder == os.getpid() or self._pid_alive(holder):
            return False
        with suppress(FileNotFoundError):
            self.lock_file.unlink()
        logger.warning("removed stale state lock held by dead process %d", holder)
        return True

    def _try_lock(self) -> bool:
        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(str(os.getpid()))
        return True

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        deadline = time.monotonic() + timeout_seconds
        while not self._try_lock():
            if self._break_stale_lock():
                continue
            if time.monotonic() > deadline:
                raise StateStoreError(
                    f"Timed out waiting for state lock {self.lock_file} "
                    f"(held by pid {self._lock_holder()})."
                )
            time.sleep(0.02)
        try:
            yield
        finally:
            with suppress(FileNotFoundError):
                self.lock_file.unlink()

    # -- envelopes ---------------------------------------------------------

    def _load_file(self, namespace: str) -> Any:
        path = self._path(namespace)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            if namespace in self.FAIL_CLOSED:
                raise StateStoreError(
                    f"State file for namespace '{namespace}' is unreadable: {path} ({exc})"
                ) from exc
            logger.warning("ignoring unreadable state file %s", path)
            return None

    def _store_file(self, namespace: str, envelope: dict[str, Any]) -> None:
        path = self._path(namespace)
        staged = path.with_suffix(".json.tmp")
        staged.write_text(
            json.dumps(envelope, ensure_ascii=False, separators=(",", ":")), encoding="utf-8"
        )
        # Readers see the previous batch or the next one, never a mix.
        os.replace(staged, path)

    def _wrap(self, data: Any, revision: int) -> dict[str, Any]:
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": _stamp(),
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        fallback = {} if default is None else default
        stored = self._load_file(namespace)
        if stored is None:
            return self._wrap(fallback, 1)
        if not isinstance(stored, dict) or not {"revision", "data"} <= stored.keys():
            # Bare payload written before envelopes existed.
            return self._wrap(stored, 1)
        return {
            "schema_version": int(stored.get("schema_version") or self.SCHEMA_VERSION),
            "revision": int(stored["revision"] or 1),
            "updated_at": stored.get("updated_at") or _stamp(),
            "data": stored["data"],
        }

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default)["data"]

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        """Write ``data``; with ``expected_revision`` refuse if someone wrote first."""
        self._path(namespace)
        with self._state_lock():
            revision = self.get_envelope(namespace)["revision"]
            if expected_revision is not None and expected_revision != revision:
                raise RevisionConflict(
                    f"Namespace '{namespace}' changed underneath this write "
                    f"(expected revision {expected_revision}, found {revision})."
                )
            self._store_file(namespace, self._wrap(data, revision + 1))

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Read-modify-write ``namespace``, retrying when another writer wins."""
        fallback = {} if default is None else default
        conflict: RevisionConflict | None = None
        for _ in range(self.UPDATE_ATTEMPTS):
            envelope = self.get_envelope(namespace, default=fallback)
            updated = updater(envelope["data"])
            try:
                self.set_json(namespace, updated, expected_revision=envelope["revision"])
            except RevisionConflict as exc:
                conflict = exc
                time.sleep(0.01)
                continue
            return updated
        raise StateStoreError(f"Gave up updating '{namespace}': {conflict}")

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics")
        return metrics if isinstance(metrics, dict) else {}

    def append_event(self, key: str, event: dict[str, Any], *, keep: int = 200) -> None:
        """Append to the ``metrics[key]`` history, keeping the newest ``keep``."""

        def push(metrics: Any) -> dict[str, Any]:
            metrics = metrics if isinstance(metrics, dict) else {}
            history = metrics.get(key)
            history = history if isinstance(history, list) else []
            history.append({**event, "at": event.get("at") or _stamp()})
            metrics[key] = history[-keep:]
            return metrics

        self.update_json("metrics", push)
