from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any

from phasegate.errors import ArtifactConflict
from phasegate.state.store import StateStore
from phasegate.workflow import ArtifactSpec

logger = logging.getLogger(__name__)

GLOB_CHARS = re.compile(r"[*?\[]")


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
            continue
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("".join(parts) + r"\Z")


def glob_match(path: str, pattern: str) -> bool:
    """Match a POSIX relative path against a glob where ``**`` spans directories."""
    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    if not GLOB_CHARS.search(pattern):
        stripped = pattern.rstrip("/")
        return normalized == stripped or normalized.startswith(stripped + "/")
    return _glob_regex(pattern).match(normalized) is not None


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Artifact:
    role: str
    locator: str
    fresh_after: str | None = None
    registered_at: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "locator": self.locator,
            "fresh_after": self.fresh_after,
            "registered_at": self.registered_at,
            "history": list(self.history),
        }


class ArtifactRegistry:
    """Logical artifact roles mapped onto files under the project root.

    Existence is never cached: every ``exists`` call looks at the disk. A file
    claimed by two roles is an ``ArtifactConflict``; both roles then read as
    missing while the rest of the registry keeps working.
    """

    def __init__(
        self,
        root: Path,
        specs: tuple[ArtifactSpec, ...] | list[ArtifactSpec] = (),
        *,
        store: StateStore | None = None,
    ) -> None:
        self.root = root.resolve()
        self.store = store
        self._artifacts: dict[str, Artifact] = {
            spec.role: Artifact(role=spec.role, locator=spec.locator, fresh_after=spec.fresh_after)
            for spec in specs
        }
        self.last_conflicts: list[ArtifactConflict] = []
        self._load_registrations()

    def _load_registrations(self) -> None:
        if self.store is None:
            return
        payload = self.store.get_json("artifacts", default={})
        if not isinstance(payload, dict):
            return
        for role, record in payload.items():
            if not isinstance(record, dict) or not record.get("locator"):
                continue
            current = self._artifacts.get(role)
            self._artifacts[role] = Artifact(
                role=role,
                locator=str(record["locator"]),
                fresh_after=record.get("fresh_after") or (current.fresh_after if current else None),
                registered_at=record.get("registered_at"),
                history=list(record.get("history", [])),
            )

    @property
    def roles(self) -> list[str]:
        return list(self._artifacts)

    def artifact(self, role: str) -> Artifact | None:
        return self._artifacts.get(role)

    def register(self, role: str, locator: str, *, fresh_after: str | None = None) -> Artifact:
        """Bind ``role`` to ``locator``, superseding any earlier binding."""
        role = role.strip()
        locator = locator.strip().replace("\\", "/")
        if not role or not locator:
            raise ValueError("Artifact role and locator must be non-empty.")
        now = _utcnow_iso()
        previous = self._artifacts.get(role)
        history: list[dict[str, Any]] = []
        if previous is not None:
            history = list(previous.history)
            if previous.locator != locator:
                history.append(
                    {"locator": previous.locator, "superseded_at": now}
                )
        artifact = Artifact(
            role=role,
            locator=locator,
            fresh_after=fresh_after or (previous.fresh_after if previous else None),
            registered_at=now,
            history=history,
        )
        self._artifacts[role] = artifact
        if self.store is not None:
            def _updater(payload: Any) -> dict[str, Any]:
                records = payload if isinstance(payload, dict) else {}
                records[role] = artifact.to_dict()
                return records

            self.store.update_json("artifacts", _updater, default={})
        logger.debug("registered artifact %s -> %s", role, locator)
        return artifact

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def resolve(self, role: str) -> list[Path]:
        artifact = self._artifacts.get(role)
        if artifact is None:
            return []
        locator = artifact.locator
        if GLOB_CHARS.search(locator):
            return sorted(path for path in self.root.glob(locator) if path.is_file())
        target = self.root / locator
        if target.is_file():
            return [target]
        if target.is_dir():
            return sorted(path for path in target.rglob("*") if path.is_file())
        return []

    def _real_paths(self, role: str) -> dict[Path, Path]:
        """Resolved target -> path as located, so symlinked aliases collapse."""
        return {path.resolve(): path for path in self.resolve(role)}

    def conflicts_for(self, role: str) -> list[ArtifactConflict]:
        if role not in self._artifacts:
            return []
        own = self._real_paths(role)
        if not own:
            return []
        conflicts: list[ArtifactConflict] = []
        for other in self._artifacts:
            if other == role:
                continue
            for real in sorted(own.keys() & self._real_paths(other).keys()):
                conflicts.append(ArtifactConflict((role, other), self._relative(own[real])))
        return conflicts

    def exists(self, role: str) -> bool:
        if not self.resolve(role):
            return False
        conflicts = self.conflicts_for(role)
        if conflicts:
            for conflict in conflicts:
                logger.warning("%s", conflict)
            return False
        return True

    def newest_mtime(self, role: str) -> float | None:
        paths = self.resolve(role)
        if not paths:
            return None
        return max(path.stat().st_mtime for path in paths)

    def is_fresh(self, role: str) -> bool:
        """True when the role exists and is at least as new as its ``fresh_after`` role."""
        artifact = self._artifacts.get(role)
        if artifact is None or not self.exists(role):
            return False
        if not artifact.fresh_after:
            return True
        reference = self.newest_mtime(artifact.fresh_after)
        if reference is None:
            return True
        own = self.newest_mtime(role)
        return own is not None and own >= reference

    def scan(self) -> set[str]:
        """Rescan every role once; returns roles that exist without conflict."""
        owners: dict[Path, list[str]] = {}
        located: dict[Path, str] = {}
        for role in self._artifacts:
            for real, path in self._real_paths(role).items():
                owners.setdefault(real, []).append(role)
                located.setdefault(real, self._relative(path))
        conflicted: set[str] = set()
        self.last_conflicts = []
        for real, roles in sorted(owners.items()):
            if len(roles) < 2:
                continue
            relative = located[real]
            for index, first in enumerate(roles):
                for second in roles[index + 1 :]:
                    conflict = ArtifactConflict((first, second), relative)
                    self.last_conflicts.append(conflict)
                    logger.warning("%s", conflict)
            conflicted.update(roles)
        present = {role for roles in owners.values() for role in roles}
        return present - conflicted
