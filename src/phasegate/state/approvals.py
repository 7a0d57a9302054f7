from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from phasegate.state.store import StateStore, StateStoreError


class ApprovalBook:
    """Explicit user confirmations, keyed by approval id.

    An approval exists only after ``approve`` was called for it. Nothing else
    writes this namespace, so silence never counts as consent.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def _records(self) -> dict[str, Any]:
        payload = self.store.get_json("approvals", default={})
        return payload if isinstance(payload, dict) else {}

    def approve(self, key: str, *, by: str, note: str = "") -> dict[str, Any]:
        key = key.strip()
        by = by.strip()
        if not key:
            raise StateStoreError("Approval key must be non-empty.")
        if not by:
            raise StateStoreError(f"Approval '{key}' must name who confirmed it.")
        record = {
            "key": key,
            "approved_by": by,
            "note": note,
            "approved_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
        }

        def _updater(payload: Any) -> dict[str, Any]:
            records = payload if isinstance(payload, dict) else {}
            records[key] = record
            return records

        self.store.update_json("approvals", _updater, default={})
        return record

    def revoke(self, key: str) -> bool:
        removed = False

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal removed
            records = payload if isinstance(payload, dict) else {}
            removed = records.pop(key, None) is not None
            return records

        self.store.update_json("approvals", _updater, default={})
        return removed

    def is_approved(self, key: str) -> bool:
        record = self._records().get(key)
        return isinstance(record, dict) and bool(record.get("approved_by"))

    def get(self, key: str) -> dict[str, Any] | None:
        record = self._records().get(key)
        return record if isinstance(record, dict) else None

    def all(self) -> dict[str, Any]:
        return self._records()
