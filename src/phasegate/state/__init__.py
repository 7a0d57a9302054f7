from phasegate.state.approvals import ApprovalBook
from phasegate.state.store import RevisionConflict, StateStore, StateStoreError

__all__ = ["ApprovalBook", "RevisionConflict", "StateStore", "StateStoreError"]
