"""
Guard violations raised by the work-item lifecycle.

Each error carries a stable ``code`` so HTTP handlers and workers can tell
"someone else already handled it" apart from real faults.
"""

from __future__ import annotations


class WorkItemError(Exception):
    code = "work_item_error"

    def __init__(self, item_id: int, message: str = ""):
        self.item_id = item_id
        super().__init__(message or f"{self.code}: work item {item_id}")


class WorkItemNotFound(WorkItemError):
    code = "not_found"


class AlreadyPaid(WorkItemError):
    """The item left pending_payment already; pollers treat this as success."""
    code = "already_paid"


class DuplicateTransaction(WorkItemError):
    """The ledger transaction is already credited to another item."""
    code = "duplicate_transaction"

    def __init__(self, item_id: int, tx_id: str):
        self.tx_id = tx_id
        super().__init__(item_id, f"transaction {tx_id} already recorded on another work item")


class NotClaimable(WorkItemError):
    code = "not_claimable"


class NotProcessing(WorkItemError):
    code = "not_processing"


class NotCancelable(WorkItemError):
    code = "not_cancelable"
