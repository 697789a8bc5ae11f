"""
Work-item lifecycle — enforces legal status transitions.

    pending_payment → paid → processing → completed | failed
    pending_payment → (deleted)

Every transition is one conditional write in the store; when the write
affects no row, the current persisted state is read back only to pick
the right error. Every transition is logged so the audit trail matches
what the store holds.
"""

from __future__ import annotations

import logging

import config
from features.work_items.db import IntegrityViolation, WorkItemStore
from features.work_items.errors import (
    AlreadyPaid,
    DuplicateTransaction,
    NotCancelable,
    NotClaimable,
    NotProcessing,
    WorkItemNotFound,
)
from features.work_items.models import (
    CompletedFields,
    PaidFields,
    WorkItem,
    WorkItemStatus,
    utcnow_iso,
)

log = logging.getLogger(__name__)


class WorkItemLifecycle:
    """State machine over a WorkItemStore."""

    def __init__(self, store: WorkItemStore):
        self.store = store

    def _require(self, item_id: int) -> WorkItem:
        item = self.store.get(item_id)
        if item is None:
            raise WorkItemNotFound(item_id)
        return item

    def create(
        self,
        email: str,
        max_minutes: int,
        task_description: str,
        cost_usd: float,
        payment_address: str | None = None,
        user_id: int | None = None,
    ) -> WorkItem:
        item = self.store.insert(
            email=email,
            max_minutes=max_minutes,
            task_description=task_description,
            cost_usd=cost_usd,
            payment_address=payment_address or config.PAYMENT_WALLET,
            user_id=user_id,
        )
        log.info("[WORK] Created: #%d — %d min, $%.2f", item.id, max_minutes, cost_usd)
        return item

    def lock_expected_amount(self, item_id: int, amount: float) -> WorkItem:
        """Record the quoted amount once; later calls return the first quote."""
        item = self.store.set_expected_amount(item_id, amount)
        if item is not None:
            log.info("[WORK] Quoted: #%d — %.9f SOL", item_id, amount)
            return item
        return self._require(item_id)

    def mark_paid(self, item_id: int, tx_id: str, amount: float) -> WorkItem:
        fields = PaidFields(tx_id=tx_id, amount=amount)
        try:
            item = self.store.mark_paid(item_id, fields)
        except IntegrityViolation:
            log.warning(
                "[WORK] Duplicate transaction %s offered for #%d — already credited elsewhere",
                tx_id, item_id,
            )
            raise DuplicateTransaction(item_id, tx_id)
        if item is None:
            current = self._require(item_id)
            raise AlreadyPaid(item_id, f"work item {item_id} is already {current.status.value}")
        log.info("[WORK] Paid: #%d — tx %s, %.9f SOL", item_id, tx_id, amount)
        return item

    def claim(self, item_id: int) -> WorkItem:
        item = self.store.mark_processing(item_id, utcnow_iso())
        if item is None:
            current = self.store.get(item_id)
            state = current.status.value if current else "missing"
            log.info("[WORK] Claim rejected: #%d is %s", item_id, state)
            raise NotClaimable(item_id, f"work item {item_id} is not claimable ({state})")
        log.info("[WORK] Claimed: #%d", item_id)
        return item

    def complete(self, item_id: int, success: bool, output: str, error: str | None = None) -> WorkItem:
        fields = CompletedFields(success=success, output=output or "", error=error)
        item = self.store.mark_finished(item_id, fields)
        if item is None:
            current = self._require(item_id)
            log.info("[WORK] Completion rejected: #%d is %s", item_id, current.status.value)
            raise NotProcessing(item_id, f"work item {item_id} is not processing ({current.status.value})")
        if success:
            log.info("[WORK] Completed: #%d", item_id)
        else:
            log.error("[WORK] Failed: #%d — %s", item_id, (error or "")[:200])
        return item

    def cancel(self, item_id: int) -> None:
        if self.store.delete_pending(item_id):
            log.info("[WORK] Cancelled: #%d", item_id)
            return
        current = self._require(item_id)
        raise NotCancelable(item_id, f"work item {item_id} is {current.status.value}, not pending payment")

    # Read-only accessors for the presentation layer

    def get(self, item_id: int) -> WorkItem | None:
        return self.store.get(item_id)

    def list_paid(self) -> list[WorkItem]:
        return self.store.list_paid()

    def list_by_user(self, user_id: int) -> list[WorkItem]:
        return self.store.list_by_user(user_id)

    def list_by_user_and_statuses(self, user_id: int, statuses: list[WorkItemStatus]) -> list[WorkItem]:
        return self.store.list_by_user_and_statuses(user_id, statuses)

    def is_transaction_used(self, tx_id: str) -> bool:
        return self.store.is_transaction_used(tx_id)
