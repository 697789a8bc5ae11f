"""Work-item state machine against a real SQLite store."""

from __future__ import annotations

import threading
import time

import pytest

from features.work_items import WorkItemStatus, WorkItemStore
from features.work_items.db import Database, QueryResult
from features.work_items.errors import (
    AlreadyPaid,
    DuplicateTransaction,
    NotCancelable,
    NotClaimable,
    NotProcessing,
    WorkItemNotFound,
)


def _create(lifecycle, minutes=10, user_id=None):
    return lifecycle.create(
        email="client@example.com",
        max_minutes=minutes,
        task_description="Write a haiku about queues",
        cost_usd=round(minutes * 0.10, 2),
        payment_address="WALLET",
        user_id=user_id,
    )


def test_create_starts_pending_with_empty_payment_fields(lifecycle):
    item = _create(lifecycle)

    assert item.status == WorkItemStatus.PENDING_PAYMENT
    assert item.cost_usd == 1.0
    assert item.transaction_signature is None
    assert item.paid_at is None
    assert item.started_at is None
    assert item.result is None


def test_ids_are_increasing(lifecycle):
    first = _create(lifecycle)
    second = _create(lifecycle)
    assert second.id > first.id


def test_full_lifecycle_keeps_timestamps_in_order(lifecycle):
    item = _create(lifecycle)

    paid = lifecycle.mark_paid(item.id, "tx-1", 0.010000001)
    assert paid.status == WorkItemStatus.PAID
    assert paid.transaction_signature == "tx-1"
    assert paid.cost_sol == pytest.approx(0.010000001)

    claimed = lifecycle.claim(item.id)
    assert claimed.status == WorkItemStatus.PROCESSING

    done = lifecycle.complete(item.id, True, "all done")
    assert done.status == WorkItemStatus.COMPLETED
    assert done.result.success is True
    assert done.result.output == "all done"
    assert done.created_at <= done.paid_at <= done.started_at <= done.completed_at


def test_failed_run_ends_in_failed(lifecycle):
    item = _create(lifecycle)
    lifecycle.mark_paid(item.id, "tx-1", 0.01)
    lifecycle.claim(item.id)

    done = lifecycle.complete(item.id, False, "partial", "timed out")

    assert done.status == WorkItemStatus.FAILED
    assert done.result.error == "timed out"
    assert done.result.output == "partial"


def test_duplicate_transaction_is_rejected_and_first_item_stays_paid(lifecycle):
    first = _create(lifecycle)
    second = _create(lifecycle)
    lifecycle.mark_paid(first.id, "tx-shared", 0.01)

    with pytest.raises(DuplicateTransaction) as exc:
        lifecycle.mark_paid(second.id, "tx-shared", 0.01)

    assert exc.value.tx_id == "tx-shared"
    assert lifecycle.get(first.id).status == WorkItemStatus.PAID
    assert lifecycle.get(first.id).transaction_signature == "tx-shared"
    assert lifecycle.get(second.id).status == WorkItemStatus.PENDING_PAYMENT
    assert lifecycle.get(second.id).transaction_signature is None


def test_paying_twice_reports_already_paid(lifecycle):
    item = _create(lifecycle)
    lifecycle.mark_paid(item.id, "tx-1", 0.01)

    with pytest.raises(AlreadyPaid):
        lifecycle.mark_paid(item.id, "tx-2", 0.01)

    assert lifecycle.get(item.id).transaction_signature == "tx-1"


def test_paying_missing_item(lifecycle):
    with pytest.raises(WorkItemNotFound):
        lifecycle.mark_paid(999, "tx-1", 0.01)


def test_claim_requires_paid(lifecycle):
    item = _create(lifecycle)

    with pytest.raises(NotClaimable):
        lifecycle.claim(item.id)
    assert lifecycle.get(item.id).status == WorkItemStatus.PENDING_PAYMENT

    with pytest.raises(NotClaimable):
        lifecycle.claim(12345)


def test_claim_race_has_one_winner(lifecycle):
    item = _create(lifecycle)
    lifecycle.mark_paid(item.id, "tx-1", 0.01)

    barrier = threading.Barrier(8)
    wins: list[int] = []
    losses: list[int] = []

    def contender(n):
        barrier.wait()
        try:
            lifecycle.claim(item.id)
            wins.append(n)
        except NotClaimable:
            losses.append(n)

    threads = [threading.Thread(target=contender, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert len(losses) == 7
    assert lifecycle.get(item.id).status == WorkItemStatus.PROCESSING


def test_complete_requires_processing(lifecycle):
    item = _create(lifecycle)
    lifecycle.mark_paid(item.id, "tx-1", 0.01)

    with pytest.raises(NotProcessing):
        lifecycle.complete(item.id, True, "too early")

    lifecycle.claim(item.id)
    lifecycle.complete(item.id, True, "first")
    with pytest.raises(NotProcessing):
        lifecycle.complete(item.id, False, "second")
    assert lifecycle.get(item.id).result.output == "first"

    with pytest.raises(WorkItemNotFound):
        lifecycle.complete(999, True, "")


def test_cancel_only_while_pending(lifecycle):
    pending = _create(lifecycle)
    lifecycle.cancel(pending.id)
    assert lifecycle.get(pending.id) is None

    paid = _create(lifecycle)
    lifecycle.mark_paid(paid.id, "tx-1", 0.01)
    with pytest.raises(NotCancelable):
        lifecycle.cancel(paid.id)
    assert lifecycle.get(paid.id).status == WorkItemStatus.PAID

    with pytest.raises(WorkItemNotFound):
        lifecycle.cancel(pending.id)


def test_expected_amount_is_locked_once(lifecycle):
    item = _create(lifecycle)

    first = lifecycle.lock_expected_amount(item.id, 0.010000001)
    again = lifecycle.lock_expected_amount(item.id, 0.5)

    assert first.expected_sol == pytest.approx(0.010000001)
    assert again.expected_sol == pytest.approx(0.010000001)


def test_queue_is_in_payment_order(lifecycle):
    a = _create(lifecycle)
    b = _create(lifecycle)
    c = _create(lifecycle)
    lifecycle.mark_paid(b.id, "tx-b", 0.01)
    time.sleep(0.002)
    lifecycle.mark_paid(a.id, "tx-a", 0.01)

    assert [i.id for i in lifecycle.list_paid()] == [b.id, a.id]
    assert c.id not in [i.id for i in lifecycle.list_paid()]


def test_user_listings(lifecycle, make_user):
    user, _ = make_user()
    other, _ = make_user()
    mine = _create(lifecycle, user_id=user.id)
    paid = _create(lifecycle, user_id=user.id)
    _create(lifecycle, user_id=other.id)
    lifecycle.mark_paid(paid.id, "tx-1", 0.01)

    assert {i.id for i in lifecycle.list_by_user(user.id)} == {mine.id, paid.id}
    in_flight = lifecycle.list_by_user_and_statuses(user.id, [WorkItemStatus.PAID, WorkItemStatus.PROCESSING])
    assert [i.id for i in in_flight] == [paid.id]
    assert lifecycle.list_by_user_and_statuses(user.id, []) == []


def test_insert_without_returned_row_raises():
    class Silent(Database):
        def execute(self, sql, params=()):
            return QueryResult()

    with pytest.raises(RuntimeError, match="returned no row"):
        WorkItemStore(Silent()).insert("client@example.com", 10, "Write a haiku", 1.0, "WALLET")
