"""
Payment matcher — correlates ledger transfers with work items by amount.

The ledger has no memo field we can rely on, so every item is quoted a
unique amount: the fiat cost converted at the current rate plus an
item-specific offset of ``item_id * offset_scale`` SOL (one lamport per id
by default). A transfer matches when it is newer than the item and its
amount is within a narrow tolerance of the quote; among those, the one
closest to the quote and not yet credited to another item wins.

Matching is advisory: nothing is written here. The caller credits the
match through WorkItemLifecycle.mark_paid, which rejects transactions
already recorded on another item.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import config
from features.payments.ledger import IncomingTransfer, SolanaLedger
from features.payments.price import PriceOracle

log = logging.getLogger(__name__)


@dataclass
class PaymentMatch:
    found: bool
    tx_id: str | None = None
    amount: float | None = None


NOT_FOUND = PaymentMatch(found=False)


class PaymentMatcher:
    def __init__(
        self,
        oracle: PriceOracle,
        ledger: SolanaLedger,
        address: str | None = None,
        tolerance: float | None = None,
        offset_scale: float | None = None,
        scan_limit: int | None = None,
    ):
        self.oracle = oracle
        self.ledger = ledger
        self.address = address or config.PAYMENT_WALLET
        self.tolerance = config.PAYMENT_TOLERANCE if tolerance is None else tolerance
        self.offset_scale = config.PAYMENT_OFFSET_SCALE if offset_scale is None else offset_scale
        self.scan_limit = scan_limit or config.PAYMENT_SCAN_LIMIT

    def compute_expected_amount(self, item_id: int, fiat_cost: float, rate: float | None = None) -> float:
        """Unique SOL amount to quote for ``item_id``, at lamport resolution."""
        rate = rate if rate is not None else self.oracle.get_rate()
        return round(fiat_cost / rate + item_id * self.offset_scale, 9)

    def matches(self, received: float, expected: float) -> bool:
        return abs(received - expected) <= expected * self.tolerance

    def find_payment(
        self,
        expected_amount: float,
        not_before: int,
        is_consumed: Callable[[str], bool] | None = None,
    ) -> PaymentMatch:
        """Look for a transfer of ``expected_amount`` made at or after ``not_before`` (unix seconds).

        Neighbouring items' quotes sit inside each other's tolerance band, so
        transfers already credited to an item (``is_consumed``) are skipped
        and the closest remaining amount wins. Ties go to the newest transfer.
        """
        best: IncomingTransfer | None = None
        try:
            for transfer in self.ledger.incoming_transfers(self.address, self.scan_limit):
                if transfer.block_time is None or transfer.block_time < not_before:
                    continue
                if not self.matches(transfer.amount_sol, expected_amount):
                    continue
                if is_consumed is not None and is_consumed(transfer.signature):
                    log.debug("Skipping tx %s: already credited", transfer.signature)
                    continue
                if best is None or (
                    abs(transfer.amount_sol - expected_amount) < abs(best.amount_sol - expected_amount)
                ):
                    best = transfer
        except Exception as e:
            log.error("Error checking for payment: %s", e)
            return NOT_FOUND

        if best is None:
            return NOT_FOUND
        log.info(
            "Matched tx %s: %.9f SOL (expected %.9f)",
            best.signature, best.amount_sol, expected_amount,
        )
        return PaymentMatch(found=True, tx_id=best.signature, amount=best.amount_sol)

    def wallet_balance(self) -> float:
        try:
            return self.ledger.get_balance(self.address)
        except Exception as e:
            log.error("Error getting wallet balance: %s", e)
            return 0.0
