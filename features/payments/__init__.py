"""
Payments feature — SOL pricing and ledger-side payment matching.

Public API:
    from features.payments import PriceOracle, PaymentMatcher, SolanaLedger
"""

from features.payments.ledger import IncomingTransfer, SolanaLedger
from features.payments.matcher import PaymentMatch, PaymentMatcher
from features.payments.price import PriceCache, PriceOracle

__all__ = [
    "IncomingTransfer",
    "PaymentMatch",
    "PaymentMatcher",
    "PriceCache",
    "PriceOracle",
    "SolanaLedger",
]
