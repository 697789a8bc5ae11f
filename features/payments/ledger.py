"""
Solana JSON-RPC client — just enough of the ledger to see incoming transfers.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Iterator

import httpx

import config

log = logging.getLogger(__name__)


class LedgerError(Exception):
    pass


@dataclass
class IncomingTransfer:
    signature: str
    block_time: int | None
    amount_sol: float


class SolanaLedger:
    def __init__(self, rpc_url: str | None = None, http: httpx.Client | None = None):
        self.rpc_url = rpc_url or config.SOLANA_RPC_URL
        self._http = http
        self._ids = itertools.count(1)

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=config.HTTP_TIMEOUT_SEC)
        return self._http

    def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = self._client().post(self.rpc_url, json=payload)
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise LedgerError(f"{method}: {body['error']}")
        return body.get("result")

    def recent_signatures(self, address: str, limit: int) -> list[dict]:
        return self._rpc(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": "confirmed"}],
        ) or []

    def get_transaction(self, signature: str) -> dict | None:
        return self._rpc(
            "getTransaction",
            [signature, {
                "encoding": "jsonParsed",
                "commitment": "confirmed",
                "maxSupportedTransactionVersion": 0,
            }],
        )

    def incoming_transfers(self, address: str, limit: int | None = None) -> Iterator[IncomingTransfer]:
        """Yield recent successful transactions that credited ``address``, newest first.

        Transaction details are fetched lazily so a caller that stops at the
        first match does not pay for the rest.
        """
        for sig_info in self.recent_signatures(address, limit or config.PAYMENT_SCAN_LIMIT):
            if sig_info.get("err") is not None:
                continue
            signature = sig_info["signature"]
            tx = self.get_transaction(signature)
            if not tx or not tx.get("meta"):
                continue
            received = received_lamports(tx, address)
            if received <= 0:
                continue
            yield IncomingTransfer(
                signature=signature,
                block_time=sig_info.get("blockTime") or tx.get("blockTime"),
                amount_sol=received / config.LAMPORTS_PER_SOL,
            )

    def get_balance(self, address: str) -> float:
        result = self._rpc("getBalance", [address, {"commitment": "confirmed"}])
        lamports = result.get("value", 0) if isinstance(result, dict) else (result or 0)
        return lamports / config.LAMPORTS_PER_SOL


def received_lamports(tx: dict, address: str) -> int:
    """Balance change of ``address`` in a parsed transaction (post - pre)."""
    meta = tx["meta"]
    keys = tx.get("transaction", {}).get("message", {}).get("accountKeys", [])
    pre = meta.get("preBalances", [])
    post = meta.get("postBalances", [])
    for i, key in enumerate(keys):
        pubkey = key.get("pubkey") if isinstance(key, dict) else key
        if pubkey == address:
            before = pre[i] if i < len(pre) else 0
            after = post[i] if i < len(post) else 0
            return after - before
    return 0
