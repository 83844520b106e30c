"""
Payment Verifier - USDC settlement on Base

Given a transaction hash and the amount the storefront computed, confirm from
the chain itself (never from client-supplied fields) that:
  1. the transaction exists and succeeded
  2. it emitted a USDC Transfer to the storefront wallet (any log position)
  3. the transferred amount >= expected * (1 - tolerance)

Overpayment is always accepted. The payer (Transfer `from`) becomes the order
wallet. Side-effect free: uniqueness is the Replay Guard's job.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from web3.exceptions import TransactionNotFound

from .chain import connect, run_sync, same_address, to_hex, topic_to_address
from .settings import CHAIN_DEFAULTS, TRANSFER_TOPIC

logger = logging.getLogger("storefront.payment")

CENT = Decimal("0.01")


@dataclass
class PaymentResult:
    """Result of a payment verification attempt."""
    verified: bool
    tx_hash: str = ""
    payer: str = ""
    amount: Optional[Decimal] = None
    expected: Optional[Decimal] = None
    block_number: int = 0
    settled_at: int = 0          # unix seconds of the containing block
    error: str = ""


def raw_to_amount(raw: int, decimals: int) -> Decimal:
    """Token base units → Decimal, exact."""
    return Decimal(raw).scaleb(-decimals)


def amount_to_raw(amount: Decimal, decimals: int) -> int:
    """Decimal → token base units (truncates below the token's precision)."""
    return int(Decimal(amount).scaleb(decimals).to_integral_value(rounding="ROUND_DOWN"))


def within_tolerance(amount: Decimal, expected: Decimal, tolerance_percent: Decimal) -> bool:
    """Asymmetric band: anything >= expected * (1 - tolerance) passes."""
    minimum = expected * (Decimal(1) - Decimal(tolerance_percent) / Decimal(100))
    return amount >= minimum


class PaymentVerifier:
    """
    Usage:
        verifier = PaymentVerifier(rpc_url, receiving_wallet)
        result = await verifier.verify_payment("0xabc...", Decimal("7.92"))
        if result.verified:
            wallet = result.payer
    """

    def __init__(
        self,
        rpc_url: str = "",
        receiving_wallet: str = "",
        token_address: str = CHAIN_DEFAULTS["base"]["token_address"],
        token_decimals: int = CHAIN_DEFAULTS["base"]["token_decimals"],
        timeout: float = 15.0,
        w3=None,
    ):
        self._rpc_url = rpc_url
        self.receiving_wallet = receiving_wallet
        self.token_address = token_address
        self.token_decimals = token_decimals
        self._timeout = timeout
        self._w3 = w3

    def _get_w3(self):
        if self._w3 is None:
            self._w3 = connect(self._rpc_url, timeout=self._timeout)
        return self._w3

    async def verify_payment(
        self,
        tx_hash: str,
        expected_amount: Decimal,
        tolerance_percent: Decimal = Decimal("1"),
    ) -> PaymentResult:
        """Never raises: RPC faults and timeouts come back as verified=False."""
        expected = Decimal(expected_amount).quantize(CENT)

        try:
            receipt, block_ts = await run_sync(
                lambda: self._fetch_receipt(tx_hash), self._timeout
            )
        except TransactionNotFound:
            return PaymentResult(verified=False, tx_hash=tx_hash, expected=expected,
                                 error="Transaction not found")
        except asyncio.TimeoutError:
            logger.warning(f"Payment lookup timed out for {tx_hash[:18]}...")
            return PaymentResult(
                verified=False, tx_hash=tx_hash, expected=expected,
                error=f"Verification failed: RPC timed out after {self._timeout:.0f}s",
            )
        except Exception as e:
            logger.error(f"Payment verification error: {type(e).__name__}: {e}")
            return PaymentResult(verified=False, tx_hash=tx_hash, expected=expected,
                                 error=f"Verification failed: {e}")

        if receipt is None:
            return PaymentResult(verified=False, tx_hash=tx_hash, expected=expected,
                                 error="Transaction not found")

        if receipt["status"] != 1:
            return PaymentResult(verified=False, tx_hash=tx_hash, expected=expected,
                                 error="Transaction failed")

        transfer = self._find_transfer(receipt["logs"])
        if transfer is None:
            return PaymentResult(
                verified=False, tx_hash=tx_hash, expected=expected,
                error="No USDC transfer to storefront wallet found in transaction",
            )

        try:
            payer = topic_to_address(transfer["topics"][1])
            amount = raw_to_amount(int(to_hex(transfer["data"]), 16), self.token_decimals)
        except ValueError as e:
            logger.warning(f"Malformed Transfer log in {tx_hash[:18]}...: {e}")
            return PaymentResult(verified=False, tx_hash=tx_hash, expected=expected,
                                 error="Malformed transfer event in transaction")

        if not within_tolerance(amount, expected, tolerance_percent):
            logger.info(
                f"UNDERPAID: {tx_hash[:18]}... expected ${expected} got ${amount.quantize(CENT)}"
            )
            return PaymentResult(
                verified=False,
                tx_hash=tx_hash,
                payer=payer,
                amount=amount,
                expected=expected,
                block_number=int(receipt["blockNumber"]),
                error=(
                    f"Insufficient payment: expected ${expected}, "
                    f"received ${amount.quantize(CENT)}"
                ),
            )

        logger.info(
            f"PAYMENT VERIFIED: {tx_hash[:18]}... | ${amount} from {payer[:10]}... "
            f"| block {receipt['blockNumber']}"
        )
        return PaymentResult(
            verified=True,
            tx_hash=tx_hash,
            payer=payer,
            amount=amount,
            expected=expected,
            block_number=int(receipt["blockNumber"]),
            settled_at=block_ts,
        )

    def _fetch_receipt(self, tx_hash: str):
        """Blocking. Receipt + block timestamp in one executor hop."""
        w3 = self._get_w3()
        receipt = w3.eth.get_transaction_receipt(tx_hash)
        if receipt is None:
            return None, 0
        try:
            block = w3.eth.get_block(receipt["blockNumber"])
            block_ts = int(block["timestamp"])
        except Exception as e:
            logger.debug(f"Block timestamp lookup failed, using wall clock: {e}")
            block_ts = int(time.time())
        return receipt, block_ts

    def _find_transfer(self, logs) -> Optional[dict]:
        """First USDC Transfer log addressed to the storefront, scanning all logs."""
        for log in logs:
            if not same_address(log["address"], self.token_address):
                continue
            topics = log["topics"]
            if len(topics) < 3 or to_hex(topics[0]) != TRANSFER_TOPIC:
                continue
            if same_address(topic_to_address(topics[2]), self.receiving_wallet):
                return log
        return None
