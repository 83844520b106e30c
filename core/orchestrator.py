"""
Order Orchestrator - the admission pipeline

Per request:
  validated → identity_checked → replay_checked → priced → payment_checked
  → committed → fulfillment_attempted → receipt_attempted → responded

Everything up to "committed" is a hard gate and side-effect free; a failure
raises a StorefrontError and nothing is persisted. The commit (ledger insert)
is the single admission boundary. Fulfillment and receipt minting after it are
best-effort: their outcomes are recorded on the order, never raised.

All collaborators are injected; nothing here holds global state.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .catalog import Catalog, to_money
from .errors import (
    AccessDeniedError,
    FulfillmentError,
    IdentityError,
    LedgerError,
    NotFoundError,
    PaymentError,
    ReplayError,
    StorefrontError,
    ValidationError,
)
from .fulfillment import FulfillmentSubmitter
from .identity import IdentityVerifier
from .ledger import Order, OrderDraft, OrderLedger, OrderStatus, ReplayGuard
from .payment import PaymentVerifier
from .receipts import AttestationData, ReceiptMinter
from .settings import StoreSettings

logger = logging.getLogger("storefront.orchestrator")

_WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")

_REGISTRY_HELP = "Register your agent at https://erc8004.org to purchase from Clawyard."
_PAYMENT_INSTRUCTIONS = (
    "Send USDC on Base to the wallet address above, then include the transaction "
    "hash in your order request as payment_tx_hash (or the X-Payment-Tx header)."
)


@dataclass
class StepOutcome:
    """Tagged result of a best-effort step: Ok(reference) or Failed(reason)."""
    ok: bool
    reference: Optional[str] = None
    reason: str = ""

    @classmethod
    def success(cls, reference: str) -> "StepOutcome":
        return cls(ok=True, reference=reference)

    @classmethod
    def failed(cls, reason: str) -> "StepOutcome":
        return cls(ok=False, reason=reason)


class OrderOrchestrator:
    """
    Usage:
        orchestrator = OrderOrchestrator(settings, catalog, identity, payment,
                                         ledger, fulfillment, minter)
        body = await orchestrator.create_order(request_dict, wallet_header, tx_header)
    """

    def __init__(
        self,
        settings: StoreSettings,
        catalog: Catalog,
        identity: IdentityVerifier,
        payment: PaymentVerifier,
        ledger: OrderLedger,
        fulfillment: FulfillmentSubmitter,
        minter: ReceiptMinter,
        replay_guard: Optional[ReplayGuard] = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.identity = identity
        self.payment = payment
        self.ledger = ledger
        self.fulfillment = fulfillment
        self.minter = minter
        self.replay_guard = replay_guard or ReplayGuard(ledger)

    # ============================================================
    # ORDER CREATION
    # ============================================================

    async def create_order(
        self,
        request: dict,
        wallet_header: Optional[str] = None,
        tx_header: Optional[str] = None,
    ) -> dict:
        """
        Run the full admission pipeline for one validated order request.

        Args:
            request: validated body (stickers, shipping_address, agent_id,
                payer_wallet, shipping_method, shipping_cost, payment_tx_hash, notes)
            wallet_header: X-Wallet, used when payer_wallet is absent
            tx_header: X-Payment-Tx, used when payment_tx_hash is absent

        Returns:
            201 response body

        Raises:
            StorefrontError subclass for every hard-gate rejection
        """
        # 1. Agent-only storefront
        agent_id = str(request.get("agent_id") or "").strip()
        if not agent_id:
            raise IdentityError(
                "This store is for AI agents only. Provide your ERC-8004 agent ID.",
                {"registry": "https://erc8004.org"},
                error="Agent verification required",
            )

        # 2. Wallet claim
        claimed_wallet = (request.get("payer_wallet") or wallet_header or "").strip()
        if not claimed_wallet:
            raise ValidationError(
                "Include your wallet address as payer_wallet in the request body or "
                "the X-Wallet header. It must match the ERC-8004 agent owner.",
                error="Wallet address required",
            )
        if not _WALLET_RE.match(claimed_wallet):
            raise ValidationError(
                f"Invalid wallet address: {claimed_wallet}",
                {"errors": [{"field": "payer_wallet", "message": "must be a 0x-prefixed 40-hex address"}]},
            )

        # 3. Identity (fail-closed)
        identity = await self.identity.verify_ownership(agent_id, claimed_wallet)
        if not identity.verified:
            detail = {"help": _REGISTRY_HELP}
            if identity.owner_address:
                detail["owner"] = identity.owner_address
            raise IdentityError(identity.error, detail)

        # 4. Payment reference present and unconsumed
        tx_hash = (request.get("payment_tx_hash") or tx_header or "").strip()
        if not tx_hash:
            _, quote = self.catalog.price_items(request["stickers"], request["shipping_cost"])
            raise PaymentError(
                "Send USDC on Base to our wallet, then include payment_tx_hash in your order.",
                {"expectedAmount": str(quote), "paymentInfo": self.payment_instructions()},
                error="Payment required",
            )
        if not _TX_HASH_RE.match(tx_hash):
            raise ValidationError(
                f"Invalid payment transaction hash: {tx_hash}",
                {"errors": [{"field": "payment_tx_hash", "message": "must be a 0x-prefixed 64-hex hash"}]},
            )
        if await self.replay_guard.is_consumed(tx_hash):
            logger.warning(f"REPLAY BLOCKED: {tx_hash[:18]}... already consumed")
            raise ReplayError(
                "This payment transaction has already been used for another order",
                {"txHash": tx_hash},
            )

        # 5. Price
        items, total = self.catalog.price_items(request["stickers"], request["shipping_cost"])

        # 6. Payment (fail-closed)
        paid = await self.payment.verify_payment(
            tx_hash, total, self.settings.payment_tolerance_percent
        )
        if not paid.verified:
            detail = {"expectedAmount": str(total), "paymentInfo": self.payment_instructions()}
            if paid.amount is not None:
                detail["receivedAmount"] = str(to_money(paid.amount))
            raise PaymentError(paid.error, detail)
        if paid.amount > total:
            logger.info(f"OVERPAYMENT accepted: {tx_hash[:18]}... paid ${to_money(paid.amount)} for ${total}")

        # 7. Commit: wallet is the on-chain payer, never the claimed one
        draft = OrderDraft(
            wallet=paid.payer,
            items=items,
            shipping_address=dict(request["shipping_address"]),
            total_amount=total,
            payment_tx_reference=tx_hash,
            agent_id=agent_id,
            shipping_method=request.get("shipping_method", ""),
            shipping_cost=to_money(request["shipping_cost"]),
        )
        order_id = await self.ledger.create(draft)
        order = await self.ledger.get(order_id)

        # 8. Fulfillment (best-effort)
        fulfillment = await self._attempt_fulfillment(order)
        status = OrderStatus.FULFILLED if fulfillment.ok else OrderStatus.FULFILLMENT_FAILED

        # 9. Receipt (best-effort)
        receipt = await self._attempt_receipt(order, paid.settled_at)

        # 10. Respond
        return {
            "orderId": order_id,
            "printfulOrderId": fulfillment.reference,
            "attestationUID": receipt.reference,
            "total": str(total),
            "items": items,
            "status": status.value,
            "payment": {
                "method": "x402-usdc",
                "verified": True,
                "from": paid.payer,
                "amount": str(to_money(paid.amount)),
                "transactionHash": tx_hash,
                "blockNumber": paid.block_number,
                "timestamp": paid.settled_at,
            },
        }

    async def _attempt_fulfillment(self, order: Order) -> StepOutcome:
        """Submit, then record the outcome. Never raises."""
        try:
            provider_id = await asyncio.wait_for(
                self.fulfillment.submit(order), timeout=self.settings.timeouts.fulfillment
            )
            outcome = StepOutcome.success(str(provider_id))
        except FulfillmentError as e:
            outcome = StepOutcome.failed(e.message)
        except asyncio.TimeoutError:
            outcome = StepOutcome.failed(
                f"Fulfillment timed out after {self.settings.timeouts.fulfillment:.0f}s"
            )
        except Exception as e:
            logger.exception(f"Unexpected fulfillment error for {order.id}")
            outcome = StepOutcome.failed(f"{type(e).__name__}: {e}")

        try:
            if outcome.ok:
                await self.ledger.set_fulfillment_id(order.id, outcome.reference)
                await self.ledger.update_status(order.id, OrderStatus.FULFILLED)
                logger.info(f"Order {order.id} fulfilled (provider id {outcome.reference})")
            else:
                await self.ledger.update_status(order.id, OrderStatus.FULFILLMENT_FAILED)
                logger.error(f"Order {order.id} fulfillment failed: {outcome.reason}")
        except LedgerError as e:
            logger.error(f"Could not record fulfillment outcome for {order.id}: {e}")
        return outcome

    async def _attempt_receipt(self, order: Order, settled_at: int) -> StepOutcome:
        """Mint, then record the UID. Never raises."""
        data = AttestationData(
            order_id=order.id,
            buyer=order.wallet,
            agent_id=order.agent_id,
            items=order.items,
            payment_amount=Decimal(order.total_amount),
            payment_tx_hash=order.payment_tx_reference or "",
            store_name=self.settings.store_name,
            provider_name=self.settings.provider_name,
            payment_token=self.settings.token_address,
            order_date=settled_at or int(order.created_at),
            shipping_method=order.shipping_method,
        )
        # The minter bounds its own uploads; this caps the whole step.
        budget = self.settings.timeouts.attestation + 2 * self.settings.timeouts.upload
        try:
            uid = await asyncio.wait_for(self.minter.mint(data), timeout=budget)
            outcome = StepOutcome.success(uid)
        except StorefrontError as e:
            outcome = StepOutcome.failed(e.message)
        except asyncio.TimeoutError:
            outcome = StepOutcome.failed(f"Receipt minting timed out after {budget:.0f}s")
        except Exception as e:
            logger.exception(f"Unexpected receipt error for {order.id}")
            outcome = StepOutcome.failed(f"{type(e).__name__}: {e}")

        if not outcome.ok:
            logger.error(f"Receipt for order {order.id} not minted: {outcome.reason}")
            return outcome

        try:
            await self.ledger.set_attestation_reference(order.id, outcome.reference)
        except LedgerError as e:
            logger.error(f"Could not record attestation {outcome.reference} for {order.id}: {e}")
        return outcome

    # ============================================================
    # READS + OPERATOR ACTIONS
    # ============================================================

    async def lookup(self, order_id: str, wallet: Optional[str]) -> dict:
        """Owner-only read. The shipping address is never part of the response."""
        order = await self.ledger.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", error="Order not found")
        if not wallet or wallet.lower() != order.wallet.lower():
            raise AccessDeniedError("Provide the wallet that paid for this order as ?wallet=0x...")
        return order.to_public_dict()

    async def resubmit_fulfillment(self, order_id: str) -> dict:
        """Operator retry for a fulfillment_failed order. Never re-charges."""
        order = await self.ledger.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", error="Order not found")
        if order.status != OrderStatus.FULFILLMENT_FAILED:
            raise ValidationError(
                f"Order {order_id} is {order.status.value}; only fulfillment_failed orders can be resubmitted"
            )

        logger.info(f"Resubmitting fulfillment for order {order_id}")
        outcome = await self._attempt_fulfillment(order)
        current = await self.ledger.get(order_id)
        return {
            "orderId": order_id,
            "ok": outcome.ok,
            "printfulOrderId": outcome.reference,
            "reason": outcome.reason or None,
            "status": current.status.value,
        }

    async def failed_fulfillments(self, limit: int = 50) -> list[dict]:
        orders = await self.ledger.list_by_status(OrderStatus.FULFILLMENT_FAILED, limit)
        return [o.to_public_dict() for o in orders]

    async def estimate_shipping(self, items: list[dict], address: dict):
        variants = self.catalog.variant_items(items)
        return await asyncio.wait_for(
            self.fulfillment.estimate_shipping(variants, address),
            timeout=self.settings.timeouts.fulfillment,
        )

    def payment_instructions(self) -> dict:
        return {**self.settings.payment_info(), "instructions": _PAYMENT_INSTRUCTIONS}
