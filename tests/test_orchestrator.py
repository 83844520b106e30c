import asyncio
import dataclasses
from decimal import Decimal

import pytest

from core.errors import (
    AccessDeniedError,
    IdentityError,
    NotFoundError,
    PaymentError,
    ReplayError,
    ValidationError,
)
from core.fulfillment import FulfillmentSubmitter
from core.ledger import OrderStatus
from core.settings import Timeouts
from fakes import (
    ADDRESS,
    AGENT_ID,
    BUYER,
    STORE_WALLET,
    STRANGER,
    attestation_down,
    order_request,
    provider_down,
    tx_hash,
)

TX = tx_hash(1)


class TestHappyPath:
    async def test_paid_order_is_fulfilled_and_receipted(self, orchestrator, chain, ledger, fulfillment, minter):
        chain.pay(TX, "7.92")

        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert body["total"] == "7.92"
        assert body["status"] == "fulfilled"
        assert body["printfulOrderId"] == "5001"
        assert body["attestationUID"] == "0x" + format(1, "064x")
        assert body["items"][0]["id"] == "claw-classic"
        assert body["payment"]["from"] == BUYER
        assert body["payment"]["amount"] == "7.92"
        assert body["payment"]["verified"] is True
        assert body["payment"]["transactionHash"] == TX

        order = await ledger.get(body["orderId"])
        assert order.wallet == BUYER
        assert order.status == OrderStatus.FULFILLED
        assert order.fulfillment_provider_order_id == "5001"
        assert order.attestation_reference == body["attestationUID"]
        assert order.shipping_cost == "3.72"

        assert fulfillment.submitted[0].shipping_address == ADDRESS
        receipt = minter.minted[0]
        assert receipt.buyer == BUYER
        assert receipt.payment_amount == Decimal("7.92")
        assert receipt.agent_id == AGENT_ID

    async def test_headers_fill_missing_body_fields(self, orchestrator, chain):
        chain.pay(TX, "7.92")

        body = await orchestrator.create_order(
            order_request(payer_wallet=None), wallet_header=BUYER, tx_header=TX,
        )

        assert body["status"] == "fulfilled"

    async def test_wallet_is_the_onchain_payer(self, orchestrator, chain, ledger):
        # Agent owner claims, a different wallet pays
        chain.pay(TX, "7.92", sender=STRANGER)

        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert body["payment"]["from"] == STRANGER
        assert (await ledger.get(body["orderId"])).wallet == STRANGER

    async def test_overpayment_is_accepted(self, orchestrator, chain):
        chain.pay(TX, "10.00")

        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert body["total"] == "7.92"
        assert body["payment"]["amount"] == "10.00"

    async def test_custom_sticker(self, orchestrator, chain, fulfillment):
        chain.pay(TX, "12.12")
        stickers = [{"id": "custom", "qty": 2, "image_url": "https://example.com/claw.png"}]

        body = await orchestrator.create_order(order_request(stickers=stickers, payment_tx_hash=TX))

        assert body["total"] == "12.12"
        assert fulfillment.submitted[0].items[0]["imageUrl"] == "https://example.com/claw.png"


class TestHardGates:
    async def test_agent_id_required(self, orchestrator, chain):
        chain.pay(TX, "7.92")

        with pytest.raises(IdentityError) as exc:
            await orchestrator.create_order(order_request(agent_id=None, payment_tx_hash=TX))

        assert exc.value.error == "Agent verification required"
        assert exc.value.detail["registry"] == "https://erc8004.org"

    async def test_wallet_required(self, orchestrator):
        with pytest.raises(ValidationError) as exc:
            await orchestrator.create_order(order_request(payer_wallet=None))

        assert exc.value.error == "Wallet address required"

    async def test_malformed_wallet(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.create_order(order_request(payer_wallet="0x1234"))

    async def test_identity_fails_closed_even_with_valid_payment(self, orchestrator, chain, ledger, fulfillment):
        chain.pay(TX, "7.92", sender=STRANGER)

        with pytest.raises(IdentityError) as exc:
            await orchestrator.create_order(order_request(payer_wallet=STRANGER, payment_tx_hash=TX))

        assert exc.value.status_code == 403
        assert exc.value.detail["owner"] == BUYER
        assert await ledger.get_by_payment_reference(TX) is None
        assert fulfillment.submitted == []

    async def test_registry_outage_blocks_order(self, orchestrator, chain, ledger):
        chain.pay(TX, "7.92")
        chain.rpc_error = ConnectionError("connection refused")

        with pytest.raises(IdentityError):
            await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert await ledger.get_by_payment_reference(TX) is None

    async def test_missing_payment_quotes_the_total(self, orchestrator):
        with pytest.raises(PaymentError) as exc:
            await orchestrator.create_order(order_request())

        assert exc.value.status_code == 402
        assert exc.value.error == "Payment required"
        assert exc.value.detail["expectedAmount"] == "7.92"
        assert exc.value.detail["paymentInfo"]["wallet"] == STORE_WALLET

    async def test_malformed_tx_hash(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.create_order(order_request(payment_tx_hash="0xnothex"))

    async def test_underpayment(self, orchestrator, chain, ledger):
        chain.pay(TX, "7.00")

        with pytest.raises(PaymentError) as exc:
            await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert exc.value.message == "Insufficient payment: expected $7.92, received $7.00"
        assert exc.value.detail["receivedAmount"] == "7.00"
        assert await ledger.get_by_payment_reference(TX) is None

    async def test_unknown_sticker(self, orchestrator, chain):
        chain.pay(TX, "7.92")

        with pytest.raises(NotFoundError):
            await orchestrator.create_order(
                order_request(stickers=[{"id": "nope", "qty": 1}], payment_tx_hash=TX)
            )


class TestReplay:
    async def test_second_use_of_payment_is_rejected(self, orchestrator, chain, fulfillment):
        chain.pay(TX, "7.92")
        await orchestrator.create_order(order_request(payment_tx_hash=TX))

        with pytest.raises(ReplayError):
            await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert len(fulfillment.submitted) == 1

    async def test_concurrent_orders_on_one_payment(self, orchestrator, chain, ledger, fulfillment):
        chain.pay(TX, "7.92")

        results = await asyncio.gather(
            *(orchestrator.create_order(order_request(payment_tx_hash=TX)) for _ in range(3)),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, ReplayError)]
        assert len(created) == 1
        assert len(rejected) == 2
        assert len(fulfillment.submitted) == 1
        assert (await ledger.get_by_payment_reference(TX)).id == created[0]["orderId"]


class TestBestEffortSteps:
    async def test_fulfillment_failure_still_admits_order(self, orchestrator, chain, ledger, fulfillment, minter):
        fulfillment.error = provider_down()
        chain.pay(TX, "7.92")

        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert body["status"] == "fulfillment_failed"
        assert body["printfulOrderId"] is None
        assert (await ledger.get(body["orderId"])).status == OrderStatus.FULFILLMENT_FAILED
        assert len(minter.minted) == 1

    async def test_unconfigured_provider_is_queued_for_operator(self, orchestrator, chain, ledger):
        orchestrator.fulfillment = FulfillmentSubmitter()
        chain.pay(TX, "7.92")

        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert body["status"] == "fulfillment_failed"
        assert body["printfulOrderId"] is None
        assert [o["orderId"] for o in await orchestrator.failed_fulfillments()] == [body["orderId"]]

    async def test_fulfillment_timeout(self, orchestrator, settings, chain, fulfillment):
        orchestrator.settings = dataclasses.replace(
            settings, timeouts=Timeouts(identity=2, payment=2, fulfillment=0.05, attestation=2, upload=1)
        )
        fulfillment.delay = 0.5
        chain.pay(TX, "7.92")

        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert body["status"] == "fulfillment_failed"

    async def test_receipt_failure_leaves_uid_empty(self, orchestrator, chain, ledger, minter):
        minter.error = attestation_down()
        chain.pay(TX, "7.92")

        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert body["attestationUID"] is None
        assert body["status"] == "fulfilled"
        assert (await ledger.get(body["orderId"])).attestation_reference is None

    async def test_unexpected_minter_crash_is_contained(self, orchestrator, chain, minter):
        minter.error = RuntimeError("boom")
        chain.pay(TX, "7.92")

        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        assert body["attestationUID"] is None


class TestLookup:
    async def test_owner_reads_order_without_address(self, orchestrator, chain):
        chain.pay(TX, "7.92")
        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        order = await orchestrator.lookup(body["orderId"], BUYER.lower())

        assert order["orderId"] == body["orderId"]
        assert "shippingAddress" not in order
        assert ADDRESS["address1"] not in str(order)

    async def test_other_wallet_is_denied(self, orchestrator, chain):
        chain.pay(TX, "7.92")
        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        with pytest.raises(AccessDeniedError):
            await orchestrator.lookup(body["orderId"], STRANGER)
        with pytest.raises(AccessDeniedError):
            await orchestrator.lookup(body["orderId"], None)

    async def test_unknown_order(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.lookup("missing", BUYER)


class TestResubmit:
    async def test_failed_order_can_be_resubmitted(self, orchestrator, chain, ledger, fulfillment):
        fulfillment.error = provider_down()
        chain.pay(TX, "7.92")
        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))
        assert [o["orderId"] for o in await orchestrator.failed_fulfillments()] == [body["orderId"]]

        fulfillment.error = None
        result = await orchestrator.resubmit_fulfillment(body["orderId"])

        assert result["ok"] is True
        assert result["status"] == "fulfilled"
        assert result["printfulOrderId"] == "5002"
        assert await orchestrator.failed_fulfillments() == []
        assert len(chain.receipt_lookups) == 1

    async def test_only_failed_orders(self, orchestrator, chain):
        chain.pay(TX, "7.92")
        body = await orchestrator.create_order(order_request(payment_tx_hash=TX))

        with pytest.raises(ValidationError):
            await orchestrator.resubmit_fulfillment(body["orderId"])


class TestShippingEstimate:
    async def test_maps_items_to_variants(self, orchestrator):
        rates = await orchestrator.estimate_shipping([{"id": "claw-classic", "qty": 2}], ADDRESS)

        assert rates["standard"]["cost"] == "3.72"
