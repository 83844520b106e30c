"""
Receipt Minter - EAS purchase attestations on Base

One attestation per committed order, recipient = buyer, never expiring,
revocable. The attestation body references two permanent-store documents
(items + metadata). Those uploads are best-effort: on any failure the items
reference degrades to an inline "Name xQty, ..." summary and the metadata
reference to "". Only the attest() transaction itself can fail a mint.

Schema registration is a one-time operator step (scripts/register_schema.py);
this module only ever attests against the configured schema UID.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from eth_abi import encode
from eth_account import Account
from eth_utils import to_checksum_address
from web3 import Web3

from .chain import connect, explorer_tx_url, run_sync, send_transaction, to_hex
from .errors import AttestationError, UploadError
from .payment import amount_to_raw
from .permastore import PermanentStore
from .settings import (
    CHAIN_DEFAULTS,
    EAS_ABI,
    EAS_CONTRACT_ADDRESS,
    RECEIPT_SCHEMA,
    RECEIPT_SCHEMA_UID,
)

logger = logging.getLogger("storefront.receipts")

# "string orderId,address buyer,..." → ["string", "address", ...]
RECEIPT_SCHEMA_TYPES = [part.strip().split()[0] for part in RECEIPT_SCHEMA.split(",")]

_ZERO_BYTES32 = b"\x00" * 32
_MIN_GAS_BALANCE_ETH = Decimal("0.001")
_EASSCAN_URL = "https://base.easscan.org/attestation/view"


@dataclass
class AttestationData:
    """What a receipt attests to. Built by the orchestrator after commit."""
    order_id: str
    buyer: str
    agent_id: str
    items: list
    payment_amount: Decimal
    payment_tx_hash: str = ""
    store_name: str = "clawyard"
    provider_name: str = "printful"
    payment_token: str = CHAIN_DEFAULTS["base"]["token_address"]
    order_date: int = field(default_factory=lambda: int(time.time()))
    shipping_method: str = ""


def format_items(items: list) -> str:
    """Inline items reference used when the permanent store is unavailable."""
    return ", ".join(f"{item['name']} x{item['qty']}" for item in items)


def encode_receipt(data: AttestationData, items_ref: str, metadata_ref: str) -> bytes:
    """ABI-encode the attestation body in schema field order."""
    try:
        agent_id = int(data.agent_id or 0)
    except ValueError:
        agent_id = 0

    return encode(
        RECEIPT_SCHEMA_TYPES,
        [
            data.order_id,
            to_checksum_address(data.buyer),
            agent_id,
            data.store_name,
            data.provider_name,
            to_checksum_address(data.payment_token),
            amount_to_raw(data.payment_amount, CHAIN_DEFAULTS["base"]["token_decimals"]),
            int(data.order_date),
            items_ref,
            metadata_ref,
        ],
    )


class ReceiptMinter:
    """
    Usage:
        minter = ReceiptMinter(rpc_url, private_key, permastore=store)
        uid = await minter.mint(AttestationData(...))
    """

    def __init__(
        self,
        rpc_url: str = "",
        private_key: str = "",
        schema_uid: str = RECEIPT_SCHEMA_UID,
        permastore: Optional[PermanentStore] = None,
        attestation_timeout: float = 120.0,
        upload_timeout: float = 30.0,
        eas_address: str = EAS_CONTRACT_ADDRESS,
        w3=None,
    ):
        self._rpc_url = rpc_url
        self._schema_uid = schema_uid
        self._permastore = permastore
        self._attestation_timeout = attestation_timeout
        self._upload_timeout = upload_timeout
        self._eas_address = eas_address
        self._w3 = w3
        self._eas = None
        self._account = Account.from_key(private_key) if private_key else None

        if self._account is None:
            logger.warning("STORE_PRIVATE_KEY not set - receipts cannot be minted")
        else:
            logger.info(f"Receipt minter ready (attester: {self._account.address})")

    @property
    def attester_address(self) -> str:
        return self._account.address if self._account else ""

    async def close(self):
        if self._permastore is not None:
            await self._permastore.close()

    def _get_w3(self):
        if self._w3 is None:
            self._w3 = connect(self._rpc_url, timeout=30)
        return self._w3

    def _get_eas(self):
        if self._eas is None:
            self._eas = self._get_w3().eth.contract(
                address=Web3.to_checksum_address(self._eas_address), abi=EAS_ABI
            )
        return self._eas

    # ------------------------------------------------------------
    # MINT
    # ------------------------------------------------------------

    async def mint(self, data: AttestationData) -> str:
        """
        Upload references (best-effort) then attest. Returns the attestation UID.

        Raises:
            AttestationError: attest() failed, reverted, timed out, or no key
        """
        items_ref, metadata_ref = await self._upload_references(data)
        body = encode_receipt(data, items_ref, metadata_ref)

        logger.info(f"Minting receipt for order {data.order_id}...")
        uid = await self._publish(to_checksum_address(data.buyer), body)
        logger.info(f"Receipt minted: {uid} ({_EASSCAN_URL}/{uid})")
        return uid

    async def _upload_references(self, data: AttestationData) -> tuple[str, str]:
        fallback = format_items(data.items)
        if self._permastore is None or not self._permastore.is_configured:
            return fallback, ""

        items_ref = fallback
        metadata_ref = ""
        try:
            items_ref = await asyncio.wait_for(
                self._permastore.upload_items(data.order_id, data.items),
                timeout=self._upload_timeout,
            ) or fallback
            metadata_ref = await asyncio.wait_for(
                self._permastore.upload_metadata(data.order_id, self._metadata_document(data)),
                timeout=self._upload_timeout,
            )
        except (UploadError, asyncio.TimeoutError) as e:
            logger.warning(f"Permanent-store upload failed for {data.order_id}, using inline refs: {e}")
        return items_ref, metadata_ref

    @staticmethod
    def _metadata_document(data: AttestationData) -> dict:
        return {
            "buyer": data.buyer,
            "agentId": data.agent_id,
            "storeName": data.store_name,
            "providerName": data.provider_name,
            "paymentToken": data.payment_token,
            "paymentAmount": str(data.payment_amount),
            "paymentTxHash": data.payment_tx_hash,
            "shippingMethod": data.shipping_method,
            "orderDate": data.order_date,
        }

    async def _publish(self, recipient: str, body: bytes) -> str:
        """Send attest() and read the UID back from the Attested event."""
        if self._account is None:
            raise AttestationError("Operating key not configured")

        eas = self._get_eas()
        request = (
            bytes.fromhex(self._schema_uid.removeprefix("0x")),
            (recipient, 0, True, _ZERO_BYTES32, body, 0),
        )

        try:
            result = await run_sync(
                lambda: send_transaction(
                    self._get_w3(),
                    self._account,
                    eas.functions.attest(request),
                    CHAIN_DEFAULTS["base"]["chain_id"],
                    receipt_timeout=int(self._attestation_timeout),
                ),
                self._attestation_timeout,
            )
        except asyncio.TimeoutError as e:
            raise AttestationError(
                f"attest() timed out after {self._attestation_timeout:.0f}s"
            ) from e
        except Exception as e:
            logger.error(f"attest() failed: {type(e).__name__}: {e}")
            raise AttestationError(f"attest() failed: {e}") from e

        if not result.success:
            raise AttestationError(result.error, {"txHash": result.tx_hash})

        events = eas.events.Attested().process_receipt(result.receipt)
        if not events:
            raise AttestationError("Attested event missing from receipt", {"txHash": result.tx_hash})

        logger.info(f"attest() tx: {explorer_tx_url(result.tx_hash, CHAIN_DEFAULTS['base']['explorer'])}")
        return to_hex(events[0]["args"]["uid"])

    # ------------------------------------------------------------
    # READ / DIAGNOSTICS
    # ------------------------------------------------------------

    async def get_attestation(self, uid: str) -> dict:
        eas = self._get_eas()
        raw = await run_sync(
            eas.functions.getAttestation(bytes.fromhex(uid.removeprefix("0x"))).call,
            self._attestation_timeout,
        )
        (uid_b, schema, at_time, expiration, revocation, ref_uid,
         recipient, attester, revocable, data) = raw
        return {
            "uid": to_hex(uid_b),
            "schema": to_hex(schema),
            "time": at_time,
            "expirationTime": expiration,
            "revocationTime": revocation,
            "refUID": to_hex(ref_uid),
            "recipient": recipient,
            "attester": attester,
            "revocable": revocable,
            "data": to_hex(data),
        }

    async def check_wallet_health(self) -> dict:
        """Operating wallet gas balance. Never raises."""
        if self._account is None:
            return {"error": "Operating key not configured", "hasMinimumBalance": False}
        try:
            w3 = self._get_w3()
            balance_wei = await run_sync(
                lambda: w3.eth.get_balance(self._account.address), 15.0
            )
        except Exception as e:
            return {"address": self._account.address, "error": str(e), "hasMinimumBalance": False}

        balance = Decimal(Web3.from_wei(balance_wei, "ether"))
        return {
            "address": self._account.address,
            "balance": str(balance),
            "hasMinimumBalance": balance > _MIN_GAS_BALANCE_ETH,
        }
