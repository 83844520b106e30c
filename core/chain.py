"""
Chain helpers - shared Web3 plumbing for verifiers and the receipt minter

Design:
- Sync Web3 calls wrapped in run_in_executor() (web3.py async is fragile),
  each bounded by asyncio.wait_for() so a slow RPC cannot stall a request
- Gas estimation + 20% buffer, nonce auto from chain
- Log/topic normalization: RPC providers hand back HexBytes, test doubles hand
  back hex strings; everything is compared as lowercase 0x-hex
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from web3 import Web3

logger = logging.getLogger("storefront.chain")


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class ChainTxResult:
    """Result of an on-chain transaction attempt."""
    success: bool
    tx_hash: str = ""
    error: str = ""
    gas_used: int = 0
    receipt: Any = None


# ============================================================
# EXECUTION
# ============================================================

async def run_sync(fn: Callable[[], Any], timeout: float) -> Any:
    """Run a blocking Web3 call off the event loop with a hard timeout.

    Raises asyncio.TimeoutError on timeout; callers map it per their own
    failure policy.
    """
    loop = asyncio.get_running_loop()
    return await asyncio.wait_for(loop.run_in_executor(None, fn), timeout=timeout)


def connect(rpc_url: str, timeout: float = 30) -> Web3:
    """HTTP provider with a request-level timeout. Does not probe the node."""
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


def send_transaction(w3, account, tx_fn, chain_id: int, receipt_timeout: int = 120) -> ChainTxResult:
    """
    Build, sign, and send a contract transaction. Blocking: call via run_sync().

    Args:
        w3: Web3 instance
        account: eth_account LocalAccount (operating key)
        tx_fn: bound contract function, e.g. eas.functions.attest(request)
        chain_id: EIP-155 chain id
    """
    nonce = w3.eth.get_transaction_count(account.address)
    tx = tx_fn.build_transaction({
        "from": account.address,
        "nonce": nonce,
        "gasPrice": w3.eth.gas_price,
        "chainId": chain_id,
    })

    # Gas estimation + 20% buffer
    try:
        gas_estimate = w3.eth.estimate_gas(tx)
        tx["gas"] = int(gas_estimate * 1.2)
    except Exception as gas_err:
        logger.warning(f"Gas estimation failed, using default 300k: {gas_err}")
        tx["gas"] = 300_000

    signed = account.sign_transaction(tx)
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=receipt_timeout)
    tx_hash_hex = to_hex(tx_hash)

    if receipt["status"] == 1:
        gas_used = receipt.get("gasUsed", 0)
        logger.info(f"TX SUCCESS: {tx_hash_hex[:16]}... | gas={gas_used}")
        return ChainTxResult(success=True, tx_hash=tx_hash_hex, gas_used=gas_used, receipt=receipt)

    error = f"TX reverted: {tx_hash_hex}"
    logger.warning(error)
    return ChainTxResult(success=False, tx_hash=tx_hash_hex, error=error, receipt=receipt)


# ============================================================
# NORMALIZATION
# ============================================================

def to_hex(value) -> str:
    """HexBytes / bytes / str → lowercase 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def topic_to_address(topic) -> str:
    """Indexed address topic (32-byte, left-padded) → checksummed address."""
    return Web3.to_checksum_address("0x" + to_hex(topic)[-40:])


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Addresses are case-insensitive identifiers."""
    if not a or not b:
        return False
    return a.lower() == b.lower()


def explorer_tx_url(tx_hash: str, explorer: str = "https://basescan.org") -> str:
    return f"{explorer}/tx/{tx_hash}"
