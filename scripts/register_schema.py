"""
Register the Clawyard receipt schema on the EAS SchemaRegistry (Base).

One-time bootstrap. The order path never registers anything: it attests
against RECEIPT_SCHEMA_UID. EAS schema UIDs are deterministic:

    uid = keccak256(abi.encodePacked(schema, resolver, revocable))

so the UID can be predicted and checked before spending gas.

Usage:
    python scripts/register_schema.py              # Register (skips if it exists)
    python scripts/register_schema.py --dry-run    # Print the predicted UID only
    python scripts/register_schema.py --verify     # Check registration on-chain

Prerequisites:
    STORE_PRIVATE_KEY in .env, with a little ETH on Base for gas.
"""

import os
import sys
import logging
import argparse
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))
load_dotenv(ROOT / ".env")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("storefront.register_schema")

from core.chain import connect, send_transaction, to_hex
from core.settings import (
    CHAIN_DEFAULTS,
    NULL_ADDRESS,
    RECEIPT_SCHEMA,
    RECEIPT_SCHEMA_UID,
    SCHEMA_REGISTRY_ABI,
    SCHEMA_REGISTRY_ADDRESS,
)


def predict_schema_uid(schema: str, resolver: str = NULL_ADDRESS, revocable: bool = True) -> str:
    from eth_utils import keccak

    packed = (
        schema.encode("utf-8")
        + bytes.fromhex(resolver.removeprefix("0x"))
        + (b"\x01" if revocable else b"\x00")
    )
    return "0x" + keccak(packed).hex()


def is_registered(registry, uid: str) -> bool:
    record = registry.functions.getSchema(bytes.fromhex(uid.removeprefix("0x"))).call()
    return to_hex(record[0]) == uid.lower()


def main():
    parser = argparse.ArgumentParser(
        description="Register the receipt schema on EAS (Base). Idempotent.",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Print the predicted schema UID without touching the chain",
    )
    parser.add_argument(
        "--verify", action="store_true",
        help="Check whether the schema is registered (no transaction)",
    )
    args = parser.parse_args()

    predicted = predict_schema_uid(RECEIPT_SCHEMA)
    logger.info("=" * 60)
    logger.info("EAS RECEIPT SCHEMA")
    logger.info(f"  Schema:    {RECEIPT_SCHEMA}")
    logger.info(f"  Predicted: {predicted}")
    if predicted != RECEIPT_SCHEMA_UID.lower():
        logger.warning(f"  Configured RECEIPT_SCHEMA_UID differs: {RECEIPT_SCHEMA_UID}")
    logger.info("=" * 60)

    if args.dry_run:
        return

    from web3 import Web3

    cfg = CHAIN_DEFAULTS["base"]
    w3 = connect(os.getenv("BASE_RPC_URL", cfg["rpc"]))
    registry = w3.eth.contract(
        address=Web3.to_checksum_address(SCHEMA_REGISTRY_ADDRESS), abi=SCHEMA_REGISTRY_ABI
    )

    if is_registered(registry, predicted):
        logger.info(f"  STATUS: ALREADY REGISTERED ({predicted}) - nothing to do")
        return
    if args.verify:
        logger.info("  STATUS: NOT REGISTERED")
        sys.exit(1)

    private_key = os.getenv("STORE_PRIVATE_KEY")
    if not private_key:
        logger.error("STORE_PRIVATE_KEY not set in .env")
        sys.exit(1)

    account = w3.eth.account.from_key(private_key)
    balance = w3.eth.get_balance(account.address)
    logger.info(f"  Registrar: {account.address} ({w3.from_wei(balance, 'ether'):.6f} ETH)")

    result = send_transaction(
        w3,
        account,
        registry.functions.register(RECEIPT_SCHEMA, Web3.to_checksum_address(NULL_ADDRESS), True),
        cfg["chain_id"],
    )
    if not result.success:
        logger.error(f"Registration failed: {result.error}")
        sys.exit(1)

    logger.info(f"  Registered in tx {cfg['explorer']}/tx/{result.tx_hash}")
    logger.info(f"  Set RECEIPT_SCHEMA_UID={predicted} in .env")


if __name__ == "__main__":
    main()
