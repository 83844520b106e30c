"""
Generate the storefront operating wallet.

The operating key signs EAS receipts (and needs a little ETH on Base for gas).
It is NOT the receiving wallet: payments can go to a cold address.

Usage:
    python scripts/generate_wallet.py                       # Save to ~/.secrets/
    python scripts/generate_wallet.py --out /secure/dir     # Custom directory

The key file is written with mode 0600 and never printed.
"""

import os
import sys
import logging
import argparse
from pathlib import Path

from eth_account import Account

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("storefront.generate_wallet")


def write_secret(path: Path, content: str):
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)


def main():
    parser = argparse.ArgumentParser(description="Generate a new storefront operating wallet")
    parser.add_argument(
        "--out", default=str(Path.home() / ".secrets"),
        help="Directory for the key and address files (default: ~/.secrets)",
    )
    args = parser.parse_args()

    out_dir = Path(args.out)
    key_path = out_dir / "clawyard-wallet-key"
    if key_path.exists():
        logger.error(f"{key_path} already exists - refusing to overwrite an existing key")
        sys.exit(1)

    out_dir.mkdir(parents=True, exist_ok=True)
    account = Account.create()

    write_secret(key_path, account.key.hex().removeprefix("0x"))
    write_secret(out_dir / "clawyard-wallet-address", account.address)

    logger.info(f"Address:     {account.address}")
    logger.info(f"Private key: {key_path}")
    logger.info("Set STORE_PRIVATE_KEY from that file in .env, then fund the address")
    logger.info("with ETH on Base (chain id 8453) for attestation gas.")


if __name__ == "__main__":
    main()
