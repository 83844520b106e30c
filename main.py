"""
Clawyard - main entry point

Loads configuration, builds every collaborator once, injects them into the
orchestrator and the API, starts uvicorn.

Usage:
    python main.py              # Start the storefront
    uvicorn main:app            # Or any ASGI server
"""

import os
import logging
import re

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact bare 64-char hex strings (private keys) from all log output.

    0x-prefixed hashes (tx hashes, attestation UIDs) are public and pass through.
    """
    _PATTERN = re.compile(r'(?<![0-9a-fA-Fx])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("storefront.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.settings import StoreSettings
from core.catalog import Catalog
from core.identity import IdentityVerifier
from core.payment import PaymentVerifier
from core.ledger import OrderLedger
from core.fulfillment import FulfillmentSubmitter
from core.permastore import PermanentStore
from core.receipts import ReceiptMinter
from core.orchestrator import OrderOrchestrator
from api.server import create_app


def build_orchestrator(settings: StoreSettings) -> OrderOrchestrator:
    """Construct every collaborator from settings. No network calls happen here."""
    timeouts = settings.timeouts
    catalog = Catalog.load(settings.catalog_path)

    identity = IdentityVerifier(settings.eth_rpc_url, timeout=timeouts.identity)
    payment = PaymentVerifier(
        settings.base_rpc_url,
        settings.receiving_wallet,
        token_address=settings.token_address,
        token_decimals=settings.token_decimals,
        timeout=timeouts.payment,
    )
    ledger = OrderLedger(settings.database_url)
    fulfillment = FulfillmentSubmitter(settings.printful_api_key, timeout=timeouts.fulfillment)
    permastore = PermanentStore(
        settings.permastore_url, settings.permastore_token, timeout=timeouts.upload
    )
    minter = ReceiptMinter(
        settings.base_rpc_url,
        settings.operator_private_key,
        schema_uid=settings.schema_uid,
        permastore=permastore,
        attestation_timeout=timeouts.attestation,
        upload_timeout=timeouts.upload,
    )

    return OrderOrchestrator(
        settings=settings,
        catalog=catalog,
        identity=identity,
        payment=payment,
        ledger=ledger,
        fulfillment=fulfillment,
        minter=minter,
    )


def create_storefront_app():
    """Create the fully wired FastAPI app."""
    settings = StoreSettings.from_env()
    logger.info(
        f"Store '{settings.store_name}' receiving USDC at {settings.receiving_wallet} "
        f"(ledger: {settings.database_url.split('://', 1)[0]})"
    )
    return create_app(settings, build_orchestrator(settings))


# ============================================================
# ENTRY POINT
# ============================================================

app = create_storefront_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
