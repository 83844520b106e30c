"""
Storefront Settings - Chain constants and runtime configuration

Two layers:
- Module constants: contract addresses, ABIs and decimals that never change
  per deployment (USDC on Base, ERC-8004 registry, EAS predeploys).
- StoreSettings: frozen dataclass built from environment variables once at
  startup and handed to every component. Nothing reads os.environ after that.

All env vars are optional; defaults point at public mainnet RPCs and a
local SQLite ledger.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Final


# ============================================================
# CHAIN DEFAULTS
# ============================================================

CHAIN_DEFAULTS = {
    "base": {
        "rpc": "https://mainnet.base.org",
        "chain_id": 8453,
        "token_address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",  # USDC
        "token_symbol": "USDC",
        "token_decimals": 6,
        "explorer": "https://basescan.org",
    },
    "ethereum": {
        "rpc": "https://eth.llamarpc.com",
        "chain_id": 1,
        "explorer": "https://etherscan.io",
    },
}

# ERC-8004 identity registry (Ethereum mainnet)
IDENTITY_REGISTRY: Final[str] = "0x8004A169FB4a3325136EB29fA0ceB6D2e539a432"

# EAS predeploys on OP-stack chains (Base)
EAS_CONTRACT_ADDRESS: Final[str] = "0x4200000000000000000000000000000000000021"
SCHEMA_REGISTRY_ADDRESS: Final[str] = "0x4200000000000000000000000000000000000020"

# Receipt schema v2. v1 ('string orderId, address buyer, string items,
# uint256 totalUSDC, uint256 timestamp') is retired.
RECEIPT_SCHEMA: Final[str] = (
    "string orderId,address buyer,uint256 agentId,string storeName,"
    "string providerName,address paymentToken,uint256 paymentAmount,"
    "uint64 orderDate,string itemsRef,string metadataRef"
)
RECEIPT_SCHEMA_UID: Final[str] = (
    "0x5c1f61f956c705bbf27274f556b6108e08e552d2b15b70e528e8328bf9dec69e"
)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC: Final[str] = (
    "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
)

NULL_ADDRESS: Final[str] = "0x" + "0" * 40


# ============================================================
# MINIMAL ABIs
# ============================================================

ERC721_ABI = [
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# EAS: attest(AttestationRequest) + getAttestation(bytes32) + Attested event
EAS_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "schema", "type": "bytes32"},
                    {
                        "components": [
                            {"name": "recipient", "type": "address"},
                            {"name": "expirationTime", "type": "uint64"},
                            {"name": "revocable", "type": "bool"},
                            {"name": "refUID", "type": "bytes32"},
                            {"name": "data", "type": "bytes"},
                            {"name": "value", "type": "uint256"},
                        ],
                        "name": "data",
                        "type": "tuple",
                    },
                ],
                "name": "request",
                "type": "tuple",
            }
        ],
        "name": "attest",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [{"name": "uid", "type": "bytes32"}],
        "name": "getAttestation",
        "outputs": [
            {
                "components": [
                    {"name": "uid", "type": "bytes32"},
                    {"name": "schema", "type": "bytes32"},
                    {"name": "time", "type": "uint64"},
                    {"name": "expirationTime", "type": "uint64"},
                    {"name": "revocationTime", "type": "uint64"},
                    {"name": "refUID", "type": "bytes32"},
                    {"name": "recipient", "type": "address"},
                    {"name": "attester", "type": "address"},
                    {"name": "revocable", "type": "bool"},
                    {"name": "data", "type": "bytes"},
                ],
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": True, "name": "attester", "type": "address"},
            {"indexed": False, "name": "uid", "type": "bytes32"},
            {"indexed": True, "name": "schemaUID", "type": "bytes32"},
        ],
        "name": "Attested",
        "type": "event",
    },
]

SCHEMA_REGISTRY_ABI = [
    {
        "inputs": [
            {"name": "schema", "type": "string"},
            {"name": "resolver", "type": "address"},
            {"name": "revocable", "type": "bool"},
        ],
        "name": "register",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "uid", "type": "bytes32"}],
        "name": "getSchema",
        "outputs": [
            {
                "components": [
                    {"name": "uid", "type": "bytes32"},
                    {"name": "resolver", "type": "address"},
                    {"name": "revocable", "type": "bool"},
                    {"name": "schema", "type": "string"},
                ],
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


# ============================================================
# RUNTIME SETTINGS
# ============================================================

def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Timeouts:
    """Per-call bounds (seconds) for every external collaborator."""
    identity: float = 15.0
    payment: float = 15.0
    fulfillment: float = 30.0
    attestation: float = 120.0
    upload: float = 30.0


@dataclass(frozen=True)
class StoreSettings:
    """Frozen dataclass = one immutable config snapshot per process."""

    store_name: str = "clawyard"
    provider_name: str = "printful"
    receiving_wallet: str = "0x80370645C98f05Ad86BdF676FaE54afCDBF5BC10"

    base_rpc_url: str = CHAIN_DEFAULTS["base"]["rpc"]
    eth_rpc_url: str = CHAIN_DEFAULTS["ethereum"]["rpc"]

    # Operating key: signs attestations and pays bundler uploads. Optional.
    operator_private_key: str = ""
    schema_uid: str = RECEIPT_SCHEMA_UID

    printful_api_key: str = ""
    permastore_url: str = ""
    permastore_token: str = ""

    database_url: str = "sqlite+aiosqlite:///data/storefront.db"
    catalog_path: Path = Path("config/catalog.json")

    payment_tolerance_percent: Decimal = Decimal("1")

    # Rate limits: requests per window per client IP
    global_rate_limit: int = 100
    global_rate_window_seconds: int = 15 * 60
    order_rate_limit: int = 5
    order_rate_window_seconds: int = 60

    admin_token: str = ""
    cors_origins: tuple = ("*",)

    timeouts: Timeouts = field(default_factory=Timeouts)

    @property
    def token_address(self) -> str:
        return CHAIN_DEFAULTS["base"]["token_address"]

    @property
    def token_decimals(self) -> int:
        return CHAIN_DEFAULTS["base"]["token_decimals"]

    @classmethod
    def from_env(cls) -> "StoreSettings":
        """Build settings from environment (call after load_dotenv())."""
        return cls(
            store_name=os.getenv("STORE_NAME", "clawyard"),
            provider_name=os.getenv("PROVIDER_NAME", "printful"),
            receiving_wallet=os.getenv(
                "STORE_WALLET", "0x80370645C98f05Ad86BdF676FaE54afCDBF5BC10"
            ),
            base_rpc_url=os.getenv("BASE_RPC_URL", CHAIN_DEFAULTS["base"]["rpc"]),
            eth_rpc_url=os.getenv("ETH_RPC_URL", CHAIN_DEFAULTS["ethereum"]["rpc"]),
            operator_private_key=os.getenv("STORE_PRIVATE_KEY", ""),
            schema_uid=os.getenv("RECEIPT_SCHEMA_UID", RECEIPT_SCHEMA_UID),
            printful_api_key=os.getenv("PRINTFUL_API_KEY", ""),
            permastore_url=os.getenv("PERMASTORE_URL", ""),
            permastore_token=os.getenv("PERMASTORE_TOKEN", ""),
            database_url=os.getenv(
                "DATABASE_URL", "sqlite+aiosqlite:///data/storefront.db"
            ),
            catalog_path=Path(os.getenv("CATALOG_PATH", "config/catalog.json")),
            payment_tolerance_percent=_env_decimal("PAYMENT_TOLERANCE_PERCENT", "1"),
            global_rate_limit=int(os.getenv("RATE_LIMIT", "100")),
            order_rate_limit=int(os.getenv("ORDER_RATE_LIMIT", "5")),
            admin_token=os.getenv("ADMIN_TOKEN", ""),
            cors_origins=tuple(
                o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
            ),
            timeouts=Timeouts(
                identity=_env_float("IDENTITY_TIMEOUT", 15.0),
                payment=_env_float("PAYMENT_TIMEOUT", 15.0),
                fulfillment=_env_float("FULFILLMENT_TIMEOUT", 30.0),
                attestation=_env_float("ATTESTATION_TIMEOUT", 120.0),
                upload=_env_float("UPLOAD_TIMEOUT", 30.0),
            ),
        )

    def payment_info(self) -> dict:
        """Payment instructions attached to every 402 and /api/payment-info."""
        return {
            "wallet": self.receiving_wallet,
            "chain": "base",
            "chainId": CHAIN_DEFAULTS["base"]["chain_id"],
            "token": CHAIN_DEFAULTS["base"]["token_symbol"],
            "tokenAddress": self.token_address,
        }
