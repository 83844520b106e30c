"""
Order Ledger - durable order records + Replay Guard

Single source of truth for "has this order been committed". One row per
order; the partial unique index on tx_hash is the only safety-critical index:
it is the sole arbiter of payment-reference uniqueness across concurrent
requests and across processes. No in-process lock is involved.

Backed by an async SQLAlchemy engine (sqlite+aiosqlite by default, any async
URL in production). Rows are inserted exactly once, after payment
verification, and never deleted.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    Float,
    Index,
    MetaData,
    String,
    Table,
    Text,
    case,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .errors import LedgerError, ReplayError

logger = logging.getLogger("storefront.ledger")


# ============================================================
# MODELS
# ============================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FULFILLMENT_FAILED = "fulfillment_failed"
    FULFILLED = "fulfilled"


# Monotonic: a status may only move to an equal or higher rank.
_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PAID: 1,
    OrderStatus.FULFILLMENT_FAILED: 2,
    OrderStatus.FULFILLED: 3,
}


@dataclass
class OrderDraft:
    """Everything known at commit time. wallet is the verifier-derived payer."""
    wallet: str
    items: list
    shipping_address: dict
    total_amount: Decimal
    payment_tx_reference: str
    agent_id: str
    shipping_method: str = ""
    shipping_cost: Decimal = Decimal("0.00")


@dataclass
class Order:
    id: str
    wallet: str
    items: list
    shipping_address: dict
    total_amount: str
    payment_tx_reference: Optional[str]
    agent_id: str
    status: OrderStatus
    created_at: float
    updated_at: float
    shipping_method: str = ""
    shipping_cost: str = "0.00"
    fulfillment_provider_order_id: Optional[str] = None
    attestation_reference: Optional[str] = None

    def to_public_dict(self) -> dict:
        """
        Serialize for any read API.

        IMPORTANT: shipping_address is intentionally excluded here, for every
        caller including the owning wallet. It is only ever handed to the
        fulfillment provider.
        """
        return {
            "orderId": self.id,
            "wallet": self.wallet,
            "items": self.items,
            "total": self.total_amount,
            "shippingMethod": self.shipping_method,
            "shippingCost": self.shipping_cost,
            "txHash": self.payment_tx_reference,
            "printfulOrderId": self.fulfillment_provider_order_id,
            "attestationUID": self.attestation_reference,
            "agentId": self.agent_id,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


# ============================================================
# SCHEMA
# ============================================================

metadata = MetaData()

orders_table = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("wallet", String(42), nullable=False),
    Column("items", Text, nullable=False),              # JSON array
    Column("shipping_address", Text, nullable=False),   # JSON object
    Column("total_usdc", String(32), nullable=False),
    Column("shipping_method", String(100), nullable=False, default=""),
    Column("shipping_cost", String(32), nullable=False, default="0.00"),
    Column("tx_hash", String(66), nullable=True),
    Column("printful_order_id", String(64), nullable=True),
    Column("attestation_uid", String(66), nullable=True),
    Column("agent_id", String(200), nullable=True),
    Column("status", String(32), nullable=False, default=OrderStatus.PENDING.value),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
)

Index("idx_orders_wallet", orders_table.c.wallet)
Index("idx_orders_status", orders_table.c.status)
Index("idx_orders_created", orders_table.c.created_at)
Index(
    "idx_orders_tx_hash",
    orders_table.c.tx_hash,
    unique=True,
    sqlite_where=orders_table.c.tx_hash.isnot(None),
    postgresql_where=orders_table.c.tx_hash.isnot(None),
)


def normalize_reference(tx_hash: Optional[str]) -> Optional[str]:
    """Transaction hashes are hex; compare and store lowercase."""
    return tx_hash.strip().lower() if tx_hash else None


# ============================================================
# LEDGER
# ============================================================

class OrderLedger:
    """
    Usage:
        ledger = OrderLedger("sqlite+aiosqlite:///data/storefront.db")
        await ledger.init()
        order_id = await ledger.create(draft)
    """

    def __init__(self, database_url: str, engine: Optional[AsyncEngine] = None):
        self.database_url = database_url
        self._engine = engine or create_async_engine(database_url, pool_pre_ping=True)

    async def init(self) -> None:
        """Create tables and indexes (idempotent)."""
        self._ensure_sqlite_dir()
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("Order ledger ready")

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("Order ledger connection closed")

    def _ensure_sqlite_dir(self) -> None:
        marker = ":///"
        if self.database_url.startswith("sqlite") and marker in self.database_url:
            db_path = self.database_url.split(marker, 1)[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------
    # WRITE
    # ------------------------------------------------------------

    async def create(self, draft: OrderDraft) -> str:
        """
        Insert the order atomically with status 'paid'.

        Raises:
            ReplayError: payment reference already consumed (unique index hit)
            LedgerError: any other storage fault
        """
        order_id = str(uuid.uuid4())
        now = time.time()
        row = {
            "id": order_id,
            "wallet": draft.wallet,
            "items": json.dumps(draft.items, default=str),
            "shipping_address": json.dumps(draft.shipping_address),
            "total_usdc": str(draft.total_amount),
            "shipping_method": draft.shipping_method,
            "shipping_cost": str(draft.shipping_cost),
            "tx_hash": normalize_reference(draft.payment_tx_reference),
            "agent_id": draft.agent_id or None,
            "status": OrderStatus.PAID.value,
            "created_at": now,
            "updated_at": now,
        }

        try:
            async with self._engine.begin() as conn:
                await conn.execute(orders_table.insert().values(**row))
        except IntegrityError as e:
            if "tx_hash" in str(e).lower():
                logger.warning(
                    f"REPLAY BLOCKED at commit: {row['tx_hash'][:18]}... already consumed"
                )
                raise ReplayError(
                    "This payment transaction has already been used for another order",
                    {"txHash": draft.payment_tx_reference},
                ) from e
            raise LedgerError(f"Failed to create order: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to create order: {e}")
            raise LedgerError(f"Failed to create order: {e}") from e

        logger.info(f"ORDER CREATED: {order_id} | ${draft.total_amount} | {draft.wallet[:10]}...")
        return order_id

    async def update_status(self, order_id: str, status: OrderStatus) -> bool:
        """
        Move status forward. Returns False if the order does not exist.
        Raises LedgerError on an attempted regression.
        """
        status = OrderStatus(status)
        allowed_from = [s.value for s, rank in _STATUS_RANK.items() if rank <= _STATUS_RANK[status]]
        changed = await self._update(
            order_id,
            {"status": status.value},
            orders_table.c.status.in_(allowed_from),
        )
        if changed:
            return True

        current = await self.get(order_id)
        if current is None:
            return False
        raise LedgerError(
            f"Refusing status regression for {order_id}: "
            f"{current.status.value} -> {status.value}"
        )

    async def set_fulfillment_id(self, order_id: str, provider_order_id) -> bool:
        return await self._update(order_id, {"printful_order_id": str(provider_order_id)})

    async def set_attestation_reference(self, order_id: str, attestation_uid: str) -> bool:
        return await self._update(order_id, {"attestation_uid": attestation_uid})

    async def _update(self, order_id: str, values: dict, *conditions) -> bool:
        now = time.time()
        # updated_at strictly advances even when two writes share a clock tick
        values["updated_at"] = case(
            (orders_table.c.updated_at >= now, orders_table.c.updated_at + 0.001),
            else_=now,
        )
        stmt = update(orders_table).where(orders_table.c.id == order_id, *conditions).values(**values)
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Failed to update order {order_id}: {e}")
            raise LedgerError(f"Failed to update order: {e}") from e
        return result.rowcount > 0

    # ------------------------------------------------------------
    # READ
    # ------------------------------------------------------------

    async def get(self, order_id: str) -> Optional[Order]:
        rows = await self._select(select(orders_table).where(orders_table.c.id == order_id))
        return rows[0] if rows else None

    async def get_by_payment_reference(self, tx_hash: str) -> Optional[Order]:
        ref = normalize_reference(tx_hash)
        if not ref:
            return None
        rows = await self._select(select(orders_table).where(orders_table.c.tx_hash == ref))
        return rows[0] if rows else None

    async def list_by_wallet(self, wallet: str, limit: int = 10) -> list[Order]:
        stmt = (
            select(orders_table)
            .where(func.lower(orders_table.c.wallet) == wallet.lower())
            .order_by(orders_table.c.created_at.desc())
            .limit(limit)
        )
        return await self._select(stmt)

    async def list_by_status(self, status: OrderStatus, limit: int = 50) -> list[Order]:
        stmt = (
            select(orders_table)
            .where(orders_table.c.status == OrderStatus(status).value)
            .order_by(orders_table.c.created_at.asc())
            .limit(limit)
        )
        return await self._select(stmt)

    async def get_stats(self) -> dict:
        """Order count, revenue (non-pending) and counts by status."""
        try:
            async with self._engine.connect() as conn:
                by_status = (await conn.execute(
                    select(orders_table.c.status, func.count()).group_by(orders_table.c.status)
                )).all()
                totals = (await conn.execute(
                    select(orders_table.c.total_usdc).where(
                        orders_table.c.status != OrderStatus.PENDING.value
                    )
                )).scalars().all()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to read stats: {e}") from e

        counts = {status: count for status, count in by_status}
        return {
            "totalOrders": sum(counts.values()),
            "totalRevenue": str(sum((Decimal(t) for t in totals), Decimal("0.00"))),
            "ordersByStatus": counts,
        }

    async def _select(self, stmt) -> list[Order]:
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
        except SQLAlchemyError as e:
            logger.error(f"Order read failed: {e}")
            raise LedgerError(f"Failed to read order: {e}") from e
        return [self._row_to_order(r) for r in rows]

    @staticmethod
    def _row_to_order(row) -> Order:
        return Order(
            id=row["id"],
            wallet=row["wallet"],
            items=json.loads(row["items"]),
            shipping_address=json.loads(row["shipping_address"]),
            total_amount=row["total_usdc"],
            shipping_method=row["shipping_method"] or "",
            shipping_cost=row["shipping_cost"] or "0.00",
            payment_tx_reference=row["tx_hash"],
            fulfillment_provider_order_id=row["printful_order_id"],
            attestation_reference=row["attestation_uid"],
            agent_id=row["agent_id"] or "",
            status=OrderStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class ReplayGuard:
    """
    Cheap pre-check in front of the Payment Verifier. An optimization only:
    the ledger's unique index is the final authority at write time.
    """

    def __init__(self, ledger: OrderLedger):
        self._ledger = ledger

    async def is_consumed(self, tx_hash: str) -> bool:
        return await self._ledger.get_by_payment_reference(tx_hash) is not None
