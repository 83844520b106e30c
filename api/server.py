"""
Clawyard API Server - FastAPI Backend

Endpoints:
- GET  /api/health                       Heartbeat
- GET  /api/catalog                      Active stickers
- GET  /api/sticker/{id}                 Single sticker
- GET  /api/payment-info                 Where and how to pay
- POST /api/shipping/estimate            Shipping rate quote
- POST /api/order                        Verify agent + payment, create order
- GET  /api/order/{id}?wallet=0x...      Owner-only order lookup (no address)
- POST /api/admin/order/{id}/resubmit    Operator: retry failed fulfillment
- GET  /api/admin/orders/failed          Operator: fulfillment_failed queue
- GET  /api/admin/stats                  Operator: ledger stats + gas wallet

Buyers are agents only: every order needs an ERC-8004 agent id owned by the
paying wallet, and a settled USDC transfer on Base.
"""

import asyncio
import hmac
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from core.errors import AccessDeniedError, FulfillmentError, StorefrontError
from core.orchestrator import OrderOrchestrator
from core.rate_limit import RateLimiter
from core.settings import StoreSettings

logger = logging.getLogger("storefront.api")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ============================================================
# MODELS
# ============================================================

class _RequestModel(BaseModel):
    """Strict request bodies: unknown fields rejected, camelCase or snake_case keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )


class StickerItem(_RequestModel):
    id: str = Field(..., min_length=1, max_length=100)
    qty: int = Field(..., ge=1, le=50)
    image_url: Optional[str] = Field(None, max_length=2000)


class ShippingAddress(_RequestModel):
    name: str = Field(..., min_length=2, max_length=100)
    company: str = Field("", max_length=100)
    address1: str = Field(..., min_length=5, max_length=200)
    address2: str = Field("", max_length=200)
    city: str = Field(..., min_length=2, max_length=100)
    state: str = Field(..., min_length=2, max_length=100)
    country: str = Field(..., pattern=r"^[A-Z]{2}$")
    zip: str = Field(..., min_length=3, max_length=20)
    phone: str = ""
    email: str = ""

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: str) -> str:
        if v and not 10 <= len(v) <= 20:
            raise ValueError("phone must be 10-20 characters")
        return v

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        if v and not _EMAIL_RE.match(v):
            raise ValueError("email must be a valid email address")
        return v


class OrderRequest(_RequestModel):
    stickers: list[StickerItem] = Field(..., min_length=1, max_length=20)
    shipping_address: ShippingAddress
    agent_id: Optional[str] = Field(None, max_length=200)
    payer_wallet: Optional[str] = Field(None, pattern=r"^0x[a-fA-F0-9]{40}$")
    shipping_method: str = Field(..., min_length=1, max_length=100)
    shipping_cost: Decimal = Field(..., ge=0, decimal_places=2)
    payment_tx_hash: Optional[str] = Field(None, pattern=r"^0x[a-fA-F0-9]{64}$")
    notes: Optional[str] = Field(None, max_length=500)


class EstimateItem(_RequestModel):
    id: str = Field(..., min_length=1, max_length=100)
    qty: int = Field(..., ge=1, le=50)


class EstimateAddress(_RequestModel):
    country: str = Field(..., pattern=r"^[A-Z]{2}$")
    state: str = ""
    city: str = Field(..., min_length=1, max_length=100)
    zip: str = Field(..., min_length=1, max_length=20)


class ShippingEstimateRequest(_RequestModel):
    items: list[EstimateItem] = Field(..., min_length=1, max_length=20)
    shipping_address: EstimateAddress


def _validation_errors(exc: RequestValidationError) -> list[dict]:
    """pydantic error list → [{field, message}], dropping the 'body' prefix."""
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        errors.append({"field": ".".join(loc) or "body", "message": err.get("msg", "invalid")})
    return errors


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    settings: StoreSettings,
    orchestrator: OrderOrchestrator,
    rate_limiter: Optional[RateLimiter] = None,
    order_rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """
    Create FastAPI app wired to the order pipeline.

    rate_limiter: global per-IP limit over /api/*
    order_rate_limiter: per-IP limit on POST /api/order only
    """
    if rate_limiter is None:
        rate_limiter = RateLimiter(settings.global_rate_limit, settings.global_rate_window_seconds)
    if order_rate_limiter is None:
        order_rate_limiter = RateLimiter(
            settings.order_rate_limit,
            settings.order_rate_window_seconds,
            message="Too many orders, please try again later",
        )

    catalog = orchestrator.catalog

    app = FastAPI(
        title="Clawyard",
        description="Sticker storefront for verified autonomous agents. Pay in USDC on Base.",
        version="1.0.0",
    )

    # CORS: allow all in dev, restrict in production via CORS_ORIGINS env var
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============================================================
    # ERROR MAPPING
    # ============================================================

    @app.exception_handler(StorefrontError)
    async def _storefront_error(request: Request, exc: StorefrontError):
        body = exc.to_dict()
        if exc.status_code == 402:
            body.setdefault("paymentInfo", orchestrator.payment_instructions())
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError):
        errors = _validation_errors(exc)
        message = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "message": message, "errors": errors},
        )

    @app.middleware("http")
    async def _global_rate_limit(request: Request, call_next):
        if request.url.path.startswith("/api/"):
            retry_after = rate_limiter.check(_client_ip(request))
            if retry_after is not None:
                return JSONResponse(
                    status_code=429,
                    content={"error": "Too many requests", "message": rate_limiter.message},
                    headers={"Retry-After": str(retry_after)},
                )
        return await call_next(request)

    def _require_admin(token: Optional[str]):
        if not settings.admin_token:
            raise AccessDeniedError("Admin endpoints are disabled (ADMIN_TOKEN not set)")
        if not token or not hmac.compare_digest(token, settings.admin_token):
            raise AccessDeniedError("Invalid admin token")

    # ============================================================
    # PUBLIC ROUTES
    # ============================================================

    @app.get("/api/health")
    async def health():
        """Heartbeat endpoint."""
        return {
            "status": "ok",
            "timestamp": _now_iso(),
            "stickers": len(catalog),
            "version": app.version,
        }

    @app.get("/api/catalog")
    async def get_catalog():
        active = catalog.active()
        return {"stickers": active, "total": len(active), "updated": _now_iso()}

    @app.get("/api/sticker/{sticker_id}")
    async def get_sticker(sticker_id: str):
        sticker = catalog.get(sticker_id)
        if sticker is None:
            return JSONResponse(status_code=404, content={"error": "Sticker not found"})
        return sticker

    @app.get("/api/payment-info")
    async def payment_info():
        return orchestrator.payment_instructions()

    @app.post("/api/shipping/estimate")
    async def shipping_estimate(req: ShippingEstimateRequest):
        items = [item.model_dump() for item in req.items]
        try:
            rates = await orchestrator.estimate_shipping(items, req.shipping_address.model_dump())
        except asyncio.TimeoutError as e:
            raise FulfillmentError("Shipping estimate timed out") from e
        return {"rates": rates, "currency": "USD"}

    # ============================================================
    # ORDERS
    # ============================================================

    @app.post("/api/order", status_code=201)
    async def create_order(
        req: OrderRequest,
        request: Request,
        x_wallet: Optional[str] = Header(None),
        x_payment_tx: Optional[str] = Header(None),
    ):
        """Verify agent identity + on-chain payment, then commit and fulfill."""
        retry_after = order_rate_limiter.check(_client_ip(request))
        if retry_after is not None:
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests", "message": order_rate_limiter.message},
                headers={"Retry-After": str(retry_after)},
            )

        body = req.model_dump()
        try:
            return await orchestrator.create_order(body, x_wallet, x_payment_tx)
        except StorefrontError:
            raise
        except Exception:
            logger.exception("Order creation failed")
            return JSONResponse(status_code=500, content={"error": "Order creation failed"})

    @app.get("/api/order/{order_id}")
    async def get_order(order_id: str, wallet: Optional[str] = None):
        """Owner-only order status. Shipping address is never returned."""
        return await orchestrator.lookup(order_id, wallet)

    # ============================================================
    # OPERATOR
    # ============================================================

    @app.post("/api/admin/order/{order_id}/resubmit")
    async def resubmit_order(order_id: str, x_admin_token: Optional[str] = Header(None)):
        _require_admin(x_admin_token)
        return await orchestrator.resubmit_fulfillment(order_id)

    @app.get("/api/admin/orders/failed")
    async def failed_orders(limit: int = 50, x_admin_token: Optional[str] = Header(None)):
        _require_admin(x_admin_token)
        return {"orders": await orchestrator.failed_fulfillments(limit)}

    @app.get("/api/admin/stats")
    async def admin_stats(x_admin_token: Optional[str] = Header(None)):
        _require_admin(x_admin_token)
        return {
            "orders": await orchestrator.ledger.get_stats(),
            "attester": await orchestrator.minter.check_wallet_health(),
            "rateLimit": rate_limiter.get_stats(),
        }

    # ============================================================
    # LIFECYCLE
    # ============================================================

    @app.on_event("startup")
    async def _startup():
        await orchestrator.ledger.init()
        logger.info(f"{settings.store_name} API server starting up ({len(catalog)} stickers)")

    @app.on_event("shutdown")
    async def _shutdown():
        await orchestrator.fulfillment.close()
        await orchestrator.minter.close()
        await orchestrator.ledger.close()
        logger.info(f"{settings.store_name} API server stopped")

    return app
