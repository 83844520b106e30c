"""
Fulfillment Submitter - Printful print-on-demand orders

Submits a committed order to Printful as a draft, then confirms it so it
enters production. Failures raise FulfillmentError; the orchestrator turns
that into a non-fatal 'fulfillment_failed' status.

Without PRINTFUL_API_KEY nothing is ever sent: submit() raises so the order
lands in fulfillment_failed (and the operator queue) instead of looking
shipped. Quotes, status and cancel return canned values for local runs.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

import aiohttp

from .errors import FulfillmentError
from .ledger import Order

logger = logging.getLogger("storefront.fulfillment")

_PRINTFUL_API_BASE = "https://api.printful.com"
_DEFAULT_IMAGE_BASE = "https://clawyard.dev/images"


def _shipping_rate(method: str) -> str:
    """Printful rate ids look like STANDARD / PRINTFUL_FAST; free-text labels fall back."""
    method = (method or "").strip()
    if method and method.replace("_", "").isalnum() and method.isupper():
        return method
    return "STANDARD"


class FulfillmentSubmitter:
    """
    Usage:
        submitter = FulfillmentSubmitter(api_key)
        provider_id = await submitter.submit(order)
        await submitter.close()
    """

    def __init__(
        self,
        api_key: str = "",
        timeout: float = 30.0,
        api_base: str = _PRINTFUL_API_BASE,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

        if not self._api_key:
            logger.warning("PRINTFUL_API_KEY not set - orders will be left in fulfillment_failed")

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                    "User-Agent": "Clawyard/1.0",
                },
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------
    # ORDERS
    # ------------------------------------------------------------

    async def submit(self, order: Order) -> str:
        """
        Create + confirm a Printful order. Returns the provider order id.

        Raises:
            FulfillmentError: provider rejected the order, was unreachable,
                or no API key is configured
        """
        if not self._api_key:
            logger.warning(f"Printful not configured - order {order.id} was NOT submitted")
            raise FulfillmentError("Fulfillment provider not configured (PRINTFUL_API_KEY)")

        payload = self.build_order_payload(order)
        logger.info(f"Creating Printful order for {order.id}...")

        result = await self._request("POST", "/orders", json=payload)
        provider_id = result.get("id") if isinstance(result, dict) else None
        if provider_id is None:
            raise FulfillmentError("Invalid response from Printful API: missing order id")

        logger.info(f"Printful order created (draft): {provider_id}, confirming...")
        await self._request("POST", f"/orders/{provider_id}/confirm")
        logger.info(f"Printful order confirmed: {provider_id}")
        return str(provider_id)

    @staticmethod
    def build_order_payload(order: Order) -> dict:
        """Order row → Printful /orders body. The only place the address leaves the ledger."""
        address = order.shipping_address
        items = [
            {
                "variant_id": item.get("variantId"),
                "quantity": item["qty"],
                "retail_price": item["price"],
                "files": [
                    {
                        "type": "default",
                        "url": item.get("imageUrl") or f"{_DEFAULT_IMAGE_BASE}/{item['id']}.png",
                    }
                ],
            }
            for item in order.items
        ]
        subtotal = sum((Decimal(item["total"]) for item in order.items), Decimal("0.00"))

        return {
            "external_id": f"CLW-{order.id[:8]}",
            "shipping": _shipping_rate(order.shipping_method),
            "recipient": {
                "name": address.get("name", ""),
                "company": address.get("company", ""),
                "address1": address.get("address1", ""),
                "address2": address.get("address2", ""),
                "city": address.get("city", ""),
                "state_code": address.get("state", ""),
                "country_code": address.get("country", ""),
                "zip": address.get("zip", ""),
                "phone": address.get("phone", ""),
                "email": address.get("email", ""),
            },
            "items": items,
            "retail_costs": {
                "currency": "USD",
                "subtotal": str(subtotal),
                "discount": "0.00",
                "shipping": order.shipping_cost,
                "tax": "0.00",
            },
        }

    async def get_order_status(self, provider_order_id: str) -> dict:
        if not self._api_key:
            return {"id": provider_order_id, "status": "pending", "shipping": None, "tracking": None}

        result = await self._request("GET", f"/orders/{provider_order_id}")
        shipments = result.get("shipments") or []
        first = shipments[0] if shipments else None
        return {
            "id": result.get("id"),
            "status": result.get("status"),
            "shipping": first,
            "tracking": first.get("tracking_number") if first else None,
            "estimatedDelivery": result.get("estimated_fulfillment"),
        }

    async def cancel_order(self, provider_order_id: str) -> bool:
        if not self._api_key:
            logger.info(f"[STUB] Cancel Printful order {provider_order_id}")
            return True

        await self._request("DELETE", f"/orders/{provider_order_id}")
        logger.info(f"Printful order cancelled: {provider_order_id}")
        return True

    async def estimate_shipping(self, variant_items: list[dict], address: dict):
        """
        Shipping rate quote.

        Args:
            variant_items: [{"variantId": int, "qty": int}] from Catalog.variant_items()
            address: at least country, city, zip (state optional)
        """
        if not self._api_key:
            return {
                "standard": {"cost": "4.99", "currency": "USD"},
                "express": {"cost": "12.99", "currency": "USD"},
            }

        body = {
            "recipient": {
                "country_code": address.get("country", ""),
                "state_code": address.get("state", ""),
                "city": address.get("city", ""),
                "zip": address.get("zip", ""),
            },
            "items": [
                {"variant_id": item["variantId"], "quantity": item["qty"]}
                for item in variant_items
            ],
        }
        return await self._request("POST", "/shipping/rates", json=body)

    # ------------------------------------------------------------
    # TRANSPORT
    # ------------------------------------------------------------

    async def _request(self, method: str, path: str, json: Optional[dict] = None):
        """Printful wraps every payload as {"code", "result"}; returns result."""
        session = await self._get_session()
        url = f"{self._api_base}{path}"
        try:
            async with session.request(method, url, json=json) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = {}
                if resp.status >= 400:
                    message = _error_message(data) or f"HTTP {resp.status}"
                    logger.error(f"Printful {method} {path} failed: {message}")
                    raise FulfillmentError(
                        f"Printful rejected request: {message}",
                        {"providerStatus": resp.status},
                    )
        except aiohttp.ClientError as e:
            logger.error(f"Printful {method} {path} unreachable: {e}")
            raise FulfillmentError(f"Printful unreachable: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(f"Printful {method} {path} timed out")
            raise FulfillmentError("Printful request timed out") from e

        if not isinstance(data, dict) or "result" not in data:
            raise FulfillmentError("Invalid response from Printful API")
        return data["result"]


def _error_message(data) -> str:
    if not isinstance(data, dict):
        return ""
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message", "")
    result = data.get("result")
    return result if isinstance(result, str) else ""
