"""
Sticker catalog + deterministic pricing.

Money is Decimal end to end, quantized to cents. No float ever touches a
price, so the same request always yields the same total.
"""

import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Optional

from .errors import NotFoundError, ValidationError

logger = logging.getLogger("storefront.catalog")

CENT = Decimal("0.01")
CUSTOM_ITEM_ID = "custom"


def to_money(value) -> Decimal:
    """Any numeric/str → Decimal rounded to cents (str() first: never trust float repr)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class Catalog:
    """Static catalog loaded once at startup from config/catalog.json."""

    def __init__(self, stickers: list[dict]):
        self._stickers = {s["id"]: s for s in stickers}

    @classmethod
    def load(cls, path: Path) -> "Catalog":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        stickers = data.get("stickers", []) if isinstance(data, dict) else data
        logger.info(f"Loaded {len(stickers)} stickers from {path}")
        return cls(stickers)

    def __len__(self) -> int:
        return len(self._stickers)

    def get(self, sticker_id: str) -> Optional[dict]:
        """Active entry or None."""
        sticker = self._stickers.get(sticker_id)
        if sticker is None or not sticker.get("active", True):
            return None
        return sticker

    def active(self) -> list[dict]:
        return [s for s in self._stickers.values() if s.get("active", True)]

    def price_items(self, requested: list[dict], shipping_cost) -> tuple[list[dict], Decimal]:
        """
        Resolve requested items against the catalog and compute the total.

        Args:
            requested: [{"id": str, "qty": int, "image_url": Optional[str]}]
            shipping_cost: caller-declared shipping (from a prior quote)

        Returns:
            (line_items, total) where total = Σ(unit × qty) + shipping

        Raises:
            NotFoundError: unknown or inactive catalog id
            ValidationError: custom item without an image
        """
        line_items = []
        subtotal = Decimal("0.00")

        for item in requested:
            sticker = self.get(item["id"])
            if sticker is None:
                raise NotFoundError(f"Invalid sticker: {item['id']}", {"stickerId": item["id"]})

            unit = to_money(sticker["basePrice"])
            qty = int(item["qty"])
            line_total = (unit * qty).quantize(CENT)
            subtotal += line_total

            line = {
                "id": sticker["id"],
                "name": sticker["name"],
                "qty": qty,
                "price": str(unit),
                "total": str(line_total),
                "variantId": sticker.get("printfulVariantId"),
            }
            if sticker.get("custom") or sticker["id"] == CUSTOM_ITEM_ID:
                image_url = item.get("image_url")
                if not image_url:
                    raise ValidationError(
                        "Custom stickers require image_url",
                        {"errors": [{"field": "stickers.image_url", "message": "required for custom"}]},
                    )
                line["imageUrl"] = image_url
            elif sticker.get("imageUrl"):
                line["imageUrl"] = sticker["imageUrl"]
            line_items.append(line)

        total = (subtotal + to_money(shipping_cost)).quantize(CENT)
        return line_items, total

    def variant_items(self, requested: list[dict]) -> list[dict]:
        """Requested items → fulfillment provider variant ids (for shipping quotes)."""
        variants = []
        for item in requested:
            sticker = self.get(item["id"])
            if sticker is None:
                raise NotFoundError(f"Invalid sticker for shipping estimate: {item['id']}")
            if not sticker.get("printfulVariantId"):
                raise ValidationError(f"Variant ID missing for sticker: {item['id']}")
            variants.append({"variantId": sticker["printfulVariantId"], "qty": int(item["qty"])})
        return variants
