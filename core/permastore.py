"""
Permanent Store - content-addressed JSON uploads (Arweave via a bundler gateway)

Items and metadata documents for each receipt are uploaded once and referenced
from the attestation by id (readable at arweave.net/{id}). The gateway is any
HTTP bundler that accepts {"data", "tags"} and answers {"id"}.

Unconfigured (no PERMASTORE_URL) = dormant: uploads return "" and the receipt
minter falls back to inline references.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import aiohttp

from .errors import UploadError

logger = logging.getLogger("storefront.permastore")

_APP_NAME = "Clawyard"


class PermanentStore:
    """
    Usage:
        store = PermanentStore("https://bundler.example/tx", auth_token)
        items_ref = await store.upload_items(order_id, items)
    """

    def __init__(
        self,
        gateway_url: str = "",
        auth_token: str = "",
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._gateway_url = gateway_url
        self._auth_token = auth_token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

        if not self._gateway_url:
            logger.info("PERMASTORE_URL not set - permanent uploads disabled")

    @property
    def is_configured(self) -> bool:
        return bool(self._gateway_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self._auth_token:
                headers["Authorization"] = f"Bearer {self._auth_token}"
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=headers)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def upload_items(self, order_id: str, items: list[dict]) -> str:
        document = {
            "orderId": order_id,
            "items": [
                {
                    "id": i["id"],
                    "name": i["name"],
                    "qty": i["qty"],
                    "price": i["price"],
                    "imageUrl": i.get("imageUrl"),
                }
                for i in items
            ],
        }
        ref = await self._upload(document, "order-items", order_id)
        if ref:
            logger.info(f"Items uploaded to permanent store: {ref}")
        return ref

    async def upload_metadata(self, order_id: str, metadata: dict) -> str:
        document = {"orderId": order_id, **metadata}
        ref = await self._upload(document, "order-metadata", order_id)
        if ref:
            logger.info(f"Metadata uploaded to permanent store: {ref}")
        return ref

    async def _upload(self, document: dict, doc_type: str, order_id: str) -> str:
        """
        Returns the content id, or "" when dormant.

        Raises:
            UploadError: gateway rejected, unreachable, or answered without an id
        """
        if not self._gateway_url:
            return ""

        document = {**document, "uploadedAt": datetime.now(timezone.utc).isoformat()}
        body = {
            "data": json.dumps(document, default=str),
            "tags": [
                {"name": "Content-Type", "value": "application/json"},
                {"name": "App-Name", "value": _APP_NAME},
                {"name": "Type", "value": doc_type},
                {"name": "Order-Id", "value": order_id},
            ],
        }

        session = await self._get_session()
        try:
            async with session.post(self._gateway_url, json=body) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise UploadError(f"Gateway rejected {doc_type}: HTTP {resp.status} {text[:200]}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise UploadError(f"Gateway response for {doc_type} is not JSON") from e
        except aiohttp.ClientError as e:
            raise UploadError(f"Gateway unreachable: {e}") from e
        except asyncio.TimeoutError as e:
            raise UploadError(f"Upload of {doc_type} timed out") from e

        content_id = data.get("id") if isinstance(data, dict) else None
        if not content_id:
            raise UploadError(f"Gateway response for {doc_type} has no id")
        return str(content_id)
