import json

import pytest

from core.errors import UploadError
from core.permastore import PermanentStore
from fakes import FakeResponse, FakeSession

ITEMS = [{"id": "claw-classic", "name": "Classic Claw", "qty": 1, "price": "4.20", "total": "4.20"}]


class TestUpload:
    async def test_dormant_without_gateway(self):
        store = PermanentStore()

        assert not store.is_configured
        assert await store.upload_items("order-1", ITEMS) == ""

    async def test_posts_document_with_tags(self):
        session = FakeSession([FakeResponse(200, {"id": "ar-123"})])
        store = PermanentStore("https://bundler.test/tx", session=session)

        ref = await store.upload_items("order-1", ITEMS)

        assert ref == "ar-123"
        method, url, body = session.calls[0]
        assert (method, url) == ("POST", "https://bundler.test/tx")
        tags = {t["name"]: t["value"] for t in body["tags"]}
        assert tags["Type"] == "order-items"
        assert tags["Order-Id"] == "order-1"
        assert tags["App-Name"] == "Clawyard"
        document = json.loads(body["data"])
        assert document["items"][0]["name"] == "Classic Claw"
        assert "uploadedAt" in document

    async def test_metadata_document(self):
        session = FakeSession([FakeResponse(200, {"id": "ar-456"})])
        store = PermanentStore("https://bundler.test/tx", session=session)

        assert await store.upload_metadata("order-1", {"paymentAmount": "7.92"}) == "ar-456"
        _, _, body = session.calls[0]
        assert json.loads(body["data"])["paymentAmount"] == "7.92"

    async def test_rejection(self):
        session = FakeSession([FakeResponse(500, text="bundler overloaded")])
        store = PermanentStore("https://bundler.test/tx", session=session)

        with pytest.raises(UploadError, match="HTTP 500"):
            await store.upload_items("order-1", ITEMS)

    async def test_response_without_id(self):
        session = FakeSession([FakeResponse(200, {"ok": True})])
        store = PermanentStore("https://bundler.test/tx", session=session)

        with pytest.raises(UploadError):
            await store.upload_items("order-1", ITEMS)

    async def test_non_json_reply(self):
        session = FakeSession([FakeResponse(200, text="<html>bad gateway page</html>")])
        store = PermanentStore("https://bundler.test/tx", session=session)

        with pytest.raises(UploadError, match="not JSON"):
            await store.upload_items("order-1", ITEMS)
