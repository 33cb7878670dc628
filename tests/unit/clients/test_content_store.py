"""Tests for the content store clients (memory and Pinata over a mock transport)."""

from __future__ import annotations

import json

import httpx
import pytest

from decertify.clients.content_store import (
    ContentNotFound,
    ContentStoreError,
    MemoryContentStore,
    PinataContentStore,
    QuotaExceeded,
    StoreUnavailable,
    compute_cid,
    create_content_store,
)
from decertify.config import ContentStoreConfig

CID = "bafkreigh2akiscaildcqabsyg3dfr6chu3fgpregiymsck7e7aqa4s52zy"


def _make_config(**overrides) -> ContentStoreConfig:
    defaults = {
        "strategy": "pinata",
        "api_url": "https://api.pinata.test",
        "gateway_url": "https://gateway.pinata.test",
        "jwt": "test-jwt",
    }
    defaults.update(overrides)
    return ContentStoreConfig(**defaults)


async def _pinata(handler) -> PinataContentStore:
    store = PinataContentStore(_make_config(), transport=httpx.MockTransport(handler))
    await store.connect()
    return store


class TestComputeCid:
    def test_same_bytes_same_cid(self):
        assert compute_cid(b"certificate") == compute_cid(b"certificate")

    def test_different_bytes_different_cid(self):
        assert compute_cid(b"a") != compute_cid(b"b")

    def test_cidv1_base32_shape(self):
        cid = compute_cid(b"hello")
        assert cid.startswith("bafkrei")
        assert cid == cid.lower()


class TestMemoryContentStore:
    @pytest.mark.asyncio
    async def test_put_is_idempotent(self):
        store = MemoryContentStore()
        first = await store.put(b"%PDF-1.7 certificate")
        second = await store.put(b"%PDF-1.7 certificate")

        assert first == second
        assert await store.get(first) == b"%PDF-1.7 certificate"

    @pytest.mark.asyncio
    async def test_get_unknown(self):
        with pytest.raises(ContentNotFound):
            await MemoryContentStore().get("bafkunknown")

    def test_url_for(self):
        store = MemoryContentStore(gateway_url="https://gw.test/ipfs/")
        assert store.url_for("bafyx") == "https://gw.test/ipfs/bafyx"


class TestPinataPut:
    @pytest.mark.asyncio
    async def test_upload_returns_ipfs_hash(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"IpfsHash": CID, "PinSize": 12, "isDuplicate": False})

        store = await _pinata(handler)
        try:
            cid = await store.put(b"%PDF-1.7 certificate", name="req-1.pdf")
        finally:
            await store.close()

        assert cid == CID
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.pinata.test/pinning/pinFileToIPFS"
        assert request.headers["Authorization"] == "Bearer test-jwt"
        body = request.content
        assert b"req-1.pdf" in body
        assert json.dumps({"cidVersion": 1}).encode() in body

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_transient_statuses(self, status):
        store = await _pinata(lambda request: httpx.Response(status, text="busy"))
        with pytest.raises(StoreUnavailable):
            await store.put(b"data")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [402, 403, 413])
    async def test_quota_statuses(self, status):
        store = await _pinata(lambda request: httpx.Response(status, text="plan limit"))
        with pytest.raises(QuotaExceeded):
            await store.put(b"data")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401])
    async def test_other_client_errors(self, status):
        store = await _pinata(lambda request: httpx.Response(status, text="rejected"))
        with pytest.raises(ContentStoreError) as exc_info:
            await store.put(b"data")
        assert not isinstance(exc_info.value, (StoreUnavailable, QuotaExceeded))

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        store = await _pinata(handler)
        with pytest.raises(StoreUnavailable):
            await store.put(b"data")

    @pytest.mark.asyncio
    async def test_missing_hash_in_response(self):
        store = await _pinata(lambda request: httpx.Response(200, json={"PinSize": 1}))
        with pytest.raises(ContentStoreError):
            await store.put(b"data")

    @pytest.mark.asyncio
    async def test_requires_connect(self):
        store = PinataContentStore(_make_config())
        with pytest.raises(RuntimeError):
            await store.put(b"data")


class TestPinataGet:
    @pytest.mark.asyncio
    async def test_fetch_through_gateway(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == f"https://gateway.pinata.test/ipfs/{CID}"
            return httpx.Response(200, content=b"%PDF-1.7 certificate")

        store = await _pinata(handler)
        assert await store.get(CID) == b"%PDF-1.7 certificate"

    @pytest.mark.asyncio
    async def test_missing_content(self):
        store = await _pinata(lambda request: httpx.Response(404))
        with pytest.raises(ContentNotFound):
            await store.get(CID)


class TestFactory:
    def test_strategies(self):
        assert isinstance(create_content_store(_make_config()), PinataContentStore)
        memory = create_content_store(_make_config(strategy="memory"))
        assert isinstance(memory, MemoryContentStore)
        assert memory.url_for("bafyx") == "https://gateway.pinata.test/ipfs/bafyx"

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            create_content_store(_make_config(strategy="s3"))

    def test_jwt_is_stripped(self):
        assert _make_config(jwt="  token\r\n").jwt == "token"
