"""
deCertify — Content Store Client

Content-addressed storage for processed certificate documents.

Contract:
  put(bytes) -> content id   idempotent: identical bytes yield the same id
  get(content id) -> bytes
  url_for(content id) -> public gateway URL

Strategies:
  "pinata" — Pinata pinning API for writes, the Pinata IPFS gateway for reads
  "memory" — process-local store with CIDv1 (raw, sha2-256) identifiers,
             for development and tests

Errors:
  StoreUnavailable  transport failure, timeout, 429 or 5xx; safe to retry
  QuotaExceeded     plan or size limit reached; fatal for the current attempt
  ContentNotFound   get() of an identifier the store does not hold
"""

from __future__ import annotations

import base64
import hashlib
import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import httpx
import structlog

if TYPE_CHECKING:
    from decertify.config import ContentStoreConfig

logger = structlog.get_logger()

_QUOTA_STATUSES = frozenset({402, 403, 413})


class ContentStoreError(RuntimeError):
    """Base for all content store failures."""


class StoreUnavailable(ContentStoreError):
    """The store could not be reached or asked us to back off. Transient."""


class QuotaExceeded(ContentStoreError):
    """The store refused the upload because of a plan or size limit."""


class ContentNotFound(ContentStoreError):
    """No content is stored under the requested identifier."""


def compute_cid(data: bytes) -> str:
    """
    CIDv1 for a single raw block: version 1, codec raw (0x55),
    multihash sha2-256, base32 multibase.
    """
    digest = hashlib.sha256(data).digest()
    cid_bytes = bytes([0x01, 0x55, 0x12, 0x20]) + digest
    return "b" + base64.b32encode(cid_bytes).decode().lower().rstrip("=")


class ContentStoreClient(ABC):
    """Abstract content-addressed store. Instances are shared across requests."""

    async def connect(self) -> None:
        """Open network resources. No-op by default."""

    async def close(self) -> None:
        """Release network resources. No-op by default."""

    @abstractmethod
    async def put(self, data: bytes, name: str = "certificate.pdf") -> str:
        ...

    @abstractmethod
    async def get(self, content_id: str) -> bytes:
        ...

    @abstractmethod
    def url_for(self, content_id: str) -> str:
        ...


class MemoryContentStore(ContentStoreClient):
    """Process-local store. Identifiers are real CIDv1 values for raw blocks."""

    def __init__(self, gateway_url: str = "memory://ipfs") -> None:
        self._blobs: dict[str, bytes] = {}
        self._gateway_url = gateway_url.rstrip("/")
        self.put_count = 0

    async def put(self, data: bytes, name: str = "certificate.pdf") -> str:
        cid = compute_cid(data)
        self._blobs[cid] = bytes(data)
        self.put_count += 1
        logger.debug("content_store_put", strategy="memory", content_id=cid, size=len(data))
        return cid

    async def get(self, content_id: str) -> bytes:
        try:
            return self._blobs[content_id]
        except KeyError:
            raise ContentNotFound(f"No content stored under {content_id}") from None

    def url_for(self, content_id: str) -> str:
        return f"{self._gateway_url}/{content_id}"


class PinataContentStore(ContentStoreClient):
    """
    Pinata-backed IPFS store.

    Lifecycle: construct → connect() → use → close().
    Uploads go through the pinning API with a bearer JWT. Reads go through
    the public gateway. IPFS identifiers are derived from content, so a
    duplicate upload returns the identifier of the existing pin.
    """

    def __init__(
        self,
        config: ContentStoreConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        if not self._config.jwt:
            logger.warning(
                "pinata_jwt_not_set",
                hint="Uploads will be rejected. Set DECERTIFY_PINATA_JWT.",
            )
        self._client = httpx.AsyncClient(
            timeout=self._config.timeout_s,
            transport=self._transport,
        )
        logger.info("content_store_connected", strategy="pinata", api_url=self._config.api_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("content_store_disconnected", strategy="pinata")

    async def put(self, data: bytes, name: str = "certificate.pdf") -> str:
        client = self._require_client()
        url = f"{self._config.api_url.rstrip('/')}/pinning/pinFileToIPFS"
        try:
            response = await client.post(
                url,
                headers={"Authorization": f"Bearer {self._config.jwt}"},
                files={"file": (name, data, "application/pdf")},
                data={"pinataOptions": json.dumps({"cidVersion": self._config.cid_version})},
            )
        except httpx.HTTPError as exc:
            raise StoreUnavailable(f"Pinata upload failed: {exc}") from exc

        self._raise_for_status(response, action="upload")

        body = response.json()
        cid = body.get("IpfsHash")
        if not cid:
            raise ContentStoreError("Pinata response did not include an IpfsHash")

        logger.info(
            "content_store_put",
            strategy="pinata",
            content_id=cid,
            size=len(data),
            duplicate=bool(body.get("isDuplicate", False)),
        )
        return str(cid)

    async def get(self, content_id: str) -> bytes:
        client = self._require_client()
        try:
            response = await client.get(self.url_for(content_id))
        except httpx.HTTPError as exc:
            raise StoreUnavailable(f"Gateway fetch failed: {exc}") from exc

        if response.status_code == 404:
            raise ContentNotFound(f"No content stored under {content_id}")
        self._raise_for_status(response, action="fetch")
        return response.content

    def url_for(self, content_id: str) -> str:
        return f"{self._config.gateway_url.rstrip('/')}/ipfs/{content_id}"

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:200]
        if status == 429 or status >= 500:
            raise StoreUnavailable(f"Pinata {action} returned {status}: {detail}")
        if status in _QUOTA_STATUSES:
            raise QuotaExceeded(f"Pinata {action} refused ({status}): {detail}")
        raise ContentStoreError(f"Pinata {action} failed ({status}): {detail}")

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("PinataContentStore not connected. Call connect() first.")
        return self._client


def create_content_store(
    config: ContentStoreConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ContentStoreClient:
    """Build the content store selected by `config.strategy`."""
    if config.strategy == "pinata":
        return PinataContentStore(config, transport=transport)
    if config.strategy == "memory":
        return MemoryContentStore(gateway_url=f"{config.gateway_url.rstrip('/')}/ipfs")
    raise ValueError(f"Unknown content store strategy: {config.strategy!r}")
