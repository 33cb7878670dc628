"""
deCertify — Request Store

Durable storage for CertificateRequest records and the document blobs
they reference, plus the per-request issuance lease.

Guarantees every backend provides:
  - compare_and_set() replaces a record only if its persisted status and
    version still match what the caller read; the version is bumped on
    every successful write
  - blobs are content-addressed by SHA-256, so storing the same bytes
    twice is a no-op
  - a lease is held by exactly one holder token until released or expired

Backends:
  InMemoryRequestStore — single process; development and tests
  RedisRequestStore    — WATCH/MULTI for CAS, SET NX EX for the lease
"""

from __future__ import annotations

import asyncio
import base64
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import structlog

from decertify.issuance.types import CertificateRequest, RequestStatus
from decertify.primitives.common import sha256_hex

if TYPE_CHECKING:
    from decertify.clients.redis import RedisClient

logger = structlog.get_logger()


class RequestStore(ABC):
    """Datastore contract used by the state machine and orchestrator."""

    @abstractmethod
    async def insert(self, request: CertificateRequest) -> None:
        ...

    @abstractmethod
    async def get(self, request_id: str) -> CertificateRequest | None:
        ...

    @abstractmethod
    async def compare_and_set(
        self,
        request: CertificateRequest,
        expected_status: RequestStatus,
    ) -> CertificateRequest | None:
        """
        Persist `request` if the stored copy still has `expected_status` and
        `request.version`. Returns the stored record (version bumped), or
        None if the expectation failed.
        """

    @abstractmethod
    async def list_by_issuer(self, issuer_id: str) -> list[CertificateRequest]:
        ...

    @abstractmethod
    async def list_by_requester(self, requester_id: str) -> list[CertificateRequest]:
        ...

    @abstractmethod
    async def list_ids_by_status(self, status: RequestStatus) -> list[str]:
        ...

    @abstractmethod
    async def put_blob(self, data: bytes) -> str:
        """Store bytes under their SHA-256 digest and return the digest."""

    @abstractmethod
    async def get_blob(self, digest: str) -> bytes | None:
        ...

    @abstractmethod
    async def acquire_lease(self, request_id: str, holder: str, ttl_s: int) -> bool:
        ...

    @abstractmethod
    async def release_lease(self, request_id: str, holder: str) -> None:
        ...

    @abstractmethod
    async def lease_held(self, request_id: str) -> bool:
        ...


def _newest_first(requests: list[CertificateRequest]) -> list[CertificateRequest]:
    return sorted(requests, key=lambda r: r.created_at, reverse=True)


# ─── In-memory backend ────────────────────────────────────────────


class InMemoryRequestStore(RequestStore):
    """
    Single-process store. Records are kept serialised so callers can never
    mutate persisted state through a shared reference.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._blobs: dict[str, bytes] = {}
        self._leases: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self.blob_writes = 0

    async def insert(self, request: CertificateRequest) -> None:
        async with self._lock:
            if request.id in self._records:
                raise ValueError(f"Request {request.id} already exists")
            self._records[request.id] = request.model_dump(mode="json")

    async def get(self, request_id: str) -> CertificateRequest | None:
        raw = self._records.get(request_id)
        return CertificateRequest.model_validate(raw) if raw is not None else None

    async def compare_and_set(
        self,
        request: CertificateRequest,
        expected_status: RequestStatus,
    ) -> CertificateRequest | None:
        async with self._lock:
            current = self._records.get(request.id)
            if (
                current is None
                or current["status"] != expected_status.value
                or current["version"] != request.version
            ):
                return None
            stored = request.model_copy(update={"version": request.version + 1}, deep=True)
            self._records[request.id] = stored.model_dump(mode="json")
            return stored

    async def list_by_issuer(self, issuer_id: str) -> list[CertificateRequest]:
        return _newest_first([
            CertificateRequest.model_validate(raw)
            for raw in self._records.values()
            if raw["issuer_id"] == issuer_id
        ])

    async def list_by_requester(self, requester_id: str) -> list[CertificateRequest]:
        return _newest_first([
            CertificateRequest.model_validate(raw)
            for raw in self._records.values()
            if raw["requester_id"] == requester_id
        ])

    async def list_ids_by_status(self, status: RequestStatus) -> list[str]:
        return [rid for rid, raw in self._records.items() if raw["status"] == status.value]

    async def put_blob(self, data: bytes) -> str:
        digest = sha256_hex(data)
        if digest not in self._blobs:
            self._blobs[digest] = bytes(data)
            self.blob_writes += 1
        return digest

    async def get_blob(self, digest: str) -> bytes | None:
        return self._blobs.get(digest)

    async def acquire_lease(self, request_id: str, holder: str, ttl_s: int) -> bool:
        async with self._lock:
            now = time.monotonic()
            current = self._leases.get(request_id)
            if current is not None and current[1] > now:
                return False
            self._leases[request_id] = (holder, now + ttl_s)
            return True

    async def release_lease(self, request_id: str, holder: str) -> None:
        async with self._lock:
            current = self._leases.get(request_id)
            if current is not None and current[0] == holder:
                del self._leases[request_id]

    async def lease_held(self, request_id: str) -> bool:
        current = self._leases.get(request_id)
        return current is not None and current[1] > time.monotonic()


# ─── Redis backend ────────────────────────────────────────────────


class RedisRequestStore(RequestStore):
    """
    Redis-backed store.

    Keys (under the client's prefix):
      request:{id}                 record JSON
      blob:{sha256}                base64 document bytes
      lease:{id}                   holder token, expiring
      index:issuer:{issuer_id}     set of request ids
      index:requester:{id}         set of request ids
      index:status:{status}        set of request ids
    """

    def __init__(self, redis: RedisClient) -> None:
        self._redis = redis

    @staticmethod
    def _record_key(request_id: str) -> str:
        return f"request:{request_id}"

    @staticmethod
    def _status_index(status: RequestStatus | str) -> str:
        return f"index:status:{status}"

    async def insert(self, request: CertificateRequest) -> None:
        inserted = await self._redis.compare_and_set_json(
            self._record_key(request.id),
            request.model_dump(mode="json"),
            expect=lambda current: current is None,
            member=request.id,
            add_to_sets=(
                f"index:issuer:{request.issuer_id}",
                f"index:requester:{request.requester_id}",
                self._status_index(request.status),
            ),
        )
        if not inserted:
            raise ValueError(f"Request {request.id} already exists")

    async def get(self, request_id: str) -> CertificateRequest | None:
        raw = await self._redis.get_json(self._record_key(request_id))
        return CertificateRequest.model_validate(raw) if raw is not None else None

    async def compare_and_set(
        self,
        request: CertificateRequest,
        expected_status: RequestStatus,
    ) -> CertificateRequest | None:
        stored = request.model_copy(update={"version": request.version + 1}, deep=True)

        def _matches(current: Any | None) -> bool:
            return (
                current is not None
                and current.get("status") == expected_status.value
                and current.get("version") == request.version
            )

        moved = stored.status != expected_status
        ok = await self._redis.compare_and_set_json(
            self._record_key(request.id),
            stored.model_dump(mode="json"),
            expect=_matches,
            member=request.id,
            add_to_sets=(self._status_index(stored.status),) if moved else (),
            remove_from_sets=(self._status_index(expected_status),) if moved else (),
        )
        return stored if ok else None

    async def _load_many(self, ids: set[str]) -> list[CertificateRequest]:
        records: list[CertificateRequest] = []
        for request_id in ids:
            record = await self.get(request_id)
            if record is not None:
                records.append(record)
        return _newest_first(records)

    async def list_by_issuer(self, issuer_id: str) -> list[CertificateRequest]:
        return await self._load_many(await self._redis.set_members(f"index:issuer:{issuer_id}"))

    async def list_by_requester(self, requester_id: str) -> list[CertificateRequest]:
        return await self._load_many(
            await self._redis.set_members(f"index:requester:{requester_id}")
        )

    async def list_ids_by_status(self, status: RequestStatus) -> list[str]:
        return sorted(await self._redis.set_members(self._status_index(status)))

    async def put_blob(self, data: bytes) -> str:
        digest = sha256_hex(data)
        await self._redis.set_text(
            f"blob:{digest}",
            base64.b64encode(data).decode(),
            only_if_absent=True,
        )
        return digest

    async def get_blob(self, digest: str) -> bytes | None:
        raw = await self._redis.get_text(f"blob:{digest}")
        return base64.b64decode(raw) if raw is not None else None

    async def acquire_lease(self, request_id: str, holder: str, ttl_s: int) -> bool:
        return await self._redis.acquire_lock(f"lease:{request_id}", holder, ttl_s)

    async def release_lease(self, request_id: str, holder: str) -> None:
        released = await self._redis.release_lock(f"lease:{request_id}", holder)
        if not released:
            logger.warning("lease_release_missed", request_id=request_id, holder=holder)

    async def lease_held(self, request_id: str) -> bool:
        return await self._redis.lock_holder(f"lease:{request_id}") is not None
