"""
deCertify — Issuance Service

The boundary of the issuance system. Requesters create requests, issuers
decide on them, and anyone can verify an issued certificate.

Every call that runs the pipeline first takes the request's exclusive
lease, so at most one pipeline execution per request is ever in flight,
across processes when the store is Redis-backed. The status
compare-and-set in the state machine is the second line of defence.

Outcomes are returned as RequestView projections. Pipeline failures are
reported on the view (status + failure record); boundary errors
(validation, authorization, not found, in progress) are raised.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog

from decertify.issuance.document import DocumentProcessor
from decertify.issuance.errors import (
    AlreadyInProgress,
    InvalidTransition,
    RequestNotFound,
    ValidationError,
)
from decertify.issuance.orchestrator import IssuanceOrchestrator
from decertify.issuance.state_machine import RequestStateMachine, parse_decision, parse_status
from decertify.issuance.types import (
    CertificateRequest,
    DecisionPayload,
    RequestEvent,
    RequestStatus,
    RequestView,
    VerificationRecord,
)
from decertify.primitives.common import new_id

if TYPE_CHECKING:
    from decertify.clients.content_store import ContentStoreClient
    from decertify.clients.ledger import LedgerClient
    from decertify.config import IssuanceConfig
    from decertify.issuance.store import RequestStore

logger = structlog.get_logger()


class IssuanceService:
    """
    Certificate request lifecycle and issuance.

    Lifecycle: construct → initialize() → use → shutdown().
    """

    system_id: str = "issuance"

    def __init__(
        self,
        config: IssuanceConfig,
        store: RequestStore,
        content_store: ContentStoreClient,
        ledger: LedgerClient,
        processor: DocumentProcessor | None = None,
        instance_id: str = "decertify",
    ) -> None:
        self._config = config
        self._store = store
        self._content_store = content_store
        self._instance_id = instance_id
        self._machine = RequestStateMachine(store)
        self._orchestrator = IssuanceOrchestrator(
            store=store,
            machine=self._machine,
            processor=processor or DocumentProcessor.from_config(config),
            content_store=content_store,
            ledger=ledger,
            config=config,
        )
        self._reconciler_task: asyncio.Task[None] | None = None
        self._logger = logger.bind(system="issuance.service")

    # ─── Lifecycle ────────────────────────────────────────────────

    async def initialize(self) -> None:
        if self._config.reconcile_interval_s > 0:
            self._reconciler_task = asyncio.create_task(
                self._reconcile_loop(), name="issuance-reconciler"
            )
        self._logger.info(
            "issuance_service_initialized",
            reconcile_interval_s=self._config.reconcile_interval_s,
        )

    async def shutdown(self) -> None:
        if self._reconciler_task is not None:
            self._reconciler_task.cancel()
            try:
                await self._reconciler_task
            except asyncio.CancelledError:
                pass
            self._reconciler_task = None
        self._logger.info("issuance_service_shutdown")

    # ─── Requester operations ─────────────────────────────────────

    async def create_request(
        self,
        requester_id: str,
        issuer_id: str,
        subject_id: str,
        period: int,
        category: str,
    ) -> RequestView:
        request = await self._machine.create(
            requester_id=requester_id,
            issuer_id=issuer_id,
            subject_id=subject_id,
            period=period,
            category=category,
        )
        return self._view(request)

    async def list_requester_requests(self, requester_id: str) -> list[RequestView]:
        return [self._view(r) for r in await self._store.list_by_requester(requester_id)]

    # ─── Issuer operations ────────────────────────────────────────

    async def list_issuer_requests(
        self,
        issuer_id: str,
        status: str | None = None,
    ) -> list[RequestView]:
        wanted = parse_status(status) if status else None
        return [
            self._view(r)
            for r in await self._store.list_by_issuer(issuer_id)
            if wanted is None or r.status is wanted
        ]

    async def decide_request(
        self,
        request_id: str,
        issuer_id: str,
        decision: str,
        payload: DecisionPayload | None = None,
    ) -> RequestView:
        """
        Accept or reject a pending request.

        Accepting requires the certificate document and runs the issuance
        pipeline before returning. Rejecting is also allowed from
        issuance_failed, to give up after a failed attempt.
        """
        # Validate before touching the store
        event = parse_decision(decision)
        payload = payload or DecisionPayload()

        request = await self._load(request_id)
        self._machine.authorize(request, issuer_id)
        if event is RequestEvent.ACCEPT and (
            request.status is RequestStatus.ACCEPTED_PROCESSING
            or await self._store.lease_held(request_id)
        ):
            raise AlreadyInProgress(f"Issuance for request {request_id} is already in progress")
        self._machine.ensure_allowed(request, event)

        if event is RequestEvent.REJECT:
            request = await self._machine.reject(request, issuer_id, payload.remarks)
            return self._view(request)

        if not payload.document:
            raise ValidationError("A certificate document is required to accept a request")

        async with self._lease(request_id):
            request = await self._load(request_id)
            source_digest = await self._store.put_blob(payload.document)
            request = await self._machine.accept(
                request, issuer_id, source_digest, payload.remarks
            )
            outcome = await self._orchestrator.run(request)
        return self._view(outcome.request)

    async def retry_issuance(
        self,
        request_id: str,
        issuer_id: str,
        document: bytes | None = None,
    ) -> RequestView:
        """
        Re-run the pipeline after a failure, or resume a stalled run.

        From issuance_failed the attempt resumes at its first incomplete
        step; after a ledger rejection a fresh attempt is started that keeps
        the processed document and content id. A request still in
        accepted_processing is resumed only if no other run holds its lease.
        A replacement document is accepted only while processing has not
        completed.
        """
        if document is not None and not document:
            raise ValidationError("Replacement document is empty")

        request = await self._load(request_id)
        self._machine.authorize(request, issuer_id)
        if request.status not in (
            RequestStatus.ISSUANCE_FAILED,
            RequestStatus.ACCEPTED_PROCESSING,
        ):
            raise InvalidTransition(
                f"Cannot retry a request in status {request.status.value}"
            )

        async with self._lease(request_id):
            request = await self._load(request_id)
            source_digest = await self._store.put_blob(document) if document else None

            if request.status is RequestStatus.ISSUANCE_FAILED:
                request = await self._machine.retry(request, issuer_id, source_digest)
            elif request.status is RequestStatus.ACCEPTED_PROCESSING:
                if source_digest is not None:
                    request = await self._replace_source(request, source_digest)
            else:
                raise InvalidTransition(
                    f"Cannot retry a request in status {request.status.value}"
                )

            self._logger.info(
                "issuance_retry",
                request_id=request_id,
                attempt=request.attempt.number,
                replacement_document=source_digest is not None,
            )
            outcome = await self._orchestrator.run(request)
        return self._view(outcome.request)

    async def reconcile(self, request_id: str, issuer_id: str | None = None) -> RequestView:
        """
        Settle an accepted_processing request against the ledger.

        Requests in any other status are returned unchanged.
        """
        request = await self._load(request_id)
        if issuer_id is not None:
            self._machine.authorize(request, issuer_id)
        if request.status is not RequestStatus.ACCEPTED_PROCESSING:
            return self._view(request)

        async with self._lease(request_id):
            request = await self._load(request_id)
            if request.status is not RequestStatus.ACCEPTED_PROCESSING:
                return self._view(request)
            outcome = await self._orchestrator.run(request)
        return self._view(outcome.request)

    async def reconcile_pending(self) -> int:
        """Resume every in-flight request whose lease is free. Returns how many ran."""
        resumed = 0
        for request_id in await self._store.list_ids_by_status(RequestStatus.ACCEPTED_PROCESSING):
            if await self._store.lease_held(request_id):
                continue
            try:
                view = await self.reconcile(request_id)
            except AlreadyInProgress:
                continue
            resumed += 1
            self._logger.info(
                "request_reconciled",
                request_id=request_id,
                status=view.status.value,
            )
        return resumed

    # ─── Queries ──────────────────────────────────────────────────

    async def get_request(self, request_id: str) -> RequestView:
        return self._view(await self._load(request_id))

    async def verify(self, request_id: str) -> VerificationRecord:
        """Public answer to whether a certificate for this request was issued."""
        request = await self._load(request_id)
        issued = request.status is RequestStatus.ISSUED
        content_id = request.content_id if issued else None
        return VerificationRecord(
            request_id=request.id,
            status=request.status,
            issued=issued,
            issuer_id=request.issuer_id,
            subject_id=request.subject_id,
            category=request.category,
            period=request.period,
            content_id=content_id,
            content_url=self._content_store.url_for(content_id) if content_id else None,
            transaction_ref=request.transaction_ref if issued else None,
            issued_at=request.issued_at,
        )

    # ─── Internals ────────────────────────────────────────────────

    async def _load(self, request_id: str) -> CertificateRequest:
        request = await self._store.get(request_id)
        if request is None:
            raise RequestNotFound(f"Request {request_id} not found")
        return request

    @asynccontextmanager
    async def _lease(self, request_id: str) -> AsyncIterator[None]:
        holder = f"{self._instance_id}:{new_id()}"
        if not await self._store.acquire_lease(request_id, holder, self._config.lease_ttl_s):
            raise AlreadyInProgress(f"Issuance for request {request_id} is already in progress")
        try:
            yield
        finally:
            await self._store.release_lease(request_id, holder)

    async def _replace_source(
        self,
        request: CertificateRequest,
        source_digest: str,
    ) -> CertificateRequest:
        if request.attempt is None or request.attempt.processed:
            raise ValidationError(
                "Document already processed for this attempt; it cannot be replaced"
            )
        updated = request.model_copy(deep=True)
        updated.attempt.source_digest = source_digest
        return await self._machine.checkpoint(updated)

    def _view(self, request: CertificateRequest) -> RequestView:
        url = self._content_store.url_for(request.content_id) if request.content_id else None
        return RequestView.from_request(request, content_url=url)

    async def _reconcile_loop(self) -> None:
        """Periodically resume in-flight requests. Runs until cancelled."""
        interval = self._config.reconcile_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile_pending()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("reconcile_loop_error")
