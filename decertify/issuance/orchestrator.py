"""
deCertify — Issuance Orchestrator

Drives one IssuanceAttempt from wherever it last stopped:

  1. PROCESS         stamp the verification marker onto the source document
  2. CONTENT_PUSH    push the stamped bytes to the content store
  3. LEDGER_SUBMIT   read the issuer's fee, prepare + persist the signed
                     transaction, then broadcast it
  4. LEDGER_CONFIRM  poll until confirmed, rejected, or timed out

Each step writes its marker to the attempt and checkpoints the request
before the next step starts, so a crash or retry never repeats a step that
already succeeded. In particular the signed transaction is persisted before
it is broadcast, and a resumed attempt re-broadcasts that same payload
rather than building a new transaction.

Failures come back in the IssuanceOutcome. They are not raised.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from decertify.clients.content_store import ContentStoreError, QuotaExceeded, StoreUnavailable
from decertify.clients.ledger import (
    IssuanceTransaction,
    LedgerReceipt,
    LedgerSubmissionRejected,
    LedgerUnavailable,
    PreparedSubmission,
    SubmissionState,
)
from decertify.issuance.document import DocumentError
from decertify.issuance.errors import (
    InvalidTransition,
    IssuanceError,
    LedgerRejected,
    LedgerTimeout,
    PipelineError,
    ProcessingFailed,
    StoreFailed,
)
from decertify.issuance.types import (
    CertificateRequest,
    IssuanceStep,
    RequestStatus,
    VerificationPayload,
)

if TYPE_CHECKING:
    from decertify.clients.content_store import ContentStoreClient
    from decertify.clients.ledger import LedgerClient
    from decertify.config import IssuanceConfig
    from decertify.issuance.document import DocumentProcessor
    from decertify.issuance.state_machine import RequestStateMachine
    from decertify.issuance.store import RequestStore

logger = structlog.get_logger()


@dataclass
class IssuanceOutcome:
    """Where a pipeline run left the request."""

    request: CertificateRequest
    failure: PipelineError | None = None

    @property
    def issued(self) -> bool:
        return self.request.status is RequestStatus.ISSUED

    @property
    def awaiting_ledger(self) -> bool:
        return self.request.status is RequestStatus.ACCEPTED_PROCESSING


class IssuanceOrchestrator:
    """
    Runs the issuance pipeline for requests in accepted_processing.

    The caller must hold the request's lease for the duration of run().
    Collaborators are injected and shared across requests.
    """

    def __init__(
        self,
        store: RequestStore,
        machine: RequestStateMachine,
        processor: DocumentProcessor,
        content_store: ContentStoreClient,
        ledger: LedgerClient,
        config: IssuanceConfig,
    ) -> None:
        self._store = store
        self._machine = machine
        self._processor = processor
        self._content_store = content_store
        self._ledger = ledger
        self._config = config
        self._logger = logger.bind(system="issuance.orchestrator")

    async def run(self, request: CertificateRequest) -> IssuanceOutcome:
        if request.status is not RequestStatus.ACCEPTED_PROCESSING or request.attempt is None:
            raise InvalidTransition(
                f"Request {request.id} is {request.status.value}; nothing to issue"
            )

        log = self._logger.bind(request_id=request.id, attempt=request.attempt.number)
        log.info(
            "issuance_run_started",
            completed_steps=[s.value for s in request.attempt.completed_steps],
        )

        # `request` is only reassigned after a checkpoint succeeds, so on
        # failure it always reflects what is persisted
        step = IssuanceStep.PROCESS
        try:
            request = await self._process(request)
            step = IssuanceStep.CONTENT_PUSH
            request = await self._push(request)
            step = IssuanceStep.LEDGER_SUBMIT
            just_prepared = not request.attempt.ledger_submitted
            if just_prepared:
                request = await self._prepare_submission(request)
            request = await self._broadcast(request, resumed=not just_prepared)
            step = IssuanceStep.LEDGER_CONFIRM
            receipt = await self._await_confirmation(request)
        except PipelineError as exc:
            return await self._record_failure(request, exc)
        except IssuanceError:
            raise
        except Exception as exc:
            log.exception("issuance_step_crashed", step=step.value)
            return await self._record_failure(request, _unexpected_failure(step, request, exc))

        request = await self._machine.complete(request, receipt)
        log.info(
            "certificate_issued",
            content_id=request.content_id,
            transaction_ref=request.transaction_ref,
            fee=request.issuance_fee,
        )
        return IssuanceOutcome(request=request)

    # ─── Steps ────────────────────────────────────────────────────

    async def _process(self, request: CertificateRequest) -> CertificateRequest:
        attempt = request.attempt
        if attempt.processed:
            return request

        source = await self._store.get_blob(attempt.source_digest)
        if source is None:
            raise ProcessingFailed(IssuanceStep.PROCESS, "source document is missing")

        marker = VerificationPayload.for_request(request.id, self._config.verification_base_url)
        try:
            processed = await asyncio.to_thread(self._processor.embed, source, marker)
        except DocumentError as exc:
            raise ProcessingFailed(IssuanceStep.PROCESS, exc) from exc

        digest = await self._store.put_blob(processed)
        request = await self._advance(request, processed_digest=digest)
        self._step_done(request, IssuanceStep.PROCESS, processed_digest=digest)
        return request

    async def _push(self, request: CertificateRequest) -> CertificateRequest:
        attempt = request.attempt
        if attempt.content_pushed:
            return request

        processed = await self._store.get_blob(attempt.processed_digest)
        if processed is None:
            raise StoreFailed(
                IssuanceStep.CONTENT_PUSH, "processed document is missing", transient=False
            )

        try:
            content_id = await self._content_store.put(processed, name=f"{request.id}.pdf")
        except QuotaExceeded as exc:
            raise StoreFailed(IssuanceStep.CONTENT_PUSH, exc, transient=False) from exc
        except ContentStoreError as exc:
            raise StoreFailed(
                IssuanceStep.CONTENT_PUSH, exc, transient=isinstance(exc, StoreUnavailable)
            ) from exc

        request = await self._advance(request, content_id=content_id)
        self._step_done(request, IssuanceStep.CONTENT_PUSH, content_id=content_id)
        return request

    async def _prepare_submission(self, request: CertificateRequest) -> CertificateRequest:
        attempt = request.attempt
        try:
            fee = await self._ledger.issuance_fee(request.issuer_id)
            prepared = await self._ledger.prepare(
                IssuanceTransaction(
                    request_id=request.id,
                    issuer_id=request.issuer_id,
                    recipient=request.requester_id,
                    content_id=attempt.content_id,
                    fee=fee,
                )
            )
        except LedgerSubmissionRejected as exc:
            raise LedgerRejected(IssuanceStep.LEDGER_SUBMIT, exc) from exc
        except LedgerUnavailable as exc:
            raise LedgerTimeout(IssuanceStep.LEDGER_SUBMIT, exc) from exc

        return await self._advance(
            request,
            fee=fee,
            submission_ref=prepared.reference,
            submission_payload=prepared.payload,
        )

    async def _broadcast(self, request: CertificateRequest, resumed: bool) -> CertificateRequest:
        attempt = request.attempt
        reference = attempt.submission_ref

        try:
            if resumed:
                status = await self._ledger.status(reference)
                if status.state is not SubmissionState.UNKNOWN:
                    self._logger.info(
                        "submission_found_on_ledger",
                        request_id=request.id,
                        submission_ref=reference,
                        state=status.state.value,
                    )
                    if attempt.submitted:
                        return request
                    return await self._advance(request, submitted=True)
                if attempt.submitted:
                    self._logger.warning(
                        "submission_unknown_rebroadcasting",
                        request_id=request.id,
                        submission_ref=reference,
                    )

            await self._ledger.submit(
                PreparedSubmission(reference=reference, payload=attempt.submission_payload)
            )
        except LedgerSubmissionRejected as exc:
            raise LedgerRejected(IssuanceStep.LEDGER_SUBMIT, exc) from exc
        except LedgerUnavailable as exc:
            raise LedgerTimeout(IssuanceStep.LEDGER_SUBMIT, exc) from exc

        if not attempt.submitted:
            request = await self._advance(request, submitted=True)
        self._step_done(request, IssuanceStep.LEDGER_SUBMIT, submission_ref=reference)
        return request

    async def _await_confirmation(self, request: CertificateRequest) -> LedgerReceipt:
        timeout = self._config.confirmation_timeout_s
        try:
            receipt = await asyncio.wait_for(
                self._poll_receipt(request.id, request.attempt.submission_ref),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise LedgerTimeout(
                IssuanceStep.LEDGER_CONFIRM,
                f"no confirmation within {timeout:g}s",
            ) from exc
        self._step_done(
            request,
            IssuanceStep.LEDGER_CONFIRM,
            submission_ref=receipt.reference,
            block_number=receipt.block_number,
        )
        return receipt

    async def _poll_receipt(self, request_id: str, reference: str) -> LedgerReceipt:
        while True:
            try:
                status = await self._ledger.status(reference)
            except LedgerUnavailable as exc:
                # Keep polling; the overall wait is bounded by the caller
                self._logger.warning(
                    "ledger_status_unavailable",
                    request_id=request_id,
                    submission_ref=reference,
                    error=str(exc),
                )
            else:
                if status.state is SubmissionState.CONFIRMED and status.receipt is not None:
                    return status.receipt
                if status.state is SubmissionState.REJECTED:
                    raise LedgerRejected(
                        IssuanceStep.LEDGER_CONFIRM,
                        status.reason or "transaction rejected by the ledger",
                    )
            await asyncio.sleep(self._config.confirmation_poll_interval_s)

    # ─── Failure handling ─────────────────────────────────────────

    async def _record_failure(
        self,
        request: CertificateRequest,
        exc: PipelineError,
    ) -> IssuanceOutcome:
        record = exc.to_record()
        log = self._logger.bind(
            request_id=request.id,
            step=record.step.value,
            code=record.code.value,
            transient=record.transient,
        )

        if isinstance(exc, LedgerTimeout) and request.attempt.ledger_submitted:
            # The transaction may still land; keep the request in flight so
            # reconciliation can settle it against the recorded submission
            updated = request.model_copy(deep=True)
            updated.attempt.failure = record
            updated.last_failure = record
            request = await self._machine.checkpoint(updated)
            log.warning(
                "issuance_awaiting_ledger",
                submission_ref=request.attempt.submission_ref,
                cause=record.cause,
            )
            return IssuanceOutcome(request=request, failure=exc)

        request = await self._machine.fail(request, record)
        log.warning("issuance_failed", cause=record.cause)
        return IssuanceOutcome(request=request, failure=exc)

    # ─── Helpers ──────────────────────────────────────────────────

    async def _advance(self, request: CertificateRequest, **markers: object) -> CertificateRequest:
        """Write step markers onto the attempt and persist them."""
        updated = request.model_copy(deep=True)
        for name, value in markers.items():
            setattr(updated.attempt, name, value)
        return await self._machine.checkpoint(updated)

    def _step_done(self, request: CertificateRequest, step: IssuanceStep, **context: object) -> None:
        self._logger.info(
            "issuance_step_completed",
            request_id=request.id,
            attempt=request.attempt.number,
            step=step.value,
            **context,
        )


def _unexpected_failure(
    step: IssuanceStep,
    request: CertificateRequest,
    exc: Exception,
) -> PipelineError:
    """Classify an error a step did not map itself."""
    if step is IssuanceStep.PROCESS:
        return ProcessingFailed(step, exc)
    if step is IssuanceStep.CONTENT_PUSH:
        return StoreFailed(step, exc, transient=False)
    if request.attempt.ledger_submitted:
        # A signed transaction exists and may still land
        return LedgerTimeout(step, exc)
    return LedgerRejected(step, exc)
