"""
Tests for the issuance orchestrator: step ordering, resumption and the
failure taxonomy, using the in-memory store, content store and ledger.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from decertify.clients.content_store import (
    ContentStoreError,
    MemoryContentStore,
    QuotaExceeded,
    StoreUnavailable,
)
from decertify.clients.ledger import (
    LedgerUnavailable,
    MemoryLedgerClient,
    SubmissionState,
    SubmissionStatus,
    Web3LedgerClient,
)
from decertify.config import IssuanceConfig, LedgerConfig
from decertify.issuance.document import DocumentProcessor, extract_marker
from decertify.issuance.errors import (
    InvalidTransition,
    LedgerRejected,
    LedgerTimeout,
    ProcessingFailed,
    StoreFailed,
)
from decertify.issuance.orchestrator import IssuanceOrchestrator
from decertify.issuance.state_machine import RequestStateMachine
from decertify.issuance.store import InMemoryRequestStore
from decertify.issuance.types import (
    CertificateRequest,
    FailureCode,
    IssuanceStep,
    RequestStatus,
)

ISSUER = "university-1"


def _make_config(**overrides) -> IssuanceConfig:
    defaults = {
        "verification_base_url": "https://verify.decertify.test/v",
        "confirmation_timeout_s": 0.2,
        "confirmation_poll_interval_s": 0.01,
        "lease_ttl_s": 30,
        "reconcile_interval_s": 0,
    }
    defaults.update(overrides)
    return IssuanceConfig(**defaults)


class _Harness:
    """Wires an orchestrator to in-memory collaborators."""

    def __init__(self, auto_confirm: bool = True, fee: int = 0) -> None:
        self.store = InMemoryRequestStore()
        self.machine = RequestStateMachine(self.store)
        self.processor = MagicMock(wraps=DocumentProcessor())
        self.content_store = MemoryContentStore()
        self.ledger = MemoryLedgerClient(auto_confirm=auto_confirm)
        self.ledger.fees[ISSUER] = fee
        self.orchestrator = IssuanceOrchestrator(
            store=self.store,
            machine=self.machine,
            processor=self.processor,
            content_store=self.content_store,
            ledger=self.ledger,
            config=_make_config(),
        )

    async def accepted(self, document: bytes) -> CertificateRequest:
        request = await self.machine.create(
            requester_id="student-1",
            issuer_id=ISSUER,
            subject_id="S-1001",
            period=2024,
            category="transcript",
        )
        digest = await self.store.put_blob(document)
        return await self.machine.accept(request, ISSUER, source_digest=digest)

    async def reload(self, request: CertificateRequest) -> CertificateRequest:
        return await self.store.get(request.id)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_issues_certificate(self, pdf_document):
        h = _Harness(fee=250)
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert outcome.failure is None
        assert outcome.issued
        issued = outcome.request
        assert issued.status is RequestStatus.ISSUED
        assert issued.content_id == issued.attempt.content_id
        assert issued.issuance_fee == 250
        assert issued.transaction_ref == issued.attempt.submission_ref
        assert issued.issued_at is not None
        assert issued.attempt.completed_steps == [
            IssuanceStep.PROCESS,
            IssuanceStep.CONTENT_PUSH,
            IssuanceStep.LEDGER_SUBMIT,
            IssuanceStep.LEDGER_CONFIRM,
        ]
        assert await h.reload(issued) == issued

    @pytest.mark.asyncio
    async def test_pushed_document_carries_marker(self, pdf_document):
        h = _Harness()
        request = await h.accepted(pdf_document)
        outcome = await h.orchestrator.run(request)

        pushed = await h.content_store.get(outcome.request.content_id)
        marker = extract_marker(pushed)
        assert marker.request_id == request.id
        assert marker.verification_url == f"https://verify.decertify.test/v/{request.id}"

    @pytest.mark.asyncio
    async def test_requires_accepted_request(self):
        h = _Harness()
        request = await h.machine.create(
            requester_id="student-1",
            issuer_id=ISSUER,
            subject_id="S-1001",
            period=2024,
            category="transcript",
        )
        with pytest.raises(InvalidTransition):
            await h.orchestrator.run(request)


class TestProcessingFailure:
    @pytest.mark.asyncio
    async def test_non_pdf_fails_processing(self):
        h = _Harness()
        request = await h.accepted(b"just some text, not a pdf")

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, ProcessingFailed)
        failed = outcome.request
        assert failed.status is RequestStatus.ISSUANCE_FAILED
        assert failed.last_failure.step is IssuanceStep.PROCESS
        assert failed.last_failure.code is FailureCode.PROCESSING_FAILED
        assert "UnsupportedFormat" in failed.last_failure.cause
        assert h.content_store.put_count == 0


class TestStoreFailure:
    @pytest.mark.asyncio
    async def test_store_failure_resumes_without_reprocessing(self, pdf_document):
        h = _Harness()
        real_put = h.content_store.put
        calls = 0

        async def flaky_put(data: bytes, name: str = "certificate.pdf") -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StoreUnavailable("gateway returned 503")
            return await real_put(data, name=name)

        h.content_store.put = flaky_put
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, StoreFailed)
        failed = outcome.request
        assert failed.status is RequestStatus.ISSUANCE_FAILED
        assert failed.last_failure.transient is True
        assert failed.attempt.processed
        assert not failed.attempt.content_pushed
        assert h.processor.embed.call_count == 1

        retried = await h.machine.retry(failed, ISSUER)
        outcome = await h.orchestrator.run(retried)

        assert outcome.issued
        assert h.processor.embed.call_count == 1
        assert outcome.request.attempt.processed_digest == failed.attempt.processed_digest

    @pytest.mark.asyncio
    async def test_quota_exceeded_is_not_transient(self, pdf_document):
        h = _Harness()
        h.content_store.put = AsyncMock(side_effect=QuotaExceeded("plan limit reached"))
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, StoreFailed)
        assert outcome.request.last_failure.transient is False
        assert outcome.request.status is RequestStatus.ISSUANCE_FAILED


class TestLedgerOutcomes:
    @pytest.mark.asyncio
    async def test_rejection_keeps_content_id(self, pdf_document):
        h = _Harness()
        h.ledger.status = AsyncMock(
            return_value=SubmissionStatus(
                state=SubmissionState.REJECTED, reason="execution reverted"
            )
        )
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, LedgerRejected)
        failed = outcome.request
        assert failed.status is RequestStatus.ISSUANCE_FAILED
        assert failed.last_failure.step is IssuanceStep.LEDGER_CONFIRM
        assert failed.last_failure.cause == "execution reverted"
        assert failed.attempt.content_id is not None
        assert failed.content_id is None

    @pytest.mark.asyncio
    async def test_unregistered_issuer_is_rejected_before_submission(self, pdf_document):
        from decertify.clients.ledger import LedgerSubmissionRejected

        h = _Harness()
        h.ledger.issuance_fee = AsyncMock(
            side_effect=LedgerSubmissionRejected("issuer is not registered")
        )
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, LedgerRejected)
        assert outcome.request.status is RequestStatus.ISSUANCE_FAILED
        assert outcome.request.attempt.submission_ref is None
        assert h.ledger.broadcasts == []

    @pytest.mark.asyncio
    async def test_unreachable_ledger_before_submission_fails(self, pdf_document):
        h = _Harness()
        h.ledger.issuance_fee = AsyncMock(side_effect=LedgerUnavailable("rpc down"))
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, LedgerTimeout)
        failed = outcome.request
        assert failed.status is RequestStatus.ISSUANCE_FAILED
        assert failed.last_failure.code is FailureCode.LEDGER_TIMEOUT
        assert failed.last_failure.transient is True
        assert failed.attempt.submission_ref is None

    @pytest.mark.asyncio
    async def test_confirmation_timeout_stays_in_flight(self, pdf_document):
        h = _Harness(auto_confirm=False, fee=100)
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, LedgerTimeout)
        assert outcome.awaiting_ledger
        pending = outcome.request
        assert pending.status is RequestStatus.ACCEPTED_PROCESSING
        assert pending.attempt.submitted
        assert pending.attempt.submission_ref is not None
        assert pending.last_failure.code is FailureCode.LEDGER_TIMEOUT
        assert pending.last_failure.step is IssuanceStep.LEDGER_CONFIRM
        assert pending.content_id is None

    @pytest.mark.asyncio
    async def test_resume_after_timeout_does_not_resubmit(self, pdf_document):
        h = _Harness(auto_confirm=False, fee=100)
        request = await h.accepted(pdf_document)
        pending = (await h.orchestrator.run(request)).request
        reference = pending.attempt.submission_ref

        h.ledger.confirm(reference)
        outcome = await h.orchestrator.run(pending)

        assert outcome.issued
        assert outcome.request.transaction_ref == reference
        assert outcome.request.issuance_fee == 100
        assert h.ledger.broadcasts == [reference]
        assert h.processor.embed.call_count == 1
        assert h.content_store.put_count == 1

    @pytest.mark.asyncio
    async def test_failed_broadcast_rebroadcasts_same_payload(self, pdf_document):
        h = _Harness()
        h.ledger.prepare = AsyncMock(wraps=h.ledger.prepare)
        real_submit = h.ledger.submit
        h.ledger.submit = AsyncMock(side_effect=LedgerUnavailable("connection reset"))
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        # The signed transaction was persisted before the broadcast failed
        pending = outcome.request
        assert isinstance(outcome.failure, LedgerTimeout)
        assert pending.status is RequestStatus.ACCEPTED_PROCESSING
        assert pending.attempt.submission_ref is not None
        assert not pending.attempt.submitted

        h.ledger.submit = AsyncMock(wraps=real_submit)
        outcome = await h.orchestrator.run(pending)

        assert outcome.issued
        assert h.ledger.prepare.await_count == 1
        submitted = h.ledger.submit.await_args.args[0]
        assert submitted.reference == pending.attempt.submission_ref
        assert submitted.payload == pending.attempt.submission_payload
        assert h.ledger.broadcasts == [pending.attempt.submission_ref]

    @pytest.mark.asyncio
    async def test_status_outage_while_polling_is_tolerated(self, pdf_document):
        h = _Harness(fee=5)
        real_status = h.ledger.status
        calls = 0

        async def status(reference: str) -> SubmissionStatus:
            nonlocal calls
            calls += 1
            if calls <= 2:
                raise LedgerUnavailable("rpc hiccup")
            return await real_status(reference)

        h.ledger.status = AsyncMock(side_effect=status)
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert outcome.issued
        assert h.ledger.status.await_count == 3


class TestUnmappedErrors:
    @pytest.mark.asyncio
    async def test_rejected_credentials_are_not_transient(self, pdf_document):
        h = _Harness()
        h.content_store.put = AsyncMock(
            side_effect=ContentStoreError("Pinata returned 401: invalid credentials")
        )
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, StoreFailed)
        assert outcome.request.status is RequestStatus.ISSUANCE_FAILED
        assert outcome.request.last_failure.transient is False

    @pytest.mark.asyncio
    async def test_non_address_identities_fail_the_attempt(self, pdf_document):
        client = Web3LedgerClient(
            LedgerConfig(strategy="web3", contract_address="0x" + "33" * 20)
        )
        client._w3 = MagicMock()
        client._contract = MagicMock()
        client._account = MagicMock(address="0x" + "44" * 20)
        client._w3.eth.get_transaction_count = AsyncMock(return_value=0)
        client.issuance_fee = AsyncMock(return_value=10)
        h = _Harness()
        h.orchestrator._ledger = client
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, LedgerRejected)
        failed = await h.reload(request)
        assert failed.status is RequestStatus.ISSUANCE_FAILED
        assert failed.last_failure.code is FailureCode.LEDGER_REJECTED
        assert "'student-1' is not a valid ledger address" in failed.last_failure.cause
        assert failed.attempt.submission_ref is None

    @pytest.mark.asyncio
    async def test_unexpected_processor_error_is_recorded(self, pdf_document):
        h = _Harness()
        h.processor.embed.side_effect = KeyError("/Resources")
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, ProcessingFailed)
        assert outcome.request.status is RequestStatus.ISSUANCE_FAILED
        assert outcome.request.last_failure.step is IssuanceStep.PROCESS

    @pytest.mark.asyncio
    async def test_unexpected_error_before_submission_is_a_rejection(self, pdf_document):
        h = _Harness()
        h.ledger.prepare = AsyncMock(side_effect=ValueError("cannot encode content id"))
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, LedgerRejected)
        assert outcome.request.status is RequestStatus.ISSUANCE_FAILED
        assert outcome.request.last_failure.step is IssuanceStep.LEDGER_SUBMIT
        assert h.ledger.broadcasts == []

    @pytest.mark.asyncio
    async def test_unexpected_error_after_submission_stays_in_flight(self, pdf_document):
        h = _Harness()
        h.ledger.status = AsyncMock(side_effect=KeyError("blockNumber"))
        request = await h.accepted(pdf_document)

        outcome = await h.orchestrator.run(request)

        assert isinstance(outcome.failure, LedgerTimeout)
        pending = outcome.request
        assert pending.status is RequestStatus.ACCEPTED_PROCESSING
        assert pending.attempt.submission_ref is not None
