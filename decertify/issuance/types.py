"""
deCertify — Issuance Types

All types internal to the certificate issuance pipeline.

Design notes:
- CertificateRequest is the authoritative, persisted record. Its embedded
  IssuanceAttempt is the progress log that makes retries safe: every
  completed step leaves a marker (a digest, a content id, a submission
  reference) and a resumed attempt skips any step whose marker is present.
- RequestView is the read projection handed across the service boundary.
  Callers never receive the mutable record itself.
- Documents are never embedded in the record. Source and processed bytes
  are stored as content-addressed blobs and referenced by SHA-256 digest.
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import Field

from decertify.clients.ledger import LedgerReceipt
from decertify.primitives.common import DecertifyBaseModel, Identified, Timestamped, new_id, utc_now

# ─── Enums ────────────────────────────────────────────────────────


class RequestStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED_PROCESSING = "accepted_processing"
    ISSUED = "issued"
    REJECTED = "rejected"
    ISSUANCE_FAILED = "issuance_failed"

    @property
    def terminal(self) -> bool:
        return self in (RequestStatus.ISSUED, RequestStatus.REJECTED)


class RequestEvent(enum.StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"
    FAIL = "fail"
    COMPLETE = "complete"
    RETRY = "retry"


class IssuanceStep(enum.StrEnum):
    PROCESS = "process"
    CONTENT_PUSH = "content_push"
    LEDGER_SUBMIT = "ledger_submit"
    LEDGER_CONFIRM = "ledger_confirm"


class FailureCode(enum.StrEnum):
    PROCESSING_FAILED = "processing_failed"
    STORE_FAILED = "store_failed"
    LEDGER_REJECTED = "ledger_rejected"
    LEDGER_TIMEOUT = "ledger_timeout"


# ─── Attempt & Failure Records ────────────────────────────────────


class FailureRecord(DecertifyBaseModel):
    """Why the last pipeline run stopped, and at which step."""

    step: IssuanceStep
    code: FailureCode
    cause: str
    # True when retrying the same attempt is safe without issuer judgement
    transient: bool = False
    occurred_at: datetime = Field(default_factory=utc_now)


class IssuanceAttempt(DecertifyBaseModel):
    """
    One execution of the pipeline for a request.

    The step markers are written, and durably persisted, in order:
      processed_digest → content_id → submission_ref (+ payload, fee) →
      submitted → receipt
    """

    id: str = Field(default_factory=new_id)
    number: int = 1
    started_at: datetime = Field(default_factory=utc_now)
    source_digest: str
    processed_digest: str | None = None
    content_id: str | None = None
    fee: int | None = None
    submission_ref: str | None = None
    submission_payload: str | None = None
    submitted: bool = False
    receipt: LedgerReceipt | None = None
    failure: FailureRecord | None = None

    @property
    def processed(self) -> bool:
        return self.processed_digest is not None

    @property
    def content_pushed(self) -> bool:
        return self.content_id is not None

    @property
    def ledger_submitted(self) -> bool:
        return self.submission_ref is not None

    @property
    def ledger_confirmed(self) -> bool:
        return self.receipt is not None

    @property
    def completed_steps(self) -> list[IssuanceStep]:
        steps: list[IssuanceStep] = []
        if self.processed:
            steps.append(IssuanceStep.PROCESS)
        if self.content_pushed:
            steps.append(IssuanceStep.CONTENT_PUSH)
        if self.submitted:
            steps.append(IssuanceStep.LEDGER_SUBMIT)
        if self.ledger_confirmed:
            steps.append(IssuanceStep.LEDGER_CONFIRM)
        return steps

    def successor(self) -> IssuanceAttempt:
        """
        A fresh attempt after a definitive ledger rejection. The processed
        document and its content id are reused; the submission is not.
        """
        return IssuanceAttempt(
            number=self.number + 1,
            source_digest=self.source_digest,
            processed_digest=self.processed_digest,
            content_id=self.content_id,
        )


# ─── Certificate Request ──────────────────────────────────────────


class CertificateRequest(Identified, Timestamped):
    """
    A requester's ask for a certificate from one issuer.

    requester_id and issuer_id are opaque identity keys owned by the
    identity collaborator. In deployment they are wallet addresses, and the
    requester is the recipient of the issuance transaction.
    """

    requester_id: str
    issuer_id: str
    status: RequestStatus = RequestStatus.PENDING
    subject_id: str
    period: int
    category: str
    remarks: str | None = None
    content_id: str | None = None
    issuance_fee: int | None = None
    transaction_ref: str | None = None
    decided_at: datetime | None = None
    issued_at: datetime | None = None
    attempt: IssuanceAttempt | None = None
    previous_attempts: list[IssuanceAttempt] = Field(default_factory=list)
    last_failure: FailureRecord | None = None
    version: int = 0


class VerificationPayload(DecertifyBaseModel):
    """What the stamped QR marker resolves to."""

    request_id: str
    verification_url: str

    @classmethod
    def for_request(cls, request_id: str, base_url: str) -> VerificationPayload:
        return cls(
            request_id=request_id,
            verification_url=f"{base_url.rstrip('/')}/{request_id}",
        )

    def qr_text(self) -> str:
        return self.verification_url


class DecisionPayload(DecertifyBaseModel):
    """Input accompanying an issuer decision."""

    document: bytes | None = None
    remarks: str | None = None


# ─── Views ────────────────────────────────────────────────────────


class RequestView(DecertifyBaseModel):
    """Read projection of a CertificateRequest."""

    id: str
    status: RequestStatus
    requester_id: str
    issuer_id: str
    subject_id: str
    period: int
    category: str
    remarks: str | None = None
    content_id: str | None = None
    content_url: str | None = None
    issuance_fee: int | None = None
    transaction_ref: str | None = None
    created_at: datetime
    decided_at: datetime | None = None
    issued_at: datetime | None = None
    attempt_number: int | None = None
    completed_steps: list[IssuanceStep] = Field(default_factory=list)
    failure: FailureRecord | None = None

    @classmethod
    def from_request(
        cls,
        request: CertificateRequest,
        content_url: str | None = None,
    ) -> RequestView:
        attempt = request.attempt
        return cls(
            id=request.id,
            status=request.status,
            requester_id=request.requester_id,
            issuer_id=request.issuer_id,
            subject_id=request.subject_id,
            period=request.period,
            category=request.category,
            remarks=request.remarks,
            content_id=request.content_id,
            content_url=content_url,
            issuance_fee=request.issuance_fee,
            transaction_ref=request.transaction_ref,
            created_at=request.created_at,
            decided_at=request.decided_at,
            issued_at=request.issued_at,
            attempt_number=attempt.number if attempt else None,
            completed_steps=attempt.completed_steps if attempt else [],
            failure=request.last_failure,
        )


class VerificationRecord(DecertifyBaseModel):
    """Public answer to "is this certificate genuine?"."""

    request_id: str
    status: RequestStatus
    issued: bool
    issuer_id: str
    subject_id: str
    category: str
    period: int
    content_id: str | None = None
    content_url: str | None = None
    transaction_ref: str | None = None
    issued_at: datetime | None = None
