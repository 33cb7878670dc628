"""
deCertify — Request State Machine

Owns the lifecycle of a CertificateRequest:

  pending ──accept──▶ accepted_processing ──complete──▶ issued
     │                   │        ▲
   reject              fail     retry
     ▼                   ▼        │
  rejected ◀──reject── issuance_failed

issued and rejected are terminal. Every transition is persisted with a
compare-and-set on the status it was computed from, so two writers can
never both win. Issuer-driven events (accept, reject, retry) require the
caller to be the issuer that owns the request; fail and complete are
raised by the orchestrator acting on the issuer's behalf.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from decertify.issuance.errors import (
    AuthorizationError,
    ConcurrentModification,
    InvalidStatus,
    InvalidTransition,
    ValidationError,
)
from decertify.issuance.types import (
    CertificateRequest,
    FailureCode,
    FailureRecord,
    IssuanceAttempt,
    RequestEvent,
    RequestStatus,
)
from decertify.primitives.common import utc_now

if TYPE_CHECKING:
    from decertify.clients.ledger import LedgerReceipt
    from decertify.issuance.store import RequestStore

logger = structlog.get_logger()

TRANSITIONS: dict[tuple[RequestStatus, RequestEvent], RequestStatus] = {
    (RequestStatus.PENDING, RequestEvent.REJECT): RequestStatus.REJECTED,
    (RequestStatus.PENDING, RequestEvent.ACCEPT): RequestStatus.ACCEPTED_PROCESSING,
    (RequestStatus.ACCEPTED_PROCESSING, RequestEvent.FAIL): RequestStatus.ISSUANCE_FAILED,
    (RequestStatus.ACCEPTED_PROCESSING, RequestEvent.COMPLETE): RequestStatus.ISSUED,
    (RequestStatus.ISSUANCE_FAILED, RequestEvent.RETRY): RequestStatus.ACCEPTED_PROCESSING,
    (RequestStatus.ISSUANCE_FAILED, RequestEvent.REJECT): RequestStatus.REJECTED,
}

# Decision strings an issuer may send, mapped onto events
_DECISIONS: dict[RequestStatus, RequestEvent] = {
    RequestStatus.ACCEPTED_PROCESSING: RequestEvent.ACCEPT,
    RequestStatus.REJECTED: RequestEvent.REJECT,
}
_DECISION_ALIASES = {"accepted": RequestStatus.ACCEPTED_PROCESSING}

MIN_PERIOD = 1900
MAX_PERIOD = 2200


def parse_status(value: str) -> RequestStatus:
    """Validate a status string against the enumerated set."""
    normalised = value.strip().lower() if isinstance(value, str) else value
    normalised = _DECISION_ALIASES.get(normalised, normalised)
    try:
        return RequestStatus(normalised)
    except ValueError:
        raise InvalidStatus(
            f"Invalid status {value!r}. Must be one of: "
            f"{', '.join(s.value for s in RequestStatus)}"
        ) from None


def parse_decision(value: str) -> RequestEvent:
    """Map an issuer's decision status to an event; anything else is InvalidStatus."""
    status = parse_status(value)
    event = _DECISIONS.get(status)
    if event is None:
        raise InvalidStatus(
            f"Status {status.value!r} is not a decision. Use 'accepted' or 'rejected'."
        )
    return event


def allowed(status: RequestStatus, event: RequestEvent) -> bool:
    return (status, event) in TRANSITIONS


class RequestStateMachine:
    """Validated, persisted transitions over a RequestStore."""

    def __init__(self, store: RequestStore) -> None:
        self._store = store
        self._logger = logger.bind(system="issuance.state_machine")

    # ── Creation ──────────────────────────────────────────────

    async def create(
        self,
        requester_id: str,
        issuer_id: str,
        subject_id: str,
        period: int,
        category: str,
    ) -> CertificateRequest:
        """Create a pending request on behalf of a requester."""
        missing = [
            name
            for name, value in (
                ("requester_id", requester_id),
                ("issuer_id", issuer_id),
                ("subject_id", subject_id),
                ("category", category),
            )
            if not isinstance(value, str) or not value.strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if isinstance(period, bool) or not isinstance(period, int):
            raise ValidationError("period must be an integer year")
        if not MIN_PERIOD <= period <= MAX_PERIOD:
            raise ValidationError(f"period must be between {MIN_PERIOD} and {MAX_PERIOD}")

        request = CertificateRequest(
            requester_id=requester_id.strip(),
            issuer_id=issuer_id.strip(),
            subject_id=subject_id.strip(),
            period=period,
            category=category.strip(),
        )
        await self._store.insert(request)
        self._logger.info(
            "request_created",
            request_id=request.id,
            requester_id=request.requester_id,
            issuer_id=request.issuer_id,
        )
        return request

    # ── Guards ────────────────────────────────────────────────

    @staticmethod
    def authorize(request: CertificateRequest, issuer_id: str) -> None:
        if request.issuer_id != issuer_id:
            raise AuthorizationError(
                f"Issuer {issuer_id} does not own request {request.id}"
            )

    @staticmethod
    def ensure_allowed(request: CertificateRequest, event: RequestEvent) -> None:
        if not allowed(request.status, event):
            raise InvalidTransition(
                f"Cannot {event.value} a request in status {request.status.value}"
            )

    # ── Issuer events ─────────────────────────────────────────

    async def accept(
        self,
        request: CertificateRequest,
        issuer_id: str,
        source_digest: str,
        remarks: str | None = None,
    ) -> CertificateRequest:
        self.authorize(request, issuer_id)

        def _mutate(r: CertificateRequest) -> None:
            r.decided_at = utc_now()
            if remarks:
                r.remarks = remarks
            r.attempt = IssuanceAttempt(source_digest=source_digest)
            r.last_failure = None

        return await self._apply(request, RequestEvent.ACCEPT, _mutate)

    async def reject(
        self,
        request: CertificateRequest,
        issuer_id: str,
        remarks: str | None = None,
    ) -> CertificateRequest:
        self.authorize(request, issuer_id)

        def _mutate(r: CertificateRequest) -> None:
            if r.decided_at is None:
                r.decided_at = utc_now()
            if remarks is not None:
                r.remarks = remarks
            # A rejected request never carries issuance artefacts; the
            # attempt keeps its content id for audit
            r.content_id = None
            r.issuance_fee = None

        return await self._apply(request, RequestEvent.REJECT, _mutate)

    async def retry(
        self,
        request: CertificateRequest,
        issuer_id: str,
        source_digest: str | None = None,
    ) -> CertificateRequest:
        self.authorize(request, issuer_id)

        def _mutate(r: CertificateRequest) -> None:
            attempt = r.attempt
            if attempt is None:
                raise InvalidTransition(f"Request {r.id} has no issuance attempt to retry")
            failure = attempt.failure or r.last_failure
            if failure is not None and failure.code is FailureCode.LEDGER_REJECTED:
                r.previous_attempts.append(attempt)
                attempt = attempt.successor()
            if source_digest is not None:
                if attempt.processed:
                    raise ValidationError(
                        "Document already processed for this attempt; it cannot be replaced"
                    )
                attempt.source_digest = source_digest
            attempt.failure = None
            r.attempt = attempt

        return await self._apply(request, RequestEvent.RETRY, _mutate)

    # ── Orchestrator events ───────────────────────────────────

    async def fail(
        self,
        request: CertificateRequest,
        failure: FailureRecord,
    ) -> CertificateRequest:
        def _mutate(r: CertificateRequest) -> None:
            if r.attempt is not None:
                r.attempt.failure = failure
            r.last_failure = failure

        return await self._apply(request, RequestEvent.FAIL, _mutate)

    async def complete(
        self,
        request: CertificateRequest,
        receipt: LedgerReceipt,
    ) -> CertificateRequest:
        attempt = request.attempt
        if attempt is None or attempt.content_id is None:
            raise InvalidTransition(f"Request {request.id} has no pushed content to issue")

        def _mutate(r: CertificateRequest) -> None:
            r.attempt.receipt = receipt
            r.attempt.failure = None
            r.content_id = r.attempt.content_id
            r.issuance_fee = receipt.fee
            r.transaction_ref = receipt.reference
            r.issued_at = utc_now()
            r.last_failure = None

        return await self._apply(request, RequestEvent.COMPLETE, _mutate)

    async def checkpoint(self, request: CertificateRequest) -> CertificateRequest:
        """Persist attempt progress without changing status."""
        stored = await self._store.compare_and_set(request, expected_status=request.status)
        if stored is None:
            raise ConcurrentModification(
                f"Request {request.id} changed while its pipeline was running"
            )
        return stored

    # ── Internals ─────────────────────────────────────────────

    async def _apply(
        self,
        request: CertificateRequest,
        event: RequestEvent,
        mutate: Callable[[CertificateRequest], None],
    ) -> CertificateRequest:
        self.ensure_allowed(request, event)
        target = TRANSITIONS[(request.status, event)]

        updated = request.model_copy(deep=True)
        mutate(updated)
        updated.status = target

        stored = await self._store.compare_and_set(updated, expected_status=request.status)
        if stored is None:
            raise ConcurrentModification(
                f"Request {request.id} left status {request.status.value} before {event.value}"
            )

        self._logger.info(
            "request_transition",
            request_id=request.id,
            transition=event.value,
            from_status=request.status.value,
            to_status=target.value,
        )
        return stored
