"""
deCertify -- Issuance Error Hierarchy

All exceptions raised across the issuance service boundary.

Two families:
  Boundary errors  -> raised synchronously, before any state mutation
                      (ValidationError, AuthorizationError, RequestNotFound,
                      AlreadyInProgress, ConcurrentModification)
  PipelineError    -> a step of a running attempt failed; recorded on the
                      request and returned in the outcome, never raised past
                      the orchestrator

Retry guide:
  ProcessingFailed  retry with the same or a replacement document
  StoreFailed       transient, retry resumes at the content push
  LedgerRejected    explicit issuer decision: reject, or retry as a fresh attempt
  LedgerTimeout     ambiguous, reconcile against the recorded submission
"""

from __future__ import annotations

from decertify.issuance.types import FailureCode, FailureRecord, IssuanceStep


class IssuanceError(RuntimeError):
    """Base for all issuance errors."""


class ValidationError(IssuanceError):
    """Bad input. No state was changed."""


class InvalidStatus(ValidationError):
    """A status or decision value outside the enumerated set."""


class InvalidTransition(ValidationError):
    """The requested event is not allowed from the request's current status."""


class RequestNotFound(IssuanceError):
    """No request exists under the given id."""


class AuthorizationError(IssuanceError):
    """The caller is not the issuer that owns the request."""


class AlreadyInProgress(IssuanceError):
    """Another pipeline execution holds the request's lease."""


class ConcurrentModification(IssuanceError):
    """The persisted status changed between read and compare-and-set."""


class PipelineError(IssuanceError):
    """A pipeline step failed. Carries the step and the underlying cause."""

    code: FailureCode
    transient: bool = False

    def __init__(
        self,
        step: IssuanceStep,
        cause: BaseException | str,
        transient: bool | None = None,
    ) -> None:
        self.step = step
        self.cause = cause
        if transient is not None:
            self.transient = transient
        super().__init__(f"{self.code.value} at {step.value}: {cause}")

    def to_record(self) -> FailureRecord:
        cause = self.cause
        text = f"{type(cause).__name__}: {cause}" if isinstance(cause, BaseException) else cause
        return FailureRecord(
            step=self.step,
            code=self.code,
            cause=text,
            transient=self.transient,
        )


class ProcessingFailed(PipelineError):
    code = FailureCode.PROCESSING_FAILED


class StoreFailed(PipelineError):
    code = FailureCode.STORE_FAILED
    transient = True


class LedgerRejected(PipelineError):
    code = FailureCode.LEDGER_REJECTED


class LedgerTimeout(PipelineError):
    code = FailureCode.LEDGER_TIMEOUT
    transient = True


_BY_CODE: dict[FailureCode, type[PipelineError]] = {
    cls.code: cls for cls in (ProcessingFailed, StoreFailed, LedgerRejected, LedgerTimeout)
}


def error_for(record: FailureRecord) -> PipelineError:
    """Rebuild the typed error for a persisted failure record."""
    return _BY_CODE[record.code](record.step, record.cause, transient=record.transient)
