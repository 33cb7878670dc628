"""
deCertify — Issuance

Takes a requester's certificate request through the issuer's decision to
an issued certificate: the document is stamped with a verification marker,
pushed to the content store, and recorded on the ledger. Every step leaves
a durable marker, so a retry resumes where the last run stopped instead of
repeating work.

Public interface:
  IssuanceService       — boundary operations (create, decide, retry, verify)
  RequestStateMachine   — validated, compare-and-set transitions
  IssuanceOrchestrator  — resumable pipeline run for one attempt
  DocumentProcessor     — stamps the verification marker onto a PDF
  RequestStore          — ABC for request persistence (memory, Redis)
  RequestView           — read projection returned by the service
"""

from decertify.issuance.document import DocumentProcessor, extract_marker
from decertify.issuance.orchestrator import IssuanceOrchestrator, IssuanceOutcome
from decertify.issuance.service import IssuanceService
from decertify.issuance.state_machine import RequestStateMachine
from decertify.issuance.store import InMemoryRequestStore, RedisRequestStore, RequestStore
from decertify.issuance.types import (
    CertificateRequest,
    DecisionPayload,
    RequestStatus,
    RequestView,
    VerificationPayload,
    VerificationRecord,
)

__all__ = [
    "IssuanceService",
    "RequestStateMachine",
    "IssuanceOrchestrator",
    "IssuanceOutcome",
    "DocumentProcessor",
    "extract_marker",
    "RequestStore",
    "InMemoryRequestStore",
    "RedisRequestStore",
    "CertificateRequest",
    "DecisionPayload",
    "RequestStatus",
    "RequestView",
    "VerificationPayload",
    "VerificationRecord",
]
