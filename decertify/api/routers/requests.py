"""
deCertify — Certificate Request REST Router

Endpoints:
  POST /api/v1/requests                    — requester creates a request
  GET  /api/v1/requests/{id}               — requester or issuer views a request
  GET  /api/v1/issuer/requests?status=     — issuer's inbox, optionally filtered
  GET  /api/v1/requester/requests          — requester's own requests
  POST /api/v1/requests/{id}/decision      — issuer accepts (with document) or rejects
  POST /api/v1/requests/{id}/retry         — issuer retries a failed issuance
  POST /api/v1/requests/{id}/reconcile     — settle an in-flight issuance
  GET  /api/v1/verify/{id}                 — public verification lookup

Identity comes from headers set by the upstream auth gateway
(server.actor_id_header / server.actor_role_header) and is trusted as-is.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
from starlette.responses import JSONResponse

from decertify.issuance.errors import (
    AlreadyInProgress,
    AuthorizationError,
    ConcurrentModification,
    IssuanceError,
    RequestNotFound,
    ValidationError,
)
from decertify.issuance.types import DecisionPayload, FailureCode, RequestStatus, RequestView

if TYPE_CHECKING:
    from fastapi import FastAPI

    from decertify.issuance.service import IssuanceService

logger = structlog.get_logger("decertify.api.requests")

router = APIRouter()

ROLE_ISSUER = "issuer"
ROLE_REQUESTER = "requester"


class CreateRequestBody(BaseModel):
    issuer_id: str
    subject_id: str
    period: int
    category: str


# ─── Helpers ──────────────────────────────────────────────────────


def _service(request: Request) -> IssuanceService:
    return request.app.state.issuance


def _actor(request: Request, role: str | None = None) -> str:
    """Return the caller's identity, enforcing `role` when given."""
    server = request.app.state.config.server
    actor_id = request.headers.get(server.actor_id_header, "").strip()
    if not actor_id:
        raise AuthorizationError("Missing caller identity")
    if role is not None:
        actor_role = request.headers.get(server.actor_role_header, "").strip().lower()
        if actor_role != role:
            raise AuthorizationError(f"This operation requires the {role} role")
    return actor_id


async def _read_upload(request: Request, upload: UploadFile | None) -> bytes | None:
    if upload is None:
        return None
    limit = request.app.state.config.server.max_upload_bytes
    data = await upload.read(limit + 1)
    if len(data) > limit:
        raise ValidationError(f"Document exceeds the {limit} byte upload limit")
    return data or None


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "ok", "data": data})


def _pipeline_response(view: RequestView) -> JSONResponse:
    """200 when settled, 202 while awaiting the ledger, 502 when the pipeline failed."""
    data = view.model_dump(mode="json")
    if view.status is RequestStatus.ISSUANCE_FAILED:
        return JSONResponse(
            status_code=502,
            content={"status": "failed", "data": data, "error": data["failure"]},
        )
    if view.status is RequestStatus.ACCEPTED_PROCESSING:
        pending_ledger = view.failure is not None and view.failure.code is FailureCode.LEDGER_TIMEOUT
        return JSONResponse(
            status_code=202,
            content={
                "status": "pending_reconciliation" if pending_ledger else "processing",
                "data": data,
            },
        )
    return _ok(data)


# ─── Requester ────────────────────────────────────────────────────


@router.post("/api/v1/requests")
async def create_request(request: Request, body: CreateRequestBody) -> JSONResponse:
    """Create a certificate request addressed to an issuer."""
    requester_id = _actor(request, ROLE_REQUESTER)
    view = await _service(request).create_request(
        requester_id=requester_id,
        issuer_id=body.issuer_id,
        subject_id=body.subject_id,
        period=body.period,
        category=body.category,
    )
    return _ok(view.model_dump(mode="json"), status_code=201)


@router.get("/api/v1/requester/requests")
async def list_requester_requests(request: Request) -> JSONResponse:
    requester_id = _actor(request, ROLE_REQUESTER)
    views = await _service(request).list_requester_requests(requester_id)
    return _ok([v.model_dump(mode="json") for v in views])


@router.get("/api/v1/requests/{request_id}")
async def get_request(request: Request, request_id: str) -> JSONResponse:
    """A request is visible to its requester and its issuer."""
    actor_id = _actor(request)
    view = await _service(request).get_request(request_id)
    if actor_id not in (view.requester_id, view.issuer_id):
        raise AuthorizationError(f"Caller may not view request {request_id}")
    return _ok(view.model_dump(mode="json"))


# ─── Issuer ───────────────────────────────────────────────────────


@router.get("/api/v1/issuer/requests")
async def list_issuer_requests(request: Request, status: str | None = None) -> JSONResponse:
    issuer_id = _actor(request, ROLE_ISSUER)
    views = await _service(request).list_issuer_requests(issuer_id, status=status)
    return _ok([v.model_dump(mode="json") for v in views])


@router.post("/api/v1/requests/{request_id}/decision")
async def decide_request(
    request: Request,
    request_id: str,
    decision: str = Form(...),
    remarks: str | None = Form(None),
    document: UploadFile | None = File(None),
) -> JSONResponse:
    """Accept (multipart with the certificate PDF) or reject a request."""
    issuer_id = _actor(request, ROLE_ISSUER)
    payload = DecisionPayload(
        document=await _read_upload(request, document),
        remarks=remarks,
    )
    view = await _service(request).decide_request(request_id, issuer_id, decision, payload)
    return _pipeline_response(view)


@router.post("/api/v1/requests/{request_id}/retry")
async def retry_issuance(
    request: Request,
    request_id: str,
    document: UploadFile | None = File(None),
) -> JSONResponse:
    issuer_id = _actor(request, ROLE_ISSUER)
    data = await _read_upload(request, document)
    view = await _service(request).retry_issuance(request_id, issuer_id, document=data)
    return _pipeline_response(view)


@router.post("/api/v1/requests/{request_id}/reconcile")
async def reconcile_request(request: Request, request_id: str) -> JSONResponse:
    issuer_id = _actor(request, ROLE_ISSUER)
    view = await _service(request).reconcile(request_id, issuer_id=issuer_id)
    return _pipeline_response(view)


# ─── Public ───────────────────────────────────────────────────────


@router.get("/api/v1/verify/{request_id}")
async def verify_certificate(request: Request, request_id: str) -> JSONResponse:
    """Resolve a scanned verification marker to the issued certificate."""
    record = await _service(request).verify(request_id)
    return _ok(record.model_dump(mode="json"))


# ─── Error mapping ────────────────────────────────────────────────

_STATUS_BY_ERROR: tuple[tuple[type[IssuanceError], int], ...] = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (RequestNotFound, 404),
    (AlreadyInProgress, 409),
    (ConcurrentModification, 409),
)


async def _issuance_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == 500:
        logger.error("unmapped_issuance_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "error": type(exc).__name__, "detail": str(exc)},
    )


async def _validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    detail = exc.errors() if isinstance(exc, RequestValidationError) else str(exc)
    return JSONResponse(
        status_code=400,
        content={
            "status": "error",
            "error": "ValidationError",
            "detail": jsonable_encoder(detail),
        },
    )


def install_error_handlers(app: FastAPI) -> None:
    """Map issuance boundary errors onto HTTP status codes."""
    app.add_exception_handler(IssuanceError, _issuance_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
