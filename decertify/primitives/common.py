"""
deCertify — Common Primitives

Shared base classes and utilities used across the service.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone

from pydantic import BaseModel, Field
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def sha256_hex(data: bytes) -> str:
    """Hex SHA-256 digest, used as the content-addressed key for stored blobs."""
    return hashlib.sha256(data).hexdigest()


# ─── Base Models ──────────────────────────────────────────────────


class DecertifyBaseModel(BaseModel):
    """Base model for all deCertify records. Uses ULID IDs and UTC timestamps."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class Timestamped(DecertifyBaseModel):
    """Mixin for models with creation timestamps."""

    created_at: datetime = Field(default_factory=utc_now)


class Identified(DecertifyBaseModel):
    """Mixin for models with ULID IDs."""

    id: str = Field(default_factory=new_id)
