"""
deCertify — Primitives

Shared data types with no dependencies on services or clients.
"""

from decertify.primitives.common import (
    DecertifyBaseModel,
    Identified,
    Timestamped,
    new_id,
    sha256_hex,
    utc_now,
)

__all__ = [
    "DecertifyBaseModel",
    "Identified",
    "Timestamped",
    "new_id",
    "sha256_hex",
    "utc_now",
]
