"""deCertify — Telemetry (structured logging)."""

from decertify.telemetry.logging import setup_logging

__all__ = ["setup_logging"]
