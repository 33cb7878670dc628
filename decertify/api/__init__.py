"""deCertify — HTTP API."""
