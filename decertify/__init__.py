"""
deCertify — Certificate issuance with content-addressed storage and an
on-chain issuance record.
"""

__version__ = "0.1.0"
