"""
deCertify — External Service Clients

Connection management for Redis, the content-addressed store (IPFS via
Pinata), and the issuance ledger (EVM via web3).
"""

from decertify.clients.content_store import (
    ContentStoreClient,
    MemoryContentStore,
    PinataContentStore,
    create_content_store,
)
from decertify.clients.ledger import (
    LedgerClient,
    MemoryLedgerClient,
    Web3LedgerClient,
    create_ledger_client,
)
from decertify.clients.redis import RedisClient

__all__ = [
    "RedisClient",
    "ContentStoreClient",
    "MemoryContentStore",
    "PinataContentStore",
    "create_content_store",
    "LedgerClient",
    "MemoryLedgerClient",
    "Web3LedgerClient",
    "create_ledger_client",
]
