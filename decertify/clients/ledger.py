"""
deCertify — Ledger Client

Submits the certificate issuance transaction to the chain and reports its
outcome. The issuance contract exposes:

  issueCertificate(address student, string ipfsHash)   payable, fee as value
  organizations(address) -> (name, isRegistered, issuanceFee)

Submission is split in two so a crash can never produce a second
transaction for the same request:

  prepare(tx)        build and sign; the returned reference (tx hash) is
                     known before anything is broadcast
  submit(prepared)   broadcast the signed payload; re-broadcasting the same
                     payload is a no-op on chain
  status(reference)  pending | confirmed(receipt) | rejected(reason) | unknown

Strategies:
  "web3"   — EVM JSON-RPC through web3.py's AsyncWeb3, signing with a
             locally held key via eth-account
  "memory" — process-local ledger for development and tests

Environment variables consumed (via LedgerConfig):
  DECERTIFY_LEDGER__RPC_URL           — JSON-RPC endpoint
  DECERTIFY_LEDGER__CONTRACT_ADDRESS  — issuance contract address
  DECERTIFY_LEDGER_PRIVATE_KEY        — issuer signing key
"""

from __future__ import annotations

import enum
import hashlib
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from eth_account import Account
from pydantic import Field
from web3 import AsyncWeb3, Web3
from web3.exceptions import (
    ContractLogicError,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
    Web3ValidationError,
)

from decertify.primitives.common import DecertifyBaseModel, utc_now

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount
    from web3.contract import AsyncContract

    from decertify.config import LedgerConfig

logger = structlog.get_logger()

# ─── Constants ────────────────────────────────────────────────────

_ISSUANCE_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "issueCertificate",
        "stateMutability": "payable",
        "inputs": [
            {"name": "student", "type": "address"},
            {"name": "ipfsHash", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "organizations",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [
            {"name": "name", "type": "string"},
            {"name": "isRegistered", "type": "bool"},
            {"name": "issuanceFee", "type": "uint256"},
        ],
    },
]

# RPC error fragments meaning "this exact transaction is already in the pool"
_ALREADY_KNOWN = ("already known", "known transaction", "alreadyknown")


# ─── Data types ───────────────────────────────────────────────────


class SubmissionState(enum.StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    UNKNOWN = "unknown"  # never seen by the ledger


class IssuanceTransaction(DecertifyBaseModel):
    """Parameters of one issueCertificate call."""

    request_id: str
    issuer_id: str
    recipient: str
    content_id: str
    fee: int = 0


class PreparedSubmission(DecertifyBaseModel):
    """A signed, not yet broadcast transaction and its precomputed reference."""

    reference: str
    payload: str


class LedgerReceipt(DecertifyBaseModel):
    """Proof that the issuance transaction was included and executed."""

    reference: str
    block_number: int | None = None
    fee: int = 0
    confirmed_at: datetime = Field(default_factory=utc_now)


class SubmissionStatus(DecertifyBaseModel):
    state: SubmissionState
    receipt: LedgerReceipt | None = None
    reason: str = ""


# ─── Errors ───────────────────────────────────────────────────────


class LedgerError(RuntimeError):
    """Base for all ledger client failures."""


class LedgerUnavailable(LedgerError):
    """The ledger could not be reached or did not answer in time."""


class LedgerSubmissionRejected(LedgerError):
    """The ledger definitively refused the transaction (revert, bad nonce, unregistered issuer)."""


# ─── Client contract ──────────────────────────────────────────────


class LedgerClient(ABC):
    """Abstract ledger. Instances are stateless per request and shared."""

    async def connect(self) -> None:
        """Open network resources. No-op by default."""

    async def close(self) -> None:
        """Release network resources. No-op by default."""

    @abstractmethod
    async def issuance_fee(self, issuer_id: str) -> int:
        ...

    @abstractmethod
    async def prepare(self, tx: IssuanceTransaction) -> PreparedSubmission:
        ...

    @abstractmethod
    async def submit(self, prepared: PreparedSubmission) -> str:
        ...

    @abstractmethod
    async def status(self, reference: str) -> SubmissionStatus:
        ...


# ─── Memory ledger ────────────────────────────────────────────────


class MemoryLedgerClient(LedgerClient):
    """
    Process-local ledger.

    Broadcast transactions confirm immediately when `auto_confirm` is set;
    otherwise they stay pending until confirm() or reject() is called.
    """

    def __init__(self, default_fee: int = 0, auto_confirm: bool = True) -> None:
        self.default_fee = default_fee
        self.auto_confirm = auto_confirm
        self.fees: dict[str, int] = {}
        self._nonce = 0
        self._prepared: dict[str, IssuanceTransaction] = {}
        self._states: dict[str, SubmissionStatus] = {}
        self._block = 0
        self.broadcasts: list[str] = []

    async def issuance_fee(self, issuer_id: str) -> int:
        return self.fees.get(issuer_id, self.default_fee)

    async def prepare(self, tx: IssuanceTransaction) -> PreparedSubmission:
        self._nonce += 1
        payload = json.dumps(
            {"nonce": self._nonce, **tx.model_dump()}, sort_keys=True
        )
        reference = "0x" + hashlib.sha256(payload.encode()).hexdigest()
        self._prepared[reference] = tx
        return PreparedSubmission(reference=reference, payload=payload)

    async def submit(self, prepared: PreparedSubmission) -> str:
        reference = prepared.reference
        if reference in self._states:
            return reference
        if reference not in self._prepared:
            raise LedgerSubmissionRejected(f"Unknown signed payload {reference}")
        self.broadcasts.append(reference)
        self._states[reference] = SubmissionStatus(state=SubmissionState.PENDING)
        if self.auto_confirm:
            self.confirm(reference)
        return reference

    async def status(self, reference: str) -> SubmissionStatus:
        return self._states.get(reference, SubmissionStatus(state=SubmissionState.UNKNOWN))

    def confirm(self, reference: str) -> None:
        self._block += 1
        tx = self._prepared[reference]
        self._states[reference] = SubmissionStatus(
            state=SubmissionState.CONFIRMED,
            receipt=LedgerReceipt(reference=reference, block_number=self._block, fee=tx.fee),
        )

    def reject(self, reference: str, reason: str = "execution reverted") -> None:
        self._states[reference] = SubmissionStatus(state=SubmissionState.REJECTED, reason=reason)


# ─── Web3 ledger ──────────────────────────────────────────────────


class Web3LedgerClient(LedgerClient):
    """
    Async EVM ledger client.

    Lifecycle: construct → connect() → use → close().
    The signing key never leaves this process; only signed payloads are
    handed out and persisted.
    """

    def __init__(self, config: LedgerConfig) -> None:
        self._config = config
        self._w3: AsyncWeb3 | None = None
        self._account: LocalAccount | None = None
        self._contract: AsyncContract | None = None

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        if not self._config.contract_address:
            raise ValueError("ledger.contract_address is required for the web3 strategy")
        if not self._config.private_key:
            raise ValueError("DECERTIFY_LEDGER_PRIVATE_KEY is required for the web3 strategy")

        self._w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                self._config.rpc_url,
                request_kwargs={"timeout": self._config.request_timeout_s},
            )
        )
        self._account = Account.from_key(self._config.private_key)
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(self._config.contract_address),
            abi=self._load_abi(),
        )

        if not await self._w3.is_connected():
            await self.close()
            raise LedgerUnavailable(f"Cannot reach ledger RPC at {self._config.rpc_url}")

        logger.info(
            "ledger_connected",
            chain_id=self._config.chain_id,
            contract=self._config.contract_address,
            signer=self._account.address,
        )

    async def close(self) -> None:
        if self._w3 is not None:
            disconnect = getattr(self._w3.provider, "disconnect", None)
            if disconnect is not None:
                try:
                    await disconnect()
                except Exception as e:
                    logger.warning("ledger_close_error", error=str(e))
            self._w3 = None
        self._contract = None
        logger.info("ledger_disconnected")

    def _load_abi(self) -> list[dict[str, Any]]:
        if self._config.abi_path:
            raw = json.loads(Path(self._config.abi_path).read_text())
            # Accept both a bare ABI list and a compiler artifact
            return raw["abi"] if isinstance(raw, dict) else raw
        return _ISSUANCE_ABI

    # ── Reads ─────────────────────────────────────────────────

    async def issuance_fee(self, issuer_id: str) -> int:
        contract = self._require_contract()
        issuer = _checksum(issuer_id, "issuer")
        try:
            _name, registered, fee = await contract.functions.organizations(issuer).call()
        except ContractLogicError as exc:
            raise LedgerSubmissionRejected(f"Fee lookup reverted: {exc}") from exc
        except (Web3Exception, OSError, TimeoutError) as exc:
            raise LedgerUnavailable(f"Fee lookup failed: {exc}") from exc

        if not registered:
            raise LedgerSubmissionRejected(f"Issuer {issuer_id} is not registered on the ledger")
        return int(fee)

    async def status(self, reference: str) -> SubmissionStatus:
        w3 = self._require_w3()
        try:
            receipt = await w3.eth.get_transaction_receipt(reference)
        except TransactionNotFound:
            return await self._status_without_receipt(reference)
        except (Web3Exception, OSError, TimeoutError) as exc:
            raise LedgerUnavailable(f"Receipt lookup failed: {exc}") from exc

        if receipt["status"] != 1:
            return SubmissionStatus(
                state=SubmissionState.REJECTED,
                reason=f"transaction reverted in block {receipt['blockNumber']}",
            )

        try:
            tx = await w3.eth.get_transaction(reference)
            fee = int(tx["value"])
        except (Web3Exception, OSError, TimeoutError) as exc:
            raise LedgerUnavailable(f"Transaction lookup failed: {exc}") from exc

        return SubmissionStatus(
            state=SubmissionState.CONFIRMED,
            receipt=LedgerReceipt(
                reference=reference,
                block_number=int(receipt["blockNumber"]),
                fee=fee,
            ),
        )

    async def _status_without_receipt(self, reference: str) -> SubmissionStatus:
        w3 = self._require_w3()
        try:
            await w3.eth.get_transaction(reference)
        except TransactionNotFound:
            return SubmissionStatus(state=SubmissionState.UNKNOWN)
        except (Web3Exception, OSError, TimeoutError) as exc:
            raise LedgerUnavailable(f"Transaction lookup failed: {exc}") from exc
        return SubmissionStatus(state=SubmissionState.PENDING)

    # ── Writes ────────────────────────────────────────────────

    async def prepare(self, tx: IssuanceTransaction) -> PreparedSubmission:
        w3 = self._require_w3()
        contract = self._require_contract()
        account = self._require_account()
        recipient = _checksum(tx.recipient, "recipient")

        try:
            nonce = await w3.eth.get_transaction_count(account.address, "pending")
            built = await contract.functions.issueCertificate(
                recipient,
                tx.content_id,
            ).build_transaction({
                "from": account.address,
                "value": tx.fee,
                "nonce": nonce,
                "chainId": self._config.chain_id,
            })
        except ContractLogicError as exc:
            # Gas estimation executes the call; a revert here is definitive
            raise LedgerSubmissionRejected(f"issueCertificate would revert: {exc}") from exc
        except (Web3ValidationError, ValueError, TypeError) as exc:
            raise LedgerSubmissionRejected(f"issueCertificate arguments invalid: {exc}") from exc
        except (Web3Exception, OSError, TimeoutError) as exc:
            raise LedgerUnavailable(f"Building transaction failed: {exc}") from exc

        try:
            signed = account.sign_transaction(built)
        except (ValueError, TypeError) as exc:
            raise LedgerSubmissionRejected(f"Signing failed: {exc}") from exc
        prepared = PreparedSubmission(
            reference=Web3.to_hex(signed.hash),
            payload=Web3.to_hex(signed.raw_transaction),
        )
        logger.debug(
            "ledger_transaction_prepared",
            request_id=tx.request_id,
            reference=prepared.reference,
            nonce=nonce,
            fee=tx.fee,
        )
        return prepared

    async def submit(self, prepared: PreparedSubmission) -> str:
        w3 = self._require_w3()
        try:
            await w3.eth.send_raw_transaction(prepared.payload)
        except Web3RPCError as exc:
            message = str(exc).lower()
            if any(fragment in message for fragment in _ALREADY_KNOWN):
                return prepared.reference
            if "nonce too low" in message:
                # Either our own earlier broadcast was mined, or the nonce was
                # consumed by another transaction
                status = await self.status(prepared.reference)
                if status.state is not SubmissionState.UNKNOWN:
                    return prepared.reference
            raise LedgerSubmissionRejected(f"Broadcast refused: {exc}") from exc
        except (Web3Exception, OSError, TimeoutError) as exc:
            raise LedgerUnavailable(f"Broadcast failed: {exc}") from exc

        logger.info("ledger_transaction_sent", reference=prepared.reference)
        return prepared.reference

    # ── Internal helpers ──────────────────────────────────────

    def _require_w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise RuntimeError("Web3LedgerClient not connected. Call connect() first.")
        return self._w3

    def _require_contract(self) -> AsyncContract:
        if self._contract is None:
            raise RuntimeError("Web3LedgerClient not connected. Call connect() first.")
        return self._contract

    def _require_account(self) -> LocalAccount:
        if self._account is None:
            raise RuntimeError("No signing account loaded. Call connect() first.")
        return self._account


def _checksum(address: str, role: str) -> str:
    """Checksum an identity used as an on-chain address."""
    try:
        return Web3.to_checksum_address(address)
    except (ValueError, TypeError) as exc:
        raise LedgerSubmissionRejected(
            f"{role.capitalize()} {address!r} is not a valid ledger address"
        ) from exc


def create_ledger_client(config: LedgerConfig) -> LedgerClient:
    """Build the ledger client selected by `config.strategy`."""
    if config.strategy == "web3":
        return Web3LedgerClient(config)
    if config.strategy == "memory":
        return MemoryLedgerClient(default_fee=config.default_fee)
    raise ValueError(f"Unknown ledger strategy: {config.strategy!r}")
