"""
deCertify — Configuration System

All configuration is Pydantic-validated and loaded from:
1. default.yaml (defaults)
2. Environment variables (overrides)

Every tunable parameter of the issuance pipeline lives here.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 5000
    # Identity headers are set by the upstream auth gateway and trusted as-is.
    actor_id_header: str = "X-Actor-Id"
    actor_role_header: str = "X-Actor-Role"
    max_upload_bytes: int = 20 * 1024 * 1024


class RedisConfig(BaseModel):
    url: str = "redis://redis:6379/0"
    prefix: str = "decertify"
    password: str = ""

    @property
    def full_url(self) -> str:
        """Build URL with password injected."""
        clean_pw = self.password.strip() if self.password else ""
        if clean_pw and "://" in self.url:
            scheme, rest = self.url.split("://", 1)
            return f"{scheme}://:{clean_pw}@{rest}"
        return self.url


class StoreConfig(BaseModel):
    backend: str = "memory"  # "memory" | "redis"


class ContentStoreConfig(BaseModel):
    strategy: str = "memory"  # "pinata" | "memory"
    api_url: str = "https://api.pinata.cloud"
    gateway_url: str = "https://gateway.pinata.cloud"
    jwt: str = ""
    cid_version: int = 1
    timeout_s: float = 30.0

    @model_validator(mode="after")
    def _strip_jwt(self) -> ContentStoreConfig:
        # Secret managers can inject trailing \r\n into env vars
        if self.jwt:
            object.__setattr__(self, "jwt", self.jwt.strip())
        return self


class LedgerConfig(BaseModel):
    strategy: str = "memory"  # "web3" | "memory"
    rpc_url: str = "https://alfajores-forno.celo-testnet.org"
    chain_id: int = 44787
    contract_address: str = ""
    private_key: str = ""
    # Optional JSON ABI file overriding the built-in issuance ABI
    abi_path: str | None = None
    request_timeout_s: float = 30.0
    # Fee charged by the in-memory ledger when an issuer has no explicit fee
    default_fee: int = 0

    @model_validator(mode="after")
    def _strip_private_key(self) -> LedgerConfig:
        if self.private_key:
            object.__setattr__(self, "private_key", self.private_key.strip())
        return self


class IssuanceConfig(BaseModel):
    verification_base_url: str = "http://localhost:3000/verify"
    confirmation_timeout_s: float = 120.0
    confirmation_poll_interval_s: float = 2.0
    # Lease must outlive the longest pipeline run, including the confirmation wait
    lease_ttl_s: int = 600
    # 0 disables the background reconciler
    reconcile_interval_s: float = 60.0
    max_marker_bytes: int = 512
    marker_size_pt: float = 72.0
    marker_margin_pt: float = 24.0

    @model_validator(mode="after")
    def _lease_outlives_confirmation(self) -> IssuanceConfig:
        if self.lease_ttl_s <= self.confirmation_timeout_s:
            raise ValueError(
                "issuance.lease_ttl_s must exceed issuance.confirmation_timeout_s"
            )
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class DecertifyConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="DECERTIFY_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = "decertify-default"

    server: ServerConfig = Field(default_factory=ServerConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    content_store: ContentStoreConfig = Field(default_factory=ContentStoreConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    issuance: IssuanceConfig = Field(default_factory=IssuanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path | None = None) -> DecertifyConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    # Inject secrets from environment
    if redis_url := os.environ.get("DECERTIFY_REDIS__URL"):
        raw.setdefault("redis", {})["url"] = redis_url
    if redis_pw := os.environ.get("DECERTIFY_REDIS_PASSWORD"):
        raw.setdefault("redis", {})["password"] = redis_pw
    if pinata_jwt := os.environ.get("DECERTIFY_PINATA_JWT"):
        raw.setdefault("content_store", {})["jwt"] = pinata_jwt
    if rpc_url := os.environ.get("DECERTIFY_LEDGER__RPC_URL"):
        raw.setdefault("ledger", {})["rpc_url"] = rpc_url
    if contract := os.environ.get("DECERTIFY_LEDGER__CONTRACT_ADDRESS"):
        raw.setdefault("ledger", {})["contract_address"] = contract
    if private_key := os.environ.get("DECERTIFY_LEDGER_PRIVATE_KEY"):
        raw.setdefault("ledger", {})["private_key"] = private_key
    if verify_url := os.environ.get("DECERTIFY_ISSUANCE__VERIFICATION_BASE_URL"):
        raw.setdefault("issuance", {})["verification_base_url"] = verify_url
    if instance_id := os.environ.get("DECERTIFY_INSTANCE_ID"):
        raw["instance_id"] = instance_id

    return DecertifyConfig(**raw)
