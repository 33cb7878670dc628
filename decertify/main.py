"""
deCertify — Application Entry Point

FastAPI application wiring the issuance service to its stores and clients.

`uvicorn decertify.main:app` or the `decertify` console script.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from decertify.api.routers.requests import install_error_handlers
from decertify.api.routers.requests import router as requests_router
from decertify.clients.content_store import create_content_store
from decertify.clients.ledger import create_ledger_client
from decertify.clients.redis import RedisClient
from decertify.config import DecertifyConfig, load_config
from decertify.issuance.document import DocumentProcessor
from decertify.issuance.service import IssuanceService
from decertify.issuance.store import InMemoryRequestStore, RedisRequestStore, RequestStore
from decertify.telemetry.logging import setup_logging

load_dotenv()

logger = structlog.get_logger()


async def _build_store(config: DecertifyConfig, app: FastAPI) -> RequestStore:
    if config.store.backend == "redis":
        redis_client = RedisClient(config.redis)
        await redis_client.connect()
        app.state.redis = redis_client
        return RedisRequestStore(redis_client)
    if config.store.backend == "memory":
        app.state.redis = None
        return InMemoryRequestStore()
    raise ValueError(f"Unknown store backend: {config.store.backend!r}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown sequence."""
    # ── 1. Load configuration ─────────────────────────────────
    config_path = os.environ.get("DECERTIFY_CONFIG_PATH", "config/default.yaml")
    config = load_config(config_path)
    app.state.config = config

    # ── 2. Set up logging ─────────────────────────────────────
    setup_logging(config.logging, instance_id=config.instance_id)
    logger.info(
        "decertify_starting",
        instance_id=config.instance_id,
        config_path=config_path,
        store=config.store.backend,
        content_store=config.content_store.strategy,
        ledger=config.ledger.strategy,
    )

    # ── 3. Connect to the request store ───────────────────────
    store = await _build_store(config, app)

    # ── 4. Connect external clients ───────────────────────────
    content_store = create_content_store(config.content_store)
    await content_store.connect()
    app.state.content_store = content_store

    ledger = create_ledger_client(config.ledger)
    await ledger.connect()
    app.state.ledger = ledger

    # ── 5. Initialize the issuance service ────────────────────
    issuance = IssuanceService(
        config=config.issuance,
        store=store,
        content_store=content_store,
        ledger=ledger,
        processor=DocumentProcessor.from_config(config.issuance),
        instance_id=config.instance_id,
    )
    await issuance.initialize()
    app.state.issuance = issuance

    logger.info("decertify_ready")

    yield

    # ── Shutdown ──────────────────────────────────────────────
    logger.info("decertify_shutting_down")
    await issuance.shutdown()
    await ledger.close()
    await content_store.close()
    if app.state.redis is not None:
        await app.state.redis.close()
    logger.info("decertify_shutdown_complete")


# ─── FastAPI Application ─────────────────────────────────────────

app = FastAPI(
    title="deCertify",
    description="Certificate request, issuance and verification API",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for frontend
_cors_origins = ["http://localhost:3000"]
_extra_origins = os.environ.get("DECERTIFY_CORS_ALLOWED_ORIGINS", "")
if _extra_origins:
    _cors_origins.extend(o.strip() for o in _extra_origins.split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(requests_router)
install_error_handlers(app)


# ─── Health ───────────────────────────────────────────────────────


@app.get("/health")
async def health() -> dict[str, Any]:
    """System health check."""
    config: DecertifyConfig = app.state.config
    redis_health: dict[str, Any] = {"status": "not_configured"}
    if app.state.redis is not None:
        redis_health = await app.state.redis.health_check()

    overall = "healthy"
    if app.state.redis is not None and redis_health.get("status") != "connected":
        overall = "degraded"

    return {
        "status": overall,
        "instance_id": config.instance_id,
        "store": config.store.backend,
        "content_store": config.content_store.strategy,
        "ledger": config.ledger.strategy,
        "redis": redis_health,
    }


def run() -> None:
    """Console entry point."""
    import uvicorn

    config = load_config(os.environ.get("DECERTIFY_CONFIG_PATH", "config/default.yaml"))
    uvicorn.run("decertify.main:app", host=config.server.host, port=config.server.port)
