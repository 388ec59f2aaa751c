"""FastAPI application configuration (Facilitator API)."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..domain.errors import FacilitatorError, InvalidPaymentPayload
from ..envs.facilitator_env import Settings, get_settings
from ..infrastructure.database import get_database_client
from .dependencies import (
    build_background_services,
    close_clients,
    get_chain_registry,
    get_chain_client,
    get_store_availability,
    initialize_store,
)
from .routers import deferred, identity, payments

logger = logging.getLogger(__name__)

settings = get_settings()


async def run_maintenance(settings: Settings) -> None:
    """One pass of the periodic cleanup and settlement recovery."""
    identity_service, ledger, coordinator = build_background_services(settings)
    removed = await identity_service.cleanup_expired()
    deleted = await ledger.delete_expired_vouchers()
    recovered = await coordinator.recover_pending()
    logger.debug(
        "Maintenance: %d nullifiers removed, %d vouchers deleted, %d settlements recovered",
        removed,
        deleted,
        recovered,
    )


async def maintenance_loop(settings: Settings) -> None:
    while True:
        await asyncio.sleep(settings.maintenance_interval_seconds)
        try:
            await run_maintenance(settings)
        except Exception:
            # Keep the loop alive; the next pass retries
            logger.exception("Maintenance pass failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    availability = await initialize_store(settings)
    task = (
        asyncio.create_task(maintenance_loop(settings))
        if availability.available
        else None
    )
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await close_clients()
        await get_database_client(settings).close()


async def facilitator_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, FacilitatorError)
    content: dict[str, Any] = {"errorReason": exc.reason, "errorMessage": exc.message}
    transaction_hash = getattr(exc, "transaction_hash", None)
    if transaction_hash:
        content["transaction"] = transaction_hash
    return JSONResponse(status_code=exc.status_code, content=content)


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Malformed bodies are a client error like any other invalid payload."""
    assert isinstance(exc, RequestValidationError)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "errorReason": InvalidPaymentPayload.reason,
            "errorMessage": "Request body failed validation",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Microsettle payment facilitator API",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(FacilitatorError, facilitator_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Include routers
    app.include_router(payments.router)
    app.include_router(deferred.router)
    app.include_router(identity.router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "message": f"Welcome to {settings.app_name} Facilitator API",
            "version": settings.app_version,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint with the active chains and store mode."""
        registry = get_chain_registry(settings)
        chain_client = get_chain_client(settings)
        store = get_store_availability()
        return {
            "status": "healthy" if store.available else "degraded",
            "service": f"{settings.app_name} Facilitator",
            "version": settings.app_version,
            "store": {"available": store.available, "detail": store.detail},
            "relayer": getattr(chain_client, "relayer_address", None),
            "deferredEnabled": settings.deferred_enabled,
            "chains": [
                {
                    "network": chain.name,
                    "chainId": chain.chain_id,
                    "asset": chain.asset_address,
                    "testnet": chain.is_testnet,
                }
                for chain in registry.all()
            ],
        }

    return app


app = create_app()
