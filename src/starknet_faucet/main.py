# src/starknet_faucet/main.py
"""Main entry point for the Starknet faucet API."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from starknet_faucet.api.v1 import faucet_router, system_router
from starknet_faucet.core.settings import settings
from starknet_faucet.services.chain import get_chain_client
from starknet_faucet.services.store import get_quota_store

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure root logging from ``LOG_LEVEL``."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


configure_logging()

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Proof-of-work gated Starknet testnet faucet",
    version=settings.app_version,
)

# The faucet API is public; CLI and web clients call it from anywhere
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

app.include_router(system_router)
app.include_router(faucet_router, prefix="/api/v1")


@app.exception_handler(RequestValidationError)
async def invalid_body_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as plain client errors."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": {
                "error": "Invalid request body",
                "gate": "validation",
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                    for err in exc.errors()
                ],
            }
        },
    )


@app.on_event("startup")
async def on_startup() -> None:
    logger.info(
        "Starting Starknet faucet network=%s store=%s difficulty=%d daily_limit=%d",
        settings.network,
        settings.quota_store_backend,
        settings.pow_difficulty,
        settings.max_requests_per_day_ip,
    )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await get_chain_client().close()
    await get_quota_store().close()
    logger.info("Server stopped")


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "network": settings.network,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("starknet_faucet.main:app", host="0.0.0.0", port=settings.port, reload=settings.debug)
