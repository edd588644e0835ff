"""System endpoints for the faucet API."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from starknet_faucet.api.v1.dependencies import ClockDep, QuotaStoreDep
from starknet_faucet.schemas.faucet import HealthOut
from starknet_faucet.services.store import QuotaStoreError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/health", response_model=HealthOut)
async def health_check(store: QuotaStoreDep, clock: ClockDep) -> HealthOut:
    """Health check endpoint verifying the quota store is reachable.

    Raises:
        HTTPException: 503 if the quota store does not answer
    """
    try:
        await store.ping()
    except QuotaStoreError as exc:
        logger.error("Health check failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Quota store unavailable"},
        ) from exc
    return HealthOut(status="ok", timestamp=int(clock()))
