"""Faucet endpoints: challenges, dispatch and quota inspection."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from starknet_faucet.api.v1.dependencies import (
    ChainClientDep,
    ChallengeEngineDep,
    ClientIpDep,
    DispatchOrchestratorDep,
    RateLimiterDep,
    SettingsDep,
)
from starknet_faucet.schemas.faucet import (
    BalanceOut,
    ChallengeOut,
    DailyLimitOut,
    DistributionCapOut,
    DistributionCapsOut,
    FaucetRequestIn,
    FaucetResponse,
    HourlyThrottleOut,
    InfoOut,
    LimitsOut,
    PowInfoOut,
    QuotaOut,
    StatusOut,
    ThrottleOut,
    TransactionOut,
)
from starknet_faucet.services.chain import ChainError, from_base_units
from starknet_faucet.services.dispatch import DispatchRequest, DispatchResult, Rejection
from starknet_faucet.services.rate_limiter import QuotaSnapshot, RateLimitExceeded
from starknet_faucet.services.store import QuotaStoreError
from starknet_faucet.utils.timeutil import to_iso
from starknet_faucet.utils.validators import (
    normalize_starknet_address,
    validate_starknet_address,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["faucet"])


def _store_unavailable(exc: QuotaStoreError, error: str) -> HTTPException:
    logger.error("%s: %s", error, exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": error, "gate": "quota_store"},
    )


def _quota_payload(snapshot: QuotaSnapshot) -> tuple[DailyLimitOut, HourlyThrottleOut]:
    daily = snapshot.daily
    throttles = {
        token.lower(): ThrottleOut(
            available=state.allowed,
            next_request_at=to_iso(state.next_available),
        )
        for token, state in snapshot.throttles.items()
    }
    return (
        DailyLimitOut(
            total=daily.limit,
            used=daily.used,
            remaining=daily.remaining,
            cooldown_end=to_iso(daily.cooldown_until),
        ),
        HourlyThrottleOut(**throttles),
    )


def _dispatch_response(result: DispatchResult) -> FaucetResponse:
    if result.requested != "BOTH":
        transfer = result.transfers[0]
        return FaucetResponse(
            success=True,
            message=result.message,
            tx_hash=transfer.tx_hash,
            amount=str(transfer.amount),
            token=transfer.token,
            explorer_url=transfer.explorer_url,
        )
    return FaucetResponse(
        success=True,
        message=result.message,
        transactions=[
            TransactionOut(
                token=transfer.token,
                amount=str(transfer.amount),
                tx_hash=transfer.tx_hash,
                explorer_url=transfer.explorer_url,
            )
            for transfer in result.transfers
        ],
    )


@router.post("/challenge", response_model=ChallengeOut)
async def create_challenge(ip: ClientIpDep, challenges: ChallengeEngineDep) -> ChallengeOut:
    """Issue a proof-of-work challenge for the caller to solve.

    Raises:
        HTTPException: 429 when the caller requested too many challenges this hour
    """
    try:
        challenge = await challenges.issue_challenge(ip)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": str(exc),
                "gate": "challenge_issuance",
                "retry_at": to_iso(exc.retry_at),
            },
        ) from exc
    except QuotaStoreError as exc:
        raise _store_unavailable(exc, "Failed to generate challenge") from exc

    return ChallengeOut(
        challenge_id=challenge.id,
        challenge=challenge.payload,
        difficulty=challenge.difficulty,
        expires_in=challenge.ttl,
    )


@router.post("/request", response_model=FaucetResponse, response_model_exclude_none=True)
@router.post(
    "/faucet",
    response_model=FaucetResponse,
    response_model_exclude_none=True,
    include_in_schema=False,
)
async def request_tokens(
    body: FaucetRequestIn,
    ip: ClientIpDep,
    orchestrator: DispatchOrchestratorDep,
) -> FaucetResponse:
    """Send tokens to ``body.address`` once every gate has passed.

    Raises:
        HTTPException: with the failing gate and retry detail; 400 for bad input
            or proof, 429 for per-IP limits, 503 for faucet protection, 500 for
            store or chain failures
    """
    outcome = await orchestrator.dispatch(
        ip,
        DispatchRequest(
            address=body.address,
            token=body.token,
            challenge_id=body.challenge_id,
            nonce=body.nonce,
            difficulty=body.difficulty,
        ),
    )
    if isinstance(outcome, Rejection):
        raise HTTPException(status_code=outcome.status_code, detail=outcome.to_body())
    return _dispatch_response(outcome)


@router.get("/status/{address}", response_model=StatusOut)
async def get_status(address: str, ip: ClientIpDep, rate_limiter: RateLimiterDep) -> StatusOut:
    """Report whether the caller may request tokens for ``address`` right now."""
    try:
        validate_starknet_address(address)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": f"Invalid address: {exc}", "gate": "address"},
        ) from exc

    try:
        snapshot = await rate_limiter.get_quota_snapshot(ip)
    except QuotaStoreError as exc:
        raise _store_unavailable(exc, "Failed to check status") from exc

    daily, hourly = _quota_payload(snapshot)
    can_request = snapshot.daily.allowed and any(t.allowed for t in snapshot.throttles.values())
    return StatusOut(
        address=normalize_starknet_address(address),
        can_request=can_request,
        daily_limit=daily,
        hourly_throttle=hourly,
    )


@router.get("/quota", response_model=QuotaOut)
async def get_quota(ip: ClientIpDep, rate_limiter: RateLimiterDep) -> QuotaOut:
    """Return the caller's daily quota and per-token throttle state."""
    try:
        snapshot = await rate_limiter.get_quota_snapshot(ip)
    except QuotaStoreError as exc:
        raise _store_unavailable(exc, "Failed to check quota") from exc
    daily, hourly = _quota_payload(snapshot)
    return QuotaOut(daily_limit=daily, hourly_throttle=hourly)


@router.get("/info", response_model=InfoOut)
async def get_info(config: SettingsDep, chain: ChainClientDep) -> InfoOut:
    """Describe the faucet: network, limits, PoW settings and live balances."""
    balances: dict[str, str | None] = {}
    for token, places in (("STRK", 2), ("ETH", 4)):
        try:
            raw = await chain.get_balance(config.faucet_address, token)
        except ChainError as exc:
            logger.error("Failed to get %s balance: %s", token, exc)
            balances[token.lower()] = None
            continue
        balances[token.lower()] = f"{from_base_units(raw):.{places}f}"

    strk_hour, strk_day = config.distribution_caps("STRK")
    eth_hour, eth_day = config.distribution_caps("ETH")
    return InfoOut(
        network=config.network,
        limits=LimitsOut(
            strk_per_request=str(config.drip_amount_strk),
            eth_per_request=str(config.drip_amount_eth),
            daily_requests_per_ip=config.max_requests_per_day_ip,
            token_throttle_hours=config.token_throttle_seconds / 3600,
            challenges_per_hour=config.max_challenges_per_hour,
        ),
        pow=PowInfoOut(
            enabled=True,
            difficulty=config.pow_difficulty,
            challenge_ttl_seconds=config.challenge_ttl_seconds,
        ),
        distribution=DistributionCapsOut(
            strk=DistributionCapOut(hourly=strk_hour, daily=strk_day),
            eth=DistributionCapOut(hourly=eth_hour, daily=eth_day),
            min_balance_protect_pct=config.min_balance_protect_pct,
        ),
        faucet_balance=BalanceOut(**balances),
    )
