"""Shared API dependencies wiring the faucet services together."""

import time
from typing import Annotated

from fastapi import Depends, Request

from starknet_faucet.core.settings import Settings, settings
from starknet_faucet.services.chain import ChainClient, get_chain_client
from starknet_faucet.services.challenge import ChallengeEngine
from starknet_faucet.services.dispatch import DispatchOrchestrator
from starknet_faucet.services.guard import DistributionGuard
from starknet_faucet.services.rate_limiter import RateLimiter
from starknet_faucet.services.store import Clock, QuotaStore, get_quota_store


def get_settings_dep() -> Settings:
    """Return the active settings."""
    return settings


def get_clock_dep() -> Clock:
    """Return the wall clock used for timestamps in responses and cooldowns."""
    return time.time


def get_quota_store_dep() -> QuotaStore:
    """Return the shared quota store."""
    return get_quota_store()


def get_chain_client_dep() -> ChainClient:
    """Return the shared chain client."""
    return get_chain_client()


SettingsDep = Annotated[Settings, Depends(get_settings_dep)]
ClockDep = Annotated[Clock, Depends(get_clock_dep)]
QuotaStoreDep = Annotated[QuotaStore, Depends(get_quota_store_dep)]
ChainClientDep = Annotated[ChainClient, Depends(get_chain_client_dep)]


def get_rate_limiter(store: QuotaStoreDep, config: SettingsDep, clock: ClockDep) -> RateLimiter:
    return RateLimiter(store, config, clock)


RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]


def get_challenge_engine(
    store: QuotaStoreDep,
    rate_limiter: RateLimiterDep,
    config: SettingsDep,
    clock: ClockDep,
) -> ChallengeEngine:
    return ChallengeEngine(store, rate_limiter, config, clock)


def get_distribution_guard(
    store: QuotaStoreDep,
    chain: ChainClientDep,
    config: SettingsDep,
) -> DistributionGuard:
    return DistributionGuard(store, chain, config)


ChallengeEngineDep = Annotated[ChallengeEngine, Depends(get_challenge_engine)]
DistributionGuardDep = Annotated[DistributionGuard, Depends(get_distribution_guard)]


def get_dispatch_orchestrator(
    challenges: ChallengeEngineDep,
    rate_limiter: RateLimiterDep,
    guard: DistributionGuardDep,
    chain: ChainClientDep,
    config: SettingsDep,
    clock: ClockDep,
) -> DispatchOrchestrator:
    return DispatchOrchestrator(challenges, rate_limiter, guard, chain, config, clock)


DispatchOrchestratorDep = Annotated[DispatchOrchestrator, Depends(get_dispatch_orchestrator)]


def get_client_ip(request: Request, config: SettingsDep) -> str:
    """Resolve the requester IP.

    The first ``X-Forwarded-For`` hop is only honoured when the service is
    configured to sit behind a trusted proxy.
    """
    if config.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client is None:
        return "unknown"
    return request.client.host


ClientIpDep = Annotated[str, Depends(get_client_ip)]
