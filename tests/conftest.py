# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Iterator
from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

os.environ.setdefault("QUOTA_STORE_BACKEND", "memory")

from starknet_faucet.api.v1.dependencies import (
    get_chain_client_dep,
    get_clock_dep,
    get_quota_store_dep,
    get_settings_dep,
)
from starknet_faucet.core.pow import solution_satisfies, solve_challenge
from starknet_faucet.core.settings import Settings
from starknet_faucet.main import app as fastapi_app
from starknet_faucet.services.chain import ChainError, to_base_units
from starknet_faucet.services.challenge import Challenge, ChallengeEngine
from starknet_faucet.services.dispatch import DispatchOrchestrator, DispatchRequest
from starknet_faucet.services.guard import DistributionGuard
from starknet_faucet.services.rate_limiter import RateLimiter
from starknet_faucet.services.store import MemoryQuotaStore

FAUCET_ADDRESS = "0x" + "f" * 64
RECIPIENT = "0x0123abc"
START_TIME = 1_700_000_000.0


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChainClient:
    """In-memory chain: records transfers and serves configurable balances."""

    def __init__(self) -> None:
        self.balances: dict[str, int] = {
            "STRK": to_base_units(Decimal("10000")),
            "ETH": to_base_units(Decimal("10")),
        }
        self.transfers: list[tuple[str, str, int]] = []
        self.balance_reads: list[tuple[str, str]] = []
        self.fail_transfer: set[str] = set()
        self.fail_balance: set[str] = set()
        self.closed = False

    async def transfer(self, recipient: str, token: str, amount: int) -> str:
        # Yield so concurrent dispatches interleave like real network calls.
        await asyncio.sleep(0)
        if token in self.fail_transfer:
            raise ChainError("signer unavailable")
        self.transfers.append((recipient, token, amount))
        self.balances[token] -= amount
        return f"0x{len(self.transfers):064x}"

    async def get_balance(self, address: str, token: str) -> int:
        self.balance_reads.append((address, token))
        if token in self.fail_balance:
            raise ChainError("rpc unavailable")
        return self.balances[token]

    async def close(self) -> None:
        self.closed = True


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "POW_DIFFICULTY": 2,
        "CHALLENGE_TTL": 300,
        "MAX_CHALLENGES_PER_HOUR": 8,
        "MAX_REQUESTS_PER_DAY_IP": 5,
        "DAILY_COOLDOWN_HOURS": 24,
        "TOKEN_THROTTLE_SECONDS": 3600,
        "MIN_BALANCE_PROTECT_PCT": 20,
        "FAUCET_ADDRESS": FAUCET_ADDRESS,
        "QUOTA_STORE_BACKEND": "memory",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> MemoryQuotaStore:
    return MemoryQuotaStore(clock=clock)


@pytest.fixture()
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture()
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture()
def rate_limiter(store: MemoryQuotaStore, test_settings: Settings, clock: FakeClock) -> RateLimiter:
    return RateLimiter(store, test_settings, clock)


@pytest.fixture()
def challenges(
    store: MemoryQuotaStore,
    rate_limiter: RateLimiter,
    test_settings: Settings,
    clock: FakeClock,
) -> ChallengeEngine:
    return ChallengeEngine(store, rate_limiter, test_settings, clock)


@pytest.fixture()
def guard(store: MemoryQuotaStore, chain: FakeChainClient, test_settings: Settings) -> DistributionGuard:
    return DistributionGuard(store, chain, test_settings)


@pytest.fixture()
def orchestrator(
    challenges: ChallengeEngine,
    rate_limiter: RateLimiter,
    guard: DistributionGuard,
    chain: FakeChainClient,
    test_settings: Settings,
    clock: FakeClock,
) -> DispatchOrchestrator:
    return DispatchOrchestrator(challenges, rate_limiter, guard, chain, test_settings, clock)


@pytest.fixture()
def solved_request(
    challenges: ChallengeEngine,
) -> Callable[..., Awaitable[DispatchRequest]]:
    """Issue a challenge for ``ip`` and return a correctly solved request."""

    async def _make(ip: str, token: str = "STRK", address: str = RECIPIENT) -> DispatchRequest:
        challenge = await challenges.issue_challenge(ip)
        nonce = solve_challenge(challenge.payload, challenge.difficulty)
        return DispatchRequest(
            address=address,
            token=token,
            challenge_id=challenge.id,
            nonce=nonce,
        )

    return _make


def wrong_nonce(challenge: Challenge) -> int:
    """Return the smallest nonce that does not solve ``challenge``."""
    nonce = 0
    while solution_satisfies(challenge.payload, nonce, challenge.difficulty):
        nonce += 1
    return nonce


@pytest.fixture()
def bad_nonce() -> Callable[[Challenge], int]:
    return wrong_nonce


@pytest.fixture()
def app(
    test_settings: Settings,
    clock: FakeClock,
    store: MemoryQuotaStore,
    chain: FakeChainClient,
) -> Iterator[FastAPI]:
    overrides = {
        get_settings_dep: lambda: test_settings,
        get_clock_dep: lambda: clock,
        get_quota_store_dep: lambda: store,
        get_chain_client_dep: lambda: chain,
    }
    fastapi_app.dependency_overrides.update(overrides)
    try:
        yield fastapi_app
    finally:
        for dependency in overrides:
            fastapi_app.dependency_overrides.pop(dependency, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client
