"""Schemas for the faucet API."""
from __future__ import annotations

from pydantic import BaseModel, Field


class ChallengeOut(BaseModel):
    """API response payload for issuing a proof-of-work challenge."""

    challenge_id: str
    challenge: str
    difficulty: int
    expires_in: int = Field(..., description="Seconds until the challenge expires.")


class FaucetRequestIn(BaseModel):
    """Dispatch request carrying the solved challenge."""

    address: str
    token: str = Field(..., description="ETH, STRK or BOTH (case-insensitive).")
    challenge_id: str
    nonce: int = Field(..., ge=0)
    difficulty: int | None = Field(
        default=None,
        description="Difficulty the client solved for; defaults to the challenge's own.",
    )


class TransactionOut(BaseModel):
    token: str
    amount: str
    tx_hash: str
    explorer_url: str


class FaucetResponse(BaseModel):
    """Single-token responses fill the flat fields, BOTH fills ``transactions``."""

    success: bool
    message: str
    tx_hash: str | None = None
    amount: str | None = None
    token: str | None = None
    explorer_url: str | None = None
    transactions: list[TransactionOut] | None = None


class DailyLimitOut(BaseModel):
    total: int
    used: int
    remaining: int
    cooldown_end: str | None = None


class ThrottleOut(BaseModel):
    available: bool
    next_request_at: str | None = None


class HourlyThrottleOut(BaseModel):
    strk: ThrottleOut
    eth: ThrottleOut


class QuotaOut(BaseModel):
    daily_limit: DailyLimitOut
    hourly_throttle: HourlyThrottleOut


class StatusOut(BaseModel):
    """Whether the caller's IP may request tokens for ``address`` right now."""

    address: str
    can_request: bool
    daily_limit: DailyLimitOut
    hourly_throttle: HourlyThrottleOut


class LimitsOut(BaseModel):
    strk_per_request: str
    eth_per_request: str
    daily_requests_per_ip: int
    token_throttle_hours: float
    challenges_per_hour: int


class PowInfoOut(BaseModel):
    enabled: bool
    difficulty: int
    challenge_ttl_seconds: int


class DistributionCapOut(BaseModel):
    hourly: float
    daily: float


class DistributionCapsOut(BaseModel):
    strk: DistributionCapOut
    eth: DistributionCapOut
    min_balance_protect_pct: int


class BalanceOut(BaseModel):
    strk: str | None = None
    eth: str | None = None


class InfoOut(BaseModel):
    network: str
    limits: LimitsOut
    pow: PowInfoOut
    distribution: DistributionCapsOut
    faucet_balance: BalanceOut


class HealthOut(BaseModel):
    status: str
    timestamp: int
