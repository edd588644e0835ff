# src/starknet_faucet/services/__init__.py
"""Business logic services for the faucet."""

from .challenge import ChallengeEngine
from .dispatch import DispatchOrchestrator
from .guard import DistributionGuard
from .rate_limiter import RateLimiter
from .store import MemoryQuotaStore, QuotaStore, RedisQuotaStore

__all__ = [
    "ChallengeEngine",
    "DispatchOrchestrator",
    "DistributionGuard",
    "RateLimiter",
    "QuotaStore",
    "MemoryQuotaStore",
    "RedisQuotaStore",
]
