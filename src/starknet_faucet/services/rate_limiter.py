"""Per-IP rate limiting for the faucet.

Three independent rules are enforced, all keyed by the requester IP:

- a daily dispatch quota (1 unit per token sent) that turns into a cooldown
  once exhausted,
- an hourly throttle per token type,
- an hourly cap on how many PoW challenges may be issued.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Final

from starknet_faucet.core.settings import Settings, TokenSymbol, settings
from starknet_faucet.services.store import Clock, QuotaReservation, QuotaStore

CHALLENGE_WINDOW_SECONDS: Final[int] = 3600
TOKENS: Final[tuple[TokenSymbol, ...]] = ("STRK", "ETH")


class RateLimitExceeded(Exception):
    """Raised when an IP has used up its challenge-issuance allowance."""

    def __init__(self, message: str, retry_at: float | None = None) -> None:
        super().__init__(message)
        self.retry_at = retry_at


@dataclass(frozen=True)
class DailyLimitStatus:
    """Daily quota state of one IP."""

    allowed: bool
    used: int
    limit: int
    cooldown_until: float | None = None

    @property
    def remaining(self) -> int:
        if self.cooldown_until is not None:
            return 0
        return max(0, self.limit - self.used)


@dataclass(frozen=True)
class ThrottleStatus:
    """Hourly throttle state of one IP/token pair."""

    allowed: bool
    next_available: float | None = None


@dataclass(frozen=True)
class QuotaSnapshot:
    daily: DailyLimitStatus
    throttles: dict[str, ThrottleStatus] = field(default_factory=dict)


def daily_counter_key(ip: str) -> str:
    return f"ratelimit:ip:day:{ip}"


def daily_pending_key(ip: str) -> str:
    return f"ratelimit:ip:pending:{ip}"


def daily_cooldown_key(ip: str) -> str:
    return f"ratelimit:ip:cooldown:{ip}"


def throttle_key(ip: str, token: str) -> str:
    return f"throttle:ip:token:{ip}:{token}"


def challenge_key(ip: str) -> str:
    return f"ratelimit:challenge:hour:{ip}"


class RateLimiter:
    """Compose quota store primitives into the faucet's per-IP rules."""

    def __init__(
        self,
        store: QuotaStore,
        config: Settings | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._config = config or settings
        self._clock = clock

    @property
    def daily_limit(self) -> int:
        return self._config.max_requests_per_day_ip

    async def check_daily_limit(self, ip: str) -> DailyLimitStatus:
        """Return whether ``ip`` may still dispatch today.

        An active cooldown denies regardless of the counter value.
        """
        cooldown = await self._store.get(daily_cooldown_key(ip))
        if cooldown is not None and float(cooldown) > self._clock():
            return DailyLimitStatus(False, 0, self.daily_limit, float(cooldown))
        used = int(await self._store.get(daily_counter_key(ip)) or 0)
        return DailyLimitStatus(used < self.daily_limit, used, self.daily_limit)

    async def reserve_daily_quota(self, ip: str, cost: int) -> QuotaReservation:
        """Hold ``cost`` units of the daily quota for an in-flight dispatch.

        The hold is not part of the committed counter; it only prevents
        concurrent requests from the same IP from jointly overshooting the limit.
        It must be settled with :meth:`consume_daily_quota` or
        :meth:`release_daily_quota`.
        """
        return await self._store.reserve_quota(
            daily_counter_key(ip),
            daily_pending_key(ip),
            daily_cooldown_key(ip),
            cost=cost,
            limit=self.daily_limit,
            pending_ttl=self._config.dispatch_reservation_ttl_seconds,
        )

    async def consume_daily_quota(self, ip: str, cost: int, reserved: int = 0) -> float | None:
        """Commit ``cost`` units after a successful transfer.

        Reaching the daily limit atomically swaps the counter for a cooldown
        lasting one window.

        Returns:
            The cooldown end timestamp if this commit entered a cooldown
        """
        window = self._config.daily_cooldown_seconds
        return await self._store.commit_quota(
            daily_counter_key(ip),
            daily_pending_key(ip),
            daily_cooldown_key(ip),
            reserved=reserved,
            cost=cost,
            limit=self.daily_limit,
            window=window,
            cooldown_until=self._clock() + window,
        )

    async def release_daily_quota(self, ip: str, amount: int) -> None:
        await self._store.release_quota(daily_pending_key(ip), amount)

    async def check_token_throttle(self, ip: str, token: str) -> ThrottleStatus:
        remaining = await self._store.ttl(throttle_key(ip, token))
        if remaining is None:
            return ThrottleStatus(True)
        return ThrottleStatus(False, self._clock() + remaining)

    async def set_token_throttle(self, ip: str, token: str) -> None:
        await self._store.set(
            throttle_key(ip, token),
            str(int(self._clock())),
            ttl=self._config.token_throttle_seconds,
        )

    async def check_challenge_issuance_limit(self, ip: str) -> bool:
        issued = int(await self._store.get(challenge_key(ip)) or 0)
        return issued < self._config.max_challenges_per_hour

    async def acquire_challenge_issuance(self, ip: str) -> int:
        """Count one challenge against ``ip``'s hourly allowance.

        Raises:
            RateLimitExceeded: If the allowance for the current window is used up.
        """
        key = challenge_key(ip)
        allowed, issued = await self._store.incr_within_limit(
            key,
            self._config.max_challenges_per_hour,
            CHALLENGE_WINDOW_SECONDS,
        )
        if not allowed:
            remaining = await self._store.ttl(key)
            retry_at = self._clock() + remaining if remaining is not None else None
            raise RateLimitExceeded(
                "Too many challenge requests. Please try again later.",
                retry_at=retry_at,
            )
        return issued

    async def get_quota_snapshot(self, ip: str) -> QuotaSnapshot:
        daily = await self.check_daily_limit(ip)
        throttles = {token: await self.check_token_throttle(ip, token) for token in TOKENS}
        return QuotaSnapshot(daily=daily, throttles=throttles)
