"""Quota store backends for the faucet.

Every mutable counter the faucet relies on (challenges, per-IP quotas, token
throttles, global distribution ledgers) lives behind :class:`QuotaStore`.
Compound updates that must not interleave with concurrent requests are exposed
as single store operations: Lua scripts on Redis, a process lock in memory.
"""

from __future__ import annotations

import contextlib
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from threading import Lock

import redis
import redis.asyncio as aioredis

from starknet_faucet.core.settings import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class QuotaStoreError(RuntimeError):
    """Raised when the quota store cannot be reached or rejects a command."""


@dataclass(frozen=True)
class QuotaReservation:
    """Outcome of an attempt to hold quota for an in-flight dispatch."""

    allowed: bool
    used: int
    pending: int
    cooldown_until: float | None = None


class QuotaStore(ABC):
    """Key-value store with TTLs and atomic quota transitions."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise :class:`QuotaStoreError` if the store is unreachable."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Delete ``key`` and return the number of keys removed (0 or 1)."""

    @abstractmethod
    async def incr_by(self, key: str, amount: int, ttl: int | None = None) -> int:
        """Increment ``key`` and (re)apply ``ttl``; return the new value."""

    @abstractmethod
    async def ttl(self, key: str) -> float | None:
        """Return the remaining lifetime of ``key`` in seconds, or None if absent."""

    @abstractmethod
    async def incr_within_limit(self, key: str, limit: int, ttl: int) -> tuple[bool, int]:
        """Increment ``key`` only while it is below ``limit``.

        The TTL is applied when the key is created, so the window runs from the
        first increment.

        Returns:
            Tuple of (incremented, current value)
        """

    @abstractmethod
    async def reserve_quota(
        self,
        counter_key: str,
        pending_key: str,
        cooldown_key: str,
        *,
        cost: int,
        limit: int,
        pending_ttl: int,
    ) -> QuotaReservation:
        """Hold ``cost`` units for an in-flight request.

        Denied while ``cooldown_key`` exists or when committed plus pending
        units plus ``cost`` would exceed ``limit``.
        """

    @abstractmethod
    async def commit_quota(
        self,
        counter_key: str,
        pending_key: str,
        cooldown_key: str,
        *,
        reserved: int,
        cost: int,
        limit: int,
        window: int,
        cooldown_until: float,
    ) -> float | None:
        """Release ``reserved`` pending units and commit ``cost`` units.

        When the committed counter reaches ``limit`` the identity enters
        cooldown: ``cooldown_key`` is set to ``cooldown_until`` for ``window``
        seconds and the counter is deleted, all in one atomic step.

        Returns:
            The cooldown timestamp if a cooldown was entered, else None
        """

    @abstractmethod
    async def release_quota(self, pending_key: str, amount: int) -> None:
        """Return ``amount`` pending units that will not be committed."""

    @abstractmethod
    async def try_reserve_distribution(
        self,
        hour_key: str,
        day_key: str,
        *,
        amount: int,
        hourly_cap: int,
        daily_cap: int,
        hour_ttl: int,
        day_ttl: int,
    ) -> bool:
        """Add ``amount`` to both ledgers only if neither enabled cap is exceeded.

        A cap of 0 is disabled and its ledger is left untouched.
        """

    @abstractmethod
    async def release_distribution(
        self,
        hour_key: str,
        day_key: str,
        *,
        amount: int,
        hourly_cap: int,
        daily_cap: int,
    ) -> None:
        """Undo a distribution reservation whose transfer did not happen."""

    async def close(self) -> None:
        """Release any connections held by the store."""
        return None


# --- Redis backend -------------------------------------------------------------------

_INCR_WITHIN_LIMIT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
    return {0, current}
end
current = redis.call('INCR', KEYS[1])
if redis.call('TTL', KEYS[1]) < 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return {1, current}
"""

_RESERVE_QUOTA = """
local used = tonumber(redis.call('GET', KEYS[1]) or '0')
local pending = tonumber(redis.call('GET', KEYS[2]) or '0')
local cooldown = redis.call('GET', KEYS[3])
if cooldown then
    return {0, used, pending, cooldown}
end
local cost = tonumber(ARGV[1])
if used + pending + cost > tonumber(ARGV[2]) then
    return {0, used, pending, ''}
end
pending = redis.call('INCRBY', KEYS[2], cost)
redis.call('EXPIRE', KEYS[2], ARGV[3])
return {1, used, pending, ''}
"""

_COMMIT_QUOTA = """
local reserved = tonumber(ARGV[1])
if reserved > 0 and redis.call('EXISTS', KEYS[2]) == 1 then
    if redis.call('DECRBY', KEYS[2], reserved) <= 0 then
        redis.call('DEL', KEYS[2])
    end
end
local cost = tonumber(ARGV[2])
if cost <= 0 then
    return ''
end
local used = redis.call('INCRBY', KEYS[1], cost)
if redis.call('TTL', KEYS[1]) < 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[4])
end
if used >= tonumber(ARGV[3]) then
    redis.call('SET', KEYS[3], ARGV[5], 'EX', ARGV[4])
    redis.call('DEL', KEYS[1])
    return ARGV[5]
end
return ''
"""

_RELEASE_QUOTA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    if redis.call('DECRBY', KEYS[1], ARGV[1]) <= 0 then
        redis.call('DEL', KEYS[1])
    end
end
return 1
"""

_TRY_RESERVE_DISTRIBUTION = """
local amount = tonumber(ARGV[1])
local hourly_cap = tonumber(ARGV[2])
local daily_cap = tonumber(ARGV[3])
if hourly_cap > 0 and tonumber(redis.call('GET', KEYS[1]) or '0') + amount > hourly_cap then
    return 0
end
if daily_cap > 0 and tonumber(redis.call('GET', KEYS[2]) or '0') + amount > daily_cap then
    return 0
end
if hourly_cap > 0 then
    redis.call('INCRBY', KEYS[1], amount)
    if redis.call('TTL', KEYS[1]) < 0 then
        redis.call('EXPIRE', KEYS[1], ARGV[4])
    end
end
if daily_cap > 0 then
    redis.call('INCRBY', KEYS[2], amount)
    if redis.call('TTL', KEYS[2]) < 0 then
        redis.call('EXPIRE', KEYS[2], ARGV[5])
    end
end
return 1
"""

_RELEASE_DISTRIBUTION = """
local amount = tonumber(ARGV[1])
for i, cap in ipairs({ARGV[2], ARGV[3]}) do
    if tonumber(cap) > 0 and redis.call('EXISTS', KEYS[i]) == 1 then
        if redis.call('DECRBY', KEYS[i], amount) < 0 then
            redis.call('SET', KEYS[i], '0', 'KEEPTTL')
        end
    end
end
return 1
"""


@contextlib.contextmanager
def _redis_errors() -> Iterator[None]:
    try:
        yield
    except redis.RedisError as exc:
        raise QuotaStoreError(f"quota store request failed: {exc}") from exc


def _optional_str(value: str | bytes | None) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, bytes):
        return value.decode()
    return value


class RedisQuotaStore(QuotaStore):
    """Quota store backed by Redis; compound operations run as Lua scripts."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client
        self._incr_within_limit = client.register_script(_INCR_WITHIN_LIMIT)
        self._reserve_quota = client.register_script(_RESERVE_QUOTA)
        self._commit_quota = client.register_script(_COMMIT_QUOTA)
        self._release_quota = client.register_script(_RELEASE_QUOTA)
        self._try_reserve_distribution = client.register_script(_TRY_RESERVE_DISTRIBUTION)
        self._release_distribution = client.register_script(_RELEASE_DISTRIBUTION)

    @classmethod
    def from_url(cls, url: str) -> RedisQuotaStore:
        return cls(aioredis.from_url(url, decode_responses=True))

    async def ping(self) -> None:
        with _redis_errors():
            await self._redis.ping()

    async def get(self, key: str) -> str | None:
        with _redis_errors():
            return _optional_str(await self._redis.get(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        with _redis_errors():
            await self._redis.set(key, value, ex=ttl)

    async def delete(self, key: str) -> int:
        with _redis_errors():
            return int(await self._redis.delete(key))

    async def incr_by(self, key: str, amount: int, ttl: int | None = None) -> int:
        with _redis_errors():
            pipe = self._redis.pipeline(transaction=True)
            pipe.incrby(key, amount)
            if ttl is not None:
                pipe.expire(key, ttl)
            results = await pipe.execute()
        return int(results[0])

    async def ttl(self, key: str) -> float | None:
        with _redis_errors():
            remaining_ms = await self._redis.pttl(key)
        # -2: missing key, -1: key without expiry
        if remaining_ms == -2:
            return None
        if remaining_ms < 0:
            return 0.0
        return remaining_ms / 1000

    async def incr_within_limit(self, key: str, limit: int, ttl: int) -> tuple[bool, int]:
        with _redis_errors():
            allowed, current = await self._incr_within_limit(keys=[key], args=[limit, ttl])
        return bool(allowed), int(current)

    async def reserve_quota(
        self,
        counter_key: str,
        pending_key: str,
        cooldown_key: str,
        *,
        cost: int,
        limit: int,
        pending_ttl: int,
    ) -> QuotaReservation:
        with _redis_errors():
            allowed, used, pending, cooldown = await self._reserve_quota(
                keys=[counter_key, pending_key, cooldown_key],
                args=[cost, limit, pending_ttl],
            )
        cooldown_str = _optional_str(cooldown)
        return QuotaReservation(
            allowed=bool(allowed),
            used=int(used),
            pending=int(pending),
            cooldown_until=float(cooldown_str) if cooldown_str else None,
        )

    async def commit_quota(
        self,
        counter_key: str,
        pending_key: str,
        cooldown_key: str,
        *,
        reserved: int,
        cost: int,
        limit: int,
        window: int,
        cooldown_until: float,
    ) -> float | None:
        with _redis_errors():
            entered = await self._commit_quota(
                keys=[counter_key, pending_key, cooldown_key],
                args=[reserved, cost, limit, window, repr(float(cooldown_until))],
            )
        entered_str = _optional_str(entered)
        return float(entered_str) if entered_str else None

    async def release_quota(self, pending_key: str, amount: int) -> None:
        if amount <= 0:
            return
        with _redis_errors():
            await self._release_quota(keys=[pending_key], args=[amount])

    async def try_reserve_distribution(
        self,
        hour_key: str,
        day_key: str,
        *,
        amount: int,
        hourly_cap: int,
        daily_cap: int,
        hour_ttl: int,
        day_ttl: int,
    ) -> bool:
        with _redis_errors():
            reserved = await self._try_reserve_distribution(
                keys=[hour_key, day_key],
                args=[amount, hourly_cap, daily_cap, hour_ttl, day_ttl],
            )
        return bool(reserved)

    async def release_distribution(
        self,
        hour_key: str,
        day_key: str,
        *,
        amount: int,
        hourly_cap: int,
        daily_cap: int,
    ) -> None:
        with _redis_errors():
            await self._release_distribution(
                keys=[hour_key, day_key],
                args=[amount, hourly_cap, daily_cap],
            )

    async def close(self) -> None:
        with _redis_errors():
            await self._redis.aclose()


# --- In-memory backend ---------------------------------------------------------------


class MemoryQuotaStore(QuotaStore):
    """Single-process quota store for local runs and tests.

    All operations take one process-wide lock and never await while holding
    it, so each call is atomic with respect to concurrent requests.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = Lock()

    # Callers must hold self._lock.
    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _put(self, key: str, value: str, ttl: float | None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._data[key] = (value, expires_at)

    def _put_keep_ttl(self, key: str, value: str, ttl_if_new: float | None) -> None:
        entry = self._data.get(key)
        if self._live(key) is None or entry is None:
            self._put(key, value, ttl_if_new)
            return
        self._data[key] = (value, entry[1])

    def _int(self, key: str) -> int:
        return int(self._live(key) or 0)

    async def ping(self) -> None:
        return None

    async def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        with self._lock:
            self._put(key, value, ttl)

    async def delete(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return 0
            del self._data[key]
            return 1

    async def incr_by(self, key: str, amount: int, ttl: int | None = None) -> int:
        with self._lock:
            value = self._int(key) + amount
            if ttl is None:
                self._put_keep_ttl(key, str(value), None)
            else:
                self._put(key, str(value), ttl)
            return value

    async def ttl(self, key: str) -> float | None:
        with self._lock:
            if self._live(key) is None:
                return None
            expires_at = self._data[key][1]
            if expires_at is None:
                return 0.0
            return max(0.0, expires_at - self._clock())

    async def incr_within_limit(self, key: str, limit: int, ttl: int) -> tuple[bool, int]:
        with self._lock:
            current = self._int(key)
            if current >= limit:
                return False, current
            self._put_keep_ttl(key, str(current + 1), ttl)
            return True, current + 1

    async def reserve_quota(
        self,
        counter_key: str,
        pending_key: str,
        cooldown_key: str,
        *,
        cost: int,
        limit: int,
        pending_ttl: int,
    ) -> QuotaReservation:
        with self._lock:
            used = self._int(counter_key)
            pending = self._int(pending_key)
            cooldown = self._live(cooldown_key)
            if cooldown is not None:
                return QuotaReservation(False, used, pending, float(cooldown))
            if used + pending + cost > limit:
                return QuotaReservation(False, used, pending)
            pending += cost
            self._put(pending_key, str(pending), pending_ttl)
            return QuotaReservation(True, used, pending)

    async def commit_quota(
        self,
        counter_key: str,
        pending_key: str,
        cooldown_key: str,
        *,
        reserved: int,
        cost: int,
        limit: int,
        window: int,
        cooldown_until: float,
    ) -> float | None:
        with self._lock:
            self._release_locked(pending_key, reserved)
            if cost <= 0:
                return None
            used = self._int(counter_key) + cost
            if used >= limit:
                self._put(cooldown_key, repr(float(cooldown_until)), window)
                self._data.pop(counter_key, None)
                return float(cooldown_until)
            self._put_keep_ttl(counter_key, str(used), window)
            return None

    def _release_locked(self, pending_key: str, amount: int) -> None:
        if amount <= 0 or self._live(pending_key) is None:
            return
        remaining = self._int(pending_key) - amount
        if remaining <= 0:
            del self._data[pending_key]
        else:
            self._put_keep_ttl(pending_key, str(remaining), None)

    async def release_quota(self, pending_key: str, amount: int) -> None:
        with self._lock:
            self._release_locked(pending_key, amount)

    async def try_reserve_distribution(
        self,
        hour_key: str,
        day_key: str,
        *,
        amount: int,
        hourly_cap: int,
        daily_cap: int,
        hour_ttl: int,
        day_ttl: int,
    ) -> bool:
        with self._lock:
            if hourly_cap > 0 and self._int(hour_key) + amount > hourly_cap:
                return False
            if daily_cap > 0 and self._int(day_key) + amount > daily_cap:
                return False
            if hourly_cap > 0:
                self._put_keep_ttl(hour_key, str(self._int(hour_key) + amount), hour_ttl)
            if daily_cap > 0:
                self._put_keep_ttl(day_key, str(self._int(day_key) + amount), day_ttl)
            return True

    async def release_distribution(
        self,
        hour_key: str,
        day_key: str,
        *,
        amount: int,
        hourly_cap: int,
        daily_cap: int,
    ) -> None:
        with self._lock:
            for key, cap in ((hour_key, hourly_cap), (day_key, daily_cap)):
                if cap > 0 and self._live(key) is not None:
                    self._put_keep_ttl(key, str(max(0, self._int(key) - amount)), None)


_quota_store: QuotaStore | None = None


def get_quota_store() -> QuotaStore:
    """Return the process-wide quota store for the configured backend."""
    global _quota_store
    if _quota_store is None:
        if settings.quota_store_backend == "memory":
            logger.warning("Using in-memory quota store; limits are not shared across processes")
            _quota_store = MemoryQuotaStore()
        else:
            _quota_store = RedisQuotaStore.from_url(settings.redis_url)
    return _quota_store
