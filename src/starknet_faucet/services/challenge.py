"""Proof-of-work challenge issuance and verification."""

from __future__ import annotations

import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Final

from starknet_faucet.core.pow import solution_satisfies
from starknet_faucet.core.settings import Settings, settings
from starknet_faucet.services.rate_limiter import RateLimiter
from starknet_faucet.services.store import Clock, QuotaStore, QuotaStoreError

logger = logging.getLogger(__name__)

PAYLOAD_BYTES: Final[int] = 32
ID_BYTES: Final[int] = 16


@dataclass(frozen=True)
class Challenge:
    """A stored challenge; the difficulty travels with the record."""

    id: str
    payload: str
    difficulty: int
    created_at: float
    ttl: int

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> Challenge:
        return cls(**json.loads(raw))


def challenge_record_key(challenge_id: str) -> str:
    return f"challenge:{challenge_id}"


class ChallengeEngine:
    """Issue unguessable challenges and check submitted solutions."""

    def __init__(
        self,
        store: QuotaStore,
        rate_limiter: RateLimiter,
        config: Settings | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._rate_limiter = rate_limiter
        self._config = config or settings
        self._clock = clock

    @property
    def difficulty(self) -> int:
        return self._config.pow_difficulty

    @property
    def ttl_seconds(self) -> int:
        return self._config.challenge_ttl_seconds

    async def issue_challenge(self, ip: str) -> Challenge:
        """Create and store a fresh challenge for ``ip``.

        Raises:
            RateLimitExceeded: If ``ip`` requested too many challenges this hour.
        """
        await self._rate_limiter.acquire_challenge_issuance(ip)
        challenge = Challenge(
            id=secrets.token_hex(ID_BYTES),
            payload=secrets.token_hex(PAYLOAD_BYTES),
            difficulty=self.difficulty,
            created_at=self._clock(),
            ttl=self.ttl_seconds,
        )
        try:
            await self._store.set(
                challenge_record_key(challenge.id),
                challenge.to_json(),
                ttl=challenge.ttl,
            )
        except QuotaStoreError as exc:
            # The issuance slot stays counted for this window.
            logger.error("Failed to store challenge ip=%s: %s", ip, exc)
            raise
        logger.info("Challenge generated challenge_id=%s ip=%s", challenge.id, ip)
        return challenge

    async def get_challenge(self, challenge_id: str) -> Challenge | None:
        """Return the stored challenge, or None if unknown or expired."""
        if not challenge_id:
            return None
        raw = await self._store.get(challenge_record_key(challenge_id))
        if raw is None:
            return None
        return Challenge.from_json(raw)

    def check_solution(self, challenge: Challenge, nonce: int, claimed_difficulty: int) -> bool:
        """Return True if ``nonce`` solves ``challenge`` at the server difficulty.

        A claimed difficulty other than the configured one is rejected even
        when the hash would satisfy it, so clients cannot downgrade the work.
        """
        if claimed_difficulty != self.difficulty or challenge.difficulty != self.difficulty:
            return False
        return solution_satisfies(challenge.payload, nonce, claimed_difficulty)

    async def verify_solution(
        self, challenge_id: str, nonce: int, claimed_difficulty: int
    ) -> bool:
        """Look up ``challenge_id`` and check the solution without consuming it."""
        challenge = await self.get_challenge(challenge_id)
        if challenge is None:
            return False
        return self.check_solution(challenge, nonce, claimed_difficulty)

    async def consume(self, challenge_id: str) -> bool:
        """Delete a solved challenge so it cannot be replayed.

        Returns:
            False if the record was already gone (consumed by a concurrent request)
        """
        return await self._store.delete(challenge_record_key(challenge_id)) == 1
