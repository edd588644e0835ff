"""Faucet dispatch pipeline.

A dispatch request passes an ordered series of gates:

    RECEIVED -> VALIDATED -> LIMIT_CHECKED -> POW_VERIFIED
             -> GUARD_CHECKED -> TRANSFER_SUBMITTED -> COMMITTED

Cheap identity checks run before the proof of work, and the proof of work runs
before anything that touches the chain. The first gate that fails ends the
request with a :class:`Rejection`; per-IP counters are only committed after a
transfer has returned a transaction hash.

A ``BOTH`` request is two sequential single-token attempts sharing one proof
and a daily cost of 2. A failure on the first token ends the request before the
second is tried. Transfers cannot be undone, so when only the first token goes
out the result reports a partial success and only that token is committed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from starknet_faucet.core.settings import Settings, TokenSymbol, settings
from starknet_faucet.services.chain import ChainClient, ChainError, from_base_units, to_base_units
from starknet_faucet.services.challenge import ChallengeEngine
from starknet_faucet.services.guard import DistributionGuard
from starknet_faucet.services.rate_limiter import RateLimiter
from starknet_faucet.services.store import Clock, QuotaStoreError
from starknet_faucet.utils.timeutil import minutes_until, to_iso
from starknet_faucet.utils.validators import (
    RequestedToken,
    normalize_starknet_address,
    validate_starknet_address,
    validate_token,
)

logger = logging.getLogger(__name__)


class DispatchState(Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    LIMIT_CHECKED = "limit_checked"
    POW_VERIFIED = "pow_verified"
    GUARD_CHECKED = "guard_checked"
    TRANSFER_SUBMITTED = "transfer_submitted"
    COMMITTED = "committed"


class Gate(Enum):
    """Which check rejected a request."""

    ADDRESS = "address"
    TOKEN = "token"
    DAILY_LIMIT = "daily_limit"
    TOKEN_THROTTLE = "token_throttle"
    CHALLENGE = "challenge"
    PROOF_OF_WORK = "proof_of_work"
    RESERVE_PROTECTION = "reserve_protection"
    DISTRIBUTION_CAP = "distribution_cap"
    BALANCE_READ = "balance_read"
    TRANSFER = "transfer"
    QUOTA_STORE = "quota_store"


class RejectionKind(Enum):
    """Failure class; the value is the HTTP status reported to the caller."""

    CLIENT = 400
    RATE_LIMIT = 429
    INFRA = 500
    GUARD = 503


@dataclass(frozen=True)
class Rejection:
    """A terminal gate failure with the detail a client needs to retry sensibly."""

    gate: Gate
    kind: RejectionKind
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        return self.kind.value

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message, "gate": self.gate.value, **self.detail}


@dataclass(frozen=True)
class DispatchRequest:
    address: str
    token: str
    challenge_id: str
    nonce: int
    difficulty: int | None = None


@dataclass(frozen=True)
class TokenTransfer:
    token: TokenSymbol
    amount: Decimal
    tx_hash: str
    explorer_url: str


@dataclass(frozen=True)
class TokenFailure:
    token: TokenSymbol
    rejection: Rejection


@dataclass
class DispatchResult:
    """Outcome of a dispatch in which at least one transfer went out."""

    requested: RequestedToken
    transfers: list[TokenTransfer]
    failures: list[TokenFailure] = field(default_factory=list)
    cooldown_until: float | None = None

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    @property
    def message(self) -> str:
        if not self.failures:
            return "Tokens sent successfully"
        sent = ", ".join(t.token for t in self.transfers)
        failed = "; ".join(f"{f.token} failed: {f.rejection.message}" for f in self.failures)
        return f"Partially completed. Sent {sent}; {failed}"


def _tokens_for(requested: RequestedToken) -> tuple[TokenSymbol, ...]:
    if requested == "BOTH":
        return ("STRK", "ETH")
    return (requested,)


class DispatchOrchestrator:
    """Sequence the faucet gates for a single dispatch request.

    The orchestrator keeps no state between requests; every decision re-reads
    the quota store and the chain.
    """

    def __init__(
        self,
        challenges: ChallengeEngine,
        rate_limiter: RateLimiter,
        guard: DistributionGuard,
        chain: ChainClient,
        config: Settings | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._challenges = challenges
        self._rate_limiter = rate_limiter
        self._guard = guard
        self._chain = chain
        self._config = config or settings
        self._clock = clock

    async def dispatch(self, ip: str, request: DispatchRequest) -> DispatchResult | Rejection:
        """Run the full pipeline for one request from ``ip``."""
        validated = self._validate(request)
        if isinstance(validated, Rejection):
            return validated
        address, requested = validated

        tokens = _tokens_for(requested)
        cost = len(tokens)
        try:
            rejection = await self._reserve_daily_quota(ip, cost)
        except QuotaStoreError as exc:
            return self._store_failure(exc)
        if rejection is not None:
            return self._log_rejection(ip, rejection, DispatchState.VALIDATED)

        transfers: list[TokenTransfer] = []
        failures: list[TokenFailure] = []
        try:
            rejection = await self._check_throttles(ip, tokens)
            if rejection is None:
                rejection = await self._verify_proof(ip, request)
            if rejection is not None:
                return self._log_rejection(ip, rejection, DispatchState.LIMIT_CHECKED)

            for token in tokens:
                outcome = await self._dispatch_token(ip, address, token)
                if isinstance(outcome, Rejection):
                    failures.append(TokenFailure(token, outcome))
                    if not transfers:
                        break
                else:
                    transfers.append(outcome)
        except QuotaStoreError as exc:
            return self._store_failure(exc)
        finally:
            if not transfers:
                await self._release_reservation(ip, cost)

        if not transfers:
            first = failures[0].rejection
            return self._log_rejection(ip, first, DispatchState.POW_VERIFIED)

        cooldown_until = await self._commit(ip, transfers, reserved=cost)
        return DispatchResult(
            requested=requested,
            transfers=transfers,
            failures=failures,
            cooldown_until=cooldown_until,
        )

    # --- gates ------------------------------------------------------------------------

    def _validate(self, request: DispatchRequest) -> tuple[str, RequestedToken] | Rejection:
        try:
            validate_starknet_address(request.address)
        except ValueError as exc:
            return Rejection(Gate.ADDRESS, RejectionKind.CLIENT, f"Invalid address: {exc}")
        try:
            requested = validate_token(request.token)
        except ValueError as exc:
            return Rejection(Gate.TOKEN, RejectionKind.CLIENT, str(exc))
        return normalize_starknet_address(request.address), requested

    async def _reserve_daily_quota(self, ip: str, cost: int) -> Rejection | None:
        reservation = await self._rate_limiter.reserve_daily_quota(ip, cost)
        if reservation.allowed:
            return None
        limit = self._rate_limiter.daily_limit
        now = self._clock()
        if reservation.cooldown_until is not None:
            return Rejection(
                Gate.DAILY_LIMIT,
                RejectionKind.RATE_LIMIT,
                "Daily request limit reached. Please wait for the cooldown to end.",
                {
                    "cooldown_end": to_iso(reservation.cooldown_until),
                    "remaining_minutes": minutes_until(reservation.cooldown_until, now),
                    "quota_total": limit,
                },
            )
        in_use = reservation.used + reservation.pending
        return Rejection(
            Gate.DAILY_LIMIT,
            RejectionKind.RATE_LIMIT,
            f"Not enough daily quota left: this request costs {cost}, "
            f"{max(0, limit - in_use)} remaining.",
            {
                "quota_used": reservation.used,
                "quota_pending": reservation.pending,
                "quota_total": limit,
                "cost": cost,
            },
        )

    async def _check_throttles(
        self, ip: str, tokens: tuple[TokenSymbol, ...]
    ) -> Rejection | None:
        for token in tokens:
            status = await self._rate_limiter.check_token_throttle(ip, token)
            if status.allowed or status.next_available is None:
                continue
            return Rejection(
                Gate.TOKEN_THROTTLE,
                RejectionKind.RATE_LIMIT,
                f"{token} was requested recently. Please try again later.",
                {
                    "token": token,
                    "next_request_at": to_iso(status.next_available),
                    "remaining_minutes": minutes_until(status.next_available, self._clock()),
                },
            )
        return None

    async def _verify_proof(self, ip: str, request: DispatchRequest) -> Rejection | None:
        challenge = await self._challenges.get_challenge(request.challenge_id)
        if challenge is None:
            return Rejection(Gate.CHALLENGE, RejectionKind.CLIENT, "Invalid or expired challenge")

        claimed = request.difficulty if request.difficulty is not None else challenge.difficulty
        if not self._challenges.check_solution(challenge, request.nonce, claimed):
            logger.warning(
                "Invalid PoW solution challenge_id=%s nonce=%s ip=%s",
                request.challenge_id,
                request.nonce,
                ip,
            )
            return Rejection(
                Gate.PROOF_OF_WORK, RejectionKind.CLIENT, "Invalid proof of work solution"
            )

        try:
            consumed = await self._challenges.consume(request.challenge_id)
        except QuotaStoreError as exc:
            # The record still expires on its own TTL; other limits gate the funds.
            logger.error(
                "Failed to delete challenge challenge_id=%s: %s", request.challenge_id, exc
            )
            return None
        if not consumed:
            # Another request consumed the same challenge first.
            return Rejection(Gate.CHALLENGE, RejectionKind.CLIENT, "Invalid or expired challenge")
        return None

    async def _dispatch_token(
        self, ip: str, address: str, token: TokenSymbol
    ) -> TokenTransfer | Rejection:
        amount = self._config.drip_amount(token)
        amount_base = to_base_units(amount)
        hourly_cap, daily_cap = self._config.distribution_caps(token)

        try:
            reserve = await self._guard.check_live_reserve(token, amount_base)
        except ChainError as exc:
            logger.error("Failed to check faucet balance token=%s: %s", token, exc)
            return Rejection(
                Gate.BALANCE_READ,
                RejectionKind.INFRA,
                "Failed to check faucet balance",
                {"token": token},
            )
        if not reserve.allowed:
            return Rejection(
                Gate.RESERVE_PROTECTION,
                RejectionKind.GUARD,
                f"Faucet balance too low. Current {token} balance: "
                f"{from_base_units(reserve.balance):.4f}",
                {"token": token},
            )

        try:
            reserved = await self._guard.try_reserve_distribution(
                token, amount, hourly_cap, daily_cap
            )
        except QuotaStoreError as exc:
            return self._store_failure(exc)
        if not reserved:
            logger.warning("Global distribution limit reached token=%s ip=%s", token, ip)
            return Rejection(
                Gate.DISTRIBUTION_CAP,
                RejectionKind.GUARD,
                "Faucet has reached its distribution limit. Please try again later.",
                {"token": token},
            )

        logger.info(
            "Transferring tokens recipient=%s token=%s amount=%s ip=%s", address, token, amount, ip
        )
        try:
            tx_hash = await self._chain.transfer(address, token, amount_base)
        except ChainError as exc:
            logger.error(
                "Failed to transfer tokens recipient=%s token=%s: %s", address, token, exc
            )
            try:
                await self._guard.release_distribution(token, amount, hourly_cap, daily_cap)
            except QuotaStoreError as release_exc:
                logger.error("Failed to release distribution reservation: %s", release_exc)
            return Rejection(
                Gate.TRANSFER,
                RejectionKind.INFRA,
                "Failed to send tokens. Please try again later.",
                {"token": token},
            )

        logger.info("Tokens sent successfully tx_hash=%s recipient=%s token=%s", tx_hash, address, token)
        return TokenTransfer(
            token=token,
            amount=amount,
            tx_hash=tx_hash,
            explorer_url=self._config.explorer_url(tx_hash),
        )

    # --- settlement -------------------------------------------------------------------

    async def _commit(
        self, ip: str, transfers: list[TokenTransfer], *, reserved: int
    ) -> float | None:
        """Record completed transfers against the IP.

        Failures here are logged, not reported: the tokens have already left
        the faucet and the response must say so.
        """
        for transfer in transfers:
            try:
                await self._rate_limiter.set_token_throttle(ip, transfer.token)
            except QuotaStoreError as exc:
                logger.error("Failed to set throttle token=%s ip=%s: %s", transfer.token, ip, exc)
        try:
            return await self._rate_limiter.consume_daily_quota(
                ip, len(transfers), reserved=reserved
            )
        except QuotaStoreError as exc:
            logger.error("Failed to commit daily quota ip=%s: %s", ip, exc)
            return None

    async def _release_reservation(self, ip: str, amount: int) -> None:
        try:
            await self._rate_limiter.release_daily_quota(ip, amount)
        except QuotaStoreError as exc:
            logger.error("Failed to release daily quota hold ip=%s: %s", ip, exc)

    def _store_failure(self, exc: QuotaStoreError) -> Rejection:
        logger.error("Quota store unavailable: %s", exc)
        return Rejection(Gate.QUOTA_STORE, RejectionKind.INFRA, "Failed to check rate limit")

    def _log_rejection(self, ip: str, rejection: Rejection, state: DispatchState) -> Rejection:
        logger.info(
            "Dispatch rejected ip=%s gate=%s after=%s",
            ip,
            rejection.gate.value,
            state.value,
        )
        return rejection
