"""Global anti-drain protection.

Independently of who is asking, the faucet refuses to hand out more than a
configured amount per token per hour and per day, and refuses any transfer
that would push its own balance below a percentage of what it currently holds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Final

from starknet_faucet.core.settings import Settings, TokenSymbol, settings
from starknet_faucet.services.chain import ChainClient
from starknet_faucet.services.store import QuotaStore

logger = logging.getLogger(__name__)

# Ledgers count in nano-tokens so that they fit Redis' 64-bit integer counters.
LEDGER_DECIMALS: Final[int] = 9
LEDGER_UNITS_PER_TOKEN: Final[int] = 10**LEDGER_DECIMALS
HOUR_WINDOW_SECONDS: Final[int] = 3600
DAY_WINDOW_SECONDS: Final[int] = 86_400


def hourly_ledger_key(token: str) -> str:
    return f"global:distributed:hour:{token}"


def daily_ledger_key(token: str) -> str:
    return f"global:distributed:day:{token}"


def amount_to_ledger_units(amount: Decimal) -> int:
    return int((amount * LEDGER_UNITS_PER_TOKEN).to_integral_value(rounding=ROUND_CEILING))


def cap_to_ledger_units(cap: float) -> int:
    """Convert a cap to ledger units; 0 stays 0 (disabled)."""
    if cap <= 0:
        return 0
    units = int((Decimal(str(cap)) * LEDGER_UNITS_PER_TOKEN).to_integral_value(rounding=ROUND_FLOOR))
    return max(1, units)


def check_reserve_protection(amount: int, current_balance: int, protect_pct: int) -> bool:
    """Return True if sending ``amount`` keeps ``protect_pct`` percent of the balance.

    Integer arithmetic on base units: allowed iff
    ``current_balance - amount >= current_balance * protect_pct / 100``.
    """
    return (current_balance - amount) * 100 >= current_balance * protect_pct


@dataclass(frozen=True)
class ReserveCheck:
    allowed: bool
    balance: int
    min_required: Decimal


class DistributionGuard:
    """Enforce global distribution caps and reserve-balance protection."""

    def __init__(
        self,
        store: QuotaStore,
        chain: ChainClient,
        config: Settings | None = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._config = config or settings

    async def try_reserve_distribution(
        self,
        token: TokenSymbol,
        amount: Decimal,
        hourly_cap: float,
        daily_cap: float,
    ) -> bool:
        """Atomically add ``amount`` to the hourly and daily ledgers if both caps allow it.

        A cap of 0 means unlimited. With both caps disabled nothing is tracked.
        """
        hourly_units = cap_to_ledger_units(hourly_cap)
        daily_units = cap_to_ledger_units(daily_cap)
        if hourly_units == 0 and daily_units == 0:
            return True
        return await self._store.try_reserve_distribution(
            hourly_ledger_key(token),
            daily_ledger_key(token),
            amount=amount_to_ledger_units(amount),
            hourly_cap=hourly_units,
            daily_cap=daily_units,
            hour_ttl=HOUR_WINDOW_SECONDS,
            day_ttl=DAY_WINDOW_SECONDS,
        )

    async def release_distribution(
        self,
        token: TokenSymbol,
        amount: Decimal,
        hourly_cap: float,
        daily_cap: float,
    ) -> None:
        """Take back a reservation whose transfer never went out."""
        hourly_units = cap_to_ledger_units(hourly_cap)
        daily_units = cap_to_ledger_units(daily_cap)
        if hourly_units == 0 and daily_units == 0:
            return
        await self._store.release_distribution(
            hourly_ledger_key(token),
            daily_ledger_key(token),
            amount=amount_to_ledger_units(amount),
            hourly_cap=hourly_units,
            daily_cap=daily_units,
        )

    async def check_live_reserve(self, token: TokenSymbol, amount: int) -> ReserveCheck:
        """Read the faucet balance now and apply reserve protection to ``amount``.

        Raises:
            ChainError: If the balance cannot be read.
        """
        protect_pct = self._config.min_balance_protect_pct
        balance = await self._chain.get_balance(self._config.faucet_address, token)
        allowed = check_reserve_protection(amount, balance, protect_pct)
        min_required = Decimal(balance) * protect_pct / 100
        if not allowed:
            logger.warning(
                "Balance protection triggered token=%s balance=%s amount=%s min_required=%s",
                token,
                balance,
                amount,
                min_required,
            )
        return ReserveCheck(allowed=allowed, balance=balance, min_required=min_required)

    async def get_distribution_totals(self, token: TokenSymbol) -> tuple[Decimal, Decimal]:
        """Return ``(hourly, daily)`` amounts distributed in the current windows."""
        hourly = int(await self._store.get(hourly_ledger_key(token)) or 0)
        daily = int(await self._store.get(daily_ledger_key(token)) or 0)
        return (
            Decimal(hourly) / LEDGER_UNITS_PER_TOKEN,
            Decimal(daily) / LEDGER_UNITS_PER_TOKEN,
        )
