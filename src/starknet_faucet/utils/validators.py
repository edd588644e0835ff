"""Input validation helpers for faucet requests."""

from __future__ import annotations

import re
from typing import Final, Literal

RequestedToken = Literal["ETH", "STRK", "BOTH"]

STARKNET_ADDRESS_RE: Final[re.Pattern[str]] = re.compile(r"^0x[0-9a-fA-F]{1,64}$")
NORMALIZED_ADDRESS_LENGTH: Final[int] = 66
VALID_TOKENS: Final[tuple[str, ...]] = ("ETH", "STRK", "BOTH")


def validate_starknet_address(address: str) -> None:
    """Raise ValueError if ``address`` is not a 0x-prefixed felt of at most 64 hex digits."""
    if not address:
        raise ValueError("address cannot be empty")
    if not address.startswith("0x"):
        raise ValueError("address must start with 0x")
    if not STARKNET_ADDRESS_RE.match(address):
        raise ValueError("invalid Starknet address format")


def normalize_starknet_address(address: str) -> str:
    """Zero-pad a valid address to the canonical 66-character form, lowercased."""
    return "0x" + address[2:].lower().rjust(NORMALIZED_ADDRESS_LENGTH - 2, "0")


def validate_token(token: str) -> RequestedToken:
    """Return the upper-cased token symbol, or raise ValueError."""
    upper = token.strip().upper()
    if upper not in VALID_TOKENS:
        raise ValueError("invalid token: must be ETH, STRK or BOTH")
    return upper  # type: ignore[return-value]
