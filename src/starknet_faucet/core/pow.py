"""Proof-of-Work helpers.

A faucet challenge is a random hex payload. A client solves it by finding a
non-negative integer nonce such that ``sha256(payload + str(nonce))`` rendered
as lowercase hex starts with ``difficulty`` zero characters.
"""
from __future__ import annotations

import hashlib
from typing import Final

MAX_DIFFICULTY: Final[int] = 64  # sha256 hex digest length
DEFAULT_MAX_ATTEMPTS: Final[int] = 100_000_000


def pow_digest(payload: str, nonce: int) -> str:
    """Return the hex digest of ``payload`` concatenated with the decimal nonce."""
    return hashlib.sha256(f"{payload}{nonce}".encode()).hexdigest()


def leading_zero_hex(digest: str) -> int:
    """Count leading ``0`` characters in a hex digest."""
    return len(digest) - len(digest.lstrip("0"))


def solution_satisfies(payload: str, nonce: int, difficulty: int) -> bool:
    """Return True if ``nonce`` solves ``payload`` at ``difficulty``.

    Args:
        payload: Challenge payload issued by the server.
        nonce: Unsigned integer chosen by the client.
        difficulty: Required count of leading zero hex characters.

    Returns:
        True if the digest has at least ``difficulty`` leading zeros; False for
        negative nonces or out-of-range difficulties.
    """
    if nonce < 0 or not (0 <= difficulty <= MAX_DIFFICULTY):
        return False
    return pow_digest(payload, nonce).startswith("0" * difficulty)


def solve_challenge(
    payload: str,
    difficulty: int,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> int:
    """Find the smallest nonce solving ``payload`` at ``difficulty``.

    This is the client side of the protocol; the server never calls it.

    Raises:
        ValueError: If no nonce is found within ``max_attempts``.
    """
    prefix = "0" * difficulty
    for nonce in range(max_attempts):
        if pow_digest(payload, nonce).startswith(prefix):
            return nonce
    raise ValueError(f"failed to solve challenge after {max_attempts} attempts")


def estimate_attempts(difficulty: int) -> int:
    """Expected number of hashes needed to solve a challenge."""
    return 16**difficulty
