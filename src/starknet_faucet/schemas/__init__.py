# src/starknet_faucet/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .faucet import (
    ChallengeOut,
    FaucetRequestIn,
    FaucetResponse,
    HealthOut,
    InfoOut,
    QuotaOut,
    StatusOut,
    TransactionOut,
)

__all__ = [
    "ChallengeOut",
    "FaucetRequestIn", "FaucetResponse", "TransactionOut",
    "HealthOut", "InfoOut",
    "QuotaOut", "StatusOut",
]
