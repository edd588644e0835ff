# src/starknet_faucet/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .faucet import router as faucet_router
from .system import router as system_router

__all__ = [
    "faucet_router",
    "system_router",
]
