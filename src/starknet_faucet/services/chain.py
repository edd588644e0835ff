"""Starknet chain client used by the faucet.

Balances are read straight from a Starknet JSON-RPC node. Transfers are
signed and submitted by an external custody signer; the faucet only tells it
what to send and receives the transaction hash back.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any, Final, Protocol

import httpx

from starknet_faucet.core.settings import Settings, TokenSymbol, settings

logger = logging.getLogger(__name__)

TOKEN_DECIMALS: Final[int] = 18
WEI_PER_TOKEN: Final[int] = 10**TOKEN_DECIMALS
UINT128_MASK: Final[int] = (1 << 128) - 1
# starknet_keccak("balanceOf")
BALANCE_OF_SELECTOR: Final[str] = (
    "0x2e4263afad30923c891518314c3c95dbe830a16874e8abc5777a9a20b54c76e"
)


class ChainError(RuntimeError):
    """Raised when the RPC node or the signer fails."""


class ChainConfigError(ChainError):
    """Raised when chain access is used without the required configuration."""


def to_base_units(amount: Decimal) -> int:
    """Convert a whole-token amount to base units (18 decimals)."""
    return int((amount * WEI_PER_TOKEN).to_integral_value(rounding=ROUND_DOWN))


def from_base_units(amount: int) -> Decimal:
    """Convert base units to a whole-token amount."""
    return Decimal(amount) / WEI_PER_TOKEN


def split_uint256(value: int) -> tuple[str, str]:
    """Split ``value`` into Cairo uint256 ``(low, high)`` felts as hex strings."""
    return hex(value & UINT128_MASK), hex(value >> 128)


class ChainClient(Protocol):
    """What the dispatch pipeline needs from the chain."""

    async def transfer(self, recipient: str, token: TokenSymbol, amount: int) -> str: ...

    async def get_balance(self, address: str, token: TokenSymbol) -> int: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class ChainConfig:
    """Immutable configuration for chain access."""

    rpc_url: str
    signer_url: str
    signer_api_key: str | None
    token_addresses: dict[str, str]
    timeout_seconds: float


def load_chain_config(config: Settings | None = None) -> ChainConfig:
    """Build chain configuration from settings."""
    config = config or settings
    return ChainConfig(
        rpc_url=config.starknet_rpc_url,
        signer_url=config.signer_url,
        signer_api_key=config.signer_api_key,
        token_addresses={
            "ETH": config.eth_token_address,
            "STRK": config.strk_token_address,
        },
        timeout_seconds=float(config.chain_http_timeout_seconds),
    )


class StarknetClient:
    """HTTP client wrapper for the Starknet RPC node and the transfer signer."""

    def __init__(
        self,
        config: ChainConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_chain_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._request_ids = itertools.count(1)

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _token_address(self, token: str) -> str:
        try:
            return self.config.token_addresses[token]
        except KeyError as exc:
            raise ChainError(f"invalid token: {token}") from exc

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            raise ChainError(f"request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise ChainError(f"invalid JSON from {url}") from exc

    async def _rpc(self, method: str, params: dict[str, Any]) -> Any:
        if not self.config.rpc_url:
            raise ChainConfigError("STARKNET_RPC_URL is not configured")
        body = await self._post(
            self.config.rpc_url,
            {"jsonrpc": "2.0", "id": next(self._request_ids), "method": method, "params": params},
            {},
        )
        if not isinstance(body, dict):
            raise ChainError(f"{method} returned a malformed response")
        if body.get("error"):
            raise ChainError(f"{method} error: {body['error']}")
        return body.get("result")

    async def get_balance(self, address: str, token: TokenSymbol) -> int:
        """Return the ERC-20 balance of ``address`` in base units."""
        result = await self._rpc(
            "starknet_call",
            {
                "request": {
                    "contract_address": self._token_address(token),
                    "entry_point_selector": BALANCE_OF_SELECTOR,
                    "calldata": [address],
                },
                "block_id": "latest",
            },
        )
        if not isinstance(result, list) or len(result) < 2:
            raise ChainError("unexpected balance result length")
        low, high = (int(word, 16) for word in result[:2])
        return low + (high << 128)

    async def transfer(self, recipient: str, token: TokenSymbol, amount: int) -> str:
        """Ask the signer to send ``amount`` base units of ``token`` to ``recipient``.

        Returns:
            The transaction hash reported by the signer

        Raises:
            ChainError: If the signer is unreachable or does not return a hash.
                Failed transfers are never retried here.
        """
        if not self.config.signer_url:
            raise ChainConfigError("SIGNER_URL is not configured")
        low, high = split_uint256(amount)
        headers = {}
        if self.config.signer_api_key:
            headers["Authorization"] = f"Bearer {self.config.signer_api_key}"
        body = await self._post(
            f"{self.config.signer_url.rstrip('/')}/transfer",
            {
                "contract_address": self._token_address(token),
                "entry_point": "transfer",
                "calldata": [recipient, low, high],
            },
            headers,
        )
        tx_hash = body.get("transaction_hash") if isinstance(body, dict) else None
        if not tx_hash:
            raise ChainError("signer response did not include a transaction hash")
        return str(tx_hash)

    async def close(self) -> None:
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


_chain_client: StarknetClient | None = None


def get_chain_client() -> StarknetClient:
    """Return the process-wide chain client."""
    global _chain_client
    if _chain_client is None:
        _chain_client = StarknetClient()
    return _chain_client
