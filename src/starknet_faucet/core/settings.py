"""Application settings and configuration.

This module defines all configuration options for the Starknet faucet service.
Settings are loaded from environment variables with sensible defaults.
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

TokenSymbol = Literal["ETH", "STRK"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    A distribution cap of ``0`` means the cap is disabled (unlimited).
    """

    # Application metadata
    app_name: str = Field(default="Starknet Faucet", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="info", alias="LOG_LEVEL")
    network: str = Field(default="sepolia", alias="NETWORK")
    port: int = Field(default=3000, alias="PORT")

    # Quota store (Redis in production, in-process memory for local runs)
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    quota_store_backend: Literal["redis", "memory"] = Field(
        default="redis",
        alias="QUOTA_STORE_BACKEND",
    )

    # Starknet chain access
    starknet_rpc_url: str = Field(default="", alias="STARKNET_RPC_URL")
    faucet_address: str = Field(default="", alias="FAUCET_ADDRESS")
    signer_url: str = Field(default="", alias="SIGNER_URL")
    signer_api_key: str | None = Field(default=None, alias="SIGNER_API_KEY")
    eth_token_address: str = Field(
        default="0x049d36570d4e46f48e99674bd3fcc84644ddd6b96f7c741b1562b82f9e004dc7",
        alias="ETH_TOKEN_ADDRESS",
    )
    strk_token_address: str = Field(
        default="0x04718f5a0fc34cc1af16a1cdee98ffb20c31f5cd61d6ab07201858f4287c938d",
        alias="STRK_TOKEN_ADDRESS",
    )
    chain_http_timeout_seconds: float = Field(default=30.0, alias="CHAIN_HTTP_TIMEOUT_SECONDS")

    # Proof-of-Work (leading zero hex characters required)
    pow_difficulty: int = Field(default=4, ge=1, le=64, alias="POW_DIFFICULTY")
    challenge_ttl_seconds: int = Field(default=300, gt=0, alias="CHALLENGE_TTL")
    max_challenges_per_hour: int = Field(default=8, ge=1, alias="MAX_CHALLENGES_PER_HOUR")

    # Drip amounts in whole tokens (18 decimals on chain)
    drip_amount_strk: Decimal = Field(default=Decimal("100"), gt=0, alias="DRIP_AMOUNT_STRK")
    drip_amount_eth: Decimal = Field(default=Decimal("0.02"), gt=0, alias="DRIP_AMOUNT_ETH")

    # Per-IP limits
    max_requests_per_day_ip: int = Field(default=5, ge=1, alias="MAX_REQUESTS_PER_DAY_IP")
    daily_cooldown_hours: int = Field(default=24, ge=1, alias="DAILY_COOLDOWN_HOURS")
    token_throttle_seconds: int = Field(default=3600, gt=0, alias="TOKEN_THROTTLE_SECONDS")
    dispatch_reservation_ttl_seconds: int = Field(
        default=120,
        gt=0,
        alias="DISPATCH_RESERVATION_TTL",
    )

    # Global distribution limits (anti-drain protection); 0 disables a cap
    max_tokens_per_hour_strk: float = Field(default=0, ge=0, alias="MAX_TOKENS_PER_HOUR_STRK")
    max_tokens_per_day_strk: float = Field(default=0, ge=0, alias="MAX_TOKENS_PER_DAY_STRK")
    max_tokens_per_hour_eth: float = Field(default=0, ge=0, alias="MAX_TOKENS_PER_HOUR_ETH")
    max_tokens_per_day_eth: float = Field(default=0, ge=0, alias="MAX_TOKENS_PER_DAY_ETH")
    min_balance_protect_pct: int = Field(default=20, ge=0, le=100, alias="MIN_BALANCE_PROTECT_PCT")

    # Client IP resolution behind a reverse proxy
    trust_proxy_headers: bool = Field(default=False, alias="TRUST_PROXY_HEADERS")

    # CORS configuration; the faucet API is public
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["Origin", "Content-Type", "Accept"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def daily_cooldown_seconds(self) -> int:
        """Length of the per-IP daily window and of the cooldown entered after it."""
        return self.daily_cooldown_hours * 3600

    def drip_amount(self, token: TokenSymbol) -> Decimal:
        """Return the per-request amount for ``token`` in whole tokens."""
        return self.drip_amount_strk if token == "STRK" else self.drip_amount_eth

    def distribution_caps(self, token: TokenSymbol) -> tuple[float, float]:
        """Return the ``(hourly, daily)`` global caps for ``token``.

        Returns:
            Tuple of hourly and daily caps in whole tokens, where 0 means disabled
        """
        if token == "STRK":
            return self.max_tokens_per_hour_strk, self.max_tokens_per_day_strk
        return self.max_tokens_per_hour_eth, self.max_tokens_per_day_eth

    def token_address(self, token: TokenSymbol) -> str:
        """Return the ERC-20 contract address for ``token``."""
        return self.strk_token_address if token == "STRK" else self.eth_token_address

    def explorer_url(self, tx_hash: str) -> str:
        """Return the block explorer URL for a transaction on the configured network."""
        if self.network == "mainnet":
            return f"https://voyager.online/tx/{tx_hash}"
        return f"https://sepolia.voyager.online/tx/{tx_hash}"


settings = Settings()
