# config.py
"""
Scratch Your Card — Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from decimal import Decimal
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from web3 import Web3


class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    # =========================
    # CORS
    # =========================
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
    ]

    # =========================
    # Database
    # =========================
    DB_PATH: str = "./data/scratch.db"

    # =========================
    # Chain / Contract
    # =========================
    RPC_URL: str = "https://rpc.sepolia.org"
    SCRATCH_CARD_CONTRACT: str = "0x91d1c6Aba776e827C0cA34627AE5cA1931855717"
    TX_RECEIPT_TIMEOUT: int = 180          # seconds to wait for a receipt
    EVENT_LOOKBACK_BLOCKS: int = 120_000   # span used for event-derived player stats

    # =========================
    # Admin batch run
    # =========================
    # Hex private key of the funding wallet; never shipped with a default
    BATCH_ADMIN_PRIVATE_KEY: Optional[str] = None
    ADMIN_PRIVATE_KEY: Optional[str] = None

    # Player key for the CLI scratch/claim commands; falls back to the admin key
    PLAYER_PRIVATE_KEY: Optional[str] = None

    # Whole-ETH amounts; converted to wei by the properties below
    BATCH_FUND_PER_WALLET_ETH: Decimal = Decimal("0.5")
    BATCH_GAS_RESERVE_ETH: Decimal = Decimal("0.01")

    BATCH_WALLET_COUNT: int = 5
    BATCH_MAX_ROUNDS_PER_WALLET: int = 10
    BATCH_REACTIVITY_POLLS: int = 20
    BATCH_REACTIVITY_POLL_MS: int = 2000
    # Return generated wallet private keys in the batch response (test networks only)
    BATCH_SAVE_WALLETS: bool = False

    @field_validator("BATCH_FUND_PER_WALLET_ETH", "BATCH_GAS_RESERVE_ETH")
    @classmethod
    def _non_negative_eth(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("ETH amounts must be >= 0")
        return v

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def fund_per_wallet_wei(self) -> int:
        """Funding sent to each generated wallet, in wei."""
        return int(Web3.to_wei(self.BATCH_FUND_PER_WALLET_ETH, "ether"))

    @property
    def gas_reserve_wei(self) -> int:
        """Balance a wallet keeps on top of the scratch price to pay for gas."""
        return int(Web3.to_wei(self.BATCH_GAS_RESERVE_ETH, "ether"))

    @property
    def admin_private_key(self) -> str:
        return (self.BATCH_ADMIN_PRIVATE_KEY or self.ADMIN_PRIVATE_KEY or "").strip()

    @property
    def player_private_key(self) -> str:
        return (self.PLAYER_PRIVATE_KEY or "").strip() or self.admin_private_key


# Instantiate global settings (values resolved from environment)
settings = Settings()
