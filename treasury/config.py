"""
Settings for the treasury client.

Values come from environment variables prefixed with ``POOLPARTY_`` (or a
``.env`` file):

    POOLPARTY_TREASURY_ADDRESS       club treasury contract address
    POOLPARTY_USDC_ADDRESS           USDC token address
    POOLPARTY_CHAIN_NAME             display name of the network
    POOLPARTY_EXPLORER_TX_URL        block explorer transaction URL prefix
    POOLPARTY_FINALITY_TIMEOUT_S     seconds to wait for an operation to finalise
    POOLPARTY_BALANCE_REFRESH_INTERVAL_S  max age of the treasury balance before a re-read
    POOLPARTY_DEFAULT_SESSION_CREDENTIAL  code for the seeded attendance session and event
    POOLPARTY_DEFAULT_EVENT_ID       id of the seeded on-chain attendance event
    POOLPARTY_DEFAULT_EVENT_SALT     bytes32 salt of the seeded on-chain event
    POOLPARTY_AUTO_REGISTER_MEMBERS  register connecting wallets as members (in-memory ledger)
    POOLPARTY_INITIAL_MEMBER_BALANCE USDC minted to a newly registered wallet
    POOLPARTY_LOG_LEVEL              logging level name
    POOLPARTY_CORS_ALLOW_ORIGINS     JSON list of allowed origins
"""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .gateway import DEFAULT_TREASURY_ADDRESS, DEFAULT_USDC_ADDRESS
from .service import DEFAULT_SESSION_CREDENTIAL
from .units import InvalidAmountError, canonical_identity, is_bytes32_hex, to_minor_units


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="POOLPARTY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    treasury_address: str = DEFAULT_TREASURY_ADDRESS
    usdc_address: str = DEFAULT_USDC_ADDRESS
    chain_name: str = "Base Sepolia"
    explorer_tx_url: str = "https://sepolia.basescan.org/tx/"
    finality_timeout_s: Optional[float] = Field(default=60.0, gt=0)
    balance_refresh_interval_s: float = Field(default=15.0, gt=0)
    default_session_credential: str = DEFAULT_SESSION_CREDENTIAL
    default_event_id: int = Field(default=1, gt=0)
    default_event_salt: str = "0x" + "00" * 31 + "01"
    auto_register_members: bool = True
    initial_member_balance: str = "1000"
    log_level: str = "INFO"
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    @field_validator("treasury_address", "usdc_address")
    @classmethod
    def _canonical_address(cls, v: str) -> str:
        v = canonical_identity(v)
        if not v:
            raise ValueError("address must not be empty")
        return v

    @field_validator("default_event_salt")
    @classmethod
    def _bytes32_salt(cls, v: str) -> str:
        if not is_bytes32_hex(v):
            raise ValueError("salt must be a 0x-prefixed 32-byte hex string")
        return v

    @field_validator("initial_member_balance")
    @classmethod
    def _usdc_amount(cls, v: str) -> str:
        try:
            to_minor_units(v)
        except InvalidAmountError as e:
            raise ValueError(str(e)) from e
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {v!r}")
        return level


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("poolparty").setLevel(settings.log_level)
