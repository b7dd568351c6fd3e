"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production.

Settings are built once by the entry point and handed to every component;
nothing reads configuration from module-level state.
"""

from pathlib import Path
from typing import Dict, Optional

from eth_utils import is_address, to_checksum_address
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url


TASK_REGISTRY = "TaskRegistry"
FAMILY_REGISTRY = "FamilyRegistry"
REWARD_TOKEN = "RewardToken"


class Settings(BaseSettings):
    """Application settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "FamilyChain Reconciler"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/familychain.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Ledger
    ledger_rpc_url: str = "http://localhost:8545"
    chain_id: int = 1337
    task_registry_address: Optional[str] = None
    family_registry_address: Optional[str] = None
    reward_token_address: Optional[str] = None
    ledger_request_timeout: float = 30.0  # seconds

    # Ingestion
    genesis_block: int = 0
    confirmations: int = 0
    max_block_range: int = 2000
    batch_size: int = 500
    poll_interval: float = 2.0  # seconds
    reorg_window: int = 64  # blocks
    ingest_queue_size: int = 16
    rpc_retry_base_delay: float = 1.0
    rpc_retry_max_delay: float = 60.0
    enrich_task_details: bool = True

    # Settlement
    settlement_enabled: bool = True
    settlement_private_key: Optional[SecretStr] = None
    settlement_method: str = "mint"
    settlement_max_attempts: int = 5
    settlement_backoff_base: float = 2.0
    settlement_backoff_max: float = 60.0
    settlement_submit_timeout: float = 30.0
    settlement_receipt_timeout: float = 120.0
    ledger_decimals: int = 18
    token_decimals: int = 18

    # Lifecycle
    shutdown_grace_period: float = 30.0
    health_log_interval: float = 300.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    log_file: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("Log format must be 'json' or 'console'")
        return v

    @field_validator("settlement_method")
    @classmethod
    def validate_settlement_method(cls, v: str) -> str:
        if v not in ("mint", "transfer"):
            raise ValueError("Settlement method must be 'mint' or 'transfer'")
        return v

    @field_validator(
        "task_registry_address",
        "family_registry_address",
        "reward_token_address",
    )
    @classmethod
    def validate_contract_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not is_address(v):
            raise ValueError(f"Invalid contract address: {v}")
        return to_checksum_address(v)

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def async_database_url(self) -> str:
        """Database URL with the async driver selected."""
        url = self.database_url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url

    @property
    def sync_database_url(self) -> str:
        """Database URL for alembic, which runs with sync drivers."""
        url = self.database_url
        if url.startswith("postgresql+asyncpg://"):
            return url.replace("postgresql+asyncpg://", "postgresql://", 1)
        if url.startswith("sqlite+aiosqlite://"):
            return url.replace("sqlite+aiosqlite://", "sqlite://", 1)
        return url

    def database_engine_options(self) -> dict:
        """SQLAlchemy engine configuration for the configured backend."""
        if self.is_sqlite:
            return {}
        return {
            "pool_size": self.database_pool_size,
            "max_overflow": self.database_max_overflow,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }

    def sqlite_path(self) -> Optional[Path]:
        if not self.is_sqlite:
            return None
        database = make_url(self.async_database_url).database
        if not database or database == ":memory:":
            return None
        return Path(database)

    def contract_addresses(self) -> Dict[str, str]:
        """Configured contract addresses keyed by contract name."""
        addresses = {
            TASK_REGISTRY: self.task_registry_address,
            FAMILY_REGISTRY: self.family_registry_address,
            REWARD_TOKEN: self.reward_token_address,
        }
        return {name: address for name, address in addresses.items() if address}

    @property
    def settlement_configured(self) -> bool:
        return (
            self.settlement_enabled
            and self.settlement_private_key is not None
            and self.reward_token_address is not None
        )


def load_settings(**overrides) -> Settings:
    """Build settings from the environment, applying explicit overrides."""
    return Settings(**overrides)
