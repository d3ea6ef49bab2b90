"""
Shared configuration management for the IoT Data Marketplace gateway.
"""

from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


SUI_FULLNODE_URLS = {
    "mainnet": "https://fullnode.mainnet.sui.io:443",
    "testnet": "https://fullnode.testnet.sui.io:443",
    "devnet": "https://fullnode.devnet.sui.io:443",
    "localnet": "http://127.0.0.1:9000",
}


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local", validation_alias=AliasChoices("MARKETPLACE_ENV", "env"))
    log_level: str = Field(default="info")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001)
    cors_origins: str = Field(default="*")

    # Timeouts and retries for upstream reads
    upstream_timeout: float = Field(default=10.0)
    upstream_retries: int = Field(default=2)
    upstream_retry_delay: float = Field(default=0.6)

    # Background task shutdown
    background_drain_timeout: float = Field(default=5.0)

    def cors_origin_list(self) -> List[str]:
        """Split the comma separated CORS origins."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


class MarketplaceConfig(BaseConfig):
    """Marketplace gateway configuration."""

    service_name: str = "marketplace"

    # Ledger (Sui)
    sui_network: str = Field(default="testnet")
    sui_rpc_url: Optional[str] = Field(default=None)
    sui_package_id: str = Field(default="")
    sui_registry_id: str = Field(default="")
    sui_treasury_id: str = Field(default="")
    sui_private_key: str = Field(default="")
    sui_gas_budget: int = Field(default=100_000_000)

    # Blob store (Walrus)
    walrus_publisher_url: str = Field(default="https://publisher.walrus-testnet.walrus.space")
    walrus_aggregator_url: str = Field(default="https://aggregator.walrus-testnet.walrus.space")
    walrus_epochs: int = Field(default=5)

    # Relational store
    database_url: str = Field(default="")
    direct_database_url: str = Field(default="")
    database_strategy: str = Field(default="auto")

    # Blob cache
    cache_backend: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")
    cache_ttl: int = Field(default=300)

    # Live updates
    ws_heartbeat_interval: float = Field(default=30.0)
    ws_max_connections: int = Field(default=1000)

    # Data retrieval
    history_max_limit: int = Field(default=1000)

    def ledger_rpc_url(self) -> str:
        """Resolve the ledger JSON-RPC endpoint from the network name."""
        if self.sui_rpc_url:
            return self.sui_rpc_url
        return SUI_FULLNODE_URLS.get(self.sui_network, SUI_FULLNODE_URLS["testnet"])


def get_config(**overrides) -> MarketplaceConfig:
    """Get configuration for the marketplace gateway."""
    return MarketplaceConfig(**overrides)
