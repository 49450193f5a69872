"""Application configuration and environment settings"""
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kubi_pipeline.errors import ConfigurationError


class NetworkSettings(BaseModel):
    """Watch settings for a single network"""
    chain_id: int = Field(..., description="EVM chain id")
    name: str = Field(..., description="Human readable network name")
    contract_address: str = Field(..., description="Donation contract to watch")
    rpc_urls: List[str] = Field(..., description="HTTP endpoints, primary first")
    ws_url: Optional[str] = Field(None, description="Websocket endpoint for eth_subscribe")

    @field_validator('contract_address')
    @classmethod
    def lower_address(cls, v: str) -> str:
        return v.lower()

    @field_validator('rpc_urls')
    @classmethod
    def require_endpoint(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one RPC URL is required")
        return v

    @property
    def websocket_url(self) -> Optional[str]:
        """Explicit websocket URL, or the primary HTTP URL with a ws scheme"""
        if self.ws_url:
            return self.ws_url
        primary = self.rpc_urls[0]
        if primary.startswith("https://"):
            return "wss://" + primary[len("https://"):]
        if primary.startswith("http://"):
            return "ws://" + primary[len("http://"):]
        return None


DEFAULT_NETWORKS = [
    NetworkSettings(
        chain_id=84532,
        name="Base Sepolia",
        contract_address="0x4AB4a2290cB651065D346299425b2D45eEf9D75D",
        rpc_urls=[
            "https://sepolia.base.org",
            "https://base-sepolia.drpc.org",
            "https://base-sepolia-rpc.publicnode.com",
            "https://base-sepolia.blockpi.network/v1/rpc/public",
        ],
        ws_url="wss://base-sepolia-rpc.publicnode.com",
    ),
    NetworkSettings(
        chain_id=5003,
        name="Mantle Sepolia",
        contract_address="0xDb26Ba8581979dc4E11218735F821Af5171fb737",
        rpc_urls=[
            "https://rpc.sepolia.mantle.xyz",
            "https://rpc.ankr.com/mantle_sepolia",
            "https://mantle-sepolia.drpc.org",
        ],
        ws_url="wss://rpc.sepolia.mantle.xyz",
    ),
]

REPLAY_POLICIES = ("ledger", "last_blocks")
MINUTES_PER_DAY = 24 * 60


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    # Database
    DATABASE_URL: Optional[str] = Field(None, description="Full SQLAlchemy URL, overrides DB_* parts")
    DB_HOST: str = Field("localhost", description="Database host")
    DB_PORT: str = Field("5432", description="Database port")
    DB_NAME: str = Field("kubi", description="Database name")
    DB_USER: str = Field("kubi", description="Database user")
    DB_PASSWORD: Optional[str] = Field(None, description="Database password")
    DB_SSL_MODE: str = Field("prefer", description="libpq sslmode")

    # Chain watching
    NETWORKS: List[NetworkSettings] = Field(default_factory=lambda: list(DEFAULT_NETWORKS))
    RPC_TIMEOUT: float = Field(30.0, description="Seconds per outbound RPC call")
    RPC_MAX_RETRIES: int = Field(3, description="Attempts per endpoint before failing over")
    WATCHER_POLL_INTERVAL: float = Field(1.0, description="Seconds between eth_getLogs polls")
    WATCHER_BLOCK_CHUNK: int = Field(2000, description="Max blocks per eth_getLogs request")
    WATCHER_REPLAY_POLICY: str = Field("ledger", description="Where to resume after an outage")
    WATCHER_REPLAY_BLOCKS: int = Field(50, description="Safety margin replayed on resume")
    WATCHER_MAX_SUBSCRIBE_FAILURES: int = Field(5, description="Failed subscribes before polling")
    WATCHER_PUSH_RETRY_SECONDS: float = Field(300.0, description="Polling time before retrying push")
    WS_MESSAGE_TIMEOUT: float = Field(60.0, description="Idle seconds before a keep-alive ping")

    # Notification queue / overlay
    QUEUE_POLL_INTERVAL: float = Field(1.0, description="Seconds between queue polls")
    QUEUE_BATCH_SIZE: int = Field(10, description="Work items drained per poll")
    OVERLAY_HOST: str = Field("0.0.0.0", description="Push server bind address")
    OVERLAY_PORT: int = Field(3001, description="Push server port")
    OVERLAY_ALERT_SOUND_URL: Optional[str] = Field(None, description="Alert sound sent with every overlay")

    # Rebase scheduler
    RPC_URL: Optional[str] = Field(None, description="Node used for rebase transactions")
    PRIVATE_KEY: Optional[str] = Field(None, description="Hex private key of the token owner")
    CHAIN_ID: Optional[int] = Field(None, description="Chain id of yield providers to rebase")
    REBASE_INTERVAL_MINUTES: int = Field(30, description="Minutes between rebase runs")
    GAS_LIMIT: int = Field(300000, description="Gas limit for rebase transactions")
    GAS_PRICE_GWEI: Optional[str] = Field(None, description="Fixed gas price, node suggestion if unset")
    REBASE_RECEIPT_TIMEOUT: float = Field(120.0, description="Seconds to wait for a rebase receipt")

    LOG_LEVEL: str = Field("INFO", description="Root log level")

    @field_validator('WATCHER_REPLAY_POLICY')
    @classmethod
    def known_policy(cls, v: str) -> str:
        if v not in REPLAY_POLICIES:
            raise ValueError(f"WATCHER_REPLAY_POLICY must be one of {REPLAY_POLICIES}")
        return v

    @field_validator('REBASE_INTERVAL_MINUTES')
    @classmethod
    def divides_day(cls, v: int) -> int:
        if v <= 0 or MINUTES_PER_DAY % v != 0:
            raise ValueError("REBASE_INTERVAL_MINUTES must be a positive divisor of 1440")
        return v

    @property
    def rebases_per_day(self) -> int:
        return MINUTES_PER_DAY // self.REBASE_INTERVAL_MINUTES

    def require_rebase(self) -> None:
        """Fail fast when the scheduler cannot sign transactions"""
        missing = [
            name for name in ('RPC_URL', 'PRIVATE_KEY', 'CHAIN_ID')
            if getattr(self, name) in (None, '')
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required settings for rebase scheduler: {', '.join(missing)}"
            )

    def safe_dump(self) -> dict:
        """Settings without secrets, for startup logging"""
        return self.model_dump(mode='json', exclude={'PRIVATE_KEY', 'DB_PASSWORD', 'DATABASE_URL'})

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )


def get_settings() -> Settings:
    """Load settings from the current environment"""
    return Settings()
