from functools import lru_cache
from typing import Any
from urllib.parse import urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    return urlunparse(parsed._replace(scheme=scheme))


def _is_hex_address(value: str) -> bool:
    if len(value) != 42 or not value.startswith("0x"):
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable SQL echo and FastAPI debug mode")
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/market_indexer.db",
        description="SQLAlchemy compatible database URL",
    )
    log_level: str = Field(default="INFO", description="Minimum loguru level for the stderr sink")
    log_dir: str | None = Field(
        default=None,
        description="Directory for daily rotated log files (unset to log to stderr only)",
    )
    rpc_url: str = Field(
        default="https://sepolia.base.org",
        description="JSON-RPC endpoint of the chain node",
    )
    chain_id: int = Field(default=84532, description="Expected chain id of the RPC endpoint")
    start_block: int = Field(
        default=0,
        description="Genesis block used when no checkpoint has been recorded yet",
        ge=0,
    )
    market_factory_address: str = Field(
        default="0x0000000000000000000000000000000000000000",
        description="Address of the market factory contract emitting MarketCreated",
    )
    factory_contract_name: str = Field(
        default="MarketFactory",
        description="Checkpoint key for the watched contract set",
    )
    sync_batch_size: int = Field(
        default=5000,
        description="Number of blocks fetched and committed per historical batch",
        ge=1,
    )
    sync_confirmations: int = Field(
        default=0,
        description="Blocks behind the chain head that are not yet treated as confirmed",
        ge=0,
    )
    sync_batch_retry_attempts: int = Field(
        default=3,
        description="Attempts per historical batch when transient failures occur",
        ge=1,
    )
    rpc_timeout_seconds: float = Field(default=30.0, description="Per-request RPC timeout", gt=0)
    rpc_retry_attempts: int = Field(
        default=3,
        description="Attempts per RPC call before a transient failure is surfaced",
        ge=1,
    )
    rpc_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [1.0, 2.0, 4.0],
        description="Comma-separated list or array of backoff delays (seconds) between retries",
    )
    rpc_max_concurrent_requests: int = Field(
        default=8,
        description="Upper bound on concurrently issued log queries",
        ge=1,
    )
    live_poll_interval_seconds: float = Field(
        default=4.0,
        description="Delay between head polls of the live subscription",
        gt=0,
    )
    live_max_window_blocks: int = Field(
        default=500,
        description="Largest block window delivered by one live subscription poll",
        ge=1,
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("market_factory_address")
    @classmethod
    def _validate_factory_address(cls, value: str) -> str:
        candidate = value.strip()
        if not _is_hex_address(candidate):
            raise ValueError("MARKET_FACTORY_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return candidate.lower()

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported LOG_LEVEL: {value}")
        return level

    @field_validator("rpc_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [1.0, 2.0, 4.0]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            if not tokens:
                raise ValueError("RPC_RETRY_BACKOFF_SECONDS must contain at least one value")
            value = tokens
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("RPC_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay <= 0:
                    raise ValueError("RPC_RETRY_BACKOFF_SECONDS entries must be positive")
                backoff.append(delay)
            if not backoff:
                raise ValueError("RPC_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "RPC_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def retry_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.rpc_retry_backoff_seconds)
        if not sequence:
            return (1.0,)
        return sequence


def backoff_delay(schedule: tuple[float, ...], attempt: int) -> float:
    """Return the delay before retry ``attempt`` (1-based), repeating the last step."""

    if not schedule:
        return 0.0
    index = min(max(attempt - 1, 0), len(schedule) - 1)
    return schedule[index]


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
