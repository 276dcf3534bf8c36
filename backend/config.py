from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "consensus.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"


class Settings(BaseSettings):
    # Upstream APIs
    HYPERLIQUID_INFO_URL: str = "https://api.hyperliquid.xyz/info"
    KUCOIN_API_URL: str = "https://api.kucoin.com"
    TELEGRAM_API_BASE: str = "https://api.telegram.org"

    # Notifications
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    # Upstream call policy
    API_TIMEOUT_SECONDS: float = 10.0
    MAX_RETRY_ATTEMPTS: int = 4
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 10.0
    RATE_LIMIT_MAX_WAITS: int = 5

    # Circuit breaker (per upstream)
    CB_FAILURE_THRESHOLD: int = 5
    CB_RESET_TIMEOUT_SECONDS: float = 60.0

    # Signal lifecycle
    SIGNAL_COOLDOWN_SECONDS: int = 300
    SIGNAL_RULE_VERSION: int = 1
    PERFORMANCE_TIMEFRAMES: list[str] = ["24h", "7d", "30d", "all_time"]

    # Worker cadence
    PERFORMANCE_REFRESH_INTERVAL_SECONDS: int = 3600
    QUEUE_POLL_INTERVAL_SECONDS: float = 2.0
    WALLET_POLL_DELAY_SECONDS: float = 0.1
    PAIR_SWEEP_DELAY_SECONDS: float = 0.2

    # Durable queue
    QUEUE_BATCH_SIZE: int = 25
    QUEUE_MAX_ATTEMPTS: int = 8
    QUEUE_RETRY_DELAY_SECONDS: float = 15.0
    QUEUE_VISIBILITY_TIMEOUT_SECONDS: float = 120.0

    # Retention
    INGESTED_EVENT_RETENTION_DAYS: int = 7
    PERFORMANCE_RETENTION_DAYS: int = 90

    # Price sources
    KUCOIN_PRICE_CACHE_SECONDS: float = 10.0

    # Admin API
    CORS_ORIGINS: list[str] = ["*"]

    @field_validator(
        "HYPERLIQUID_INFO_URL",
        "KUCOIN_API_URL",
        "TELEGRAM_API_BASE",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Resolve relative SQLite paths against the project root."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text or not text.startswith(_SQLITE_ASYNC_PREFIX):
            return text

        path_part = text[len(_SQLITE_ASYNC_PREFIX) :]
        if not path_part:
            return text
        if path_part in {":memory:", "/:memory:"}:
            return f"{_SQLITE_ASYNC_PREFIX}:memory:"
        absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
        absolute.parent.mkdir(parents=True, exist_ok=True)
        return f"{_SQLITE_ASYNC_PREFIX}{absolute}"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> str:
        return str(value or "INFO").strip().upper()

    class Config:
        # Load project-root .env first, then backend/.env as an override.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
