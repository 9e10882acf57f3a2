from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FILE_NAME = "payoutbot.log"


class Settings(BaseSettings):
    """Centralised application settings, sourced from environment variables or .env."""

    app_name: str = Field(default="PayoutBot")
    environment: str = Field(default="development", alias="ENVIRONMENT")

    telegram_bot_token: str = Field(alias="TELEGRAM_BOT_TOKEN", min_length=1)
    owner_telegram_id: int = Field(
        alias="OWNER_TELEGRAM_ID",
        description="The only Telegram user allowed to operate the bot.",
    )
    telegram_webhook_secret: Optional[str] = Field(
        default=None, alias="TELEGRAM_WEBHOOK_SECRET"
    )
    backend_base_url: Optional[AnyHttpUrl] = Field(
        default=None,
        alias="BACKEND_BASE_URL",
        description="Public URL where FastAPI is reachable. Without it the bot falls back to polling.",
    )
    telegram_register_webhook_on_start: bool = Field(
        default=False, alias="TELEGRAM_REGISTER_WEBHOOK_ON_START"
    )

    provider_api_key: str = Field(alias="ATLANTIC_API_KEY", min_length=1)
    provider_base_url: AnyHttpUrl = Field(
        default="https://atlantich2h.com", alias="ATLANTIC_BASE_URL"
    )
    provider_max_retries: int = Field(default=3, alias="MAX_RETRY_ATTEMPTS", ge=0, le=10)
    provider_timeout_seconds: float = Field(
        default=30.0, alias="REQUEST_TIMEOUT_SECONDS", gt=0
    )
    provider_backoff_base_seconds: float = Field(
        default=1.0, alias="RETRY_BACKOFF_BASE_SECONDS", ge=0
    )
    provider_backoff_cap_seconds: float = Field(
        default=10.0, alias="RETRY_BACKOFF_CAP_SECONDS", ge=0
    )

    min_deposit: int = Field(default=1000, alias="MIN_DEPOSIT", gt=0)
    max_deposit: int = Field(default=10_000_000, alias="MAX_DEPOSIT", gt=0)
    min_transfer: int = Field(default=1000, alias="MIN_TRANSFER", gt=0)
    max_transfer: int = Field(default=10_000_000, alias="MAX_TRANSFER", gt=0)
    fee_percentage: float = Field(
        default=0.1,
        alias="DEFAULT_FEE_PERCENTAGE",
        description="Deposit fee as a fraction of the amount (0.1 means 10%).",
        ge=0,
        le=1,
    )

    journal_path: Path = Field(default=Path("data/database.json"), alias="JOURNAL_PATH")
    backup_dir: Path = Field(default=Path("data/backups"), alias="BACKUP_DIR")
    backup_retention: int = Field(default=7, alias="BACKUP_RETENTION", ge=1)

    wizard_session_ttl_seconds: int = Field(
        default=30 * 60, alias="WIZARD_SESSION_TTL_SECONDS", ge=60
    )
    wizard_sweep_interval_seconds: int = Field(
        default=5 * 60, alias="WIZARD_SWEEP_INTERVAL_SECONDS", ge=10
    )
    wizard_invalid_input_policy: Literal["abort", "reprompt"] = Field(
        default="abort",
        alias="WIZARD_INVALID_INPUT_POLICY",
        description="What happens to a wizard session when a reply fails validation.",
    )
    health_check_interval_seconds: int = Field(
        default=10 * 60, alias="HEALTH_CHECK_INTERVAL_SECONDS", ge=30
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: Optional[Path] = Field(
        default=None,
        alias="LOG_DIR",
        description="When set, logs are also written to a rotating file in this directory.",
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached accessor so imports share a single settings instance."""
    return Settings()  # type: ignore[call-arg]
