import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/review_responder"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""  # External cron trigger for POST /api/cron/poll
    encryption_key: str = ""  # Fernet key for stored credential blobs

    # Telegram (owner notifications)
    telegram_bot_token: str = ""

    # Polling
    poll_interval_minutes: int = 15
    poll_on_startup: bool = True
    resource_poll_timeout_seconds: float = 120.0
    first_poll_max_pages: int = 3  # Safety cap when a resource has never been polled

    # Outbound reply throttling, per vendor account
    post_rate_limit: int = 10
    post_rate_window_seconds: int = 60

    # AI drafting: "openai" (any OpenAI-compatible endpoint, e.g. OpenRouter) or "anthropic"
    ai_provider: str = "openai"
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_model: str = "gpt-4o"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    system_prompt: str = (
        "You are a friendly, professional app developer replying to a customer review. "
        "Thank the reviewer, address their specific points, and keep the reply under ${maxLength} characters. "
        "Never promise features or dates. Do not use markdown."
    )

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Refuse to start in production without the secrets that protect the API and stored credentials."""
        if not self.is_production:
            return self
        missing = [name for name in ("api_key", "encryption_key") if not getattr(self, name)]
        if missing:
            raise ValueError(
                f"{', '.join(n.upper() for n in missing)} must be set in production. "
                "API_KEY: python -c \"import secrets; print(secrets.token_hex(32))\"; "
                "ENCRYPTION_KEY: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        if "localhost" in self.database_url:
            logger.warning("DATABASE_URL appears to point at localhost in production.")
        if not self.telegram_enabled:
            logger.warning("TELEGRAM_BOT_TOKEN not set: owners will not be told about new reviews or revoked credentials.")
        return self

    @model_validator(mode="after")
    def _validate_polling(self) -> "Settings":
        if self.poll_interval_minutes < 1:
            raise ValueError("POLL_INTERVAL_MINUTES must be at least 1.")
        if self.resource_poll_timeout_seconds <= 0:
            raise ValueError("RESOURCE_POLL_TIMEOUT_SECONDS must be positive.")
        if self.ai_provider not in ("openai", "anthropic"):
            raise ValueError(f"AI_PROVIDER must be 'openai' or 'anthropic', got {self.ai_provider!r}.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token)


@lru_cache
def get_settings() -> Settings:
    return Settings()
