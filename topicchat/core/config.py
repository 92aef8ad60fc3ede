# topicchat/core/config.py
import logging
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """True while pytest is executing a test (it exports PYTEST_CURRENT_TEST)."""
    return os.getenv("PYTEST_CURRENT_TEST") is not None


_PROJECT_ROOT = Path(__file__).resolve().parents[2]

logger = logging.getLogger(__name__)

# CI provides its environment explicitly; .env is for local runs.
if not os.getenv("CI"):
    env_path = _PROJECT_ROOT / ".env"
    logger.debug(f"[CONFIG] Looking for .env at: {env_path} (exists={env_path.exists()})")
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development",
        description="Deployment environment name",
    )

    # Storage
    database_url: str = Field(
        default="sqlite:///./topicchat.db",
        description="SQLAlchemy URL for the chat database",
    )
    redis_url: str | None = Field(
        default=None,
        description="Redis URL used by the realtime broadcaster (memory:// is accepted for local runs)",
    )
    local_storage_path: str = Field(
        default=str(_PROJECT_ROOT / ".topicchat" / "local_state.json"),
        description="JSON file used to persist per-conversation last-read timestamps",
    )

    # Encryption
    message_encryption_key: str = Field(
        default="",
        description="urlsafe base64 encoded 32-byte key for message bodies (empty disables encryption)",
    )
    legacy_encryption_secret: str = Field(
        default="TokyoPark-Dev-Fallback-Key-2024",
        description="Shared secret of the legacy ENC_/ENC2_ message formats (decrypt-only)",
    )
    encryption_upgrade_delay_ms: int = Field(
        default=100,
        ge=0,
        description="Delay before a deprecated ciphertext is re-encrypted in the background",
    )

    # Realtime subscription pool
    max_active_connections: int = Field(
        default=5,
        ge=1,
        description="Maximum number of concurrently open conversation subscriptions",
    )
    reconnect_base_delay_ms: int = Field(default=3000, ge=0, description="First reconnect delay")
    reconnect_max_delay_ms: int = Field(default=15000, ge=0, description="Reconnect delay ceiling")
    max_reconnect_attempts: int = Field(
        default=3,
        ge=0,
        description="Reconnect attempts before a subscription is dropped from the active set",
    )
    eviction_delay_ms: int = Field(
        default=100,
        ge=0,
        description="Pause between evicting a low-priority subscription and opening its replacement",
    )
    health_check_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Interval of the periodic subscription probe",
    )
    max_idle_time_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Idle time after which non-current subscriptions may be released",
    )

    # Chat state
    typing_ttl_ms: int = Field(default=5000, ge=0, description="Typing indicator lifetime")
    presence_ttl_ms: int = Field(default=30000, ge=0, description="Presence entry lifetime")
    mark_read_debounce_ms: int = Field(
        default=1000,
        ge=0,
        description="Window in which repeated mark-as-read calls are ignored",
    )
    notification_sound_enabled: bool = Field(
        default=True,
        description="Play a notification sound for messages outside the open conversation",
    )
    message_max_length: int = Field(default=1000, ge=1, description="Maximum message body length")
    messages_page_size: int = Field(default=50, ge=1, description="Default page size for history")

    # Retry policies
    network_retry_max_retries: int = Field(default=2, ge=0)
    network_retry_initial_delay_ms: int = Field(default=1000, ge=0)
    network_retry_max_delay_ms: int = Field(default=5000, ge=0)
    database_retry_max_retries: int = Field(default=2, ge=0)
    database_retry_initial_delay_ms: int = Field(default=500, ge=0)
    database_retry_max_delay_ms: int = Field(default=2000, ge=0)

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("message_encryption_key", "legacy_encryption_secret", mode="before")
    @classmethod
    def _strip_secret(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().lower()
            aliases = {"dev": "development", "local": "development", "prod": "production"}
            return aliases.get(normalized, normalized)
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


settings = Settings()
logger.info(
    "[CONFIG] Realtime configuration: max_active_connections=%s reconnect=%s..%sms attempts=%s",
    settings.max_active_connections,
    settings.reconnect_base_delay_ms,
    settings.reconnect_max_delay_ms,
    settings.max_reconnect_attempts,
)
