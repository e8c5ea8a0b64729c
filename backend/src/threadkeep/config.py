"""Configuration management."""

from pathlib import Path
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Storage
    storage_backend: Literal["memory", "postgres"] = "memory"

    # Database (PostgreSQL) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "threadkeep"
    db_user: str = "threadkeep"
    db_password: str = ""

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Encryption (base64-encoded 32-byte AES key; generated into key_file if unset)
    encryption_key: str = ""
    key_file: Path = Path.home() / ".threadkeep" / "chat.key"

    # Legacy flat-key storage (JSON file) read by the one-shot migration
    legacy_storage_path: Path = Path.home() / ".threadkeep" / "legacy.json"

    # Model provider
    provider_base_url: str = "https://openrouter.ai/api/v1"
    provider_api_key: str = ""
    default_provider: str = "openrouter"
    default_model: str = ""

    # Context window policy
    live_window_size: int = 12
    summarized_live_window_size: int = 8
    summarization_skip_tokens: int = 2000
    summary_min_length: int = 80
    summary_max_length: int = 200
    summary_chars_per_message: int = 20

    model_config = SettingsConfigDict(
        env_prefix="THREADKEEP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
