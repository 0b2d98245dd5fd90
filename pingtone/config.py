"""Application configuration."""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite:///./data/pingtone.db"

    # Encryption of stored UCM credentials (validated at startup by EncryptionService)
    encryption_key: Optional[str] = None

    # AXL
    axl_port: int = 8443
    axl_timeout_seconds: float = 30.0
    axl_verify_tls: bool = False
    axl_page_size: int = 1000

    # Sync orchestration
    sync_concurrency: int = 6
    sync_item_concurrency: int = 4
    sync_unit_max_attempts: int = 3
    sync_retry_wait_min: float = 1.0
    sync_retry_wait_max: float = 10.0
    sync_upsert_chunk_size: int = 1000
    sync_poll_interval_seconds: float = 5.0

    # Application
    log_level: str = "INFO"
    app_host: str = "0.0.0.0"
    app_port: int = 8000


settings = Settings()
