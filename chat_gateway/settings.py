from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./chat_gateway.db"
    database_pool_size: int = 20
    provider_config_path: str = "providers.yaml"
    upstream_timeout_seconds: float = 600.0
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float | None = None
    upstream_write_timeout_seconds: float | None = None
    upstream_pool_timeout_seconds: float | None = None
    stream_buffer_chunks: int = 16
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    return Settings()
