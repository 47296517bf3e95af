"""Application configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # API
    app_name: str = "Guidance Engine"
    debug: bool = False
    cors_origins: str = "*"

    # Storage
    database_url: str | None = None
    data_dir: str = "data"

    # Definitions seeded and published at startup when their script is new
    definitions_dir: str | None = None

    # Logging
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
