"""Configuration management using Pydantic settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # MongoDB Atlas
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "callintel"

    # Voyage AI (embeddings)
    voyage_api_key: str = ""
    embedding_model: str = "voyage-2"

    # Voice provider webhooks (shared HMAC secret)
    vapi_webhook_secret: str = ""

    # Knowledge resolution
    similarity_threshold: float = 0.7
    similarity_top_k: int = 3
    external_timeout_seconds: float = 5.0

    # Server
    server_host: str = "0.0.0.0"
    server_port: int = 8000
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
