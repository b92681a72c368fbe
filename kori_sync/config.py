"""
Kori sync configuration.

Environment-based settings for the sync service, its integrations and the
client adapter. Variables use the ``KORI_`` prefix; the integration keys also
accept the unprefixed names the other Kori components use.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import DEFAULT_PET_ID


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 4000
    ws_url: Optional[str] = None  # explicit endpoint for the client adapter

    # Storage
    store_backend: Literal["sqlite", "memory"] = "sqlite"
    database_path: str = "data/data.sqlite"

    # Realtime
    default_pet_id: str = DEFAULT_PET_ID
    poll_interval: float = 1.5  # seconds between poller ticks; 0 disables
    reconnect_delay: float = 2.0  # seconds the client waits before reconnecting

    # Logging
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    # Integrations
    integration_timeout: float = 10.0  # seconds, applied to every outbound call

    gemini_api_key: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "KORI_GEMINI_API_KEY", "GOOGLE_API_KEY", "GEMINI_API_KEY"
        ),
    )
    gemini_model: str = Field(
        "gemini-2.0-flash",
        validation_alias=AliasChoices("KORI_GEMINI_MODEL", "GEMINI_MODEL"),
    )

    spotify_client_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("KORI_SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_ID"),
    )
    spotify_client_secret: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "KORI_SPOTIFY_CLIENT_SECRET", "SPOTIFY_CLIENT_SECRET"
        ),
    )
    # Used when no refresh token has been stored yet
    spotify_refresh_token: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "KORI_SPOTIFY_REFRESH_TOKEN", "SPOTIFY_REFRESH_TOKEN"
        ),
    )

    hf_token: Optional[str] = Field(
        None, validation_alias=AliasChoices("KORI_HF_TOKEN", "HF_TOKEN")
    )
    hf_inference_url: str = Field(
        "https://router.huggingface.co/hf-inference",
        validation_alias=AliasChoices("KORI_HF_INFERENCE_URL", "HF_INFERENCE_URL"),
    )
    hf_model_id: str = "prithivMLmods/Facial-Emotion-Detection-SigLIP2"

    model_config = SettingsConfigDict(
        env_prefix="KORI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def spotify_configured(self) -> bool:
        return bool(self.spotify_client_id and self.spotify_client_secret)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
