"""LeadZap – Application Configuration.

Pydantic Settings, loaded from a .env file or environment variables.
Per-company WhatsApp credentials live in the database; the values here are
process-wide defaults and infrastructure endpoints.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000
    cors_allowed_origins: str = "http://localhost:5173"

    # --- Database / Redis ---
    database_url: str = ""
    redis_url: str = "redis://127.0.0.1:6379/0"

    # --- Auth ---
    auth_secret: str = "change-me-long-random-secret"
    auth_token_ttl_hours: int = 12

    # --- WhatsApp Cloud API (Meta) ---
    meta_graph_api_version: str = "v18.0"
    meta_graph_base_url: str = "https://graph.facebook.com"
    whatsapp_cloud_access_token: str = ""  # global fallback when a company has none stored
    provider_timeout_seconds: float = 30.0

    # --- WhatsApp Web bridge (Baileys) ---
    whatsapp_server_url: str = ""
    whatsapp_server_secret: str = ""

    # --- Object storage ---
    storage_url: str = ""  # e.g. https://<project>.supabase.co
    storage_service_key: str = ""
    storage_bucket: str = "whatsapp-media"

    # --- Audio pipeline ---
    relay_url: str = "http://localhost:8000"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    transcode_profile: str = "voice"  # voice (16kHz/24k) | baseline (48kHz/64k)
    transcode_timeout_seconds: float = 120.0
    background_drain_timeout_seconds: float = 30.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing"

    @property
    def graph_api_base(self) -> str:
        return f"{self.meta_graph_base_url.rstrip('/')}/{self.meta_graph_api_version}"


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
