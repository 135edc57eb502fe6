"""Application settings loaded from environment variables / .env file."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str
    discord_bot_token: str = ""
    roblox_api_key: str = ""
    roblox_default_group_id: str = ""
    roblox_oauth_client_id: str = ""
    roblox_oauth_client_secret: str = ""
    oauth_redirect_uri: str = "http://localhost:8100/oauth/callback"
    api_secret_key: str = ""
    verification_timeout_minutes: int = 10
    oauth_state_timeout_minutes: int = 10
    sync_cooldown_seconds: int = 300
    batch_concurrency: int = 1
    auto_sync_interval_hours: int = 6
    api_rate_limit_per_minute: int = 60
    app_env: str = "development"
    app_port: int = 8100
    app_host: str = "0.0.0.0"
    log_level: str = "INFO"

    @property
    def oauth_enabled(self) -> bool:
        return bool(self.roblox_oauth_client_id and self.roblox_oauth_client_secret)


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
