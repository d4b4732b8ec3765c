"""Application configuration using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict

from cvchat.models.quota import QuotaLimits


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "CV Chat"
    environment: str = "development"
    log_level: str = "debug"
    debug: bool = True

    # Google AI
    google_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"

    # Free-tier chat quota (read once at startup)
    free_daily_tokens: int = 5000
    free_daily_messages: int = 20
    free_session_timeout_seconds: float = 3600.0
    free_max_sessions: int = 100
    accounting_timezone: str = "Europe/London"

    # CORS
    frontend_url: str = "http://localhost:3000"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def quota_limits(self) -> QuotaLimits:
        return QuotaLimits(
            daily_tokens=self.free_daily_tokens,
            daily_messages=self.free_daily_messages,
            session_timeout_seconds=self.free_session_timeout_seconds,
            max_sessions=self.free_max_sessions,
        )


settings = Settings()


def get_settings() -> Settings:
    """FastAPI dependency for injecting settings."""
    return settings
