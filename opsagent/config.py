from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Model
    anthropic_api_key: str | None = None
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    llm_base_url: str = "https://api.anthropic.com/v1"
    llm_timeout_seconds: float = 60.0

    # Tool loop
    max_tool_iterations: int = 10
    enable_approvals: bool = True
    enable_learning: bool = True

    # Approvals
    approval_ttl_hours: int = 24
    request_approval_threshold: float = 0.7
    spending_threshold: float = 50.0
    vip_importance_threshold: int = 8

    # Rate limiting (model round-trips per user per window)
    rate_limit_max_calls: int = 100
    rate_limit_window_seconds: int = 3600

    # Context
    default_timezone: str = "Europe/Amsterdam"
    recent_actions_limit: int = 20

    # Infrastructure
    database_url: str = "sqlite:///./opsagent.sqlite3"
    notification_webhook_url: str | None = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="OPSAGENT_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
