"""Configuration management via environment variables.

Reads from .env file (via pydantic-settings) with sensible defaults.
All values can be overridden via environment variables prefixed with
``TRENDMATE_``.

Required for live calls:
    TRENDMATE_WIDGET_KEY  — widget key sent on every workflow request
    TRENDMATE_APP_ID      — application id of the workflow tenant
    TRENDMATE_AGENT_ID    — agent id of the workflow tenant

Optional:
    TRENDMATE_REQUEST_TIMEOUT — per-attempt deadline in seconds
    TRENDMATE_MAX_ATTEMPTS    — attempt budget for overloaded responses
    TRENDMATE_LOG_LEVEL       — logging level for the tool server
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Workflow endpoint and identification headers
    api_url: str = "https://api-uptiq-dev.ciondigital.com/workflow-defs/run-sync"
    app_id: str = ""
    widget_key: str = ""
    agent_id: str = ""

    # Integration ids (opaque routing keys on the workflow side)
    search_integration: str = "workflow-for-fetch-real-time-data-copy-1741346734879"
    select_integration: str = "select-company-9826"
    comparison_integration: str = "company-report-summarizer-0555"
    alerts_integration: str = "fetchalerts-from-table-4625"
    create_alert_integration: str = "create-alert-9841"
    delete_alert_integration: str = "delete-alert-8754"
    toggle_alert_integration: str = "toggle-alert-3421"
    daily_notification_integration: str = "fetchdailynotification-5882"

    # Transport / retry policy (seconds)
    request_timeout: float = 240.0
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 10.0
    overloaded_statuses: list[int] = [429, 503]

    # Search terms shorter than this never reach the endpoint
    min_search_length: int = 2

    # Staleness windows (seconds) that trigger a background refresh
    search_stale_after: float = 60.0
    alerts_stale_after: float = 300.0

    log_level: str = "INFO"

    # Strip whitespace and quotes: values pasted into .env often carry both
    @field_validator("app_id", "widget_key", "agent_id", "api_url", mode="before")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip().strip('"').strip("'").strip()
        return v

    @field_validator("max_attempts")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_prefix="TRENDMATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


_config: Settings | None = None


def get_config() -> Settings:
    """Get or create the shared Settings singleton."""
    global _config
    if _config is None:
        _config = Settings()
    return _config
