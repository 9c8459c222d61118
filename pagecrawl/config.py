"""Application configuration using Pydantic BaseSettings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pagecrawl.constants import (
    BROWSER_MAX_SESSIONS,
    DEFAULT_LINK_SELECTOR,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_CRAWLING_DEPTH,
    DEFAULT_MAX_PAGE_RETRIES,
    DEFAULT_MAX_PAGES_PER_RUN,
    DEFAULT_MAX_RESULT_RECORDS,
    DEFAULT_PAGE_FUNCTION_TIMEOUT_SECONDS,
    DEFAULT_PAGE_LOAD_TIMEOUT_SECONDS,
    JQUERY_INJECTION_TIMEOUT_SECONDS,
    JQUERY_SCRIPT_URL,
    MAX_CRAWL_STARTS_PER_WINDOW,
    MAX_RUN_LOG_EVENTS,
    RATE_LIMIT_WINDOW_SECONDS,
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
    SESSION_ACQUIRE_TIMEOUT_SECONDS,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        # Load .env first, then .env.local (for local/test overrides)
        # Later files override earlier ones, so .env.local takes precedence
        env_file=[".env", ".env.local"],
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: Literal["local", "railway", "prod"] = Field(
        default="local", description="Current environment"
    )
    log_level: str = Field(default="INFO", description="Python logging level")

    # Sentry Configuration
    sentry_dsn: str | None = Field(
        default=None, description="Sentry DSN for error tracking (optional)"
    )
    sentry_traces_sample_rate: float = Field(
        default=1.0, description="Sentry traces sample rate (0.0 to 1.0)"
    )

    # Logfire Configuration
    logfire_token: str | None = Field(
        default=None, description="Pydantic Logfire token for observability"
    )

    # ==========================================================================
    # Crawl Request Defaults
    # ==========================================================================
    # Applied to fields a crawl request leaves out.

    default_link_selector: str = Field(
        default=DEFAULT_LINK_SELECTOR,
        description="CSS selector used to discover links",
    )
    default_max_concurrency: int = Field(
        default=DEFAULT_MAX_CONCURRENCY,
        ge=1,
        description="Pages processed concurrently per run",
    )
    default_max_pages_per_run: int | None = Field(
        default=DEFAULT_MAX_PAGES_PER_RUN,
        description="Max pages visited per run (None for unlimited)",
    )
    default_max_result_records: int | None = Field(
        default=DEFAULT_MAX_RESULT_RECORDS,
        description="Max records collected per run (None for unlimited)",
    )
    default_max_crawling_depth: int | None = Field(
        default=DEFAULT_MAX_CRAWLING_DEPTH,
        description="Max link depth from the seeds (None for unlimited)",
    )
    default_max_page_retries: int = Field(
        default=DEFAULT_MAX_PAGE_RETRIES,
        ge=0,
        description="Retries after the first failed attempt of a page",
    )

    # ==========================================================================
    # Timeout Configuration
    # ==========================================================================

    default_page_load_timeout_seconds: float = Field(
        default=DEFAULT_PAGE_LOAD_TIMEOUT_SECONDS,
        description="Navigation timeout per page (seconds)",
    )
    default_page_function_timeout_seconds: float = Field(
        default=DEFAULT_PAGE_FUNCTION_TIMEOUT_SECONDS,
        description="Page function timeout (seconds)",
    )
    jquery_injection_timeout_seconds: float = Field(
        default=JQUERY_INJECTION_TIMEOUT_SECONDS,
        description="Timeout for injecting the jQuery compatibility layer (seconds)",
    )
    session_acquire_timeout_seconds: float = Field(
        default=SESSION_ACQUIRE_TIMEOUT_SECONDS,
        description="Max wait for a free browser session (seconds)",
    )

    # ==========================================================================
    # Retry Policy
    # ==========================================================================

    retry_base_delay_seconds: float = Field(
        default=RETRY_BASE_DELAY_SECONDS,
        description="Delay before the first retry (seconds)",
    )
    retry_backoff_multiplier: float = Field(
        default=RETRY_BACKOFF_MULTIPLIER,
        description="Exponential growth factor per retry",
    )
    retry_max_delay_seconds: float = Field(
        default=RETRY_MAX_DELAY_SECONDS,
        description="Ceiling on a single retry delay (seconds)",
    )

    # ==========================================================================
    # Browser Configuration
    # ==========================================================================

    browser_max_sessions: int = Field(
        default=BROWSER_MAX_SESSIONS,
        ge=1,
        description="Global cap on open browser sessions",
    )
    jquery_script_url: str = Field(
        default=JQUERY_SCRIPT_URL,
        description="jQuery build injected when a request enables it",
    )

    # ==========================================================================
    # Rate Limiting / Run Log
    # ==========================================================================

    rate_limit_max_crawl_starts: int = Field(
        default=MAX_CRAWL_STARTS_PER_WINDOW,
        description="Max crawl starts per client per window",
    )
    rate_limit_window_seconds: int = Field(
        default=RATE_LIMIT_WINDOW_SECONDS,
        description="Rate limit sliding window duration in seconds",
    )
    run_log_max_events: int = Field(
        default=MAX_RUN_LOG_EVENTS,
        description="Events kept in the log returned with a crawl result",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
