"""
Configuration management for the Substack Intelligence pipeline.

Provides centralized, validated configuration from environment variables
with proper type checking and defaults.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console
from rich.table import Table

MIN_LOOKBACK_DAYS = 1
MAX_LOOKBACK_DAYS = 90


def _parse_bool(v) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def clamp_lookback_days(days: Optional[int], default: int = 30) -> int:
    """Clamp a lookback window into the supported [1, 90] day range."""
    if days is None:
        days = default
    return max(MIN_LOOKBACK_DAYS, min(MAX_LOOKBACK_DAYS, int(days)))


class GmailConfig(BaseSettings):
    """Gmail API configuration."""

    client_id: Optional[str] = Field(default=None, alias="GMAIL_CLIENT_ID")
    client_secret: Optional[str] = Field(default=None, alias="GMAIL_CLIENT_SECRET")
    refresh_token: Optional[str] = Field(default=None, alias="GMAIL_REFRESH_TOKEN")
    user: str = Field(default="me", alias="GMAIL_USER")

    # Query settings
    sender_filter: str = Field(default="substack.com", alias="GMAIL_SENDER_FILTER")
    page_size: int = Field(default=100, alias="GMAIL_PAGE_SIZE")
    rate_limit_per_second: float = Field(default=5.0, alias="GMAIL_RATE_LIMIT")

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class LLMConfig(BaseSettings):
    """Extraction and embedding model configuration."""

    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    model: str = Field(default="gpt-4o-mini", alias="EXTRACTION_MODEL")
    temperature: float = Field(default=0.2, alias="EXTRACTION_TEMPERATURE")
    timeout_seconds: float = Field(default=60.0, alias="EXTRACTION_TIMEOUT_SECONDS")
    confidence_threshold: float = Field(default=0.5, alias="EXTRACTION_CONFIDENCE_THRESHOLD")
    verify_pass: bool = Field(default=False, alias="EXTRACTION_VERIFY_PASS")
    max_content_chars: int = Field(default=8000, alias="EXTRACTION_MAX_CHARS")
    cache_ttl_hours: int = Field(default=168, alias="EXTRACTION_CACHE_TTL_HOURS")
    rate_limit_per_second: float = Field(default=1.0, alias="EXTRACTION_RATE_LIMIT")

    # Embeddings
    embedding_model: str = Field(default="text-embedding-3-small", alias="EMBEDDING_MODEL")
    embedding_dimensions: int = Field(default=1536, alias="EMBEDDING_DIMENSIONS")

    @field_validator("verify_pass", mode="before")
    @classmethod
    def parse_verify_pass(cls, v):
        return _parse_bool(v)

    @field_validator("confidence_threshold")
    @classmethod
    def check_threshold(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("confidence threshold must be within [0, 1]")
        return v

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class DatabaseConfig(BaseSettings):
    """Relational store configuration."""

    url: str = Field(default="sqlite:///./substack_intel.db", alias="DATABASE_URL")
    echo: bool = Field(default=False, alias="DATABASE_ECHO")

    @field_validator("echo", mode="before")
    @classmethod
    def parse_echo(cls, v):
        return _parse_bool(v)

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class PipelineConfig(BaseSettings):
    """Orchestrator, retry and trigger configuration."""

    tenant_id: str = Field(default="default", alias="PIPELINE_TENANT_ID")
    batch_size: int = Field(default=50, alias="PIPELINE_BATCH_SIZE")
    lookback_days: int = Field(default=30, alias="PIPELINE_LOOKBACK_DAYS")
    max_messages: int = Field(default=500, alias="PIPELINE_MAX_MESSAGES")
    min_content_chars: int = Field(default=100, alias="MIN_CONTENT_CHARS")
    lock_ttl_seconds: int = Field(default=300, alias="PIPELINE_LOCK_TTL_SECONDS")
    freshness_minutes: int = Field(default=15, alias="PIPELINE_FRESHNESS_MINUTES")
    stuck_minutes: int = Field(default=30, alias="PIPELINE_STUCK_MINUTES")
    schedule_cron: str = Field(default="0 6 * * *", alias="PIPELINE_SCHEDULE_CRON")
    schedule_timezone: str = Field(default="UTC", alias="PIPELINE_SCHEDULE_TIMEZONE")

    # Retry policy
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY_SECONDS")
    retry_max_delay: float = Field(default=30.0, alias="RETRY_MAX_DELAY_SECONDS")
    mailbox_max_attempts: int = Field(default=3, alias="MAILBOX_MAX_ATTEMPTS")
    extraction_max_retries: int = Field(default=2, alias="EXTRACTION_MAX_RETRIES")
    resolver_max_attempts: int = Field(default=2, alias="RESOLVER_MAX_ATTEMPTS")

    # Trigger surface
    cron_secret: Optional[str] = Field(default=None, alias="CRON_SECRET")
    api_token: Optional[str] = Field(default=None, alias="API_TOKEN")
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")

    @field_validator("lookback_days")
    @classmethod
    def clamp_lookback(cls, v):
        return clamp_lookback_days(v)

    @field_validator("batch_size")
    @classmethod
    def check_batch_size(cls, v):
        if v < 1:
            raise ValueError("batch size must be positive")
        return v

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: str = Field(default="production", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    dry_run: bool = Field(default=False, alias="DRY_RUN")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # Component configurations
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    @field_validator("debug", "dry_run", "log_json", mode="before")
    @classmethod
    def parse_flags(cls, v):
        return _parse_bool(v)

    def model_post_init(self, __context) -> None:
        # Initialize sub-configurations
        self.gmail = GmailConfig()
        self.llm = LLMConfig()
        self.database = DatabaseConfig()
        self.pipeline = PipelineConfig()

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def reload_settings() -> Settings:
    """Drop the cached settings and read the environment again."""
    global settings
    settings = Settings()
    return settings


def validate_required_settings(for_run: str = "pipeline", config: Optional[Settings] = None) -> List[str]:
    """
    Validate that required settings are present for a given entry point.

    Args:
        for_run: "pipeline" (mailbox + LLM), "extraction" (LLM only),
            "cron" (pipeline plus CRON_SECRET) or "minimal"
        config: Settings to check, defaults to the global instance

    Returns:
        List of missing required settings
    """
    missing = []
    config = config or get_settings()

    if for_run in ("pipeline", "cron"):
        if not config.gmail.client_id:
            missing.append("GMAIL_CLIENT_ID")
        if not config.gmail.client_secret:
            missing.append("GMAIL_CLIENT_SECRET")
        if not config.gmail.refresh_token:
            missing.append("GMAIL_REFRESH_TOKEN")

    if for_run in ("pipeline", "cron", "extraction"):
        if not config.llm.openai_api_key:
            missing.append("OPENAI_API_KEY")

    if for_run == "cron" and not config.pipeline.cron_secret:
        missing.append("CRON_SECRET")

    return missing


def print_configuration_summary(config: Optional[Settings] = None) -> None:
    """Print a summary of the current configuration for debugging."""
    config = config or get_settings()
    console = Console()

    def mark(value) -> str:
        return "[green]✓[/green]" if value else "[red]✗[/red]"

    table = Table(title="Substack Intelligence Configuration", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Environment", config.environment)
    table.add_row("Debug Mode", str(config.debug))
    table.add_row("Dry Run", str(config.dry_run))
    table.add_row("Database", config.database.url.split("@")[-1])
    table.add_row("Tenant", config.pipeline.tenant_id)
    table.add_row("Gmail User", config.gmail.user)
    table.add_row("Gmail Credentials", mark(config.gmail.client_id and config.gmail.refresh_token))
    table.add_row("OpenAI", mark(config.llm.openai_api_key))
    table.add_row("Extraction Model", config.llm.model)
    table.add_row("Confidence Threshold", f"{config.llm.confidence_threshold:.2f}")
    table.add_row("Verification Pass", str(config.llm.verify_pass))
    table.add_row("Batch Size", str(config.pipeline.batch_size))
    table.add_row("Lookback Days", str(config.pipeline.lookback_days))
    table.add_row("Schedule", config.pipeline.schedule_cron)
    table.add_row("Cron Secret", mark(config.pipeline.cron_secret))
    table.add_row("API Token", mark(config.pipeline.api_token))

    console.print(table)
