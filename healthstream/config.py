"""
Settings for the stream engine, its web surface and its logging.

Everything comes from environment variables (a local `.env` is honoured). Values are
validated when the config is first built, so a bad cadence or port stops startup.
The insight provider key is optional and never has a default.
"""

import logging
import os
import sys
from functools import lru_cache
from typing import Literal, cast

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

load_dotenv()


class InsightConfig(BaseModel):
    """Generative-text collaborator settings. A missing key disables generation."""

    model_name: str = Field(
        default="openai:gpt-4o-mini", description="pydantic-ai model used for insights"
    )
    api_key: str | None = Field(default=None, description="Provider API key (optional)")
    timeout_seconds: float = Field(default=15.0, gt=0.0, description="Per-request timeout")

    # Circuit breaker around the provider
    failure_threshold: int = Field(
        default=5, gt=0, description="Consecutive failures before the circuit opens"
    )
    recovery_timeout_seconds: float = Field(
        default=60.0, gt=0.0, description="Seconds an open circuit waits before a trial call"
    )

    @field_validator("api_key")
    @classmethod
    def reject_placeholder_key(cls, v: str | None) -> str | None:
        if v is not None and v.strip() in {"", "your-openai-api-key-here"}:
            return None
        return v

    @property
    def enabled(self) -> bool:
        return self.api_key is not None


class StreamConfig(BaseModel):
    """Subscription cadence and aggregation window settings."""

    min_cadence_ms: int = Field(default=1000, gt=0, description="Lowest accepted cadence")
    default_cadence_ms: int = Field(default=5000, gt=0, description="Cadence for global streams")
    user_cadence_ms: int = Field(default=3000, gt=0, description="Cadence for per-user streams")

    global_lookback_minutes: int = Field(
        default=60, gt=0, description="Recency window for global ticks"
    )
    user_lookback_minutes: int = Field(
        default=1440, gt=0, description="Recency window for per-user ticks"
    )

    reminder_timezone: str = Field(default="UTC", description="Timezone reminders are set in")
    reminder_check_seconds: float = Field(
        default=60.0, gt=0.0, description="Interval between reminder scheduler runs"
    )
    live_stats_seconds: float = Field(
        default=10.0, gt=0.0, description="Interval between live statistics frames"
    )

    @model_validator(mode="after")
    def defaults_respect_minimum(self) -> "StreamConfig":
        if min(self.default_cadence_ms, self.user_cadence_ms) < self.min_cadence_ms:
            raise ValueError("default cadences must not be below min_cadence_ms")
        return self


class NotifierConfig(BaseModel):
    """Outbound reminder delivery channel."""

    webhook_url: str | None = Field(default=None, description="POST target for reminders")
    timeout_seconds: float = Field(default=10.0, gt=0.0, description="Webhook request timeout")


class APIConfig(BaseModel):
    """Where uvicorn binds and which browser origins may call the stream endpoints."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, gt=0, lt=65536, description="Bind port")
    reload: bool = Field(default=False, description="uvicorn auto-reload")
    allowed_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000"], description="CORS origins"
    )


class LoggingConfig(BaseModel):
    """structlog output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum stdlib level"
    )
    format: Literal["json", "console"] = Field(default="json", description="json in deployments")


class AppConfig(BaseModel):
    """Root settings object handed to the service and the app factory."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment stage"
    )
    debug: bool = Field(default=False, description="Exposes /docs")

    insight: InsightConfig = Field(default_factory=InsightConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
Environment = Literal["development", "staging", "production"]

_ENVIRONMENT_ALIASES: dict[str, Environment] = {
    "dev": "development",
    "development": "development",
    "stage": "staging",
    "staging": "staging",
}
_TRUTHY = {"1", "true", "yes", "on"}


def _environment(raw: str) -> Environment:
    # Anything unrecognised is treated as production
    return _ENVIRONMENT_ALIASES.get(raw.strip().lower(), "production")


def _log_level(raw: str) -> LogLevel:
    level = raw.strip().upper()
    if level in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return cast(LogLevel, level)
    return "INFO"


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    return default if raw is None else raw.strip().lower() in _TRUTHY


def load_config_from_env() -> AppConfig:
    """Build an `AppConfig` from the process environment."""
    environment = _environment(os.getenv("ENVIRONMENT", "development"))
    in_development = environment == "development"

    return AppConfig(
        environment=environment,
        debug=in_development,
        insight=InsightConfig(
            model_name=os.getenv("INSIGHT_MODEL", "openai:gpt-4o-mini"),
            api_key=os.getenv("OPENAI_API_KEY") or None,
            timeout_seconds=float(os.getenv("INSIGHT_TIMEOUT_SECONDS", "15.0")),
        ),
        stream=StreamConfig(
            min_cadence_ms=int(os.getenv("STREAM_MIN_CADENCE_MS", "1000")),
            default_cadence_ms=int(os.getenv("STREAM_DEFAULT_CADENCE_MS", "5000")),
            user_cadence_ms=int(os.getenv("STREAM_USER_CADENCE_MS", "3000")),
            global_lookback_minutes=int(os.getenv("STREAM_GLOBAL_LOOKBACK_MINUTES", "60")),
            user_lookback_minutes=int(os.getenv("STREAM_USER_LOOKBACK_MINUTES", "1440")),
            reminder_timezone=os.getenv("REMINDER_TIMEZONE", "UTC"),
            reminder_check_seconds=float(os.getenv("REMINDER_CHECK_SECONDS", "60")),
            live_stats_seconds=float(os.getenv("LIVE_STATS_SECONDS", "10")),
        ),
        notifier=NotifierConfig(
            webhook_url=os.getenv("REMINDER_WEBHOOK_URL") or None,
            timeout_seconds=float(os.getenv("REMINDER_WEBHOOK_TIMEOUT_SECONDS", "10")),
        ),
        api=APIConfig(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            reload=_flag("API_RELOAD", in_development),
            allowed_origins=os.getenv("API_ALLOWED_ORIGINS", "http://localhost:3000").split(","),
        ),
        logging=LoggingConfig(
            level=_log_level(os.getenv("LOG_LEVEL", "INFO")),
            format="console" if in_development else "json",
        ),
    )


@lru_cache
def get_config() -> AppConfig:
    return load_config_from_env()


def configure_logging(config: LoggingConfig) -> None:
    """Install the structlog processor chain on top of stdlib logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=config.level)

    renderer = (
        structlog.processors.JSONRenderer()
        if config.format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def print_config_summary() -> None:
    """Dump the effective settings, for the demo script and manual checks."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nINSIGHTS")
    print(f"Model: {config.insight.model_name}")
    print(f"Enabled: {config.insight.enabled}")
    print(f"Timeout: {config.insight.timeout_seconds}s")

    print("\nSTREAMING")
    print(f"Minimum Cadence: {config.stream.min_cadence_ms}ms")
    print(f"Global Cadence: {config.stream.default_cadence_ms}ms")
    print(f"User Cadence: {config.stream.user_cadence_ms}ms")
    print(f"Reminder Timezone: {config.stream.reminder_timezone}")

    print("\nAPI CONFIGURATION")
    print(f"Host: {config.api.host}:{config.api.port}")
    print(f"Reminder Webhook: {config.notifier.webhook_url or 'log only'}")
