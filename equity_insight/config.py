"""
Configuration module using Pydantic Settings.

Provides validated, type-safe configuration from environment variables and an
optional .env file. Invalid values (negative timeouts, zero worker pools) fail
fast at import time.

API keys are stored as SecretStr so they never end up in log lines; use the
get_*_api_key() accessors to read them.
"""

import logging
import os
import sys
from pathlib import Path

import structlog
from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Logging Setup (must happen before Settings to capture validation errors) ---
logging.basicConfig(
    format="%(asctime)s [%(levelname)-8s] %(message)s",
    stream=sys.stderr,
    level=logging.INFO,
    force=True,
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
        structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "event"]
        ),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


class Settings(BaseSettings):
    """
    Runtime configuration for the analysis pipeline.

    Every upstream provider is optional: a missing key degrades the matching
    adapter instead of aborting startup. validate_environment_variables()
    reports which keys are absent.
    """

    # --- Directory Paths ---
    data_cache_dir: Path = Field(
        default=Path("./data_cache"),
        validation_alias="DATA_CACHE_DIR",
        description="Directory for the persistent fetch cache",
    )
    analysis_db_path: Path = Field(
        default=Path("./data/analyses.db"),
        validation_alias="ANALYSIS_DB_PATH",
        description="SQLite file holding persisted analysis results",
    )

    # --- SEC EDGAR ---
    sec_user_agent: str = Field(
        default="EquityInsight/1.0 (contact@example.com)",
        validation_alias="SEC_USER_AGENT",
        description="User-Agent header EDGAR requires on every request",
    )

    # --- LLM Configuration ---
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        validation_alias="OPENROUTER_BASE_URL",
        description="OpenAI-compatible endpoint used for every LLM call",
    )
    default_model: str = Field(
        default="openai/gpt-4o",
        validation_alias="OPENROUTER_MODEL",
        description="Model identifier used when a request names none",
    )
    llm_temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=2.0,
        validation_alias="LLM_TEMPERATURE",
        description="Sampling temperature for all LLM calls",
    )

    # --- Timeouts (seconds) ---
    llm_timeout: int = Field(
        default=120,
        ge=1,
        validation_alias="LLM_TIMEOUT",
        description="Timeout for the main analysis transform",
    )
    llm_aux_timeout: int = Field(
        default=60,
        ge=1,
        validation_alias="LLM_AUX_TIMEOUT",
        description="Timeout for keyword, sentiment and event classification calls",
    )
    quote_timeout: int = Field(
        default=15,
        ge=1,
        validation_alias="QUOTE_TIMEOUT",
        description="Timeout for quote / recommendation / price-target calls",
    )
    sec_timeout: int = Field(
        default=20,
        ge=1,
        validation_alias="SEC_TIMEOUT",
        description="Timeout for EDGAR index, submissions and documents",
    )
    series_timeout: int = Field(
        default=20,
        ge=1,
        validation_alias="SERIES_TIMEOUT",
        description="Timeout for daily price-series downloads",
    )
    news_timeout: int = Field(
        default=20,
        ge=1,
        validation_alias="NEWS_TIMEOUT",
        description="Timeout for full-text news searches",
    )

    # --- Concurrency ---
    filing_fetch_concurrency: int = Field(
        default=3,
        ge=1,
        validation_alias="FILING_FETCH_CONCURRENCY",
        description="Parallel narrative-text downloads per analysis",
    )
    batch_concurrency: int = Field(
        default=3,
        ge=1,
        validation_alias="BATCH_CONCURRENCY",
        description="Parallel analyses when processing a batch file",
    )

    # --- Payload Shaping ---
    max_filings: int = Field(
        default=4,
        ge=1,
        validation_alias="MAX_FILINGS",
        description="Most recent filings included per analysis",
    )
    mda_excerpt_chars: int = Field(
        default=5000,
        ge=100,
        validation_alias="MDA_EXCERPT_CHARS",
        description="Characters of each MD&A excerpt sent to the LLM",
    )
    mda_fetch_chars: int = Field(
        default=20000,
        ge=100,
        validation_alias="MDA_FETCH_CHARS",
        description="Characters kept by the narrative-text fetcher",
    )

    # --- Cache TTLs (hours) ---
    cache_default_ttl_hours: float = Field(
        default=24.0,
        gt=0,
        validation_alias="CACHE_DEFAULT_TTL_HOURS",
        description="TTL for cached provider responses without an explicit TTL",
    )
    analysis_ttl_historical_hours: float = Field(
        default=720.0,
        gt=0,
        validation_alias="ANALYSIS_TTL_HISTORICAL_HOURS",
        description="TTL for stored analyses of past baseline dates",
    )
    analysis_ttl_current_hours: float = Field(
        default=6.0,
        gt=0,
        validation_alias="ANALYSIS_TTL_CURRENT_HOURS",
        description="TTL for stored analyses of today's baseline date",
    )

    # --- Runtime ---
    selftest_ticker: str = Field(
        default="NVDA",
        validation_alias="SELFTEST_TICKER",
        description="Ticker analyzed by the selftest command",
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    # --- API Keys (SecretStr prevents accidental logging) ---
    openrouter_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENROUTER_API_KEY",
        description="OpenRouter key for all LLM calls (optional, degrades)",
    )
    finnhub_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="FINNHUB_API_KEY",
        description="Finnhub market data key (optional, degrades)",
    )
    alpha_vantage_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ALPHAVANTAGE_API_KEY",
        description="Alpha Vantage key (optional fallback)",
    )
    sec_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="SEC_API_KEY",
        description="Bearer token for EDGAR mirrors that require one (optional)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=False,
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def setup_environment(self) -> "Settings":
        """Expand user paths, create storage directories and apply the log level."""
        self.data_cache_dir = Path(os.path.expanduser(str(self.data_cache_dir)))
        self.analysis_db_path = Path(os.path.expanduser(str(self.analysis_db_path)))

        for directory in [self.data_cache_dir, self.analysis_db_path.parent]:
            directory.mkdir(parents=True, exist_ok=True)

        log_level_value = getattr(logging, self.log_level.upper(), logging.INFO)
        logging.getLogger().setLevel(log_level_value)
        for name in logging.root.manager.loggerDict:
            logging.getLogger(name).setLevel(log_level_value)

        return self

    @property
    def cache_default_ttl(self) -> float:
        """Default cache TTL in seconds."""
        return self.cache_default_ttl_hours * 3600

    def analysis_ttl(self, is_historical: bool) -> float:
        """TTL in seconds for a stored analysis."""
        hours = (
            self.analysis_ttl_historical_hours
            if is_historical
            else self.analysis_ttl_current_hours
        )
        return hours * 3600

    def get_openrouter_api_key(self) -> str:
        """Get OpenRouter API key securely from SecretStr field."""
        return self.openrouter_api_key.get_secret_value()

    def get_finnhub_api_key(self) -> str:
        """Get Finnhub API key securely from SecretStr field."""
        return self.finnhub_api_key.get_secret_value()

    def get_alpha_vantage_api_key(self) -> str:
        """Get Alpha Vantage API key securely from SecretStr field."""
        return self.alpha_vantage_api_key.get_secret_value()

    def get_sec_api_key(self) -> str:
        """Get the optional EDGAR bearer token."""
        return self.sec_api_key.get_secret_value()


def validate_environment_variables(settings: Settings | None = None) -> list[str]:
    """Warn about missing provider keys and return their names.

    Nothing is strictly required: each missing key disables one provider and the
    pipeline falls back to the others (or to its degraded LLM mode).
    """
    settings = settings or config
    optional_checks = [
        ("OPENROUTER_API_KEY", settings.get_openrouter_api_key),
        ("FINNHUB_API_KEY", settings.get_finnhub_api_key),
        ("ALPHAVANTAGE_API_KEY", settings.get_alpha_vantage_api_key),
    ]
    missing = [name for name, getter in optional_checks if not getter()]
    for name in missing:
        logger.warning("optional_api_key_missing", variable=name)
    if "@" not in settings.sec_user_agent:
        logger.warning(
            "sec_user_agent_without_contact", user_agent=settings.sec_user_agent
        )
    return missing


# Instantiated at import time, triggers validation
config = Settings()
