"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when mandatory configuration is missing."""


@dataclass(frozen=True)
class Settings:
    openai_api_key: str
    database_url: str
    autumn_secret_key: str
    openai_model: str = "gpt-5-nano-2025-08-07"
    openai_reasoning_effort: str = "low"
    openai_max_completion_tokens: int = 16000
    input_cost_per_mtok: float = 0.30
    output_cost_per_mtok: float = 1.20
    hubspot_base_url: str = "https://api.hubapi.com"
    crm_timeout_seconds: float = 15.0
    autumn_base_url: str = "https://api.useautumn.com/v1"
    meter_feature_id: str = "api_credits"
    rate_limit_per_minute: int = 10
    rate_limit_per_hour: int = 100
    rate_limit_per_day: int = 1000
    port: int = 8080


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    openai_api_key = os.getenv("OPENAI_API_KEY", "")
    database_url = os.getenv("DATABASE_URL", "")
    autumn_secret_key = os.getenv("AUTUMN_SECRET_KEY", "")

    if not openai_api_key:
        logger.warning("OPENAI_API_KEY is not configured; inference calls will fail.")
    if not database_url:
        logger.warning("DATABASE_URL is not set; API key lookups will fail.")
    if not autumn_secret_key:
        logger.warning("AUTUMN_SECRET_KEY is not configured; credit checks will deny every request.")

    return Settings(
        openai_api_key=openai_api_key,
        database_url=database_url,
        autumn_secret_key=autumn_secret_key,
        openai_model=os.getenv("OPENAI_MODEL", "gpt-5-nano-2025-08-07"),
        openai_reasoning_effort=os.getenv("OPENAI_REASONING_EFFORT", "low"),
        openai_max_completion_tokens=int(os.getenv("OPENAI_MAX_COMPLETION_TOKENS", "16000")),
        input_cost_per_mtok=float(os.getenv("OPENAI_INPUT_COST_PER_MTOK", "0.30")),
        output_cost_per_mtok=float(os.getenv("OPENAI_OUTPUT_COST_PER_MTOK", "1.20")),
        hubspot_base_url=os.getenv("HUBSPOT_BASE_URL", "https://api.hubapi.com").rstrip("/"),
        crm_timeout_seconds=float(os.getenv("CRM_TIMEOUT_SECONDS", "15")),
        autumn_base_url=os.getenv("AUTUMN_BASE_URL", "https://api.useautumn.com/v1").rstrip("/"),
        meter_feature_id=os.getenv("METER_FEATURE_ID", "api_credits"),
        rate_limit_per_minute=int(os.getenv("RATE_LIMIT_PER_MINUTE", "10")),
        rate_limit_per_hour=int(os.getenv("RATE_LIMIT_PER_HOUR", "100")),
        rate_limit_per_day=int(os.getenv("RATE_LIMIT_PER_DAY", "1000")),
        port=int(os.getenv("PORT", "8080")),
    )
