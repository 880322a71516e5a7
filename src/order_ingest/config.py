"""
Runtime settings, read from the environment and an optional .env file.
"""
from __future__ import annotations

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # AI fallback
    OPENAI_API_KEY: str = ""
    OPENROUTER_API_KEY: str = ""
    FALLBACK_MODEL: str = "openai/gpt-4o-mini"
    FALLBACK_TIMEOUT_SECONDS: float = 45.0
    MAX_FALLBACK_TEXT_CHARS: int = 12_000

    # Taxes, as fractions. Line amounts are tax-inclusive.
    TAX_A_RATE: float = 0.16
    TAX_B_RATE: float = 0.08

    # Versioned watch-list / threshold data; packaged default when unset
    VERIFICATION_POLICY_FILE: Optional[str] = None

    # Optimistic-lock retries for a single merge
    MERGE_MAX_ATTEMPTS: int = 3

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()
