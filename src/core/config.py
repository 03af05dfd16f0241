# src/core/config.py
import logging
from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


class Settings(BaseSettings):
    """Application settings, read from the environment and an optional .env file"""
    APP_NAME: str = "AI Triage Assistant"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # LLM provider
    GEMINI_API_KEY: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GEMINI_API_KEY", "LLM_API_KEY")
    )
    GEMINI_BASE_URL: Optional[str] = Field(default=None)
    LLM_MODEL: str = "gemini-2.5-flash"
    LLM_TIMEOUT: float = 60.0
    LLM_MAX_RETRIES: int = 1

    # Generation parameters per request kind
    INTERVIEW_TEMPERATURE: float = 0.5
    INTERVIEW_MAX_TOKENS: int = 1024
    ANALYSIS_TEMPERATURE: float = 0.2
    ANALYSIS_MAX_TOKENS: int = 4096

    # Conversation policy
    TARGET_LANGUAGE: str = "Simplified Chinese (简体中文)"
    AUTO_ANALYSIS_THRESHOLD: int = 4

    # HTTP
    RATE_LIMIT_ENABLED: bool = True
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

    @property
    def base_url(self) -> str:
        """Provider base URL, falling back to the public endpoint"""
        return self.GEMINI_BASE_URL or DEFAULT_BASE_URL


settings = Settings()


def validate_required_settings() -> bool:
    """Check that everything needed for provider calls is configured"""
    missing = []

    if not settings.GEMINI_API_KEY:
        missing.append("GEMINI_API_KEY/LLM_API_KEY")

    if missing:
        logger = logging.getLogger(__name__)
        logger.warning(f"Missing environment variables: {', '.join(missing)}")
        logger.warning("Provider calls will fail until the variables are set.")
        return False

    return True
