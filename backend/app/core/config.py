"""
Application Configuration
"""
from functools import lru_cache
from typing import Dict, List, Literal

from pydantic_settings import BaseSettings
from pydantic import model_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "TriageBot"
    APP_ENV: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = False  # Secure default
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # Record store
    STORE_BACKEND: Literal["memory", "sql"] = "memory"
    DATABASE_URL: str = "sqlite:///./triagebot.db"
    DATABASE_ECHO: bool = False
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_DELAY_SECONDS: float = 0.2

    # Appointment slot suggestions
    SLOT_HORIZON_DAYS: int = 14
    SLOT_MAX_HORIZON_DAYS: int = 30
    SLOT_SUGGESTION_LIMIT: int = 5

    # Notifications kept in memory for inspection
    NOTIFICATION_HISTORY_SIZE: int = 500

    # LLM Provider
    LLM_PROVIDER: Literal["bedrock", "ollama"] = "ollama"

    # AWS Bedrock
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    BEDROCK_MODEL_ID: str = "anthropic.claude-3-sonnet-20240229-v1:0"

    # Ollama
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "llama3"

    # LLM call budgets (seconds)
    EXTRACTION_TIMEOUT_SECONDS: float = 15.0
    SIMILARITY_TIMEOUT_SECONDS: float = 20.0
    LLM_TEMPERATURE: float = 0.2

    # Duplicate detection
    DUPLICATE_LOOKBACK_DAYS: int = 30
    DUPLICATE_MAX_CANDIDATES: int = 20
    DUPLICATE_MAX_RESULTS: int = 10
    SIMILARITY_FLOOR: float = 0.6
    DUPLICATE_THRESHOLD: float = 0.85
    AUTO_MERGE_THRESHOLD: float = 0.90

    # Keyword extraction fallback
    KNOWN_BUILDINGS: List[str] = [
        "Next House", "Simmons Hall", "MacGregor House", "Burton Conner",
        "New House", "Baker House", "McCormick Hall", "Random Hall",
        "Senior House", "Tang Hall", "Westgate", "Ashdown House",
        "Sidney-Pacific",
    ]

    # Per-operation failure policy overrides, e.g. {"duplicate_detection": "fail_closed"}
    FAILURE_POLICY_OVERRIDES: Dict[str, str] = {}

    # Emergency contact shown on every escalation
    EMERGENCY_CONTACT_TEXT: str = "call 911 or campus police"

    # LangFuse Observability (optional)
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""
    LANGFUSE_HOST: str = "https://cloud.langfuse.com"

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate critical settings for non-development environments."""
        if self.APP_ENV != "development":
            if self.DEBUG:
                import warnings
                warnings.warn(
                    "DEBUG mode is enabled in a non-development environment. "
                    "This is not recommended for production.",
                    UserWarning,
                )
            # The memory store is per process and loses every case on restart
            if self.STORE_BACKEND == "memory":
                raise ValueError(
                    "STORE_BACKEND must be 'sql' outside development. "
                    "Set STORE_BACKEND and DATABASE_URL in your .env file or environment variables."
                )

        # Validate AWS credentials when using Bedrock
        if self.LLM_PROVIDER == "bedrock":
            if not self.AWS_ACCESS_KEY_ID or not self.AWS_SECRET_ACCESS_KEY:
                raise ValueError(
                    "AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY are required when LLM_PROVIDER is 'bedrock'. "
                    "Set these in your .env file or environment variables."
                )

        if not 0.0 <= self.SIMILARITY_FLOOR < self.DUPLICATE_THRESHOLD <= self.AUTO_MERGE_THRESHOLD <= 1.0:
            raise ValueError(
                "Similarity thresholds must satisfy "
                "0 <= SIMILARITY_FLOOR < DUPLICATE_THRESHOLD <= AUTO_MERGE_THRESHOLD <= 1"
            )

        if self.DUPLICATE_MAX_CANDIDATES < 1 or self.DUPLICATE_MAX_RESULTS < 1:
            raise ValueError("DUPLICATE_MAX_CANDIDATES and DUPLICATE_MAX_RESULTS must be positive")

        if self.NOTIFICATION_HISTORY_SIZE < 1:
            raise ValueError("NOTIFICATION_HISTORY_SIZE must be positive")

        return self

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
