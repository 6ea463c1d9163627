"""
Configuration for the Wellness Coach service
"""
import os
from typing import Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseModel):
    """Application settings with production defaults"""

    # Google Gemini API
    gemini_api_key: str = Field(default_factory=lambda: os.getenv("GEMINI_API_KEY", ""))

    # MongoDB
    mongodb_uri: str = Field(default_factory=lambda: os.getenv("MONGODB_URI", ""))
    mongodb_database: str = Field(default_factory=lambda: os.getenv("MONGODB_DATABASE", "coach_db"))

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = Field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    # ==========================================================================
    # ADVICE GENERATION
    # ==========================================================================
    generation_model: str = Field(
        default_factory=lambda: os.getenv("GENERATION_MODEL", "gemini-2.5-flash")
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_MODEL", "models/gemini-embedding-001")
    )
    enable_safety_settings: bool = True

    # Hard limits per backend call; exceeding them counts as "unavailable"
    generation_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("GENERATION_TIMEOUT_SECONDS", "20"))
    )
    retrieval_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRIEVAL_TIMEOUT_SECONDS", "5"))
    )
    retrieval_limit: int = Field(
        default_factory=lambda: int(os.getenv("RETRIEVAL_LIMIT", "5"))
    )
    # Atlas Vector Search index over knowledge_snippets.embedding
    knowledge_vector_index: str = Field(
        default_factory=lambda: os.getenv("KNOWLEDGE_VECTOR_INDEX", "knowledge_vector_index")
    )

    # Circuit Breaker: Open after N failures within recovery window
    circuit_failure_threshold: int = Field(
        default_factory=lambda: int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    )
    circuit_recovery_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CIRCUIT_RECOVERY_SECONDS", "60.0"))
    )

    # ==========================================================================
    # FASTING SESSIONS
    # ==========================================================================
    # Display-only progress refresh for watchers
    session_tick_seconds: float = Field(
        default_factory=lambda: float(os.getenv("SESSION_TICK_SECONDS", "30"))
    )
    autocomplete_check_minutes: int = Field(
        default_factory=lambda: int(os.getenv("AUTOCOMPLETE_CHECK_MINUTES", "5"))
    )

    # ==========================================================================
    # ANALYTICS
    # ==========================================================================
    # Reuse a cached snapshot younger than this (1 hour)
    snapshot_staleness_seconds: int = Field(
        default_factory=lambda: int(os.getenv("SNAPSHOT_STALENESS_SECONDS", "3600"))
    )
    analysis_window_days: int = Field(
        default_factory=lambda: int(os.getenv("ANALYSIS_WINDOW_DAYS", "90"))
    )
    analysis_meal_limit: int = Field(
        default_factory=lambda: int(os.getenv("ANALYSIS_MEAL_LIMIT", "100"))
    )
    analysis_fasting_limit: int = Field(
        default_factory=lambda: int(os.getenv("ANALYSIS_FASTING_LIMIT", "50"))
    )

    # Feedback records considered by the feedback loop
    feedback_window: int = Field(
        default_factory=lambda: int(os.getenv("FEEDBACK_WINDOW", "100"))
    )
    proactive_scan_minutes: int = Field(
        default_factory=lambda: int(os.getenv("PROACTIVE_SCAN_MINUTES", "360"))
    )

    # Rate Limiting
    rate_limit_per_minute: int = Field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_PER_MINUTE", "30"))
    )

    # CORS - Use env var for production restriction, default "*" for dev
    allowed_origins: str = Field(default_factory=lambda: os.getenv("ALLOWED_ORIGINS", "*"))

    # Security: Admin token for protected endpoints
    admin_token: Optional[str] = Field(default_factory=lambda: os.getenv("ADMIN_TOKEN"))


settings = Settings()
