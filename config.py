"""
Configuration management for MedNudge
"""

from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "MedNudge"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    SERVER_URL: str = "http://localhost:8000"  # Public URL used for voice-call callbacks

    # Database
    DATABASE_URL: str = "sqlite:///./mednudge.db"
    DATABASE_ECHO: bool = False

    # Job queues
    QUEUE_BACKEND: str = "celery"  # "celery" or "memory"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: Optional[str] = None
    WORKER_CONCURRENCY: int = 4
    MISSED_SWEEP_INTERVAL_SECONDS: int = 300

    # Messaging gateway (text, voice notes, voice calls)
    MESSAGING_API_URL: str = "http://localhost:9000"
    MESSAGING_API_TOKEN: Optional[str] = None
    MESSAGING_TIMEOUT_SECONDS: float = 15.0
    ENABLE_VOICE_CALLS: bool = False

    # Speech synthesis
    SPEECH_API_URL: str = "http://localhost:9100"
    SPEECH_API_TOKEN: Optional[str] = None

    # Clinic integration
    CLINIC_WEBHOOK_URL: Optional[str] = None

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class EscalationConfig:
    """Configuration for reminder and escalation behaviour"""

    MAX_ESCALATION_LEVEL: int = 5

    # Delay before each level fires, in milliseconds
    LEVEL_DELAYS_MS: dict[int, int] = {
        1: 30 * 60 * 1000,
        2: 15 * 60 * 1000,
        3: 15 * 60 * 1000,
        4: 10 * 60 * 1000,
        5: 5 * 60 * 1000,
    }
    DEFAULT_LEVEL_DELAY_MS: int = 30 * 60 * 1000

    # Queue retry policies
    REMINDER_ATTEMPTS: int = 3
    REMINDER_BACKOFF_TYPE: str = "exponential"
    REMINDER_BACKOFF_MS: int = 5000
    ESCALATION_ATTEMPTS: int = 2
    ESCALATION_BACKOFF_TYPE: str = "fixed"
    ESCALATION_BACKOFF_MS: int = 30000

    # Responses
    DEFAULT_SNOOZE_MINUTES: int = 30
    URGENT_SNOOZE_MINUTES: int = 15
    RESPONSE_TIMEOUT_MINUTES: int = 60

    # Quick replies
    REMINDER_REPLIES: list[str] = ["✅ Taken", "⏰ Snooze 30min", "❌ Skip"]
    REMINDER_REPLIES_NO_SNOOZE: list[str] = ["✅ Taken", "❌ Skip"]
    URGENT_REPLIES: list[str] = ["✅ Taking now", "⏰ In 15 mins", "❌ Skip today"]
    VOICE_FOLLOWUP_REPLIES: list[str] = ["✅ Taken", "⏰ Taking soon", "❌ Skip"]
    CAREGIVER_REPLIES: list[str] = ["I'll check now", "Call them", "Already taken"]


settings = get_settings()
escalation_config = EscalationConfig()
