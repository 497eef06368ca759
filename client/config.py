# client/config.py
"""
Configuration management for the Student Data Pipeline client
Loads settings from environment variables
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Client settings loaded from environment variables"""

    # Remote service
    api_base_url: str = "http://localhost:8080/api"
    request_timeout_seconds: Optional[float] = None  # None = no client-side timeout

    # Stopwatches
    stopwatch_enabled: bool = True  # False selects the timer-less registry
    stopwatch_tick_ms: int = 10
    subscriber_queue_size: int = 256

    # Pipeline defaults
    default_generate_count: int = 1000
    default_page_size: int = 10
    operation_history_size: int = 20

    # Downloads
    download_dir: str = "./downloads"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get client settings"""
    return settings
