"""
Configuration Management Module

Provides centralized engine configuration using pydantic-settings for
environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class EngineSettings(BaseSettings):
    """Schedule engine configuration"""

    # Numeric configuration
    decimal_precision: int = 28  # Significant digits for intermediate math

    # Loop guard: upper bound for any recomputation, date-shift or term-derivation loop
    max_iterations: int = 5000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "LOAN_SCHEDULE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
settings = EngineSettings()


def get_settings() -> EngineSettings:
    """Get global settings instance"""
    return settings


def reload_settings() -> EngineSettings:
    """Reload settings from environment"""
    global settings
    settings = EngineSettings()
    return settings
