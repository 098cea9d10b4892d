"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ServicingConfig(BaseSettings):
    """Loan servicing configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # memory:// for in-memory
    transaction_max_attempts: int = 5

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "KES"
    collector_id: str = "mpesa_system"  # collectedById on webhook repayments

    # SMS configuration
    sms_enabled: bool = True
    sms_provider: str = "africastalking"  # africastalking or log
    africastalking_username: str = ""
    africastalking_api_key: str = ""
    africastalking_url: str = "https://api.africastalking.com/version1/messaging"
    sms_timeout: float = 10.0

    class Config:
        env_prefix = "LOANS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ServicingConfig()


def get_config() -> ServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ServicingConfig:
    """Reload configuration from environment"""
    global config
    config = ServicingConfig()
    return config
