"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WalletConfig(BaseSettings):
    """Core wallet configuration"""

    # Database configuration
    database_url: str = "sqlite:///wallet.db"  # memory://, sqlite:///path or postgresql://...
    database_pool_size: int = 5
    database_echo: bool = False  # Set to True for SQL logging
    lock_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_minutes: int = 15
    refresh_token_ttl_days: int = 14
    password_hash_rounds: int = 10

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "WALLET_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WalletConfig()


def get_config() -> WalletConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WalletConfig:
    """Reload configuration from environment"""
    global config
    config = WalletConfig()
    return config
