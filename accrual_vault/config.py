"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class VaultConfig(BaseSettings):
    """Accrual vault configuration"""
    
    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "accrual_vault.db"
    
    # Token configuration
    token_name: str = "Rebase Token"
    token_symbol: str = "RBT"
    token_decimals: int = 18
    ledger_address: str = "rebase-token"
    
    # Rate configuration (per second, scaled by 1e18)
    initial_rate: int = 5 * 10**10
    
    # Administration
    owner_id: str = "owner"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    
    class Config:
        env_prefix = "ACCRUAL_VAULT_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = VaultConfig()


def get_config() -> VaultConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> VaultConfig:
    """Reload configuration from environment"""
    global config
    config = VaultConfig()
    return config
