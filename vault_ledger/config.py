"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class VaultLedgerConfig(BaseSettings):
    """Vault ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///vault_ledger.db"  # Default SQLite
    lock_timeout_seconds: float = 10.0

    # Key management
    rsa_key_bits: int = 2048
    system_key_name: str = "SYSTEM_TRANSACTION_KEY"

    # Credential policy
    salt_length: int = 16
    password_min_length: int = 8
    pin_min_length: int = 4

    # Business rules configuration
    min_transaction_amount: str = "0.01"
    max_transaction_amount: str = "1000000.00"
    max_description_length: int = 200

    # Read plaintext columns of migrated ledger rows when ciphertext is missing
    legacy_plaintext_fallback: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "VAULT_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = VaultLedgerConfig()


def get_config() -> VaultLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> VaultLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = VaultLedgerConfig()
    return config
