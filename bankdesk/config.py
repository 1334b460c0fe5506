"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankDeskConfig(BaseSettings):
    """BankDesk configuration"""

    # Snapshot storage configuration
    data_dir: str = "."
    storage_backend: str = "json"  # json, sqlite or memory
    accounts_collection: str = "accounts"
    loans_collection: str = "loans"
    sqlite_filename: str = "bankdesk.db"
    autosave: bool = True  # Save snapshots after every mutation

    # Audit log configuration
    audit_log_file: Optional[str] = "bank_changes.log"  # None keeps the log in memory

    # Business rules configuration
    account_delete_policy: str = "block"  # block or orphan
    loan_id_prefix: str = "LN-"

    # Credentials for the built-in authentication provider
    admin_password: str = "admin123"
    employee_id: str = "employee1"
    employee_password: str = "emp123"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    class Config:
        env_prefix = "BANKDESK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankDeskConfig()


def get_config() -> BankDeskConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankDeskConfig:
    """Reload configuration from environment"""
    global config
    config = BankDeskConfig()
    return config
