"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class SavingsConfig(BaseSettings):
    """Savings group core configuration"""
    
    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "core_savings.db"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Money
    currency: str = "EUR"
    
    # Loan rules
    monthly_interest_rate: str = "0.0125"  # 1.25% per month, simple interest
    min_loan_duration_months: int = 1
    max_loan_duration_months: int = 24
    loan_month_days: int = 30  # due date = request date + duration * 30 days
    allow_overpayment: bool = False
    
    # Contributions and penalties
    late_contribution_cutoff_day: int = 10  # deposits after this day of month are late
    late_penalty_fee: str = "25"
    penalty_fee_source: str = "flat"  # flat or group_rules
    
    # Interest distribution: roles whose savings form the pool and share interest
    distribution_roles: List[str] = ["member"]
    
    # Concurrency
    lock_timeout_seconds: float = 5.0
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "SAVINGS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = SavingsConfig()


def get_config() -> SavingsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> SavingsConfig:
    """Reload configuration from environment"""
    global config
    config = SavingsConfig()
    return config
