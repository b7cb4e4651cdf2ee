"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Every setting can be overridden with a ``BIKE_RENTAL_`` prefixed environment variable.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional

from .currency import Currency
from .models import BikeDefaults


class RentalConfig(BaseSettings):
    """Bike rental system configuration"""

    # Storage configuration
    storage_backend: Literal["memory", "json", "sqlite", "snapshot"] = "memory"
    data_dir: str = "./data"
    json_dir_name: str = "documents"
    sqlite_file: str = "bike_rental.db"
    snapshot_file: str = "bike_rental.pickle"

    # Business rules configuration
    currency: str = "INR"
    default_maintenance: Literal["now", "unset"] = "now"  # Maintenance stamp for new bikes
    default_note: str = ""

    # Console configuration
    admin_username: str = "root"
    admin_password: str = "root"
    seed_demo_data: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None  # If None, logs to stderr

    model_config = SettingsConfigDict(
        env_prefix="BIKE_RENTAL_",
        env_file=".env",
        case_sensitive=False
    )

    @property
    def currency_unit(self) -> Currency:
        return Currency.from_code(self.currency)

    @property
    def bike_defaults(self) -> BikeDefaults:
        return BikeDefaults(maintenance=self.default_maintenance, note=self.default_note)


# Global configuration instance
config = RentalConfig()


def get_config() -> RentalConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> RentalConfig:
    """Reload configuration from environment"""
    global config
    config = RentalConfig()
    return config
