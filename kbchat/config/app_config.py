from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

_LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]


def _check_level(value: str) -> str:
    level = value.upper()
    if level not in _LEVELS:
        raise ValueError(f"{value!r} is not a valid Loguru level")
    return level


class AppConfig(BaseSettings):
    """Application configuration settings."""

    # Environment
    app_env: str = Field("development")
    app_debug: bool = Field(False)

    # Logging
    log_level: str = Field("INFO")
    log_file: Optional[str] = Field(None)
    log_serialize: bool = Field(False)
    # Level for stdlib loggers such as httpx
    library_log_level: str = Field("WARNING")
    # Per-module overrides of log_level, e.g. {"kbchat.services.sync_engine": "DEBUG"}
    log_module_levels: Dict[str, str] = Field(default_factory=dict)

    # Local storage
    storage_path: str = Field("~/.kbchat/storage.json")

    @field_validator("app_env")
    def validate_app_env(cls, value: str) -> str:
        if value not in ["development", "staging", "production"]:
            raise ValueError("APP_ENV must be development, staging, or production")
        return value

    @field_validator("log_level")
    def validate_log_level(cls, value: str) -> str:
        return _check_level(value)

    @field_validator("library_log_level")
    def validate_library_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError("LIBRARY_LOG_LEVEL must be a standard logging level")
        return level

    @field_validator("log_module_levels")
    def validate_module_levels(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {module: _check_level(level) for module, level in value.items()}

    @field_validator("storage_path")
    def validate_storage_path(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("STORAGE_PATH must not be empty")
        return value

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_app_config() -> AppConfig:
    """Return a cached application configuration instance."""

    return AppConfig()
