# carecenter/config.py - configuration management
from dotenv import load_dotenv

load_dotenv()
from typing import Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "CareCenter Administration Backend"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database
    database_url: str = Field(default="sqlite:///./carecenter.db", alias="DATABASE_URL")

    # Security
    secret_key: str = Field(default="change-me-in-production-please-32chars", alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000"], alias="CORS_ORIGINS")

    # Billing
    default_page_limit: int = Field(default=50, alias="DEFAULT_PAGE_LIMIT")

    # Scheduling
    default_slot_duration: int = Field(default=30, alias="DEFAULT_SLOT_DURATION")
    default_max_appointments: int = Field(default=50, alias="DEFAULT_MAX_APPOINTMENTS")
    slot_batch_size: int = Field(default=50, alias="SLOT_BATCH_SIZE")

    # Logging
    log_json: bool = Field(default=False, alias="LOG_JSON")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite:///", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("default_page_limit", "default_slot_duration", "slot_batch_size")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

# Note: Do not instantiate settings at import time.
# Use `get_settings()` instead.
