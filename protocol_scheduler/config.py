# protocol_scheduler/config.py - Settings for the protocol scheduling service
from dotenv import load_dotenv
import os

load_dotenv()
from typing import Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False
    )

    # Application
    app_name: str = Field(default="Treatment Protocol Scheduler", alias="APP_NAME")
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database
    database_url: str = Field(default="sqlite:///./protocols.db", alias="DATABASE_URL")

    # Scheduling
    schedule_horizon_days: int = Field(default=180, alias="SCHEDULE_HORIZON_DAYS")
    timeline_order: str = Field(default="desc", alias="TIMELINE_ORDER")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:5173", "http://localhost:8000"], alias="CORS_ORIGINS")

    # --- Pydantic V2 Validators ---
    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:5173", "http://localhost:8000"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("schedule_horizon_days")
    @classmethod
    def validate_horizon(cls, v):
        if v < 1:
            raise ValueError("SCHEDULE_HORIZON_DAYS must be at least 1")
        return v

    @field_validator("timeline_order")
    @classmethod
    def validate_timeline_order(cls, v):
        v = v.lower()
        if v not in ("asc", "desc"):
            raise ValueError("TIMELINE_ORDER must be 'asc' or 'desc'")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


# Environment-specific configurations
class DevelopmentConfig(Settings):
    """Development environment configuration"""
    debug: bool = True
    environment: str = "development"
    log_level: str = "DEBUG"

class ProductionConfig(Settings):
    """Production environment configuration"""
    debug: bool = False
    environment: str = "production"

class TestingConfig(Settings):
    """Testing environment configuration"""
    debug: bool = True
    environment: str = "testing"
    database_url: str = "sqlite:///./test.db"

def get_config_by_env(env: str) -> Settings:
    """Get configuration by environment name"""
    configs = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig
    }

    config_class = configs.get(env.lower(), Settings)
    return config_class()

@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return get_config_by_env(os.getenv("ENVIRONMENT", "development"))
