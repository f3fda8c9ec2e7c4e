from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application Config
    PROJECT_NAME: str = Field(default="HemoLink Engine")
    PROJECT_DESCRIPTION: str = Field(
        default="Donor matching and recurring transfusion scheduling engine"
    )
    VERSION: str = Field(default="1.0.0")
    API_PREFIX: str = Field(default="/api")
    DOCS_URL: str = Field(default="/docs")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=True)

    # Database
    DATABASE_URL: str = Field(default="")
    DATABASE_POOL_SIZE: int = Field(default=5)
    DATABASE_MAX_OVERFLOW: int = Field(default=10)

    # Development database fallback
    DEV_DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./hemolink.sqlite3")

    # Token verification (tokens are issued by the external auth service)
    SECRET_KEY: str = Field(default="dev-secret-key")
    ALGORITHM: str = Field(default="HS256")

    # CORS Configuration
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:5173",
        ]
    )

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    ENABLE_FILE_LOGGING: bool = Field(default=False)

    # Cohort rotation
    COHORT_SIZE: int = Field(default=5, ge=1)
    ROTATION_CADENCE_DAYS: int = Field(default=21, ge=1)
    DONATION_COOLDOWN_DAYS: int = Field(default=90, ge=0)
    PLANNED_SLOT_GRACE_DAYS: int = Field(default=7, ge=0)
    SWEEP_INTERVAL_MINUTES: int = Field(default=60, ge=1)

    # Matching
    DEFAULT_SEARCH_RADIUS_KM: float = Field(default=25.0, gt=0)
    BACKUP_SEARCH_RADIUS_KM: float = Field(default=50.0, gt=0)
    BLOOD_COMPATIBILITY_POLICY: str = Field(
        default="exact", pattern=r"^(exact|abo_rh)$"
    )

    # Shelf life per component, keyed by lower-cased component name
    SHELF_LIFE_DAYS: Dict[str, int] = Field(
        default={
            "whole blood": 35,
            "red cells": 35,
            "packed red cells": 35,
            "prbc": 35,
            "platelets": 5,
            "plasma": 365,
            "fresh frozen plasma": 365,
            "cryoprecipitate": 365,
        }
    )
    DEFAULT_SHELF_LIFE_DAYS: int = Field(default=35, ge=0)

    # Notification gateway
    NOTIFICATION_SERVICE_URL: str = Field(default="")
    NOTIFICATION_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    # Pydantic v2 config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    def model_post_init(self, __context) -> None:
        """Post-initialization validation and setup"""
        if isinstance(self.BACKEND_CORS_ORIGINS, str):
            self.BACKEND_CORS_ORIGINS = [
                origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",")
            ]

        if self.ENVIRONMENT.lower() == "production":
            if not self.DATABASE_URL:
                raise ValueError("DATABASE_URL must be set in production!")
            if not self.SECRET_KEY or self.SECRET_KEY == "dev-secret-key":
                raise ValueError(
                    "SECRET_KEY must be set to a secure value in production!"
                )
        else:
            # Fall back to the local SQLite database outside production
            if not self.DATABASE_URL:
                self.DATABASE_URL = self.DEV_DATABASE_URL

    def shelf_life_for(self, component: Optional[str]) -> int:
        if not component:
            return self.DEFAULT_SHELF_LIFE_DAYS
        return self.SHELF_LIFE_DAYS.get(
            component.strip().lower(), self.DEFAULT_SHELF_LIFE_DAYS
        )


# Instantiate settings
settings = Settings()
