"""
Runtime settings for the StockFlow API.

Values come from the environment once at process start and are handed to
``create_app``; nothing mutates them afterwards.
"""

import os

from pydantic import BaseModel, Field


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    model_config = {"frozen": True}

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "stockflow"
    secret_key: str = Field("change-me-in-production", min_length=8)
    token_ttl_hours: int = Field(24, ge=1)
    seed_sample_data: bool = False
    seed_admin_email: str = "admin@stockflow.io"
    seed_admin_password: str = "admin123"
    environment: str = "development"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "stockflow"),
            secret_key=os.getenv("SECRET_KEY", "change-me-in-production"),
            token_ttl_hours=int(os.getenv("TOKEN_TTL_HOURS", 24)),
            seed_sample_data=_env_flag("SEED_SAMPLE_DATA"),
            seed_admin_email=os.getenv("SEED_ADMIN_EMAIL", "admin@stockflow.io").lower(),
            seed_admin_password=os.getenv("SEED_ADMIN_PASSWORD", "admin123"),
            environment=os.getenv("ENVIRONMENT", "development").lower(),
            port=int(os.getenv("PORT", 8000)),
        )
