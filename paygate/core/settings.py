from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from PAYGATE_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="PAYGATE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    DATABASE_URL: str = Field(
        "sqlite:///./paygate.db", description="SQLAlchemy URL of the durable store."
    )
    TOKENS: List[str] = Field(
        default_factory=lambda: ["dev-token"],
        description="Bearer tokens accepted by the HTTP API.",
    )

    # Presentation pipeline bounds
    READINESS_TIMEOUT_SECONDS: float = Field(60.0, gt=0)
    HOSTING_TIMEOUT_SECONDS: Optional[float] = Field(None, gt=0)

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


config_settings = Settings()
