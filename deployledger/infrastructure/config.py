import os
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from deployledger.domain.models import PayloadStrategyKind
from deployledger.infrastructure.pinata_client import DEFAULT_API_URL, DEFAULT_GATEWAY_URL

# Levels understood by both logging.basicConfig and uvicorn
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class Settings(BaseModel):
    """Service configuration, read from environment variables."""
    model_config = ConfigDict(frozen=True)

    database_url: str = Field(..., min_length=1)
    payload_strategy: PayloadStrategyKind = PayloadStrategyKind.EMBEDDED
    pinata_api_key: Optional[str] = None
    pinata_secret_api_key: Optional[str] = None
    pinata_api_url: str = DEFAULT_API_URL
    pinata_gateway: str = DEFAULT_GATEWAY_URL
    io_timeout_seconds: float = Field(30.0, gt=0)
    max_conflict_attempts: int = Field(3, ge=1)
    host: str = "0.0.0.0"
    port: int = Field(8000, ge=1, le=65535)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        return level

    @model_validator(mode="after")
    def pinata_credentials_required(self) -> "Settings":
        if self.payload_strategy is PayloadStrategyKind.CONTENT_ADDRESSED and not (
            self.pinata_api_key and self.pinata_secret_api_key
        ):
            raise ValueError(
                "PINATA_API_KEY and PINATA_SECRET_API_KEY are required for content-addressed storage"
            )
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Builds settings from the environment; unset variables fall back to defaults."""
        environ = os.environ if environ is None else environ
        names = {
            "database_url": "DATABASE_URL",
            "payload_strategy": "PAYLOAD_STRATEGY",
            "pinata_api_key": "PINATA_API_KEY",
            "pinata_secret_api_key": "PINATA_SECRET_API_KEY",
            "pinata_api_url": "PINATA_API_URL",
            "pinata_gateway": "PINATA_GATEWAY",
            "io_timeout_seconds": "IO_TIMEOUT_SECONDS",
            "max_conflict_attempts": "MAX_CONFLICT_ATTEMPTS",
            "host": "HOST",
            "port": "PORT",
            "log_level": "LOG_LEVEL",
        }
        values = {field: environ[var] for field, var in names.items() if environ.get(var)}
        return cls(**values)
