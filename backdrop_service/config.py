"""
Configuration loader for the backdrop replacement service.

Environment variables are centralized here to keep the rest of the code
focused on the pipeline and to make operational tuning clear.
"""

from functools import lru_cache
import logging
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Server
    port: int = Field(5000)
    allowed_origin: str = Field("http://localhost:3000")
    log_level: str = Field("INFO")

    # Input limits
    max_upload_bytes: int = Field(5 * 1024 * 1024)
    fetch_timeout_seconds: float = Field(10.0)

    # External background-removal tool
    remover_command: str = Field("rembg i {input} {output}")
    removal_timeout_seconds: float = Field(30.0)

    # Working directories
    uploads_dir: Path = Field(Path("uploads"))
    processed_dir: Path = Field(Path("processed"))

    # Result delivery / retention
    serve_results: bool = Field(True)
    result_retention_seconds: int = Field(3600)
    sweep_interval_seconds: float = Field(300.0)
    public_base_url: Optional[str] = Field(None)

    # Seconds between client-disconnect checks while a request is running
    disconnect_poll_seconds: float = Field(0.5)

    @field_validator(
        "max_upload_bytes",
        "fetch_timeout_seconds",
        "removal_timeout_seconds",
        "sweep_interval_seconds",
        "disconnect_poll_seconds",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if not isinstance(logging.getLevelName(v.upper()), int):
            raise ValueError("LOG_LEVEL must be a standard logging level name")
        return v.upper()

    @field_validator("remover_command")
    @classmethod
    def validate_remover_command(cls, v: str) -> str:
        if "{input}" not in v or "{output}" not in v:
            raise ValueError("REMOVER_COMMAND must contain {input} and {output} placeholders")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
