"""Logging configuration models for workspool."""

from pathlib import Path
from typing import Any

from pydantic import Field, field_validator

from workspool.models.base import WorkspoolBaseModel


class LoggingConfig(WorkspoolBaseModel):
    """Logging configuration consumed by ``setup_logging_from_config``."""

    level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=False, description="Render console logs as JSON lines"
    )
    log_file: Path | None = Field(
        default=None, description="Optional JSON log file"
    )

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        upper_v = v.strip().upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return upper_v

    @field_validator("log_file", mode="before")
    @classmethod
    def validate_file_path(cls, v: Any) -> Path | None:
        """Validate and expand file path."""
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()
