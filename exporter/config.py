"""Configuration management for the table exporter."""

from __future__ import annotations

from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from exporter.exceptions import ConfigurationError


class ExporterConfig(BaseSettings):
    """Configuration for the record-to-table exporter."""

    model_config = SettingsConfigDict(
        env_file="config.env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Required fields
    table_service_base_url: str = Field(..., description="Base URL of the remote table service")
    table_service_api_key: str = Field(..., description="API key for the table service")
    exporter_principal_id: str = Field(..., description="Principal granted full access on created tables")

    # Per-study routing
    study_project_map: dict[str, str] = Field(default_factory=dict)
    study_data_access_team_map: dict[str, str] = Field(default_factory=dict)

    # Table registry + record store (Azure SQL)
    registry_table_prefix: str = Field(default="exporter_")
    azure_sql_server: str | None = Field(default=None)
    azure_sql_database: str | None = Field(default=None)

    # ADLS location of record ID override files (optional)
    storage_account: str | None = Field(default=None)
    container: str | None = Field(default=None)

    # Local staging
    staging_dir: Path = Field(default=Path("tmp/exporter"))

    # API settings
    api_timeout_seconds: int = Field(default=60, ge=1, le=300)
    api_max_retries: int = Field(default=3, ge=1, le=10)
    upload_poll_interval_seconds: float = Field(default=1.0, ge=0)
    upload_poll_max_attempts: int = Field(default=120, ge=1)

    # Record loop
    worker_count: int = Field(default=4, ge=1, le=64)
    record_loop_delay_millis: int = Field(default=0, ge=0)
    record_loop_progress_report_period: int = Field(default=250, ge=1)
    time_zone_name: str = Field(default="America/Los_Angeles")

    # Logging
    log_level: str = Field(default="INFO")

    @field_validator("table_service_base_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        v = v.rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("TABLE_SERVICE_BASE_URL must start with http:// or https://")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v

    @field_validator("time_zone_name")
    @classmethod
    def validate_time_zone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"TIME_ZONE_NAME is not a known time zone: {v!r}")
        return v

    @field_validator("registry_table_prefix")
    @classmethod
    def validate_registry_prefix(cls, v: str) -> str:
        if not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError("REGISTRY_TABLE_PREFIX may only contain letters, digits, '_' and '-'")
        return v

    @model_validator(mode="after")
    def validate_azure_config(self) -> "ExporterConfig":
        if (self.storage_account is None) != (self.container is None):
            raise ValueError("Both STORAGE_ACCOUNT and CONTAINER must be set together")
        return self

    @property
    def adls_enabled(self) -> bool:
        return self.storage_account is not None and self.container is not None

    @property
    def time_zone(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone_name)


def get_config() -> ExporterConfig:
    """Load configuration from environment."""
    try:
        load_dotenv("config.env")
        return ExporterConfig()
    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e
