"""Data models for the exporter: run requests, column definitions, table keys."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from exporter.exceptions import BadRequestError


class SharingMode(str, Enum):
    """Which participants' records a run exports."""

    SHARED = "SHARED"
    PUBLIC_ONLY = "PUBLIC_ONLY"
    ALL = "ALL"


class SharingScope(str, Enum):
    NO_SHARING = "NO_SHARING"
    SPONSORS_AND_PARTNERS = "SPONSORS_AND_PARTNERS"
    ALL_QUALIFIED_RESEARCHERS = "ALL_QUALIFIED_RESEARCHERS"


class ColumnType(str, Enum):
    STRING = "STRING"
    INTEGER = "INTEGER"
    DOUBLE = "DOUBLE"
    BOOLEAN = "BOOLEAN"
    # Epoch millis. The table service has no calendar date type.
    DATE = "DATE"
    LARGETEXT = "LARGETEXT"


class ColumnDefinition(BaseModel):
    """One typed column of a remote table, in the table service's JSON shape."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    name: str
    column_type: ColumnType
    maximum_size: int | None = None
    id: str | None = None

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class UploadSchemaKey(BaseModel):
    """Identifies one revision of a study's upload schema."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    study_id: str
    schema_id: str
    revision: int = Field(..., ge=1)

    def __str__(self) -> str:
        return f"{self.study_id}-{self.schema_id}-v{self.revision}"

    @classmethod
    def parse(cls, text: str) -> "UploadSchemaKey":
        """Parse the CLI form ``study:schema:revision``."""
        parts = text.split(":")
        if len(parts) != 3:
            raise ValueError(f"Expected STUDY:SCHEMA:REVISION, got {text!r}")
        return cls(study_id=parts[0], schema_id=parts[1], revision=int(parts[2]))


@dataclass(frozen=True)
class TableKey:
    """Where a table kind's remote table ID lives in the registry."""

    registry_table: str
    key_name: str
    key_value: str

    def __str__(self) -> str:
        return f"{self.registry_table}/{self.key_value}"


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


class ExportRequest(BaseModel):
    """Parameters of one export run.

    Exactly one record source must be given: an upload date, a start/end
    time window (which also needs a study whitelist), or a record ID override
    file. Collections are frozen so callers can't modify a request after it
    was validated.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True, extra="forbid")

    date: dt.date | None = None
    start_date_time: dt.datetime | None = None
    end_date_time: dt.datetime | None = None
    record_id_override: str | None = None
    registry_prefix_override: str | None = None
    project_override_map: dict[str, str] | None = None
    redrive_count: int = Field(default=0, ge=0)
    sharing_mode: SharingMode = SharingMode.SHARED
    study_whitelist: frozenset[str] | None = None
    table_whitelist: frozenset[UploadSchemaKey] | None = None
    tag: str | None = None

    @model_validator(mode="after")
    def validate_record_source(self) -> "ExportRequest":
        has_start = self.start_date_time is not None
        has_end = self.end_date_time is not None
        if has_start != has_end:
            raise ValueError("startDateTime and endDateTime must both be specified or both be absent.")

        num_sources = sum([
            self.date is not None,
            has_start,
            not _blank(self.record_id_override),
        ])
        if num_sources != 1:
            raise ValueError("Exactly one of date, start/endDateTime, and recordIdOverride must be specified.")

        if has_start:
            if self.start_date_time >= self.end_date_time:
                raise ValueError("startDateTime must be before endDateTime.")
            if self.study_whitelist is None:
                raise ValueError("If start- and endDateTime are specified, studyWhitelist must also be specified.")
        return self

    @model_validator(mode="after")
    def validate_overrides(self) -> "ExportRequest":
        has_prefix = not _blank(self.registry_prefix_override)
        has_project_map = self.project_override_map is not None
        if has_prefix != has_project_map:
            raise ValueError(
                "registryPrefixOverride and projectOverrideMap must both be specified or both be absent."
            )
        if has_project_map and not self.project_override_map:
            raise ValueError("If projectOverrideMap is specified, it can't be empty.")
        if self.study_whitelist is not None and not self.study_whitelist:
            raise ValueError("If studyWhitelist is specified, it can't be empty.")
        if self.table_whitelist is not None and not self.table_whitelist:
            raise ValueError("If tableWhitelist is specified, it can't be empty.")
        return self

    def __str__(self) -> str:
        if self.date is not None:
            source = f"date={self.date}"
        elif self.start_date_time is not None:
            source = f"startDateTime={self.start_date_time.isoformat()}, endDateTime={self.end_date_time.isoformat()}"
        else:
            source = f"recordIdOverride={self.record_id_override}"
        return f"{source}, redriveCount={self.redrive_count}, tag={self.tag}"

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, text: str) -> "ExportRequest":
        """Parse a JSON request body. Anything unparseable is a BadRequestError."""
        if text is None or not text.strip():
            raise BadRequestError("Request body is blank")
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise BadRequestError(
                "Invalid export request",
                details={"errors": [err["msg"] for err in e.errors()]},
            ) from e
