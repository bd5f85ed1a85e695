"""Table kinds the exporter writes to, and the row fields every table shares.

The set of table kinds is closed: each kind is a small frozen dataclass that
knows its registry key, its own columns (excluding COMMON_COLUMNS) and how to
pull those columns' values out of a record.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any, Union

from exporter.exceptions import RecordDataError
from exporter.logging_utils import get_logger
from exporter.models import ColumnDefinition, ColumnType, TableKey, UploadSchemaKey

logger = get_logger(__name__)

COMMON_COLUMNS: tuple[ColumnDefinition, ...] = (
    ColumnDefinition(name="recordId", column_type=ColumnType.STRING, maximum_size=36),
    ColumnDefinition(name="healthCode", column_type=ColumnType.STRING, maximum_size=36),
    ColumnDefinition(name="externalId", column_type=ColumnType.STRING, maximum_size=128),
    ColumnDefinition(name="dataGroups", column_type=ColumnType.STRING, maximum_size=100),
    ColumnDefinition(name="uploadDate", column_type=ColumnType.STRING, maximum_size=10),
    ColumnDefinition(name="createdOn", column_type=ColumnType.DATE),
    ColumnDefinition(name="appVersion", column_type=ColumnType.STRING, maximum_size=48),
    ColumnDefinition(name="phoneInfo", column_type=ColumnType.STRING, maximum_size=48),
)

META_TABLES = "meta_tables"
DATA_TABLES = "data_tables"


def sanitize_string(value: Any, max_length: int | None, record_id: str | None = None) -> str | None:
    """Render a value as a string, truncating it to the column's maximum size."""
    if value is None:
        return None
    text = str(value)
    if max_length is not None and len(text) > max_length:
        logger.warning(
            "Truncating value to column maximum size",
            extra={"record_id": record_id, "original_length": len(text), "max_length": max_length},
        )
        text = text[:max_length]
    return text


def parse_json_field(record: Mapping[str, Any], field: str) -> dict[str, Any]:
    raw = record.get(field)
    if raw is None or raw == "":
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise RecordDataError(
            f"Record {field} is not valid JSON",
            details={"record_id": record.get("id"), "field": field},
        ) from e
    if not isinstance(parsed, dict):
        raise RecordDataError(
            f"Record {field} is not a JSON object",
            details={"record_id": record.get("id"), "field": field},
        )
    return parsed


def schema_key_for_record(record: Mapping[str, Any]) -> UploadSchemaKey:
    try:
        return UploadSchemaKey(
            study_id=record["studyId"],
            schema_id=record["schemaId"],
            revision=int(record["schemaRevision"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise RecordDataError("Record has no usable schema key", details={"record_id": record.get("id")}) from e


def build_common_row(record: Mapping[str, Any], exporter_date: date) -> dict[str, str | None]:
    """Row values shared by every table kind."""
    record_id = record.get("id")
    metadata = parse_json_field(record, "metadata")

    row: dict[str, str | None] = {
        "recordId": record_id,
        "healthCode": record.get("healthCode"),
        "externalId": sanitize_string(record.get("userExternalId"), 128, record_id),
        "uploadDate": exporter_date.isoformat(),
        "createdOn": str(record["createdOn"]) if record.get("createdOn") is not None else None,
        "appVersion": sanitize_string(metadata.get("appVersion"), 48, record_id),
        "phoneInfo": sanitize_string(metadata.get("phoneInfo"), 48, record_id),
    }

    # Sorted so the same groups always render the same way.
    data_groups = record.get("userDataGroups")
    if data_groups:
        row["dataGroups"] = sanitize_string(",".join(sorted(data_groups)), 100, record_id)
    return row


def format_value(value: Any, column: ColumnDefinition, record_id: str | None) -> str | None:
    """Render one value from a record's data for the given column type."""
    if value is None:
        return None

    column_type = column.column_type
    try:
        if column_type is ColumnType.BOOLEAN:
            if not isinstance(value, bool):
                raise ValueError(f"expected boolean, got {type(value).__name__}")
            return "true" if value else "false"
        if column_type is ColumnType.INTEGER or column_type is ColumnType.DATE:
            if isinstance(value, bool):
                raise ValueError("expected integer, got boolean")
            return str(int(value))
        if column_type is ColumnType.DOUBLE:
            if isinstance(value, bool):
                raise ValueError("expected number, got boolean")
            return repr(float(value))
    except (TypeError, ValueError) as e:
        raise RecordDataError(
            f"Invalid value for column {column.name}: {e}",
            details={"record_id": record_id, "column": column.name},
        ) from e

    if isinstance(value, (dict, list)):
        value = json.dumps(value, separators=(",", ":"), sort_keys=True)
    return sanitize_string(value, column.maximum_size, record_id)


@dataclass(frozen=True)
class AppVersionTable:
    """One table per study listing which upload table each record went to."""

    study_id: str

    registry_table = META_TABLES
    key_name = "tableName"

    @property
    def key_value(self) -> str:
        return f"{self.study_id}-appVersion"

    @property
    def columns(self) -> tuple[ColumnDefinition, ...]:
        return (ColumnDefinition(name="originalTable", column_type=ColumnType.STRING, maximum_size=128),)

    def extract_fields(self, record: Mapping[str, Any]) -> dict[str, str | None]:
        return {"originalTable": str(schema_key_for_record(record))}


@dataclass(frozen=True)
class HealthDataTable:
    """One table per upload schema revision, holding the record's data fields."""

    schema_key: UploadSchemaKey
    columns: tuple[ColumnDefinition, ...]

    registry_table = DATA_TABLES
    key_name = "schemaKey"

    @property
    def study_id(self) -> str:
        return self.schema_key.study_id

    @property
    def key_value(self) -> str:
        return str(self.schema_key)

    def extract_fields(self, record: Mapping[str, Any]) -> dict[str, str | None]:
        record_id = record.get("id")
        data = parse_json_field(record, "data")
        return {
            column.name: format_value(data.get(column.name), column, record_id)
            for column in self.columns
        }


ExportTable = Union[AppVersionTable, HealthDataTable]


def table_key(table: ExportTable) -> TableKey:
    return TableKey(registry_table=table.registry_table, key_name=table.key_name, key_value=table.key_value)
