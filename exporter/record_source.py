"""Record source and record store: which records a run covers, and what each record holds."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import closing
from datetime import datetime
from typing import Any

import pyodbc
from azure.core.exceptions import AzureError, ClientAuthenticationError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.storage.filedatalake import DataLakeServiceClient

from exporter.azure_sql import get_sql_connection
from exporter.config import ExporterConfig
from exporter.exceptions import AuthenticationError, AzureStorageError, ConfigurationError, RecordStoreError
from exporter.logging_utils import get_logger, log_operation
from exporter.models import ColumnDefinition, ExportRequest, UploadSchemaKey

logger = get_logger(__name__)

RECORD_COLUMNS = (
    "id", "health_code", "study_id", "schema_id", "schema_revision", "created_on",
    "upload_date", "user_external_id", "user_data_groups", "user_sharing_scope",
    "metadata", "data",
)


def _epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def row_to_record(row: tuple) -> dict[str, Any]:
    """Convert a dbo.health_data_record row into the record mapping handlers consume."""
    raw = dict(zip(RECORD_COLUMNS, row))
    data_groups = raw["user_data_groups"]
    if data_groups:
        try:
            data_groups = set(json.loads(data_groups))
        except (TypeError, ValueError):
            data_groups = {g.strip() for g in str(data_groups).split(",") if g.strip()}
    else:
        data_groups = None

    return {
        "id": raw["id"],
        "healthCode": raw["health_code"],
        "studyId": raw["study_id"],
        "schemaId": raw["schema_id"],
        "schemaRevision": raw["schema_revision"],
        "createdOn": raw["created_on"],
        "uploadDate": raw["upload_date"].isoformat() if raw["upload_date"] else None,
        "userExternalId": raw["user_external_id"],
        "userDataGroups": data_groups,
        "userSharingScope": raw["user_sharing_scope"],
        "metadata": raw["metadata"],
        "data": raw["data"],
    }


class SqlRecordStore:
    """Reads records and upload schemas from Azure SQL.

    Upload schemas are cached for the life of the store since every record of
    a schema revision needs the same definition.
    """

    def __init__(self, config: ExporterConfig):
        self.config = config
        self._schema_cache: dict[UploadSchemaKey, tuple[ColumnDefinition, ...] | None] = {}
        self._schema_lock = threading.Lock()

    def get_record(self, record_id: str) -> dict[str, Any] | None:
        try:
            with closing(get_sql_connection(self.config)) as cn:
                cur = cn.cursor()
                cur.execute(
                    f"SELECT {', '.join(RECORD_COLUMNS)} FROM dbo.health_data_record WHERE id = ?",
                    record_id,
                )
                row = cur.fetchone()
        except pyodbc.Error as e:
            raise RecordStoreError(
                "Failed to read record",
                details={"record_id": record_id, "error": str(e)},
            ) from e
        return row_to_record(row) if row else None

    def get_upload_schema(self, schema_key: UploadSchemaKey) -> tuple[ColumnDefinition, ...] | None:
        with self._schema_lock:
            if schema_key in self._schema_cache:
                return self._schema_cache[schema_key]

        try:
            with closing(get_sql_connection(self.config)) as cn:
                cur = cn.cursor()
                cur.execute(
                    """
                    SELECT field_definitions FROM dbo.upload_schema
                    WHERE study_id = ? AND schema_id = ? AND revision = ?
                    """,
                    schema_key.study_id,
                    schema_key.schema_id,
                    schema_key.revision,
                )
                row = cur.fetchone()
        except pyodbc.Error as e:
            raise RecordStoreError(
                "Failed to read upload schema",
                details={"schema_key": str(schema_key), "error": str(e)},
            ) from e

        columns = None
        if row:
            try:
                columns = tuple(ColumnDefinition.model_validate(f) for f in json.loads(row[0]))
            except ValueError as e:
                raise RecordStoreError(
                    "Malformed upload schema",
                    details={"schema_key": str(schema_key), "error": str(e)},
                ) from e

        with self._schema_lock:
            self._schema_cache[schema_key] = columns
        return columns


def get_adls_credential():
    """Get Azure credential for ADLS access."""
    try:
        return DefaultAzureCredential(exclude_interactive_browser_credential=False)
    except Exception as e:
        raise AuthenticationError(
            "Azure authentication failed. Run 'az login' or configure service principal."
        ) from e


def download_record_id_override(config: ExporterConfig, path: str) -> list[str]:
    """Read a record ID override file (one ID per line) from ADLS."""
    if not config.adls_enabled:
        raise ConfigurationError("Record ID override requires STORAGE_ACCOUNT and CONTAINER")

    with log_operation(logger, "download_record_id_override", storage_account=config.storage_account, path=path):
        try:
            credential = get_adls_credential()
            account_url = f"https://{config.storage_account}.dfs.core.windows.net"
            service_client = DataLakeServiceClient(account_url=account_url, credential=credential)
            fs_client = service_client.get_file_system_client(file_system=config.container)
            file_client = fs_client.get_file_client(path)
            content = file_client.download_file().readall().decode("utf-8")
        except ClientAuthenticationError as e:
            raise AuthenticationError(
                "Azure auth failed. Ensure 'Storage Blob Data Reader' role is assigned."
            ) from e
        except ResourceNotFoundError as e:
            raise AzureStorageError(f"Record ID override not found: {path}", details={"path": path}) from e
        except AzureError as e:
            raise AzureStorageError(f"Azure storage operation failed: {e}") from e

    record_ids = [line.strip() for line in content.splitlines() if line.strip()]
    logger.info("Loaded record ID override", extra={"path": path, "record_count": len(record_ids)})
    return record_ids


class RecordIdSourceFactory:
    """Resolves the ordered record ID sequence for a run request."""

    def __init__(self, config: ExporterConfig):
        self.config = config

    def get_record_source_for_request(self, request: ExportRequest) -> Iterator[str]:
        if request.record_id_override and request.record_id_override.strip():
            return iter(download_record_id_override(self.config, request.record_id_override.strip()))
        if request.date is not None:
            return self._query_ids(
                "SELECT id FROM dbo.health_data_record WHERE upload_date = ? ORDER BY uploaded_on, id",
                request.date,
            )

        studies = sorted(request.study_whitelist)
        placeholders = ", ".join("?" for _ in studies)
        return self._query_ids(
            f"""
            SELECT id FROM dbo.health_data_record
            WHERE uploaded_on >= ? AND uploaded_on < ? AND study_id IN ({placeholders})
            ORDER BY uploaded_on, id
            """,
            _epoch_millis(request.start_date_time),
            _epoch_millis(request.end_date_time),
            *studies,
        )

    def _query_ids(self, sql: str, *params: Any) -> Iterator[str]:
        try:
            with closing(get_sql_connection(self.config)) as cn:
                cur = cn.cursor()
                cur.execute(sql, *params)
                record_ids = [row[0] for row in cur.fetchall()]
        except pyodbc.Error as e:
            raise RecordStoreError("Failed to query record IDs", details={"error": str(e)}) from e
        logger.info("Resolved record IDs for run", extra={"record_count": len(record_ids)})
        return iter(record_ids)
