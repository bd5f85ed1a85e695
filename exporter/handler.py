"""Destination handler: writes one table kind's rows for a run and commits them at the end."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from exporter.config import ExporterConfig
from exporter.exceptions import BufferInitError, RegistryError, TableCreationError, UploadMismatchError
from exporter.logging_utils import get_logger, log_operation
from exporter.models import TableKey
from exporter.row_buffer import BufferState, RowBuffer
from exporter.staging import StagingStorage, sha256_file
from exporter.table_service import TableServiceClient
from exporter.tables import COMMON_COLUMNS, ExportTable, build_common_row, table_key
from exporter.task import ExportTask

logger = get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class TableExportHandler:
    """Handler for one table kind.

    The first record routed to this handler in a run initializes the run's
    row buffer and, if the table kind has never been exported before, creates
    the remote table. That happens at most once per run; if it fails the
    buffer is left in the failed state and every later record for this table
    fails fast with the same error.
    """

    def __init__(
        self,
        table: ExportTable,
        table_service: TableServiceClient,
        staging: StagingStorage,
        config: ExporterConfig,
    ):
        self.table = table
        self.table_service = table_service
        self.staging = staging
        self.config = config
        self.key: TableKey = table_key(table)

    def __repr__(self) -> str:
        return f"TableExportHandler({self.key})"

    @property
    def name(self) -> str:
        return self.table.key_value

    def handle(self, record: Mapping[str, Any], task: ExportTask) -> None:
        """Write one record's row. Failures are counted and logged, never raised."""
        record_id = record.get("id")
        try:
            buffer = task.get_or_create_buffer(self.key, lambda: self._create_buffer(task))

            row = build_common_row(record, task.exporter_date)
            row.update(self.table.extract_fields(record))
            buffer.append_row(row, record_id=record_id)
            task.metrics.increment_counter(f"{self.name}.lineCount")
        except Exception:
            task.metrics.increment_counter(f"{self.name}.errorCount")
            logger.error(
                "Failed to write record to table",
                extra={"record_id": record_id, "table": self.name},
                exc_info=True,
            )

    def commit(self, task: ExportTask) -> None:
        """Upload this run's rows and verify the table service processed every one of them.

        A buffer whose initialization failed re-raises its init error here.
        """
        buffer = task.get_buffer(self.key)
        if buffer is None or buffer.state is BufferState.COMMITTED:
            return

        buffer.finalize()
        line_count = buffer.line_count()

        if line_count > 0:
            with log_operation(logger, "commit_table", table=self.name, line_count=line_count):
                table_id = task.registry.lookup_table_id(self.key)
                if not table_id:
                    raise RegistryError("Table was never registered", details={"table_key": str(self.key)})
                project_id = task.project_id_for_study(self.table.study_id)
                logger.info(
                    "Uploading staging file",
                    extra={
                        "table": self.name,
                        "path": str(buffer.path),
                        "size_bytes": buffer.path.stat().st_size,
                        "sha256": sha256_file(buffer.path),
                    },
                )

                rows_processed = self.table_service.bulk_upload(project_id, table_id, buffer.path)
                if rows_processed != line_count:
                    raise UploadMismatchError(
                        f"Table service processed {rows_processed} rows, expected {line_count}",
                        details={
                            "table": self.name,
                            "table_id": table_id,
                            "rows_processed": rows_processed,
                            "line_count": line_count,
                        },
                    )
        else:
            logger.info("No rows to upload", extra={"table": self.name})

        buffer.mark_committed()
        self.staging.delete_file(buffer.path)

    def _create_buffer(self, task: ExportTask) -> RowBuffer:
        try:
            column_names = self._initialize_table(task)
        except Exception as e:
            logger.error("Failed to initialize table", extra={"table": self.name}, exc_info=True)
            error = BufferInitError(
                f"Failed to initialize table {self.name}: {e}",
                details={"table_key": str(self.key)},
            )
            error.__cause__ = e
            return RowBuffer.failed(error)

        file_name = _UNSAFE_FILENAME_CHARS.sub("_", f"{self.name}.{task.task_id}.tsv")
        path = self.staging.new_file(task.tmp_dir, file_name)
        buffer = RowBuffer.open(column_names, path, self.staging.open_writer)
        if buffer.state is BufferState.FAILED:
            logger.error("Failed to open TSV file", extra={"table": self.name, "path": str(path)})
        return buffer

    def _initialize_table(self, task: ExportTask) -> list[str]:
        """Resolve the remote table for this table kind, creating it if needed, and return its column names."""
        table_id = task.registry.lookup_table_id(self.key)
        if table_id:
            columns = self.table_service.get_columns(table_id)
            logger.info(
                "Using existing remote table",
                extra={"table": self.name, "table_id": table_id, "column_count": len(columns)},
            )
            return [c.name for c in columns]

        study_id = self.table.study_id
        project_id = task.project_id_for_study(study_id)
        reader_id = task.data_access_team_for_study(study_id)

        with log_operation(logger, "create_table", table=self.name, project_id=project_id):
            columns = list(COMMON_COLUMNS) + list(self.table.columns)
            created = self.table_service.create_columns(columns)
            if len(created) != len(columns):
                raise TableCreationError(
                    f"Tried to create {len(columns)} columns, but the table service created {len(created)}",
                    details={"table": self.name},
                )

            table_id = self.table_service.create_table(self.name, project_id, [c.id for c in created])
            self.table_service.set_access_control(table_id, self.config.exporter_principal_id, reader_id)
            task.registry.register_table_id(self.key, table_id)
        return [c.name for c in created]
