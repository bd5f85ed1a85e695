"""Routes records to their table handlers and runs the writes on a worker pool."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any

from exporter.config import ExporterConfig
from exporter.exceptions import DestinationUnavailableError, RestartExportError, SchemaNotFoundError
from exporter.handler import TableExportHandler
from exporter.logging_utils import get_logger, log_operation
from exporter.models import TableKey
from exporter.record_source import SqlRecordStore
from exporter.staging import StagingStorage
from exporter.table_service import TableServiceClient
from exporter.tables import AppVersionTable, ExportTable, HealthDataTable, schema_key_for_record, table_key
from exporter.task import ExportTask

logger = get_logger(__name__)


class ExportWorkerManager:
    """Owns the table handlers and the thread pool for a process.

    Every record goes to its study's app version table and to the health
    data table of its upload schema revision. Handlers are created on first
    use and cached by table key, so one handler serves a table kind across
    runs while each run keeps its own buffers on the task.
    """

    def __init__(
        self,
        config: ExporterConfig,
        record_store: SqlRecordStore,
        table_service: TableServiceClient,
        staging: StagingStorage,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.config = config
        self.record_store = record_store
        self.table_service = table_service
        self.staging = staging
        self.executor = executor or ThreadPoolExecutor(
            max_workers=config.worker_count,
            thread_name_prefix="export-worker",
        )
        self._handlers: dict[TableKey, TableExportHandler] = {}
        self._handlers_lock = threading.Lock()

    def tables_for_record(self, record: Mapping[str, Any]) -> list[ExportTable]:
        schema_key = schema_key_for_record(record)
        columns = self.record_store.get_upload_schema(schema_key)
        if columns is None:
            raise SchemaNotFoundError(
                f"No upload schema {schema_key}",
                details={"record_id": record.get("id"), "schema_key": str(schema_key)},
            )
        return [AppVersionTable(study_id=schema_key.study_id), HealthDataTable(schema_key=schema_key, columns=columns)]

    def get_handler(self, table: ExportTable) -> TableExportHandler:
        key = table_key(table)
        with self._handlers_lock:
            handler = self._handlers.get(key)
            if handler is None:
                handler = TableExportHandler(table, self.table_service, self.staging, self.config)
                self._handlers[key] = handler
            return handler

    def add_subtask_for_record(self, task: ExportTask, record: Mapping[str, Any]) -> None:
        """Queue a write of the record to every table it belongs to.

        Routing errors (bad schema key, unknown schema) raise here, on the
        dispatcher thread. Write errors are handled by the handler on the
        worker thread.
        """
        for table in self.tables_for_record(record):
            handler = self.get_handler(table)
            future = self.executor.submit(handler.handle, record, task)
            task.add_pending_write(handler, future)

    def end_of_stream(self, task: ExportTask) -> None:
        """Wait for every queued write, then commit each table the run touched.

        Any exception raised here is run-fatal and surfaces as a
        RestartExportError.
        """
        pending = task.pending_writes()
        logger.info("Waiting for outstanding writes", extra={"pending_writes": len(pending)})
        try:
            wait(pending)
            for future in pending:
                # handle() never raises; this surfaces anything that escaped it.
                future.result()

            if not self.table_service.is_writable():
                raise DestinationUnavailableError("Table service is not writable, aborting before commit")
        except RestartExportError:
            raise
        except Exception as e:
            raise RestartExportError(
                f"End of stream failed before commit: {e}",
                details={"error_type": type(e).__name__},
            ) from e

        with log_operation(logger, "commit_tables", table_count=len(task.handlers())):
            for handler in task.handlers():
                try:
                    handler.commit(task)
                except RestartExportError:
                    raise
                except Exception as e:
                    raise RestartExportError(
                        f"Commit failed for {handler.name}: {e}",
                        details={"table": handler.name, "error_type": type(e).__name__},
                    ) from e

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)
