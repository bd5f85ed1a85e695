"""Run orchestration: walk a run's record IDs, dispatch each record, then commit every table."""

from __future__ import annotations

import time
from datetime import date, datetime

from exporter.config import ExporterConfig, get_config
from exporter.exceptions import DestinationUnavailableError, ExporterError
from exporter.logging_utils import TaskContextFilter, get_logger, log_operation
from exporter.metrics import MetricsHelper
from exporter.models import ExportRequest
from exporter.record_filter import RecordFilter
from exporter.record_source import RecordIdSourceFactory, SqlRecordStore
from exporter.registry import SqlTableRegistry
from exporter.staging import StagingStorage
from exporter.table_service import TableServiceClient
from exporter.task import ExportTask
from exporter.worker_manager import ExportWorkerManager

logger = get_logger(__name__)


def exporter_date_for_request(request: ExportRequest, config: ExporterConfig, now: datetime | None = None) -> date:
    """The upload date written into every row of the run."""
    if request.date is not None:
        return request.date
    tz = config.time_zone
    if request.end_date_time is not None:
        end = request.end_date_time
        return end.astimezone(tz).date() if end.tzinfo else end.date()
    return (now or datetime.now(tz)).astimezone(tz).date()


class RecordDispatcher:
    """Processes export runs, one at a time.

    Per-record faults (fetch, routing, bad data) are counted in
    ``recordErrorCount`` and the run continues. Faults raised while
    finishing the run propagate to the caller and the task is not marked
    successful.
    """

    def __init__(
        self,
        config: ExporterConfig,
        record_id_factory: RecordIdSourceFactory,
        record_store: SqlRecordStore,
        record_filter: RecordFilter,
        worker_manager: ExportWorkerManager,
        table_service: TableServiceClient,
        staging: StagingStorage,
        metrics_helper: MetricsHelper | None = None,
    ):
        self.config = config
        self.record_id_factory = record_id_factory
        self.record_store = record_store
        self.record_filter = record_filter
        self.worker_manager = worker_manager
        self.table_service = table_service
        self.staging = staging
        self.metrics_helper = metrics_helper or MetricsHelper()

    def new_task(self, request: ExportRequest, task_id: str) -> ExportTask:
        if request.registry_prefix_override:
            registry = SqlTableRegistry(self.config, prefix=request.registry_prefix_override)
            project_map = request.project_override_map
        else:
            registry = SqlTableRegistry(self.config)
            project_map = self.config.study_project_map

        return ExportTask(
            request=request,
            exporter_date=exporter_date_for_request(request, self.config),
            tmp_dir=self.staging.create_temp_dir(prefix=f"export-{task_id[:8]}-"),
            registry=registry,
            project_map=project_map,
            data_access_team_map=self.config.study_data_access_team_map,
            task_id=task_id,
        )

    def process_run(self, request: ExportRequest) -> ExportTask:
        task_id = TaskContextFilter.new_task_id(request.tag)
        logger.info("Received export request", extra={"request": str(request)})

        try:
            if not self.table_service.is_writable():
                raise DestinationUnavailableError("Table service is not writable, aborting run")

            record_ids = self.record_id_factory.get_record_source_for_request(request)
            task = self.new_task(request, task_id)
            try:
                with log_operation(logger, "process_run", request=str(request)):
                    self._process_records(task, record_ids)
                    self.worker_manager.end_of_stream(task)
                    task.mark_success()
                return task
            finally:
                self.metrics_helper.publish_metrics(task.metrics)
                self._cleanup(task)
        finally:
            TaskContextFilter.clear()

    def _process_records(self, task: ExportTask, record_ids) -> None:
        start_time = time.perf_counter()
        delay_seconds = self.config.record_loop_delay_millis / 1000
        report_period = self.config.record_loop_progress_report_period
        num_records = 0

        for record_id in record_ids:
            if delay_seconds > 0:
                time.sleep(delay_seconds)

            try:
                self._process_record(task, record_id)
            except Exception:
                task.metrics.increment_counter("recordErrorCount")
                logger.error("Error processing record", extra={"record_id": record_id}, exc_info=True)

            num_records += 1
            if num_records % report_period == 0:
                logger.info(
                    "Export progress",
                    extra={
                        "records_processed": num_records,
                        "elapsed_ms": int((time.perf_counter() - start_time) * 1000),
                    },
                )

        logger.info(
            "Finished reading record IDs",
            extra={"records_processed": num_records, "elapsed_ms": int((time.perf_counter() - start_time) * 1000)},
        )

    def _process_record(self, task: ExportTask, record_id: str) -> None:
        record = self.record_store.get_record(record_id)
        if record is None:
            task.metrics.increment_counter("missingRecordCount")
            logger.error("Record not found", extra={"record_id": record_id})
            return

        if self.record_filter.should_exclude_record(task.metrics, task.request, record):
            return

        self.metrics_helper.capture_metrics_for_record(task.metrics, record)
        self.worker_manager.add_subtask_for_record(task, record)

    def _cleanup(self, task: ExportTask) -> None:
        try:
            self.staging.delete_dir(task.tmp_dir)
        except ExporterError as e:
            logger.error("Failed to clean up staging workspace", extra={"path": str(task.tmp_dir), "error": str(e)})


def build_dispatcher(config: ExporterConfig) -> RecordDispatcher:
    table_service = TableServiceClient(config)
    record_store = SqlRecordStore(config)
    staging = StagingStorage(config.staging_dir)
    worker_manager = ExportWorkerManager(config, record_store, table_service, staging)
    return RecordDispatcher(
        config=config,
        record_id_factory=RecordIdSourceFactory(config),
        record_store=record_store,
        record_filter=RecordFilter(),
        worker_manager=worker_manager,
        table_service=table_service,
        staging=staging,
    )


def run_export(request: ExportRequest, config: ExporterConfig | None = None) -> ExportTask:
    """Run one export end to end with production collaborators."""
    if config is None:
        config = get_config()
    dispatcher = build_dispatcher(config)
    try:
        return dispatcher.process_run(request)
    finally:
        dispatcher.worker_manager.shutdown()
