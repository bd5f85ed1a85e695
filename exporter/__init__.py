"""Export health data records into remote tables, one table per table kind."""

from exporter.config import ExporterConfig, get_config
from exporter.exceptions import ExporterError, ConfigurationError, RestartExportError
from exporter.models import ExportRequest, UploadSchemaKey
from exporter.pipeline import RecordDispatcher, run_export
from exporter.cli import main

__all__ = [
    "ExporterConfig",
    "get_config",
    "ExporterError",
    "ConfigurationError",
    "RestartExportError",
    "ExportRequest",
    "UploadSchemaKey",
    "RecordDispatcher",
    "run_export",
    "main",
]
