"""Shared test fixtures for the exporter."""

import json
import threading
from datetime import date
from unittest.mock import MagicMock

import pytest

from exporter.config import ExporterConfig
from exporter.models import ColumnDefinition, ColumnType, ExportRequest
from exporter.staging import StagingStorage
from exporter.task import ExportTask


class FakeRegistry:
    """In-memory table registry with the same interface as SqlTableRegistry."""

    def __init__(self, entries=None):
        self.entries = dict(entries or {})
        self.lookups = []
        self._lock = threading.Lock()

    def lookup_table_id(self, key):
        with self._lock:
            self.lookups.append(key)
            return self.entries.get(key)

    def register_table_id(self, key, table_id):
        with self._lock:
            self.entries[key] = table_id


@pytest.fixture
def sample_config(tmp_path):
    """Minimal ExporterConfig for testing (no real Azure/table service)."""
    return ExporterConfig(
        table_service_base_url="https://tables.example.com/api",
        table_service_api_key="test-key-123",
        exporter_principal_id="exporter-principal",
        study_project_map={"study-a": "project-a", "study-b": "project-b"},
        study_data_access_team_map={"study-a": "team-a", "study-b": "team-b"},
        staging_dir=tmp_path / "staging",
        storage_account=None,
        container=None,
        worker_count=2,
        upload_poll_interval_seconds=0,
        upload_poll_max_attempts=3,
        _env_file=None,
    )


@pytest.fixture
def sample_request():
    return ExportRequest(date=date(2024, 1, 8), tag="unit-test")


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def staging(tmp_path):
    return StagingStorage(tmp_path / "staging")


@pytest.fixture
def make_task(tmp_path, sample_request, fake_registry, sample_config):
    """Factory for ExportTasks backed by a real temp dir and the fake registry."""

    def _make(request=None, registry=None):
        tmp_dir = tmp_path / "task"
        tmp_dir.mkdir(exist_ok=True)
        return ExportTask(
            request=request or sample_request,
            exporter_date=date(2024, 1, 8),
            tmp_dir=tmp_dir,
            registry=registry or fake_registry,
            project_map=sample_config.study_project_map,
            data_access_team_map=sample_config.study_data_access_team_map,
            task_id="task-1",
        )

    return _make


@pytest.fixture
def survey_columns():
    return (
        ColumnDefinition(name="answer", column_type=ColumnType.STRING, maximum_size=20),
        ColumnDefinition(name="score", column_type=ColumnType.INTEGER),
        ColumnDefinition(name="completed", column_type=ColumnType.BOOLEAN),
    )


@pytest.fixture
def make_record():
    """Factory for record mappings as returned by SqlRecordStore.get_record."""

    def _make(record_id="record-1", **overrides):
        record = {
            "id": record_id,
            "healthCode": f"hc-{record_id}",
            "studyId": "study-a",
            "schemaId": "survey",
            "schemaRevision": 2,
            "createdOn": 1704729600000,
            "uploadDate": "2024-01-08",
            "userExternalId": "ext-1",
            "userDataGroups": {"group-b", "group-a"},
            "userSharingScope": "ALL_QUALIFIED_RESEARCHERS",
            "metadata": json.dumps({"appVersion": "version 1.0.0, build 7", "phoneInfo": "iPhone 12"}),
            "data": json.dumps({"answer": "yes", "score": 7, "completed": True}),
        }
        record.update(overrides)
        return record

    return _make


@pytest.fixture
def mock_table_service():
    """Table service mock that assigns IDs to created columns and tables."""
    service = MagicMock()
    service.is_writable.return_value = True

    def _create_columns(columns):
        return [c.model_copy(update={"id": f"col-{i}"}) for i, c in enumerate(columns)]

    service.create_columns.side_effect = _create_columns
    service.create_table.return_value = "table-1"
    return service


@pytest.fixture
def sql_config(sample_config):
    """Config with Azure SQL server/database set."""
    return sample_config.model_copy(
        update={"azure_sql_server": "test.database.windows.net", "azure_sql_database": "TestDB"}
    )


@pytest.fixture
def mock_connection():
    """Create a mock pyodbc connection with cursor."""
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value = cursor
    conn.__enter__ = MagicMock(return_value=conn)
    conn.__exit__ = MagicMock(return_value=False)
    return conn, cursor
