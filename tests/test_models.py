"""Tests for exporter.models -- request validation, JSON parsing, schema keys, columns."""

import json
from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from exporter.exceptions import BadRequestError
from exporter.models import ColumnDefinition, ColumnType, ExportRequest, SharingMode, TableKey, UploadSchemaKey

START = datetime(2024, 1, 8, 0, 0, tzinfo=timezone.utc)
END = datetime(2024, 1, 8, 6, 0, tzinfo=timezone.utc)


class TestExportRequestRecordSource:
    def test_date_only(self):
        request = ExportRequest(date=date(2024, 1, 8))
        assert request.sharing_mode is SharingMode.SHARED
        assert request.redrive_count == 0

    def test_time_window_with_whitelist(self):
        request = ExportRequest(start_date_time=START, end_date_time=END, study_whitelist=["study-a"])
        assert request.study_whitelist == frozenset({"study-a"})

    def test_record_id_override(self):
        assert ExportRequest(record_id_override="ids.txt").record_id_override == "ids.txt"

    def test_no_source(self):
        with pytest.raises(ValidationError, match="Exactly one of date, start/endDateTime, and recordIdOverride"):
            ExportRequest()

    def test_blank_override_counts_as_absent(self):
        with pytest.raises(ValidationError, match="Exactly one of"):
            ExportRequest(record_id_override="   ")

    def test_date_and_override(self):
        with pytest.raises(ValidationError, match="Exactly one of"):
            ExportRequest(date=date(2024, 1, 8), record_id_override="ids.txt")

    def test_date_and_window(self):
        with pytest.raises(ValidationError, match="Exactly one of"):
            ExportRequest(date=date(2024, 1, 8), start_date_time=START, end_date_time=END, study_whitelist=["a"])

    def test_start_without_end(self):
        with pytest.raises(ValidationError, match="both be specified or both be absent"):
            ExportRequest(start_date_time=START, study_whitelist=["a"])

    def test_start_not_before_end(self):
        with pytest.raises(ValidationError, match="startDateTime must be before endDateTime"):
            ExportRequest(start_date_time=END, end_date_time=START, study_whitelist=["a"])

    def test_start_equal_end(self):
        with pytest.raises(ValidationError, match="startDateTime must be before endDateTime"):
            ExportRequest(start_date_time=START, end_date_time=START, study_whitelist=["a"])

    def test_window_requires_whitelist(self):
        with pytest.raises(ValidationError, match="studyWhitelist must also be specified"):
            ExportRequest(start_date_time=START, end_date_time=END)


class TestExportRequestOverrides:
    def test_both_overrides(self):
        request = ExportRequest(
            date=date(2024, 1, 8),
            registry_prefix_override="test_",
            project_override_map={"study-a": "p"},
        )
        assert request.project_override_map == {"study-a": "p"}

    def test_prefix_without_map(self):
        with pytest.raises(ValidationError, match="registryPrefixOverride and projectOverrideMap"):
            ExportRequest(date=date(2024, 1, 8), registry_prefix_override="test_")

    def test_map_without_prefix(self):
        with pytest.raises(ValidationError, match="registryPrefixOverride and projectOverrideMap"):
            ExportRequest(date=date(2024, 1, 8), project_override_map={"study-a": "p"})

    def test_empty_map(self):
        with pytest.raises(ValidationError, match="projectOverrideMap is specified, it can't be empty"):
            ExportRequest(date=date(2024, 1, 8), registry_prefix_override="test_", project_override_map={})

    def test_empty_study_whitelist(self):
        with pytest.raises(ValidationError, match="studyWhitelist is specified, it can't be empty"):
            ExportRequest(date=date(2024, 1, 8), study_whitelist=[])

    def test_empty_table_whitelist(self):
        with pytest.raises(ValidationError, match="tableWhitelist is specified, it can't be empty"):
            ExportRequest(date=date(2024, 1, 8), table_whitelist=[])


class TestExportRequestJson:
    def test_from_json(self):
        request = ExportRequest.from_json(json.dumps({
            "date": "2024-01-08",
            "sharingMode": "ALL",
            "redriveCount": 2,
            "tag": "nightly",
            "tableWhitelist": [{"studyId": "study-a", "schemaId": "survey", "revision": 2}],
        }))
        assert request.date == date(2024, 1, 8)
        assert request.sharing_mode is SharingMode.ALL
        assert request.table_whitelist == frozenset({UploadSchemaKey(study_id="study-a", schema_id="survey", revision=2)})

    def test_json_round_trip(self):
        request = ExportRequest(start_date_time=START, end_date_time=END, study_whitelist=["study-a"], tag="t")
        assert ExportRequest.from_json(request.to_json()) == request

    def test_blank_body(self):
        with pytest.raises(BadRequestError, match="blank"):
            ExportRequest.from_json("  ")

    def test_not_json(self):
        with pytest.raises(BadRequestError, match="Invalid export request"):
            ExportRequest.from_json("{not json")

    def test_unknown_field(self):
        with pytest.raises(BadRequestError):
            ExportRequest.from_json(json.dumps({"date": "2024-01-08", "bogus": 1}))

    def test_validation_message_in_details(self):
        with pytest.raises(BadRequestError) as exc_info:
            ExportRequest.from_json("{}")
        assert any("Exactly one of" in msg for msg in exc_info.value.details["errors"])

    def test_immutable(self):
        request = ExportRequest(date=date(2024, 1, 8))
        with pytest.raises(ValidationError):
            request.tag = "changed"


class TestExportRequestStr:
    def test_date(self):
        request = ExportRequest(date=date(2024, 1, 8), redrive_count=1, tag="nightly")
        assert str(request) == "date=2024-01-08, redriveCount=1, tag=nightly"

    def test_window(self):
        request = ExportRequest(start_date_time=START, end_date_time=END, study_whitelist=["a"])
        assert str(request).startswith("startDateTime=2024-01-08T00:00:00+00:00, endDateTime=")

    def test_override(self):
        assert str(ExportRequest(record_id_override="ids.txt")).startswith("recordIdOverride=ids.txt")


class TestUploadSchemaKey:
    def test_str(self):
        assert str(UploadSchemaKey(study_id="s", schema_id="sc", revision=3)) == "s-sc-v3"

    def test_parse(self):
        assert UploadSchemaKey.parse("s:sc:3") == UploadSchemaKey(study_id="s", schema_id="sc", revision=3)

    def test_parse_wrong_shape(self):
        with pytest.raises(ValueError, match="STUDY:SCHEMA:REVISION"):
            UploadSchemaKey.parse("s:sc")

    def test_revision_must_be_positive(self):
        with pytest.raises(ValidationError):
            UploadSchemaKey(study_id="s", schema_id="sc", revision=0)


class TestColumnDefinition:
    def test_to_api(self):
        column = ColumnDefinition(name="answer", column_type=ColumnType.STRING, maximum_size=20)
        assert column.to_api() == {"name": "answer", "columnType": "STRING", "maximumSize": 20}

    def test_from_api(self):
        column = ColumnDefinition.model_validate({"id": "7", "name": "score", "columnType": "INTEGER"})
        assert column.id == "7"
        assert column.column_type is ColumnType.INTEGER
        assert column.maximum_size is None


def test_table_key_str():
    assert str(TableKey("data_tables", "schemaKey", "s-sc-v1")) == "data_tables/s-sc-v1"
