"""Tests for exporter.record_filter -- sharing mode, study and table whitelists."""

from datetime import date

import pytest

from exporter.metrics import Metrics
from exporter.models import ExportRequest, SharingMode, UploadSchemaKey
from exporter.record_filter import RecordFilter


def _request(**kwargs):
    return ExportRequest(date=date(2024, 1, 8), **kwargs)


@pytest.mark.parametrize(
    "mode, scope, excluded",
    [
        (SharingMode.SHARED, "NO_SHARING", True),
        (SharingMode.SHARED, "SPONSORS_AND_PARTNERS", False),
        (SharingMode.SHARED, "ALL_QUALIFIED_RESEARCHERS", False),
        (SharingMode.SHARED, None, True),
        (SharingMode.PUBLIC_ONLY, "NO_SHARING", True),
        (SharingMode.PUBLIC_ONLY, "SPONSORS_AND_PARTNERS", True),
        (SharingMode.PUBLIC_ONLY, "ALL_QUALIFIED_RESEARCHERS", False),
        (SharingMode.ALL, "NO_SHARING", False),
        (SharingMode.ALL, None, False),
    ],
)
def test_sharing_mode(mode, scope, excluded, make_record):
    metrics = Metrics()
    record = make_record(userSharingScope=scope)
    assert RecordFilter().should_exclude_record(metrics, _request(sharing_mode=mode), record) is excluded
    assert metrics.counter("excluded[sharingScope]") == (1 if excluded else 0)


class TestWhitelists:
    def test_study_not_in_whitelist(self, make_record):
        metrics = Metrics()
        request = _request(study_whitelist=["study-b"])
        assert RecordFilter().should_exclude_record(metrics, request, make_record()) is True
        assert metrics.counter("excluded[studyWhitelist]") == 1

    def test_study_in_whitelist(self, make_record):
        request = _request(study_whitelist=["study-a", "study-b"])
        assert RecordFilter().should_exclude_record(Metrics(), request, make_record()) is False

    def test_table_in_whitelist(self, make_record):
        request = _request(table_whitelist=[UploadSchemaKey(study_id="study-a", schema_id="survey", revision=2)])
        assert RecordFilter().should_exclude_record(Metrics(), request, make_record()) is False

    def test_other_revision_excluded(self, make_record):
        metrics = Metrics()
        request = _request(table_whitelist=[UploadSchemaKey(study_id="study-a", schema_id="survey", revision=1)])
        assert RecordFilter().should_exclude_record(metrics, request, make_record()) is True
        assert metrics.counter("excluded[tableWhitelist]") == 1

    def test_record_without_schema_excluded_by_table_whitelist(self, make_record):
        request = _request(table_whitelist=[UploadSchemaKey(study_id="study-a", schema_id="survey", revision=2)])
        record = make_record(schemaId=None)
        assert RecordFilter().should_exclude_record(Metrics(), request, record) is True

    def test_no_whitelists(self, make_record):
        assert RecordFilter().should_exclude_record(Metrics(), _request(), make_record()) is False
