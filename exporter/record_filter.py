"""Decides which records a run skips."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from exporter.exceptions import RecordDataError
from exporter.logging_utils import get_logger
from exporter.metrics import Metrics
from exporter.models import ExportRequest, SharingMode, SharingScope
from exporter.tables import schema_key_for_record

logger = get_logger(__name__)


class RecordFilter:
    def should_exclude_record(self, metrics: Metrics, request: ExportRequest, record: Mapping[str, Any]) -> bool:
        """True if the record should not be exported by this run.

        Every exclusion bumps ``excluded[<reason>]`` in the run's metrics.
        """
        record_id = record.get("id")

        if not self._passes_sharing_mode(request.sharing_mode, record.get("userSharingScope")):
            metrics.increment_counter("excluded[sharingScope]")
            logger.debug("Record excluded by sharing scope", extra={"record_id": record_id})
            return True

        if request.study_whitelist is not None and record.get("studyId") not in request.study_whitelist:
            metrics.increment_counter("excluded[studyWhitelist]")
            logger.debug("Record excluded by study whitelist", extra={"record_id": record_id})
            return True

        if request.table_whitelist is not None:
            try:
                schema_key = schema_key_for_record(record)
            except RecordDataError:
                schema_key = None
            if schema_key not in request.table_whitelist:
                metrics.increment_counter("excluded[tableWhitelist]")
                logger.debug("Record excluded by table whitelist", extra={"record_id": record_id})
                return True

        return False

    @staticmethod
    def _passes_sharing_mode(mode: SharingMode, scope: str | None) -> bool:
        if mode is SharingMode.ALL:
            return True
        try:
            sharing_scope = SharingScope(scope)
        except ValueError:
            # Unknown or missing scope is treated as not shared.
            sharing_scope = SharingScope.NO_SHARING
        if mode is SharingMode.PUBLIC_ONLY:
            return sharing_scope is SharingScope.ALL_QUALIFIED_RESEARCHERS
        return sharing_scope is not SharingScope.NO_SHARING
