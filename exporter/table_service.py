"""REST client for the remote table service: columns, tables, ACLs and bulk TSV upload."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from tenacity import (
    Retrying,
    before_sleep_log,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)
from urllib3.util.retry import Retry

from exporter.config import ExporterConfig
from exporter.exceptions import APIConnectionError, APIResponseError, APITimeoutError, UploadNotReadyError
from exporter.logging_utils import get_logger, log_operation
from exporter.models import ColumnDefinition

logger = get_logger(__name__)

WRITABLE_STATUS = "READ_WRITE"

ACCESS_TYPE_ALL = (
    "CHANGE_PERMISSIONS", "CHANGE_SETTINGS", "CREATE", "DELETE", "DOWNLOAD",
    "MODERATE", "READ", "READ_PRIVATE_SUBMISSION", "SEND_MESSAGE", "UPDATE", "UPLOAD",
)
ACCESS_TYPE_READ = ("READ", "DOWNLOAD")


def create_http_session(config: ExporterConfig) -> requests.Session:
    """Create a requests session that retries idempotent reads."""
    session = requests.Session()

    retry_strategy = Retry(
        total=config.api_max_retries,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        backoff_factor=1,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=10, pool_maxsize=config.worker_count + 2)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({
        "Authorization": f"Bearer {config.table_service_api_key}",
        "Accept": "application/json",
    })
    return session


def _is_retryable_read(error: BaseException) -> bool:
    """Connection failures are retried for GET requests only."""
    return isinstance(error, APIConnectionError) and error.details.get("method") == "GET"


@retry(
    retry=retry_if_exception(_is_retryable_read),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def send_request(
    session: requests.Session,
    method: str,
    url: str,
    timeout: int,
    **kwargs: Any,
) -> requests.Response:
    """Send one request, mapping transport and HTTP failures to APIError subclasses."""
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except requests.exceptions.Timeout as e:
        raise APITimeoutError(f"Table service request timed out after {timeout}s", details={"url": url}) from e
    except requests.exceptions.ConnectionError as e:
        raise APIConnectionError(
            f"Failed to connect to table service: {e}",
            details={"url": url, "method": method.upper()},
        ) from e

    try:
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        raise APIResponseError(
            f"Table service returned error status {response.status_code}",
            details={"url": url, "status_code": response.status_code, "response": response.text[:500]},
        ) from e
    return response


def _json(response: requests.Response) -> dict:
    try:
        body = response.json()
    except ValueError as e:
        raise APIResponseError("Table service returned invalid JSON", details={"url": response.url}) from e
    if not isinstance(body, dict):
        raise APIResponseError(f"Unexpected response type: {type(body).__name__}", details={"url": response.url})
    return body


class TableServiceClient:
    """Thin client over the table service endpoints the exporter needs."""

    def __init__(self, config: ExporterConfig, session: requests.Session | None = None):
        self.config = config
        self.base_url = config.table_service_base_url
        self.session = session or create_http_session(config)

    def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        return send_request(
            self.session,
            method,
            f"{self.base_url}{path}",
            timeout=self.config.api_timeout_seconds,
            **kwargs,
        )

    def is_writable(self) -> bool:
        body = _json(self._call("GET", "/status"))
        status = body.get("status")
        if status != WRITABLE_STATUS:
            logger.warning("Table service is not writable", extra={"status": status})
            return False
        return True

    def get_columns(self, table_id: str) -> list[ColumnDefinition]:
        body = _json(self._call("GET", f"/entity/{table_id}/column"))
        return [ColumnDefinition.model_validate(c) for c in body.get("results", [])]

    def create_columns(self, columns: list[ColumnDefinition]) -> list[ColumnDefinition]:
        payload = {"list": [c.to_api() for c in columns]}
        body = _json(self._call("POST", "/column/batch", json=payload))
        return [ColumnDefinition.model_validate(c) for c in body.get("list", [])]

    def create_table(self, name: str, parent_id: str, column_ids: list[str]) -> str:
        payload = {
            "name": name,
            "parentId": parent_id,
            "columnIds": column_ids,
            "concreteType": "TableEntity",
        }
        body = _json(self._call("POST", "/entity", json=payload))
        table_id = body.get("id")
        if not table_id:
            raise APIResponseError("Created table has no id", details={"name": name})
        logger.info("Created remote table", extra={"table_name": name, "table_id": table_id})
        return table_id

    def set_access_control(self, table_id: str, owner_principal_id: str, reader_principal_id: str) -> None:
        payload = {
            "id": table_id,
            "resourceAccess": [
                {"principalId": owner_principal_id, "accessType": list(ACCESS_TYPE_ALL)},
                {"principalId": reader_principal_id, "accessType": list(ACCESS_TYPE_READ)},
            ],
        }
        self._call("POST", f"/entity/{table_id}/acl", json=payload)

    def bulk_upload(self, project_id: str, table_id: str, path: Path) -> int:
        """Upload a TSV file into a table and return the number of rows the service processed."""
        with log_operation(logger, "bulk_upload", table_id=table_id, path=str(path)):
            with path.open("rb") as f:
                file_body = _json(self._call(
                    "POST",
                    "/file",
                    files={"file": (path.name, f, "text/tab-separated-values")},
                    data={"parentId": project_id},
                ))
            file_handle_id = file_body.get("id")
            if not file_handle_id:
                raise APIResponseError("File upload returned no file handle", details={"table_id": table_id})

            start_body = _json(self._call(
                "POST",
                f"/entity/{table_id}/table/upload/csv/async/start",
                json={
                    "tableId": table_id,
                    "uploadFileHandleId": file_handle_id,
                    "csvTableDescriptor": {"separator": "\t", "isFirstLineHeader": True},
                },
            ))
            token = start_body.get("token")
            if not token:
                raise APIResponseError("Upload job returned no token", details={"table_id": table_id})

            result = self._wait_for_upload(table_id, token)
            try:
                return int(result["rowsProcessed"])
            except (KeyError, TypeError, ValueError) as e:
                raise APIResponseError(
                    "Upload result has no rowsProcessed",
                    details={"table_id": table_id, "result": result},
                ) from e

    def _poll_upload(self, table_id: str, token: str) -> dict:
        response = self._call("GET", f"/entity/{table_id}/table/upload/csv/async/get/{token}")
        if response.status_code == 202:
            raise UploadNotReadyError("Upload job still running", details={"table_id": table_id, "token": token})
        return _json(response)

    def _wait_for_upload(self, table_id: str, token: str) -> dict:
        retrying = Retrying(
            retry=retry_if_exception_type(UploadNotReadyError),
            stop=stop_after_attempt(self.config.upload_poll_max_attempts),
            wait=wait_fixed(self.config.upload_poll_interval_seconds),
            reraise=True,
        )
        return retrying(self._poll_upload, table_id, token)
