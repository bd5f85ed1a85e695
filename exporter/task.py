"""Export task: the state of one export run shared by the dispatcher and every handler."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING

from exporter.exceptions import ConfigurationError
from exporter.metrics import Metrics
from exporter.models import ExportRequest, TableKey
from exporter.row_buffer import RowBuffer

if TYPE_CHECKING:
    from exporter.handler import TableExportHandler
    from exporter.registry import SqlTableRegistry


class ExportTask:
    """One export run.

    Owns the row buffer of every table the run has touched, keyed by table
    key. Buffers are only reachable through :meth:`get_buffer` and
    :meth:`get_or_create_buffer`; the latter runs the factory at most once
    per key even when several worker threads ask for the same new key.
    Different keys never wait on each other.
    """

    def __init__(
        self,
        request: ExportRequest,
        exporter_date: date,
        tmp_dir: Path,
        registry: SqlTableRegistry,
        project_map: Mapping[str, str],
        data_access_team_map: Mapping[str, str] | None = None,
        metrics: Metrics | None = None,
        task_id: str | None = None,
    ):
        self.task_id = task_id or uuid.uuid4().hex[:12]
        self.request = request
        self.exporter_date = exporter_date
        self.tmp_dir = Path(tmp_dir)
        self.registry = registry
        self.metrics = metrics or Metrics()
        self._project_map = dict(project_map)
        self._data_access_team_map = dict(data_access_team_map or {})

        self._buffers: dict[TableKey, RowBuffer] = {}
        self._buffers_lock = threading.Lock()
        self._key_locks: dict[TableKey, threading.Lock] = {}

        self._handlers: dict[TableKey, TableExportHandler] = {}
        self._pending_writes: list[Future] = []
        self._writes_lock = threading.Lock()

        self._success = False

    def __repr__(self) -> str:
        return f"ExportTask(task_id={self.task_id!r}, exporter_date={self.exporter_date}, request=<{self.request}>)"

    # -- buffers -----------------------------------------------------------

    def get_buffer(self, key: TableKey) -> RowBuffer | None:
        with self._buffers_lock:
            return self._buffers.get(key)

    def get_or_create_buffer(self, key: TableKey, factory: Callable[[], RowBuffer]) -> RowBuffer:
        buffer = self.get_buffer(key)
        if buffer is not None:
            return buffer

        with self._buffers_lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            # Another thread may have finished creating it while we waited.
            buffer = self.get_buffer(key)
            if buffer is not None:
                return buffer
            buffer = factory()
            with self._buffers_lock:
                self._buffers[key] = buffer
            return buffer

    def buffer_keys(self) -> tuple[TableKey, ...]:
        with self._buffers_lock:
            return tuple(self._buffers)

    # -- handlers and outstanding writes ------------------------------------

    def add_pending_write(self, handler: TableExportHandler, future: Future) -> None:
        with self._writes_lock:
            self._handlers.setdefault(handler.key, handler)
            self._pending_writes.append(future)

    def pending_writes(self) -> tuple[Future, ...]:
        with self._writes_lock:
            return tuple(self._pending_writes)

    def handlers(self) -> tuple[TableExportHandler, ...]:
        """Handlers that received at least one record in this run, in first-use order."""
        with self._writes_lock:
            return tuple(self._handlers.values())

    # -- destination lookups ---------------------------------------------------

    def project_id_for_study(self, study_id: str) -> str:
        project_id = self._project_map.get(study_id)
        if not project_id:
            raise ConfigurationError(f"No destination project configured for study {study_id}")
        return project_id

    def data_access_team_for_study(self, study_id: str) -> str:
        team_id = self._data_access_team_map.get(study_id)
        if not team_id:
            raise ConfigurationError(f"No data access team configured for study {study_id}")
        return team_id

    # -- completion ------------------------------------------------------------

    def mark_success(self) -> None:
        self._success = True

    @property
    def success(self) -> bool:
        return self._success
