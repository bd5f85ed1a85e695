"""Row buffer: the local TSV staging file for one table within one export run."""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from enum import Enum
from pathlib import Path
from typing import TextIO

from exporter.exceptions import BufferInitError, BufferWriteError, RowBufferError

_SEPARATOR = "\t"
_LINE_BREAKS = str.maketrans({"\t": " ", "\r": " ", "\n": " "})


def _tsv_value(value: object) -> str:
    if value is None:
        return ""
    return str(value).translate(_LINE_BREAKS)


def format_tsv_line(column_names: Sequence[str], row: Mapping[str, object]) -> str:
    """Flatten a row into one TSV line in column order.

    Missing columns are written as empty strings and keys that aren't columns
    are dropped, so rows stay readable after a table's schema drifts.
    """
    return _SEPARATOR.join(_tsv_value(row.get(name)) for name in column_names)


class BufferState(str, Enum):
    READY = "READY"
    FAILED = "FAILED"
    COMMITTED = "COMMITTED"


class RowBuffer:
    """Append-only TSV file plus its line count and the IDs of the records in it.

    The header line is written when the buffer is created. A buffer built
    with :meth:`failed` has no file; every operation on it re-raises the
    stored initialization error.
    """

    def __init__(
        self,
        column_names: Sequence[str] | None,
        path: Path | None,
        writer: TextIO | None,
        init_error: BufferInitError | None = None,
    ):
        self._column_names = tuple(column_names or ())
        self._path = path
        self._writer = writer
        self._init_error = init_error
        self._lock = threading.Lock()
        self._line_count = 0
        self._record_ids: list[str] = []
        self._write_error: OSError | None = None

        if init_error is not None:
            self._state = BufferState.FAILED
            return

        self._state = BufferState.READY
        try:
            writer.write(_SEPARATOR.join(_tsv_value(name) for name in self._column_names) + "\n")
        except OSError as e:
            writer.close()
            self._writer = None
            self._init_error = BufferInitError(f"Failed to write TSV header: {e}", details={"path": str(path)})
            self._state = BufferState.FAILED

    @classmethod
    def open(cls, column_names: Sequence[str], path: Path, open_writer) -> "RowBuffer":
        """Create the staging file and write its header.

        If the file can't be opened the returned buffer is in the failed state.
        """
        try:
            writer = open_writer(path)
        except OSError as e:
            return cls.failed(BufferInitError(f"Failed to open TSV file: {e}", details={"path": str(path)}))
        return cls(column_names, path, writer)

    @classmethod
    def failed(cls, error: BufferInitError) -> "RowBuffer":
        return cls(None, None, None, init_error=error)

    @property
    def state(self) -> BufferState:
        return self._state

    @property
    def init_error(self) -> BufferInitError | None:
        return self._init_error

    @property
    def column_names(self) -> tuple[str, ...]:
        return self._column_names

    @property
    def path(self) -> Path | None:
        return self._path

    def check_init(self) -> None:
        if self._init_error is not None:
            raise BufferInitError(
                f"TSV was not successfully initialized: {self._init_error.message}",
                details=self._init_error.details,
            ) from self._init_error

    def append_row(self, row: Mapping[str, object], record_id: str | None = None) -> None:
        """Write one row. Safe to call from several worker threads at once."""
        self.check_init()
        line = format_tsv_line(self._column_names, row) + "\n"

        with self._lock:
            if self._state is not BufferState.READY:
                raise RowBufferError(f"Can't append to a {self._state.value} buffer", details={"path": str(self._path)})
            try:
                self._writer.write(line)
            except OSError as e:
                # A partial line may now be on disk; finalize() must refuse this file.
                self._write_error = e
                raise
            self._line_count += 1
            if record_id is not None:
                self._record_ids.append(record_id)

    def finalize(self) -> None:
        """Flush and close the file. Raises if any write to it ever failed."""
        self.check_init()
        with self._lock:
            if self._writer is None or self._writer.closed:
                return
            try:
                self._writer.flush()
            except OSError as e:
                self._write_error = e
            finally:
                try:
                    self._writer.close()
                except OSError as e:
                    self._write_error = self._write_error or e

            if self._write_error is not None:
                raise BufferWriteError(
                    f"TSV writer has error: {self._write_error}",
                    details={"path": str(self._path), "line_count": self._line_count},
                )

    def mark_committed(self) -> None:
        with self._lock:
            self._state = BufferState.COMMITTED

    def line_count(self) -> int:
        with self._lock:
            return self._line_count

    def record_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._record_ids)
