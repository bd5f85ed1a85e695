"""Local staging storage: run-scoped temporary workspaces and the TSV files inside them."""

from __future__ import annotations

import hashlib
import shutil
import tempfile
from pathlib import Path
from typing import TextIO

from exporter.exceptions import LocalStorageError
from exporter.logging_utils import get_logger

logger = get_logger(__name__)


def sha256_file(path: Path) -> str:
    """Calculate SHA256 hash of a file."""
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def ensure_dir(path: Path) -> None:
    """Create directory if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)


class StagingStorage:
    """Creates, opens and deletes staging artifacts under a base directory."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def create_temp_dir(self, prefix: str = "export-") -> Path:
        try:
            ensure_dir(self.base_dir)
            return Path(tempfile.mkdtemp(prefix=prefix, dir=self.base_dir))
        except OSError as e:
            raise LocalStorageError(f"Failed to create staging workspace: {e}") from e

    def new_file(self, directory: Path, name: str) -> Path:
        return Path(directory) / name

    def open_writer(self, path: Path) -> TextIO:
        """Open a staging file for writing. Raises OSError if it can't be opened."""
        return path.open("w", encoding="utf-8", newline="\n")

    def delete_file(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise LocalStorageError(f"Failed to delete staging file: {e}", details={"path": str(path)}) from e

    def delete_dir(self, path: Path) -> None:
        """Remove a temporary workspace, warning about anything left inside."""
        path = Path(path)
        if not path.exists():
            return
        leftovers = sorted(p.name for p in path.iterdir())
        if leftovers:
            logger.warning(
                "Staging workspace not empty at cleanup",
                extra={"path": str(path), "leftover_files": leftovers},
            )
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise LocalStorageError(f"Failed to delete staging workspace: {e}", details={"path": str(path)}) from e
