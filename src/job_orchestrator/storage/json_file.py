"""JSON file storage backend.

The whole database is one JSON document. Each call reads the file, applies
its change and rewrites the file through a temp file + ``os.replace`` so a
crash never leaves a half-written document behind.

Single-writer only: the lock is process-local, so two processes pointed at the
same file can lose each other's writes. Use the PostgreSQL backend when more
than one process writes.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from job_orchestrator.errors import StorageError
from job_orchestrator.storage.document import Document, DocumentStorage, empty_document
from job_orchestrator.storage.models import COLLECTIONS

logger = logging.getLogger(__name__)


class JsonFileStorage(DocumentStorage):
    """Persist jobs, steps, local tasks and job logs in a single JSON file."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        if not str(path):
            raise ValueError("path is required")
        self.path = Path(path)

    def migrate(self) -> None:
        """Create the file (and parent directory) or add missing collections."""
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageError(f"Cannot create data directory: {exc}") from exc
            if self.path.exists():
                document = self._load()
                logger.info("storage event=loaded backend=json_file path=%s", self.path)
            else:
                document = empty_document()
                logger.info("storage event=initialised backend=json_file path=%s", self.path)
            self._save(document)

    def close(self) -> None:
        return None

    def ping(self) -> bool:
        try:
            self._snapshot()
        except StorageError:
            return False
        return True

    def _load(self) -> Document:
        if not self.path.exists():
            return empty_document()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read data file {self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise StorageError(f"Data file {self.path} does not contain a JSON object")
        document = empty_document()
        for name in COLLECTIONS:
            rows = raw.get(name)
            if isinstance(rows, list):
                document[name] = [row for row in rows if isinstance(row, dict)]
        return document

    def _save(self, document: Document) -> None:
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
        except OSError as exc:
            raise StorageError(f"Cannot write data file {self.path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(tmp_name, self.path)
        except (OSError, TypeError, ValueError) as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"Cannot write data file {self.path}: {exc}") from exc
