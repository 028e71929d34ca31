"""In-memory storage backend for tests and storage-less development."""

from __future__ import annotations

import copy

from job_orchestrator.errors import StorageError
from job_orchestrator.storage.document import Document, DocumentStorage, empty_document


class InMemoryStorage(DocumentStorage):
    """Process-scoped document store.

    State lives on the instance and only exists between ``migrate()`` and
    ``close()``, so each test (or app instance) gets its own isolated store.
    """

    def __init__(self) -> None:
        super().__init__()
        self._document: Document | None = None

    def migrate(self) -> None:
        with self._lock:
            if self._document is None:
                self._document = empty_document()

    def close(self) -> None:
        with self._lock:
            self._document = None

    def ping(self) -> bool:
        return self._document is not None

    def _load(self) -> Document:
        if self._document is None:
            raise StorageError("In-memory storage is not initialised; call migrate() first")
        return copy.deepcopy(self._document)

    def _save(self, document: Document) -> None:
        self._document = document
