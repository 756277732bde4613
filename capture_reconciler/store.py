"""
Record store seam — where reconciled documents are persisted.

Every write is read-merge-write under a per-document lock: the mutator
receives the CURRENT stored document, never a caller's stale copy. That is
what lets an operator's ledger action win over a slower recomputation.
The set of stored ids is guarded by a separate registry lock, which is
only ever held briefly and never while waiting on a document lock.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Callable, Protocol

from .exceptions import DocumentExportedError, DocumentNotFoundError
from .models import Document

logger = logging.getLogger(__name__)

Mutator = Callable[[Document], Document]


def _not_found(document_id: str) -> DocumentNotFoundError:
    return DocumentNotFoundError(
        f"Document {document_id} not found", details={"document_id": document_id}
    )


def _exported(document_id: str) -> DocumentExportedError:
    return DocumentExportedError(
        f"Document {document_id} has been exported", details={"document_id": document_id}
    )


class DocumentStore(Protocol):
    def get(self, document_id: str) -> Document: ...

    def put(self, document: Document) -> Document: ...

    def update(self, document_id: str, mutator: Mutator) -> Document: ...


class InMemoryDocumentStore:
    """Thread-safe in-process store. Returns copies; never hands out stored objects."""

    def __init__(self, documents: list[Document] | None = None):
        self._documents: dict[str, Document] = {}
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()
        for document in documents or []:
            self.put(document)

    def _lock_for(self, document_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks[document_id]

    def __contains__(self, document_id: object) -> bool:
        with self._registry_lock:
            return document_id in self._documents

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._documents)

    def get(self, document_id: str) -> Document:
        with self._lock_for(document_id):
            document = self._documents.get(document_id)
            if document is None:
                raise _not_found(document_id)
            return document.model_copy(deep=True)

    def put(self, document: Document) -> Document:
        """Register or replace a document (exported documents cannot be replaced)."""
        with self._lock_for(document.id):
            current = self._documents.get(document.id)
            if current is not None and current.exported:
                raise _exported(document.id)
            stored = document.model_copy(deep=True)
            with self._registry_lock:
                self._documents[document.id] = stored
            logger.debug("Stored document %s", document.id)
            return document.model_copy(deep=True)

    def update(self, document_id: str, mutator: Mutator) -> Document:
        """Apply `mutator` to the stored document and persist its result.

        Raises:
            DocumentNotFoundError: no such document.
            DocumentExportedError: the document has been exported.
        """
        with self._lock_for(document_id):
            current = self._documents.get(document_id)
            if current is None:
                raise _not_found(document_id)
            if current.exported:
                raise _exported(document_id)
            updated = mutator(current.model_copy(deep=True))
            stored = updated.model_copy(deep=True)
            with self._registry_lock:
                self._documents[document_id] = stored
            return updated
