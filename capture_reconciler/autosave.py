"""
Debounced autosave for an operator edit session.

Each edit resets a single timer; when it expires the pending edits are
written with a read-merge-write, so a ledger action persisted in the
meantime is never clobbered. Closing the session cancels any pending write.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from .config import settings
from .models import Document, LineItem, plain_metadata
from .store import DocumentStore

logger = logging.getLogger(__name__)


class AutosaveSession:
    """One cancellable scheduled write per edit session. Use from inside an event loop."""

    def __init__(
        self,
        store: DocumentStore,
        document_id: str,
        delay: float | None = None,
    ):
        self.store = store
        self.document_id = document_id
        self.delay = settings.AUTOSAVE_DEBOUNCE_SECONDS if delay is None else delay
        self.saves = 0
        self.last_error: Optional[Exception] = None
        self._fields: dict[str, str] = {}
        self._line_items: Optional[list[LineItem]] = None
        self._timer: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def pending(self) -> bool:
        return bool(self._fields) or self._line_items is not None

    def touch(
        self,
        fields: Mapping[str, Any] | None = None,
        line_items: list[LineItem] | None = None,
    ) -> None:
        """Record an edit and restart the debounce timer."""
        if self._closed:
            raise RuntimeError("Autosave session is closed")
        if fields:
            self._fields.update(plain_metadata(dict(fields)))
        if line_items is not None:
            self._line_items = [dict(item) for item in line_items]
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(self._fire_later())

    async def flush(self) -> Optional[Document]:
        """Write pending edits now. Returns the stored document, or None if nothing was pending."""
        self._cancel_timer()
        return self._write()

    async def close(self) -> None:
        """Cancel the pending write without persisting it."""
        self._closed = True
        timer = self._timer
        self._cancel_timer()
        if timer is not None:
            try:
                await timer
            except asyncio.CancelledError:
                pass
        if self.pending:
            logger.info("Autosave for %s closed with unsaved edits discarded", self.document_id)
        self._fields.clear()
        self._line_items = None

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.delay)
        self._timer = None
        try:
            self._write()
        except Exception as e:
            self.last_error = e
            logger.error("Autosave for %s failed: %s", self.document_id, e)

    def _write(self) -> Optional[Document]:
        if not self.pending:
            return None
        fields, line_items = dict(self._fields), self._line_items

        def merge(document: Document) -> Document:
            update: dict[str, Any] = {"fields": {**document.fields, **fields}}
            if line_items is not None:
                update["line_items"] = line_items
            return document.model_copy(update=update)

        # Pending edits are kept until the store accepts them
        document = self.store.update(self.document_id, merge)
        self._fields, self._line_items = {}, None
        self.saves += 1
        logger.debug("Autosaved %d field(s) for %s", len(fields), self.document_id)
        return document
