"""Gemini File Search client used as the external search index.

Thin wrapper over ``google-genai``: it creates (once) the File Search
store that receives page artifacts, starts uploads and refreshes
long-running upload operations.  The store reference is cached in the
record store so repeated runs never create duplicate indexes.
"""

from __future__ import annotations

import logging
from typing import Any

from google import genai

from confluence_sync.sync.models import IndexRef
from confluence_sync.sync.state import RecordStore, utcnow_iso

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "text/markdown"


class GeminiIndexClient:
    """Create File Search stores and upload artifacts into them.

    Args:
        api_key: Google AI API key.
        store: Record store holding the cached index reference.
        client: Pre-built ``genai.Client`` (tests inject a fake).
    """

    def __init__(
        self,
        api_key: str,
        store: RecordStore,
        client: Any = None,
    ) -> None:
        self.store = store
        self._client = (
            client if client is not None else genai.Client(api_key=api_key)
        )

    def get_or_create_index(self, display_name: str) -> IndexRef:
        """Return the cached index reference or create a new index.

        Idempotent: an index is only created when no reference is
        cached.  The cached reference's ``last_used_at`` is refreshed.
        """
        cached = self.store.touch_index_ref()
        if cached is not None:
            logger.info("Using existing File Search store: %s", cached.name)
            return cached

        logger.info("Creating File Search store '%s'", display_name)
        created = self._client.file_search_stores.create(
            config={"display_name": display_name}
        )
        now = utcnow_iso()
        ref = IndexRef(
            name=created.name,
            display_name=getattr(created, "display_name", None)
            or display_name,
            created_at=now,
            last_used_at=now,
        )
        self.store.save_index_ref(ref)
        logger.info("Created File Search store: %s", ref.name)
        return ref

    def upload_item(
        self,
        location: str,
        index_ref: IndexRef,
        display_name: str,
        mime_type: str = DEFAULT_MIME_TYPE,
    ) -> Any:
        """Start uploading one artifact; returns the pending operation."""
        return self._client.file_search_stores.upload_to_file_search_store(
            file=location,
            file_search_store_name=index_ref.name,
            config={"display_name": display_name, "mime_type": mime_type},
        )

    def poll_operation(self, operation: Any) -> Any:
        """Fetch the current state of a long-running operation."""
        return self._client.operations.get(operation)

    def delete_document(self, name: str) -> None:
        """Delete one document (and its chunks) from a File Search store."""
        self._client.file_search_stores.documents.delete(
            name=name, config={"force": True}
        )

    def delete_index(self, name: str) -> None:
        """Delete a File Search store and forget the cached reference."""
        self._client.file_search_stores.delete(
            name=name, config={"force": True}
        )
        cached = self.store.get_index_ref()
        if cached is not None and cached.name == name:
            self.store.clear_index_ref()
        logger.info("Deleted File Search store: %s", name)
