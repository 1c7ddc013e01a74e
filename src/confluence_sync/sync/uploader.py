"""Upload staged artifacts to the external search index.

Each upload starts a long-running indexing operation which is polled at
a fixed interval until it finishes, with a hard timeout.  Failed uploads
are retried a bounded number of times with exponential backoff.  One
item failing never stops the rest of the batch.

Cancellation is cooperative: an ``UploadHandle`` passed to
``upload_batch`` can be cancelled from another thread, which stops the
current poll loop and abandons the remaining items.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel
from tenacity import (
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from confluence_sync.errors import (
    IndexingError,
    UploadCancelledError,
    UploadError,
    UploadTimeoutError,
)
from confluence_sync.sync.models import IndexRef

if TYPE_CHECKING:
    from confluence_sync.core.index import GeminiIndexClient

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_POLL_TIMEOUT = 300.0
DEFAULT_MAX_RETRIES = 3


class StagedUpload(BaseModel):
    """An artifact waiting to be uploaded."""

    item_id: str
    location: str
    display_name: str
    mime_type: str = "text/markdown"

    model_config = {"frozen": True}


class UploadFailure(BaseModel):
    item_id: str
    display_name: str
    error: str
    attempts: int

    model_config = {"frozen": True}


class UploadSummary(BaseModel):
    """Aggregate outcome of ``Uploader.upload_batch``.

    Attributes:
        total: Number of items in the batch.
        successful: Items indexed successfully.
        failed: Items that failed after all retries (or were abandoned).
        errors: Per-item failure details.
        documents: Index document name per successfully uploaded item.
    """

    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[UploadFailure] = []
    documents: dict[str, str] = {}

    model_config = {"frozen": True}


class UploadHandle:
    """Cancellation token shared between the caller and the uploader."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; return ``True`` if cancelled."""
        return self._event.wait(timeout)


def operation_document_name(operation: Any) -> str | None:
    """Return the indexed document name carried by a finished upload.

    ``None`` when the operation carries no document reference; the
    operation's own name is not a document and is never returned.
    """
    response = getattr(operation, "response", None)
    name = getattr(response, "document_name", None)
    return str(name) if name else None


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(getattr(error, "message", None) or error)


class OperationPoller:
    """Poll a long-running operation until done, cancelled or timed out.

    Args:
        index: Client exposing ``poll_operation(operation)``.
        interval: Seconds between polls.
        timeout: Hard ceiling in seconds for one operation.
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        index: GeminiIndexClient,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_POLL_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.index = index
        self.interval = interval
        self.timeout = timeout
        self._clock = clock

    def poll(
        self, operation: Any, handle: UploadHandle | None = None
    ) -> Any:
        """Return the finished operation.

        Raises:
            UploadTimeoutError: The operation was not done in time.
            UploadCancelledError: *handle* was cancelled.
            UploadError: Refreshing the operation failed.
            IndexingError: The operation finished with an error.
        """
        deadline = self._clock() + self.timeout
        polls = 0
        while not getattr(operation, "done", False):
            if handle is not None and handle.cancelled:
                raise UploadCancelledError("Upload cancelled")
            if self._clock() >= deadline:
                raise UploadTimeoutError(
                    f"Operation timed out after {self.timeout:g} seconds"
                )

            if handle is not None:
                if handle.wait(self.interval):
                    raise UploadCancelledError("Upload cancelled")
            elif self.interval > 0:
                time.sleep(self.interval)

            try:
                operation = self.index.poll_operation(operation)
            except Exception as exc:
                raise UploadError(
                    f"Operation polling failed: {exc}"
                ) from exc
            polls += 1
            logger.debug(
                "Polled operation (%d): done=%s",
                polls,
                getattr(operation, "done", False),
            )

        error = getattr(operation, "error", None)
        if error:
            raise IndexingError(f"Operation failed: {_error_message(error)}")
        return operation


class Uploader:
    """Upload artifacts into the configured search index.

    Args:
        index: External index client.
        index_name: Display name of the index to get or create.
        poll_interval: Seconds between operation polls.
        poll_timeout: Hard ceiling per upload operation.
        max_retries: Attempts per item before it counts as failed.
        backoff: Base delay in seconds for exponential backoff between
            attempts (1, 2, 4, ... times *backoff*).
    """

    def __init__(
        self,
        index: GeminiIndexClient,
        index_name: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: float = 1.0,
        poller: OperationPoller | None = None,
    ) -> None:
        self.index = index
        self.index_name = index_name
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.poller = poller or OperationPoller(
            index, interval=poll_interval, timeout=poll_timeout
        )

    def get_index(self) -> IndexRef:
        return self.index.get_or_create_index(self.index_name)

    def upload_file(
        self,
        location: str,
        index_ref: IndexRef,
        display_name: str,
        mime_type: str = "text/markdown",
        handle: UploadHandle | None = None,
    ) -> Any:
        """Upload one artifact and block until it is indexed.

        Raises:
            FileNotFoundError: The artifact does not exist.
            UploadError: Upload, polling or indexing failed.
        """
        if not Path(location).is_file():
            raise FileNotFoundError(f"File not found: {location}")

        logger.info("Uploading: %s", display_name)
        operation = self.index.upload_item(
            location, index_ref, display_name, mime_type
        )
        operation = self.poller.poll(operation, handle)
        logger.info("Upload complete: %s", display_name)
        return operation

    def upload_batch(
        self,
        items: Sequence[StagedUpload],
        index_ref: IndexRef | None = None,
        handle: UploadHandle | None = None,
    ) -> UploadSummary:
        """Upload *items* one after another with per-item retries.

        Args:
            items: Staged artifacts in processing order.
            index_ref: Target index; resolved via ``get_index`` when
                omitted.  Failure to resolve it propagates.
            handle: Optional cancellation token.

        Returns:
            An ``UploadSummary`` with counts and per-item errors.
        """
        if not items:
            return UploadSummary()

        ref = index_ref or self.get_index()
        logger.info(
            "Uploading %d files (max %d attempts each)",
            len(items),
            self.max_retries,
        )

        successful = 0
        errors: list[UploadFailure] = []
        documents: dict[str, str] = {}

        for position, item in enumerate(items, start=1):
            if handle is not None and handle.cancelled:
                errors.append(
                    UploadFailure(
                        item_id=item.item_id,
                        display_name=item.display_name,
                        error="Upload cancelled",
                        attempts=0,
                    )
                )
                continue

            logger.debug("[%d/%d] %s", position, len(items), item.display_name)
            attempts = 0
            try:
                for attempt in self._retrying(handle):
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        if attempts > 1:
                            logger.info(
                                "Retry %d/%d: %s",
                                attempts,
                                self.max_retries,
                                item.display_name,
                            )
                        operation = self.upload_file(
                            item.location,
                            ref,
                            item.display_name,
                            item.mime_type,
                            handle,
                        )
            except Exception as exc:
                logger.error(
                    "Upload failed: %s (%s)", item.display_name, exc
                )
                errors.append(
                    UploadFailure(
                        item_id=item.item_id,
                        display_name=item.display_name,
                        error=str(exc),
                        attempts=attempts,
                    )
                )
                continue

            successful += 1
            document = operation_document_name(operation)
            if document:
                documents[item.item_id] = document

        summary = UploadSummary(
            total=len(items),
            successful=successful,
            failed=len(errors),
            errors=errors,
            documents=documents,
        )
        logger.info(
            "Upload complete: %d successful, %d failed",
            summary.successful,
            summary.failed,
        )
        return summary

    def delete_document(self, name: str) -> None:
        """Remove one indexed document, retrying transient failures.

        Raises:
            UploadError: The document could not be deleted.
        """
        try:
            for attempt in self._retrying(None):
                with attempt:
                    self.index.delete_document(name)
        except Exception as exc:
            raise UploadError(
                f"Cannot delete index document {name}: {exc}"
            ) from exc
        logger.info("Deleted index document: %s", name)

    def _retrying(self, handle: UploadHandle | None) -> Retrying:
        def _sleep(seconds: float) -> None:
            if handle is not None:
                handle.wait(seconds)
            elif seconds > 0:
                time.sleep(seconds)

        return Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=self.backoff, min=self.backoff, max=30
            ),
            retry=retry_if_not_exception_type(
                (FileNotFoundError, UploadCancelledError)
            ),
            sleep=_sleep,
            reraise=True,
        )
