"""Exception hierarchy for confluence_sync.

Recoverable errors (one collection, one item, one deletion) are caught
by the orchestrator and recorded on the run result.  Anything raised
from the record store while starting or finalizing a run is fatal and
reaches the caller.
"""


class ConfluenceSyncError(Exception):
    """Base class for all confluence_sync errors."""


class RecordStoreError(ConfluenceSyncError):
    """The record store could not be read, written or queried."""


class RemoteSourceError(ConfluenceSyncError):
    """The remote content source rejected or failed a request."""


class RemoteItemError(ConfluenceSyncError, ValueError):
    """A remote payload is missing fields required by ``RemoteItem``."""


class ConversionError(ConfluenceSyncError):
    """Raw page markup could not be converted to Markdown."""


class ArtifactError(ConfluenceSyncError):
    """An artifact could not be written to the content directory."""


class UploadError(ConfluenceSyncError):
    """Uploading an artifact to the external index failed."""


class UploadTimeoutError(UploadError):
    """The indexing operation did not finish within the poll timeout."""


class UploadCancelledError(UploadError):
    """The upload was abandoned through its cancel handle."""


class IndexingError(UploadError):
    """The index accepted the upload but reported an indexing failure."""
