"""Synchronization core.

Reconciles a remote wiki snapshot with the local mirror (record store
plus Markdown artifacts) and projects the mirror into the external
search index.

Architecture
------------
Change detection is **version-counter based**: a remote page is new when
no record exists for its id, updated when its version is higher than the
recorded one (or its title changed at the same version) and unchanged
otherwise.  Deletions are detected only within collections that were
fetched completely in the current run.

Modules:

- ``orchestrator`` -- ``SyncOrchestrator``: runs one sync pass.
- ``detector``     -- ``ChangeDetector``: classification and drift.
- ``state``        -- ``RecordStore``: JSON persistence.
- ``ledger``       -- ``RunLedger``: run history.
- ``artifacts``    -- ``ArtifactStore``: Markdown files on disk.
- ``uploader``     -- ``Uploader``: bounded polling and retries.
- ``models``       -- data contracts.
- ``reporter``     -- human-readable and JSON report formatting.

Usage example
-------------
::

    import asyncio
    from pathlib import Path
    from confluence_sync.converters import ConfluenceConverter
    from confluence_sync.sync import (
        ArtifactStore, RecordStore, SyncOrchestrator, format_run_report,
    )

    store = RecordStore(Path("data/confluence-sync.json")).open()
    orchestrator = SyncOrchestrator(
        source=confluence_client,    # ConfluenceClient instance
        converter=ConfluenceConverter(),
        artifacts=ArtifactStore(Path("data/confluence-content")),
        store=store,
        uploader=None,               # mirror locally only
        collection_keys=["DEV"],
    )
    result = asyncio.run(orchestrator.run())
    print(format_run_report(result))
"""

from .artifacts import ArtifactStore, sanitize_filename
from .detector import ChangeDetector, classify_item
from .ledger import RunLedger
from .models import (
    ChangeKind,
    ChangeSet,
    DriftReport,
    IndexRef,
    RemoteItem,
    RunCounts,
    RunRecord,
    RunResult,
    RunStatus,
    SyncedRecord,
    SyncError,
    SyncOptions,
    SyncStage,
)
from .orchestrator import SyncOrchestrator
from .reporter import (
    format_drift_report,
    format_run_history,
    format_run_report,
    report_to_json,
)
from .state import RecordStore
from .uploader import (
    OperationPoller,
    StagedUpload,
    UploadHandle,
    Uploader,
    UploadSummary,
)

__all__ = [
    "ArtifactStore",
    "ChangeDetector",
    "ChangeKind",
    "ChangeSet",
    "DriftReport",
    "IndexRef",
    "OperationPoller",
    "RecordStore",
    "RemoteItem",
    "RunCounts",
    "RunLedger",
    "RunRecord",
    "RunResult",
    "RunStatus",
    "StagedUpload",
    "SyncError",
    "SyncOptions",
    "SyncOrchestrator",
    "SyncStage",
    "SyncedRecord",
    "UploadHandle",
    "UploadSummary",
    "Uploader",
    "classify_item",
    "format_drift_report",
    "format_run_history",
    "format_run_report",
    "report_to_json",
    "sanitize_filename",
]
