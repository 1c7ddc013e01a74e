"""Pydantic models for the synchronization core.

Defines the data contracts shared by the detector, orchestrator, ledger
and reporter:

- ``RemoteItem``: A page as reported by the remote source for one pass.
- ``SyncedRecord``: Durable mirror of a previously synced page.
- ``ChangeSet``: Output of one classification pass.
- ``RunRecord`` / ``RunCounts`` / ``RunStatus``: Run ledger rows.
- ``SyncError`` / ``SyncStage``: Recoverable errors collected in a run.
- ``SyncOptions`` / ``RunResult``: Orchestrator input and output.
- ``IndexRef``: Cached reference to the external search index.
- ``DriftReport``: Disagreements between records and artifacts.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from confluence_sync.errors import RemoteItemError


class ChangeKind(str, Enum):
    """Classification of one item relative to the record store."""

    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"


class RunStatus(str, Enum):
    """Lifecycle status of a run ledger row."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncStage(str, Enum):
    """Orchestrator stage in which a recoverable error occurred."""

    FETCH = "fetch"
    CLASSIFY = "classify"
    PROCESS = "process"
    UPLOAD = "upload"
    PERSIST = "persist"
    DELETE = "delete"
    FINALIZE = "finalize"


# ---------------------------------------------------------------------------
# Remote and local item state
# ---------------------------------------------------------------------------


class RemoteItem(BaseModel):
    """A page as reported by the remote source at sync time.

    Attributes:
        id: Stable page identifier.
        collection_key: Key of the space the page belongs to.
        title: Current page title.
        version_number: Remote version counter, source of truth for
            change detection.
        raw_content: Storage-format markup body.
        lineage: Ancestor titles, root first.
        collection_name: Human-readable space name, when reported.
        source_url: Browser URL of the page, when known.
        last_updated: ISO 8601 timestamp of the last remote edit.
    """

    id: str = Field(min_length=1)
    collection_key: str = Field(min_length=1)
    title: str
    version_number: int = Field(ge=1)
    raw_content: str = ""
    lineage: list[str] = []
    collection_name: str | None = None
    source_url: str | None = None
    last_updated: str | None = None

    model_config = {"frozen": True}

    @classmethod
    def from_confluence_page(
        cls, page: dict[str, Any], base_url: str = ""
    ) -> RemoteItem:
        """Validate a Confluence REST ``content`` payload.

        Args:
            page: One entry of a ``/content`` response, expanded with
                ``body.storage,version,space,ancestors,history.lastUpdated``.
            base_url: Confluence base URL used to build ``source_url``.

        Returns:
            A typed ``RemoteItem``.

        Raises:
            RemoteItemError: If ``id``, ``title``, ``space.key`` or
                ``version.number`` is missing or malformed.
        """
        space = page.get("space") or {}
        version = page.get("version") or {}
        missing = [
            name
            for name, value in (
                ("id", page.get("id")),
                ("title", page.get("title")),
                ("space.key", space.get("key")),
                ("version.number", version.get("number")),
            )
            if value in (None, "")
        ]
        if missing:
            raise RemoteItemError(
                f"Page {page.get('id', '?')} is missing required fields: "
                + ", ".join(missing)
            )

        body = (page.get("body") or {}).get("storage") or {}
        links = page.get("_links") or {}
        webui = links.get("webui")
        history = (page.get("history") or {}).get("lastUpdated") or {}

        try:
            version_number = int(version["number"])
        except (TypeError, ValueError):
            raise RemoteItemError(
                f"Page {page['id']} has a non-numeric version: "
                f"{version['number']!r}"
            ) from None

        try:
            return cls(
                id=str(page["id"]),
                collection_key=str(space["key"]),
                title=str(page["title"]),
                version_number=version_number,
                raw_content=body.get("value") or "",
                lineage=[
                    str(a.get("title", ""))
                    for a in page.get("ancestors") or []
                ],
                collection_name=space.get("name"),
                source_url=(
                    f"{base_url.rstrip('/')}/wiki{webui}"
                    if webui and base_url
                    else None
                ),
                last_updated=history.get("when") or version.get("when"),
            )
        except ValueError as exc:
            raise RemoteItemError(
                f"Page {page['id']} failed validation: {exc}"
            ) from exc


class SyncedRecord(BaseModel):
    """Durable mirror of one previously synced page.

    Attributes:
        id: Primary key, equal to ``RemoteItem.id``.
        collection_key: Space the page was synced from.
        title: Title at last successful sync.
        version_number: Version that was last successfully synced.
        last_synced_at: ISO 8601 timestamp of the last sync.
        artifact_location: Path of the converted Markdown artifact.
        external_index_ref: Index document name, when uploaded.
        source_url: Browser URL of the page.
    """

    id: str
    collection_key: str
    title: str
    version_number: int
    last_synced_at: str
    artifact_location: str | None = None
    external_index_ref: str | None = None
    source_url: str | None = None

    model_config = {"frozen": True}


class ChangeSet(BaseModel):
    """Result of classifying a remote snapshot against the record store.

    Attributes:
        to_create_or_update: Items needing processing, in fetch order.
        to_delete: Records no longer present remotely.
        unchanged_count: Number of items classified UNCHANGED.
        kinds: Classification (NEW or UPDATED) of every emitted item.
    """

    to_create_or_update: list[RemoteItem] = []
    to_delete: list[SyncedRecord] = []
    unchanged_count: int = 0
    kinds: dict[str, ChangeKind] = {}

    model_config = {"frozen": True}

    @property
    def new_count(self) -> int:
        """Number of items never synced before."""
        return sum(1 for k in self.kinds.values() if k == ChangeKind.NEW)

    @property
    def updated_count(self) -> int:
        """Number of previously synced items that changed."""
        return sum(
            1 for k in self.kinds.values() if k == ChangeKind.UPDATED
        )

    @property
    def is_empty(self) -> bool:
        """True when nothing needs to be created, updated or deleted."""
        return not self.to_create_or_update and not self.to_delete


# ---------------------------------------------------------------------------
# Run ledger
# ---------------------------------------------------------------------------


class RunCounts(BaseModel):
    """Outcome counters for one run."""

    added: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    uploaded: int = 0
    upload_failed: int = 0

    model_config = {"frozen": True}


class RunRecord(BaseModel):
    """One row of the run ledger.

    Attributes:
        id: Monotonically increasing run id.
        started_at: ISO 8601 timestamp when the run started.
        completed_at: ISO 8601 timestamp when the run ended, if it has.
        counts: Outcome counters (zero while running).
        status: Lifecycle status.
        error_summary: Failure reason for failed runs.
    """

    id: int
    started_at: str
    completed_at: str | None = None
    counts: RunCounts = Field(default_factory=RunCounts)
    status: RunStatus = RunStatus.RUNNING
    error_summary: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Orchestrator input / output
# ---------------------------------------------------------------------------


class SyncError(BaseModel):
    """A recoverable error collected during a run."""

    stage: SyncStage
    item_id: str | None = None
    collection_key: str | None = None
    message: str

    model_config = {"frozen": True}

    def describe(self) -> str:
        """One-line description used in reports and logs."""
        subject = self.item_id or self.collection_key
        if self.item_id and self.collection_key:
            subject = f"{self.collection_key}/{self.item_id}"
        prefix = f"[{self.stage.value}]"
        if subject:
            prefix += f" {subject}"
        return f"{prefix}: {self.message}"


class SyncOptions(BaseModel):
    """Options for one orchestrator run.

    Attributes:
        force_full_sync: Process every fetched item regardless of
            version. Deletions are still computed normally.
        collection_keys: Collections to sync; ``None`` means all
            configured collections.
    """

    force_full_sync: bool = False
    collection_keys: list[str] | None = None

    model_config = {"frozen": True}


class RunResult(BaseModel):
    """Outcome of one orchestrator run, mirroring its ledger row."""

    run_id: int
    success: bool
    status: RunStatus
    counts: RunCounts = Field(default_factory=RunCounts)
    errors: list[SyncError] = []
    started_at: str
    completed_at: str | None = None
    total_remote_items: int = 0
    unchanged_count: int = 0
    failed_collections: list[str] = []
    error_summary: str | None = None

    model_config = {"frozen": True}

    @property
    def processed(self) -> int:
        """Items added or updated in this run."""
        return self.counts.added + self.counts.updated

    @property
    def has_errors(self) -> bool:
        """True when at least one recoverable error was recorded."""
        return bool(self.errors)


class IndexRef(BaseModel):
    """Cached reference to the external search index."""

    name: str
    display_name: str
    created_at: str
    last_used_at: str | None = None

    model_config = {"frozen": True}


class DriftReport(BaseModel):
    """Inconsistencies between the record store and the artifact store.

    Attributes:
        missing_artifacts: Records whose artifact no longer exists.
        orphaned_artifacts: Artifact locations no record references.
    """

    missing_artifacts: list[SyncedRecord] = []
    orphaned_artifacts: list[str] = []

    model_config = {"frozen": True}

    @property
    def has_drift(self) -> bool:
        """True when any inconsistency was found."""
        return bool(self.missing_artifacts or self.orphaned_artifacts)
