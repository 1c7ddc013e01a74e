"""Change detection between a remote snapshot and the record store.

Change detection is metadata based: the remote version counter is the
source of truth, with the title as a secondary signal for renames that
do not bump the version.  Content is never hashed or diffed.

Deletion detection is always scoped to collections that were part of
the current fetch so that syncing a subset of spaces can never remove
records belonging to the others.

The detector only reads from its stores.  A failed read propagates to
the caller and aborts the run.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from confluence_sync.sync.artifacts import ArtifactStore
from confluence_sync.sync.models import (
    ChangeKind,
    ChangeSet,
    DriftReport,
    RemoteItem,
    SyncedRecord,
)
from confluence_sync.sync.state import RecordStore

logger = logging.getLogger(__name__)


def classify_item(
    item: RemoteItem, record: SyncedRecord | None
) -> ChangeKind:
    """Classify one remote item against its synced record.

    Rules, in order:

    1. No record -- ``NEW``.
    2. Remote version lower than the synced one -- data inconsistency,
       logged and treated as ``UNCHANGED``.
    3. Remote version higher -- ``UPDATED``.
    4. Same version but different title (rename without version bump)
       -- ``UPDATED``.
    5. Otherwise ``UNCHANGED``.

    Titles are only compared for the same id; an item is never matched
    to a record by title alone.
    """
    if record is None:
        return ChangeKind.NEW

    if item.version_number < record.version_number:
        logger.warning(
            "Page %s reports version %d but version %d was already "
            "synced; ignoring the downgrade",
            item.id,
            item.version_number,
            record.version_number,
        )
        return ChangeKind.UNCHANGED

    if item.version_number > record.version_number:
        return ChangeKind.UPDATED

    if item.title != record.title:
        return ChangeKind.UPDATED

    return ChangeKind.UNCHANGED


def _deleted_among(
    records: Iterable[SyncedRecord], remote_ids: set[str]
) -> list[SyncedRecord]:
    return [r for r in records if r.id not in remote_ids]


class ChangeDetector:
    """Classify remote items and detect deletions and artifact drift.

    Args:
        store: Record store to compare against.
        artifacts: Artifact store, required only for
            ``find_artifact_drift``.
    """

    def __init__(
        self,
        store: RecordStore,
        artifacts: ArtifactStore | None = None,
    ) -> None:
        self.store = store
        self.artifacts = artifacts

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, remote_items: Sequence[RemoteItem]) -> ChangeSet:
        """Split *remote_items* into items to process and unchanged ones.

        Input order is preserved.  ``to_delete`` is left empty; use
        ``detect`` to classify deletions in the same pass.
        """
        to_process: list[RemoteItem] = []
        kinds: dict[str, ChangeKind] = {}
        unchanged = 0

        for item in remote_items:
            kind = classify_item(item, self.store.get(item.id))
            if kind == ChangeKind.UNCHANGED:
                unchanged += 1
                continue
            to_process.append(item)
            kinds[item.id] = kind

        changes = ChangeSet(
            to_create_or_update=to_process,
            unchanged_count=unchanged,
            kinds=kinds,
        )
        logger.info(
            "Detected changes for %d pages: %d new, %d updated, "
            "%d unchanged",
            len(remote_items),
            changes.new_count,
            changes.updated_count,
            unchanged,
        )
        return changes

    def classify_deletions(
        self,
        remote_items: Sequence[RemoteItem],
        collection_keys: Iterable[str] | None = None,
    ) -> list[SyncedRecord]:
        """Return records that disappeared from the fetched collections.

        Args:
            remote_items: Items fetched in this pass.
            collection_keys: Collections whose fetch succeeded.  When
                omitted the scope is derived from ``remote_items``, so a
                collection with no items is never examined.  Pass it
                explicitly to include legitimately empty collections.

        Returns:
            Records in scope whose id is absent from *remote_items*.
        """
        if collection_keys is None:
            scope = list(dict.fromkeys(i.collection_key for i in remote_items))
        else:
            scope = list(dict.fromkeys(collection_keys))

        remote_ids = {i.id for i in remote_items}
        deleted: list[SyncedRecord] = []
        for key in scope:
            deleted.extend(
                _deleted_among(self.store.get_by_collection(key), remote_ids)
            )

        if deleted:
            logger.info("Detected %d deleted pages", len(deleted))
            for record in deleted:
                logger.info("  - %s (%s)", record.title, record.id)
        return deleted

    def classify_deletions_in_collection(
        self, collection_key: str, remote_items: Sequence[RemoteItem]
    ) -> list[SyncedRecord]:
        """Deletion check restricted to a single collection.

        Items belonging to other collections are ignored and records of
        other collections are never examined.
        """
        remote_ids = {
            i.id for i in remote_items if i.collection_key == collection_key
        }
        return _deleted_among(
            self.store.get_by_collection(collection_key), remote_ids
        )

    def detect(
        self,
        remote_items: Sequence[RemoteItem],
        collection_keys: Iterable[str] | None = None,
    ) -> ChangeSet:
        """Classify items and deletions in one ``ChangeSet``."""
        changes = self.classify(remote_items)
        return changes.model_copy(
            update={
                "to_delete": self.classify_deletions(
                    remote_items, collection_keys
                )
            }
        )

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    def find_missing_artifacts(self) -> list[SyncedRecord]:
        """Records whose artifact location does not resolve to a file."""
        artifacts = self._require_artifacts()
        return [
            r
            for r in self.store.get_all()
            if not artifacts.exists(r.artifact_location)
        ]

    def find_orphaned_artifacts(self) -> list[str]:
        """Artifact locations not referenced by any record."""
        artifacts = self._require_artifacts()
        referenced = {
            r.artifact_location
            for r in self.store.get_all()
            if r.artifact_location
        }
        return [loc for loc in artifacts.list() if loc not in referenced]

    def find_artifact_drift(self) -> DriftReport:
        """Full-table scan for missing and orphaned artifacts."""
        report = DriftReport(
            missing_artifacts=self.find_missing_artifacts(),
            orphaned_artifacts=self.find_orphaned_artifacts(),
        )
        if report.has_drift:
            logger.warning(
                "Artifact drift: %d missing, %d orphaned",
                len(report.missing_artifacts),
                len(report.orphaned_artifacts),
            )
        return report

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summarize(self, remote_items: Sequence[RemoteItem]) -> dict:
        """Summarise pending work without changing anything.

        Returns:
            Dict with ``total``, ``synced``, ``changes`` (new, updated,
            deleted), ``issues`` (missing_artifacts) and ``needs_sync``.
        """
        changes = self.detect(remote_items)
        missing = (
            len(self.find_missing_artifacts())
            if self.artifacts is not None
            else 0
        )
        return {
            "total": len(remote_items),
            "synced": self.store.count(),
            "changes": {
                "new": changes.new_count,
                "updated": changes.updated_count,
                "deleted": len(changes.to_delete),
            },
            "issues": {"missing_artifacts": missing},
            "needs_sync": not changes.is_empty or missing > 0,
        }

    def _require_artifacts(self) -> ArtifactStore:
        if self.artifacts is None:
            raise RuntimeError(
                "ChangeDetector was created without an ArtifactStore"
            )
        return self.artifacts
