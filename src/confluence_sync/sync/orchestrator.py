"""Sync orchestrator: one reconciliation run from remote snapshot to index.

The ``SyncOrchestrator`` ties together the remote source, change
detector, converter, artifact store, uploader, record store and run
ledger.  A run walks a fixed sequence of stages:

1. START     -- open a ``running`` ledger row (fatal on failure).
2. FETCH     -- list every requested collection concurrently.
3. CLASSIFY  -- split items into new / updated / unchanged and find
   deleted records within the successfully fetched collections.
4. PROCESS   -- convert and save an artifact per changed item.
5. UPLOAD    -- push staged artifacts to the external index.
6. PERSIST   -- upsert a record per staged item.
7. DELETE    -- remove artifacts and records of deleted items, then the
   index documents replaced by re-uploads or left by deleted pages.
8. FINALIZE  -- complete (or fail) the ledger row and build the result.

Error handling is per collection, per item and per deletion: a single
failure is recorded as a ``SyncError`` and the run continues.  Anything
escaping those scopes fails the run.  Deletions are applied only after
all creates and updates.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from confluence_sync.core.async_utils import (
    gather_limited,
    run_sync,
    run_sync_limited,
)
from confluence_sync.sync.artifacts import ArtifactStore
from confluence_sync.sync.detector import ChangeDetector
from confluence_sync.sync.ledger import RunLedger
from confluence_sync.sync.models import (
    ChangeKind,
    ChangeSet,
    RemoteItem,
    RunCounts,
    RunResult,
    RunStatus,
    SyncedRecord,
    SyncError,
    SyncOptions,
    SyncStage,
)
from confluence_sync.sync.state import RecordStore, utcnow_iso
from confluence_sync.sync.uploader import (
    StagedUpload,
    UploadHandle,
    Uploader,
    UploadSummary,
)

logger = logging.getLogger(__name__)


class ContentSource(Protocol):
    """Remote collaborator listing the items of one collection."""

    def list_items(self, collection_key: str) -> list[RemoteItem]: ...

    def was_truncated(self, collection_key: str) -> bool: ...


class Converter(Protocol):
    def convert(self, raw_content: str, metadata: RemoteItem) -> str: ...


@dataclass
class _Staged:
    """An item whose artifact was written during PROCESS."""

    item: RemoteItem
    kind: ChangeKind
    location: str
    previous: SyncedRecord | None


@dataclass
class _StaleDocument:
    """An index document superseded by a re-upload or a deletion."""

    item_id: str
    collection_key: str
    name: str


@dataclass
class _Tally:
    added: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    uploaded: int = 0
    upload_failed: int = 0

    def to_counts(self, errors: int) -> RunCounts:
        return RunCounts(
            added=self.added,
            updated=self.updated,
            deleted=self.deleted,
            skipped=self.skipped,
            errors=errors,
            uploaded=self.uploaded,
            upload_failed=self.upload_failed,
        )


def upload_display_name(item: RemoteItem) -> str:
    return f"{item.title} ({item.collection_key})"


class SyncOrchestrator:
    """Run the reconciliation pipeline for a set of collections.

    Args:
        source: Remote content source.
        converter: Markup converter producing artifact text.
        artifacts: Artifact store for converted pages.
        store: Record store (shared with ledger and detector).
        uploader: Upload manager; ``None`` mirrors locally only.
        collection_keys: Collections synced when a run names none.
        ledger: Run ledger, defaults to one over *store*.
        detector: Change detector, defaults to one over *store*.
        max_parallel_fetches: Upper bound on concurrent collection
            fetches.
    """

    def __init__(
        self,
        source: ContentSource,
        converter: Converter,
        artifacts: ArtifactStore,
        store: RecordStore,
        uploader: Uploader | None = None,
        collection_keys: Sequence[str] = (),
        ledger: RunLedger | None = None,
        detector: ChangeDetector | None = None,
        max_parallel_fetches: int = 5,
    ) -> None:
        self.source = source
        self.converter = converter
        self.artifacts = artifacts
        self.store = store
        self.uploader = uploader
        self.collection_keys = list(collection_keys)
        self.ledger = ledger or RunLedger(store)
        self.detector = detector or ChangeDetector(store, artifacts)
        self.max_parallel_fetches = max(1, max_parallel_fetches)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(self, options: SyncOptions | None = None) -> RunResult:
        """Execute one sync run.

        Returns:
            A ``RunResult``; ``success`` is ``True`` whenever the run
            reached FINALIZE, even if individual items failed.

        Raises:
            RecordStoreError: The ledger row could not be opened or
                finalized.
            asyncio.CancelledError: The run was cancelled; its ledger
                row is left ``running``.
        """
        options = options or SyncOptions()
        keys = list(
            dict.fromkeys(
                options.collection_keys
                if options.collection_keys is not None
                else self.collection_keys
            )
        )

        run = self.ledger.start()
        errors: list[SyncError] = []
        tally = _Tally()
        failed_collections: list[str] = []
        total_remote = 0
        unchanged = 0
        handle = UploadHandle()

        logger.info(
            "Sync run %d: %d collections%s",
            run.id,
            len(keys),
            " (force full sync)" if options.force_full_sync else "",
        )

        try:
            items, scope = await self._fetch(
                keys, errors, failed_collections
            )
            total_remote = len(items)

            changes = self._classify(items, scope, options.force_full_sync)
            unchanged = changes.unchanged_count
            tally.skipped = unchanged

            staged = self._process(changes, errors)
            documents = await self._upload(staged, errors, tally, handle)
            stale = self._persist(staged, documents, errors, tally)
            stale += self._delete(changes.to_delete, errors, tally)
            await self._prune_index(stale, errors)
        except asyncio.CancelledError:
            handle.cancel()
            logger.warning("Sync run %d cancelled", run.id)
            raise
        except Exception as exc:
            logger.exception("Sync run %d failed", run.id)
            summary = f"{type(exc).__name__}: {exc}"
            record = self.ledger.fail(
                run.id, summary, tally.to_counts(len(errors))
            )
            return RunResult(
                run_id=run.id,
                success=False,
                status=RunStatus.FAILED,
                counts=record.counts,
                errors=errors,
                started_at=record.started_at,
                completed_at=record.completed_at,
                total_remote_items=total_remote,
                unchanged_count=unchanged,
                failed_collections=failed_collections,
                error_summary=summary,
            )

        record = self.ledger.complete(run.id, tally.to_counts(len(errors)))
        return RunResult(
            run_id=run.id,
            success=True,
            status=RunStatus.COMPLETED,
            counts=record.counts,
            errors=errors,
            started_at=record.started_at,
            completed_at=record.completed_at,
            total_remote_items=total_remote,
            unchanged_count=unchanged,
            failed_collections=failed_collections,
            error_summary=(
                f"{len(errors)} errors during sync" if errors else None
            ),
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _fetch(
        self,
        keys: list[str],
        errors: list[SyncError],
        failed_collections: list[str],
    ) -> tuple[list[RemoteItem], list[str]]:
        """Fetch collections concurrently.

        Returns:
            The concatenated items in requested collection order and the
            deletion scope: collections fetched completely.
        """
        if not keys:
            logger.warning("No collections to sync")
            return [], []

        semaphore = asyncio.Semaphore(self.max_parallel_fetches)

        async def fetch_one(
            key: str,
        ) -> tuple[list[RemoteItem] | None, bool]:
            try:
                items = await run_sync_limited(
                    semaphore, self.source.list_items, key
                )
                truncated = await run_sync(self.source.was_truncated, key)
                return items, truncated
            except Exception as exc:
                logger.error("Failed to fetch collection %s: %s", key, exc)
                errors.append(
                    SyncError(
                        stage=SyncStage.FETCH,
                        collection_key=key,
                        message=str(exc),
                    )
                )
                return None, False

        results = await gather_limited([fetch_one(key) for key in keys])

        items: list[RemoteItem] = []
        scope: list[str] = []
        seen: set[str] = set()
        for key, (fetched, truncated) in zip(keys, results):
            if fetched is None:
                failed_collections.append(key)
                continue
            if truncated:
                logger.warning(
                    "Collection %s listing is incomplete; "
                    "skipping deletion detection for it",
                    key,
                )
            else:
                scope.append(key)
            for item in fetched:
                if item.id in seen:
                    continue
                seen.add(item.id)
                items.append(item)

        logger.info(
            "Fetched %d items from %d collections (%d failed)",
            len(items),
            len(keys) - len(failed_collections),
            len(failed_collections),
        )
        return items, scope

    def _classify(
        self,
        items: list[RemoteItem],
        scope: list[str],
        force_full_sync: bool,
    ) -> ChangeSet:
        if force_full_sync:
            kinds = {
                item.id: (
                    ChangeKind.NEW
                    if self.store.get(item.id) is None
                    else ChangeKind.UPDATED
                )
                for item in items
            }
            changes = ChangeSet(to_create_or_update=items, kinds=kinds)
            logger.info(
                "Force full sync: processing all %d items", len(items)
            )
        else:
            changes = self.detector.classify(items)

        to_delete = self.detector.classify_deletions(items, scope)
        return changes.model_copy(update={"to_delete": to_delete})

    def _process(
        self, changes: ChangeSet, errors: list[SyncError]
    ) -> list[_Staged]:
        staged: list[_Staged] = []
        total = len(changes.to_create_or_update)
        for position, item in enumerate(changes.to_create_or_update, 1):
            kind = changes.kinds.get(item.id, ChangeKind.UPDATED)
            logger.info(
                "[%d/%d] Processing %s page: %s",
                position,
                total,
                kind.value,
                item.title,
            )
            try:
                previous = self.store.get(item.id)
                markdown = self.converter.convert(item.raw_content, item)
                location = self.artifacts.save(
                    item.id, item.collection_key, item.title, markdown
                )
            except Exception as exc:
                logger.error("Failed to process page %s: %s", item.id, exc)
                errors.append(
                    SyncError(
                        stage=SyncStage.PROCESS,
                        item_id=item.id,
                        collection_key=item.collection_key,
                        message=str(exc),
                    )
                )
                continue
            staged.append(_Staged(item, kind, location, previous))
        return staged

    async def _upload(
        self,
        staged: list[_Staged],
        errors: list[SyncError],
        tally: _Tally,
        handle: UploadHandle,
    ) -> dict[str, str]:
        """Upload staged artifacts; returns index document name per item."""
        if not staged:
            return {}
        if self.uploader is None:
            logger.info("No uploader configured; skipping upload stage")
            return {}

        batch = [
            StagedUpload(
                item_id=s.item.id,
                location=s.location,
                display_name=upload_display_name(s.item),
            )
            for s in staged
        ]
        try:
            summary: UploadSummary = await run_sync(
                self.uploader.upload_batch, batch, None, handle
            )
        except Exception as exc:
            logger.error("Upload stage failed: %s", exc)
            errors.append(
                SyncError(stage=SyncStage.UPLOAD, message=str(exc))
            )
            tally.upload_failed = len(batch)
            return {}

        collections = {s.item.id: s.item.collection_key for s in staged}
        for failure in summary.errors:
            errors.append(
                SyncError(
                    stage=SyncStage.UPLOAD,
                    item_id=failure.item_id,
                    collection_key=collections.get(failure.item_id),
                    message=f"{failure.error} "
                    f"(after {failure.attempts} attempts)",
                )
            )
        tally.uploaded = summary.successful
        tally.upload_failed = summary.failed
        return dict(summary.documents)

    def _persist(
        self,
        staged: list[_Staged],
        documents: dict[str, str],
        errors: list[SyncError],
        tally: _Tally,
    ) -> list[_StaleDocument]:
        """Upsert staged records; returns index documents they replaced."""
        stale: list[_StaleDocument] = []
        for entry in staged:
            item, previous = entry.item, entry.previous
            old_ref = previous.external_index_ref if previous else None
            new_ref = documents.get(item.id)
            index_ref = new_ref or old_ref
            record = SyncedRecord(
                id=item.id,
                collection_key=item.collection_key,
                title=item.title,
                version_number=item.version_number,
                last_synced_at=utcnow_iso(),
                artifact_location=entry.location,
                external_index_ref=index_ref,
                source_url=item.source_url,
            )
            try:
                self.store.upsert(record)
            except Exception as exc:
                logger.error("Failed to persist page %s: %s", item.id, exc)
                errors.append(
                    SyncError(
                        stage=SyncStage.PERSIST,
                        item_id=item.id,
                        collection_key=item.collection_key,
                        message=str(exc),
                    )
                )
                continue

            if entry.kind == ChangeKind.NEW:
                tally.added += 1
            else:
                tally.updated += 1
            if new_ref and old_ref and old_ref != new_ref:
                stale.append(
                    _StaleDocument(item.id, item.collection_key, old_ref)
                )

            superseded = previous.artifact_location if previous else None
            if superseded and superseded != entry.location:
                try:
                    self.artifacts.delete(superseded)
                except Exception as exc:
                    logger.warning(
                        "Failed to remove superseded artifact %s: %s",
                        superseded,
                        exc,
                    )
                    errors.append(
                        SyncError(
                            stage=SyncStage.PERSIST,
                            item_id=item.id,
                            collection_key=item.collection_key,
                            message=f"Superseded artifact not removed: {exc}",
                        )
                    )
        return stale

    def _delete(
        self,
        to_delete: list[SyncedRecord],
        errors: list[SyncError],
        tally: _Tally,
    ) -> list[_StaleDocument]:
        """Remove deleted pages; returns the index documents they had."""
        stale: list[_StaleDocument] = []
        for record in to_delete:
            if record.artifact_location:
                try:
                    self.artifacts.delete(record.artifact_location)
                except Exception as exc:
                    logger.error(
                        "Failed to delete artifact for page %s: %s",
                        record.id,
                        exc,
                    )
                    errors.append(
                        SyncError(
                            stage=SyncStage.DELETE,
                            item_id=record.id,
                            collection_key=record.collection_key,
                            message=f"Artifact: {exc}",
                        )
                    )

            try:
                if self.store.delete(record.id):
                    tally.deleted += 1
                    logger.info(
                        "Deleted page %s (%s)", record.title, record.id
                    )
                    if record.external_index_ref:
                        stale.append(
                            _StaleDocument(
                                record.id,
                                record.collection_key,
                                record.external_index_ref,
                            )
                        )
            except Exception as exc:
                logger.error(
                    "Failed to delete record for page %s: %s",
                    record.id,
                    exc,
                )
                errors.append(
                    SyncError(
                        stage=SyncStage.DELETE,
                        item_id=record.id,
                        collection_key=record.collection_key,
                        message=f"Record: {exc}",
                    )
                )
        return stale

    async def _prune_index(
        self, stale: list[_StaleDocument], errors: list[SyncError]
    ) -> None:
        """Delete index documents left behind by updates and deletions."""
        if not stale:
            return
        if self.uploader is None:
            logger.warning(
                "No uploader configured; %d stale index documents kept",
                len(stale),
            )
            return

        for doc in stale:
            try:
                await run_sync(self.uploader.delete_document, doc.name)
            except Exception as exc:
                logger.error(
                    "Failed to delete index document for page %s: %s",
                    doc.item_id,
                    exc,
                )
                errors.append(
                    SyncError(
                        stage=SyncStage.DELETE,
                        item_id=doc.item_id,
                        collection_key=doc.collection_key,
                        message=f"Index document: {exc}",
                    )
                )
