"""Tests for the sync orchestrator.

Covers:
- First run adds every page; second identical run is a no-op
- Version bumps, renames (superseded artifact removed) and deletions
- Per-item and per-collection failures are recorded and isolated
- A record write or delete that fails is not persisted by a later write
- Failed and truncated collections are excluded from deletion scope
- Force full sync still computes deletions
- Upload stage: documents recorded, per-item failures, uploader failure,
  superseded and deleted index documents removed,
  local-only mode
- Failures escaping a stage fail the run; ledger failures propagate
- Cancellation leaves the ledger row running and cancels uploads
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from confluence_sync.errors import (
    ArtifactError,
    RecordStoreError,
    UploadError,
)
from confluence_sync.sync.models import (
    RunStatus,
    SyncOptions,
    SyncStage,
)
from confluence_sync.sync.orchestrator import (
    SyncOrchestrator,
    upload_display_name,
)
from confluence_sync.sync.state import RecordStore
from confluence_sync.sync.uploader import UploadFailure, UploadSummary


class RecordingUploader:
    """Uploader double returning a canned summary."""

    def __init__(
        self,
        fail_ids=(),
        error: Exception | None = None,
        undeletable=(),
    ):
        self.fail_ids = set(fail_ids)
        self.error = error
        self.undeletable = set(undeletable)
        self.batches: list[list] = []
        self.deleted: list[str] = []
        self.handle = None

    def delete_document(self, name):
        if name in self.undeletable:
            raise UploadError(f"Cannot delete index document {name}")
        self.deleted.append(name)

    def upload_batch(self, items, index_ref=None, handle=None):
        self.batches.append(list(items))
        self.handle = handle
        if self.error is not None:
            raise self.error
        failures = [
            UploadFailure(
                item_id=i.item_id,
                display_name=i.display_name,
                error="Operation failed: unsupported",
                attempts=3,
            )
            for i in items
            if i.item_id in self.fail_ids
        ]
        documents = {
            i.item_id: f"docs/{i.item_id}"
            for i in items
            if i.item_id not in self.fail_ids
        }
        return UploadSummary(
            total=len(items),
            successful=len(documents),
            failed=len(failures),
            errors=failures,
            documents=documents,
        )


def _fail_nth_save(store, n):
    """Wrap the real write so that only the *n*-th call fails."""
    real_save = store._save
    calls = itertools.count(1)

    def _save():
        if next(calls) == n:
            raise RecordStoreError("disk full")
        real_save()

    return _save


@pytest.fixture
def build(store, artifacts, fake_source, fake_converter):
    """Factory wiring an orchestrator over fakes."""

    def _build(collections, uploader=None, converter=None, **source_kw):
        source = fake_source(collections, **source_kw)
        orchestrator = SyncOrchestrator(
            source=source,
            converter=converter or fake_converter(),
            artifacts=artifacts,
            store=store,
            uploader=uploader,
            collection_keys=list(collections) + list(
                source_kw.get("failing", ())
            ),
        )
        return orchestrator, source

    return _build


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestIncrementalSync:
    async def test_first_run_adds_everything(
        self, build, store, artifacts, make_item
    ):
        orchestrator, _ = build(
            {
                "DEV": [make_item("1"), make_item("2")],
                "OPS": [make_item("3", "OPS")],
            }
        )
        result = await orchestrator.run()

        assert result.success
        assert result.status == RunStatus.COMPLETED
        assert result.counts.added == 3
        assert result.counts.errors == 0
        assert result.total_remote_items == 3
        assert result.error_summary is None
        assert store.count() == 3
        assert len(artifacts.list()) == 3

        record = store.get("1")
        assert record.version_number == 1
        assert Path(record.artifact_location).is_file()
        assert store.get_last_run().status == RunStatus.COMPLETED

    async def test_second_run_is_noop(self, build, store, make_item):
        collections = {"DEV": [make_item("1"), make_item("2")]}
        orchestrator, _ = build(collections)
        await orchestrator.run()
        before = {r.id: r.last_synced_at for r in store.get_all()}

        converter = orchestrator.converter
        converter.converted.clear()
        result = await orchestrator.run()

        assert result.success
        assert result.counts.added == 0
        assert result.counts.updated == 0
        assert result.counts.deleted == 0
        assert result.counts.skipped == 2
        assert result.unchanged_count == 2
        assert converter.converted == []
        assert {r.id: r.last_synced_at for r in store.get_all()} == before

    async def test_version_bump_updates(
        self, build, store, make_item, make_record
    ):
        store.upsert(make_record("1", version=1))
        orchestrator, _ = build({"DEV": [make_item("1", version=2)]})
        result = await orchestrator.run()

        assert result.counts.updated == 1
        assert store.get("1").version_number == 2

    async def test_rename_removes_superseded_artifact(
        self, build, store, artifacts, make_item
    ):
        orchestrator, source = build({"DEV": [make_item("1", title="Old")]})
        await orchestrator.run()
        old_location = store.get("1").artifact_location

        source.collections["DEV"] = [make_item("1", title="New")]
        result = await orchestrator.run()

        new_location = store.get("1").artifact_location
        assert result.counts.updated == 1
        assert new_location != old_location
        assert not Path(old_location).exists()
        assert artifacts.list() == [new_location]

    async def test_deleted_page_removed(
        self, build, store, artifacts, make_item
    ):
        orchestrator, source = build({"DEV": [make_item("1"), make_item("2")]})
        await orchestrator.run()
        gone = store.get("2").artifact_location

        source.collections["DEV"] = [make_item("1")]
        result = await orchestrator.run()

        assert result.counts.deleted == 1
        assert store.get("2") is None
        assert not Path(gone).exists()

    async def test_emptied_collection_deletes_all_records(
        self, build, store, make_item
    ):
        orchestrator, source = build({"DEV": [make_item("1")]})
        await orchestrator.run()

        source.collections["DEV"] = []
        result = await orchestrator.run()

        assert result.counts.deleted == 1
        assert store.count() == 0

    async def test_collection_override_and_dedupe(self, build, make_item):
        orchestrator, source = build(
            {"DEV": [make_item("1")], "OPS": [make_item("2", "OPS")]}
        )
        result = await orchestrator.run(
            SyncOptions(collection_keys=["OPS", "OPS"])
        )
        assert source.calls == ["OPS"]
        assert result.total_remote_items == 1

    async def test_duplicate_ids_processed_once(self, build, make_item):
        orchestrator, _ = build(
            {"DEV": [make_item("1")], "OPS": [make_item("1", "OPS")]}
        )
        result = await orchestrator.run()
        assert result.total_remote_items == 1
        assert result.counts.added == 1

    async def test_no_collections(
        self, store, artifacts, fake_source, fake_converter
    ):
        orchestrator = SyncOrchestrator(
            fake_source(), fake_converter(), artifacts, store
        )
        result = await orchestrator.run()
        assert result.success
        assert result.total_remote_items == 0


# ---------------------------------------------------------------------------
# Force full sync
# ---------------------------------------------------------------------------


class TestForceFullSync:
    async def test_reprocesses_everything_and_deletes(
        self, build, store, make_item, make_record
    ):
        store.upsert(make_record("1", version=3))
        store.upsert(make_record("9", version=1))
        orchestrator, _ = build(
            {"DEV": [make_item("1", version=3), make_item("2")]}
        )

        result = await orchestrator.run(SyncOptions(force_full_sync=True))

        assert result.counts.added == 1
        assert result.counts.updated == 1
        assert result.counts.deleted == 1
        assert result.counts.skipped == 0
        assert store.get("9") is None


# ---------------------------------------------------------------------------
# Error isolation
# ---------------------------------------------------------------------------


class TestErrorIsolation:
    async def test_conversion_failure_isolated(
        self, build, store, fake_converter, make_item
    ):
        orchestrator, _ = build(
            {"DEV": [make_item("1"), make_item("2"), make_item("3")]},
            converter=fake_converter(failing={"2"}),
        )
        result = await orchestrator.run()

        assert result.success
        assert result.counts.added == 2
        assert result.counts.errors == 1
        assert result.error_summary == "1 errors during sync"
        error = result.errors[0]
        assert error.stage == SyncStage.PROCESS
        assert error.item_id == "2"
        assert store.get("2") is None

        # Retried on the next run
        orchestrator.converter.failing.clear()
        result = await orchestrator.run()
        assert result.counts.added == 1

    async def test_failed_collection_excluded_from_deletion(
        self, build, store, make_item, make_record
    ):
        store.upsert(make_record("1", "DEV"))
        orchestrator, _ = build(
            {"OPS": [make_item("2", "OPS")]}, failing={"DEV"}
        )
        result = await orchestrator.run()

        assert result.success
        assert result.failed_collections == ["DEV"]
        assert result.errors[0].stage == SyncStage.FETCH
        assert result.errors[0].collection_key == "DEV"
        assert result.counts.deleted == 0
        assert store.get("1") is not None
        assert store.get("2") is not None

    async def test_truncated_collection_excluded_from_deletion(
        self, build, store, make_item, make_record
    ):
        store.upsert(make_record("1", "DEV"))
        orchestrator, _ = build(
            {"DEV": [make_item("2")]}, truncated={"DEV"}
        )
        result = await orchestrator.run()

        assert result.counts.added == 1
        assert result.counts.deleted == 0
        assert store.get("1") is not None

    async def test_persist_failure_recorded(self, build, store, make_item):
        orchestrator, _ = build({"DEV": [make_item("1")]})
        with patch.object(
            store, "upsert", side_effect=RecordStoreError("disk full")
        ):
            result = await orchestrator.run()

        assert result.success
        assert result.counts.added == 0
        assert result.errors[0].stage == SyncStage.PERSIST

    async def test_failed_record_write_not_persisted_later(
        self, build, store, make_item
    ):
        orchestrator, _ = build({"DEV": [make_item("1"), make_item("2")]})
        with patch.object(
            store, "_save", side_effect=_fail_nth_save(store, 2)
        ):
            result = await orchestrator.run()

        assert [e.stage for e in result.errors] == [SyncStage.PERSIST]
        assert result.counts.added == 1
        assert store.get("1") is None
        reopened = RecordStore(store.path).open()
        assert reopened.get("1") is None
        assert reopened.get("2") is not None

    async def test_failed_record_delete_not_persisted_later(
        self, build, store, make_record
    ):
        store.upsert(make_record("8"))
        store.upsert(make_record("9"))
        orchestrator, _ = build({"DEV": []})
        with patch.object(
            store, "_save", side_effect=_fail_nth_save(store, 2)
        ):
            result = await orchestrator.run()

        assert [e.stage for e in result.errors] == [SyncStage.DELETE]
        assert result.counts.deleted == 1
        reopened = RecordStore(store.path).open()
        assert reopened.get("8") is not None
        assert reopened.get("9") is None

    async def test_artifact_delete_failure_still_removes_record(
        self, build, store, artifacts, make_record
    ):
        location = artifacts.save("1", "DEV", "x", "text")
        store.upsert(make_record("1", artifact_location=location))
        orchestrator, _ = build({"DEV": []})

        with patch.object(
            artifacts, "delete", side_effect=ArtifactError("busy")
        ):
            result = await orchestrator.run()

        assert result.counts.deleted == 1
        assert result.errors[0].stage == SyncStage.DELETE
        assert store.get("1") is None

    async def test_stage_failure_fails_run(self, build, store, make_item):
        orchestrator, _ = build({"DEV": [make_item("1")]})
        with patch.object(
            orchestrator.detector,
            "classify_deletions",
            side_effect=RuntimeError("index corrupted"),
        ):
            result = await orchestrator.run()

        assert not result.success
        assert result.status == RunStatus.FAILED
        assert result.error_summary == "RuntimeError: index corrupted"
        last = store.get_last_run()
        assert last.status == RunStatus.FAILED
        assert last.error_summary == "RuntimeError: index corrupted"

    async def test_start_failure_propagates(self, build, store, make_item):
        orchestrator, source = build({"DEV": [make_item("1")]})
        with patch.object(
            store, "start_run", side_effect=RecordStoreError("read-only")
        ):
            with pytest.raises(RecordStoreError):
                await orchestrator.run()
        assert source.calls == []

    async def test_finalize_failure_propagates(self, build, store, make_item):
        orchestrator, _ = build({"DEV": [make_item("1")]})
        with patch.object(
            store, "complete_run", side_effect=RecordStoreError("read-only")
        ):
            with pytest.raises(RecordStoreError):
                await orchestrator.run()
        assert store.get_last_run().status == RunStatus.RUNNING


# ---------------------------------------------------------------------------
# Upload stage
# ---------------------------------------------------------------------------


class TestUploadStage:
    async def test_documents_recorded(self, build, store, make_item):
        uploader = RecordingUploader()
        orchestrator, _ = build({"DEV": [make_item("1")]}, uploader=uploader)
        result = await orchestrator.run()

        assert result.counts.uploaded == 1
        assert store.get("1").external_index_ref == "docs/1"
        staged = uploader.batches[0][0]
        assert staged.display_name == "Page 1 (DEV)"

    async def test_unchanged_items_not_uploaded(self, build, make_item):
        uploader = RecordingUploader()
        orchestrator, _ = build({"DEV": [make_item("1")]}, uploader=uploader)
        await orchestrator.run()
        await orchestrator.run()
        assert len(uploader.batches) == 1

    async def test_per_item_upload_failure(self, build, store, make_item):
        uploader = RecordingUploader(fail_ids={"2"})
        orchestrator, _ = build(
            {"DEV": [make_item("1"), make_item("2")]}, uploader=uploader
        )
        result = await orchestrator.run()

        assert result.counts.uploaded == 1
        assert result.counts.upload_failed == 1
        assert result.counts.added == 2
        error = result.errors[0]
        assert error.stage == SyncStage.UPLOAD
        assert error.item_id == "2"
        assert error.message.endswith("(after 3 attempts)")
        assert store.get("2").external_index_ref is None

    async def test_uploader_failure_keeps_previous_ref(
        self, build, store, make_item, make_record
    ):
        store.upsert(make_record("1", external_index_ref="docs/old"))
        uploader = RecordingUploader(error=RuntimeError("quota exceeded"))
        orchestrator, _ = build(
            {"DEV": [make_item("1", version=2)]}, uploader=uploader
        )
        result = await orchestrator.run()

        assert result.success
        assert result.counts.upload_failed == 1
        assert result.counts.updated == 1
        assert len(result.errors) == 1
        assert result.errors[0].item_id is None
        assert store.get("1").external_index_ref == "docs/old"
        assert uploader.deleted == []

    async def test_local_only_mode(self, build, store, make_item):
        orchestrator, _ = build({"DEV": [make_item("1")]})
        result = await orchestrator.run()
        assert result.counts.uploaded == 0
        assert store.get("1").external_index_ref is None

    async def test_reupload_deletes_previous_document(
        self, build, store, make_item, make_record
    ):
        store.upsert(make_record("1", external_index_ref="docs/old"))
        uploader = RecordingUploader()
        orchestrator, _ = build(
            {"DEV": [make_item("1", version=2)]}, uploader=uploader
        )
        result = await orchestrator.run()

        assert result.errors == []
        assert store.get("1").external_index_ref == "docs/1"
        assert uploader.deleted == ["docs/old"]

    async def test_failed_reupload_keeps_previous_document(
        self, build, store, make_item, make_record
    ):
        store.upsert(make_record("1", external_index_ref="docs/old"))
        uploader = RecordingUploader(fail_ids={"1"})
        orchestrator, _ = build(
            {"DEV": [make_item("1", version=2)]}, uploader=uploader
        )
        await orchestrator.run()

        assert store.get("1").external_index_ref == "docs/old"
        assert uploader.deleted == []

    async def test_deleted_page_removed_from_index(
        self, build, store, make_item, make_record
    ):
        store.upsert(make_record("9", external_index_ref="docs/9"))
        uploader = RecordingUploader()
        orchestrator, _ = build({"DEV": [make_item("1")]}, uploader=uploader)
        result = await orchestrator.run()

        assert result.counts.deleted == 1
        assert uploader.deleted == ["docs/9"]

    async def test_index_delete_failure_recorded(
        self, build, store, make_record
    ):
        store.upsert(make_record("9", external_index_ref="docs/9"))
        uploader = RecordingUploader(undeletable={"docs/9"})
        orchestrator, _ = build({"DEV": []}, uploader=uploader)
        result = await orchestrator.run()

        assert result.success
        assert result.counts.deleted == 1
        assert store.get("9") is None
        error = result.errors[0]
        assert error.stage == SyncStage.DELETE
        assert error.item_id == "9"
        assert error.message.startswith("Index document:")

    async def test_local_only_keeps_index_documents(
        self, build, store, make_record
    ):
        store.upsert(make_record("9", external_index_ref="docs/9"))
        orchestrator, _ = build({"DEV": []})
        result = await orchestrator.run()
        assert result.counts.deleted == 1
        assert result.errors == []


def test_upload_display_name(make_item):
    assert upload_display_name(make_item("1", "OPS", title="Runbook")) == (
        "Runbook (OPS)"
    )


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class BlockingUploader(RecordingUploader):
    """Blocks inside upload_batch until its handle is cancelled."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()

    def upload_batch(self, items, index_ref=None, handle=None):
        self.handle = handle
        self.started.set()
        handle.wait(5)
        return UploadSummary(total=len(items))


class TestCancellation:
    async def test_cancel_leaves_run_running(self, build, store, make_item):
        uploader = BlockingUploader()
        orchestrator, _ = build({"DEV": [make_item("1")]}, uploader=uploader)

        task = asyncio.create_task(orchestrator.run())
        while not uploader.started.is_set():
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert uploader.handle.cancelled
        assert store.get_last_run().status == RunStatus.RUNNING
        assert store.get("1") is None
