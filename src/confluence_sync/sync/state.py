"""Record store persistence layer.

Keeps the durable mirror of synced pages, the run ledger and the cached
search-index reference in a single JSON document:

* ``records`` -- synced records keyed by page id.
* ``runs`` -- append-only list of run ledger rows, mutated by run id.
* ``index`` -- single-row cache of the external index reference.

Key design choices:

* **Atomic writes** -- every mutation rewrites the document through a
  temp file and ``os.replace()`` so readers never see partial data and
  a crash mid-run leaves the last completed mutation on disk.  A failed
  write also undoes the in-memory change, so a later successful write
  never persists a mutation the caller saw fail.
* **Single writer** -- there is no locking; only one sync run may use a
  store at a time.
* **Typed boundary** -- rows are stored as plain dicts but always
  returned as frozen ``SyncedRecord`` / ``RunRecord`` / ``IndexRef``
  models.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from confluence_sync.errors import RecordStoreError
from confluence_sync.sync.models import (
    IndexRef,
    RunCounts,
    RunRecord,
    RunStatus,
    SyncedRecord,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def utcnow_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


class RecordStore:
    """Durable key-value store for synced records and run history.

    Args:
        path: Path of the JSON state file.  Parent directories are
            created on first write.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._data: dict[str, Any] | None = None

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def open(self) -> RecordStore:
        """Load the state file, creating an empty state if absent.

        Returns:
            ``self`` so calls can be chained.

        Raises:
            RecordStoreError: If the file exists but cannot be read or
                does not contain a valid state document.
        """
        if not self._path.exists():
            self._data = self._empty_state()
            return self

        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise RecordStoreError(
                f"Cannot read record store {self._path}: {exc}"
            ) from exc

        if not isinstance(data, dict) or not isinstance(
            data.get("records", {}), dict
        ):
            raise RecordStoreError(
                f"Record store {self._path} is not a valid state document"
            )

        data.setdefault("version", SCHEMA_VERSION)
        data.setdefault("records", {})
        data.setdefault("runs", [])
        data.setdefault("index", None)
        self._data = data
        logger.debug(
            "Opened record store %s (%d records, %d runs)",
            self._path,
            len(data["records"]),
            len(data["runs"]),
        )
        return self

    def _save_or_rollback(self, rollback: Callable[[], None]) -> None:
        """Persist the document, undoing the in-memory change on failure."""
        try:
            self._save()
        except BaseException:
            rollback()
            raise

    def _save(self) -> None:
        """Persist the state document atomically."""
        data = self._state()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self._path.parent), suffix=".tmp"
            )
        except OSError as exc:
            raise RecordStoreError(
                f"Cannot write record store {self._path}: {exc}"
            ) from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, OSError):
                raise RecordStoreError(
                    f"Cannot write record store {self._path}: {exc}"
                ) from exc
            raise

    # ------------------------------------------------------------------
    # Synced records
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> SyncedRecord | None:
        """Return the record for *item_id*, or ``None`` if absent."""
        row = self._state()["records"].get(item_id)
        return self._to_record(row) if row is not None else None

    def get_by_collection(self, collection_key: str) -> list[SyncedRecord]:
        """Return every record synced from *collection_key*."""
        return [
            self._to_record(row)
            for row in self._state()["records"].values()
            if row.get("collection_key") == collection_key
        ]

    def get_all(self) -> list[SyncedRecord]:
        """Return every record in insertion order."""
        return [
            self._to_record(row)
            for row in self._state()["records"].values()
        ]

    def count(self) -> int:
        return len(self._state()["records"])

    def upsert(self, record: SyncedRecord) -> None:
        """Insert or replace the record keyed by ``record.id``."""
        records = self._state()["records"]
        previous = records.get(record.id)
        records[record.id] = record.model_dump(mode="json")

        def rollback() -> None:
            if previous is None:
                records.pop(record.id, None)
            else:
                records[record.id] = previous

        self._save_or_rollback(rollback)

    def delete(self, item_id: str) -> bool:
        """Remove the record for *item_id*.

        Returns:
            ``True`` if a record was removed, ``False`` if none existed.
        """
        records = self._state()["records"]
        if item_id not in records:
            return False
        snapshot = dict(records)
        del records[item_id]

        def rollback() -> None:
            records.clear()
            records.update(snapshot)

        self._save_or_rollback(rollback)
        return True

    # ------------------------------------------------------------------
    # Run ledger rows
    # ------------------------------------------------------------------

    def start_run(self) -> int:
        """Append a ``running`` ledger row and return its id."""
        runs = self._state()["runs"]
        run_id = max((r["id"] for r in runs), default=0) + 1
        row = RunRecord(id=run_id, started_at=utcnow_iso())
        runs.append(row.model_dump(mode="json"))
        self._save_or_rollback(runs.pop)
        return run_id

    def complete_run(self, run_id: int, counts: RunCounts) -> RunRecord:
        """Mark a running row completed with its final counts."""
        return self._finish_run(
            run_id, RunStatus.COMPLETED, counts=counts
        )

    def fail_run(
        self,
        run_id: int,
        error_summary: str,
        counts: RunCounts | None = None,
    ) -> RunRecord:
        """Mark a running row failed with an error summary."""
        return self._finish_run(
            run_id,
            RunStatus.FAILED,
            counts=counts,
            error_summary=error_summary,
        )

    def get_run(self, run_id: int) -> RunRecord | None:
        row = self._find_run(run_id)
        return self._to_run(row) if row is not None else None

    def get_last_run(self) -> RunRecord | None:
        """Return the most recently started run, if any."""
        runs = self._state()["runs"]
        if not runs:
            return None
        return self._to_run(max(runs, key=lambda r: r["id"]))

    def list_runs(self, limit: int | None = 10) -> list[RunRecord]:
        """Return up to *limit* runs (all when ``None``), newest first."""
        runs = sorted(
            self._state()["runs"], key=lambda r: r["id"], reverse=True
        )
        if limit is not None:
            runs = runs[: max(limit, 0)]
        return [self._to_run(r) for r in runs]

    # ------------------------------------------------------------------
    # Index reference cache
    # ------------------------------------------------------------------

    def get_index_ref(self) -> IndexRef | None:
        row = self._state().get("index")
        if row is None:
            return None
        return IndexRef.model_validate(row)

    def save_index_ref(self, ref: IndexRef) -> None:
        """Replace the cached index reference."""
        self._replace_index(ref.model_dump(mode="json"))

    def touch_index_ref(self) -> IndexRef | None:
        """Update ``last_used_at`` on the cached reference, if any."""
        row = self._state().get("index")
        if row is None:
            return None
        touched = {**row, "last_used_at": utcnow_iso()}
        self._replace_index(touched)
        return IndexRef.model_validate(touched)

    def clear_index_ref(self) -> None:
        self._replace_index(None)

    def _replace_index(self, row: dict[str, Any] | None) -> None:
        state = self._state()
        previous = state.get("index")
        state["index"] = row

        def rollback() -> None:
            state["index"] = previous

        self._save_or_rollback(rollback)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _empty_state() -> dict[str, Any]:
        return {
            "version": SCHEMA_VERSION,
            "records": {},
            "runs": [],
            "index": None,
        }

    def _state(self) -> dict[str, Any]:
        """Return the loaded document, opening the store on first use."""
        if self._data is None:
            self.open()
        assert self._data is not None
        return self._data

    def _find_run(self, run_id: int) -> dict[str, Any] | None:
        for row in self._state()["runs"]:
            if row["id"] == run_id:
                return row
        return None

    def _finish_run(
        self,
        run_id: int,
        status: RunStatus,
        counts: RunCounts | None = None,
        error_summary: str | None = None,
    ) -> RunRecord:
        row = self._find_run(run_id)
        if row is None:
            raise RecordStoreError(f"Run {run_id} does not exist")
        if row["status"] != RunStatus.RUNNING.value:
            raise RecordStoreError(
                f"Run {run_id} already finished with status {row['status']}"
            )
        snapshot = dict(row)
        row["status"] = status.value
        row["completed_at"] = utcnow_iso()
        if counts is not None:
            row["counts"] = counts.model_dump(mode="json")
        row["error_summary"] = error_summary

        def rollback() -> None:
            row.clear()
            row.update(snapshot)

        self._save_or_rollback(rollback)
        return self._to_run(row)

    def _to_record(self, row: dict[str, Any]) -> SyncedRecord:
        try:
            return SyncedRecord.model_validate(row)
        except ValidationError as exc:
            raise RecordStoreError(
                f"Corrupt record in {self._path}: {exc}"
            ) from exc

    def _to_run(self, row: dict[str, Any]) -> RunRecord:
        try:
            return RunRecord.model_validate(row)
        except ValidationError as exc:
            raise RecordStoreError(
                f"Corrupt run row in {self._path}: {exc}"
            ) from exc
