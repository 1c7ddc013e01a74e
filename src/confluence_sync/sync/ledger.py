"""Run ledger: append-only history of sync attempts.

A row is created with status ``running`` before a run does anything
else and mutated exactly once when the run ends.  Rows are never
deleted here; a row left ``running`` marks an abandoned or crashed run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from confluence_sync.sync.models import RunCounts, RunRecord, RunStatus
from confluence_sync.sync.state import RecordStore

logger = logging.getLogger(__name__)


class RunLedger:
    """Record the lifecycle of sync runs in the record store."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def start(self) -> RunRecord:
        """Open a new ``running`` row.

        Raises:
            RecordStoreError: If the row cannot be written.
        """
        run_id = self.store.start_run()
        record = self.store.get_run(run_id)
        assert record is not None
        logger.info("Started sync run %d", run_id)
        return record

    def complete(self, run_id: int, counts: RunCounts) -> RunRecord:
        record = self.store.complete_run(run_id, counts)
        logger.info(
            "Sync run %d completed: %d added, %d updated, %d deleted, "
            "%d skipped, %d errors",
            run_id,
            counts.added,
            counts.updated,
            counts.deleted,
            counts.skipped,
            counts.errors,
        )
        return record

    def fail(
        self,
        run_id: int,
        error_summary: str,
        counts: RunCounts | None = None,
    ) -> RunRecord:
        record = self.store.fail_run(run_id, error_summary, counts)
        logger.error("Sync run %d failed: %s", run_id, error_summary)
        return record

    def last_run(self) -> RunRecord | None:
        return self.store.get_last_run()

    def history(self, limit: int = 10) -> list[RunRecord]:
        """Return up to *limit* runs, newest first."""
        return self.store.list_runs(limit)

    def stalled_runs(
        self,
        older_than: timedelta = timedelta(hours=1),
        now: datetime | None = None,
    ) -> list[RunRecord]:
        """Runs still ``running`` that started before the cutoff.

        Args:
            older_than: Minimum age for a running row to count as stalled.
            now: Reference time (defaults to the current UTC time).
        """
        cutoff = (now or datetime.now(timezone.utc)) - older_than
        stalled = []
        for run in self.store.list_runs(limit=None):
            if run.status != RunStatus.RUNNING:
                continue
            started = datetime.fromisoformat(run.started_at)
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            if started < cutoff:
                stalled.append(run)
        return stalled
