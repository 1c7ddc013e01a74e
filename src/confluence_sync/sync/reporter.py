"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_run_report`` -- post-run summary.
- ``format_run_history`` -- ledger rows, newest first.
- ``format_drift_report`` -- artifact drift findings.
- ``report_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import DriftReport, RunRecord, RunResult

MAX_REPORTED_ERRORS = 5

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_run_report(
    result: RunResult, max_errors: int = MAX_REPORTED_ERRORS
) -> str:
    """Format a completed run as human-readable text.

    At most *max_errors* errors are listed; the rest are summarised by
    count.

    Args:
        result: The run result.
        max_errors: Number of representative errors to show.

    Returns:
        Multi-line formatted string.
    """
    counts = result.counts
    lines: list[str] = []

    header = f"Sync run {result.run_id}: {result.status.value}"
    if not result.success:
        header += " (FAILED)"
    lines.append(header)
    lines.append(f"Started: {result.started_at}")
    if result.completed_at:
        lines.append(f"Completed: {result.completed_at}")
    lines.append("")

    lines.append(
        f"Remote pages: {result.total_remote_items} "
        f"({result.unchanged_count} unchanged)"
    )
    lines.append(
        f"Processed {result.processed}: "
        f"{counts.added} added, {counts.updated} updated, "
        f"{counts.deleted} deleted, {counts.skipped} skipped, "
        f"{counts.errors} errors"
    )
    if counts.uploaded or counts.upload_failed:
        lines.append(
            f"Uploaded: {counts.uploaded} successful, "
            f"{counts.upload_failed} failed"
        )
    lines.append("")

    if result.failed_collections:
        lines.append(
            "Failed collections: " + ", ".join(result.failed_collections)
        )
        lines.append("")

    if result.errors:
        lines.append("Errors:")
        for error in result.errors[:max_errors]:
            lines.append(f"  {error.describe()}")
        remaining = len(result.errors) - max_errors
        if remaining > 0:
            lines.append(f"  ... and {remaining} more")
        lines.append("")

    if result.error_summary and not result.success:
        lines.append(f"Failure: {result.error_summary}")
        lines.append("")

    return "\n".join(lines).rstrip()


def format_run_history(runs: list[RunRecord]) -> str:
    """Format ledger rows as one line each.

    Args:
        runs: Ledger rows, typically newest first.

    Returns:
        Multi-line formatted string.
    """
    if not runs:
        return "No sync runs recorded."

    lines = ["Recent sync runs:"]
    for run in runs:
        c = run.counts
        line = (
            f"  #{run.id} {run.status.value:<9} {run.started_at}"
            f"  +{c.added} ~{c.updated} -{c.deleted}"
            f" ={c.skipped} !{c.errors}"
        )
        if run.error_summary:
            line += f"  ({run.error_summary})"
        lines.append(line)
    return "\n".join(lines)


def format_drift_report(report: DriftReport) -> str:
    """Format drift findings.

    Args:
        report: Output of ``ChangeDetector.find_artifact_drift``.

    Returns:
        Multi-line formatted string.
    """
    if not report.has_drift:
        return "No drift: every record has its artifact and vice versa."

    lines: list[str] = []
    if report.missing_artifacts:
        lines.append(
            f"Records with missing artifacts "
            f"({len(report.missing_artifacts)}):"
        )
        for record in report.missing_artifacts:
            lines.append(
                f"  {record.collection_key}/{record.id} {record.title}"
                f" -> {record.artifact_location or '(none)'}"
            )
        lines.append("")

    if report.orphaned_artifacts:
        lines.append(
            f"Orphaned artifacts ({len(report.orphaned_artifacts)}):"
        )
        for location in report.orphaned_artifacts:
            lines.append(f"  {location}")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(result: RunResult) -> dict:
    """Convert a run result to a structured dict for JSON serialisation.

    Args:
        result: The run result.

    Returns:
        Dict with run info, counts and every recorded error.
    """
    return {
        "run_id": result.run_id,
        "success": result.success,
        "status": result.status.value,
        "started_at": result.started_at,
        "completed_at": result.completed_at,
        "total_remote_items": result.total_remote_items,
        "unchanged_count": result.unchanged_count,
        "processed": result.processed,
        "counts": result.counts.model_dump(),
        "failed_collections": list(result.failed_collections),
        "errors": [e.model_dump(mode="json") for e in result.errors],
        "error_summary": result.error_summary,
    }
