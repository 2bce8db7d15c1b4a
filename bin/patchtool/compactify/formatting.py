#!/usr/bin/env python3
"""Human-readable compaction reports."""

from __future__ import annotations

import humanfriendly

from patchtool.compactify.models import (
    CompactionOutcome,
    CompactionPlan,
    ExecutionMode,
    ExecutionReport,
    RetentionDecision,
    RunStatus,
)


def _size(num_bytes: int) -> str:
    return humanfriendly.format_size(num_bytes, binary=True)


def format_retention_decision(decision: RetentionDecision) -> str:
    age = f" (age {humanfriendly.format_timespan(decision.age.total_seconds())})" if decision.age is not None else ""
    state = "live" if decision.live else "excluded"
    return f"{decision.identifier}: {state}, {decision.reason.value}{age}"


def format_plan_report(plan: CompactionPlan, max_items: int = 20) -> list[str]:
    """Describe a plan: summary first, then up to max_items chunks to delete.

    Args:
        plan: The plan to describe
        max_items: How many deletions to list individually; 0 lists none

    Returns:
        Report lines, without trailing newlines
    """
    summary = plan.summary
    lines = [
        "Compaction plan:",
        f"  Chunk files scanned: {summary.total_files} ({summary.unique_chunks} unique,"
        f" {summary.duplicate_files} duplicates)",
        f"  Referenced by live manifests: {summary.referenced}",
        f"  Preserved as small chunks: {summary.preserved_small}",
        f"  Preserved as recently written: {summary.preserved_recent}",
        f"  Space kept: {_size(summary.bytes_kept)}",
        f"  Chunks to delete: {summary.to_delete}",
        f"  Space to reclaim: {_size(summary.bytes_to_reclaim)}",
    ]
    if plan.to_delete and max_items:
        lines.append("Chunks to delete:")
        for record in plan.to_delete[:max_items]:
            lines.append(f"  {record.uri} ({_size(record.size)})")
        remaining = len(plan.to_delete) - max_items
        if remaining > 0:
            lines.append(f"  ...and {remaining} more")
    return lines


def format_execution_report(report: ExecutionReport, max_items: int = 20) -> list[str]:
    if report.mode == ExecutionMode.PREVIEW:
        return [f"DRY RUN: {len(report.skipped)} chunks would be deleted, nothing was changed"]

    lines = [
        "Deletion results:",
        f"  Deleted: {len(report.succeeded)}",
        f"  Already gone: {len(report.already_absent)}",
        f"  Failed: {len(report.failed)}",
        f"  Space reclaimed: {_size(report.bytes_reclaimed)}",
    ]
    if report.cancelled:
        lines.append(f"  Cancelled before completion: {report.not_attempted} deletions not attempted")
    failed = report.failed
    for result in failed[:max_items]:
        lines.append(f"  FAILED {result.record.uri}: {result.reason}")
    if len(failed) > max_items:
        lines.append(f"  ...and {len(failed) - max_items} more failures")
    return lines


def format_outcome(outcome: CompactionOutcome) -> str:
    """One-line verdict saying whether a rerun is needed."""
    if outcome.status == RunStatus.ABORTED:
        return f"Compaction ABORTED, nothing was deleted: {outcome.abort_reason}"
    if outcome.status == RunStatus.PARTIAL_SUCCESS:
        report = outcome.report
        failed = len(report.failed) if report else 0
        cancelled = " (cancelled)" if outcome.cancelled else ""
        return f"Compaction PARTIALLY succeeded{cancelled}: {failed} deletions failed; rerun to retry them"
    if outcome.report is not None and outcome.report.mode == ExecutionMode.PREVIEW:
        return "Compaction preview complete"
    return "Compaction complete"
