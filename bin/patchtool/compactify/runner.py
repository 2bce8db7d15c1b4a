#!/usr/bin/env python3
"""Run a complete compaction: manifests, live set, inventory, plan, execution."""

from __future__ import annotations

import datetime
import logging
from typing import Callable, Sequence

from patchtool.compactify.cancellation import CancellationToken
from patchtool.compactify.errors import (
    CancellationRequested,
    IndexBuildFailed,
    InventoryScanFailed,
    ManifestError,
    ManifestSourceFailed,
    UnsafePlan,
)
from patchtool.compactify.executor import CompactionExecutor
from patchtool.compactify.formatting import (
    format_execution_report,
    format_plan_report,
    format_retention_decision,
)
from patchtool.compactify.inventory import ChunkInventory
from patchtool.compactify.manifest import read_manifests
from patchtool.compactify.models import CompactionOutcome, CompactionPlan, ExecutionMode, RunStatus
from patchtool.compactify.planner import CompactionPlanner
from patchtool.compactify.reference_index import ReferenceIndex
from patchtool.compactify.storage import ObjectStore, open_store
from patchtool.config import CompactifyConfig

_LOGGER = logging.getLogger(__name__)


def _aborted(reason: str, **kwargs) -> CompactionOutcome:
    _LOGGER.error("Compaction aborted: %s", reason)
    return CompactionOutcome(status=RunStatus.ABORTED, abort_reason=reason, **kwargs)


def run_compaction(
    config: CompactifyConfig,
    cancel: CancellationToken | None = None,
    now: datetime.datetime | None = None,
    manifest_stores: Sequence[ObjectStore] | None = None,
    chunk_stores: Sequence[ObjectStore] | None = None,
    confirm: Callable[[CompactionPlan], bool] | None = None,
) -> CompactionOutcome:
    """Compact the configured chunk stores.

    Per-item problems (a skipped manifest, a failed deletion) are recorded in
    the outcome. Anything that would make the plan unsafe or incomplete aborts
    the run before a single chunk is deleted.

    Args:
        config: Compactify configuration
        cancel: Cooperative cancellation token
        now: Reference time for age rules (defaults to the current UTC time)
        manifest_stores: Stores to read manifests from, instead of config.manifest_roots
        chunk_stores: Stores holding chunks, instead of config.chunk_roots
        confirm: Asked before applying a non-empty plan; returning False aborts the run

    Returns:
        The run outcome; its exit_code is non-zero unless everything succeeded
    """
    cancel = cancel or CancellationToken()
    now = now or datetime.datetime.now(datetime.timezone.utc)
    policy = config.retention_policy()

    try:
        if manifest_stores is None:
            manifest_stores = [open_store(root) for root in config.manifest_roots]
        if chunk_stores is None:
            chunk_stores = [open_store(root) for root in config.chunk_roots]
    except ValueError as e:
        return _aborted(str(e))
    if not manifest_stores:
        return _aborted("no manifest locations configured")
    if not chunk_stores:
        return _aborted("no chunk store locations configured")

    _LOGGER.info("Reading manifests...")
    try:
        scan = read_manifests(
            manifest_stores,
            patterns=config.manifest_patterns,
            on_corrupt=config.on_corrupt_manifest,
            workers=config.workers,
            cancel=cancel,
        )
    except ManifestSourceFailed as e:
        return _aborted(str(e))
    except ManifestError as e:
        return _aborted(f"rejected manifest {e}")
    except CancellationRequested as e:
        return _aborted(f"cancelled while reading manifests: {e}")

    decisions = tuple(policy.decide_manifest(manifest, now) for manifest in scan.manifests)
    for decision in decisions:
        _LOGGER.info("Manifest %s", format_retention_decision(decision))
    live_manifests = [manifest for manifest, decision in zip(scan.manifests, decisions) if decision.live]
    _LOGGER.info(
        "%d of %d manifests are live (%d rejected)", len(live_manifests), len(scan.manifests), len(scan.rejected)
    )
    context = dict(retention=decisions, rejected_manifests=scan.rejected)

    try:
        live_set = ReferenceIndex(workers=config.workers, cancel=cancel).build(live_manifests)
    except IndexBuildFailed as e:
        return _aborted(str(e), **context)
    except CancellationRequested as e:
        return _aborted(f"cancelled while building the live set: {e}", **context)

    inventory = ChunkInventory(chunk_stores, extensions=config.chunk_extensions, workers=config.workers, cancel=cancel)
    planner = CompactionPlanner(policy, allow_empty_live_set=config.allow_empty_live_set, cancel=cancel)
    _LOGGER.info("Scanning chunk stores and planning...")
    try:
        plan = planner.plan(inventory.scan(), live_set, now)
    except (InventoryScanFailed, UnsafePlan) as e:
        return _aborted(str(e), **context)
    except CancellationRequested as e:
        return _aborted(f"cancelled while planning: {e}", **context)
    context["duplicate_chunks"] = tuple(inventory.duplicates)

    for line in format_plan_report(plan, config.report_limit):
        _LOGGER.info(line)

    if cancel.cancelled:
        return _aborted(f"cancelled before deletion: {cancel.reason}", plan=plan, **context)
    if config.mode == ExecutionMode.APPLY and plan.to_delete and confirm is not None and not confirm(plan):
        return _aborted("deletion declined by user", plan=plan, **context)

    executor = CompactionExecutor(
        chunk_stores, workers=config.workers, per_item_timeout=config.per_item_timeout_seconds, cancel=cancel
    )
    report = executor.execute(plan, config.mode)
    for line in format_execution_report(report, config.report_limit):
        _LOGGER.info(line)

    status = RunStatus.SUCCESS if report.complete else RunStatus.PARTIAL_SUCCESS
    return CompactionOutcome(status=status, plan=plan, report=report, **context)
