#!/usr/bin/env python3
"""Apply (or preview) a compaction plan."""

from __future__ import annotations

import logging
import threading
import time
from concurrent import futures
from typing import Callable, Sequence

import humanfriendly

from patchtool.compactify.cancellation import CancellationToken
from patchtool.compactify.errors import DeletionFailed
from patchtool.compactify.models import (
    ChunkRecord,
    CompactionPlan,
    DeletionOutcome,
    DeletionResult,
    ExecutionMode,
    ExecutionReport,
)
from patchtool.compactify.storage import ObjectStore

_LOGGER = logging.getLogger(__name__)

MAX_POLL_INTERVAL = 0.5


def delete_chunk(store: ObjectStore, record: ChunkRecord) -> DeletionOutcome:
    """Delete one chunk file.

    Returns:
        SUCCEEDED, or ALREADY_ABSENT if something else removed it first

    Raises:
        DeletionFailed: If the chunk exists but could not be removed
    """
    try:
        deleted = store.delete(record.location)
    except OSError as e:
        raise DeletionFailed(record.uri, str(e)) from e
    return DeletionOutcome.SUCCEEDED if deleted else DeletionOutcome.ALREADY_ABSENT


class CompactionExecutor:
    """Delete the chunks a plan marks for deletion.

    Every item is attempted independently; one failure never stops the rest.
    On cancellation no new deletions start, those in flight are allowed to
    finish, and the report holds only completed outcomes.
    """

    def __init__(
        self,
        stores: Sequence[ObjectStore],
        workers: int = 4,
        per_item_timeout: float | None = None,
        cancel: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stores = {store.describe(): store for store in stores}
        self.workers = max(1, workers)
        self.per_item_timeout = per_item_timeout
        self.cancel = cancel or CancellationToken()
        self.clock = clock

    def execute(self, plan: CompactionPlan, mode: ExecutionMode) -> ExecutionReport:
        if mode == ExecutionMode.PREVIEW:
            return self.preview(plan)
        return self.apply(plan)

    def preview(self, plan: CompactionPlan) -> ExecutionReport:
        _LOGGER.info(
            "DRY RUN: Would delete %d chunks, freeing %s",
            len(plan.to_delete),
            humanfriendly.format_size(plan.summary.bytes_to_reclaim, binary=True),
        )
        return ExecutionReport(
            mode=ExecutionMode.PREVIEW,
            results=tuple(DeletionResult(record, DeletionOutcome.SKIPPED_DRY_RUN) for record in plan.to_delete),
        )

    def _delete_one(
        self, record: ChunkRecord, started: dict[str, float], lock: threading.Lock
    ) -> DeletionResult | None:
        """Delete one record; None means it was not attempted because of a cancel."""
        if self.cancel.cancelled:
            return None
        with lock:
            started[record.uri] = self.clock()
        store = self.stores.get(record.store)
        if store is None:
            return DeletionResult(record, DeletionOutcome.FAILED, f"no store configured for {record.store}")
        try:
            outcome = delete_chunk(store, record)
        except DeletionFailed as e:
            return DeletionResult(record, DeletionOutcome.FAILED, e.reason)
        return DeletionResult(record, outcome)

    def _log_result(self, result: DeletionResult) -> None:
        if result.outcome == DeletionOutcome.SUCCEEDED:
            _LOGGER.info("Deleted: %s", result.record.uri)
        elif result.outcome == DeletionOutcome.ALREADY_ABSENT:
            _LOGGER.info("Already gone: %s", result.record.uri)
        else:
            _LOGGER.error("Failed to delete %s: %s", result.record.uri, result.reason)

    def apply(self, plan: CompactionPlan) -> ExecutionReport:
        items = list(plan.to_delete)
        results: dict[int, DeletionResult] = {}
        pending: dict[futures.Future, int] = {}
        started: dict[str, float] = {}
        lock = threading.Lock()
        stuck: set[futures.Future] = set()
        poll = MAX_POLL_INTERVAL
        if self.per_item_timeout is not None:
            poll = min(poll, self.per_item_timeout / 4)

        _LOGGER.info("Deleting %d chunks with %d workers", len(items), self.workers)
        executor = futures.ThreadPoolExecutor(max_workers=self.workers)
        try:
            next_index = 0
            while True:
                while next_index < len(items) and len(pending) < self.workers * 2 and not self.cancel.cancelled:
                    future = executor.submit(self._delete_one, items[next_index], started, lock)
                    pending[future] = next_index
                    next_index += 1
                if self.cancel.cancelled:
                    for future in list(pending):
                        if future.cancel():
                            del pending[future]
                if not pending:
                    break

                done, _ = futures.wait(pending, timeout=poll, return_when=futures.FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    if future.cancelled() or future.result() is None:
                        continue
                    results[index] = future.result()
                    self._log_result(results[index])

                if self.per_item_timeout is not None:
                    stuck.update(self._expire_slow_items(items, pending, results, started, lock))
                    stuck = {future for future in stuck if not future.done()}
                    if len(stuck) >= self.workers:
                        self._fail_remaining(items, pending, results, range(next_index, len(items)))
                        break
        finally:
            executor.shutdown(wait=not stuck, cancel_futures=True)

        report = ExecutionReport(
            mode=ExecutionMode.APPLY,
            results=tuple(results[index] for index in sorted(results)),
            cancelled=self.cancel.cancelled,
            not_attempted=len(items) - len(results),
        )
        if report.cancelled:
            _LOGGER.warning(
                "Cancelled: %d deletions completed, %d not attempted", len(report.results), report.not_attempted
            )
        _LOGGER.info(
            "Deleted %d chunks (%d already gone, %d failed), freed %s",
            len(report.succeeded),
            len(report.already_absent),
            len(report.failed),
            humanfriendly.format_size(report.bytes_reclaimed, binary=True),
        )
        return report

    def _expire_slow_items(
        self,
        items: list[ChunkRecord],
        pending: dict[futures.Future, int],
        results: dict[int, DeletionResult],
        started: dict[str, float],
        lock: threading.Lock,
    ) -> list[futures.Future]:
        """Give up waiting on deletions running longer than the per-item timeout.

        Returns:
            The futures given up on; their worker threads stay busy until the deletion returns
        """
        assert self.per_item_timeout is not None
        now = self.clock()
        expired = []
        with lock:
            start_times = dict(started)
        for future, index in list(pending.items()):
            start = start_times.get(items[index].uri)
            if start is None or now - start <= self.per_item_timeout or future.done():
                continue
            del pending[future]
            reason = f"timed out after {humanfriendly.format_timespan(self.per_item_timeout)}"
            results[index] = DeletionResult(items[index], DeletionOutcome.FAILED, reason)
            self._log_result(results[index])
            expired.append(future)
        return expired

    def _fail_remaining(
        self,
        items: list[ChunkRecord],
        pending: dict[futures.Future, int],
        results: dict[int, DeletionResult],
        unsubmitted: range,
    ) -> None:
        """Every worker is stuck on a timed-out deletion: fail whatever is left instead of waiting."""
        _LOGGER.error("All %d workers are stuck on timed-out deletions, giving up on the rest", self.workers)
        for future in pending:
            future.cancel()
        for index in [*pending.values(), *unsubmitted]:
            results[index] = DeletionResult(items[index], DeletionOutcome.FAILED, "worker pool exhausted")
        pending.clear()
