#!/usr/bin/env python3
"""Partition a chunk inventory into chunks to delete and chunks to keep."""

from __future__ import annotations

import datetime
import logging
from typing import AbstractSet, Iterable

import humanfriendly

from patchtool.compactify.cancellation import CancellationToken
from patchtool.compactify.errors import UnsafePlan
from patchtool.compactify.models import ChunkIdentity, ChunkRecord, CompactionPlan, KeepReason, PlanSummary
from patchtool.compactify.retention import RetentionPolicy

_LOGGER = logging.getLogger(__name__)

CANCEL_CHECK_INTERVAL = 10_000


class CompactionPlanner:
    """Decide, per chunk, whether it goes.

    A chunk is kept if a live manifest references it, or if the retention
    policy preserves it (small or recently written). Everything else is
    deleted. The planner never touches storage, so a preview and a real run
    compute the same plan.
    """

    def __init__(
        self,
        policy: RetentionPolicy,
        allow_empty_live_set: bool = False,
        cancel: CancellationToken | None = None,
    ):
        self.policy = policy
        self.allow_empty_live_set = allow_empty_live_set
        self.cancel = cancel or CancellationToken()

    def decide(
        self, record: ChunkRecord, live_set: AbstractSet[ChunkIdentity], now: datetime.datetime
    ) -> KeepReason | None:
        """Reason to keep one chunk, or None if it should be deleted."""
        if record.identity in live_set:
            return KeepReason.REFERENCED
        return self.policy.should_preserve_chunk(record, now)

    def plan(
        self,
        records: Iterable[ChunkRecord],
        live_set: AbstractSet[ChunkIdentity],
        now: datetime.datetime,
    ) -> CompactionPlan:
        """Build the plan from a (possibly lazy) stream of chunk records.

        Raises:
            UnsafePlan: If the live set is empty but chunks exist, unless allowed
            CancellationRequested: If cancelled while planning
        """
        to_delete: list[ChunkRecord] = []
        kept: list[tuple[ChunkRecord, KeepReason]] = []
        unique = 0
        duplicates = 0

        for count, record in enumerate(records, start=1):
            if count % CANCEL_CHECK_INTERVAL == 0:
                self.cancel.raise_if_cancelled()
                _LOGGER.debug("Planned %d chunks so far", count)
            if record.is_duplicate:
                duplicates += 1
            else:
                unique += 1
            reason = self.decide(record, live_set, now)
            if reason is None:
                to_delete.append(record)
            else:
                kept.append((record, reason))
        self.cancel.raise_if_cancelled()

        total_files = len(to_delete) + len(kept)
        if not live_set and total_files and not self.allow_empty_live_set:
            raise UnsafePlan(
                f"No chunks are referenced by any live manifest, refusing to plan deletion of {total_files} chunks"
            )

        to_delete.sort(key=lambda r: r.sort_key)
        kept.sort(key=lambda pair: pair[0].sort_key)

        def _count(reason: KeepReason) -> int:
            return sum(1 for _, why in kept if why == reason)

        summary = PlanSummary(
            total_files=total_files,
            unique_chunks=unique,
            duplicate_files=duplicates,
            referenced=_count(KeepReason.REFERENCED),
            preserved_small=_count(KeepReason.SMALL_CHUNK),
            preserved_recent=_count(KeepReason.TOO_RECENT),
            to_delete=len(to_delete),
            bytes_to_reclaim=sum(r.size for r in to_delete),
            bytes_kept=sum(r.size for r, _ in kept),
        )
        _LOGGER.info(
            "Plan: delete %d of %d chunk files (%s), keep %d",
            summary.to_delete,
            summary.total_files,
            humanfriendly.format_size(summary.bytes_to_reclaim, binary=True),
            len(kept),
        )
        return CompactionPlan(
            to_delete=tuple(to_delete),
            to_keep=tuple(r for r, _ in kept),
            keep_reasons=tuple(why for _, why in kept),
            summary=summary,
        )
