#!/usr/bin/env python3
"""Live set construction from retained manifests."""

from __future__ import annotations

import itertools
import logging
from concurrent import futures
from typing import Iterable, Iterator

from patchtool.compactify.cancellation import CancellationToken
from patchtool.compactify.errors import IndexBuildFailed
from patchtool.compactify.models import ChunkIdentity, ManifestRecord

_LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 64


def _batched(items: Iterable[ManifestRecord], size: int) -> Iterator[list[ManifestRecord]]:
    iterator = iter(items)
    while batch := list(itertools.islice(iterator, size)):
        yield batch


def _fold(batch: list[ManifestRecord]) -> set[ChunkIdentity]:
    live: set[ChunkIdentity] = set()
    for manifest in batch:
        live.update(manifest.chunks)
    return live


class ReferenceIndex:
    """Union of chunk references across the manifests selected for retention.

    Liveness is binary, so references are a set union rather than a count.
    Each worker folds a batch of manifests into its own set and the partial sets
    are merged on the calling thread; no set is shared between workers.
    """

    def __init__(
        self, workers: int = 4, batch_size: int = DEFAULT_BATCH_SIZE, cancel: CancellationToken | None = None
    ):
        self.workers = max(1, workers)
        self.batch_size = max(1, batch_size)
        self.cancel = cancel or CancellationToken()
        self._live: frozenset[ChunkIdentity] | None = None
        self.manifest_count = 0
        self.reference_count = 0

    @property
    def live_set(self) -> frozenset[ChunkIdentity]:
        if self._live is None:
            raise RuntimeError("Reference index has not been built")
        return self._live

    def __contains__(self, identity: ChunkIdentity) -> bool:
        return identity in self.live_set

    def __len__(self) -> int:
        return len(self.live_set)

    def build(self, manifests: Iterable[ManifestRecord]) -> frozenset[ChunkIdentity]:
        """Fold manifests into the live set.

        Args:
            manifests: Manifests already filtered by the retention policy; may be lazy

        Returns:
            The frozen live set

        Raises:
            IndexBuildFailed: If memory runs out while aggregating
            CancellationRequested: If cancelled between batches
        """
        merged: set[ChunkIdentity] = set()
        self.manifest_count = 0
        self.reference_count = 0

        def _counted(items: Iterable[ManifestRecord]) -> Iterator[ManifestRecord]:
            for manifest in items:
                self.manifest_count += 1
                self.reference_count += len(manifest.chunks)
                yield manifest

        window = self.workers * 2
        try:
            with futures.ThreadPoolExecutor(max_workers=self.workers) as executor:
                batches = _batched(_counted(manifests), self.batch_size)
                while window_batches := list(itertools.islice(batches, window)):
                    self.cancel.raise_if_cancelled()
                    for partial in executor.map(_fold, window_batches):
                        merged |= partial
        except MemoryError as e:
            raise IndexBuildFailed(
                f"Ran out of memory building the live set after {self.manifest_count} manifests"
            ) from e

        self._live = frozenset(merged)
        _LOGGER.info(
            "Live set: %d unique chunks from %d references in %d manifests",
            len(self._live),
            self.reference_count,
            self.manifest_count,
        )
        return self._live
