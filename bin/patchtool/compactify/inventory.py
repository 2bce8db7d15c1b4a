#!/usr/bin/env python3
"""Streaming inventory of chunk files in one or more chunk stores."""

from __future__ import annotations

import dataclasses
import logging
import posixpath
import re
from concurrent import futures
from typing import Iterator, Sequence

from patchtool.compactify.cancellation import CancellationToken
from patchtool.compactify.errors import InventoryScanFailed
from patchtool.compactify.models import ChunkIdentity, ChunkRecord
from patchtool.compactify.storage import ObjectStore, StoredObject

_LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_EXTENSIONS = (".chunk",)

# Chunk files are named "<hash>.chunk" or "<anything>_<hash>.chunk"
_CHUNK_STEM_RE = re.compile(r"(?:^|_)(?P<hash>[0-9a-fA-F]{40})$")


def chunk_identity_from_location(
    location: str, extensions: Sequence[str] = DEFAULT_CHUNK_EXTENSIONS
) -> ChunkIdentity | None:
    """Derive a chunk's identity from its file name.

    Args:
        location: Path or key of the file
        extensions: File extensions that mark chunk files

    Returns:
        The identity, or None if the file is not a chunk file

    Examples:
        >>> chunk_identity_from_location("ChunksV3/1A/0123456789abcdef0123456789abcdef01234567.chunk")
        ChunkIdentity(0123456789abcdef0123456789abcdef01234567)
        >>> chunk_identity_from_location("ChunksV3/1A/notes.txt") is None
        True
    """
    stem, ext = posixpath.splitext(posixpath.basename(location))
    if ext.lower() not in extensions:
        return None
    match = _CHUNK_STEM_RE.search(stem)
    if not match:
        return None
    return ChunkIdentity.from_hex(match.group("hash"))


class ChunkInventory:
    """Enumerate chunk stores, yielding one ChunkRecord per chunk file.

    Each call to scan() starts a fresh enumeration. Stores are listed one
    partition (top-level directory or key prefix) at a time by a bounded pool of
    workers, so only a window of partitions is held in memory at once.
    """

    def __init__(
        self,
        stores: Sequence[ObjectStore],
        extensions: Sequence[str] = DEFAULT_CHUNK_EXTENSIONS,
        workers: int = 4,
        cancel: CancellationToken | None = None,
    ):
        self.stores = list(stores)
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.workers = max(1, workers)
        self.cancel = cancel or CancellationToken()
        self.files_scanned = 0
        self.ignored_files = 0
        self.duplicates: list[ChunkRecord] = []

    def scan(self) -> Iterator[ChunkRecord]:
        """Lazily yield every chunk record in deterministic order.

        Raises:
            InventoryScanFailed: If a store root or partition cannot be listed
            CancellationRequested: If cancelled between partitions
        """
        self.files_scanned = 0
        self.ignored_files = 0
        self.duplicates = []
        first_seen: dict[ChunkIdentity, str] = {}

        for store in self.stores:
            yield from self._scan_store(store, first_seen)

        _LOGGER.info(
            "Inventory complete: %d chunk files, %d unique chunks, %d duplicates, %d other files ignored",
            self.files_scanned - self.ignored_files,
            len(first_seen),
            len(self.duplicates),
            self.ignored_files,
        )

    def _scan_store(self, store: ObjectStore, first_seen: dict[ChunkIdentity, str]) -> Iterator[ChunkRecord]:
        self.cancel.raise_if_cancelled()
        try:
            partitions = store.partitions()
        except OSError as e:
            raise InventoryScanFailed(f"Unable to enumerate chunk store {store}: {e}") from e
        _LOGGER.info("Scanning chunk store %s (%d partitions)", store, len(partitions))

        window = self.workers * 2
        with futures.ThreadPoolExecutor(max_workers=self.workers) as executor:
            for start in range(0, len(partitions), window):
                self.cancel.raise_if_cancelled()
                batch = partitions[start : start + window]
                try:
                    listings = list(executor.map(store.list_partition, batch))
                except OSError as e:
                    raise InventoryScanFailed(f"Unable to list chunk store {store}: {e}") from e
                for partition, objects in zip(batch, listings):
                    _LOGGER.debug("Partition %r of %s: %d files", partition, store, len(objects))
                    for stored in objects:
                        record = self._to_record(store, stored, first_seen)
                        if record is not None:
                            yield record

    def _to_record(
        self, store: ObjectStore, stored: StoredObject, first_seen: dict[ChunkIdentity, str]
    ) -> ChunkRecord | None:
        self.files_scanned += 1
        identity = chunk_identity_from_location(stored.location, self.extensions)
        if identity is None:
            self.ignored_files += 1
            _LOGGER.debug("Ignoring non-chunk file %s/%s", store, stored.location)
            return None

        record = ChunkRecord(
            identity=identity,
            store=store.describe(),
            location=stored.location,
            size=stored.size,
            modified=stored.modified,
        )
        original = first_seen.get(identity)
        if original is None:
            first_seen[identity] = record.uri
            return record

        duplicate = dataclasses.replace(record, duplicate_of=original)
        _LOGGER.warning("Duplicate chunk %s at %s (first seen at %s)", identity, duplicate.uri, original)
        self.duplicates.append(duplicate)
        return duplicate
