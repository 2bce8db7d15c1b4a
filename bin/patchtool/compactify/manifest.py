#!/usr/bin/env python3
"""Build manifest parsing and validation."""

from __future__ import annotations

import datetime
import fnmatch
import hashlib
import logging
import posixpath
from concurrent import futures
from dataclasses import dataclass
from typing import Iterable, Literal, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from patchtool.compactify.cancellation import CancellationToken
from patchtool.compactify.errors import (
    CorruptManifest,
    ManifestError,
    ManifestSourceFailed,
    UnsupportedVersion,
)
from patchtool.compactify.models import ChunkIdentity, ManifestRecord, RejectedManifest
from patchtool.compactify.storage import ObjectStore, StoredObject

_LOGGER = logging.getLogger(__name__)

SUPPORTED_MANIFEST_VERSION = 1
DEFAULT_MANIFEST_PATTERNS = ("*.manifest", "*.yaml", "*.yml", "*.json")

CorruptManifestPolicy = Literal["abort", "skip"]


class ManifestChunkEntry(BaseModel):
    """A single chunk reference in a manifest."""

    hash: str = Field(..., description="40 hex character SHA-1 of the chunk content")
    size: int | None = Field(None, ge=0, description="Chunk size in bytes, informational")
    part: str | None = Field(None, description="Which part of the build uses this chunk")

    @field_validator("hash")
    @classmethod
    def validate_hash(cls, v: str) -> str:
        ChunkIdentity.from_hex(v)
        return v.lower()

    model_config = ConfigDict(extra="forbid")


class BuildManifest(BaseModel):
    """The on-disk manifest for one build."""

    version: int = Field(..., description="Manifest format version")
    app_name: str = Field(..., min_length=1)
    build_version: str = Field(..., min_length=1)
    created_at: datetime.datetime = Field(..., description="Build timestamp, ISO format")
    chunks: list[ManifestChunkEntry] = Field(..., description="Chunks needed to reconstruct the build")
    checksum: str | None = Field(None, description="SHA-1 over the chunk hash list")

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Invalid manifest version: {v}")
        return v

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: datetime.datetime) -> datetime.datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=datetime.timezone.utc)
        return v

    model_config = ConfigDict(extra="forbid")


def manifest_checksum(hashes: Iterable[str]) -> str:
    """Checksum a manifest embeds over its chunk list.

    SHA-1 over each lowercase chunk hash followed by a newline, in manifest order.
    """
    sha1 = hashlib.sha1()
    for chunk_hash in hashes:
        sha1.update(chunk_hash.lower().encode("ascii"))
        sha1.update(b"\n")
    return sha1.hexdigest()


def simplify_validation_error(error: ValidationError) -> str:
    """Condense a pydantic ValidationError into one line.

    Examples:
        >>> simplify_validation_error(error)
        "missing app_name, chunks.3.hash: Invalid chunk hash 'xyz'"
    """
    parts = []
    for err in error.errors():
        location = ".".join(str(x) for x in err.get("loc", []))
        if err.get("type") == "missing":
            parts.append(f"missing {location}")
        elif err.get("type") == "extra_forbidden":
            parts.append(f"unexpected field '{location}'")
        else:
            message = err.get("msg", "invalid").removeprefix("Value error, ")
            parts.append(f"{location}: {message}" if location else message)
    if len(parts) > 3:
        return f"{', '.join(parts[:3])} and {len(parts) - 3} more errors"
    return ", ".join(parts) if parts else f"{len(error.errors())} validation error(s)"


class ManifestReader:
    """Turns manifest bytes into a ManifestRecord, or rejects the whole manifest."""

    def __init__(self, supported_version: int = SUPPORTED_MANIFEST_VERSION):
        self.supported_version = supported_version

    def parse(
        self, content: bytes, location: str, file_modified: datetime.datetime | None = None
    ) -> ManifestRecord:
        """Parse one manifest.

        Args:
            content: Raw manifest bytes (YAML or JSON)
            location: Where the manifest came from, for error messages
            file_modified: Modification time of the manifest file, if known

        Returns:
            The parsed ManifestRecord

        Raises:
            CorruptManifest: If the content is malformed or fails its checksum
            UnsupportedVersion: If the format version is newer than supported
        """
        try:
            document = yaml.safe_load(content)
        except (yaml.YAMLError, UnicodeDecodeError) as e:
            raise CorruptManifest(location, f"not valid YAML/JSON: {e}") from e

        if not isinstance(document, dict):
            raise CorruptManifest(location, "manifest is not a mapping")

        # Check the version before anything else so newer formats are reported as such
        version = document.get("version")
        if isinstance(version, int) and not isinstance(version, bool) and version > self.supported_version:
            raise UnsupportedVersion(location, version, self.supported_version)

        try:
            manifest = BuildManifest.model_validate(document)
        except ValidationError as e:
            raise CorruptManifest(location, simplify_validation_error(e)) from e
        if manifest.version > self.supported_version:
            raise UnsupportedVersion(location, manifest.version, self.supported_version)

        hashes = [entry.hash for entry in manifest.chunks]
        if manifest.checksum is not None:
            expected = manifest_checksum(hashes)
            if manifest.checksum.lower() != expected:
                raise CorruptManifest(
                    location, f"checksum mismatch: manifest says {manifest.checksum}, content gives {expected}"
                )

        return ManifestRecord(
            app_name=manifest.app_name,
            build_version=manifest.build_version,
            build_timestamp=manifest.created_at,
            location=location,
            chunks=tuple(ChunkIdentity.from_hex(h) for h in hashes),
            file_modified=file_modified,
        )

    def read(self, store: ObjectStore, stored: StoredObject) -> ManifestRecord:
        """Read and parse one manifest file.

        Raises:
            ManifestSourceFailed: If the file cannot be read; its references are unknown, so this is never skippable
            CorruptManifest: If the content is malformed or fails its checksum
            UnsupportedVersion: If the format version is newer than supported
        """
        try:
            content = store.read_bytes(stored.location)
        except OSError as e:
            location = f"{store.describe().rstrip('/')}/{stored.location}"
            raise ManifestSourceFailed(f"Unable to read manifest {location}: {e}") from e
        return self.parse(content, stored.location, stored.modified)


@dataclass(frozen=True)
class ManifestScanResult:
    manifests: tuple[ManifestRecord, ...]
    rejected: tuple[RejectedManifest, ...]


def matches_manifest_patterns(location: str, patterns: Sequence[str]) -> bool:
    name = posixpath.basename(location)
    return any(fnmatch.fnmatch(name, pattern) for pattern in patterns)


def list_manifest_files(store: ObjectStore, patterns: Sequence[str]) -> list[StoredObject]:
    """List manifest files in a store.

    Raises:
        ManifestSourceFailed: If the store cannot be listed
    """
    try:
        return [stored for stored in store.walk() if matches_manifest_patterns(stored.location, patterns)]
    except OSError as e:
        raise ManifestSourceFailed(f"Unable to list manifests in {store}: {e}") from e


def read_manifests(
    stores: Sequence[ObjectStore],
    patterns: Sequence[str] = DEFAULT_MANIFEST_PATTERNS,
    on_corrupt: CorruptManifestPolicy = "abort",
    workers: int = 4,
    cancel: CancellationToken | None = None,
    reader: ManifestReader | None = None,
) -> ManifestScanResult:
    """Read every manifest in the given stores.

    A manifest that fails to parse contributes nothing. Under the "abort"
    policy the first failure (in location order) is raised; under "skip" it is
    logged and recorded in the result.

    Raises:
        ManifestSourceFailed: If a manifest store cannot be listed or a manifest cannot be read
        CorruptManifest: Under the "abort" policy
        UnsupportedVersion: Under the "abort" policy
        CancellationRequested: If cancelled while reading
    """
    reader = reader or ManifestReader()
    cancel = cancel or CancellationToken()

    work: list[tuple[ObjectStore, StoredObject]] = []
    for store in stores:
        cancel.raise_if_cancelled()
        files = list_manifest_files(store, patterns)
        _LOGGER.info("Found %d manifest files in %s", len(files), store)
        work.extend((store, stored) for stored in files)

    def _read_one(item: tuple[ObjectStore, StoredObject]) -> ManifestRecord | ManifestError | None:
        store, stored = item
        if cancel.cancelled:
            return None
        try:
            return reader.read(store, stored)
        except ManifestError as e:
            return e

    manifests: list[ManifestRecord] = []
    failures: list[ManifestError] = []
    with futures.ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        for result in executor.map(_read_one, work):
            if isinstance(result, ManifestError):
                failures.append(result)
            elif result is not None:
                manifests.append(result)
    cancel.raise_if_cancelled()

    failures.sort(key=lambda e: e.location)
    if failures and on_corrupt == "abort":
        _LOGGER.error("Rejected manifest %s, aborting (%d rejected in total)", failures[0].location, len(failures))
        raise failures[0]

    for failure in failures:
        _LOGGER.warning("Skipping manifest %s: %s", failure.location, failure.message)

    manifests.sort(key=lambda m: m.location)
    return ManifestScanResult(
        manifests=tuple(manifests),
        rejected=tuple(RejectedManifest(location=f.location, error=f.message) for f in failures),
    )
