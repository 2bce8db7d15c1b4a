#!/usr/bin/env python3
"""Retention rules: which manifests are live, which chunks are never deleted."""

from __future__ import annotations

import datetime
import fnmatch
import posixpath
from dataclasses import dataclass

from patchtool.compactify.models import (
    AgeSource,
    ChunkRecord,
    KeepReason,
    ManifestRecord,
    RetentionDecision,
    RetentionReason,
)


@dataclass(frozen=True)
class RetentionPolicy:
    """Pure retention decisions. No I/O; the current time is always passed in.

    Attributes:
        min_age: Manifests older than this are not live. None means no age limit.
        manifest_allowlist: fnmatch patterns; a manifest whose identifier, app name
            or file name matches is live regardless of age (see
            allowlist_overrides_age).
        small_chunk_preserve_threshold_bytes: Chunks at or below this size are
            never deleted. None disables the rule.
        age_source: Whether a manifest's age is taken from its build timestamp or
            from its file modification time.
        allowlist_overrides_age: When False, a too-old manifest is excluded even
            if allowlisted.
        min_chunk_age: Chunk files modified more recently than this are never
            deleted. None disables the rule.
    """

    min_age: datetime.timedelta | None = None
    manifest_allowlist: tuple[str, ...] = ()
    small_chunk_preserve_threshold_bytes: int | None = None
    age_source: AgeSource = AgeSource.BUILD_TIMESTAMP
    allowlist_overrides_age: bool = True
    min_chunk_age: datetime.timedelta | None = None

    def is_allowlisted(self, manifest: ManifestRecord) -> bool:
        names = (manifest.identifier, manifest.app_name, posixpath.basename(manifest.location))
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.manifest_allowlist for name in names)

    def manifest_age(self, manifest: ManifestRecord, now: datetime.datetime) -> datetime.timedelta:
        if self.age_source == AgeSource.FILE_MTIME and manifest.file_modified is not None:
            return now - manifest.file_modified
        return now - manifest.build_timestamp

    def decide_manifest(self, manifest: ManifestRecord, now: datetime.datetime) -> RetentionDecision:
        allowlisted = self.is_allowlisted(manifest)
        if self.min_age is None:
            reason = RetentionReason.ALLOWLISTED if allowlisted else RetentionReason.NO_AGE_LIMIT
            return RetentionDecision(identifier=manifest.identifier, live=True, reason=reason)

        age = self.manifest_age(manifest, now)
        too_old = age > self.min_age
        if allowlisted and (self.allowlist_overrides_age or not too_old):
            return RetentionDecision(
                identifier=manifest.identifier, live=True, reason=RetentionReason.ALLOWLISTED, age=age
            )
        if too_old:
            return RetentionDecision(
                identifier=manifest.identifier, live=False, reason=RetentionReason.TOO_OLD, age=age
            )
        return RetentionDecision(identifier=manifest.identifier, live=True, reason=RetentionReason.WITHIN_AGE, age=age)

    def is_manifest_live(self, manifest: ManifestRecord, now: datetime.datetime) -> bool:
        return self.decide_manifest(manifest, now).live

    def should_preserve_chunk(self, chunk: ChunkRecord, now: datetime.datetime) -> KeepReason | None:
        """Reason to keep a chunk even when no live manifest references it."""
        threshold = self.small_chunk_preserve_threshold_bytes
        if threshold is not None and chunk.size <= threshold:
            return KeepReason.SMALL_CHUNK
        if self.min_chunk_age is not None and now - chunk.modified < self.min_chunk_age:
            return KeepReason.TOO_RECENT
        return None
