#!/usr/bin/env python3
"""Data models for chunk store compaction."""

from __future__ import annotations

import datetime
import enum
import hashlib
from dataclasses import dataclass
from functools import total_ordering

CHUNK_DIGEST_SIZE = 20  # SHA-1 width


@total_ordering
class ChunkIdentity:
    """Fixed-width content digest naming one chunk.

    Two chunks with equal identity are byte-identical, so identity is all the
    compactor ever compares.
    """

    __slots__ = ("_digest",)

    def __init__(self, digest: bytes):
        if not isinstance(digest, (bytes, bytearray)):
            raise TypeError(f"Chunk digest must be bytes, not {type(digest).__name__}")
        if len(digest) != CHUNK_DIGEST_SIZE:
            raise ValueError(f"Chunk digest must be {CHUNK_DIGEST_SIZE} bytes, got {len(digest)}")
        self._digest = bytes(digest)

    @classmethod
    def from_hex(cls, value: str) -> ChunkIdentity:
        if len(value) != CHUNK_DIGEST_SIZE * 2:
            raise ValueError(f"Invalid chunk hash '{value}': must be {CHUNK_DIGEST_SIZE * 2} hex characters")
        try:
            return cls(bytes.fromhex(value))
        except ValueError as e:
            raise ValueError(f"Invalid chunk hash '{value}': not hexadecimal") from e

    @classmethod
    def of_content(cls, content: bytes) -> ChunkIdentity:
        return cls(hashlib.sha1(content).digest())

    @property
    def digest(self) -> bytes:
        return self._digest

    @property
    def hex(self) -> str:
        return self._digest.hex()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChunkIdentity):
            return NotImplemented
        return self._digest == other._digest

    def __lt__(self, other: ChunkIdentity) -> bool:
        if not isinstance(other, ChunkIdentity):
            return NotImplemented
        return self._digest < other._digest

    def __hash__(self) -> int:
        return hash(self._digest)

    def __repr__(self) -> str:
        return f"ChunkIdentity({self.hex})"

    def __str__(self) -> str:
        return self.hex


@dataclass(frozen=True)
class ChunkRecord:
    """One physical chunk file found during an inventory scan.

    `location` is relative to the store named by `store`.
    """

    identity: ChunkIdentity
    store: str
    location: str
    size: int
    modified: datetime.datetime
    duplicate_of: str | None = None

    @property
    def uri(self) -> str:
        return f"{self.store.rstrip('/')}/{self.location}"

    @property
    def sort_key(self) -> tuple[str, str]:
        return self.store, self.location

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of is not None


@dataclass(frozen=True)
class ManifestRecord:
    """A parsed manifest: which chunks one build needs."""

    app_name: str
    build_version: str
    build_timestamp: datetime.datetime
    location: str
    chunks: tuple[ChunkIdentity, ...]
    file_modified: datetime.datetime | None = None

    @property
    def identifier(self) -> str:
        return f"{self.app_name} {self.build_version}"

    @property
    def unique_chunks(self) -> frozenset[ChunkIdentity]:
        return frozenset(self.chunks)


class AgeSource(str, enum.Enum):
    """Which timestamp a manifest's age is measured from."""

    BUILD_TIMESTAMP = "build-timestamp"
    FILE_MTIME = "file-mtime"


class RetentionReason(str, enum.Enum):
    ALLOWLISTED = "allowlisted"
    WITHIN_AGE = "within-age"
    NO_AGE_LIMIT = "no-age-limit"
    TOO_OLD = "too-old"


@dataclass(frozen=True)
class RetentionDecision:
    identifier: str
    live: bool
    reason: RetentionReason
    age: datetime.timedelta | None = None


class KeepReason(str, enum.Enum):
    REFERENCED = "referenced"
    SMALL_CHUNK = "small-chunk"
    TOO_RECENT = "too-recent"


@dataclass(frozen=True)
class PlanSummary:
    """Aggregate statistics computed before anything is deleted."""

    total_files: int
    unique_chunks: int
    duplicate_files: int
    referenced: int
    preserved_small: int
    preserved_recent: int
    to_delete: int
    bytes_to_reclaim: int
    bytes_kept: int


@dataclass(frozen=True)
class CompactionPlan:
    """Partition of the inventory into chunks to delete and chunks to keep.

    Both tuples are sorted by (store, location) so that equal inputs give equal
    plans. `keep_reasons` runs parallel to `to_keep`.
    """

    to_delete: tuple[ChunkRecord, ...]
    to_keep: tuple[ChunkRecord, ...]
    keep_reasons: tuple[KeepReason, ...]
    summary: PlanSummary

    def kept_with_reason(self, reason: KeepReason) -> list[ChunkRecord]:
        return [record for record, why in zip(self.to_keep, self.keep_reasons) if why == reason]

    def keep_reason(self, uri: str) -> KeepReason | None:
        for record, why in zip(self.to_keep, self.keep_reasons):
            if record.uri == uri:
                return why
        return None

    def fingerprint(self) -> str:
        """SHA-256 over the deletion list, for comparing plans across runs."""
        sha = hashlib.sha256()
        for record in self.to_delete:
            sha.update(f"{record.identity.hex} {record.size} {record.uri}\n".encode("utf-8"))
        return sha.hexdigest()


class ExecutionMode(str, enum.Enum):
    APPLY = "apply"
    PREVIEW = "preview"


class DeletionOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    ALREADY_ABSENT = "already-absent"
    FAILED = "failed"
    SKIPPED_DRY_RUN = "skipped-dry-run"


@dataclass(frozen=True)
class DeletionResult:
    record: ChunkRecord
    outcome: DeletionOutcome
    reason: str | None = None


@dataclass(frozen=True)
class ExecutionReport:
    """Outcome of applying (or previewing) a plan. Never mutated after a run."""

    mode: ExecutionMode
    results: tuple[DeletionResult, ...]
    cancelled: bool = False
    not_attempted: int = 0

    def _with_outcome(self, outcome: DeletionOutcome) -> list[DeletionResult]:
        return [result for result in self.results if result.outcome == outcome]

    @property
    def succeeded(self) -> list[DeletionResult]:
        return self._with_outcome(DeletionOutcome.SUCCEEDED)

    @property
    def already_absent(self) -> list[DeletionResult]:
        return self._with_outcome(DeletionOutcome.ALREADY_ABSENT)

    @property
    def failed(self) -> list[DeletionResult]:
        return self._with_outcome(DeletionOutcome.FAILED)

    @property
    def skipped(self) -> list[DeletionResult]:
        return self._with_outcome(DeletionOutcome.SKIPPED_DRY_RUN)

    @property
    def bytes_reclaimed(self) -> int:
        return sum(result.record.size for result in self.succeeded)

    @property
    def complete(self) -> bool:
        return not self.cancelled and not self.failed


class RunStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial-success"
    ABORTED = "aborted"


@dataclass(frozen=True)
class RejectedManifest:
    location: str
    error: str


@dataclass(frozen=True)
class CompactionOutcome:
    """Everything a caller needs to know about one compaction run."""

    status: RunStatus
    plan: CompactionPlan | None = None
    report: ExecutionReport | None = None
    retention: tuple[RetentionDecision, ...] = ()
    rejected_manifests: tuple[RejectedManifest, ...] = ()
    duplicate_chunks: tuple[ChunkRecord, ...] = ()
    abort_reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.report is not None and self.report.cancelled

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.SUCCESS:
            return 0
        if self.status == RunStatus.PARTIAL_SUCCESS:
            return 1
        return 2
