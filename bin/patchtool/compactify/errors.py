#!/usr/bin/env python3
"""Exceptions raised while compacting a chunk store."""

from __future__ import annotations


class CompactifyError(Exception):
    """Base class for all compaction errors."""


class ManifestError(CompactifyError):
    """A single manifest could not be used."""

    def __init__(self, location: str, message: str):
        super().__init__(f"{location}: {message}")
        self.location = location
        self.message = message


class CorruptManifest(ManifestError):
    """The manifest is structurally invalid or fails its embedded checksum."""


class UnsupportedVersion(ManifestError):
    """The manifest format version is newer than this reader understands."""

    def __init__(self, location: str, version: int, supported: int):
        super().__init__(location, f"manifest version {version} is newer than supported version {supported}")
        self.version = version
        self.supported = supported


class ManifestSourceFailed(CompactifyError):
    """The manifest store could not be listed."""


class InventoryScanFailed(CompactifyError):
    """A chunk store root could not be enumerated."""


class IndexBuildFailed(CompactifyError):
    """The live set could not be built."""


class UnsafePlan(CompactifyError):
    """The computed plan would be unsafe to apply."""


class DeletionFailed(CompactifyError):
    """One chunk could not be deleted."""

    def __init__(self, location: str, reason: str):
        super().__init__(f"Failed to delete {location}: {reason}")
        self.location = location
        self.reason = reason


class CancellationRequested(CompactifyError):
    """A cooperative stop was requested."""
