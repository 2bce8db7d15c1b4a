#!/usr/bin/env python3
"""Shared fixtures for patchtool tests."""

from __future__ import annotations

import datetime
import hashlib
import os
from pathlib import Path

import pytest
import yaml
from patchtool.compactify.manifest import manifest_checksum

NOW = datetime.datetime(2026, 6, 1, 12, 0, tzinfo=datetime.timezone.utc)


def chunk_hash(seed: str) -> str:
    return hashlib.sha1(seed.encode("utf-8")).hexdigest()


class ChunkStoreBuilder:
    """Lays out chunk files as <root>/<partition>/<hash>.chunk."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def add(
        self,
        seed: str,
        size: int,
        partition: str | None = None,
        age: datetime.timedelta = datetime.timedelta(days=30),
        name_prefix: str = "",
    ) -> Path:
        digest = chunk_hash(seed)
        directory = self.root / (partition if partition is not None else digest[:2])
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{name_prefix}{digest}.chunk"
        path.write_bytes(b"x" * size)
        mtime = (NOW - age).timestamp()
        os.utime(path, (mtime, mtime))
        return path

    def present(self) -> set[str]:
        return {p.relative_to(self.root).as_posix() for p in self.root.rglob("*") if p.is_file()}


def make_manifest_doc(**kwargs) -> dict:
    """Create a manifest document with sensible defaults.

    Args:
        **kwargs: Override any default manifest fields

    Returns:
        Complete manifest dictionary, checksummed unless a checksum is given
    """
    defaults = {
        "version": 1,
        "app_name": "TestGame",
        "build_version": "1.0.0",
        "created_at": (NOW - datetime.timedelta(days=1)).isoformat(),
        "chunks": [],
    }
    defaults.update(kwargs)
    if "checksum" not in kwargs:
        defaults["checksum"] = manifest_checksum(entry["hash"] for entry in defaults["chunks"])
    return defaults


class ManifestDirBuilder:
    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def write(self, filename: str, seeds: list[str], **kwargs) -> Path:
        doc = make_manifest_doc(chunks=[{"hash": chunk_hash(seed)} for seed in seeds], **kwargs)
        path = self.root / filename
        path.write_text(yaml.safe_dump(doc), encoding="utf-8")
        return path


@pytest.fixture
def now() -> datetime.datetime:
    return NOW


@pytest.fixture
def chunks(tmp_path) -> ChunkStoreBuilder:
    return ChunkStoreBuilder(tmp_path / "chunks")


@pytest.fixture
def manifests(tmp_path) -> ManifestDirBuilder:
    return ManifestDirBuilder(tmp_path / "manifests")


@pytest.fixture
def manifest_doc():
    return make_manifest_doc


@pytest.fixture
def hash_of():
    return chunk_hash
