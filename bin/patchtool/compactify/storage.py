#!/usr/bin/env python3
"""Storage locations holding chunks and manifests: local directories or S3 prefixes."""

from __future__ import annotations

import abc
import datetime
import logging
import os
import urllib.parse
from pathlib import Path
from typing import Iterator, NamedTuple

from patchtool.amazon import botocore, s3_client

_LOGGER = logging.getLogger(__name__)

# Partition name for objects sitting directly in the store root.
ROOT_PARTITION = ""


class StoredObject(NamedTuple):
    """An object as listed by a store: location relative to the store root."""

    location: str
    size: int
    modified: datetime.datetime


class StoreAccessError(OSError):
    """A remote store refused or failed a request."""


class ObjectStore(abc.ABC):
    """The operations compaction needs from a storage location: list, read, delete."""

    @abc.abstractmethod
    def describe(self) -> str:
        """Human-readable name for log messages."""

    @abc.abstractmethod
    def partitions(self) -> list[str]:
        """Sorted names of independently listable parts of the store.

        Raises:
            OSError: If the store root cannot be listed
        """

    @abc.abstractmethod
    def list_partition(self, partition: str) -> list[StoredObject]:
        """All objects in one partition, sorted by location."""

    @abc.abstractmethod
    def read_bytes(self, location: str) -> bytes:
        pass

    @abc.abstractmethod
    def delete(self, location: str) -> bool:
        """Delete an object.

        Returns:
            True if the object was deleted, False if it was already gone

        Raises:
            OSError: If the object exists but could not be deleted
        """

    def walk(self) -> Iterator[StoredObject]:
        for partition in self.partitions():
            yield from self.list_partition(partition)

    def __str__(self) -> str:
        return self.describe()


class LocalObjectStore(ObjectStore):
    """A directory tree; every directory is a partition holding just its own files."""

    def __init__(self, root: Path):
        self.root = root

    def describe(self) -> str:
        return str(self.root)

    def _path(self, location: str) -> Path:
        return self.root / location

    def partitions(self) -> list[str]:
        if not self.root.is_dir():
            raise FileNotFoundError(f"Store root {self.root} does not exist or is not a directory")
        found = [ROOT_PARTITION]
        pending = [self.root]
        while pending:
            with os.scandir(pending.pop()) as entries:
                for entry in entries:
                    if entry.is_dir(follow_symlinks=False):
                        found.append(Path(entry.path).relative_to(self.root).as_posix())
                        pending.append(Path(entry.path))
        return sorted(found)

    def list_partition(self, partition: str) -> list[StoredObject]:
        directory = self.root / partition if partition != ROOT_PARTITION else self.root
        objects = []
        with os.scandir(directory) as entries:
            for entry in entries:
                if not entry.is_file(follow_symlinks=False):
                    continue
                try:
                    stat = entry.stat(follow_symlinks=False)
                except FileNotFoundError:
                    # Removed between listing and stat, e.g. by a concurrent compaction
                    _LOGGER.debug("File vanished during scan: %s", entry.path)
                    continue
                objects.append(
                    StoredObject(
                        location=Path(entry.path).relative_to(self.root).as_posix(),
                        size=stat.st_size,
                        modified=datetime.datetime.fromtimestamp(stat.st_mtime, tz=datetime.timezone.utc),
                    )
                )
        return sorted(objects)

    def read_bytes(self, location: str) -> bytes:
        return self._path(location).read_bytes()

    def delete(self, location: str) -> bool:
        try:
            self._path(location).unlink()
        except FileNotFoundError:
            return False
        return True


class S3ObjectStore(ObjectStore):
    """A key prefix in an S3 bucket; every "/"-delimited key prefix below it is a partition."""

    def __init__(self, bucket: str, prefix: str = "", client=None):
        self.bucket = bucket
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self.client = client if client is not None else s3_client

    def describe(self) -> str:
        return f"s3://{self.bucket}/{self.prefix}"

    def _key(self, location: str) -> str:
        return self.prefix + location

    def _relative(self, key: str) -> str:
        return key[len(self.prefix) :]

    def _pages(self, **kwargs):
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            yield from paginator.paginate(Bucket=self.bucket, **kwargs)
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
            raise StoreAccessError(f"Unable to list {self.describe()}: {e}") from e

    @staticmethod
    def _to_object(location: str, item: dict) -> StoredObject:
        modified = item["LastModified"]
        if modified.tzinfo is None:
            modified = modified.replace(tzinfo=datetime.timezone.utc)
        return StoredObject(location=location, size=int(item["Size"]), modified=modified)

    def partitions(self) -> list[str]:
        found = [ROOT_PARTITION]
        pending = [self.prefix]
        while pending:
            for page in self._pages(Prefix=pending.pop(), Delimiter="/"):
                for common in page.get("CommonPrefixes", []):
                    found.append(self._relative(common["Prefix"]).rstrip("/"))
                    pending.append(common["Prefix"])
        return sorted(found)

    def list_partition(self, partition: str) -> list[StoredObject]:
        prefix = self.prefix if partition == ROOT_PARTITION else self._key(partition) + "/"
        pages = self._pages(Prefix=prefix, Delimiter="/")
        objects = []
        for page in pages:
            for item in page.get("Contents", []):
                location = self._relative(item["Key"])
                if not location or location.endswith("/"):
                    continue
                objects.append(self._to_object(location, item))
        return sorted(objects)

    def read_bytes(self, location: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(location))
            return response["Body"].read()
        except botocore.exceptions.ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"{self.describe()}{location} does not exist") from e
            raise StoreAccessError(f"Unable to read {self.describe()}{location}: {e}") from e

    def delete(self, location: str) -> bool:
        key = self._key(location)
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except botocore.exceptions.ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound"):
                return False
            raise StoreAccessError(f"Unable to check {self.describe()}{location}: {e}") from e
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except botocore.exceptions.ClientError as e:
            raise StoreAccessError(f"Unable to delete {self.describe()}{location}: {e}") from e
        return True


def open_store(uri: str) -> ObjectStore:
    """Open a store from a local path or an s3://bucket/prefix URI."""
    if uri.startswith("s3://"):
        parsed = urllib.parse.urlparse(uri)
        if not parsed.netloc:
            raise ValueError(f"Invalid S3 location '{uri}': no bucket")
        return S3ObjectStore(bucket=parsed.netloc, prefix=parsed.path)
    return LocalObjectStore(Path(uri))
