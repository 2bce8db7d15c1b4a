#!/usr/bin/env python3
"""Configuration management for patchtool.

Handles loading configuration from YAML files to control the behaviour of
the tool modes.
"""

from __future__ import annotations

import datetime
import logging
from pathlib import Path
from typing import Any, Literal

import humanfriendly
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from patchtool.compactify.inventory import DEFAULT_CHUNK_EXTENSIONS
from patchtool.compactify.manifest import DEFAULT_MANIFEST_PATTERNS
from patchtool.compactify.models import AgeSource, ExecutionMode
from patchtool.compactify.retention import RetentionPolicy

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/patchtool/config.yaml")


class ConfigSafeLoader(yaml.SafeLoader):
    """SafeLoader that leaves dates and times as plain strings."""


ConfigSafeLoader.yaml_implicit_resolvers = {
    first_letter: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:timestamp"]
    for first_letter, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def parse_timespan(value: str | None) -> datetime.timedelta | None:
    if value is None:
        return None
    return datetime.timedelta(seconds=humanfriendly.parse_timespan(value))


class CompactifyConfig(BaseModel):
    """Configuration for the compactify tool mode."""

    manifest_roots: list[str] = Field(default_factory=list)
    manifest_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_MANIFEST_PATTERNS))
    chunk_roots: list[str] = Field(default_factory=list)
    chunk_extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_CHUNK_EXTENSIONS))
    min_manifest_age: str | None = None
    age_source: AgeSource = AgeSource.BUILD_TIMESTAMP
    manifest_allowlist: list[str] = Field(default_factory=list)
    allowlist_overrides_age: bool = True
    small_chunk_preserve_threshold: int | None = None
    min_chunk_age: str | None = None
    on_corrupt_manifest: Literal["abort", "skip"] = "abort"
    mode: ExecutionMode = ExecutionMode.PREVIEW
    workers: int = Field(4, ge=1, le=256)
    per_item_timeout: str | None = "5m"
    allow_empty_live_set: bool = False
    report_limit: int = Field(20, ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("min_manifest_age", "min_chunk_age", "per_item_timeout", mode="before")
    @classmethod
    def validate_timespan(cls, v: Any) -> str | None:
        if v is None:
            return None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = f"{v}s"
        if not isinstance(v, str):
            raise ValueError(f"Invalid timespan {v!r}")
        try:
            humanfriendly.parse_timespan(v)
        except humanfriendly.InvalidTimespan as e:
            raise ValueError(str(e)) from e
        return v

    @field_validator("small_chunk_preserve_threshold", mode="before")
    @classmethod
    def validate_size(cls, v: Any) -> int | None:
        if v is None or isinstance(v, int):
            return v
        try:
            return humanfriendly.parse_size(str(v), binary=True)
        except humanfriendly.InvalidSize as e:
            raise ValueError(str(e)) from e

    @field_validator("chunk_extensions")
    @classmethod
    def validate_extensions(cls, v: list[str]) -> list[str]:
        return [ext if ext.startswith(".") else f".{ext}" for ext in v]

    @property
    def per_item_timeout_seconds(self) -> float | None:
        timeout = parse_timespan(self.per_item_timeout)
        return timeout.total_seconds() if timeout is not None else None

    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            min_age=parse_timespan(self.min_manifest_age),
            manifest_allowlist=tuple(self.manifest_allowlist),
            small_chunk_preserve_threshold_bytes=self.small_chunk_preserve_threshold,
            age_source=self.age_source,
            allowlist_overrides_age=self.allowlist_overrides_age,
            min_chunk_age=parse_timespan(self.min_chunk_age),
        )


class Config(BaseModel):
    """Main patchtool configuration."""

    compactify: CompactifyConfig = CompactifyConfig()

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def load(cls, config_path: Path) -> Config:
        """Load configuration from config path.

        Args:
            config_path: Path to the configuration file (e.g., /etc/patchtool/config.yaml)

        Returns:
            Config instance with loaded values, or defaults if file doesn't exist

        Raises:
            ValidationError: If config contains invalid values or unknown keys
        """
        if not config_path.exists():
            _LOGGER.debug("Config file %s does not exist, using defaults", config_path)
            return cls()

        try:
            with config_path.open(encoding="utf-8") as config_file:
                config_data = yaml.load(config_file, Loader=ConfigSafeLoader)

            if config_data is None:
                _LOGGER.warning("Config file %s is empty, using defaults", config_path)
                return cls()

            return cls.model_validate(config_data)

        except ValidationError as e:
            _LOGGER.error("Invalid config in %s: %s", config_path, e)
            raise
        except Exception as e:
            _LOGGER.error("Failed to load config from %s: %s", config_path, e)
            raise

    def with_cli_overrides(self, **compactify_overrides: Any) -> Config:
        """Create a new Config with CLI overrides applied to the compactify section.

        Overrides whose value is None (or an empty tuple/list, for repeatable
        options) are ignored so unset CLI options keep the configured value.

        Returns:
            New Config instance with overrides applied
        """
        config_dict = self.model_dump()
        for key, value in compactify_overrides.items():
            if value is None or (isinstance(value, (list, tuple)) and not value):
                continue
            if key not in CompactifyConfig.model_fields:
                raise ValueError(f"Unknown compactify setting '{key}'")
            config_dict["compactify"][key] = list(value) if isinstance(value, tuple) else value
            _LOGGER.info("CLI override: compactify.%s = %s", key, value)
        return self.__class__.model_validate(config_dict)
