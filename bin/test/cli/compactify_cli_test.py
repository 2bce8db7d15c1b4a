#!/usr/bin/env python3
"""Tests for the compactify command line."""

from __future__ import annotations

import logging

import pytest
import yaml
from click.testing import CliRunner
from patchtool.cli.main import cli


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers[len(handlers) :]:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def store(chunks, manifests):
    chunks.add("kept", 100)
    chunks.add("unused", 50)
    manifests.write("game.manifest", ["kept"])
    return chunks, manifests


def _invoke(tmp_path, store, *args, config=None, input=None):
    chunks, manifests = store
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config or {}), encoding="utf-8")
    log_path = tmp_path / "patchtool.log"
    result = CliRunner().invoke(
        cli,
        [
            "--config",
            str(config_path),
            "--log",
            str(log_path),
            "compactify",
            "--manifest-root",
            str(manifests.root),
            "--chunk-root",
            str(chunks.root),
            "--min-chunk-age",
            "0s",
            *args,
        ],
        input=input,
    )
    return result, log_path.read_text(encoding="utf-8") if log_path.exists() else ""


def test_preview_by_default(tmp_path, store):
    result, log = _invoke(tmp_path, store)

    assert result.exit_code == 0, result.output
    assert len(store[0].present()) == 2
    assert "DRY RUN" in log
    assert "Compaction preview complete" in log


def test_apply_with_force(tmp_path, store, hash_of):
    result, log = _invoke(tmp_path, store, "--apply", "--force")

    assert result.exit_code == 0, result.output
    (remaining,) = store[0].present()
    assert hash_of("kept") in remaining
    assert "Deleted: " in log
    assert "Compaction complete" in log


def test_apply_asks_for_confirmation(tmp_path, store):
    result, log = _invoke(tmp_path, store, "--apply", input="n\n")

    assert result.exit_code == 2
    assert "Delete 1 unreferenced chunks" in result.output
    assert len(store[0].present()) == 2
    assert "deletion declined by user" in log


def test_confirmed_apply(tmp_path, store):
    result, _ = _invoke(tmp_path, store, "--apply", input="y\n")
    assert result.exit_code == 0, result.output
    assert len(store[0].present()) == 1


def test_config_file_mode_can_be_overridden(tmp_path, store):
    result, _ = _invoke(tmp_path, store, "--preview", config={"compactify": {"mode": "apply"}})
    assert result.exit_code == 0, result.output
    assert len(store[0].present()) == 2


def test_aborted_run_exits_2(tmp_path, store):
    (store[1].root / "broken.manifest").write_text("{}", encoding="utf-8")

    result, log = _invoke(tmp_path, store, "--apply", "--force")

    assert result.exit_code == 2
    assert "ABORTED" in log
    assert len(store[0].present()) == 2


def test_skip_corrupt_manifests(tmp_path, store):
    (store[1].root / "broken.manifest").write_text("{}", encoding="utf-8")

    result, log = _invoke(tmp_path, store, "--apply", "--force", "--on-corrupt", "skip")

    assert result.exit_code == 0, result.output
    assert "Skipping manifest broken.manifest" in log


def test_invalid_option_value(tmp_path, store):
    result, _ = _invoke(tmp_path, store, "--min-age", "eventually")
    assert result.exit_code != 0
    assert "Invalid option" in result.output


def test_bad_config_file(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("compactify:\n  workers: many\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["--config", str(config_path), "--log", str(tmp_path / "log"), "show-config"])

    assert result.exit_code != 0
    assert "Unable to load config" in result.output


def test_show_config(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("compactify:\n  chunk_roots: [/data/chunks]\n  workers: 8\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["--config", str(config_path), "--log", str(tmp_path / "log"), "show-config"])

    assert result.exit_code == 0, result.output
    shown = yaml.safe_load(result.output)
    assert shown["compactify"]["chunk_roots"] == ["/data/chunks"]
    assert shown["compactify"]["workers"] == 8
    assert shown["compactify"]["mode"] == "preview"
