#!/usr/bin/env python3
"""End-to-end tests for a compaction run."""

from __future__ import annotations

import datetime

import pytest
from patchtool.compactify.cancellation import CancellationToken
from patchtool.compactify.formatting import format_outcome
from patchtool.compactify.models import ExecutionMode, KeepReason, RunStatus
from patchtool.compactify.runner import run_compaction
from patchtool.compactify.storage import LocalObjectStore
from patchtool.config import CompactifyConfig


class UnreadableStore(LocalObjectStore):
    def read_bytes(self, location):
        raise PermissionError(13, "Permission denied", location)


class DenyingStore(LocalObjectStore):
    def __init__(self, root, denied_prefix):
        super().__init__(root)
        self.denied_prefix = denied_prefix

    def delete(self, location):
        if location.startswith(self.denied_prefix):
            raise PermissionError(13, "Permission denied", location)
        return super().delete(location)


@pytest.fixture
def layout(chunks, manifests):
    paths = {seed: chunks.add(seed, size) for seed, size in (("a", 100), ("b", 50), ("c", 30), ("d", 20))}
    manifests.write("game-1.manifest", ["a", "b"], build_version="1")
    return paths


def _config(chunks, manifests, **kwargs) -> CompactifyConfig:
    return CompactifyConfig(manifest_roots=[str(manifests.root)], chunk_roots=[str(chunks.root)], **kwargs)


def _relative(chunks, paths, *seeds):
    return {paths[seed].relative_to(chunks.root).as_posix() for seed in seeds}


def test_apply_deletes_unreferenced_chunks(layout, chunks, manifests, now):
    outcome = run_compaction(_config(chunks, manifests, mode=ExecutionMode.APPLY), now=now)

    assert outcome.status == RunStatus.SUCCESS
    assert outcome.exit_code == 0
    assert chunks.present() == _relative(chunks, layout, "a", "b")
    assert outcome.report.bytes_reclaimed == 50
    assert outcome.plan.summary.referenced == 2
    assert format_outcome(outcome) == "Compaction complete"


def test_preview_is_the_default_and_changes_nothing(layout, chunks, manifests, now):
    before = chunks.present()
    outcome = run_compaction(_config(chunks, manifests), now=now)

    assert outcome.status == RunStatus.SUCCESS
    assert chunks.present() == before
    assert len(outcome.report.skipped) == 2
    assert outcome.report.bytes_reclaimed == 0
    assert format_outcome(outcome) == "Compaction preview complete"


def test_preview_and_apply_plan_the_same(layout, chunks, manifests, now):
    preview = run_compaction(_config(chunks, manifests), now=now)
    applied = run_compaction(_config(chunks, manifests, mode=ExecutionMode.APPLY), now=now)
    assert preview.plan.fingerprint() == applied.plan.fingerprint()


def test_second_run_finds_nothing_to_do(layout, chunks, manifests, now):
    config = _config(chunks, manifests, mode=ExecutionMode.APPLY)
    run_compaction(config, now=now)
    outcome = run_compaction(config, now=now)

    assert outcome.status == RunStatus.SUCCESS
    assert outcome.plan.to_delete == ()
    assert chunks.present() == _relative(chunks, layout, "a", "b")


def test_old_manifests_stop_protecting_chunks(layout, chunks, manifests, now):
    old = (now - datetime.timedelta(days=90)).isoformat()
    manifests.write("game-0.manifest", ["c"], build_version="0", created_at=old)
    manifests.write("demo-0.manifest", ["d"], app_name="Demo", build_version="0", created_at=old)
    config = _config(
        chunks, manifests, mode=ExecutionMode.APPLY, min_manifest_age="30d", manifest_allowlist=["Demo"]
    )

    outcome = run_compaction(config, now=now)

    assert chunks.present() == _relative(chunks, layout, "a", "b", "d")
    live = {decision.identifier: decision.live for decision in outcome.retention}
    assert live == {"TestGame 1": True, "TestGame 0": False, "Demo 0": True}


def test_small_chunks_survive(layout, chunks, manifests, now):
    config = _config(chunks, manifests, mode=ExecutionMode.APPLY, small_chunk_preserve_threshold="25")
    outcome = run_compaction(config, now=now)

    assert chunks.present() == _relative(chunks, layout, "a", "b", "d")
    (kept,) = outcome.plan.kept_with_reason(KeepReason.SMALL_CHUNK)
    assert kept.size == 20


def test_corrupt_manifest_aborts_by_default(layout, chunks, manifests, now):
    (manifests.root / "broken.manifest").write_text("version: 1\napp_name: [", encoding="utf-8")
    before = chunks.present()

    outcome = run_compaction(_config(chunks, manifests, mode=ExecutionMode.APPLY), now=now)

    assert outcome.status == RunStatus.ABORTED
    assert outcome.exit_code == 2
    assert "broken.manifest" in outcome.abort_reason
    assert outcome.plan is None
    assert chunks.present() == before


def test_corrupt_manifest_can_be_skipped(layout, chunks, manifests, now):
    (manifests.root / "broken.manifest").write_text("{}", encoding="utf-8")
    config = _config(chunks, manifests, mode=ExecutionMode.APPLY, on_corrupt_manifest="skip")

    outcome = run_compaction(config, now=now)

    assert outcome.status == RunStatus.SUCCESS
    assert [r.location for r in outcome.rejected_manifests] == ["broken.manifest"]
    assert chunks.present() == _relative(chunks, layout, "a", "b")


def test_empty_live_set_aborts(chunks, manifests, now):
    chunks.add("a", 100)
    outcome = run_compaction(_config(chunks, manifests, mode=ExecutionMode.APPLY), now=now)

    assert outcome.status == RunStatus.ABORTED
    assert "No chunks are referenced" in outcome.abort_reason
    assert len(chunks.present()) == 1


def test_missing_chunk_store_aborts(manifests, tmp_path, now):
    manifests.write("game.manifest", ["a"])
    config = CompactifyConfig(manifest_roots=[str(manifests.root)], chunk_roots=[str(tmp_path / "missing")])

    outcome = run_compaction(config, now=now)

    assert outcome.status == RunStatus.ABORTED
    assert "Unable to enumerate" in outcome.abort_reason
    assert [d.identifier for d in outcome.retention] == ["TestGame 1.0.0"]


def test_missing_manifest_store_aborts(chunks, tmp_path, now):
    chunks.add("a", 100)
    config = CompactifyConfig(manifest_roots=[str(tmp_path / "missing")], chunk_roots=[str(chunks.root)])

    outcome = run_compaction(config, now=now)

    assert outcome.status == RunStatus.ABORTED
    assert "Unable to list manifests" in outcome.abort_reason


@pytest.mark.parametrize(
    "kwargs, reason",
    [
        ({"chunk_roots": ["/tmp"]}, "no manifest locations"),
        ({"manifest_roots": ["/tmp"]}, "no chunk store locations"),
        ({"manifest_roots": ["s3:///nobucket"], "chunk_roots": ["/tmp"]}, "no bucket"),
    ],
)
def test_bad_locations_abort(kwargs, reason, now):
    outcome = run_compaction(CompactifyConfig(**kwargs), now=now)
    assert outcome.status == RunStatus.ABORTED
    assert reason in outcome.abort_reason


def test_failed_deletions_give_partial_success(layout, chunks, manifests, now):
    denied = layout["c"].relative_to(chunks.root).as_posix()
    store = DenyingStore(chunks.root, denied)

    outcome = run_compaction(
        _config(chunks, manifests, mode=ExecutionMode.APPLY), now=now, chunk_stores=[store]
    )

    assert outcome.status == RunStatus.PARTIAL_SUCCESS
    assert outcome.exit_code == 1
    assert chunks.present() == _relative(chunks, layout, "a", "b", "c")
    assert "rerun" in format_outcome(outcome)


def test_declined_confirmation_aborts(layout, chunks, manifests, now):
    before = chunks.present()
    asked = []

    def _decline(plan):
        asked.append(len(plan.to_delete))
        return False

    outcome = run_compaction(_config(chunks, manifests, mode=ExecutionMode.APPLY), now=now, confirm=_decline)

    assert asked == [2]
    assert outcome.status == RunStatus.ABORTED
    assert outcome.plan is not None
    assert chunks.present() == before


def test_preview_never_asks_for_confirmation(layout, chunks, manifests, now):
    def _fail(plan):
        raise AssertionError("should not be asked")

    outcome = run_compaction(_config(chunks, manifests), now=now, confirm=_fail)
    assert outcome.status == RunStatus.SUCCESS


def test_cancelled_run_deletes_nothing(layout, chunks, manifests, now):
    cancel = CancellationToken()
    cancel.cancel("interrupted by user")
    before = chunks.present()

    outcome = run_compaction(_config(chunks, manifests, mode=ExecutionMode.APPLY), cancel=cancel, now=now)

    assert outcome.status == RunStatus.ABORTED
    assert "interrupted by user" in outcome.abort_reason
    assert chunks.present() == before


def test_unreadable_manifest_aborts_even_when_skipping(layout, chunks, manifests, now):
    before = chunks.present()
    config = _config(chunks, manifests, mode=ExecutionMode.APPLY, on_corrupt_manifest="skip")

    outcome = run_compaction(config, now=now, manifest_stores=[UnreadableStore(manifests.root)])

    assert outcome.status == RunStatus.ABORTED
    assert "Permission denied" in outcome.abort_reason
    assert outcome.rejected_manifests == ()
    assert chunks.present() == before


def test_freshly_written_chunks_follow_the_default_rules(chunks, manifests, now):
    fresh = datetime.timedelta(0)
    paths = {seed: chunks.add(seed, size, age=fresh) for seed, size in (("A", 100), ("B", 50), ("C", 5))}
    manifests.write("game.manifest", ["A"])
    config = _config(chunks, manifests, mode=ExecutionMode.APPLY, small_chunk_preserve_threshold=10)

    outcome = run_compaction(config, now=now)

    assert [r.size for r in outcome.plan.to_delete] == [50]
    assert chunks.present() == _relative(chunks, paths, "A", "C")
