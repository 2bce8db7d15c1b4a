#!/usr/bin/env python3
"""Tool modes patchtool can run, selected explicitly at startup."""

from __future__ import annotations

import abc
import enum
import logging

import click
import humanfriendly

from patchtool.compactify.cancellation import CancellationToken, cancel_on_sigint
from patchtool.compactify.formatting import format_outcome
from patchtool.compactify.models import CompactionOutcome, CompactionPlan, RunStatus
from patchtool.compactify.runner import run_compaction
from patchtool.config import Config

_LOGGER = logging.getLogger(__name__)


class ToolMode(str, enum.Enum):
    COMPACTIFY = "compactify"


class ToolModeRunner(abc.ABC):
    """One tool mode: does its work and returns a process exit code."""

    def __init__(self, config: Config):
        self.config = config

    @abc.abstractmethod
    def run(self) -> int:
        pass


class CompactifyToolMode(ToolModeRunner):
    def __init__(self, config: Config, force: bool = False):
        super().__init__(config)
        self.force = force
        self.outcome: CompactionOutcome | None = None

    def _confirm(self, plan: CompactionPlan) -> bool:
        if self.force:
            return True
        return click.confirm(
            f"Delete {len(plan.to_delete)} unreferenced chunks"
            f" ({humanfriendly.format_size(plan.summary.bytes_to_reclaim, binary=True)})?"
        )

    def run(self) -> int:
        with cancel_on_sigint(CancellationToken()) as cancel:
            self.outcome = run_compaction(self.config.compactify, cancel=cancel, confirm=self._confirm)

        verdict = format_outcome(self.outcome)
        if self.outcome.status == RunStatus.SUCCESS:
            _LOGGER.info(verdict)
        else:
            _LOGGER.error(verdict)
        return self.outcome.exit_code


def create_tool_mode(mode: ToolMode, config: Config, **kwargs) -> ToolModeRunner:
    if mode == ToolMode.COMPACTIFY:
        return CompactifyToolMode(config, **kwargs)
    raise ValueError(f"Unknown tool mode {mode}")
