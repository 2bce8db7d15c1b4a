#!/usr/bin/env python3
"""patchtool command line."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import click
import yaml

from patchtool.compactify.models import AgeSource, ExecutionMode
from patchtool.config import DEFAULT_CONFIG_PATH, Config
from patchtool.tool_modes import ToolMode, create_tool_mode

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CliContext:
    config: Config


def _setup_logging(debug: bool, log: Optional[str], log_to_console: bool) -> None:
    formatter = logging.Formatter(fmt="%(asctime)s %(name)-15s %(levelname)-8s %(message)s")
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if log:
        file_handler = logging.FileHandler(log)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
    if not log or log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)
    if not debug:
        logging.getLogger("boto3").setLevel(logging.WARNING)
        logging.getLogger("botocore").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


@click.group()
@click.option(
    "--config",
    "config_path",
    default=DEFAULT_CONFIG_PATH,
    metavar="CONFIG",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Read configuration from CONFIG",
    show_default=True,
)
@click.option("--debug/--no-debug", help="Turn on debugging")
@click.option("--log-to-console", is_flag=True, help="Log output to console, even if logging to a file is requested")
@click.option("--log", metavar="LOGFILE", help="Log to LOGFILE", type=click.Path(dir_okay=False, writable=True))
@click.pass_context
def cli(ctx: click.Context, config_path: Path, debug: bool, log_to_console: bool, log: Optional[str]):
    """Patch distribution tooling."""
    _setup_logging(debug, log, log_to_console)
    try:
        config = Config.load(config_path)
    except Exception as e:
        raise click.ClickException(f"Unable to load config {config_path}: {e}") from e
    ctx.obj = CliContext(config=config)


@cli.command(name=ToolMode.COMPACTIFY.value)
@click.option(
    "--manifest-root",
    "manifest_roots",
    multiple=True,
    metavar="LOCATION",
    help="Directory or s3://bucket/prefix holding build manifests (repeatable)",
)
@click.option(
    "--chunk-root",
    "chunk_roots",
    multiple=True,
    metavar="LOCATION",
    help="Directory or s3://bucket/prefix holding chunk files (repeatable)",
)
@click.option("--min-age", "min_manifest_age", help="Manifests older than this are not live (e.g. 30d, 12w)")
@click.option(
    "--allow",
    "manifest_allowlist",
    multiple=True,
    metavar="PATTERN",
    help="Manifests matching PATTERN are always live (repeatable)",
)
@click.option(
    "--age-source",
    type=click.Choice([source.value for source in AgeSource]),
    help="Measure manifest age from the build timestamp or the file modification time",
)
@click.option(
    "--allowlist-overrides-age/--age-overrides-allowlist",
    default=None,
    help="Whether an allowlisted manifest stays live when it is older than --min-age",
)
@click.option(
    "--small-chunk-threshold",
    "small_chunk_preserve_threshold",
    help="Never delete chunks this size or smaller (e.g. 4KiB)",
)
@click.option("--min-chunk-age", help="Never delete chunks written more recently than this (e.g. 1h)")
@click.option(
    "--on-corrupt",
    "on_corrupt_manifest",
    type=click.Choice(["abort", "skip"]),
    help="Abort the run on a bad manifest, or skip it with a warning",
)
@click.option("--apply/--preview", default=None, help="Actually delete chunks, or only report what would be deleted")
@click.option("--workers", type=int, help="Number of parallel workers")
@click.option("--timeout", "per_item_timeout", help="Give up on a single deletion after this long (e.g. 30s)")
@click.option(
    "--allow-empty-live-set/--refuse-empty-live-set",
    default=None,
    help="Allow deleting every chunk when no manifest is live",
)
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@click.pass_obj
def compactify(
    context: CliContext,
    manifest_roots: Tuple[str, ...],
    chunk_roots: Tuple[str, ...],
    min_manifest_age: Optional[str],
    manifest_allowlist: Tuple[str, ...],
    age_source: Optional[str],
    allowlist_overrides_age: Optional[bool],
    small_chunk_preserve_threshold: Optional[str],
    min_chunk_age: Optional[str],
    on_corrupt_manifest: Optional[str],
    apply: Optional[bool],
    workers: Optional[int],
    per_item_timeout: Optional[str],
    allow_empty_live_set: Optional[bool],
    force: bool,
):
    """Delete chunks no live manifest references.

    Runs in preview mode unless --apply is given (or the config says otherwise).
    Exits 0 on success, 1 if some deletions failed or the run was interrupted,
    and 2 if the run aborted before deleting anything.
    """
    mode = None if apply is None else (ExecutionMode.APPLY if apply else ExecutionMode.PREVIEW)
    try:
        config = context.config.with_cli_overrides(
            manifest_roots=manifest_roots,
            chunk_roots=chunk_roots,
            min_manifest_age=min_manifest_age,
            manifest_allowlist=manifest_allowlist,
            age_source=age_source,
            allowlist_overrides_age=allowlist_overrides_age,
            small_chunk_preserve_threshold=small_chunk_preserve_threshold,
            min_chunk_age=min_chunk_age,
            on_corrupt_manifest=on_corrupt_manifest,
            mode=mode,
            workers=workers,
            per_item_timeout=per_item_timeout,
            allow_empty_live_set=allow_empty_live_set,
        )
    except ValueError as e:
        raise click.ClickException(f"Invalid option: {e}") from e

    runner = create_tool_mode(ToolMode.COMPACTIFY, config, force=force)
    sys.exit(runner.run())


@cli.command(name="show-config")
@click.pass_obj
def show_config(context: CliContext):
    """Print the effective configuration."""
    click.echo(yaml.safe_dump(context.config.model_dump(mode="json"), default_flow_style=False, sort_keys=False))


def main():
    cli(prog_name="patchtool")  # pylint: disable=unexpected-keyword-arg,no-value-for-parameter


if __name__ == "__main__":
    main()
