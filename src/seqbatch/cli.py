# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for seqbatch.

Dumb trigger: parses args, loads config, builds the stage, hands it to the
orchestrator, renders the result. No scheduling logic lives here.
"""

import signal
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from seqbatch import __version__
from seqbatch.batch_file import parse_batch_file, read_id_list
from seqbatch.config import Settings, load_settings
from seqbatch.errors import SeqbatchError
from seqbatch.logging_setup import configure_logging
from seqbatch.scheduler.orchestrator import (
    BatchOrchestrator,
    BatchRequest,
    StudyOutcome,
    combined_exit_code,
    run_studies,
)
from seqbatch.scheduler.runner import CancellationToken
from seqbatch.schemas import EXIT_INFRASTRUCTURE
from seqbatch.summary import render_summary
from seqbatch_stages import STAGES, UnknownStageError, get_stage

app = typer.Typer(
    name="seqbatch",
    help="Resource-aware batch runner for sequencing pipeline stages",
    no_args_is_help=True,
)


@contextmanager
def cancel_on_signal(token: CancellationToken) -> Iterator[CancellationToken]:
    """Turn SIGINT/SIGTERM into a cancellation while the block runs."""

    def handler(signum, _frame):
        typer.echo(f"Received signal {signum}, cancelling running jobs...", err=True)
        token.cancel(f"signal {signum}")

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield token
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _echo_outcome(outcome: StudyOutcome) -> None:
    if outcome.error is not None:
        typer.echo(f"Error: {outcome.study_path.name}: {outcome.error}", err=True)
        return
    summary = outcome.summary
    if summary.dry_run:
        typer.echo(render_summary(summary))
        return
    typer.echo(
        f"{summary.study}: {len(summary.succeeded)} succeeded, {len(summary.skipped)} skipped, "
        f"{len(summary.degraded)} degraded, {len(summary.failed)} failed"
    )
    if summary.degraded:
        typer.echo(f"  Reduced fidelity: {', '.join(summary.degraded)}")
    if summary.failed:
        typer.echo(f"  Failed: {', '.join(summary.failed)}")
    if summary.summary_path:
        typer.echo(f"  Summary: {summary.summary_path}")


@app.command()
def run(
    stage_name: str = typer.Argument(..., metavar="STAGE", help="Stage to run (see 'seqbatch stages')"),
    study: Optional[str] = typer.Argument(None, help="Study directory or name under base path"),
    samples: Optional[List[str]] = typer.Argument(None, help="Sample ids, or 'all'"),
    input_file: Optional[Path] = typer.Option(None, "--input-file", "-i", help="Batch file (TSV) of studies"),
    samples_file: Optional[Path] = typer.Option(None, "--samples-file", help="File with one sample id per line"),
    force: bool = typer.Option(False, "--force", help="Re-run every job, overwriting outputs"),
    fresh: bool = typer.Option(False, "--fresh", help="Discard saved progress before running"),
    retry_failed: bool = typer.Option(False, "--retry-failed", help="Retry jobs that failed every tier before"),
    parallel: int = typer.Option(1, "--parallel", "-p", min=1, help="Studies to process at once"),
    threads: Optional[int] = typer.Option(None, "--threads", min=1, help="Threads per job (default: auto)"),
    index: Optional[str] = typer.Option(None, "--index", help="Index directory (quant)"),
    extra_args: Optional[str] = typer.Option(None, "--extra-args", help="Extra tool arguments"),
    base_path: Optional[Path] = typer.Option(None, "--base-path", help="Directory holding studies"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without executing"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run a stage over one study or a batch file of studies."""
    configure_logging(verbose)

    try:
        settings = load_settings(config_path)
        if base_path is not None:
            settings = replace(settings, base_path=base_path)

        options = settings.stage_options(stage_name)
        overrides = {"threads": threads, "index": index, "extra_args": extra_args}
        options.update({k: v for k, v in overrides.items() if v is not None})
        auth_option = get_stage(stage_name, **options).auth_option

        requests = _build_requests(
            settings, study, samples, input_file, samples_file, force, fresh, retry_failed, dry_run,
            auth_option=auth_option,
        )
    except UnknownStageError:
        typer.echo(f"Error: unknown stage '{stage_name}' (available: {', '.join(STAGES)})", err=True)
        raise typer.Exit(EXIT_INFRASTRUCTURE)
    except SeqbatchError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_INFRASTRUCTURE)

    token = CancellationToken()

    def make_orchestrator(parallel_batches: int, request: BatchRequest) -> BatchOrchestrator:
        return BatchOrchestrator(
            get_stage(stage_name, **{**options, **request.stage_options}),
            parallel_batches=max(parallel_batches, settings.parallel_batches),
            heartbeat_sec=settings.heartbeat_sec,
            show_stderr=settings.show_stderr,
            scratch_root=settings.scratch_dir,
            cancel=token,
        )

    with cancel_on_signal(token):
        outcomes = run_studies(make_orchestrator, requests, parallel=parallel)

    for outcome in outcomes:
        _echo_outcome(outcome)

    code = combined_exit_code(outcomes)
    if token.cancelled:
        typer.echo("Batch cancelled; re-run the same command to resume.", err=True)
    raise typer.Exit(code)


def _build_requests(
    settings: Settings,
    study: Optional[str],
    samples: Optional[List[str]],
    input_file: Optional[Path],
    samples_file: Optional[Path],
    force: bool,
    fresh: bool,
    retry_failed: bool,
    dry_run: bool,
    auth_option: Optional[str] = None,
) -> List[BatchRequest]:
    flags = dict(force=force, fresh=fresh, retry_failed=retry_failed, dry_run=dry_run)

    if input_file is not None:
        if study is not None:
            raise SeqbatchError("Give either a study or --input-file, not both")
        requests = []
        for entry in parse_batch_file(input_file):
            stage_options = {}
            if entry.auth and auth_option:
                stage_options[auth_option] = entry.auth
            elif entry.auth:
                typer.echo(f"Warning: {entry.unit}: auth column ignored by this stage", err=True)
            requests.append(
                BatchRequest(
                    study_path=settings.resolve_study(entry.unit),
                    only=entry.only(),
                    stage_options=stage_options,
                    **flags,
                )
            )
        return requests

    if study is None:
        raise SeqbatchError("A study (or --input-file) is required")

    only: Optional[List[str]] = list(samples) if samples else None
    if samples_file is not None:
        only = (only or []) + read_id_list(samples_file)
        if not only:
            raise SeqbatchError(f"No sample ids in {samples_file}")
    return [BatchRequest(study_path=settings.resolve_study(study), only=only, **flags)]


@app.command()
def stages():
    """List available stages."""
    for name, stage_cls in STAGES.items():
        typer.echo(f"{name:<10} {stage_cls.description}")


@app.command()
def version():
    """Show version information."""
    typer.echo(f"seqbatch version {__version__}")


# Static commands (config, status)
from seqbatch.commands import config, status  # noqa: E402

app.add_typer(config.app, name="config")
app.command(name="status")(status.status)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
