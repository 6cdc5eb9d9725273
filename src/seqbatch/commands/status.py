# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Status command for seqbatch.

Reads a study's saved progress without running anything.
"""

from collections import Counter
from typing import Optional

import typer

from seqbatch.config import load_settings
from seqbatch.errors import ConfigError
from seqbatch.scheduler.progress import ALL_LISTS, ProgressStore
from seqbatch_stages import STAGES


def status(
    stage_name: str = typer.Argument(..., metavar="STAGE", help="Stage name"),
    study: str = typer.Argument(..., help="Study directory or name under base path"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show saved progress for a stage of a study."""
    if stage_name not in STAGES:
        typer.echo(f"Error: unknown stage '{stage_name}' (available: {', '.join(STAGES)})", err=True)
        raise typer.Exit(1)

    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    study_path = settings.resolve_study(study)
    store = ProgressStore.for_study(study_path, stage_name)
    if not store.state_dir.exists():
        typer.echo(f"No {stage_name} progress recorded for {study_path}")
        raise typer.Exit(1)

    typer.echo(f"{stage_name} progress for {study_path.name}")
    counts = store.counts()
    for name in ALL_LISTS:
        typer.echo(f"  {name:<20} {counts[name]}")

    attempts = store.attempts()
    by_tier = Counter((int(a.tier), a.outcome) for a in attempts)
    typer.echo(f"  attempts             {len(attempts)}")
    for (tier, outcome), count in sorted(by_tier.items()):
        typer.echo(f"    tier{tier} {outcome:<8} {count}")
    typer.echo(f"State: {store.state_dir}")
