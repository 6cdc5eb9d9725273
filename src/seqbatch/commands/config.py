# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for seqbatch.

Validates and shows the effective configuration.
"""

import typer
import yaml

from seqbatch.config import load_settings
from seqbatch.errors import ConfigError
from seqbatch_stages import STAGES

app = typer.Typer(help="Manage and validate configuration")


@app.command()
def validate(
    config_path: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """
    Validate configuration file.

    Checks that the config file is valid YAML, that every value has the
    right type and that per-stage sections name known stages.
    """
    typer.echo("Validating configuration...")
    typer.echo()

    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(1)

    unknown = sorted(set(settings.stages) - set(STAGES))
    if unknown:
        typer.echo(f"Validation failed: unknown stages in config: {', '.join(unknown)}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Config file: {settings.source or 'none (built-in defaults)'}")
    typer.echo(f"Base path: {settings.base_path}")
    typer.echo()
    typer.echo("Configuration validation complete!")


@app.command()
def show(
    config_path: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Print the effective configuration as YAML."""
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    effective = {
        "base_path": str(settings.base_path),
        "parallel_batches": settings.parallel_batches,
        "heartbeat_sec": settings.heartbeat_sec,
        "show_stderr": settings.show_stderr,
        "scratch_dir": str(settings.scratch_dir) if settings.scratch_dir else None,
        "stages": {name: dict(opts) for name, opts in settings.stages.items()},
    }
    typer.echo(yaml.dump(effective, default_flow_style=False, sort_keys=False))
