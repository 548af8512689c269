#!/usr/bin/env python3
"""gut CLI - keep fleets of repositories in sync with their templates."""
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from gut.cli_config_commands import register_config_commands
from gut.cli_generate_commands import register_generate_commands
from gut.cli_template_commands import register_template_commands
from gut.core.config import GutConfig
from gut.core.logger import get_logger, set_verbose, setup_file_logging

app = typer.Typer(
    name="gut",
    help="""gut - template synchronisation for Git repositories

Generate repositories from a template and keep them in sync as the
template evolves.

Quick start:
  gut template init                       # In the template repo
  gut template bump-version               # Publish the current commit
  gut generate-repo ../my-template -d app # Create a repo from it
  gut template apply                      # Later: pull template changes
""",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also log to this file"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", help="Config file (default: $GUT_CONFIG or ~/.config/gut/app.yml)"
    ),
):
    """Load configuration once and hand it to every command."""
    set_verbose(verbose)
    if log_file or verbose:
        setup_file_logging(log_file=log_file, verbose=verbose)
    try:
        ctx.obj = GutConfig.load(config_file)
    except ValueError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(1) from exc


register_template_commands(app, console)
register_generate_commands(app, console)
register_config_commands(app, console)

if __name__ == "__main__":
    app()
