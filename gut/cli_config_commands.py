"""Configuration commands."""
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from gut.cli_support import get_config, print_success
from gut.core.config import GutConfig

# Module-level console instance (will be set by register function)
console: Console = Console()


def _config_path(ctx: typer.Context) -> Path:
    given: Optional[Path] = ctx.find_root().params.get("config_file")
    return Path(given) if given else GutConfig.config_file()


def show(ctx: typer.Context):
    """Show the effective configuration."""
    config = get_config(ctx)
    path = _config_path(ctx)

    table = Table(title=f"Configuration ({path}{'' if path.exists() else ', not created'})")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in config.to_dict().items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


def set_organisation(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Organisation used for bare template names"),
):
    """Set the default organisation."""
    config = get_config(ctx)
    config.default_organisation = name
    path = config.save(_config_path(ctx))
    print_success(console, f"Default organisation set to {name} ({path})")


def register_config_commands(app: typer.Typer, shared_console: Console):
    """Register config commands with the main Typer app."""
    global console
    console = shared_console

    config_app = typer.Typer(help="Show and edit gut configuration")
    config_app.command()(show)
    config_app.command("set-organisation")(set_organisation)
    app.add_typer(config_app, name="config")
