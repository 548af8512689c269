"""Repository generation command."""
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console

from gut.cli_support import (
    collect_replacements,
    get_config,
    handle_cli_error,
    print_info,
    print_success,
    short,
)
from gut.core.errors import GutError
from gut.core.generator import Generator
from gut.core.template_source import open_template, template_origin

# Module-level console instance (will be set by register function)
console: Console = Console()


def generate_repo(
    ctx: typer.Context,
    template_ref: str = typer.Argument(..., help="Template path, URL, org/name or name"),
    target_dir: Path = typer.Option(..., "--dir", "-d", help="Directory to create"),
    replacement: Optional[List[str]] = typer.Option(
        None, "--replacement", "-r", help="KEY=VALUE replacement (repeatable)"
    ),
    no_input: bool = typer.Option(False, "--no-input", help="Fail instead of prompting for values"),
    skip_optional: bool = typer.Option(False, "--skip-optional", help="Leave out optional files"),
    no_init: bool = typer.Option(False, "--no-init", help="Do not initialise a git repository"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Repository name (default: directory name)"),
):
    """Generate a new repository from a template's published version.

    Examples:
        gut generate-repo ../service-template -d billing -r project=billing
        gut generate-repo acme/service-template -d billing --skip-optional
    """
    try:
        config = get_config(ctx)
        _, template_store, template_record = open_template(template_ref, config)
        replacements = collect_replacements(
            template_record.patterns, replacement, no_input, existing=template_record.replacements
        )
        result = Generator(template_store, template_record, template_origin(template_ref)).generate(
            target_dir,
            replacements,
            include_optional=not skip_optional,
            init_repo=not no_init,
            name=name,
        )
    except GutError as exc:
        handle_cli_error(exc, console)

    print_success(
        console,
        f"Generated {len(result.files)} file(s) in {result.target_dir} "
        f"from rev {result.rev_id} ({short(result.revision)})",
    )
    if result.skipped_optional:
        print_info(console, f"Skipped optional: {', '.join(result.skipped_optional)}")
    if result.commit:
        print_info(console, f"Initial commit {short(result.commit)}")


def register_generate_commands(app: typer.Typer, shared_console: Console):
    """Register generate-repo with the main Typer app."""
    global console
    console = shared_console

    app.command("generate-repo")(generate_repo)
