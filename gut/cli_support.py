"""Shared utilities for gut CLI modules."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import typer
from rich.console import Console

from gut.core.config import GutConfig
from gut.core.errors import MissingReplacement, NotFound
from gut.core.patterns import PatternEngine, PatternRule, parse_assignments
from gut.core.session import SessionStore
from gut.services.git_store import GitStore

EXIT_ERROR = 1


def get_config(ctx: Optional[typer.Context]) -> GutConfig:
    """Return the config built by the root callback (or load one)."""
    if ctx is not None:
        root = ctx.find_root()
        if isinstance(root.obj, GutConfig):
            return root.obj
    return GutConfig.load()


def open_repo(path: Optional[Path], config: GutConfig) -> Tuple[Path, GitStore]:
    """Locate the git repository containing ``path`` (default: cwd).

    Raises:
        NotFound: If the path is not inside a git working tree
    """
    start = Path(path) if path else Path.cwd()
    probe = GitStore(start, git_binary=config.git_binary)
    if not probe.is_repo():
        raise NotFound("Git repository", str(start))
    repo_dir = probe.toplevel()
    return repo_dir, GitStore(repo_dir, git_binary=config.git_binary)


def session_store_for(store: GitStore) -> SessionStore:
    return SessionStore.for_git_dir(store.git_dir())


def collect_replacements(
    rules: List[PatternRule],
    given: Optional[List[str]],
    no_input: bool = False,
    existing: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Merge ``KEY=VALUE`` options with existing values and prompt for the rest.

    Raises:
        MissingReplacement: If a key is still unset and prompting is disabled
    """
    replacements = dict(existing or {})
    replacements.update(parse_assignments(given))

    for key in PatternEngine(rules, replacements).missing_keys():
        if no_input:
            raise MissingReplacement(key)
        replacements[key] = typer.prompt(f"Value for {key}")
    return replacements


def handle_cli_error(
    e: Exception,
    console: Console,
    verbose: bool = False,
    exit_code: int = EXIT_ERROR,
) -> None:
    """Handle CLI errors with consistent formatting.

    Args:
        e: Exception to handle
        console: Rich console for output
        verbose: Show exception traceback if True
        exit_code: Exit code to use
    """
    print_error(console, str(e))
    if verbose:
        console.print_exception()
    raise typer.Exit(exit_code)


def short(revision: Optional[str]) -> str:
    return revision[:10] if revision else "-"


def print_success(console: Console, message: str, prefix: str = "✓") -> None:
    """Print success message with consistent formatting."""
    console.print(f"[green]{prefix}[/green] {message}")


def print_error(console: Console, message: str, prefix: str = "✗") -> None:
    """Print error message with consistent formatting."""
    console.print(f"[red]{prefix}[/red] {message}")


def print_warning(console: Console, message: str, prefix: str = "⚠") -> None:
    """Print warning message with consistent formatting."""
    console.print(f"[yellow]{prefix}[/yellow] {message}")


def print_info(console: Console, message: str, prefix: str = "ℹ") -> None:
    """Print info message with consistent formatting."""
    console.print(f"[cyan]{prefix}[/cyan] {message}")
