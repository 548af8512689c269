"""Template CLI commands - records, classification, patterns, apply."""
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from gut.cli_support import (
    collect_replacements,
    get_config,
    handle_cli_error,
    open_repo,
    print_info,
    print_success,
    print_warning,
    session_store_for,
    short,
)
from gut.core.delta_store import DeltaRecord, DeltaStore, FileClass, new_template_record
from gut.core.errors import DirtyWorkingTree, GutError, InvalidState, SessionInProgress
from gut.core.generator import Generator
from gut.core.orchestrator import ApplyOrchestrator, ApplyResult
from gut.core.patterns import PatternRule
from gut.core.refresh import refresh_repository
from gut.core.session import ApplyState
from gut.core.template_source import open_template, template_origin

# Module-level console instance (will be set by register function)
console: Console = Console()

PATH_OPTION = typer.Option(None, "--path", "-C", help="Repository directory (default: current directory)")


def _load(ctx: typer.Context, path: Optional[Path]):
    config = get_config(ctx)
    repo_dir, store = open_repo(path, config)
    deltas = DeltaStore(repo_dir)
    return config, repo_dir, store, deltas


def init(
    ctx: typer.Context,
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Template display name"),
    force: bool = typer.Option(False, "--force", help="Replace an existing delta record"),
    path: Optional[Path] = PATH_OPTION,
):
    """Create a template delta record for the current repository."""
    try:
        _, repo_dir, store, deltas = _load(ctx, path)
        record = new_template_record(name or repo_dir.name, store.current_revision())
        deltas.create(record, force=force)
    except GutError as exc:
        handle_cli_error(exc, console)

    print_success(console, f"Initialized template '{record.name}' in {deltas.path}")
    print_info(console, "Classify files with 'gut template add', then run 'gut template bump-version'")


def bump_version(
    ctx: typer.Context,
    allow_dirty: bool = typer.Option(False, "--allow-dirty", help="Publish even with uncommitted changes"),
    path: Optional[Path] = PATH_OPTION,
):
    """Publish the template's current commit as its next version."""
    try:
        _, _, store, deltas = _load(ctx, path)
        record = deltas.load()
        if not record.is_template:
            raise InvalidState("bump-version is only valid for template records")

        dirty = [p for p in store.dirty_paths() if not p.startswith(".gut/")]
        if dirty and not allow_dirty:
            raise InvalidState(
                f"Uncommitted changes would not be part of the published version: {', '.join(dirty)}"
            )

        revision = store.current_revision()
        if revision is None:
            raise InvalidState("Template repository has no commits to publish")

        rev_id = record.bump_version(revision)
        deltas.save(record)
    except GutError as exc:
        handle_cli_error(exc, console)

    print_success(console, f"Published template rev {rev_id} at {short(revision)}")
    print_info(console, "Commit .gut/delta.yml so generated repositories can see the new version")


def add(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="Path, directory prefix (ending in /) or glob"),
    optional: bool = typer.Option(False, "--optional", help="Classify as optional"),
    ignore: bool = typer.Option(False, "--ignore", help="Classify as ignored (never synced)"),
    path: Optional[Path] = PATH_OPTION,
):
    """Classify a file as required (default), optional or ignored."""
    if optional and ignore:
        console.print("[red]✗[/red] --optional and --ignore are mutually exclusive")
        raise typer.Exit(1)

    tag = FileClass.OPTIONAL if optional else FileClass.IGNORED if ignore else FileClass.REQUIRED
    try:
        _, _, _, deltas = _load(ctx, path)
        record = deltas.load()
        record.classify(file, tag)
        deltas.save(record)
    except GutError as exc:
        handle_cli_error(exc, console)

    print_success(console, f"{file} classified as {tag.value}")


def remove(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="Classified path to remove"),
    path: Optional[Path] = PATH_OPTION,
):
    """Remove a path from the classification.

    In a template the path falls back to required; in a generated
    repository it becomes user-owned and template sync leaves it alone.
    """
    try:
        _, _, _, deltas = _load(ctx, path)
        record = deltas.load()
        removed = record.unclassify(file)
        if removed:
            deltas.save(record)
    except GutError as exc:
        handle_cli_error(exc, console)

    if removed:
        print_success(console, f"Removed {file} from classification")
    else:
        print_warning(console, f"{file} was not classified")


def pattern_list(ctx: typer.Context, path: Optional[Path] = PATH_OPTION):
    """List substitution rules in application order."""
    try:
        _, _, _, deltas = _load(ctx, path)
        record = deltas.load()
    except GutError as exc:
        handle_cli_error(exc, console)

    if not record.patterns:
        print_info(console, "No patterns defined")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Match")
    table.add_column("Replace")
    table.add_column("Kind")
    for index, rule in enumerate(record.patterns, start=1):
        kind = "regex" if rule.regex else "literal"
        if rule.ignore_case:
            kind += ", ignore case"
        table.add_row(str(index), rule.match, rule.replace, kind)
    console.print(table)


def pattern_add(
    ctx: typer.Context,
    match: str = typer.Argument(..., help="Placeholder or regex to match"),
    replace: Optional[str] = typer.Option(
        None, "--replace", "-r", help="Replacement, may use ${key} (default: ${<match>})"
    ),
    regex: bool = typer.Option(False, "--regex", help="Treat MATCH as a regular expression"),
    ignore_case: bool = typer.Option(False, "--ignore-case", "-i", help="Match case-insensitively"),
    path: Optional[Path] = PATH_OPTION,
):
    """Add (or replace) a substitution rule."""
    rule = PatternRule(
        match=match,
        replace=replace if replace is not None else "${" + match + "}",
        regex=regex,
        ignore_case=ignore_case,
    )
    try:
        rule.compile()
        _, _, _, deltas = _load(ctx, path)
        record = deltas.load()
        record.add_pattern(rule)
        deltas.save(record)
    except GutError as exc:
        handle_cli_error(exc, console)

    print_success(console, f"Pattern {match} -> {rule.replace}")


def pattern_remove(
    ctx: typer.Context,
    match: str = typer.Argument(..., help="Match string of the rule to remove"),
    path: Optional[Path] = PATH_OPTION,
):
    """Remove a substitution rule."""
    try:
        _, _, _, deltas = _load(ctx, path)
        record = deltas.load()
        removed = record.remove_pattern(match)
        if removed:
            deltas.save(record)
    except GutError as exc:
        handle_cli_error(exc, console)

    if removed:
        print_success(console, f"Removed pattern {match}")
    else:
        print_warning(console, f"No pattern matching {match}")


def replacement_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Replacement key"),
    value: str = typer.Argument(..., help="Literal value"),
    path: Optional[Path] = PATH_OPTION,
):
    """Set a replacement value."""
    try:
        _, _, _, deltas = _load(ctx, path)
        record = deltas.load()
        record.set_replacement(key, value)
        deltas.save(record)
    except GutError as exc:
        handle_cli_error(exc, console)

    print_success(console, f"{key} = {value}")


def replacement_remove(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Replacement key"),
    path: Optional[Path] = PATH_OPTION,
):
    """Remove a replacement value."""
    try:
        _, _, _, deltas = _load(ctx, path)
        record = deltas.load()
        removed = record.remove_replacement(key)
        if removed:
            deltas.save(record)
    except GutError as exc:
        handle_cli_error(exc, console)

    if removed:
        print_success(console, f"Removed replacement {key}")
    else:
        print_warning(console, f"No replacement named {key}")


def replacement_list(ctx: typer.Context, path: Optional[Path] = PATH_OPTION):
    """List replacement values."""
    try:
        _, _, _, deltas = _load(ctx, path)
        record = deltas.load()
    except GutError as exc:
        handle_cli_error(exc, console)

    if not record.replacements:
        print_info(console, "No replacements defined")
        return
    for key, value in record.replacements.items():
        console.print(f"  {key} = {value}")


def install(
    ctx: typer.Context,
    template_ref: str = typer.Argument(..., help="Template path, URL, org/name or name"),
    replacement: Optional[List[str]] = typer.Option(
        None, "--replacement", "-r", help="KEY=VALUE replacement (repeatable)"
    ),
    no_input: bool = typer.Option(False, "--no-input", help="Fail instead of prompting for values"),
    force: bool = typer.Option(False, "--force", help="Replace an existing delta record"),
    path: Optional[Path] = PATH_OPTION,
):
    """Track an existing repository against a template."""
    try:
        config, repo_dir, _, _ = _load(ctx, path)
        _, template_store, template_record = open_template(template_ref, config)
        replacements = collect_replacements(
            template_record.patterns, replacement, no_input, existing=template_record.replacements
        )
        record = Generator(template_store, template_record, template_origin(template_ref)).install(
            repo_dir, replacements, force=force
        )
    except GutError as exc:
        handle_cli_error(exc, console)

    print_success(
        console,
        f"Installed template {template_ref} rev {record.rev_id} ({short(record.revision_anchor)}), "
        f"{len(record.files)} tracked file(s)",
    )


def apply(
    ctx: typer.Context,
    continue_: bool = typer.Option(False, "--continue", help="Finish an apply after committing"),
    abort: bool = typer.Option(False, "--abort", help="Undo an in-progress apply"),
    no_commit: bool = typer.Option(
        False, "--no-commit", help="Do not commit .gut/delta.yml when the apply completes"
    ),
    path: Optional[Path] = PATH_OPTION,
):
    """Apply template changes published since this repository's last sync."""
    if continue_ and abort:
        console.print("[red]✗[/red] --continue and --abort are mutually exclusive")
        raise typer.Exit(1)

    try:
        config, repo_dir, store, deltas = _load(ctx, path)
        sessions = session_store_for(store)

        if continue_ or abort:
            orchestrator = ApplyOrchestrator(store, deltas, sessions, commit_record=not no_commit)
            result = orchestrator.resume() if continue_ else orchestrator.abort()
        else:
            existing = sessions.load()
            if existing is not None:
                raise SessionInProgress(str(sessions.session_file), existing.state.value)
            dirty = store.dirty_paths()
            if dirty:
                raise DirtyWorkingTree(str(repo_dir), dirty)
            record = deltas.load_generated()
            _, template_store, template_record = open_template(record.template_origin, config)
            orchestrator = ApplyOrchestrator(
                store, deltas, sessions, template_store, template_record, commit_record=not no_commit
            )
            result = orchestrator.start()
    except GutError as exc:
        handle_cli_error(exc, console)

    _render_apply_result(result)
    if result.needs_resolution:
        raise typer.Exit(config.conflict_exit_code)


def _render_apply_result(result: ApplyResult) -> None:
    """Print what an apply invocation did and what the user does next."""
    if result.up_to_date:
        print_success(console, f"Already up to date with template rev {result.rev_id}")
        return

    span = f"{short(result.from_revision)}..{short(result.to_revision)}"

    if result.applied_paths and result.state in (ApplyState.PATCHED, ApplyState.CONFLICTED):
        failed = set(result.conflicts.paths) if result.conflicts else set()
        table = Table(title=f"Template changes {span}", show_header=True, header_style="bold")
        table.add_column("Path")
        table.add_column("Result")
        for applied in result.applied_paths:
            status = "[red]conflict[/red]" if applied in failed else "[green]applied[/green]"
            table.add_row(applied, status)
        for skipped in result.skipped_paths:
            table.add_row(skipped, "[dim]skipped (user-owned)[/dim]")
        console.print(table)

    if result.state == ApplyState.PATCHED:
        print_success(console, f"Template rev {result.rev_id} applied cleanly ({span})")
        print_info(console, "Review and commit the staged changes, then run 'gut template apply --continue'")
    elif result.state == ApplyState.CONFLICTED:
        print_warning(console, f"Template rev {result.rev_id} conflicted ({span})")
        if result.conflicts:
            for entry in result.conflicts.failed:
                where = entry.get('path') or "?"
                hunk = f" hunk #{entry['hunk']}" if entry.get('hunk') else ""
                console.print(f"  [red]✗[/red] {where}{hunk} ({entry.get('reason')})")
            if result.conflicts.stderr:
                console.print(result.conflicts.stderr.rstrip(), style="dim", markup=False, highlight=False)
        print_info(
            console,
            "Resolve the .rej files, commit, then run 'gut template apply --continue' "
            "(or 'gut template apply --abort')",
        )
    elif result.state == ApplyState.COMPLETED:
        print_success(console, f"Synced to template rev {result.rev_id} ({short(result.to_revision)})")
        if result.skipped_paths:
            print_info(console, f"Skipped user-owned paths: {', '.join(result.skipped_paths)}")
    elif result.state == ApplyState.ABORTED:
        print_success(console, "Apply aborted; working tree restored and anchor unchanged")


def refresh(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would change"),
    files: Optional[List[str]] = typer.Option(None, "--files", help="Only refresh matching files (glob)"),
    path: Optional[Path] = PATH_OPTION,
):
    """Re-apply replacement values to the repository's tracked files."""
    try:
        _, repo_dir, store, deltas = _load(ctx, path)
        record = deltas.load_generated()
        result = refresh_repository(repo_dir, store, record, dry_run=dry_run, file_patterns=files)
    except GutError as exc:
        handle_cli_error(exc, console)

    for changed in result.changed:
        console.print(f"  [green]✓[/green] {changed}")
    verb = "Would refresh" if dry_run else "Refreshed"
    print_success(console, f"{verb} {len(result.changed)} file(s)")
    if result.skipped_binary:
        print_info(console, f"Skipped {len(result.skipped_binary)} binary file(s)")


def status(ctx: typer.Context, path: Optional[Path] = PATH_OPTION):
    """Show the delta record and any apply in progress."""
    try:
        _, _, store, deltas = _load(ctx, path)
        record = deltas.load()
        session = ApplyOrchestrator(store, deltas, session_store_for(store)).status()
    except GutError as exc:
        handle_cli_error(exc, console)

    _render_record(record)
    if session is None:
        console.print("[dim]No apply in progress[/dim]")
    else:
        console.print(
            f"\n[bold yellow]Apply in progress[/bold yellow]: {session.state.value} "
            f"({short(session.from_revision)}..{short(session.to_revision)}, since {session.created_at})"
        )


def _render_record(record: DeltaRecord) -> None:
    console.print(f"[bold]{record.name}[/bold] ({record.kind.value})")
    console.print(f"  Version:  rev {record.rev_id} at {short(record.revision_anchor)}")
    if record.template_origin:
        console.print(f"  Template: {record.template_origin}")

    if record.files:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Path")
        table.add_column("Class")
        for file, tag in sorted(record.files.items()):
            table.add_row(file, tag.value)
        console.print(table)

    for rule in record.patterns:
        console.print(f"  pattern {rule.match} -> {rule.replace}")
    for key, value in record.replacements.items():
        console.print(f"  {key} = {value}")


def register_template_commands(app: typer.Typer, shared_console: Console):
    """Register template commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    template_app = typer.Typer(help="Template records, classification and sync")

    template_app.command()(init)
    template_app.command("bump-version")(bump_version)
    template_app.command()(add)
    template_app.command()(remove)
    template_app.command()(install)
    template_app.command()(apply)
    template_app.command()(refresh)
    template_app.command()(status)

    pattern_app = typer.Typer(help="Substitution rules applied to contents and paths")
    pattern_app.command("list")(pattern_list)
    pattern_app.command("add")(pattern_add)
    pattern_app.command("remove")(pattern_remove)
    template_app.add_typer(pattern_app, name="pattern")

    replacement_app = typer.Typer(help="Replacement values for pattern keys")
    replacement_app.command("set")(replacement_set)
    replacement_app.command("remove")(replacement_remove)
    replacement_app.command("list")(replacement_list)
    template_app.add_typer(replacement_app, name="replacement")

    app.add_typer(template_app, name="template")
