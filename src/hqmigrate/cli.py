from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .backup import BackupManager, validate_manifest
from .config import BACKUP_MANIFEST_NAME, MigrationSettings, load_settings
from .errors import MigrationError
from .executor import Analysis, MigrationExecutor, MigrationOutcome, MigrationPhase, analyze
from .fetch import DirectoryTemplateProvider, staged_template
from .plan import Plan, PlanEntry
from .report import render_plan_markdown, write_plan
from .version import LocalFilesystem, detect_version

app = typer.Typer(help="Upgrade an HQ installation to a newer template without losing user content")
console = Console()

_PHASE_PROMPTS = {
    MigrationPhase.BACKUP: "Create a backup of the installation now?",
    MigrationPhase.APPLY: "Backup verified. Apply the planned changes?",
}


@app.callback()
def _configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Configure logging for every subcommand."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _resolve_root(root: Path) -> Path:
    resolved = root.expanduser().resolve()
    if not resolved.is_dir():
        console.print(f"[red]Installation not found:[/red] {resolved}")
        raise typer.Exit(1)
    return resolved


def _resolve_template(template: Path) -> Path:
    resolved = template.expanduser().resolve()
    if not resolved.is_dir():
        console.print(f"[red]Template directory not found:[/red] {resolved}")
        raise typer.Exit(1)
    return resolved


def _settings(root: Path) -> MigrationSettings:
    try:
        return load_settings(root)
    except ValueError as exc:
        console.print(f"[red]Invalid settings:[/red] {exc}")
        raise typer.Exit(2)


def _run_analysis(
    root: Path, template: Path, baseline: Path | None, settings: MigrationSettings
) -> Analysis:
    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task("Scanning installation and template...", total=None)
        try:
            return analyze(root, template, settings, baseline)
        except (MigrationError, OSError) as exc:
            progress.stop()
            console.print(f"[red]Analysis failed:[/red] {exc}")
            raise typer.Exit(1)


def _print_summary(plan: Plan) -> None:
    summary = plan.summary
    table = Table(title=f"Migration v{plan.current_version} -> v{plan.latest_version}")
    table.add_column("Metric")
    table.add_column("Count", justify="right")
    table.add_row("Files to add", str(summary.new_count))
    table.add_row("Files to update", str(summary.modified_count))
    table.add_row("Files to remove", str(summary.deleted_count))
    table.add_row("Files to move/rename", str(summary.renamed_count))
    table.add_row("[bold]Total changes[/bold]", f"[bold]{summary.total_changes}[/bold]")
    table.add_row("Unchanged files", str(summary.unchanged_count))
    table.add_row("Your custom files (untouched)", str(summary.local_only_count))
    table.add_row("Smart-merge files", str(summary.special_files_count))
    console.print(table)
    for entry in plan.high_impact:
        console.print(f"[yellow][!][/yellow] {entry.path}: {entry.warning}")
    for warning in plan.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


def _print_outcome(outcome: MigrationOutcome) -> None:
    phases = ", ".join(phase.value for phase in outcome.completed_phases) or "none"
    console.print(f"Completed phases: {phases}")
    if outcome.backup is not None:
        console.print(f"Backup: {outcome.backup.directory}")
    console.print(f"Applied: {len(outcome.applied)}")
    if outcome.skipped:
        console.print(f"[yellow]Left untouched:[/yellow] {len(outcome.skipped)}")
        for path in outcome.skipped:
            console.print(f"  {path}")
    for error in outcome.errors:
        console.print(f"[red]Error:[/red] {error}")


@app.command("detect-version")
def detect_version_command(
    root: Path = typer.Argument(Path("."), help="Installation root"),
) -> None:
    """Print the installed version and how it was determined."""
    resolved = _resolve_root(root)
    result = detect_version(LocalFilesystem(resolved))
    console.print(f"Version: {result.version}")
    console.print(f"Method: {result.method}")
    for clue in result.clues:
        console.print(f"  - {clue}")
    if not result.is_known:
        console.print("[yellow]Version could not be determined.[/yellow]")


@app.command()
def plan(
    root: Path = typer.Argument(Path("."), help="Installation root"),
    template: Path = typer.Option(..., "--template", "-t", help="Directory holding the newer template"),
    baseline: Path | None = typer.Option(
        None, help="Directory holding the template the installation was created from"
    ),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write the plan markdown here"),
) -> None:
    """Compare the installation with a template and report the migration plan."""
    resolved = _resolve_root(root)
    settings = _settings(resolved)
    with staged_template(DirectoryTemplateProvider(_resolve_template(template))) as staged:
        analysis = _run_analysis(resolved, staged, baseline, settings)
    _print_summary(analysis.plan)
    if output is not None:
        write_plan(analysis.plan, output)
        console.print(f"Plan written to {output}")
    else:
        console.print(render_plan_markdown(analysis.plan), markup=False, highlight=False)


@app.command()
def migrate(
    root: Path = typer.Argument(Path("."), help="Installation root"),
    template: Path = typer.Option(..., "--template", "-t", help="Directory holding the newer template"),
    baseline: Path | None = typer.Option(
        None, help="Directory holding the template the installation was created from"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    plan_output: Path | None = typer.Option(None, help="Also write the plan markdown here"),
) -> None:
    """Back up the installation, then apply the migration plan."""
    resolved = _resolve_root(root)
    settings = _settings(resolved)

    def confirm(phase: MigrationPhase, _plan: Plan) -> bool:
        if yes:
            return True
        return typer.confirm(_PHASE_PROMPTS.get(phase, f"Continue with {phase.value}?"))

    with staged_template(DirectoryTemplateProvider(_resolve_template(template))) as staged:
        analysis = _run_analysis(resolved, staged, baseline, settings)
        _print_summary(analysis.plan)
        if plan_output is not None:
            write_plan(analysis.plan, plan_output)
        if not analysis.plan.entries:
            console.print("[green]Installation already matches the template.[/green]")
            return

        with Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
        ) as progress:
            task_id = progress.add_task("Applying changes...", total=len(analysis.plan.entries))

            def on_progress(
                done: int, total: int, entry: PlanEntry, ok: bool, error: str | None
            ) -> None:
                progress.update(task_id, completed=done, description=entry.path)

            executor = MigrationExecutor(
                resolved,
                staged,
                analysis.plan,
                backup_manager=BackupManager(
                    resolved,
                    tolerance=settings.backup_tolerance,
                    restore_tolerance=settings.restore_tolerance,
                ),
                settings=settings,
                confirm=confirm,
                progress_cb=on_progress,
                template_files=analysis.template_files,
            )
            outcome = executor.run()

    _print_outcome(outcome)
    if outcome.aborted:
        console.print(f"[red]Migration aborted:[/red] {outcome.abort_reason}")
        raise typer.Exit(1)
    if outcome.errors:
        raise typer.Exit(1)
    console.print("[green]Migration complete.[/green]")


@app.command()
def backup(
    root: Path = typer.Argument(Path("."), help="Installation root"),
) -> None:
    """Take and verify a snapshot of the installation."""
    resolved = _resolve_root(root)
    settings = _settings(resolved)
    manager = BackupManager(
        resolved,
        tolerance=settings.backup_tolerance,
        restore_tolerance=settings.restore_tolerance,
    )
    version = detect_version(LocalFilesystem(resolved)).version
    try:
        snapshot = manager.snapshot(version)
    except MigrationError as exc:
        console.print(f"[red]Backup failed:[/red] {exc}")
        raise typer.Exit(1)
    result = manager.verify(snapshot)
    console.print(f"Backup: {snapshot.directory}")
    console.print(
        f"Files: {snapshot.manifest.file_count}  Symlinks: {snapshot.manifest.symlink_count}  "
        f"Size: {snapshot.manifest.total_size_human}"
    )
    console.print(f"Verification: {result.status}")
    if not result.ok:
        raise typer.Exit(1)


@app.command()
def backups(
    root: Path = typer.Argument(Path("."), help="Installation root"),
) -> None:
    """List the backups kept for an installation."""
    resolved = _resolve_root(root)
    manager = BackupManager(resolved)
    found = manager.list_backups()
    if not found:
        console.print("No backups found.")
        return
    table = Table()
    table.add_column("Backup")
    table.add_column("Version")
    table.add_column("Files", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Method")
    for backup_dir in found:
        manifest = manager.load_manifest(backup_dir)
        if manifest is None:
            table.add_row(backup_dir.name, "[red]unreadable manifest[/red]", "", "", "")
            continue
        table.add_row(
            backup_dir.name,
            manifest.hq_version,
            str(manifest.file_count),
            manifest.total_size_human,
            manifest.backup_method,
        )
    console.print(table)


def _backup_dir(manager: BackupManager, name: str) -> Path:
    assert manager.backup_root is not None
    candidate = manager.backup_root / name
    if not (candidate / BACKUP_MANIFEST_NAME).is_file():
        console.print(f"[red]Backup not found:[/red] {candidate}")
        raise typer.Exit(1)
    return candidate


@app.command("verify-backup")
def verify_backup_command(
    name: str = typer.Argument(..., help="Backup directory name, as listed by `backups`"),
    root: Path = typer.Option(Path("."), "--root", "-r", help="Installation root"),
) -> None:
    """Validate a backup's manifest and recount its files."""
    resolved = _resolve_root(root)
    settings = _settings(resolved)
    manager = BackupManager(resolved, tolerance=settings.backup_tolerance)
    backup_dir = _backup_dir(manager, name)
    manifest = manager.load_manifest(backup_dir)
    if manifest is None:
        console.print("[red]Manifest is not valid JSON or lacks core fields.[/red]")
        raise typer.Exit(1)
    validation = validate_manifest(manifest)
    for error in validation.errors:
        console.print(f"[red]Manifest error:[/red] {error}")
    result = manager.verify_directory(backup_dir, manifest)
    console.print(f"Verification: {result.status} (difference {result.difference:+d})")
    if not validation.valid or not result.ok:
        raise typer.Exit(1)


@app.command()
def restore(
    name: str = typer.Argument(..., help="Backup directory name, as listed by `backups`"),
    root: Path = typer.Option(Path("."), "--root", "-r", help="Installation root"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Copy one backup back over the installation."""
    resolved = _resolve_root(root)
    settings = _settings(resolved)
    manager = BackupManager(resolved, restore_tolerance=settings.restore_tolerance)
    backup_dir = _backup_dir(manager, name)
    if not yes and not typer.confirm(f"Restore {resolved} from {backup_dir.name}?"):
        console.print("Restore cancelled.")
        raise typer.Exit(1)

    result = manager.restore(backup_dir)
    for error in result.errors:
        console.print(f"[red]Error:[/red] {error}")
    if not result.restored or result.verification is None:
        console.print("[red]Restore not performed.[/red]")
        raise typer.Exit(1)
    console.print(
        f"Restore verification: {result.verification.status} "
        f"(difference {result.verification.difference:+d})"
    )
    console.print(f"Backup kept at {backup_dir}")
    if not result.verification.ok:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
