"""Command-line interface for dedup-guard."""

import json
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import click
from rich.console import Console
from rich.table import Table

from dedup_guard import __version__
from dedup_guard.core.deletion import SafeImageDeleter
from dedup_guard.core.detector import DuplicateDetector
from dedup_guard.core.errors import BackupIntegrityError, EmergencyStopped
from dedup_guard.core.models import BackupKind, DuplicateGroup, OperationStatus
from dedup_guard.core.providers import build_providers
from dedup_guard.core.safety import SafetyManager
from dedup_guard.core.scanner import ImageScanner
from dedup_guard.utils.config import Config
from dedup_guard.utils.logger import set_verbosity, setup_logger

console = Console()
logger = setup_logger(__name__)


def _load_config(ctx: click.Context) -> Config:
    return Config(ctx.obj.get("config_file"))


@contextmanager
def _emergency_stop_on_interrupt(safety: SafetyManager) -> Iterator[None]:
    """Route Ctrl+C to the safety manager's emergency stop while work runs."""

    def _handler(signum, frame):
        console.print("\n[bold red]Emergency stop requested - finishing current work...[/bold red]")
        safety.emergency_stop("Interrupted from the keyboard")

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


@click.group()
@click.version_option(version=__version__, prog_name="dedup-guard")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: ~/.dedup-guard/config.json)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_file: Optional[Path]) -> None:
    """
    dedup-guard - find duplicate images and remove them without risking data loss.

    Every deletion is preceded by a verified backup that can be restored.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_file"] = config_file

    if verbose:
        set_verbosity(logging.DEBUG)


@cli.command()
@click.option(
    "--path",
    "-p",
    "paths",
    multiple=True,
    type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
    required=True,
    help="Directory path(s) to scan for images",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Output file for the duplicate report (JSON)",
)
@click.option(
    "--threshold",
    "-t",
    type=click.FloatRange(0.0, 1.0),
    help="Similarity threshold 0-1 (default: from config)",
)
@click.option(
    "--min-confidence",
    type=click.FloatRange(0.0, 1.0),
    help="Minimum consensus confidence 0-1 (default: from config)",
)
@click.option(
    "--recursive/--no-recursive",
    "-r/-R",
    default=True,
    help="Recursively scan subdirectories",
)
@click.option(
    "--show-progress/--no-progress",
    default=True,
    help="Show progress bars",
)
@click.pass_context
def scan(
    ctx: click.Context,
    paths: tuple,
    output: Optional[Path],
    threshold: Optional[float],
    min_confidence: Optional[float],
    recursive: bool,
    show_progress: bool,
) -> None:
    """
    Scan directories for duplicate images.

    Exact copies are grouped by content digest, the remaining images by
    perceptual similarity. A manifest of every analyzed image is written
    before analysis starts.

    Example:
        dedup-guard scan --path ~/Pictures --output duplicates.json
    """
    config = _load_config(ctx)
    if threshold is not None:
        config.settings["detection"]["similarity_threshold"] = threshold
    if min_confidence is not None:
        config.settings["detection"]["minimum_confidence"] = min_confidence

    console.print(f"\n[bold cyan]dedup-guard v{__version__}[/bold cyan] - Duplicate Detection\n")

    scanner = ImageScanner(config, show_progress=show_progress)
    images = scanner.scan(list(paths), recursive=recursive)

    if not images:
        console.print("[yellow]No images found to scan.[/yellow]")
        return

    console.print(f"\n[green]Total images found:[/green] {len(images)}\n")

    safety = SafetyManager(config)
    detector = DuplicateDetector(
        config, providers=build_providers(config), safety=safety, show_progress=show_progress
    )

    try:
        with _emergency_stop_on_interrupt(safety):
            groups = detector.find_duplicates(images)
    except EmergencyStopped as e:
        console.print(f"[bold red]HALTED:[/bold red] {e}")
        sys.exit(2)

    if not groups:
        console.print("[green]✓ No duplicates found![/green]")
        return

    _display_groups(groups)

    if output:
        _save_report(groups, output)
        console.print(f"\n[green]✓ Report saved to:[/green] {output}")
        console.print(f"[yellow]To delete duplicates:[/yellow] dedup-guard delete --input {output}")


@cli.command()
@click.option(
    "--input",
    "-i",
    "input_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON report from the 'scan' command",
)
@click.option(
    "--recycle-bin/--permanent",
    default=True,
    help="Move to recycle bin (default) or delete permanently",
)
@click.option("--confirm", is_flag=True, help="Skip the confirmation prompt (use with caution!)")
@click.option(
    "--show-progress/--no-progress",
    default=True,
    help="Show progress bars",
)
@click.pass_context
def delete(
    ctx: click.Context,
    input_file: Path,
    recycle_bin: bool,
    confirm: bool,
    show_progress: bool,
) -> None:
    """
    Delete the non-recommended images of every group in a scan report.

    Groups are re-checked, every file is backed up and verified, and only
    then deleted. Use 'restore' with the printed backup id to undo.
    """
    config = _load_config(ctx)
    config.settings["safety"]["use_recycle_bin"] = recycle_bin

    try:
        groups = _load_report(input_file)
    except (OSError, ValueError, KeyError) as e:
        console.print(f"[red]✗ Error loading report:[/red] {e}")
        sys.exit(1)

    candidates = [img for group in groups for img in group.deletion_candidates]
    if not candidates:
        console.print("[yellow]No deletion candidates in report.[/yellow]")
        return

    action = "moved to recycle bin" if recycle_bin else "permanently deleted"

    if not confirm:
        console.print("[bold yellow]⚠ Warning:[/bold yellow]")
        console.print(f"  About to back up and then {action}: {len(candidates)} files")
        console.print(f"  Groups: {len(groups)}")
        console.print(
            f"  Space to recover: {sum(img.size for img in candidates) / (1024 * 1024):.1f} MB"
        )
        answer = click.prompt("\nType 'DELETE' to confirm", type=str, default="")
        if answer.upper() != "DELETE":
            console.print("[yellow]Deletion cancelled.[/yellow]")
            return

    safety = SafetyManager(config)
    deleter = SafeImageDeleter(config, safety=safety, show_progress=show_progress)

    try:
        with _emergency_stop_on_interrupt(safety):
            result = deleter.delete_groups(groups)
    except BackupIntegrityError as e:
        console.print(f"[bold red]✗ Backup verification failed, nothing deleted:[/bold red] {e}")
        sys.exit(1)

    for skipped in result.skipped_groups:
        console.print(f"[red]✗ Group {skipped['group']} skipped:[/red] {skipped['error']}")
    for failure in result.failed:
        console.print(f"[red]✗ {failure['path']}:[/red] {failure['error']}")

    if result.status == OperationStatus.HALTED:
        console.print(
            f"[bold red]HALTED:[/bold red] {len(result.deleted)}/{result.total} files {action} "
            "before the emergency stop"
        )
    else:
        console.print(f"[bold green]✓ {len(result.deleted)} files {action}[/bold green]")

    if result.backup_id:
        console.print(f"[dim]Backup: {result.backup_id}[/dim]")
        console.print(f"[yellow]To undo:[/yellow] dedup-guard restore {result.backup_id}")

    if result.status in (OperationStatus.FAILED, OperationStatus.HALTED):
        sys.exit(1)


@cli.command()
@click.argument("backup_id")
@click.pass_context
def restore(ctx: click.Context, backup_id: str) -> None:
    """
    Restore the files of a pre-deletion backup to their original locations.

    BACKUP_ID: ID of the backup (from 'backups' or the delete output)
    """
    safety = SafetyManager(_load_config(ctx))

    console.print(f"\n[yellow]Restoring backup:[/yellow] {backup_id}\n")
    try:
        result = safety.restore(backup_id)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    console.print(f"[green]Restored:[/green] {len(result.restored)}")
    console.print(f"[cyan]Already present:[/cyan] {len(result.already_present)}")
    for failure in result.failed:
        console.print(f"[red]✗ {failure['path']}:[/red] {failure['reason']}")

    if not result.success:
        sys.exit(1)


@cli.command()
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in BackupKind]),
    help="Only list one kind of backup",
)
@click.pass_context
def backups(ctx: click.Context, kind: Optional[str]) -> None:
    """List stored backups and manifests, newest first."""
    safety = SafetyManager(_load_config(ctx))
    entries = safety.list_backups(BackupKind(kind) if kind else None)

    if not entries:
        console.print("[yellow]No backups found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Backup ID")
    table.add_column("Operation")
    table.add_column("Created")
    table.add_column("Status")
    table.add_column("Items", justify="right")
    table.add_column("Size", justify="right")

    for entry in entries:
        table.add_row(
            entry["id"],
            entry["operation"],
            entry["created"],
            entry["status"],
            str(entry["items"]),
            f"{entry['bytes'] / (1024 * 1024):.2f} MB",
        )

    console.print(table)


@cli.command(name="verify-backup")
@click.argument("backup_id")
@click.pass_context
def verify_backup(ctx: click.Context, backup_id: str) -> None:
    """Re-check a backup's manifest and copies against their recorded digests."""
    safety = SafetyManager(_load_config(ctx))
    try:
        report = safety.verify_backup(backup_id)
    except FileNotFoundError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    if report["valid"]:
        console.print(f"[green]✓ Backup {backup_id} verified[/green]")
        return

    for problem in report["problems"]:
        console.print(f"[red]✗ {problem}[/red]")
    sys.exit(1)


@cli.command()
@click.option("--folder", "-f", required=True, help="Folder name or pattern to protect")
@click.pass_context
def protect(ctx: click.Context, folder: str) -> None:
    """
    Add a folder to the protected folders list.

    Files in protected folders are never deleted.
    """
    config = _load_config(ctx)
    config.add_protected_folder(folder)

    console.print(f"[green]✓ Protected folder added:[/green] {folder}")
    console.print("\n[cyan]Current protected folders:[/cyan]")
    for pf in config.get("protected_folders", []):
        console.print(f"  • {pf}")


@cli.command()
@click.option("--folder", "-f", required=True, help="Folder name or pattern to unprotect")
@click.pass_context
def unprotect(ctx: click.Context, folder: str) -> None:
    """Remove a folder from the protected folders list."""
    config = _load_config(ctx)
    config.remove_protected_folder(folder)

    console.print(f"[green]✓ Protected folder removed:[/green] {folder}")


def _display_groups(groups: List[DuplicateGroup]) -> None:
    """Display duplicate groups in formatted tables."""
    reclaimable = sum(group.reclaimable_bytes for group in groups)
    console.print(
        f"[bold green]Found {len(groups)} duplicate groups "
        f"({reclaimable / (1024 * 1024):.1f} MB reclaimable):[/bold green]\n"
    )

    for number, group in enumerate(groups[:10], 1):
        table = Table(
            title=(
                f"Group {number} - {group.method.value}, "
                f"similarity {group.similarity:.1%}, confidence {group.confidence}"
            ),
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("File")
        table.add_column("Resolution", justify="right")
        table.add_column("Size", justify="right")
        table.add_column("Quality", justify="right")
        table.add_column("Action", justify="center")

        for img in group.images:
            table.add_row(
                img.path,
                f"{img.width}x{img.height}",
                f"{img.size / (1024 * 1024):.2f} MB",
                f"{img.quality_score:.3f}",
                "[green]KEEP ✓[/green]" if img.recommended else "[red]DELETE ✗[/red]",
            )

        console.print(table)
        console.print()

    if len(groups) > 10:
        console.print(f"[dim]... and {len(groups) - 10} more groups[/dim]\n")


def _save_report(groups: List[DuplicateGroup], output_path: Path) -> None:
    """Save duplicate groups to a JSON report."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump({"version": 1, "groups": [g.to_dict() for g in groups]}, f, indent=2)
    logger.debug(f"Saved {len(groups)} groups to {output_path}")


def _load_report(input_path: Path) -> List[DuplicateGroup]:
    """Load duplicate groups from a JSON report."""
    with open(input_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return [DuplicateGroup.from_dict(g) for g in data["groups"]]


def main() -> None:
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
