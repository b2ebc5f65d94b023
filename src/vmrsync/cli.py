"""Command-line interface for vmrsync."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Iterable

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import load_config
from .errors import (
    AlreadyInitializedError,
    ConfigurationError,
    CloakViolationError,
    NotInitializedError,
    OperationCancelledError,
    PatchConflictError,
    RevisionNotFoundError,
    VmrError,
)
from .git import LocalRepository
from .manager import VmrManager
from .models import AdditionalRemote, MappingStatus, SyncAction, SyncResult
from .scanner import SCANNERS, scan_vmr

app = typer.Typer(help="Synchronize individual repositories into a virtual monorepo")
console = Console()

ScanType = Enum("ScanType", {name.upper(): name for name in SCANNERS}, type=str)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load_manager(config: Path | None) -> VmrManager:
    config_obj = load_config(config)
    return VmrManager(config_obj)


def _parse_remotes(raw: list[str] | None) -> list[AdditionalRemote]:
    remotes: list[AdditionalRemote] = []
    for item in raw or []:
        name, sep, uri = item.partition(":")
        if not sep or not name or not uri:
            raise typer.BadParameter(f"Expected MAPPING:URI, got '{item}'", param_hint="--additional-remote")
        remotes.append(AdditionalRemote(mapping_name=name.strip(), remote_uri=uri.strip()))
    return remotes


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, AlreadyInitializedError):
        console.print(f"[yellow]{exc}[/yellow]")
        console.print("[yellow]Use 'vmrsync update' to move it to a newer revision.[/yellow]")
        raise typer.Exit(code=1)
    if isinstance(exc, NotInitializedError):
        console.print(f"[red]{exc}[/red]")
        console.print("[yellow]Use 'vmrsync initialize' first.[/yellow]")
        raise typer.Exit(code=1)
    if isinstance(exc, ConfigurationError):
        message = str(exc)
        console.print(f"[red]{message}[/red]")
        if "Expected to find" in message:
            console.print(
                "[yellow]Make sure you pointed to the directory containing the mapping file, or to the file itself.[/yellow]"
            )
        raise typer.Exit(code=1)
    if isinstance(exc, RevisionNotFoundError):
        console.print(f"[red]{exc}[/red]")
        console.print("[yellow]Tip: pass --additional-remote MAPPING:URI to try other remotes.[/yellow]")
        raise typer.Exit(code=1)
    if isinstance(exc, PatchConflictError):
        console.print(f"[red]{exc}[/red]")
        console.print("[yellow]Fix the patch file, then rerun the sync from the work branch.[/yellow]")
        raise typer.Exit(code=1)
    if isinstance(exc, CloakViolationError):
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2)
    if isinstance(exc, OperationCancelledError):
        console.print("[yellow]Cancelled.[/yellow]")
        raise typer.Exit(code=130)
    if isinstance(exc, VmrError):
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    raise exc


def _format_sync_results(results: Iterable[SyncResult]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Mapping")
    table.add_column("Action")
    table.add_column("SHA")
    table.add_column("Details", overflow="fold")

    action_styles = {
        SyncAction.INITIALIZED: "green",
        SyncAction.UPDATED: "green",
        SyncAction.SKIPPED: "yellow",
    }

    for result in results:
        style = action_styles.get(result.action, "white")
        table.add_row(
            result.mapping_name,
            f"[{style}]{result.action.value}[/{style}]",
            result.sha or "",
            result.details or "",
        )

    console.print(table)


def _format_status(statuses: Iterable[MappingStatus]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Mapping")
    table.add_column("SHA")
    table.add_column("Version")
    table.add_column("State")

    for status in statuses:
        if status.initialized and status.sources_present:
            state = "[green]initialized[/green]"
        elif status.initialized:
            state = "[red]sources_missing[/red]"
        elif status.sources_present:
            state = "[red]untracked[/red]"
        else:
            state = "[yellow]not_initialized[/yellow]"
        table.add_row(status.mapping_name, status.sha or "", status.source_version or "", state)

    console.print(table)


@app.command()
def initialize(
    mapping: str = typer.Argument(..., help="Name of the mapping to initialize"),
    revision: str | None = typer.Option(None, "--revision", "-r", help="Revision to pull (defaults to the mapping's ref)"),
    version: str | None = typer.Option(None, "--version", help="Package version to record in the manifest"),
    recursive: bool = typer.Option(False, "--recursive", help="Also initialize declared dependencies"),
    additional_remote: list[str] = typer.Option(None, "--additional-remote", help="Extra remote as MAPPING:URI"),
    verify: bool = typer.Option(False, "--verify-cloaking", help="Scan synced mappings for cloaked files"),
    baseline: Path | None = typer.Option(None, "--baseline", help="Baseline file used by --verify-cloaking"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to source-mappings.toml"),
) -> None:
    """Pull an individual repository into the VMR for the first time."""

    try:
        manager = _load_manager(config)
        results = manager.initialize_repository(
            mapping,
            revision,
            version,
            recursive=recursive,
            additional_remotes=_parse_remotes(additional_remote),
            verify_cloaking=verify,
            baseline_path=baseline,
        )
        _format_sync_results(results)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def update(
    mapping: str = typer.Argument(..., help="Name of the mapping to update"),
    revision: str | None = typer.Option(None, "--revision", "-r", help="Revision to sync to (defaults to the mapping's ref)"),
    version: str | None = typer.Option(None, "--version", help="Package version to record in the manifest"),
    recursive: bool = typer.Option(False, "--recursive", help="Also update declared dependencies"),
    additional_remote: list[str] = typer.Option(None, "--additional-remote", help="Extra remote as MAPPING:URI"),
    verify: bool = typer.Option(False, "--verify-cloaking", help="Scan synced mappings for cloaked files"),
    baseline: Path | None = typer.Option(None, "--baseline", help="Baseline file used by --verify-cloaking"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to source-mappings.toml"),
) -> None:
    """Sync an already initialized repository to a new revision."""

    try:
        manager = _load_manager(config)
        results = manager.update_repository(
            mapping,
            revision,
            version,
            recursive=recursive,
            additional_remotes=_parse_remotes(additional_remote),
            verify_cloaking=verify,
            baseline_path=baseline,
        )
        _format_sync_results(results)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def scan(
    scan_type: ScanType = typer.Option(ScanType("cloaked"), "--type", "-t", help="Kind of files to look for"),
    baseline: Path | None = typer.Option(None, "--baseline", help="Baseline file with scan patterns"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to source-mappings.toml"),
) -> None:
    """Scan the VMR for files that must not be there and exit non-zero if any are found."""

    try:
        config_obj = load_config(config)
        settings = config_obj.settings
        scanner = SCANNERS[scan_type.value](LocalRepository(settings.vmr_root), settings)
        files = scan_vmr(
            scanner,
            config_obj.mappings,
            baseline,
            src_dir=settings.src_dir,
            max_workers=settings.max_workers,
        )
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    for path in files:
        console.print(path, highlight=False, markup=False)
    if files:
        console.print(f"[red]Found {len(files)} {scan_type.value} file(s).[/red]")
        raise typer.Exit(code=2)
    console.print(f"[green]No {scan_type.value} files found.[/green]")


@app.command()
def status(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to source-mappings.toml"),
) -> None:
    """Show every mapping and the revision recorded in the source manifest."""

    try:
        manager = _load_manager(config)
        _format_status(manager.status())
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


def run() -> None:
    """Entry point used for console_script bindings."""

    app()
