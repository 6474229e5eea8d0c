"""
Human-readable output formatting.

Centralizes all CLI output formatting while keeping CLI commands thin and
focused. Store previews go through typer.echo untouched so payload text is
never interpreted as Rich markup.
"""
from __future__ import annotations

import typer
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from ..fetch import ProgressCallback
from ..inspection import DumpEntry, summarize
from ..remote import Remote
from ..storage.base import RecordKind
from .facade import FetchResult

_console = Console()
_err_console = Console(stderr=True)


def print_fetch_summary(result: FetchResult, verbose: bool = False) -> None:
    """
    Print the outcome of a fetch.

    Args:
        result: Fetch result to display
        verbose: Also show mirrors and the remote's store key
    """
    remote = result.remote
    status = "cached" if result.cached else "downloaded"
    _console.print(f"[bold]Remote:[/] {escape(remote.name)}", soft_wrap=True)
    _console.print(f"[bold]Status:[/] {status}")
    _console.print(f"[bold]Object:[/] {remote.file}", soft_wrap=True)
    if verbose:
        _console.print(f"[bold]Key:[/] [dim]{remote.key()}[/]", soft_wrap=True)
        _console.print(f"[bold]Mirrors:[/] {escape(', '.join(remote.mirrors))}", soft_wrap=True)


def print_remote(remote: Remote) -> None:
    """Print a cached remote record."""
    _console.print(f"[bold]Remote:[/] {escape(remote.name)}", soft_wrap=True)
    _console.print(f"[bold]Object:[/] {remote.file or '[dim]unresolved[/]'}", soft_wrap=True)
    if remote.etag:
        _console.print(f"[bold]ETag:[/] {escape(remote.etag)}")


def print_dump(entries: Iterable[DumpEntry]) -> None:
    """
    Print store previews as they are produced, then per-store totals.

    Args:
        entries: Dump entries, consumed lazily
    """
    sizes = {kind: 0 for kind in RecordKind}

    def _echo_all() -> Iterator[DumpEntry]:
        for entry in entries:
            typer.echo(f"{entry.path}: {entry.preview}")
            sizes[entry.kind] += entry.size
            yield entry

    counts = summarize(_echo_all())

    table = Table(title="Keys per store")
    table.add_column("Store", style="cyan")
    table.add_column("Keys", justify="right", style="yellow")
    table.add_column("Bytes", justify="right")
    for kind in RecordKind:
        table.add_row(kind.value, str(counts[kind]), _format_bytes(sizes[kind]))
    _console.print(table)
    typer.echo(f"{sum(counts.values())} total keys")


def print_gc_summary(keys: List[str], dry_run: bool) -> None:
    """Print the landing entries that were (or would be) erased."""
    verb = "Would erase" if dry_run else "Erased"
    for key in keys:
        typer.echo(f"{verb} download/{key}")
    typer.echo(f"{verb} {len(keys)} stale download(s)")


def print_error(exc: BaseException) -> None:
    """Print an error message to stderr."""
    _err_console.print(f"[bold red]Error:[/] {escape(str(exc))}", soft_wrap=True)


@contextmanager
def fetch_progress(label: str, enabled: bool = True) -> Iterator[Optional[ProgressCallback]]:
    """
    Show a download progress bar for the duration of the block.

    Yields a callback for Fetcher progress reports, or None when disabled
    (CI mode).
    """
    if not enabled:
        yield None
        return

    with Progress(
        TextColumn("[bold]Downloading[/] {task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=_err_console,
        transient=True,
    ) as progress:
        task = progress.add_task(escape(label), total=None)

        def _report(done: int, total: Optional[int]) -> None:
            progress.update(task, completed=done, total=total)

        yield _report


def _format_bytes(size: int) -> str:
    """Format byte size in human-readable format."""
    value = float(size)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if value < 1024:
            return f"{value:.1f} {unit}" if unit != 'B' else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} PB"
