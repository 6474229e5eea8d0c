"""
layerstore CLI

Implements 5 CLI verbs with Operations facade integration:
- fetch: Resolve a remote by URL, downloading it on a cache miss
- get: Look up a cached remote without network access
- cat: Write an object's payload to stdout or a file
- dump: Preview every value in every store
- gc: Remove download entries left behind by aborted fetches
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from .cli_context import CLIContext
from .inspection import PREVIEW_LIMIT
from .operations import Operations, OpsConfig, run_and_exit
from .operations.printers import (
    fetch_progress, print_dump, print_fetch_summary, print_gc_summary, print_remote
)

app = typer.Typer(name="layerstore", help="Content-addressed fetch cache for container image layers")


def _configure_logging(verbose: bool) -> None:
    """Route library logging to stderr; DEBUG when verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _make_context() -> CLIContext:
    """Build the CLI context from the environment."""
    return CLIContext.from_env()


@app.command()
def fetch(
    name: str = typer.Argument(..., help="URL of the artifact to fetch"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Also copy the payload to this file"),
    force: bool = typer.Option(False, "--force", help="Download even if the remote is cached"),
    ci: bool = typer.Option(False, "--ci", help="CI mode (suppress progress)"),
    verbose: bool = typer.Option(False, "--verbose", help="Show detailed output")
) -> None:
    """Fetch an artifact, using the cache when possible."""
    _configure_logging(verbose)

    def _fetch() -> None:
        context = _make_context()
        try:
            ops = Operations(
                config=OpsConfig(ci=ci, verbose=verbose, force=force),
                store=context.store,
                fetcher=context.fetcher,
            )
            with fetch_progress(name, enabled=not ci) as progress:
                result = ops.fetch(name, progress=progress)
            print_fetch_summary(result, verbose=verbose)

            if output is not None:
                with open(output, "wb") as out:
                    ops.cat(result.remote.file, out)
                typer.echo(f"Wrote {output}")
        finally:
            context.close()

    run_and_exit(_fetch)


@app.command()
def get(
    name: str = typer.Argument(..., help="URL of the artifact to look up"),
    verbose: bool = typer.Option(False, "--verbose", help="Show detailed output")
) -> None:
    """Look up a cached artifact without network access."""
    _configure_logging(verbose)

    def _get() -> None:
        context = _make_context()
        try:
            ops = Operations(config=OpsConfig(verbose=verbose), store=context.store)
            print_remote(ops.get(name))
        finally:
            context.close()

    run_and_exit(_get)


@app.command()
def cat(
    content_hash: str = typer.Argument(..., help="Object key (hex sha256 of the payload)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to this file instead of stdout"),
) -> None:
    """Write an object's payload to stdout."""
    _configure_logging(False)

    def _cat() -> None:
        context = _make_context()
        try:
            ops = Operations(config=OpsConfig(), store=context.store)
            if output is not None:
                with open(output, "wb") as out:
                    ops.cat(content_hash, out)
            else:
                ops.cat(content_hash, typer.get_binary_stream("stdout"))
        finally:
            context.close()

    run_and_exit(_cat)


@app.command()
def dump(
    hex: bool = typer.Option(False, "--hex", help="Show previews as hex"),
    limit: int = typer.Option(PREVIEW_LIMIT, "--limit", help="Maximum preview bytes per value"),
) -> None:
    """Preview every key in every store."""
    _configure_logging(False)

    def _dump() -> None:
        context = _make_context()
        try:
            ops = Operations(config=OpsConfig(), store=context.store)
            print_dump(ops.dump(hex=hex, limit=limit))
        finally:
            context.close()

    run_and_exit(_dump)


@app.command()
def gc(
    dry_run: bool = typer.Option(False, "--dry-run", help="List stale downloads without erasing them"),
) -> None:
    """Remove download entries left behind by aborted fetches."""
    _configure_logging(False)

    def _gc() -> None:
        context = _make_context()
        try:
            ops = Operations(config=OpsConfig(), store=context.store)
            print_gc_summary(ops.gc(dry_run=dry_run), dry_run)
        finally:
            context.close()

    run_and_exit(_gc)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
