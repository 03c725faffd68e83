# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.cli",
#   "purpose": "Typer CLI for locating, installing, and probing the Tinymist binary",
#   "sections": [
#     {"id": "context", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"},
#     {"id": "locate", "name": "locate", "anchor": "function-locate", "kind": "function"},
#     {"id": "install", "name": "install", "anchor": "function-install", "kind": "function"},
#     {"id": "probe", "name": "probe", "anchor": "function-probe", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command line access to the toolchain core.

Example:
    typst-support locate
    typst-support install --timeout 300
    typst-support probe /usr/local/bin/tinymist
"""

from __future__ import annotations

import json
from concurrent import futures
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .LanguageServer.errors import ConfigError, TypstSupportError
from .LanguageServer.fetcher import ArchiveFetcher
from .LanguageServer.locations import BinaryLocationResolver
from .LanguageServer.logging_utils import setup_logging
from .LanguageServer.notifier import RecordingNotifier
from .LanguageServer.scheduler import AcquisitionScheduler, StatusKind
from .LanguageServer.settings import ResolvedConfig, get_default_config, load_config
from .LanguageServer.validation import validate_binary_execution

_console = Console()


class CliContext:
    """Per-invocation state shared by the commands."""

    def __init__(self, config: ResolvedConfig, verbosity: int = 0, as_json: bool = False) -> None:
        self.config = config
        self.verbosity = verbosity
        self.as_json = as_json
        self.console = _console
        self.notifier = RecordingNotifier()

    def resolver(self) -> BinaryLocationResolver:
        return BinaryLocationResolver.from_config(self.config, notifier=self.notifier)

    def flush_notifications(self) -> None:
        styles = {"info": "cyan", "warn": "yellow", "error": "red"}
        for level, message in self.notifier.messages:
            self.console.print(f"[{styles[level]}]{escape(message)}[/{styles[level]}]")
        self.notifier.messages.clear()


app = typer.Typer(
    name="typst-support",
    help="Provision and inspect the Tinymist binary used for Typst editing",
    no_args_is_help=True,
)


def _context(ctx: typer.Context) -> CliContext:
    context = ctx.obj
    if not isinstance(context, CliContext):
        raise RuntimeError("CLI context not initialized")
    return context


def _show_version(value: bool) -> None:
    if value:
        _console.print(f"typst-support {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=False)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", envvar="TYPST_SUPPORT_CONFIG", help="Path to a YAML config file"
    ),
    verbosity: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Increase verbosity (-v for INFO, -vv for DEBUG)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Emit machine-readable JSON"),
    version: bool = typer.Option(
        False, "--version", "-V", callback=_show_version, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """Typst toolchain core CLI.

    Global options go before the subcommand:

        typst-support -v --config settings.yaml install
    """

    try:
        resolved = load_config(config) if config is not None else get_default_config(copy=True)
    except ConfigError as exc:
        _console.print(f"[red]Error loading settings: {escape(str(exc))}[/red]")
        raise typer.Exit(code=2) from exc

    if verbosity:
        resolved.logging.level = "DEBUG" if verbosity >= 2 else "INFO"
        setup_logging(resolved.logging)

    ctx.obj = CliContext(resolved, verbosity=verbosity, as_json=as_json)


@app.command()
def locate(ctx: typer.Context) -> None:
    """Show where the binary is expected and where it is downloaded from."""

    context = _context(ctx)
    resolver = context.resolver()
    location = resolver.resolve()
    context.flush_notifications()
    payload = {
        "local_path": str(location.local_path),
        "remote_url": location.remote_url,
        "version": location.version_tag,
        "source": location.source.value,
        "exists": location.local_path.exists(),
        "platform": f"{resolver.platform.os_family.value}/{resolver.platform.arch_family.value}",
    }
    if context.as_json:
        context.console.print_json(json.dumps(payload))
        return
    table = Table(title="Tinymist location", show_header=False)
    for key, value in payload.items():
        table.add_row(key, str(value))
    context.console.print(table)


@app.command()
def install(
    ctx: typer.Context,
    timeout: float = typer.Option(600.0, "--timeout", "-t", min=1.0, help="Seconds to wait for the download"),
) -> None:
    """Download the binary unless it is already present."""

    context = _context(ctx)
    scheduler = AcquisitionScheduler(
        context.resolver(),
        fetcher=ArchiveFetcher(context.config.download),
        notifier=context.notifier,
    )
    try:
        status = scheduler.obtain_binary()
        if status.kind is StatusKind.DOWNLOADED:
            context.console.print(f"[green]Already installed:[/green] {escape(str(status.path))}")
            return
        if status.kind is not StatusKind.SCHEDULED:
            context.flush_notifications()
            context.console.print(f"[red]Cannot install right now ({status.kind.value})[/red]")
            raise typer.Exit(code=1)
        with context.console.status("Downloading Tinymist..."):
            try:
                path = scheduler.wait(timeout=timeout)
            except futures.TimeoutError as exc:
                scheduler.cancel()
                context.console.print(f"[red]Download did not finish within {timeout:g}s[/red]")
                raise typer.Exit(code=1) from exc
            except TypstSupportError as exc:
                context.flush_notifications()
                context.console.print(f"[red]{escape(str(exc))}[/red]")
                raise typer.Exit(code=1) from exc
        context.flush_notifications()
        context.console.print(f"[green]Installed:[/green] {escape(str(path))}")
    finally:
        scheduler.shutdown()


@app.command()
def probe(
    ctx: typer.Context,
    binary: Optional[Path] = typer.Argument(None, help="Binary to check; defaults to the resolved location"),
) -> None:
    """Run ``tinymist -V`` and check the version requirement."""

    context = _context(ctx)
    target = binary or context.resolver().binary_path()
    context.flush_notifications()
    result = validate_binary_execution(target)
    if context.as_json:
        context.console.print_json(
            json.dumps(
                {
                    "binary": str(target),
                    "ok": result.ok,
                    "version": str(result.version) if result.version else None,
                    "message": result.message,
                }
            )
        )
    elif result.ok and result.version is not None:
        context.console.print(f"[green]{result.version.to_console_string()}[/green] at {escape(str(target))}")
    else:
        context.console.print(f"[red]{escape(str(result.message))}[/red]")
    if not result.ok:
        raise typer.Exit(code=1)


def cli_main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli_main()
