#!/usr/bin/env python3
"""CloudUnify - One view over Google Drive, OneDrive, Azure Storage and Dropbox."""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from cloudunify import CloudUnify, create_app, __version__
from cloudunify.config import load_config
from storage import ConfigurationError, FileInfo, OperationResult, UploadSource
from utils.formatting import format_bytes, format_timestamp

console = Console()


def log_level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def setup_logging(level: str) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=log_level(level),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    # The Google and Azure SDKs are chatty at INFO
    for noisy in ("googleapiclient", "azure", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def print_result(result: OperationResult) -> int:
    """Print an operation result and return the matching exit code."""
    if result:
        console.print(f"[green]{escape(result.message)}[/green]")
        return 0
    kind = result.error.value if result.error else "error"
    console.print(f"[red]{escape(result.message)}[/red] [dim]({kind})[/dim]")
    return 1


def print_status(app: CloudUnify) -> None:
    """Print the provider table and the combined quota."""
    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Used", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Free", justify="right")

    for provider_id, status in app.manager.get_providers_status().items():
        state = "[green]connected[/green]" if status.connected else "[dim]disconnected[/dim]"
        quota = status.quota
        table.add_row(f"{status.name} [dim]({provider_id})[/dim]", state,
                      format_bytes(quota.used), format_bytes(quota.total),
                      format_bytes(quota.free))
    console.print(table)

    total = app.manager.get_total_quota()
    console.print(
        f"Total: {format_bytes(total.used)} of {format_bytes(total.total)} used "
        f"({total.percentage:.1f}%), {format_bytes(total.free)} free"
    )
    best = app.manager.get_best_provider_for_upload()
    if best:
        console.print(f"Uploads go to [bold]{best}[/bold] by default")


def print_files(files: List[FileInfo], title: str) -> None:
    if not files:
        console.print(f"[yellow]{title}: no files[/yellow]")
        return

    table = Table(title=f"{title} ({len(files)})")
    table.add_column("Name")
    table.add_column("Provider")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    table.add_column("ID", style="dim", overflow="fold")
    for f in files:
        table.add_row(escape(f.name), f.provider_name, format_bytes(f.size),
                      format_timestamp(f.modified), escape(f.id))
    console.print(table)


async def upload(app: CloudUnify, path: str, target: str) -> int:
    if not os.path.isfile(path):
        console.print(f"[red]Not a file: {escape(path)}[/red]")
        return 1

    source = UploadSource.from_path(path)
    with Progress(TextColumn("{task.description}"), BarColumn(),
                  TaskProgressColumn(), console=console) as progress:
        task = progress.add_task(f"Uploading {escape(source.name)}", total=100)
        result = await app.manager.upload_file(
            source, target,
            on_progress=lambda percent: progress.update(task, completed=percent),
        )
        if result:
            progress.update(task, completed=100)
    return print_result(result)


async def run_cli(app: CloudUnify, args: argparse.Namespace) -> int:
    """Run one CLI action against an initialized app."""
    await app.start()
    manager = app.manager

    if args.connect:
        return print_result(await manager.connect_provider(args.connect))

    if args.disconnect:
        return print_result(await manager.disconnect_provider(args.disconnect))

    if args.upload:
        return await upload(app, args.upload, args.target)

    if args.download:
        provider_id, file_id, name = args.download
        return print_result(await manager.download_file(provider_id, file_id, name,
                                                        destination=args.dest))

    if args.list:
        print_files(await manager.get_all_files(), "All files")
        return 0

    if args.search is not None:
        if not manager.files:
            await manager.get_all_files()
        print_files(await manager.search_files(args.search),
                    f"Search results for '{escape(args.search)}'")
        return 0

    if args.refresh:
        await manager.refresh_all_quotas()

    print_status(app)
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Combined view of your cloud storage accounts")
    parser.add_argument("--version", action="version", version=f"CloudUnify {__version__}")
    parser.add_argument("--config", type=str,
                        help="JSON config file (default: $CLOUDUNIFY_CONFIG)")
    parser.add_argument("--status", action="store_true",
                        help="Show providers and quota")
    parser.add_argument("--list", action="store_true",
                        help="List files of all connected providers, newest first")
    parser.add_argument("--search", type=str, metavar="QUERY",
                        help="Search files by name across providers")
    parser.add_argument("--refresh", action="store_true",
                        help="Refresh quotas before showing the status")
    parser.add_argument("--connect", type=str, metavar="PROVIDER",
                        help="Connect a provider (google, onedrive, azure, dropbox)")
    parser.add_argument("--disconnect", type=str, metavar="PROVIDER",
                        help="Disconnect a provider")
    parser.add_argument("--upload", type=str, metavar="PATH",
                        help="Upload a local file")
    parser.add_argument("--target", type=str, default="auto",
                        help="Upload target provider, or 'auto' for the most free space")
    parser.add_argument("--download", nargs=3, metavar=("PROVIDER", "FILE_ID", "NAME"),
                        help="Download a file")
    parser.add_argument("--dest", type=str,
                        help="Download directory (default: configured download_dir)")
    parser.add_argument("--cli", action="store_true",
                        help="Use CLI output instead of TextUI (default is TextUI)")
    return parser.parse_args(argv)


def has_action(args: argparse.Namespace) -> bool:
    return any((args.status, args.list, args.search is not None, args.refresh,
                args.connect, args.disconnect, args.upload, args.download))


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        return 2

    app = create_app(config)

    if args.cli or has_action(args):
        setup_logging(config.log_level)
        return asyncio.run(run_cli(app, args))

    # TUI mode (default) - Textual interface; the dashboard attaches its own handler
    from textui import CloudUnifyApp
    logging.getLogger().setLevel(log_level(config.log_level))
    CloudUnifyApp(app).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
