#!/usr/bin/env python3
"""
chunkxfer CLI

Command-line interface for the chunked file transfer protocol.

Usage:
    chunkxfer serve                  # Receive files
    chunkxfer send FILE --host H     # Send a file
    chunkxfer inspect FILE           # Show a file's manifest
    chunkxfer transfers              # List persisted transfer records
"""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import load_config
from .errors import TransferError
from .file.chunker import FileChunker
from .storage import init_database
from .transfer import Impairment, TransferClient, TransferServer

console = Console()


def setup_logging(verbose: bool = False, level: str = "INFO"):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.option('--data-dir', type=click.Path(file_okay=False), help='Data directory')
@click.pass_context
def cli(ctx, verbose, config_path, data_dir):
    """chunkxfer - reliable chunked file transfer over UDP."""
    try:
        config = load_config(Path(config_path) if config_path else None)
        if data_dir:
            config.data_dir = Path(data_dir)
        config.validate()
    except ValueError as e:
        raise click.BadParameter(str(e))

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', help='Address to bind')
@click.option('--port', type=int, help='UDP port')
@click.option('--api-port', type=int, help='Status API port')
@click.option('--no-api', is_flag=True, help='Disable the status API')
@click.option('--loss-rate', default=0.0, type=float, help='Simulate outbound packet loss')
@click.pass_context
def serve(ctx, host, port, api_port, no_api, loss_rate):
    """Receive files."""
    config = ctx.obj['config']
    if host:
        config.host = host
    if port is not None:
        config.port = port
    if api_port is not None:
        config.api_port = api_port

    async def run():
        server = TransferServer(config, impairment=_impairment(loss_rate))

        try:
            await server.start()

            address = server.address
            console.print(Panel.fit(
                f"[bold green]Transfer Server Started[/bold green]\n\n"
                f"Listening: [yellow]{address[0]}:{address[1]}[/yellow] (UDP)\n"
                f"Files: [blue]{config.files_dir}[/blue]\n"
                f"Window: [yellow]{config.window_size}[/yellow]  "
                f"Upload slots: [yellow]{config.upload_slots}[/yellow]",
                title="Server Info"
            ))

            if not no_api:
                console.print(f"\n[dim]Status API at http://localhost:{config.api_port}[/dim]")
                console.print(f"[dim]API docs at http://localhost:{config.api_port}/docs[/dim]\n")

                from .api import run_api_server
                await run_api_server(server, port=config.api_port)
            else:
                console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
                while True:
                    await asyncio.sleep(1)
        finally:
            await server.stop()
            console.print("[green]Server stopped[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")
    except TransferError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--host', default='127.0.0.1', help='Server address')
@click.option('--port', type=int, help='Server UDP port')
@click.option('--name', 'remote_name', help='Name to store the file under')
@click.option('--window', type=int, help='Sliding window size')
@click.option('--chunk-size', type=int, help='Chunk size in bytes')
@click.option('--loss-rate', default=0.0, type=float, help='Simulate outbound packet loss')
@click.pass_context
def send(ctx, file_path, host, port, remote_name, window, chunk_size, loss_rate):
    """Send a file to a server."""
    config = ctx.obj['config']
    if window is not None:
        config.window_size = window
    if chunk_size is not None:
        config.chunk_size = chunk_size
    try:
        config.validate()
    except ValueError as e:
        raise click.BadParameter(str(e))

    file_path = Path(file_path)

    async def run():
        client = TransferClient(host, port or config.port, config,
                                impairment=_impairment(loss_rate))

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task(f"Hashing {file_path.name}...", total=100)

            def update_progress(session):
                progress.update(
                    task,
                    completed=session.progress * 100,
                    description=f"{session.phase.value.capitalize()}... "
                                f"({session.acknowledged_count}/{session.manifest.total_chunks} chunks)"
                )

            async with client:
                outcome = await client.send_file(file_path, remote_name, update_progress)

            if outcome.completed:
                progress.update(task, completed=100, description="Done!")

        if outcome.completed:
            console.print(f"\n[green]✓ Sent {outcome.file_name} "
                          f"({format_size(outcome.bytes_transferred)} on the wire, "
                          f"{outcome.retransmits} retransmits, {outcome.duration_s:.2f}s)[/green]")
            if outcome.resume_cursor:
                console.print(f"[dim]Resumed at chunk {outcome.resume_cursor}[/dim]")
            return True

        console.print(f"\n[red]✗ Transfer {outcome.phase.value}: "
                      f"{outcome.reason} {outcome.detail}[/red]")
        return False

    try:
        ok = asyncio.run(run())
    except TransferError as e:
        console.print(f"[red]✗ {e.kind}: {e}[/red]")
        ok = False
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
        ok = False

    if not ok:
        sys.exit(1)


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--chunks', default=5, help='Number of chunks to list')
@click.pass_context
def inspect(ctx, file_path, chunks):
    """Show the manifest a file would be sent with."""
    config = ctx.obj['config']
    file_path = Path(file_path)

    async def run():
        client = TransferClient('127.0.0.1', config.port, config)
        manifest = await client.prepare(file_path)

        console.print(Panel.fit(
            f"Name: [cyan]{manifest.file_name}[/cyan]\n"
            f"Size: [yellow]{manifest.size:,} bytes[/yellow]\n"
            f"Chunks: [yellow]{manifest.total_chunks}[/yellow] x {format_size(manifest.chunk_size)}\n"
            f"Algorithm: {manifest.algorithm}\n"
            f"File hash: [green]{manifest.file_hash}[/green]\n"
            f"Transfer id: [green]{manifest.transfer_id}[/green]",
            title="Manifest"
        ))

        if not manifest.total_chunks or chunks <= 0:
            return

        table = Table(title="Chunks")
        table.add_column("Index", justify="right")
        table.add_column("Offset", justify="right")
        table.add_column("Size", justify="right", style="yellow")
        table.add_column("Checksum", style="green")

        chunker = FileChunker(manifest.chunk_size, manifest.algorithm)
        for index in range(min(chunks, manifest.total_chunks)):
            chunk = await chunker.produce(file_path, index, manifest.size)
            table.add_row(
                str(index),
                f"{manifest.chunk_offset(index):,}",
                f"{chunk.size:,}",
                chunk.checksum[:16] + "...",
            )

        console.print(table)
        if manifest.total_chunks > chunks:
            console.print(f"[dim]... and {manifest.total_chunks - chunks} more[/dim]")

    try:
        asyncio.run(run())
    except TransferError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--status', type=click.Choice(['in_progress', 'completed', 'failed', 'cancelled']),
              help='Only show records with this status')
@click.pass_context
def transfers(ctx, status):
    """List persisted transfer records."""
    config = ctx.obj['config']

    async def run():
        db = await init_database(config.data_dir)
        try:
            records = await db.list_transfers(status)
        finally:
            await db.close()

        if not records:
            console.print("[yellow]No transfer records[/yellow]")
            return

        table = Table(title="Transfers")
        table.add_column("Transfer", style="cyan")
        table.add_column("Name")
        table.add_column("Size", justify="right", style="yellow")
        table.add_column("Progress", justify="right")
        table.add_column("Status")
        table.add_column("Updated")

        for r in records:
            table.add_row(
                r['transfer_id'][:12] + "...",
                r['file_name'],
                format_size(r['size']),
                f"{r['resume_cursor']}/{r['total_chunks']}",
                _status_style(r['status']),
                datetime.fromtimestamp(r['updated_at']).strftime('%Y-%m-%d %H:%M:%S'),
            )

        console.print(table)

    asyncio.run(run())


def _impairment(loss_rate: float) -> Optional[Impairment]:
    if loss_rate <= 0:
        return None
    return Impairment(loss_rate=loss_rate)


def _status_style(status: str) -> str:
    color = {
        'completed': 'green',
        'in_progress': 'yellow',
        'failed': 'red',
        'cancelled': 'magenta',
    }.get(status, 'white')
    return f"[{color}]{status}[/{color}]"


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
