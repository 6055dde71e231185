"""Click CLI for Orion Fleet.

Commands:
- probe: Check TCP reachability of a device
- exec: Run a command on a device
- sample: Take telemetry samples
- stream: Stream telemetry until interrupted
- power-mode: Show or set the nvpmodel power mode
- sysinfo: Show device system information
- shutdown: Schedule a device shutdown
- reboot: Reboot a device
- history: Show stored telemetry samples
- serve: Run the HTTP/WebSocket API
"""

import asyncio
import functools
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from orion_fleet import __version__
from orion_fleet.config import FleetSettings
from orion_fleet.fleet import FleetManager
from orion_fleet.ssh.transport import AuthType, Credential
from orion_fleet.telemetry.models import TelemetrySample
from orion_fleet.telemetry.store import DEFAULT_READ_LIMIT
from orion_fleet.utils.errors import FleetError
from orion_fleet.utils.logging import setup_logging

console = Console()
logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async function in sync context, reporting fleet errors."""
    try:
        return asyncio.run(coro)
    except FleetError as e:
        console.print(f"[red]Error ({e.kind.value}): {e.message}[/]")
        sys.exit(1)


def credential_options(f):
    """Add SSH credential options and pass them on as `credential`."""

    @functools.wraps(f)
    def wrapper(*args, host, port, user, auth_type, password, key, **kwargs):
        kwargs["credential"] = Credential(
            host=host,
            port=port,
            username=user,
            auth_type=auth_type,
            password=password,
            private_key_path=key,
        )
        return f(*args, **kwargs)

    options = [
        click.option("--host", envvar="ORION_SSH_HOST", required=True, help="Device hostname or IP"),
        click.option("--port", envvar="ORION_SSH_PORT", type=int, default=22, help="SSH port"),
        click.option("--user", envvar="ORION_SSH_USER", required=True, help="SSH username"),
        click.option(
            "--auth-type",
            envvar="ORION_SSH_AUTH_TYPE",
            type=click.Choice([a.value for a in AuthType]),
            default=AuthType.PASSWORD.value,
            help="Authentication method",
        ),
        click.option("--password", envvar="ORION_SSH_PASSWORD", help="Password, or key passphrase"),
        click.option("--key", envvar="ORION_SSH_KEY", help="Private key path (key auth)"),
    ]
    for option in reversed(options):
        wrapper = option(wrapper)
    return wrapper


async def _with_session(ctx, credential: Credential, action):
    """Connect one session (id = host), run action(fleet, session_id), close."""
    async with FleetManager(ctx.obj["settings"]) as fleet:
        session_id = credential.host
        await fleet.connect(session_id, credential)
        return await action(fleet, session_id)


def _fmt_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%H:%M:%S")


def _fmt_optional(value: Optional[float], suffix: str = "") -> str:
    return "-" if value is None else f"{value:.0f}{suffix}"


def _sample_table(title: str) -> Table:
    table = Table(title=title)
    table.add_column("Time", style="dim")
    table.add_column("CPU", justify="right")
    table.add_column("RAM (MB)", justify="right")
    table.add_column("GPU", justify="right")
    table.add_column("GPU Temp", justify="right")
    return table


def _add_sample_row(table: Table, sample: TelemetrySample) -> None:
    table.add_row(
        _fmt_time(sample.timestamp),
        f"{sample.cpu_percent:.1f}%",
        f"{sample.ram_used_mb}/{sample.ram_total_mb}",
        _fmt_optional(sample.gpu_util, "%"),
        _fmt_optional(sample.gpu_temp_c, "C"),
    )


@click.group()
@click.version_option(version=__version__)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--debug-ssh", is_flag=True, help="Enable verbose asyncssh logging")
@click.option(
    "--store",
    type=click.Path(file_okay=False, path_type=Path),
    help="Sample store directory (default: ORION_STORE_PATH, or no persistence)",
)
@click.pass_context
def cli(ctx, debug: bool, debug_ssh: bool, store: Optional[Path]):
    """Orion Fleet - SSH control and telemetry for Jetson boards."""
    ctx.ensure_object(dict)
    settings = FleetSettings.from_env()
    if store is not None:
        settings = settings.model_copy(update={"store_path": store})
    ctx.obj["settings"] = settings
    ctx.obj["debug"] = debug

    level = "DEBUG" if debug else "INFO"
    setup_logging(level=level, debug_ssh=debug_ssh)


@cli.command()
@click.argument("host")
@click.option("--port", type=int, default=22, help="SSH port")
@click.pass_context
def probe(ctx, host: str, port: int):
    """Check whether HOST:PORT accepts TCP connections."""

    async def _probe():
        async with FleetManager(ctx.obj["settings"]) as fleet:
            return await fleet.probe(host, port)

    if run_async(_probe()):
        console.print(f"[green]{host}:{port} reachable[/]")
    else:
        console.print(f"[red]{host}:{port} unreachable[/]")
        sys.exit(1)


@cli.command("exec")
@click.argument("command")
@click.option("--timeout", type=float, help="Command timeout in seconds")
@credential_options
@click.pass_context
def exec_cmd(ctx, command: str, timeout: Optional[float], credential: Credential):
    """Run COMMAND on a device."""

    async def _exec(fleet, session_id):
        return await fleet.run(session_id, command, timeout)

    result = run_async(_with_session(ctx, credential, _exec))
    if result.stdout:
        click.echo(result.stdout, nl=not result.stdout.endswith("\n"))
    if result.stderr:
        click.echo(result.stderr, err=True, nl=not result.stderr.endswith("\n"))
    sys.exit(result.exit_status if result.exit_status >= 0 else 1)


@cli.command()
@click.option("--count", type=int, default=2, help="Number of samples")
@click.option("--interval", type=float, default=1.0, help="Seconds between samples")
@click.option("--device-id", help="Device id samples are stored under (default: host)")
@credential_options
@click.pass_context
def sample(ctx, count: int, interval: float, device_id: Optional[str], credential: Credential):
    """Take COUNT telemetry samples.

    The first sample has no previous CPU counters and reports 0% CPU.
    """

    async def _sample(fleet, session_id):
        samples = []
        for i in range(max(count, 1)):
            if i:
                await asyncio.sleep(interval)
            samples.append(await fleet.sample_once(session_id, device_id))
        return samples

    samples = run_async(_with_session(ctx, credential, _sample))
    table = _sample_table(f"Telemetry: {device_id or credential.host}")
    for s in samples:
        _add_sample_row(table, s)
    console.print(table)


@cli.command()
@click.option("--interval", type=float, help="Polling interval in seconds")
@click.option("--duration", type=float, help="Stop after this many seconds (default: until Ctrl-C)")
@click.option("--device-id", help="Device id samples are stored under (default: host)")
@credential_options
@click.pass_context
def stream(
    ctx,
    interval: Optional[float],
    duration: Optional[float],
    device_id: Optional[str],
    credential: Credential,
):
    """Stream telemetry from a device."""

    async def _stream(fleet, session_id):
        queue = fleet.subscribe()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration if duration else None
        await fleet.start_stream(session_id, interval, device_id=device_id)
        console.print(f"[bold]Streaming {session_id}[/] (Ctrl-C to stop)")
        try:
            while deadline is None or loop.time() < deadline:
                timeout = None if deadline is None else max(deadline - loop.time(), 0)
                try:
                    s = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    break
                console.print(
                    f"{_fmt_time(s.timestamp)}  cpu {s.cpu_percent:5.1f}%  "
                    f"ram {s.ram_used_mb}/{s.ram_total_mb}MB  "
                    f"gpu {_fmt_optional(s.gpu_util, '%')}  temp {_fmt_optional(s.gpu_temp_c, 'C')}"
                )
        finally:
            fleet.unsubscribe(queue)
            await fleet.stop_stream(session_id)

    try:
        run_async(_with_session(ctx, credential, _stream))
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/]")


@cli.command("power-mode")
@click.option("--set", "mode", type=int, help="Switch to this nvpmodel mode id")
@credential_options
@click.pass_context
def power_mode(ctx, mode: Optional[int], credential: Credential):
    """Show or set the nvpmodel power mode."""

    async def _power_mode(fleet, session_id):
        if mode is not None:
            await fleet.set_power_mode(session_id, mode)
        return await fleet.get_power_mode(session_id)

    current = run_async(_with_session(ctx, credential, _power_mode))
    if mode is not None:
        console.print(f"[green]Power mode set to {mode}[/]")
    console.print(f"Power mode: [bold]{current}[/]")


@cli.command()
@click.option("--device-id", help="Device id info is stored under (default: host)")
@credential_options
@click.pass_context
def sysinfo(ctx, device_id: Optional[str], credential: Credential):
    """Show device system information."""

    async def _sysinfo(fleet, session_id):
        return await fleet.fetch_system_info(session_id, device_id)

    info = run_async(_with_session(ctx, credential, _sysinfo))
    hours, rem = divmod(info.uptime_sec, 3600)
    panel = Panel(
        f"""[bold]Hostname:[/] {info.hostname}
[bold]OS:[/] {info.os}
[bold]Kernel:[/] {info.kernel}
[bold]CUDA:[/] {info.cuda or '-'}
[bold]JetPack:[/] {info.jetpack or '-'}
[bold]Uptime:[/] {hours}h {rem // 60}m""",
        title=f"System Info: {info.device_id}",
    )
    console.print(panel)


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@credential_options
@click.pass_context
def shutdown(ctx, yes: bool, credential: Credential):
    """Schedule a device shutdown."""
    if not yes:
        click.confirm(f"Shut down {credential.host}?", abort=True)

    async def _shutdown(fleet, session_id):
        return await fleet.shutdown(session_id)

    message = run_async(_with_session(ctx, credential, _shutdown))
    console.print(f"[green]{message}[/]")


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@credential_options
@click.pass_context
def reboot(ctx, yes: bool, credential: Credential):
    """Reboot a device."""
    if not yes:
        click.confirm(f"Reboot {credential.host}?", abort=True)

    async def _reboot(fleet, session_id):
        await fleet.reboot(session_id)

    run_async(_with_session(ctx, credential, _reboot))
    console.print(f"[green]Reboot requested for {credential.host}[/]")


@cli.command()
@click.argument("device_id")
@click.option("--limit", type=int, default=DEFAULT_READ_LIMIT, help="Maximum samples to show")
@click.pass_context
def history(ctx, device_id: str, limit: int):
    """Show stored telemetry samples for DEVICE_ID."""
    settings = ctx.obj["settings"]
    if settings.store_path is None:
        console.print("[red]No sample store configured (use --store or ORION_STORE_PATH)[/]")
        sys.exit(1)

    async def _history():
        async with FleetManager(settings) as fleet:
            return await fleet.get_samples(device_id, limit=limit)

    samples = run_async(_history())
    if not samples:
        console.print(f"[yellow]No samples stored for {device_id}[/]")
        return

    table = _sample_table(f"History: {device_id} ({len(samples)})")
    for s in samples:
        _add_sample_row(table, s)
    console.print(table)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8080, help="Port to listen on")
@click.pass_context
def serve(ctx, host: str, port: int):
    """Run the HTTP/WebSocket API."""
    from orion_fleet.web.server import run_server

    console.print(f"[bold green]Starting Orion Fleet API on http://{host}:{port}[/]")
    run_server(host=host, port=port, settings=ctx.obj["settings"])


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
