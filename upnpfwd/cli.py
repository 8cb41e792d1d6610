"""Command line interface for upnpfwd."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

import click
from rich.console import Console
from rich.table import Table

from upnpfwd.config import init_config, set_config
from upnpfwd.exceptions import ConfigurationError
from upnpfwd.forwarder import (
    PROTOCOL_TCP_IPV4,
    PROTOCOL_UDP_IPV4,
    ForwardPort,
    ForwardPortStatus,
    PortStatusCode,
    UPnPForwarder,
)
from upnpfwd.logging_config import get_logger
from upnpfwd.models import Config, LogLevel

logger = get_logger("cli")

PROTOCOL_NAMES = {
    "tcp": PROTOCOL_TCP_IPV4,
    "udp": PROTOCOL_UDP_IPV4,
}

STATUS_STYLES = {
    PortStatusCode.MAYBE_SUCCESS: "green",
    PortStatusCode.PROBABLE_FAILURE: "yellow",
    PortStatusCode.DEFINITE_FAILURE: "red",
}


def parse_port_spec(value: str) -> ForwardPort:
    """Parse ``name:proto:internal[:external]`` into a ForwardPort.

    The external port defaults to the internal one.
    """
    parts = value.split(":")
    if len(parts) not in (3, 4):
        msg = f"expected name:proto:internal[:external], got {value!r}"
        raise click.BadParameter(msg)

    name, proto = parts[0], parts[1].lower()
    if not name:
        msg = f"missing port name in {value!r}"
        raise click.BadParameter(msg)
    if proto not in PROTOCOL_NAMES:
        msg = f"unknown protocol {parts[1]!r} (use tcp or udp)"
        raise click.BadParameter(msg)

    try:
        internal = int(parts[2])
        external = int(parts[3]) if len(parts) == 4 else internal
        return ForwardPort(name, False, PROTOCOL_NAMES[proto], internal, external)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _parse_port_specs(ctx, param, values) -> list[ForwardPort]:
    return [parse_port_spec(v) for v in values]


class _StatusPrinter:
    """Prints forwarding outcomes as they arrive."""

    def __init__(self, console: Console):
        self.console = console
        self.statuses: dict[ForwardPort, ForwardPortStatus] = {}

    def port_forward_status(
        self, statuses: Mapping[ForwardPort, ForwardPortStatus]
    ) -> None:
        for port, status in statuses.items():
            self.statuses[port] = status
            style = STATUS_STYLES[status.code]
            self.console.print(
                f"[{style}]{port.name}[/{style}] "
                f"{port.upnp_protocol} {port.internal_port} -> {status.external_port}: "
                f"{status.reason}"
            )

    def table(self) -> Table:
        table = Table(title="Port forwarding")
        table.add_column("Name", style="cyan")
        table.add_column("Protocol", style="magenta")
        table.add_column("Internal Port", style="yellow")
        table.add_column("External Port", style="yellow")
        table.add_column("Status")
        table.add_column("Reason", style="dim")
        for port in sorted(self.statuses):
            status = self.statuses[port]
            style = STATUS_STYLES[status.code]
            table.add_row(
                port.name,
                port.upnp_protocol or "?",
                str(port.internal_port),
                str(status.external_port),
                f"[{style}]{status.code.value}[/{style}]",
                status.reason,
            )
        return table


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Configuration file path",
)
@click.option(
    "--log-level",
    type=click.Choice([level.value for level in LogLevel], case_sensitive=False),
    help="Override the configured log level",
)
@click.pass_context
def cli(ctx, config, log_level):
    """Upnpfwd - automatic UPnP port forwarding."""
    ctx.ensure_object(dict)
    try:
        config_manager = init_config(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    cfg = config_manager.config
    if log_level:
        cfg.observability.log_level = LogLevel(log_level.upper())
        set_config(cfg)
    ctx.obj["config"] = cfg


@cli.command("forward")
@click.argument("ports", nargs=-1, required=True, callback=_parse_port_specs)
@click.option(
    "--duration",
    type=float,
    default=None,
    help="Seconds to keep the ports forwarded (default: until interrupted)",
)
@click.pass_context
def forward(ctx, ports: list[ForwardPort], duration: float | None) -> None:
    """Forward PORTS (name:proto:internal[:external]) until stopped."""
    console = Console()
    cfg: Config = ctx.obj["config"]
    printer = _StatusPrinter(console)

    async def _forward() -> None:
        async with UPnPForwarder(cfg) as forwarder:
            await forwarder.on_change_public_ports(ports, printer)
            console.print(
                f"[bold]Forwarding {len(ports)} port(s)[/bold]; "
                "searching for an Internet Gateway Device..."
            )
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)

    try:
        asyncio.run(_forward())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, port mappings removed[/yellow]")
    except Exception as e:
        logger.debug("forward failed", exc_info=True)
        raise click.ClickException(str(e)) from e

    if printer.statuses:
        console.print(printer.table())
    else:
        console.print("[yellow]No Internet Gateway Device answered[/yellow]")


@cli.command("address")
@click.option(
    "--timeout",
    type=float,
    default=10.0,
    show_default=True,
    help="Seconds to wait for an Internet Gateway Device",
)
@click.pass_context
def address(ctx, timeout: float) -> None:
    """Show the external address reported by the router."""
    console = Console()
    cfg: Config = ctx.obj["config"]

    async def _query() -> tuple[list, int, int]:
        async with UPnPForwarder(cfg) as forwarder:
            if not await forwarder.wait_until_bound(timeout):
                msg = "No usable UPnP Internet Gateway Device found"
                raise click.ClickException(msg)
            detected = await forwarder.get_address() or []
            upstream = await forwarder.get_upstream_max_bit_rate()
            downstream = await forwarder.get_downstream_max_bit_rate()
            return detected, upstream, downstream

    try:
        detected, upstream, downstream = asyncio.run(_query())
    except click.ClickException:
        raise
    except Exception as e:
        logger.debug("address query failed", exc_info=True)
        raise click.ClickException(str(e)) from e

    if not detected:
        console.print("[yellow]External address:[/yellow] Not available")
    for ip in detected:
        console.print(f"[green]External address:[/green] {ip.address} ({ip.status.value})")

    def _rate(value: int) -> str:
        return "unknown" if value < 0 else f"{value} bit/s"

    console.print(f"[green]Upstream:[/green] {_rate(upstream)}")
    console.print(f"[green]Downstream:[/green] {_rate(downstream)}")


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
