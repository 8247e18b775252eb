from __future__ import annotations

import asyncio
import ipaddress
import logging
from collections.abc import Awaitable, Callable
from importlib import resources
from pathlib import Path

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .discovery.engine import DEFAULT_FORGET_TIMEOUT_S, DEFAULT_WAIT_S, ReconciliationEngine
from .discovery.source import CloudSource, MergedSource, ReadingSource
from .exporter.metrics import render_metrics
from .exporter.server import create_app
from .transport.base import DeviceTransport
from .transport.cloud import CloudClient, CloudConfig
from .transport.dummy import DummyTransport
from .transport.local import DEFAULT_DEVICE_PORT, LocalTransport, LocalTransportConfig
from .ui.summary import render_summary

DEFAULT_LISTEN_ADDRESS = "[::1]:12345"

app = typer.Typer(
    add_completion=False,
    invoke_without_command=True,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _configure_logging(level: str) -> None:
    numeric = logging.getLevelName(level.strip().upper())
    if not isinstance(numeric, int):
        raise typer.BadParameter(f"Unknown log level: {level!r}")
    logging.basicConfig(
        level=numeric,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def parse_listen_address(value: str) -> tuple[str, int]:
    """Parse `ip:port` or `[ipv6]:port` into a (host, port) pair."""

    text = value.strip()
    host, sep, port_txt = text.rpartition(":")
    if not sep or not host:
        raise typer.BadParameter(f"Invalid listen address (expected ip:port): {value!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise typer.BadParameter(f"IPv6 listen address must be bracketed: {value!r}")
    try:
        ipaddress.ip_address(host)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid listen address host: {value!r}") from exc
    try:
        port = int(port_txt, 10)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid listen address port: {value!r}") from exc
    if not (0 <= port <= 0xFFFF):
        raise typer.BadParameter(f"Listen port out of range 0..65535: {value!r}")
    return host, port


def _load_default_dry_run_fixture() -> Path | None:
    """Locate the bundled dry-run fixture for installed/package use."""

    try:
        resource = resources.files("kasa_exporter.fixtures").joinpath("sample_devices.json")
        if resource.is_file():
            return Path(str(resource))
    except (ModuleNotFoundError, OSError):
        pass
    # Dev fallback (source checkout) when package resources are unavailable.
    fallback = Path(__file__).resolve().parent / "fixtures" / "sample_devices.json"
    return fallback if fallback.exists() else None


def _build_transport(
    *,
    dry_run: bool,
    fixture: Path | None,
    broadcast_address: str,
    trace_file: Path | None,
) -> DeviceTransport:
    if fixture is not None or dry_run:
        fixture_path = fixture or _load_default_dry_run_fixture()
        if fixture_path is None:
            typer.echo("Fixture not found: sample_devices.json", err=True)
            raise typer.Exit(2)
        try:
            return DummyTransport(fixture_path)
        except (OSError, ValueError) as exc:
            typer.echo(f"Invalid fixture: {fixture_path} ({exc})", err=True)
            raise typer.Exit(2) from exc

    try:
        return LocalTransport(
            LocalTransportConfig(
                broadcast_host=broadcast_address,
                port=DEFAULT_DEVICE_PORT,
                trace_path=trace_file,
            )
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _build_engine(
    transport: DeviceTransport,
    *,
    discovery_timeout: float,
    forget_timeout: float,
) -> ReconciliationEngine:
    try:
        engine = ReconciliationEngine(
            transport,
            wait_s=discovery_timeout,
            forget_timeout_s=forget_timeout,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if isinstance(transport, DummyTransport):
        for endpoint in transport.seed_endpoints:
            engine.cache.touch(endpoint)
    return engine


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Print version and exit.",
        is_eager=True,
    ),
    log_level: str = typer.Option(  # noqa: B008
        "info",
        "--log-level",
        envvar="KASA_EXPORTER_LOG_LEVEL",
        help="Logging level (debug, info, warning, error).",
    ),
) -> None:
    if version:
        typer.echo(f"kasa-exporter {__version__}")
        raise typer.Exit(0)
    _configure_logging(log_level)


@app.command()
def serve(
    listen_address: str = typer.Option(  # noqa: B008
        DEFAULT_LISTEN_ADDRESS,
        "--web.listen-address",
        envvar="KASA_EXPORTER_LISTEN_ADDRESS",
        help="Address on which to expose metrics and web interface.",
    ),
    broadcast_address: str = typer.Option(  # noqa: B008
        "255.255.255.255",
        "--broadcast-address",
        help="Broadcast address used for device discovery.",
    ),
    discovery_timeout: float = typer.Option(  # noqa: B008
        DEFAULT_WAIT_S,
        "--discovery-timeout",
        help="Seconds to collect broadcast replies and to wait for each unicast recheck.",
    ),
    forget_timeout: float = typer.Option(  # noqa: B008
        DEFAULT_FORGET_TIMEOUT_S,
        "--forget-timeout",
        help="Seconds after which an unreachable device is forgotten.",
    ),
    cloud_username: str | None = typer.Option(  # noqa: B008
        None,
        "--cloud-username",
        envvar="KASA_CLOUD_USERNAME",
        help="Also read devices through the TP-Link cloud relay with this account.",
    ),
    cloud_password: str | None = typer.Option(  # noqa: B008
        None,
        "--cloud-password",
        envvar="KASA_CLOUD_PASSWORD",
        help="Password for --cloud-username.",
    ),
    no_local: bool = typer.Option(  # noqa: B008
        False,
        "--no-local",
        help="Disable local network discovery (cloud relay only).",
    ),
    dry_run: bool = typer.Option(  # noqa: B008
        False,
        "--dry-run",
        help="Serve readings from the bundled fixture (no device I/O).",
    ),
    fixture: Path | None = typer.Option(  # noqa: B008
        None,
        "--fixture",
        help="Serve readings from this fixture JSON instead of the network.",
    ),
    trace_file: Path | None = typer.Option(  # noqa: B008
        None,
        "--trace-file",
        envvar="KASA_EXPORTER_TRACE_PATH",
        help="Write a device request/response trace log to this file.",
    ),
) -> None:
    """Serve OpenMetrics for discovered devices on GET /metrics."""

    host, port = parse_listen_address(listen_address)
    if no_local and not cloud_username:
        typer.echo("--no-local requires --cloud-username.", err=True)
        raise typer.Exit(2)

    sources: list[ReadingSource] = []
    shutdown_callbacks: list[Callable[[], Awaitable[None]]] = []
    if not no_local:
        transport = _build_transport(
            dry_run=dry_run,
            fixture=fixture,
            broadcast_address=broadcast_address,
            trace_file=trace_file,
        )
        sources.append(
            _build_engine(
                transport,
                discovery_timeout=discovery_timeout,
                forget_timeout=forget_timeout,
            )
        )
    if cloud_username:
        if not cloud_password:
            typer.echo("--cloud-password is required with --cloud-username.", err=True)
            raise typer.Exit(2)
        client = CloudClient(CloudConfig(username=cloud_username, password=cloud_password))
        sources.append(CloudSource(client))
        shutdown_callbacks.append(client.aclose)

    source: ReadingSource = sources[0] if len(sources) == 1 else MergedSource(*sources)
    web_app = create_app(source, on_shutdown=shutdown_callbacks)

    logging.getLogger(__name__).info("Listening on %s", listen_address)
    uvicorn.run(
        web_app,
        host=host,
        port=port,
        log_config=None,
        access_log=False,
    )


@app.command()
def scan(
    broadcast_address: str = typer.Option(  # noqa: B008
        "255.255.255.255",
        "--broadcast-address",
        help="Broadcast address used for device discovery.",
    ),
    discovery_timeout: float = typer.Option(  # noqa: B008
        DEFAULT_WAIT_S,
        "--discovery-timeout",
        help="Seconds to collect broadcast replies.",
    ),
    dry_run: bool = typer.Option(  # noqa: B008
        False,
        "--dry-run",
        help="Replay the bundled fixture using DummyTransport (no device I/O).",
    ),
    fixture: Path | None = typer.Option(  # noqa: B008
        None,
        "--fixture",
        help="Replay this fixture JSON using DummyTransport.",
    ),
    trace_file: Path | None = typer.Option(  # noqa: B008
        None,
        "--trace-file",
        envvar="KASA_EXPORTER_TRACE_PATH",
        help="Write a device request/response trace log to this file.",
    ),
) -> None:
    """Run one discovery cycle and print the metrics it would expose."""

    transport = _build_transport(
        dry_run=dry_run,
        fixture=fixture,
        broadcast_address=broadcast_address,
        trace_file=trace_file,
    )
    engine = _build_engine(
        transport,
        discovery_timeout=discovery_timeout,
        forget_timeout=DEFAULT_FORGET_TIMEOUT_S,
    )
    readings = asyncio.run(engine.run())

    # Summary to stderr; keep stdout stable for scripting (exposition text only).
    render_summary(Console(stderr=True), readings, report=engine.last_report)
    typer.echo(render_metrics(readings).decode("utf-8"), nl=False)
