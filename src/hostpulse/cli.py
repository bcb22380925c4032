"""Command-line interface for the hostpulse agent."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .agent import TelemetryAgent, run_agent
from .codec import encode_report
from .config import AgentConfig
from .errors import ConfigError, FatalConnectionError, MetadataError, SerializationError
from .models import MachineReport
from .utils import get_logger, setup_logging

app = typer.Typer(
    name="hostpulse",
    help="Host telemetry agent that streams system snapshots to a collector",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


def load_config(config_path: Optional[Path]) -> AgentConfig:
    """YAML file (if given) with HOSTPULSE_* environment overrides on top."""
    try:
        base = AgentConfig.from_yaml(str(config_path)) if config_path else None
        return AgentConfig.from_env(base)
    except (ConfigError, OSError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", "-e", help="Collector WebSocket URL"),
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Sampling interval in seconds"),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="DEBUG, INFO, WARNING, ERROR"),
):
    """Start the agent and stream reports until interrupted."""
    config = load_config(config_path)
    if endpoint:
        config.transport.endpoint_url = endpoint
    if interval is not None:
        config.sampling_interval = interval
    if log_level:
        config.log_level = log_level

    try:
        config.validate()
    except ConfigError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)

    try:
        run_agent(config)
    except FatalConnectionError as e:
        logger.error(f"Collector refused the agent: {e}")
        raise typer.Exit(2)
    except SerializationError as e:
        logger.error(f"Reports cannot be serialized: {e}")
        raise typer.Exit(3)
    except MetadataError as e:
        logger.error(str(e))
        raise typer.Exit(4)


@app.command()
def snapshot(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    as_json: bool = typer.Option(False, "--json", help="Print the wire JSON instead of a table"),
):
    """Collect one report and print it."""
    config = load_config(config_path)
    setup_logging("WARNING")

    try:
        report = asyncio.run(TelemetryAgent(config).snapshot())
    except MetadataError as e:
        logger.error(str(e))
        raise typer.Exit(4)

    if as_json:
        console.print_json(encode_report(report, agent_id=config.agent_id))
        return

    _print_report(report)


@app.command("init-config")
def init_config(
    output: Path = typer.Argument(Path("hostpulse.yaml"), help="Where to write the config"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
):
    """Write the default configuration as YAML."""
    if output.exists() and not force:
        console.print(f"[red]{output} already exists (use --force)[/red]")
        raise typer.Exit(1)

    AgentConfig().to_yaml(str(output))
    console.print(f"[green]Config written to: {output}[/green]")


def _print_report(report: MachineReport) -> None:
    meta = report.metadata
    table = Table(title=f"{meta.hostname} ({meta.os_distro})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    gib = 1024 ** 3
    table.add_row("Virtualization", meta.virtualization)
    table.add_row("Uptime", f"{meta.uptime // 3600}h {(meta.uptime % 3600) // 60}m")
    table.add_row("CPU", f"{report.cpu.usage_total_pct:.1f}% of {report.cpu.core_count} cores")
    table.add_row("Load", " / ".join(f"{v:.2f}" for v in report.cpu.load_avg))
    table.add_row(
        "Memory",
        f"{report.memory.used_bytes / gib:.1f} / {report.memory.total_bytes / gib:.1f} GiB",
    )
    table.add_row(
        "Processes",
        f"{report.processes.total_count} total, {report.processes.running_count} running, "
        f"{report.processes.zombie_count} zombie",
    )
    table.add_row("Listening ports", ", ".join(str(p) for p in report.network.listening_ports) or "-")
    for part in report.storage.partitions:
        table.add_row(f"Disk {part.mount_point}", f"{part.usage_pct:.1f}% used")
    table.add_row("Firewall", "active" if report.security.firewall_active else "inactive")

    console.print(table)

    if report.processes.top_cpu:
        top = Table(title="Top CPU")
        top.add_column("PID", style="cyan")
        top.add_column("Name")
        top.add_column("User")
        top.add_column("CPU %", style="green")
        top.add_column("Mem MB", style="green")
        for proc in report.processes.top_cpu:
            top.add_row(str(proc.pid), proc.name, proc.user, f"{proc.cpu_usage:.1f}", f"{proc.mem_usage_mb:.1f}")
        console.print(top)


if __name__ == "__main__":
    app()
