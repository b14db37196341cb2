"""
tut command line entry point.

Usage:
    tut run    [--config PATH]            Keep the tunnel up until interrupted
    tut check  [--config PATH]            Validate config and local dependencies
    tut render [--config PATH] [--script] Print the SSH command or remote script
"""

import asyncio
from typing import Annotated, NoReturn

import typer

from .common.exceptions import TunnelError
from .common.logging import setup_logging
from .config import DEFAULT_CONFIG_PATH, TunnelConfig, load_config
from .supervisor import Supervisor, run_supervisor

app = typer.Typer(
    name="tut",
    help="Expose TCP and UDP services through an SSH reverse tunnel",
    no_args_is_help=True,
)

ConfigOption = Annotated[
    str,
    typer.Option("--config", "-c", help="Path to config file", envvar="TUT_CONFIG"),
]


def _fail(message: str) -> NoReturn:
    typer.echo(f"ERROR: {message}", err=True)
    raise typer.Exit(code=1)


def _load(config_path: str) -> TunnelConfig:
    try:
        return load_config(config_path)
    except TunnelError as e:
        _fail(str(e))


@app.callback()
def main(
    log_level: Annotated[
        str, typer.Option("--log-level", "-l", help="DEBUG, INFO, WARNING or ERROR")
    ] = "INFO",
    json_logs: Annotated[
        bool, typer.Option("--json-logs", help="Emit JSON log lines")
    ] = False,
    log_file: Annotated[
        str | None, typer.Option("--log-file", help="Also append logs to this file")
    ] = None,
) -> None:
    """TCP/UDP tunnel over SSH."""
    setup_logging(level=log_level, json_format=json_logs, log_file=log_file)


@app.command()
def run(config: ConfigOption = DEFAULT_CONFIG_PATH) -> None:
    """Start the local bridges and keep the SSH tunnel up until interrupted."""
    tunnel_config = _load(config)
    try:
        code = asyncio.run(run_supervisor(tunnel_config))
    except TunnelError as e:
        _fail(str(e))
    raise typer.Exit(code=code)


@app.command()
def check(config: ConfigOption = DEFAULT_CONFIG_PATH) -> None:
    """Validate the config file and the local environment."""
    tunnel_config = _load(config)
    supervisor = Supervisor(tunnel_config)
    try:
        supervisor.check_environment()
    except TunnelError as e:
        _fail(str(e))

    typer.echo(f"config:       {config}")
    typer.echo(f"target:       {tunnel_config.vps.target}:{tunnel_config.vps.port}")
    typer.echo(f"ssh:          {supervisor.ssh_binary}")
    if tunnel_config.udp_forwards:
        typer.echo(f"socat:        {supervisor.relay_binary}")
    for tcp in tunnel_config.tcp_forwards:
        typer.echo(
            f"tcp forward:  :{tcp.remote_port} -> {tcp.local_host}:{tcp.local_port}"
        )
    for udp in tunnel_config.udp_forwards:
        typer.echo(
            f"udp forward:  :{udp.udp_public_port}/udp -> "
            f"{udp.local_host}:{udp.local_udp_port} (wrap tcp {udp.wrap_tcp_port})"
        )
    typer.echo("OK")


@app.command()
def render(
    config: ConfigOption = DEFAULT_CONFIG_PATH,
    script: Annotated[
        bool, typer.Option("--script", help="Print only the remote script")
    ] = False,
) -> None:
    """Print the SSH command line without running it."""
    supervisor = Supervisor(_load(config))
    command = supervisor.build_command()
    if script:
        typer.echo(command.remote_script, nl=False)
    else:
        typer.echo(command.render(supervisor.ssh_binary))


if __name__ == "__main__":
    app()
