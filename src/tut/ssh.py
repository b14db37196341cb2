"""Assembly of the SSH command that carries every forward."""

import shlex
from dataclasses import dataclass, field

from .common.utils import bracket_host
from .config import TunnelConfig


@dataclass(frozen=True)
class SSHCommand:
    """A fully computed SSH invocation.

    Attributes:
        options: Everything between the binary and the target
        target: ``user@host``
        remote_script: Program run on the VPS by ``sh -c``
    """

    options: list[str]
    target: str
    remote_script: str = field(repr=False)

    @property
    def remote_command(self) -> str:
        """Remote command string; the remote login shell hands it to sh."""
        return "sh -c " + shlex.quote(self.remote_script)

    def argv(self, binary: str = "ssh") -> list[str]:
        return [binary, *self.options, self.target, self.remote_command]

    def render(self, binary: str = "ssh") -> str:
        """Shell-quoted command line, for display only."""
        return shlex.join(self.argv(binary))


def build_ssh_options(config: TunnelConfig) -> list[str]:
    """Compute identity, keepalive, host-key and reverse-forward options."""
    vps = config.vps
    options = [
        "-i", vps.ssh_key,
        "-p", str(vps.port),
        "-o", "BatchMode=yes",
        "-o", "ExitOnForwardFailure=yes",
        "-o", f"ServerAliveInterval={vps.server_alive_interval}",
        "-o", f"ServerAliveCountMax={vps.server_alive_count_max}",
        "-o", f"StrictHostKeyChecking={vps.strict_hostkey}",
        "-T",
    ]  # fmt: skip

    for tcp in config.tcp_forwards:
        local = f"{bracket_host(tcp.local_host)}:{tcp.local_port}"
        options += ["-R", f"0.0.0.0:{tcp.remote_port}:{local}"]

    # UDP payloads ride a loopback-only TCP forward on both ends
    for udp in config.udp_forwards:
        options += [
            "-R",
            f"127.0.0.1:{udp.wrap_tcp_port}:127.0.0.1:{udp.wrap_tcp_port}",
        ]

    return options


def build_ssh_command(config: TunnelConfig, remote_script: str) -> SSHCommand:
    """Pair the SSH options with the target and the remote script.

    Performs no I/O.
    """
    return SSHCommand(
        options=build_ssh_options(config),
        target=config.vps.target,
        remote_script=remote_script,
    )
