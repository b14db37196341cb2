"""Generation of the shell program the SSH session runs on the VPS.

The script mirrors the local bridges: for every UDP forward it listens on
the public UDP port, splices the datagrams through a FIFO into a TCP
connection to the SSH reverse-forward, and then watches the relays. When any
relay dies the script exits non-zero, which ends the SSH session and lets the
local supervisor rebuild everything.
"""

import shlex
from collections.abc import Sequence

from .config import UDPForward

REMOTE_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
WATCHDOG_INTERVAL = 5
IDLE_SLEEP = 3600


class Raw(str):
    """A shell word emitted verbatim, e.g. one that expands a variable."""


class ShellScript:
    """Builder for a POSIX shell program.

    Commands are given as word lists; every word that is not ``Raw`` goes
    through ``shlex.quote``, so interpolated hosts, ports and paths are
    escaped in exactly one place.
    """

    def __init__(self) -> None:
        self._statements: list[str] = []

    @staticmethod
    def word(value: object) -> str:
        if isinstance(value, Raw):
            return str(value)
        return shlex.quote(str(value))

    def command(
        self, *words: object, redirect: str = "", background: bool = False
    ) -> "ShellScript":
        """Append a simple command built from ``words``."""
        statement = " ".join(self.word(w) for w in words)
        if redirect:
            statement += f" {redirect}"
        if background:
            statement += " &"
        self._statements.append(statement)
        return self

    def assign(self, name: str, value: object) -> "ShellScript":
        self._statements.append(f"{name}={self.word(value)}")
        return self

    def raw(self, statement: str) -> "ShellScript":
        """Append a statement that needs shell syntax beyond a simple command."""
        self._statements.append(statement)
        return self

    @property
    def statements(self) -> list[str]:
        return list(self._statements)

    def render(self) -> str:
        return "\n".join(self._statements) + "\n"


def _fifo(public_port: int) -> Raw:
    return Raw(f'"$tmpdir"/pipe-{int(public_port)}')


def _log_redirect(name: str) -> str:
    return f'>>"$logdir"/{shlex.quote(name)} 2>&1'


def _start_relay(
    script: ShellScript,
    endpoints: Sequence[object],
    log_name: str,
    idle_timeout: int | None,
) -> None:
    words: list[object] = [Raw('"$SOCAT_BIN"')]
    if idle_timeout is not None:
        words += ["-T", int(idle_timeout)]
    words += list(endpoints)
    script.command(*words, redirect=_log_redirect(log_name), background=True)
    script.raw('pids="$pids $!"')


def build_remote_script(
    udp_forwards: Sequence[UDPForward],
    log_dir: str = "/var/log",
    idle_timeout: int | None = None,
    watchdog_interval: int = WATCHDOG_INTERVAL,
) -> str:
    """Build the remote bootstrap script for the given UDP forwards.

    Args:
        udp_forwards: UDP forwards to mirror on the VPS
        log_dir: Preferred directory for relay logs on the VPS; the temporary
            directory is used instead when it is not writable
        idle_timeout: Optional socat ``-T`` inactivity timeout
        watchdog_interval: Seconds between relay liveness checks

    Returns:
        Shell program text
    """
    script = ShellScript()
    script.raw("set -eu")
    script.raw(f"export PATH={REMOTE_PATH}:$PATH")
    script.raw('SOCAT_BIN="$(command -v socat || true)"')
    script.raw(
        'if [ -z "$SOCAT_BIN" ]; then '
        'echo "ERROR: socat not found on VPS. PATH=$PATH" >&2; exit 1; fi'
    )

    if not udp_forwards:
        # Only the TCP reverse-forwards need the session to stay open
        script.raw(f"while true; do sleep {IDLE_SLEEP}; done")
        return script.render()

    script.raw('tmpdir="$(mktemp -d "${TMPDIR:-/tmp}/ssh-udp-tunnel.XXXXXX")"')
    script.assign("pids", "")
    script.assign("cleaned", 0)
    script.raw(
        "cleanup() { "
        'if [ "$cleaned" -eq 1 ]; then return 0; fi; cleaned=1; '
        'for p in $pids; do kill "$p" 2>/dev/null || true; done; '
        'rm -rf "$tmpdir"; }'
    )
    script.raw("trap cleanup EXIT")
    script.raw("trap 'exit 129' HUP")
    script.raw("trap 'exit 130' INT")
    script.raw("trap 'exit 143' TERM")
    script.assign("logdir", log_dir)
    script.raw(
        'if ! { mkdir -p "$logdir" && [ -w "$logdir" ]; } 2>/dev/null; '
        'then logdir="$tmpdir"; fi'
    )

    for forward in udp_forwards:
        public = forward.udp_public_port
        fifo = _fifo(public)
        # A stale listener from an earlier session would block the bind
        script.raw(
            "if command -v fuser >/dev/null 2>&1; then "
            f"fuser -k {int(public)}/udp >/dev/null 2>&1 || true; fi"
        )
        script.command("mkfifo", "-m", "600", fifo)
        _start_relay(
            script,
            [f"UDP-LISTEN:{public},bind=0.0.0.0,reuseaddr,fork", Raw("PIPE:" + fifo)],
            f"socat-udp-{public}.log",
            idle_timeout,
        )
        _start_relay(
            script,
            [Raw("PIPE:" + fifo), f"TCP:127.0.0.1:{forward.wrap_tcp_port}"],
            f"socat-tcp-{public}.log",
            idle_timeout,
        )

    script.raw(
        "while true; do "
        'for p in $pids; do if ! kill -0 "$p" 2>/dev/null; then '
        'echo "Child process $p died; exiting to reconnect" >&2; exit 1; fi; done; '
        f"sleep {int(watchdog_interval)}; done"
    )
    return script.render()
