"""Local UDP<->TCP bridges built from two relay processes and a FIFO.

For every UDP forward one relay listens for TCP connections on the loopback
wrap port (the far end of the SSH reverse-forward) and splices them into a
named pipe, while a second relay splices the same pipe into a UDP socket
talking to the local service.
"""

import os
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .common.exceptions import (
    BridgeHealthError,
    FatalSetupError,
    FIFOCreationError,
    ProcessError,
    ResourceCleanupError,
)
from .common.logging import get_logger
from .common.utils import bracket_host
from .config import UDPForward
from .probe import wait_until_listening
from .process import ManagedProcess, ProcessRegistry, remove_path

logger = get_logger(__name__)

HEALTH_CHECK_TIMEOUT = 3.0
FIFO_DIR_PREFIX = "ssh-udp-tunnel-"


def create_fifo(path: Path) -> Path:
    """Create a fresh owner-only named pipe at ``path``.

    Raises:
        FIFOCreationError: If the platform or filesystem rejects the pipe
    """
    if not hasattr(os, "mkfifo"):
        raise FIFOCreationError("FIFO creation is not supported on this platform")
    try:
        path.unlink(missing_ok=True)
        os.mkfifo(path, 0o600)
    except OSError as e:
        raise FIFOCreationError(f"failed to create FIFO {path}: {e}") from e
    return path


@dataclass
class Bridge:
    """The two relays and the pipe serving one UDP forward."""

    forward: UDPForward
    fifo: Path
    tcp_relay: ManagedProcess
    udp_relay: ManagedProcess

    @property
    def processes(self) -> tuple[ManagedProcess, ManagedProcess]:
        return self.tcp_relay, self.udp_relay


class LocalBridgeManager:
    """Creates, tracks and tears down every local bridge of one run."""

    def __init__(
        self,
        udp_forwards: Sequence[UDPForward],
        registry: ProcessRegistry,
        relay_binary: str = "socat",
        log_dir: str | Path = "/var/log",
        idle_timeout: int | None = None,
        fifo_root: str | Path | None = None,
    ):
        self.udp_forwards = list(udp_forwards)
        self.registry = registry
        self.relay_binary = relay_binary
        self.log_dir = Path(log_dir)
        self.idle_timeout = idle_timeout
        self._fifo_root = None if fifo_root is None else str(fifo_root)
        self._fifo_dir: Path | None = None
        self.bridges: list[Bridge] = []

    @property
    def fifo_dir(self) -> Path | None:
        return self._fifo_dir

    def _relay_argv(self, *endpoints: str) -> list[str]:
        argv = [self.relay_binary]
        if self.idle_timeout is not None:
            argv += ["-T", str(self.idle_timeout)]
        return argv + list(endpoints)

    def _ensure_fifo_dir(self) -> Path:
        if self._fifo_dir is None:
            try:
                self._fifo_dir = Path(
                    tempfile.mkdtemp(prefix=FIFO_DIR_PREFIX, dir=self._fifo_root)
                )
            except OSError as e:
                raise FatalSetupError(f"failed to create FIFO directory: {e}") from e
            logger.debug("Created FIFO directory", path=str(self._fifo_dir))
        return self._fifo_dir

    async def start(self) -> list[Bridge]:
        """Start one bridge per UDP forward.

        Everything this run created is torn down again if any step fails.

        Raises:
            FatalSetupError: If a FIFO or a relay process cannot be created
        """
        if not self.udp_forwards:
            logger.info("No udp_forwards configured; skipping local UDP wrappers")
            return []

        try:
            for forward in self.udp_forwards:
                self.bridges.append(await self._start_bridge(forward))
        except ProcessError as e:
            await self.stop()
            raise FatalSetupError(f"Failed to start local wrappers: {e}") from e
        except BaseException:
            await self.stop()
            raise
        return list(self.bridges)

    async def _start_bridge(self, forward: UDPForward) -> Bridge:
        public = forward.udp_public_port
        fifo = create_fifo(self._ensure_fifo_dir() / f"pipe-{public}")

        try:
            tcp_relay = await ManagedProcess.spawn(
                self._relay_argv(
                    f"TCP-LISTEN:{forward.wrap_tcp_port},"
                    "bind=127.0.0.1,reuseaddr,fork",
                    f"PIPE:{fifo}",
                ),
                tag=f"local-socat-tcp-{public}",
                log_path=self.log_dir / f"socat-local-tcp-{public}.log",
            )
        except BaseException:
            fifo.unlink(missing_ok=True)
            raise
        # Registered first so it is stopped last and the pipe outlives both relays
        tcp_relay.attach_path(fifo)
        self.registry.add(tcp_relay)

        udp_relay = await ManagedProcess.spawn(
            self._relay_argv(
                f"PIPE:{fifo}",
                f"UDP:{bracket_host(forward.local_host)}:{forward.local_udp_port}",
            ),
            tag=f"local-socat-udp-{public}",
            log_path=self.log_dir / f"socat-local-udp-{public}.log",
        )
        self.registry.add(udp_relay)

        logger.info(
            "Local FIFO wrapper started",
            pids=f"{tcp_relay.pid}/{udp_relay.pid}",
            udp=f"{forward.local_host}:{forward.local_udp_port}",
            wrap_tcp_port=forward.wrap_tcp_port,
            udp_public_port=public,
        )
        return Bridge(forward, fifo, tcp_relay, udp_relay)

    async def assert_healthy(self, max_wait: float = HEALTH_CHECK_TIMEOUT) -> None:
        """Check that every wrap port accepts TCP connections.

        Raises:
            BridgeHealthError: For the first wrap port that never came up
        """
        for forward in self.udp_forwards:
            if not await wait_until_listening(forward.wrap_tcp_port, max_wait):
                raise BridgeHealthError(
                    "local socat not listening for "
                    f"udp_public_port={forward.udp_public_port} "
                    f"wrap_tcp_port={forward.wrap_tcp_port}: "
                    f"port not listening: 127.0.0.1:{forward.wrap_tcp_port}"
                )
        if self.udp_forwards:
            logger.info(
                "Local listener health-check OK", bridges=len(self.udp_forwards)
            )

    def dead_relays(self) -> list[ManagedProcess]:
        """Relays that exited on their own."""
        return self.registry.dead()

    async def stop(self) -> None:
        """Stop every relay, then remove the FIFO directory. Idempotent."""
        await self.registry.stop_all()
        self.bridges = []

        if self._fifo_dir is not None:
            try:
                remove_path(self._fifo_dir)
                logger.debug("Removed FIFO directory", path=str(self._fifo_dir))
            except ResourceCleanupError as e:
                logger.warning("Cleanup failed", error=str(e))
            self._fifo_dir = None
