"""Top-level control loop: bridges, SSH session, reconnects and shutdown."""

import asyncio
import signal
from collections.abc import Awaitable
from enum import Enum
from typing import TypeVar

from .bridge import HEALTH_CHECK_TIMEOUT, LocalBridgeManager
from .common.exceptions import ProcessError, SessionError
from .common.logging import get_logger, session_context
from .common.utils import require_binary, require_readable_file
from .config import TunnelConfig
from .process import DEFAULT_GRACE_PERIOD, ManagedProcess, ProcessRegistry
from .remote_script import build_remote_script
from .ssh import SSHCommand, build_ssh_command

logger = get_logger(__name__)

T = TypeVar("T")


class SupervisorState(str, Enum):
    """Supervisor lifecycle states."""

    INITIALIZING = "initializing"
    BRIDGES_UP = "bridges_up"
    SESSION_RUNNING = "session_running"
    RECONNECT_WAIT = "reconnect_wait"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Supervisor:
    """Keeps the SSH tunnel up until cancelled.

    Local bridges are built and health-checked once; the SSH session is then
    relaunched forever, ``reconnect_delay_seconds`` after each exit. At most
    one session is alive at a time. ``cancel()`` interrupts whatever the loop
    is waiting for and leads straight to teardown.
    """

    def __init__(
        self,
        config: TunnelConfig,
        ssh_binary: str = "ssh",
        relay_binary: str = "socat",
        grace: float = DEFAULT_GRACE_PERIOD,
        health_timeout: float = HEALTH_CHECK_TIMEOUT,
        registry: ProcessRegistry | None = None,
    ):
        self.config = config
        self.ssh_binary = ssh_binary
        self.relay_binary = relay_binary
        self.grace = grace
        self.health_timeout = health_timeout
        self.registry = registry or ProcessRegistry(grace=grace)
        self.bridges = LocalBridgeManager(
            config.udp_forwards,
            self.registry,
            relay_binary=relay_binary,
            log_dir=config.log_dir,
            idle_timeout=config.relay_idle_timeout,
        )
        self.state = SupervisorState.INITIALIZING
        self.attempts = 0
        self._session: ManagedProcess | None = None
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Request shutdown. Safe to call repeatedly and from signal handlers."""
        if not self._cancelled.is_set():
            logger.info("Shutdown requested", state=self.state.value)
        self._cancelled.set()

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to ``cancel()``."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.cancel)
            except NotImplementedError:
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.cancel))

    def _set_state(self, state: SupervisorState) -> None:
        logger.debug("State change", old=self.state.value, new=state.value)
        self.state = state

    def check_environment(self) -> None:
        """Verify binaries and the SSH key before anything is started.

        Raises:
            FatalSetupError: If a dependency is missing or the key is unreadable
        """
        self.ssh_binary = require_binary(self.ssh_binary)
        if self.config.udp_forwards:
            self.relay_binary = require_binary(self.relay_binary)
            self.bridges.relay_binary = self.relay_binary
        require_readable_file(self.config.vps.ssh_key, "SSH key")

    def build_command(self) -> SSHCommand:
        script = build_remote_script(
            self.config.udp_forwards,
            log_dir=self.config.remote_log_dir,
            idle_timeout=self.config.relay_idle_timeout,
        )
        return build_ssh_command(self.config, script)

    async def _until_cancelled(self, awaitable: Awaitable[T]) -> tuple[bool, T | None]:
        """Race ``awaitable`` against cancellation.

        Returns:
            (True, result) if it finished first, (False, None) if cancelled
        """
        task = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait(
                {task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()
        if task.done():
            return True, task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return False, None

    async def run(self) -> int:
        """Run until cancelled.

        Returns:
            0 after a requested shutdown

        Raises:
            FatalSetupError: If the bridges cannot be set up
            BridgeHealthError: If a bridge never starts listening
        """
        try:
            self._set_state(SupervisorState.INITIALIZING)
            self.check_environment()
            finished, _ = await self._until_cancelled(self.bridges.start())
            if not finished:
                return 0

            self._set_state(SupervisorState.BRIDGES_UP)
            finished, _ = await self._until_cancelled(
                self.bridges.assert_healthy(self.health_timeout)
            )
            if not finished:
                return 0

            while not self.cancelled:
                self._set_state(SupervisorState.SESSION_RUNNING)
                try:
                    await self._run_session()
                except SessionError as e:
                    if self.cancelled:
                        break
                    logger.warning(
                        "Tunnel failed", error=str(e), returncode=e.returncode
                    )
                if self.cancelled:
                    logger.info("Tunnel terminated by signal")
                    break

                self._set_state(SupervisorState.RECONNECT_WAIT)
                delay = self.config.reconnect_delay_seconds
                logger.info("Reconnecting", delay=delay, attempts=self.attempts)
                finished, _ = await self._until_cancelled(asyncio.sleep(delay))
                if not finished:
                    break
            return 0
        finally:
            await self.shutdown()

    async def _run_session(self) -> None:
        """Launch one SSH session and wait for it to end.

        Returns normally only when cancelled while the session was running.

        Raises:
            SessionError: When the session could not start or exited
        """
        dead = self.bridges.dead_relays()
        if dead:
            logger.warning(
                "Local relay exited",
                tags=[p.tag for p in dead],
                returncodes=[p.returncode for p in dead],
            )

        command = self.build_command()
        self.attempts += 1
        with session_context(attempt=self.attempts, target=command.target):
            logger.info("Starting SSH tunnel")
            try:
                self._session = await self.start_session(command)
            except ProcessError as e:
                raise SessionError(f"failed to start SSH: {e}") from e

            logger.info("SSH tunnel running", pid=self._session.pid)
            finished, returncode = await self._until_cancelled(self._session.wait())
            if not finished:
                return

            await self._stop_session()
        raise SessionError(f"ssh exited with status {returncode}", returncode)

    async def start_session(self, command: SSHCommand) -> ManagedProcess:
        """Spawn the SSH client; its output goes to our own stdout/stderr."""
        return await ManagedProcess.spawn(command.argv(self.ssh_binary), tag="ssh")

    async def _stop_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.stop(self.grace)

    async def shutdown(self) -> None:
        """Stop the SSH session, then every bridge. Idempotent."""
        if self.state == SupervisorState.STOPPED:
            return
        self._set_state(SupervisorState.SHUTTING_DOWN)
        try:
            await self._stop_session()
        finally:
            await self.bridges.stop()
            self._set_state(SupervisorState.STOPPED)
            logger.info("Shutting down gracefully")


async def run_supervisor(
    config: TunnelConfig, ssh_binary: str = "ssh", relay_binary: str = "socat"
) -> int:
    """Run a supervisor with SIGINT/SIGTERM wired to its cancellation."""
    supervisor = Supervisor(config, ssh_binary=ssh_binary, relay_binary=relay_binary)
    supervisor.install_signal_handlers()
    return await supervisor.run()
