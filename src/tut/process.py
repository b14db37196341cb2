"""Lifecycle management for the external processes the tunnel spawns."""

import asyncio
import shutil
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import IO

from .common.exceptions import ProcessError, ResourceCleanupError
from .common.logging import get_logger

logger = get_logger(__name__)

DEFAULT_GRACE_PERIOD = 2.0


def remove_path(path: Path) -> None:
    """Remove a file, FIFO or directory tree.

    A path that no longer exists counts as removed.

    Raises:
        ResourceCleanupError: If the path exists but cannot be removed
    """
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        return
    except OSError as e:
        raise ResourceCleanupError(f"Failed to remove {path}: {e}") from e


class ManagedProcess:
    """An external process owned by the component that spawned it.

    A watcher task awaits the process exit as soon as it is spawned, so the
    exit status is always collected. ``stop()`` sends SIGTERM, waits up to the
    grace period, then sends SIGKILL. Paths attached with ``attach_path()``
    are removed once the process has fully exited, never before.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        tag: str,
        cleanup_paths: Sequence[Path] | None = None,
        log_file: IO[bytes] | None = None,
    ):
        self._process = process
        self.tag = tag
        self.cleanup_paths: list[Path] = list(cleanup_paths or [])
        self._log_file = log_file
        self._stop_task: asyncio.Task[int] | None = None
        self._waiter: asyncio.Task[int] = asyncio.ensure_future(process.wait())

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        tag: str,
        log_path: Path | None = None,
    ) -> "ManagedProcess":
        """Start a process and wrap it.

        Args:
            argv: Program and arguments
            tag: Symbolic name used in log lines
            log_path: File receiving stdout and stderr in append mode;
                the parent's streams are inherited when omitted

        Raises:
            ProcessError: If the log file cannot be opened or the spawn fails
        """
        log_file: IO[bytes] | None = None
        if log_path is not None:
            try:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = open(log_path, "ab")  # noqa: SIM115
            except OSError as e:
                raise ProcessError(f"Cannot open log file {log_path}: {e}") from e

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=log_file,
            )
        except OSError as e:
            if log_file is not None:
                log_file.close()
            raise ProcessError(f"Failed to start {tag}: {e}") from e

        logger.debug("Process started", tag=tag, pid=process.pid, argv=list(argv))
        return cls(process, tag, log_file=log_file)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def is_running(self) -> bool:
        """Check if the process has not exited yet."""
        return not self._waiter.done()

    @property
    def stopped(self) -> bool:
        return self._stop_task is not None

    def attach_path(self, path: Path) -> None:
        """Make this process responsible for deleting ``path`` after exit."""
        self.cleanup_paths.append(path)

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await asyncio.shield(self._waiter)

    async def stop(self, grace: float = DEFAULT_GRACE_PERIOD) -> int | None:
        """Stop the process: SIGTERM, then SIGKILL after ``grace`` seconds.

        The termination sequence runs in its own task, so cancelling the
        caller never leaves the process half-stopped. A later call while that
        task is still running joins it and force-kills the process if it is
        not gone within its own ``grace``. Calling stop after the sequence
        has completed is a no-op.

        Returns:
            The exit code, or None when the process was already stopped
        """
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._terminate(grace))
        elif self._stop_task.done():
            return None
        else:
            logger.debug("Joining pending stop", tag=self.tag, pid=self.pid)
            try:
                return await asyncio.wait_for(
                    asyncio.shield(self._stop_task), timeout=grace
                )
            except TimeoutError:
                self._signal("kill")
        return await asyncio.shield(self._stop_task)

    async def _terminate(self, grace: float) -> int:
        if self.is_running():
            logger.debug("Stopping process", tag=self.tag, pid=self.pid)
            self._signal("terminate")
            try:
                await asyncio.wait_for(asyncio.shield(self._waiter), timeout=grace)
            except TimeoutError:
                logger.warning(
                    "Process did not terminate gracefully, force killing",
                    tag=self.tag,
                    pid=self.pid,
                    grace=grace,
                )
                self._signal("kill")
                await asyncio.shield(self._waiter)

        returncode = self._waiter.result()
        self._release()
        logger.info(
            "Process stopped", tag=self.tag, pid=self.pid, returncode=returncode
        )
        return returncode

    def _signal(self, action: str) -> None:
        try:
            getattr(self._process, action)()
        except ProcessLookupError:
            # Exited between the liveness check and the signal
            pass

    def _release(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

        for path in self.cleanup_paths:
            try:
                remove_path(path)
                logger.debug("Removed path", tag=self.tag, path=str(path))
            except ResourceCleanupError as e:
                logger.warning("Cleanup failed", tag=self.tag, error=str(e))
        self.cleanup_paths = []


class ProcessRegistry:
    """Explicit registry of the processes a supervisor is responsible for.

    Members are stopped in reverse registration order.
    """

    def __init__(self, grace: float = DEFAULT_GRACE_PERIOD):
        self.grace = grace
        self._processes: list[ManagedProcess] = []

    def add(self, process: ManagedProcess) -> ManagedProcess:
        self._processes.append(process)
        return process

    def __len__(self) -> int:
        return len(self._processes)

    def __iter__(self) -> Iterator[ManagedProcess]:
        return iter(list(self._processes))

    def running(self) -> list[ManagedProcess]:
        return [p for p in self._processes if p.is_running()]

    def dead(self) -> list[ManagedProcess]:
        """Processes that exited without being asked to stop."""
        return [p for p in self._processes if not p.is_running() and not p.stopped]

    async def stop_all(self) -> None:
        """Stop every registered process, newest first, and forget them."""
        while self._processes:
            process = self._processes.pop()
            try:
                await process.stop(self.grace)
            except Exception as e:
                logger.error("Error stopping process", tag=process.tag, error=str(e))

