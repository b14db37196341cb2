"""Tests for the local bridge manager."""

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from tut.bridge import LocalBridgeManager, create_fifo
from tut.common.exceptions import (
    BridgeHealthError,
    FatalSetupError,
    FIFOCreationError,
    ProcessError,
)
from tut.process import ManagedProcess, ProcessRegistry


@pytest.fixture
def fake_socat(make_executable, args_log: Path) -> Path:
    """A socat stand-in that records its arguments and idles."""
    return make_executable("socat", f'echo "$*" >> {args_log}\nexec sleep 30')


def _manager(forwards, binary: Path, tmp_path: Path, **kwargs) -> LocalBridgeManager:
    return LocalBridgeManager(
        forwards,
        ProcessRegistry(grace=1.0),
        relay_binary=str(binary),
        log_dir=tmp_path / "logs",
        fifo_root=tmp_path,
        **kwargs,
    )


class TestCreateFIFO:
    def test_creates_owner_only_fifo(self, tmp_path: Path):
        path = create_fifo(tmp_path / "pipe")

        mode = path.stat().st_mode
        assert stat.S_ISFIFO(mode)
        assert stat.S_IMODE(mode) & 0o077 == 0

    def test_replaces_existing_file(self, tmp_path: Path):
        path = tmp_path / "pipe"
        path.write_text("stale")

        create_fifo(path)

        assert stat.S_ISFIFO(path.stat().st_mode)

    def test_rejected_by_filesystem(self, tmp_path: Path):
        with patch("tut.bridge.os.mkfifo", side_effect=OSError("not supported")):
            with pytest.raises(FIFOCreationError, match="failed to create FIFO"):
                create_fifo(tmp_path / "pipe")

    def test_platform_without_fifos(self, tmp_path: Path, monkeypatch):
        monkeypatch.delattr(os, "mkfifo")
        with pytest.raises(FIFOCreationError, match="not supported"):
            create_fifo(tmp_path / "pipe")

    def test_fifo_error_is_fatal(self):
        assert issubclass(FIFOCreationError, FatalSetupError)


class TestLocalBridgeManager:
    @pytest.mark.asyncio
    async def test_no_udp_forwards_is_noop(self, tmp_path: Path, fake_socat: Path):
        manager = _manager([], fake_socat, tmp_path)

        assert await manager.start() == []
        await manager.assert_healthy(max_wait=0.1)
        assert len(manager.registry) == 0
        assert manager.fifo_dir is None
        await manager.stop()

    @pytest.mark.asyncio
    async def test_starts_two_relays_per_forward(
        self, tmp_path: Path, make_udp_forwards, fake_socat: Path, args_log: Path
    ):
        forwards = make_udp_forwards(2)
        manager = _manager(forwards, fake_socat, tmp_path)

        bridges = await manager.start()
        try:
            assert len(bridges) == 2
            assert len(manager.registry) == 4
            assert all(p.is_running() for p in manager.registry)
            assert [p.tag for p in manager.registry] == [
                "local-socat-tcp-9002",
                "local-socat-udp-9002",
                "local-socat-tcp-9003",
                "local-socat-udp-9003",
            ]

            fifo_dir = manager.fifo_dir
            assert fifo_dir is not None
            assert stat.S_IMODE(fifo_dir.stat().st_mode) == 0o700
            for bridge in bridges:
                assert stat.S_ISFIFO(bridge.fifo.stat().st_mode)
                assert bridge.fifo.parent == fifo_dir
                # Exactly one owner for each pipe
                assert bridge.tcp_relay.cleanup_paths == [bridge.fifo]
                assert bridge.udp_relay.cleanup_paths == []
        finally:
            await manager.stop()

        calls = args_log.read_text().splitlines()
        first = bridges[0]
        assert (
            f"TCP-LISTEN:{forwards[0].wrap_tcp_port},bind=127.0.0.1,reuseaddr,fork "
            f"PIPE:{first.fifo}"
        ) in calls
        assert f"PIPE:{first.fifo} UDP:127.0.0.1:8002" in calls
        assert (tmp_path / "logs" / "socat-local-tcp-9002.log").exists()
        assert (tmp_path / "logs" / "socat-local-udp-9003.log").exists()

    @pytest.mark.asyncio
    async def test_stop_reclaims_everything(
        self, tmp_path: Path, make_udp_forwards, fake_socat: Path
    ):
        manager = _manager(make_udp_forwards(2), fake_socat, tmp_path)
        bridges = await manager.start()
        fifo_dir = manager.fifo_dir
        processes = [p for b in bridges for p in b.processes]

        await manager.stop()

        assert all(not p.is_running() for p in processes)
        assert all(not b.fifo.exists() for b in bridges)
        assert fifo_dir is not None and not fifo_dir.exists()
        assert len(manager.registry) == 0

        # Second stop is a no-op
        await manager.stop()

    @pytest.mark.asyncio
    async def test_idle_timeout_is_passed(
        self, tmp_path: Path, make_udp_forwards, fake_socat: Path, args_log: Path
    ):
        manager = _manager(make_udp_forwards(1), fake_socat, tmp_path, idle_timeout=30)
        await manager.start()
        await manager.stop()

        lines = args_log.read_text().splitlines()
        assert all(line.startswith("-T 30 ") for line in lines)

    @pytest.mark.asyncio
    async def test_spawn_failure_unwinds_all_forwards(
        self, tmp_path: Path, make_udp_forwards, fake_socat: Path
    ):
        manager = _manager(make_udp_forwards(2), fake_socat, tmp_path)
        real_spawn = ManagedProcess.spawn
        started: list[ManagedProcess] = []

        async def _flaky_spawn(argv, tag, log_path=None):
            if len(started) == 3:
                raise ProcessError(f"Failed to start {tag}: boom")
            process = await real_spawn(argv, tag, log_path=log_path)
            started.append(process)
            return process

        with patch.object(ManagedProcess, "spawn", side_effect=_flaky_spawn):
            with pytest.raises(FatalSetupError, match="Failed to start local wrappers"):
                await manager.start()

        assert len(started) == 3
        assert all(not p.is_running() for p in started)
        assert len(manager.registry) == 0
        assert manager.fifo_dir is None
        assert list(tmp_path.glob("ssh-udp-tunnel-*")) == []

    @pytest.mark.asyncio
    async def test_fifo_failure_unwinds(
        self, tmp_path: Path, make_udp_forwards, fake_socat: Path
    ):
        manager = _manager(make_udp_forwards(2), fake_socat, tmp_path)
        real_mkfifo = os.mkfifo
        calls = []

        def _mkfifo(path, mode=0o666):
            calls.append(path)
            if len(calls) == 2:
                raise OSError("Operation not permitted")
            real_mkfifo(path, mode)

        with patch("tut.bridge.os.mkfifo", side_effect=_mkfifo):
            with pytest.raises(FIFOCreationError):
                await manager.start()

        assert len(manager.registry) == 0
        assert list(tmp_path.glob("ssh-udp-tunnel-*")) == []

    @pytest.mark.asyncio
    async def test_health_check_passes_when_listening(
        self, tmp_path: Path, make_udp_forwards, listening_socat: Path
    ):
        manager = _manager(make_udp_forwards(2), listening_socat, tmp_path)
        await manager.start()
        try:
            await manager.assert_healthy(max_wait=5.0)
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_health_check_fails_when_not_listening(
        self, tmp_path: Path, make_udp_forwards, fake_socat: Path
    ):
        forwards = make_udp_forwards(1)
        manager = _manager(forwards, fake_socat, tmp_path)
        await manager.start()
        try:
            with pytest.raises(BridgeHealthError, match="udp_public_port=9002"):
                await manager.assert_healthy(max_wait=0.3)
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_dead_relays(
        self, tmp_path: Path, make_executable, make_udp_forwards
    ):
        binary = make_executable(
            "socat", 'case "$1" in UDP:*|PIPE:*) exit 1;; *) exec sleep 30;; esac'
        )
        manager = _manager(make_udp_forwards(1), binary, tmp_path)
        bridges = await manager.start()
        await bridges[0].udp_relay.wait()

        assert manager.dead_relays() == [bridges[0].udp_relay]
        await manager.stop()
