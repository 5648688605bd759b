"""Tests for ProcessSupervisor using fake processes and an in-process backend."""
from __future__ import annotations

import asyncio
import json
import os
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp.test_utils import unused_port

from opencode_bridge.adapters.event_bus import EventBus
from opencode_bridge.engine.config import BridgeConfig
from opencode_bridge.engine.dispatcher import EventDispatcher
from opencode_bridge.engine.errors import (
    BinaryNotFoundError,
    BridgeError,
    ReadyTimeoutError,
    SpawnFailedError,
    StartAbortedError,
)
from opencode_bridge.engine.event_stream import ConnectionState
from opencode_bridge.engine.http_client import BackendClient
from opencode_bridge.engine.supervisor import ProcessSupervisor, build_augmented_path

from fake_backend import FakeBackend, FakeLauncher, text_part, wait_until


def _config(tmp_path, **overrides) -> BridgeConfig:
    values = dict(
        project_root=str(tmp_path),
        base_port=unused_port(),
        max_start_attempts=2,
        ready_timeout_seconds=2.0,
        ready_poll_interval_seconds=0.02,
        stop_grace_seconds=0.5,
        restart_delay_seconds=0.0,
        connect_timeout_seconds=2.0,
        reconnect_delay_seconds=0.01,
        max_reconnect_attempts=3,
        user_bin_dir=None,
    )
    values.update(overrides)
    return BridgeConfig(**values)


class Rig:
    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe_all(self.events.append)
        self.client = BackendClient(timeout=2)
        self.supervisor = ProcessSupervisor(config, self.client, EventDispatcher(self.bus), self.bus)

    def types(self) -> list[str]:
        return [e.event_type for e in self.events]

    async def close(self) -> None:
        await self.supervisor.stop()
        await self.client.close()


@pytest.mark.asyncio
async def test_start_spawns_backend_and_connects_stream(tmp_path):
    config = _config(tmp_path)
    rig = Rig(config)
    launcher = FakeLauncher(FakeBackend())
    with patch("asyncio.create_subprocess_exec", new=launcher):
        try:
            await rig.supervisor.start()

            sup = rig.supervisor
            assert sup.running and sup.ready
            assert sup.port == config.base_port
            assert sup.base_url == f"http://127.0.0.1:{config.base_port}"
            assert sup.stream.connected
            assert sup.pid == launcher.last.pid
            assert "connected" in rig.types()

            args, kwargs = launcher.calls[0]
            assert args == ("opencode", "serve", "--port", str(config.base_port))
            assert kwargs["cwd"] == str(tmp_path.resolve())
            assert kwargs["stdin"] == asyncio.subprocess.DEVNULL
            assert kwargs["stderr"] == asyncio.subprocess.PIPE
            assert "PATH" in kwargs["env"]
            assert json.loads((tmp_path / ".opencode" / "opencode.json").read_text()) == {}
        finally:
            await rig.close()
            await launcher.close()

    assert not rig.supervisor.running
    assert rig.supervisor.port == 0
    assert rig.supervisor.base_url == ""
    assert rig.supervisor.stream.state is ConnectionState.DISCONNECTED
    assert launcher.last.terminated and not launcher.last.killed
    assert "disconnected" in rig.types()


@pytest.mark.asyncio
async def test_start_is_noop_while_running(tmp_path):
    rig = Rig(_config(tmp_path))
    launcher = FakeLauncher(FakeBackend())
    with patch("asyncio.create_subprocess_exec", new=launcher):
        try:
            await rig.supervisor.start()
            await rig.supervisor.start()

            assert len(launcher.calls) == 1
        finally:
            await rig.close()
            await launcher.close()


@pytest.mark.asyncio
async def test_missing_binary_fails_without_trying_other_ports(tmp_path):
    rig = Rig(_config(tmp_path, max_start_attempts=3))
    with patch(
        "asyncio.create_subprocess_exec",
        side_effect=FileNotFoundError(2, "No such file or directory"),
    ) as mock_exec:
        with pytest.raises(BinaryNotFoundError) as excinfo:
            await rig.supervisor.start()

    assert mock_exec.call_count == 1
    assert excinfo.value.reason == "binary not found"
    assert "opencode.ai/install" in str(excinfo.value)
    assert not rig.supervisor.running
    assert rig.supervisor.base_url == ""
    await rig.close()


@pytest.mark.asyncio
async def test_missing_binary_on_real_path(tmp_path):
    rig = Rig(_config(tmp_path, command="opencode-bridge-test-no-such-binary"))

    with pytest.raises(BinaryNotFoundError):
        await rig.supervisor.start()
    await rig.close()


@pytest.mark.asyncio
async def test_early_exit_moves_on_to_next_port(tmp_path):
    config = _config(tmp_path)
    rig = Rig(config)
    launcher = FakeLauncher(FakeBackend(), crash_ports={config.base_port})
    with patch("asyncio.create_subprocess_exec", new=launcher):
        try:
            await rig.supervisor.start()

            ports = [int(args[3]) for args, _ in launcher.calls]
            assert ports == [config.base_port, config.base_port + 1]
            assert rig.supervisor.port == config.base_port + 1
            assert rig.supervisor.stream.connected
        finally:
            await rig.close()
            await launcher.close()


@pytest.mark.asyncio
async def test_every_port_exiting_raises_last_spawn_failure(tmp_path):
    config = _config(tmp_path)
    rig = Rig(config)
    launcher = FakeLauncher(
        FakeBackend(),
        crash_ports={config.base_port, config.base_port + 1},
        crash_code=3,
        crash_stderr=b"Error: address already in use\n",
    )
    with patch("asyncio.create_subprocess_exec", new=launcher):
        with pytest.raises(SpawnFailedError) as excinfo:
            await rig.supervisor.start()

    assert len(launcher.calls) == 2
    assert excinfo.value.reason == "spawn failed"
    assert excinfo.value.port == config.base_port + 1
    assert excinfo.value.exit_code == 3
    assert not rig.supervisor.running
    await rig.close()


@pytest.mark.asyncio
async def test_ready_timeout_kills_process(tmp_path):
    rig = Rig(_config(tmp_path, max_start_attempts=1, ready_timeout_seconds=0.2))
    launcher = FakeLauncher(FakeBackend(), serve=False)
    with patch("asyncio.create_subprocess_exec", new=launcher):
        with pytest.raises(ReadyTimeoutError) as excinfo:
            await rig.supervisor.start()

    assert excinfo.value.reason == "timeout"
    assert launcher.last.terminated
    assert not rig.supervisor.running
    assert rig.supervisor.port == 0
    await rig.close()


@pytest.mark.asyncio
async def test_stop_during_readiness_aborts_start(tmp_path):
    rig = Rig(_config(tmp_path, ready_timeout_seconds=5.0))
    launcher = FakeLauncher(FakeBackend(), serve=False)
    with patch("asyncio.create_subprocess_exec", new=launcher):
        start = asyncio.create_task(rig.supervisor.start())
        await wait_until(lambda: len(launcher.calls) == 1)

        await rig.supervisor.stop()

        assert start.done()
        with pytest.raises(StartAbortedError):
            await start

    assert len(launcher.calls) == 1
    assert launcher.last.terminated
    assert not rig.supervisor.running
    assert rig.supervisor.port == 0
    assert not rig.supervisor.stream.reconnect_pending
    await rig.close()


@pytest.mark.asyncio
async def test_stop_escalates_to_kill_after_grace(tmp_path):
    rig = Rig(_config(tmp_path, stop_grace_seconds=0.1))
    launcher = FakeLauncher(FakeBackend(), stubborn=True)
    with patch("asyncio.create_subprocess_exec", new=launcher):
        try:
            await rig.supervisor.start()
            proc = launcher.last

            await rig.supervisor.stop()

            assert proc.terminated
            assert proc.killed
            assert proc.returncode == -9
            assert not rig.supervisor.running
        finally:
            await rig.close()
            await launcher.close()


@pytest.mark.asyncio
async def test_stop_before_start_and_twice_is_harmless(tmp_path):
    rig = Rig(_config(tmp_path))

    await rig.supervisor.stop()
    await rig.supervisor.stop()

    assert not rig.supervisor.running
    assert not rig.supervisor.stopping
    await rig.close()


@pytest.mark.asyncio
async def test_stop_cancels_pending_reconnect_and_start_begins_fresh(tmp_path):
    config = _config(tmp_path, reconnect_delay_seconds=30)
    rig = Rig(config)
    backend = FakeBackend()
    launcher = FakeLauncher(backend)
    with patch("asyncio.create_subprocess_exec", new=launcher):
        try:
            await rig.supervisor.start()
            stream = rig.supervisor.stream
            await wait_until(lambda: backend.open_streams == 1)

            backend.drop_streams()
            await wait_until(lambda: stream.reconnect_pending)
            assert stream.reconnect_attempts == 1

            await rig.supervisor.stop()

            assert not stream.reconnect_pending
            assert stream.reconnect_attempts == 0

            await rig.supervisor.start()

            assert stream.connected
            assert stream.reconnect_attempts == 0
            assert rig.supervisor.port == config.base_port
            assert len(launcher.calls) == 2
        finally:
            await rig.close()
            await launcher.close()


@pytest.mark.asyncio
async def test_unexpected_exit_stops_reconnects_until_next_start(tmp_path):
    rig = Rig(_config(tmp_path))
    backend = FakeBackend()
    launcher = FakeLauncher(backend)
    with patch("asyncio.create_subprocess_exec", new=launcher):
        try:
            await rig.supervisor.start()
            stream = rig.supervisor.stream
            await wait_until(lambda: backend.open_streams == 1)

            launcher.last.exit(1)
            await wait_until(lambda: rig.supervisor.last_exit_code == 1)
            assert not rig.supervisor.can_reconnect()

            backend.drop_streams()
            await wait_until(lambda: not stream.connected)
            await asyncio.sleep(0.05)
            assert not stream.reconnect_pending
            assert backend.event_requests == 1

            await rig.supervisor.start()

            assert rig.supervisor.running
            assert stream.connected
            assert len(launcher.calls) == 2
        finally:
            await rig.close()
            await launcher.close()


@pytest.mark.asyncio
async def test_restart_replaces_process(tmp_path):
    rig = Rig(_config(tmp_path))
    launcher = FakeLauncher(FakeBackend())
    with patch("asyncio.create_subprocess_exec", new=launcher):
        try:
            await rig.supervisor.start()
            first = launcher.last

            await rig.supervisor.restart()

            assert first.terminated
            assert launcher.last is not first
            assert rig.supervisor.running
            assert rig.supervisor.stream.connected
        finally:
            await rig.close()
            await launcher.close()


# ── Environment and local config ──


def test_augmented_path_prepends_user_bin_once():
    sep = os.pathsep

    assert build_augmented_path("/opt/oc/bin", f"/usr/bin{sep}/bin") == f"/opt/oc/bin{sep}/usr/bin{sep}/bin"
    assert build_augmented_path("/opt/oc/bin", f"/usr/bin{sep}/opt/oc/bin") == f"/usr/bin{sep}/opt/oc/bin"
    assert build_augmented_path("/opt/oc/bin", "") == "/opt/oc/bin"
    assert build_augmented_path(None, "/usr/bin") == "/usr/bin"


def test_build_env_exports_models(tmp_path):
    config = _config(
        tmp_path,
        user_bin_dir="/opt/oc/bin",
        model="anthropic/claude-sonnet-4-5",
        plugin_model="openai/gpt-5",
    )
    env = Rig(config).supervisor.build_env()

    assert env["PATH"].split(os.pathsep)[0] == "/opt/oc/bin"
    assert env["OPENCODE_MODEL"] == "anthropic/claude-sonnet-4-5"
    assert env["OH_MY_OPENCODE_MODEL"] == "openai/gpt-5"

    config.enable_plugins = False
    with patch.dict(os.environ, {}, clear=False):
        os.environ.pop("OH_MY_OPENCODE_MODEL", None)
        env = Rig(config).supervisor.build_env()
    assert "OH_MY_OPENCODE_MODEL" not in env


def test_local_config_toggles_plugins_and_keeps_other_keys(tmp_path):
    target = tmp_path / ".opencode" / "opencode.json"
    target.parent.mkdir()
    target.write_text(json.dumps({"theme": "dark"}))
    config = _config(tmp_path, enable_plugins=False)
    sup = Rig(config).supervisor

    sup._write_local_config(tmp_path)
    assert json.loads(target.read_text()) == {"theme": "dark", "plugin": []}

    config.enable_plugins = True
    sup._write_local_config(tmp_path)
    assert json.loads(target.read_text()) == {"theme": "dark"}


# ── Model listing ──


@pytest.mark.asyncio
async def test_list_models_returns_non_empty_lines(tmp_path):
    rig = Rig(_config(tmp_path))
    mock_proc = AsyncMock()
    mock_proc.communicate.return_value = (b"anthropic/claude-sonnet-4-5\n\n openai/gpt-5 \n", b"")
    mock_proc.returncode = 0

    with patch("asyncio.create_subprocess_exec", return_value=mock_proc) as mock_exec:
        models = await rig.supervisor.list_models()

    assert models == ["anthropic/claude-sonnet-4-5", "openai/gpt-5"]
    args, _ = mock_exec.call_args
    assert args == ("opencode", "models")


@pytest.mark.asyncio
async def test_list_models_failure_carries_stderr(tmp_path):
    rig = Rig(_config(tmp_path))
    mock_proc = AsyncMock()
    mock_proc.communicate.return_value = (b"", b"not logged in\n")
    mock_proc.returncode = 1

    with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
        with pytest.raises(BridgeError, match="Failed to list models: not logged in"):
            await rig.supervisor.list_models()


@pytest.mark.asyncio
async def test_stop_during_reconnect_attempt_then_start_stays_connected(tmp_path):
    rig = Rig(_config(tmp_path))
    backend = FakeBackend()
    launcher = FakeLauncher(backend)
    with patch("asyncio.create_subprocess_exec", new=launcher):
        try:
            await rig.supervisor.start()
            stream = rig.supervisor.stream
            await wait_until(lambda: backend.open_streams == 1)

            backend.stall_streams()
            backend.drop_streams()
            await wait_until(lambda: backend.stalled_requests == 1)
            assert stream.state is ConnectionState.CONNECTING

            await rig.supervisor.stop()

            assert not stream.reconnect_pending
            assert not [
                task for task in asyncio.all_tasks()
                if getattr(task.get_coro(), "__qualname__", "").endswith("_reconnect_later")
            ]

            backend.release_stalls()
            await rig.supervisor.start()
            await asyncio.sleep(0.05)

            assert stream.connected
            backend.push(text_part("p1", "Hello", delta="Hello"))
            await wait_until(lambda: "text.delta" in rig.types())
            assert stream.connected
        finally:
            await rig.close()
            await launcher.close()


@pytest.mark.asyncio
async def test_exhausted_reconnects_reset_on_stop_and_start(tmp_path):
    rig = Rig(_config(tmp_path, max_reconnect_attempts=5))
    backend = FakeBackend()
    launcher = FakeLauncher(backend)
    with patch("asyncio.create_subprocess_exec", new=launcher):
        try:
            await rig.supervisor.start()
            stream = rig.supervisor.stream
            await wait_until(lambda: backend.open_streams == 1)

            backend.event_status = 503
            backend.drop_streams()
            await wait_until(lambda: backend.event_requests == 6)
            await wait_until(lambda: not stream.reconnect_pending)
            await asyncio.sleep(0.05)

            assert stream.reconnect_attempts == 5
            assert backend.event_requests == 6
            assert rig.types().count("error") == 6
            assert not stream.connected
            assert rig.supervisor.running

            await rig.supervisor.stop()
            assert stream.reconnect_attempts == 0

            backend.event_status = 200
            await rig.supervisor.start()

            assert stream.connected
            assert stream.reconnect_attempts == 0
            assert backend.event_requests == 7
        finally:
            await rig.close()
            await launcher.close()
