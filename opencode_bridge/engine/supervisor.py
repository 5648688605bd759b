"""Lifecycle of the local backend process.

The supervisor picks a port, spawns ``<command> serve --port N`` in the
project root, polls the backend until it answers, then hands off to the
event stream client. ``stop()`` is the only cancellation primitive: it is
safe at any point, including mid-``start()``, and always leaves no
process, no connection and no pending timer behind.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections import deque
from pathlib import Path

from opencode_bridge.adapters.event_bus import EventBus
from opencode_bridge.engine.config import BridgeConfig
from opencode_bridge.engine.dispatcher import EventDispatcher
from opencode_bridge.engine.errors import (
    BinaryNotFoundError,
    BridgeError,
    LaunchError,
    ReadyTimeoutError,
    SpawnFailedError,
    StartAbortedError,
    StreamError,
)
from opencode_bridge.engine.event_stream import EventStreamClient
from opencode_bridge.engine.http_client import BackendClient

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 50


def build_augmented_path(user_bin_dir: str | None, env_path: str | None = None) -> str:
    """Return PATH with *user_bin_dir* prepended unless already present."""
    path = os.environ.get("PATH", "") if env_path is None else env_path
    if not user_bin_dir:
        return path
    bin_dir = os.path.expanduser(user_bin_dir)
    if bin_dir.startswith("~"):
        # No home directory to expand against.
        return path
    if bin_dir in path.split(os.pathsep):
        return path
    return f"{bin_dir}{os.pathsep}{path}" if path else bin_dir


class ProcessSupervisor:
    """Owns the backend process and the event stream riding on it.

    Usage:
        supervisor = ProcessSupervisor(config, client, dispatcher, bus)
        await supervisor.start()
        ...
        await supervisor.stop()
    """

    def __init__(
        self,
        config: BridgeConfig,
        client: BackendClient,
        dispatcher: EventDispatcher,
        bus: EventBus,
    ) -> None:
        self._config = config
        self._client = client
        self.stream = EventStreamClient(
            config,
            dispatcher,
            bus,
            base_url=lambda: client.base_url,
            can_reconnect=self.can_reconnect,
        )

        self._process: asyncio.subprocess.Process | None = None
        self.port = 0
        self.last_exit_code: int | None = None
        self._ready = False
        self._stopping = False
        self._stop_requested = asyncio.Event()
        self._start_lock = asyncio.Lock()
        self._exit_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

    # ── State ──

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def ready(self) -> bool:
        return self._ready and self.running

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def base_url(self) -> str:
        return self._client.base_url

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def last_exit_signal(self) -> str | None:
        code = self.last_exit_code
        if code is None or code >= 0:
            return None
        try:
            return signal.Signals(-code).name
        except ValueError:
            return str(-code)

    def can_reconnect(self) -> bool:
        """Reconnects only make sense against a live, fully started backend."""
        return self._ready and self.running and not self._stopping

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["PATH"] = build_augmented_path(self._config.user_bin_dir, env.get("PATH", ""))
        if self._config.model:
            env["OPENCODE_MODEL"] = self._config.model
        if self._config.enable_plugins and self._config.plugin_model:
            env["OH_MY_OPENCODE_MODEL"] = self._config.plugin_model
        return env

    # ── Start ──

    async def start(self) -> None:
        """Launch the backend and open the event stream.

        No-op when a process is already running. Tries one port per
        attempt; a missing binary fails immediately.

        Raises:
            BinaryNotFoundError: the executable cannot be found.
            SpawnFailedError / ReadyTimeoutError / LaunchError: the last
                attempt's failure once every port has been tried.
            StartAbortedError: ``stop()`` was called meanwhile.
        """
        async with self._start_lock:
            if self.running:
                return
            if self._process is not None:
                # Previous process died on its own; collect its watchers.
                await self._kill_process()
            self._stopping = False
            self._stop_requested = asyncio.Event()
            stop_requested = self._stop_requested
            self.stream.resume()

            last_error: LaunchError | None = None
            for port in self._config.port_candidates():
                if stop_requested.is_set():
                    raise StartAbortedError()
                try:
                    await self._start_on_port(port, stop_requested)
                    return
                except (BinaryNotFoundError, StartAbortedError):
                    raise
                except LaunchError as exc:
                    last_error = exc
                    logger.error("Backend port %d failed: %s", port, exc)

            raise last_error or LaunchError("Failed to start backend server")

    async def _start_on_port(self, port: int, stop_requested: asyncio.Event) -> None:
        self.port = port
        self._client.bind(f"http://{self._config.host}:{port}")
        cwd = self._config.project_path
        logger.info("Starting backend on port %d, cwd: %s", port, cwd)

        if self._config.write_local_config:
            self._write_local_config(cwd)

        try:
            # Argument array, no shell.
            proc = await asyncio.create_subprocess_exec(
                self._config.command, "serve", "--port", str(port),
                cwd=str(cwd),
                env=self.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            self._reset_binding()
            raise BinaryNotFoundError(self._config.command) from exc
        except OSError as exc:
            self._reset_binding()
            raise SpawnFailedError(port, f"{type(exc).__name__}: {exc}") from exc

        self._process = proc
        self.last_exit_code = None
        self._stderr_tail.clear()
        self._exit_task = asyncio.create_task(self._watch_exit(proc))
        if proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(proc.stderr))
        logger.info("Backend spawned (pid=%s)", proc.pid)

        try:
            await self._wait_until_ready(port, stop_requested)
            if stop_requested.is_set():
                raise StartAbortedError()
            try:
                await self.stream.connect()
            except StreamError as exc:
                if stop_requested.is_set():
                    raise StartAbortedError() from exc
                raise LaunchError(f"Backend on port {port}: event stream failed: {exc}") from exc
        except BaseException:
            await self._kill_process()
            self._reset_binding()
            raise

        self._ready = True
        logger.info("Backend ready on port %d", port)

    async def _wait_until_ready(self, port: int, stop_requested: asyncio.Event) -> None:
        """Poll the liveness endpoint until it answers.

        Process exit and ``stop()`` abort the wait immediately.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.ready_timeout_seconds
        stop_wait = asyncio.create_task(stop_requested.wait())
        exit_task = self._exit_task
        aborters = {stop_wait, exit_task} if exit_task is not None else {stop_wait}

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ReadyTimeoutError(port, self._config.ready_timeout_seconds)

                probe = asyncio.create_task(self._client.probe(self._config.ready_path))
                done, _ = await asyncio.wait(
                    aborters | {probe},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if probe not in done:
                    probe.cancel()
                    await asyncio.wait({probe})
                self._raise_if_aborted(port, stop_wait, exit_task)
                if probe in done and probe.result():
                    return

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ReadyTimeoutError(port, self._config.ready_timeout_seconds)
                await asyncio.wait(
                    aborters,
                    timeout=min(self._config.ready_poll_interval_seconds, remaining),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                self._raise_if_aborted(port, stop_wait, exit_task)
        finally:
            stop_wait.cancel()

    def _raise_if_aborted(
        self,
        port: int,
        stop_wait: asyncio.Task,
        exit_task: asyncio.Task | None,
    ) -> None:
        if stop_wait.done():
            raise StartAbortedError()
        if exit_task is not None and exit_task.done():
            code = self.last_exit_code
            sig = self.last_exit_signal
            raise SpawnFailedError(
                port,
                f"exited before ready (code: {code if code is not None else 'unknown'}, "
                f"signal: {sig or 'none'})",
                exit_code=code,
                stderr="\n".join(self._stderr_tail),
            )

    def _write_local_config(self, cwd: Path) -> None:
        """Toggle backend plugins via ``<cwd>/.opencode/opencode.json``.

        Other keys in an existing file are preserved. Failures are logged.
        """
        config_path = cwd / ".opencode" / "opencode.json"
        try:
            data: dict = {}
            if config_path.is_file():
                loaded = json.loads(config_path.read_text(encoding="utf-8") or "{}")
                if isinstance(loaded, dict):
                    data = loaded
            if self._config.enable_plugins:
                if data.get("plugin") == []:
                    del data["plugin"]
            else:
                data["plugin"] = []
            config_path.parent.mkdir(parents=True, exist_ok=True)
            config_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except (OSError, ValueError) as exc:
            logger.error("Failed to write local backend config %s: %s", config_path, exc)

    # ── Process watchers ──

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        self.last_exit_code = code
        if proc is self._process and not self._stopping:
            logger.error(
                "Backend process exited (pid=%s, code: %s, signal: %s)",
                proc.pid, code, self.last_exit_signal or "none",
            )
            self._ready = False
        else:
            logger.info("Backend process exited (pid=%s, code: %s)", proc.pid, code)

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            message = line.decode("utf-8", errors="replace").rstrip()
            if message:
                logger.warning("backend stderr: %s", message)
                self._stderr_tail.append(message)

    # ── Stop ──

    async def stop(self) -> None:
        """Tear everything down. Never raises; safe to call at any time."""
        self._stopping = True
        self._stop_requested.set()
        self._ready = False
        try:
            await self.stream.shutdown()
        except Exception:
            logger.exception("Event stream shutdown failed")
        # An in-flight start() sees the stop request and unwinds; wait for it
        # so its process is gone before we return.
        async with self._start_lock:
            await self._kill_process()
            self._reset_binding()
        self._stopping = False

    async def _kill_process(self) -> None:
        """SIGTERM, wait up to the grace period, then SIGKILL."""
        proc, self._process = self._process, None
        self._ready = False
        try:
            if proc is not None and proc.returncode is None:
                pid = proc.pid
                logger.info("Stopping backend (pid=%s)", pid)
                try:
                    proc.terminate()
                    try:
                        await asyncio.wait_for(proc.wait(), timeout=self._config.stop_grace_seconds)
                    except asyncio.TimeoutError:
                        logger.warning(
                            "Backend (pid=%s) still running after %.1fs; killing",
                            pid, self._config.stop_grace_seconds,
                        )
                        proc.kill()
                        await proc.wait()
                except ProcessLookupError:
                    pass
                logger.info("Backend stopped (pid=%s)", pid)
        finally:
            await self._reap_watchers()

    async def _reap_watchers(self) -> None:
        tasks = [t for t in (self._exit_task, self._stderr_task) if t is not None]
        self._exit_task = None
        self._stderr_task = None
        pending = {t for t in tasks if not t.done()}
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

    def _reset_binding(self) -> None:
        self.port = 0
        self._client.unbind()

    async def restart(self) -> None:
        """Stop, wait for the port to be released, start again."""
        logger.info("Restarting backend")
        await self.stop()
        if self._config.restart_delay_seconds > 0:
            logger.info("Waiting %.1fs for port release", self._config.restart_delay_seconds)
            await asyncio.sleep(self._config.restart_delay_seconds)
        await self.start()

    # ── Utilities ──

    async def list_models(self) -> list[str]:
        """Run ``<command> models`` and return one model id per line."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._config.command, "models",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
            )
        except FileNotFoundError as exc:
            raise BinaryNotFoundError(self._config.command) from exc
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise BridgeError(f"Failed to list models: {detail or 'Unknown error'}")
        return [
            line.strip()
            for line in stdout.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
