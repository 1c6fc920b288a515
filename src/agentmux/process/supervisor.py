"""Process Supervisor — the single owner of the live-session table."""

from __future__ import annotations

import logging
from typing import Any

from agentmux.agents import get_capabilities
from agentmux.config import ProcessConfig
from agentmux.events import ProcessWire
from agentmux.process.child_spawner import ChildProcessSpawner
from agentmux.process.images import cleanup_temp_files
from agentmux.process.pty_spawner import PtySpawner
from agentmux.process.runner import CommandResult, CommandRunner
from agentmux.process.types import (
    ChildHandle,
    ManagedProcess,
    PtyHandle,
    SpawnConfig,
    SpawnResult,
    SshRemote,
)
from agentmux.stream import DataBufferManager, ExitHandler, StderrHandler, StdoutHandler

logger = logging.getLogger(__name__)


def wants_pty(config: SpawnConfig) -> bool:
    """Terminal sessions and PTY-only agents get a PTY, unless a prompt is given."""
    if config.prompt:
        return False
    if config.tool_type == "terminal":
        return True
    if config.requires_pty is not None:
        return config.requires_pty
    return get_capabilities(config.tool_type).requires_pty


class ProcessSupervisor:
    """Routes spawn/write/resize/interrupt/kill to the right spawner.

    Every session id maps to at most one ManagedProcess. Spawning over a
    live session kills the old process first. All output flows out
    through ``wire``.
    """

    def __init__(
        self,
        wire: ProcessWire | None = None,
        config: ProcessConfig | None = None,
    ) -> None:
        self.config = config or ProcessConfig()
        self.wire = wire or ProcessWire()
        self.processes: dict[str, ManagedProcess] = {}

        self.buffer_manager = DataBufferManager(
            self.wire,
            flush_interval=self.config.flush_interval_ms / 1000,
            max_bytes=self.config.flush_max_bytes,
        )
        self.stdout_handler = StdoutHandler(
            self.processes, self.wire, self.buffer_manager, self.config.max_buffer_chars
        )
        self.stderr_handler = StderrHandler(
            self.processes, self.wire, self.stdout_handler, self.config.max_buffer_chars
        )
        self.exit_handler = ExitHandler(
            self.processes, self.wire, self.buffer_manager, self.stdout_handler
        )
        self._pty = PtySpawner(
            self.processes,
            self.buffer_manager,
            self.exit_handler,
            cols=self.config.pty_cols,
            rows=self.config.pty_rows,
            default_shell=self.config.default_shell,
        )
        self._child = ChildProcessSpawner(
            self.processes, self.stdout_handler, self.stderr_handler, self.exit_handler
        )
        self._runner = CommandRunner(self.wire, self.config.default_shell)

    async def spawn(self, config: SpawnConfig) -> SpawnResult:
        if config.session_id in self.processes:
            logger.warning(
                "Session %s already has a live process, replacing it", config.session_id
            )
            self.kill(config.session_id)

        if wants_pty(config):
            result = await self._pty.spawn(config)
        else:
            result = await self._child.spawn(config)

        if result.success:
            logger.info(
                "Spawned %s for session %s (pid=%d, pty=%s)",
                config.tool_type,
                config.session_id,
                result.pid,
                wants_pty(config),
            )
        return result

    def get(self, session_id: str) -> ManagedProcess | None:
        return self.processes.get(session_id)

    def write(self, session_id: str, data: str) -> bool:
        process = self.processes.get(session_id)
        if process is None:
            logger.error("Write to unknown session %s", session_id)
            return False
        handle = process.handle
        try:
            if isinstance(handle, PtyHandle):
                self._pty.write(handle, data)
                return True
            if self._child.write(handle, data):
                return True
        except OSError as e:
            logger.error("Write to session %s failed: %s", session_id, e)
            return False
        logger.error("Session %s has no writable input", session_id)
        return False

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        process = self.processes.get(session_id)
        if process is None or not isinstance(process.handle, PtyHandle):
            return False
        try:
            self._pty.resize(process.handle, cols, rows)
        except OSError as e:
            logger.error("Resize of session %s failed: %s", session_id, e)
            return False
        return True

    def interrupt(self, session_id: str) -> bool:
        """Soft interrupt: Ctrl-C for a PTY, SIGINT for a plain process."""
        process = self.processes.get(session_id)
        if process is None:
            return False
        handle = process.handle
        try:
            if isinstance(handle, PtyHandle):
                self._pty.interrupt(handle)
            else:
                self._child.interrupt(handle)
        except (OSError, ProcessLookupError) as e:
            logger.error("Interrupt of session %s failed: %s", session_id, e)
            return False
        return True

    def kill(self, session_id: str) -> bool:
        """Force-terminate and forget a session. False if it is not tracked."""
        process = self.processes.pop(session_id, None)
        if process is None:
            return False

        self.buffer_manager.flush(session_id)
        handle = process.handle
        if isinstance(handle, PtyHandle):
            self._pty.kill(handle)
        elif isinstance(handle, ChildHandle):
            self._child.kill(handle)
        if process.temp_image_files:
            cleanup_temp_files(process.temp_image_files)
        logger.info("Killed session %s (pid=%d)", session_id, process.pid)
        return True

    def kill_all(self) -> None:
        """Tear down every tracked session. Called on shutdown."""
        for session_id in list(self.processes):
            self.kill(session_id)
        logger.info("All sessions cleaned up")

    def list_sessions(self) -> list[dict[str, Any]]:
        return [
            {
                "session_id": p.session_id,
                "tool_type": p.tool_type,
                "pid": p.pid,
                "cwd": p.cwd,
                "terminal": p.is_terminal,
                "batch": p.is_batch_mode,
                "stream_json": p.is_stream_json_mode,
                "ssh_remote": p.ssh_remote_host,
                "start_time": p.start_time,
            }
            for p in self.processes.values()
        ]

    async def run_command(
        self,
        session_id: str,
        command: str,
        cwd: str,
        shell: str | None = None,
        env_vars: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        return await self._runner.run_command(session_id, command, cwd, shell, env_vars, timeout)

    async def run_ssh_command(
        self,
        session_id: str,
        remote: SshRemote,
        command: str,
        cwd: str | None = None,
        env_vars: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        return await self._runner.run_ssh_command(
            session_id, remote, command, cwd, env_vars, timeout
        )

    def __len__(self) -> int:
        return len(self.processes)
