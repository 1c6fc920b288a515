"""PTY spawner — run a shell or agent attached to a pseudo-terminal.

Uses subprocess.Popen (not os.fork) to avoid deadlocks when spawned from
within an asyncio event loop on macOS. Each child gets its own process
group (start_new_session) so the whole tree can be signalled at once, and
takes the slave as its controlling terminal so Ctrl-C raises SIGINT.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import shlex
import signal
import struct
import subprocess
import termios
from typing import TYPE_CHECKING

from agentmux.process.buffer import sanitize_binary_output, strip_ansi
from agentmux.process.env import build_pty_terminal_env
from agentmux.process.types import ManagedProcess, PtyHandle, SpawnConfig, SpawnResult

if TYPE_CHECKING:
    from agentmux.stream.data_buffer import DataBufferManager
    from agentmux.stream.exit import ExitHandler

logger = logging.getLogger(__name__)

DEFAULT_COLS = 100
DEFAULT_ROWS = 30
INTERRUPT = "\x03"


def set_window_size(fd: int, cols: int, rows: int) -> None:
    winsz = struct.pack("HHHH", max(1, rows), max(1, cols), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsz)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid; stdin is already the slave
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


def build_pty_command(config: SpawnConfig, default_shell: str | None = None) -> list[str]:
    """Login+interactive shell for terminal sessions, the agent binary otherwise."""
    if config.tool_type == "terminal":
        shell = config.shell or default_shell or os.environ.get("SHELL") or "/bin/bash"
        argv = [shell, "-l", "-i"]
        if config.shell_args:
            argv += shlex.split(config.shell_args)
        return argv
    return [config.command, *config.args]


class PtySpawner:
    """Starts PTY-backed sessions and drives their input side."""

    def __init__(
        self,
        processes: dict[str, ManagedProcess],
        buffer_manager: DataBufferManager,
        exit_handler: ExitHandler,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        default_shell: str | None = None,
    ) -> None:
        self._processes = processes
        self._buffer_manager = buffer_manager
        self._exit_handler = exit_handler
        self._cols = cols
        self._rows = rows
        self._default_shell = default_shell

    async def spawn(self, config: SpawnConfig) -> SpawnResult:
        argv = build_pty_command(config, self._default_shell)
        # Global vars first so session-level vars win
        env = build_pty_terminal_env(
            {**(config.global_env_vars or {}), **(config.custom_env_vars or {})}
        )

        master_fd, slave_fd = pty.openpty()
        try:
            set_window_size(master_fd, config.cols or self._cols, config.rows or self._rows)
            proc = subprocess.Popen(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                env=env,
                cwd=config.cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            logger.error("Failed to spawn PTY for %s: %s", config.session_id, e)
            self._exit_handler.handle_error(config.session_id, e)
            return SpawnResult(pid=-1, success=False)
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        handle = PtyHandle(proc=proc, master_fd=master_fd, pgid=proc.pid)
        process = ManagedProcess(
            session_id=config.session_id,
            tool_type=config.tool_type,
            handle=handle,
            pid=proc.pid,
            cwd=config.cwd,
            command=argv[0],
            args=argv[1:],
            ssh_remote_id=config.ssh_remote.id if config.ssh_remote else None,
            ssh_remote_host=config.ssh_remote.host if config.ssh_remote else None,
        )
        self._processes[config.session_id] = process
        handle.reader_task = asyncio.create_task(
            self._read_loop(config.session_id, handle, process)
        )

        logger.info(
            "PTY session %s started: pid=%d pgid=%d cmd=%s",
            config.session_id,
            proc.pid,
            handle.pgid,
            " ".join(argv),
        )
        return SpawnResult(pid=proc.pid, success=True)

    async def _read_loop(
        self, session_id: str, handle: PtyHandle, owner: ManagedProcess
    ) -> None:
        """Read the PTY master until the child side closes, then report the exit.

        Not cancelled on kill: the read is blocked in an executor thread and
        only returns once the killed group releases the slave. Output and
        exit of a process that no longer owns ``session_id`` are dropped.
        """
        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while not handle.closed:
                try:
                    data = await loop.run_in_executor(None, os.read, handle.master_fd, 4096)
                except OSError:
                    # EIO once the child side closes
                    break
                if not data:
                    break
                if self._processes.get(session_id) is not owner:
                    continue
                cleaned = sanitize_binary_output(strip_ansi(decoder.decode(data)))
                if cleaned:
                    self._buffer_manager.emit_data_buffered(session_id, cleaned)
        finally:
            exit_code = await loop.run_in_executor(None, handle.proc.wait)
            self._close_fd(handle)
            self._exit_handler.handle_exit(session_id, exit_code, owner)

    # -- input side -----------------------------------------------------

    @staticmethod
    def write(handle: PtyHandle, data: str) -> None:
        os.write(handle.master_fd, data.encode())

    @staticmethod
    def resize(handle: PtyHandle, cols: int, rows: int) -> None:
        set_window_size(handle.master_fd, cols, rows)

    def interrupt(self, handle: PtyHandle) -> None:
        self.write(handle, INTERRUPT)

    def kill(self, handle: PtyHandle) -> None:
        """Terminate the entire process group. Safe to call more than once."""
        if handle.proc.poll() is not None:
            return
        try:
            os.killpg(handle.pgid, signal.SIGKILL)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", handle.pgid)

    @staticmethod
    def _close_fd(handle: PtyHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        try:
            os.close(handle.master_fd)
        except OSError:
            pass
