"""One-shot command runners — run a command to completion, local or over SSH.

Unlike supervised sessions these have no PTY and no lifetime beyond the
command: output is streamed as ``data``/``stderr`` signals while it runs and
a single ``command-exit`` closes it out.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
import signal
from dataclasses import dataclass

from agentmux.events import ProcessWire
from agentmux.process.buffer import strip_shell_integration
from agentmux.process.env import build_child_process_env
from agentmux.process.ssh import build_remote_script, build_ssh_args, classify_ssh_error
from agentmux.process.types import SshRemote

logger = logging.getLogger(__name__)

SSH_TRANSPORT_EXIT_CODE = 255


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    # Set when ssh itself failed (never the remote command)
    transport_error: str | None = None
    timed_out: bool = False


class ShellOutputDecoder:
    """Incremental UTF-8 decoding plus shell-integration stripping.

    A multibyte character or an OSC sequence split across two reads is
    held back until the rest of it arrives.
    """

    MAX_PENDING = 4096

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> str:
        text = self._pending + self._decoder.decode(chunk)
        self._pending = ""
        start = text.rfind("\x1b]")
        if start != -1:
            tail = text[start:]
            if "\x07" in tail or "\x1b\\" in tail or len(tail) > self.MAX_PENDING:
                start = -1
        if start == -1 and text.endswith("\x1b"):
            start = len(text) - 1
        if start != -1:
            text, self._pending = text[:start], text[start:]
        return strip_shell_integration(text)

    def flush(self) -> str:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return strip_shell_integration(text)


def shell_invocation(shell: str, command: str) -> list[str]:
    """argv running ``command`` in ``shell`` as an interactive login shell.

    fish rejects ``-i -l`` combined with ``-c``, so it only gets ``-c``.
    """
    if os.path.basename(shell).startswith("fish"):
        return [shell, "-c", command]
    return [shell, "-i", "-l", "-c", command]


class CommandRunner:
    def __init__(self, wire: ProcessWire, default_shell: str | None = None) -> None:
        self._wire = wire
        self._default_shell = default_shell

    def _shell(self, shell: str | None) -> str:
        return shell or self._default_shell or os.environ.get("SHELL") or "/bin/bash"

    async def run_command(
        self,
        session_id: str,
        command: str,
        cwd: str,
        shell: str | None = None,
        env_vars: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``command`` through the user's shell in ``cwd``."""
        argv = shell_invocation(self._shell(shell), command)
        env = build_child_process_env(global_env_vars=env_vars)
        return await self._run(session_id, argv, cwd, env, timeout)

    async def run_ssh_command(
        self,
        session_id: str,
        remote: SshRemote,
        command: str,
        cwd: str | None = None,
        env_vars: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``command`` on ``remote``; session variables override remote ones."""
        script = build_remote_script(command, cwd, {**remote.env, **(env_vars or {})})
        argv = ["ssh", *build_ssh_args(remote), script]
        result = await self._run(
            session_id, argv, os.getcwd(), build_child_process_env(), timeout
        )
        if result.exit_code == SSH_TRANSPORT_EXIT_CODE:
            result.transport_error = classify_ssh_error(result.stderr).message
            logger.warning(
                "SSH transport failure for %s on %s: %s",
                session_id,
                remote.host,
                result.transport_error,
            )
        return result

    async def _run(
        self,
        session_id: str,
        argv: list[str],
        cwd: str,
        env: dict[str, str],
        timeout: float | None,
    ) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("Failed to start command for %s: %s", session_id, e)
            self._wire.send_stderr(session_id, f"Error: {e}")
            self._wire.send_command_exit(session_id, 1)
            return CommandResult(exit_code=1, stderr=str(e))

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        def _publish(text: str, parts: list[str], is_err: bool) -> None:
            if not text:
                return
            parts.append(text)
            if is_err:
                self._wire.send_stderr(session_id, text)
            else:
                self._wire.send_data(session_id, text)

        async def _pump(stream: asyncio.StreamReader, parts: list[str], is_err: bool) -> None:
            decoder = ShellOutputDecoder()
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    _publish(decoder.flush(), parts, is_err)
                    break
                _publish(decoder.feed(chunk), parts, is_err)

        pumps = asyncio.gather(
            _pump(process.stdout, stdout_parts, False),  # type: ignore[arg-type]
            _pump(process.stderr, stderr_parts, True),  # type: ignore[arg-type]
        )
        timed_out = False
        try:
            await asyncio.wait_for(asyncio.shield(pumps), timeout=timeout)
            exit_code = await process.wait()
        except asyncio.TimeoutError:
            timed_out = True
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await process.wait()
            await pumps
            exit_code = process.returncode if process.returncode is not None else -1
            logger.warning("Command for %s timed out after %ss", session_id, timeout)

        self._wire.send_command_exit(session_id, exit_code)
        return CommandResult(
            exit_code=exit_code,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            timed_out=timed_out,
        )

    async def test_ssh_connection(
        self, remote: SshRemote, agent_command: str | None = None
    ) -> CommandResult:
        """Quick reachability check; stdout starts with ``SSH_OK`` on success."""
        check = 'echo "SSH_OK" && hostname'
        if agent_command:
            check += f' && (which {shlex.quote(agent_command)} || echo "AGENT_NOT_FOUND")'
        return await self.run_ssh_command(f"ssh-test-{remote.id}", remote, check, timeout=30)
