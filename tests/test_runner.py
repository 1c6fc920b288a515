"""Tests for agentmux.process.runner (CommandRunner, ShellOutputDecoder, shell_invocation)."""

from __future__ import annotations

import shutil
import sys
from unittest.mock import AsyncMock, patch

import pytest

from agentmux.events import ProcessEventType, ProcessWire, drain
from agentmux.process.runner import (
    CommandResult,
    CommandRunner,
    ShellOutputDecoder,
    shell_invocation,
)
from agentmux.process.types import SshRemote

BASH = shutil.which("bash")


class TestShellInvocation:
    def test_login_interactive(self) -> None:
        assert shell_invocation("/bin/zsh", "ls") == ["/bin/zsh", "-i", "-l", "-c", "ls"]

    def test_fish_only_gets_c(self) -> None:
        assert shell_invocation("/usr/bin/fish", "ls") == ["/usr/bin/fish", "-c", "ls"]


class TestShellOutputDecoder:
    def test_multibyte_character_split_across_reads(self) -> None:
        decoder = ShellOutputDecoder()
        encoded = "café".encode()
        assert decoder.feed(encoded[:-1]) == "caf"
        assert decoder.feed(encoded[-1:]) == "é"

    def test_marker_split_across_reads_is_stripped(self) -> None:
        decoder = ShellOutputDecoder()
        assert decoder.feed(b"out\x1b]133;") == "out"
        assert decoder.feed(b"D;0\x07done") == "done"

    def test_marker_with_split_string_terminator(self) -> None:
        decoder = ShellOutputDecoder()
        assert decoder.feed(b"a\x1b]7;file://host/tmp\x1b") == "a"
        assert decoder.feed(b"\\b") == "b"

    def test_lone_escape_held_back(self) -> None:
        decoder = ShellOutputDecoder()
        assert decoder.feed(b"x\x1b") == "x"
        assert decoder.feed(b"[0m") == "\x1b[0m"

    def test_flush_releases_pending(self) -> None:
        decoder = ShellOutputDecoder()
        assert decoder.feed(b"tail\x1b]unterminated") == "tail"
        assert decoder.flush() == "\x1b]unterminated"


# ---------------------------------------------------------------------------
# Local commands
# ---------------------------------------------------------------------------


@pytest.mark.skipif(sys.platform == "win32" or BASH is None, reason="needs bash")
class TestRunCommand:
    async def test_success(self, tmp_path) -> None:
        wire = ProcessWire()
        q = wire.subscribe()
        runner = CommandRunner(wire)
        result = await runner.run_command("c1", "echo hi", str(tmp_path), shell=BASH)
        assert result.exit_code == 0
        assert "hi" in result.stdout
        events = drain(q)
        assert events[-1].type is ProcessEventType.COMMAND_EXIT
        assert events[-1].data["code"] == 0
        assert any(e.type is ProcessEventType.DATA for e in events)

    async def test_exit_code_and_stderr(self, tmp_path) -> None:
        runner = CommandRunner(ProcessWire())
        result = await runner.run_command(
            "c1", "echo bad >&2; exit 4", str(tmp_path), shell=BASH
        )
        assert result.exit_code == 4
        assert "bad" in result.stderr

    async def test_runs_in_cwd(self, tmp_path) -> None:
        runner = CommandRunner(ProcessWire())
        result = await runner.run_command("c1", "pwd", str(tmp_path), shell=BASH)
        assert str(tmp_path.resolve()) in result.stdout

    async def test_env_vars(self, tmp_path) -> None:
        runner = CommandRunner(ProcessWire())
        result = await runner.run_command(
            "c1", 'echo "$AGENTMUX_X"', str(tmp_path), shell=BASH, env_vars={"AGENTMUX_X": "42"}
        )
        assert "42" in result.stdout

    async def test_timeout_kills(self, tmp_path) -> None:
        wire = ProcessWire()
        q = wire.subscribe()
        runner = CommandRunner(wire)
        result = await runner.run_command("c1", "sleep 30", str(tmp_path), shell=BASH, timeout=0.5)
        assert result.timed_out is True
        assert result.exit_code != 0
        assert drain(q)[-1].type is ProcessEventType.COMMAND_EXIT


class TestRunCommandFailure:
    async def test_missing_shell(self, tmp_path) -> None:
        wire = ProcessWire()
        q = wire.subscribe()
        runner = CommandRunner(wire)
        result = await runner.run_command(
            "c1", "ls", str(tmp_path), shell="/nonexistent/agentmux-shell"
        )
        assert result.exit_code == 1
        events = drain(q)
        assert events[0].type is ProcessEventType.STDERR
        assert events[0].data["data"].startswith("Error: ")
        assert events[1].type is ProcessEventType.COMMAND_EXIT
        assert events[1].data["code"] == 1


# ---------------------------------------------------------------------------
# SSH commands
# ---------------------------------------------------------------------------


class TestRunSshCommand:
    async def test_argv_and_env_precedence(self) -> None:
        runner = CommandRunner(ProcessWire())
        remote = SshRemote(id="r1", host="box", username="dev", env={"A": "remote"})
        with patch.object(
            CommandRunner, "_run", AsyncMock(return_value=CommandResult(exit_code=0))
        ) as run:
            result = await runner.run_ssh_command(
                "c1", remote, "make", cwd="/w", env_vars={"A": "session"}
            )
        argv = run.call_args.args[1]
        assert argv[0] == "ssh"
        assert argv[-2] == "dev@box"
        assert argv[-1] == "cd /w && export A=session && make"
        assert result.transport_error is None

    async def test_transport_failure_classified(self) -> None:
        runner = CommandRunner(ProcessWire())
        remote = SshRemote(id="r1", host="box")
        failed = CommandResult(exit_code=255, stderr="dev@box: Permission denied (publickey).")
        with patch.object(CommandRunner, "_run", AsyncMock(return_value=failed)):
            result = await runner.run_ssh_command("c1", remote, "ls")
        assert result.transport_error == "Authentication failed. Check the SSH key and username."

    async def test_remote_failure_is_not_transport(self) -> None:
        runner = CommandRunner(ProcessWire())
        remote = SshRemote(id="r1", host="box")
        failed = CommandResult(exit_code=2, stderr="ls: cannot access")
        with patch.object(CommandRunner, "_run", AsyncMock(return_value=failed)):
            result = await runner.run_ssh_command("c1", remote, "ls nope")
        assert result.exit_code == 2
        assert result.transport_error is None

    async def test_connection_check(self) -> None:
        runner = CommandRunner(ProcessWire())
        remote = SshRemote(id="r1", host="box")
        ok = CommandResult(exit_code=0, stdout="SSH_OK\nbox\n")
        with patch.object(CommandRunner, "_run", AsyncMock(return_value=ok)) as run:
            result = await runner.test_ssh_connection(remote, agent_command="claude")
        session_id, argv = run.call_args.args[:2]
        assert session_id == "ssh-test-r1"
        assert argv[-1].startswith('echo "SSH_OK" && hostname && (which claude')
        assert run.call_args.args[4] == 30
        assert result.stdout.startswith("SSH_OK")
